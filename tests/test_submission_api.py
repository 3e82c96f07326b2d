"""End-to-end pickup submission through the HTTP layer."""

import json

import pytest

from conftest import StubClassifier, auth_headers, confident_result, make_png
from ekotaka.api import deps
from ekotaka.main import app

COLLECTOR = auth_headers("collector-1", "collector")


def _form(**overrides):
    data = {
        "category": "PET",
        "weight": "5.0",
        "address": "House 12, Road 5, Dhanmondi, Dhaka",
        "coordinates": json.dumps([90.3742, 23.7461]),
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


@pytest.mark.asyncio
async def test_submit_creates_pending_pickup(app_client, png_bytes):
    response = await app_client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data=_form(notes="Bottles from the market"),
        files={"beforePhoto": ("before.png", png_bytes, "image/png")},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    pickup = body["pickup"]
    assert pickup["status"] == "pending"
    assert pickup["collectorId"] == "collector-1"
    assert pickup["estimatedWeight"] == 5.0
    assert pickup["location"]["coordinates"] == [90.3742, 23.7461]
    assert pickup["photos"]["before"]["url"]
    assert pickup["photos"]["after"] is None
    assert [e["status"] for e in pickup["statusHistory"]] == ["pending"]
    assert body["aiAnalysis"]["categoryMatch"] is True
    assert body["aiAnalysis"]["manualReview"] is False
    assert body["message"] == "Pickup submitted successfully! It will be verified shortly."

    listed = await app_client.get("/api/pickups", headers=COLLECTOR)
    assert [p["id"] for p in listed.json()["pickups"]] == [pickup["id"]]


@pytest.mark.asyncio
async def test_missing_fields_are_reported_together(app_client):
    response = await app_client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data=_form(category=None, weight="-1", address=None),
    )
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    fields = {f["field"] for f in body["fields"]}
    assert {"beforePhoto", "category", "weight", "address"} <= fields


@pytest.mark.asyncio
async def test_non_image_upload_is_rejected(app_client):
    response = await app_client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data=_form(),
        files={"beforePhoto": ("before.png", b"not really a png", "image/png")},
    )
    assert response.status_code == 400
    assert response.json()["fields"][0]["field"] == "beforePhoto"


@pytest.mark.asyncio
async def test_classifier_outage_still_creates_pickup(app_client, png_bytes):
    app.dependency_overrides[deps.get_classifier] = lambda: StubClassifier(
        error="classification timed out after 20.0s"
    )
    response = await app_client.post(
        "/api/pickups",
        headers=COLLECTOR,
        data=_form(),
        files={"beforePhoto": ("before.png", png_bytes, "image/png")},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["pickup"]["status"] == "pending"
    assert body["aiAnalysis"]["confidence"] == 0.3
    assert body["aiAnalysis"]["detectedCategory"] is None
    assert body["aiAnalysis"]["manualReview"] is True
    assert body["pickup"]["verification"]["manualReview"] is True


@pytest.mark.asyncio
async def test_address_without_coordinates_falls_back_to_default(
    app_client, png_bytes, stub_geocoder
):
    response = await app_client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data=_form(coordinates=None),
        files={
            "beforePhoto": ("before.png", png_bytes, "image/png"),
            "afterPhoto": ("after.png", make_png(color=(200, 200, 200)), "image/png"),
        },
    )
    assert response.status_code == 201
    pickup = response.json()["pickup"]
    assert stub_geocoder.queries == ["House 12, Road 5, Dhanmondi, Dhaka"]
    assert pickup["location"]["coordinates"] == [90.4125, 23.8103]
    assert pickup["photos"]["after"] is not None


@pytest.mark.asyncio
async def test_detect_prefills_confident_results(app_client, png_bytes):
    response = await app_client.post(
        "/api/pickups/detect",
        headers=COLLECTOR,
        files={"image": ("photo.png", png_bytes, "image/png")},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["prefill"] == {"category": "PET", "weight": 5.0}
    assert body["classification"]["detectedCategory"] == "PET"


@pytest.mark.asyncio
async def test_detect_low_confidence_means_manual_entry(app_client, png_bytes):
    app.dependency_overrides[deps.get_classifier] = lambda: StubClassifier(
        result=confident_result(confidence=0.4)
    )
    response = await app_client.post(
        "/api/pickups/detect",
        headers=COLLECTOR,
        files={"image": ("photo.png", png_bytes, "image/png")},
    )
    assert response.status_code == 200
    assert response.json()["prefill"] is None


@pytest.mark.asyncio
async def test_brands_cannot_submit_pickups(app_client, png_bytes):
    response = await app_client.post(
        "/api/pickups/create",
        headers=auth_headers("brand-1", "brand"),
        data=_form(),
        files={"beforePhoto": ("before.png", png_bytes, "image/png")},
    )
    assert response.status_code == 403
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_owner_can_edit_pending_pickup(app_client, png_bytes):
    created = await app_client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data=_form(),
        files={"beforePhoto": ("before.png", png_bytes, "image/png")},
    )
    pickup_id = created.json()["pickup"]["id"]

    response = await app_client.put(
        f"/api/pickups/{pickup_id}", headers=COLLECTOR, json={"estimatedWeight": 6.5}
    )
    assert response.status_code == 200
    assert response.json()["pickup"]["estimatedWeight"] == 6.5

    other = await app_client.get(
        f"/api/pickups/{pickup_id}", headers=auth_headers("collector-2", "collector")
    )
    assert other.status_code == 404
