"""HTTP-level tests: authentication, the marketplace flow, map and profiles."""

import json

import pytest

from conftest import ADMIN_HEADERS, auth_headers

COLLECTOR = auth_headers("collector-1", "collector")
BRAND = auth_headers("brand-1", "brand")
ADDRESS = {"street": "12 Tejgaon I/A", "city": "Dhaka", "district": "Dhaka", "country": "Bangladesh"}


async def _submit_pickup(client, png_bytes, weight="5.0", coordinates=(90.3742, 23.7461)):
    response = await client.post(
        "/api/pickups/create",
        headers=COLLECTOR,
        data={
            "category": "PET",
            "weight": weight,
            "address": "House 12, Road 5, Dhanmondi, Dhaka",
            "coordinates": json.dumps(list(coordinates)),
        },
        files={"beforePhoto": ("before.png", png_bytes, "image/png")},
    )
    assert response.status_code == 201
    return response.json()["pickup"]


async def _verified_pickup(client, png_bytes, actual="5.0"):
    pickup = await _submit_pickup(client, png_bytes)
    response = await client.post(
        f"/api/admin/pickups/{pickup['id']}/verify",
        headers=ADMIN_HEADERS,
        json={"actualWeight": actual, "verifiedBy": "verifier-1"},
    )
    assert response.status_code == 200
    return response.json()["pickup"]


@pytest.mark.asyncio
async def test_health(app_client):
    response = await app_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_authentication_is_required(app_client):
    missing = await app_client.get("/api/pickups")
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": "Authentication required"}

    forged = await app_client.get("/api/pickups", headers={"Authorization": "Bearer not-a-jwt"})
    assert forged.status_code == 401

    wrong_role = await app_client.get("/api/brand/inventory", headers=COLLECTOR)
    assert wrong_role.status_code == 403


@pytest.mark.asyncio
async def test_admin_routes_require_key(app_client):
    wrong = await app_client.post(
        "/api/admin/pickups/nope/verify",
        headers={"X-Admin-API-Key": "guess"},
        json={"actualWeight": 1, "verifiedBy": "v"},
    )
    assert wrong.status_code == 403
    assert wrong.json()["success"] is False

    missing = await app_client.post(
        "/api/admin/pickups/nope/verify", json={"actualWeight": 1, "verifiedBy": "v"}
    )
    assert missing.status_code == 400


@pytest.mark.asyncio
async def test_marketplace_flow_over_http(app_client, png_bytes):
    pickup = await _verified_pickup(app_client, png_bytes)
    assert pickup["status"] == "verified"
    assert pickup["actualWeight"] == 5.0

    inventory = await app_client.get("/api/brand/inventory", headers=BRAND)
    assert inventory.status_code == 200
    assert [p["id"] for p in inventory.json()["inventory"]] == [pickup["id"]]

    created = await app_client.post(
        "/api/orders",
        headers=BRAND,
        json={"pickupId": pickup["id"], "quantity": 3, "unitPrice": 45, "shippingAddress": ADDRESS},
    )
    assert created.status_code == 201
    order = created.json()["order"]
    assert order["status"] == "pending"
    assert order["totalAmount"] == 135.0

    oversell = await app_client.post(
        "/api/orders",
        headers=BRAND,
        json={"pickupId": pickup["id"], "quantity": 3, "unitPrice": 45, "shippingAddress": ADDRESS},
    )
    assert oversell.status_code == 409
    assert oversell.json()["available"] == 2.0

    confirmed = await app_client.put(
        f"/api/orders/{order['orderId']}", headers=COLLECTOR, json={"action": "confirm"}
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["order"]["status"] == "confirmed"

    not_allowed = await app_client.put(
        f"/api/orders/{order['orderId']}", headers=COLLECTOR, json={"action": "deliver"}
    )
    assert not_allowed.status_code == 403

    listed = await app_client.get("/api/orders", headers=COLLECTOR)
    assert [o["orderId"] for o in listed.json()["orders"]] == [order["orderId"]]

    payout = await app_client.post(
        "/api/admin/transactions",
        headers=ADMIN_HEADERS,
        json={"pickupId": pickup["id"], "amount": "150", "paymentMethod": "bkash"},
    )
    assert payout.status_code == 201
    transaction = payout.json()["transaction"]
    assert transaction["transactionId"].startswith("BK")
    assert transaction["status"] == "pending"

    settled = await app_client.put(
        f"/api/admin/transactions/{transaction['transactionId']}",
        headers=ADMIN_HEADERS,
        json={"status": "completed"},
    )
    assert settled.status_code == 200
    effects = settled.json()["effects"]
    assert effects["pickupStatus"] == "paid"
    assert effects["tokens"]["tokensAwarded"] > 0

    again = await app_client.put(
        f"/api/admin/transactions/{transaction['transactionId']}",
        headers=ADMIN_HEADERS,
        json={"status": "failed", "failureReason": "late callback"},
    )
    assert again.status_code == 409

    tokens = await app_client.get("/api/collector/tokens", headers=COLLECTOR)
    assert tokens.json()["tokens"]["balance"] > effects["tokens"]["tokensAwarded"]

    visible = await app_client.get(
        f"/api/transactions/{transaction['transactionId']}", headers=COLLECTOR
    )
    assert visible.status_code == 200
    hidden = await app_client.get(
        f"/api/transactions/{transaction['transactionId']}",
        headers=auth_headers("collector-2", "collector"),
    )
    assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_delete_cancels_order_with_default_reason(app_client, png_bytes):
    pickup = await _verified_pickup(app_client, png_bytes)
    created = await app_client.post(
        "/api/orders",
        headers=BRAND,
        json={"pickupId": pickup["id"], "quantity": 2, "unitPrice": 40, "shippingAddress": ADDRESS},
    )
    order_ref = created.json()["order"]["orderId"]

    cancelled = await app_client.delete(f"/api/orders/{order_ref}", headers=BRAND)
    assert cancelled.status_code == 200
    order = cancelled.json()["order"]
    assert order["status"] == "cancelled"
    assert order["cancellationReason"] == "Cancelled by user"

    inventory = await app_client.get("/api/brand/inventory", headers=BRAND)
    assert inventory.json()["inventory"][0]["availableWeight"] == 5.0


@pytest.mark.asyncio
async def test_hotspots_report_and_search(app_client):
    reported = await app_client.post(
        "/api/map/hotspots",
        headers=COLLECTOR,
        json={
            "coordinates": [90.4000, 23.8000],
            "address": "Karwan Bazar canal bank",
            "totalWeight": 12,
            "categories": {"PET": 8, "HDPE": 4},
        },
    )
    assert reported.status_code == 201
    assert reported.json()["merged"] is False
    hotspot = reported.json()["hotspot"]
    assert hotspot["reporterType"] == "collector"

    merged = await app_client.post(
        "/api/map/hotspots",
        headers=BRAND,
        json={"coordinates": [90.4001, 23.8001], "address": "Same canal", "totalWeight": 3},
    )
    assert merged.json()["merged"] is True
    assert merged.json()["hotspot"]["id"] == hotspot["id"]
    assert merged.json()["hotspot"]["estimatedAvailable"]["totalWeight"] == 15.0

    found = await app_client.get(
        "/api/map/hotspots", headers=COLLECTOR, params={"lat": 23.8, "lng": 90.4, "radius": 2}
    )
    assert found.status_code == 200
    assert [h["id"] for h in found.json()["hotspots"]] == [hotspot["id"]]

    far = await app_client.get(
        "/api/map/hotspots", headers=COLLECTOR, params={"lat": 22.3, "lng": 91.8, "radius": 2}
    )
    assert far.json()["hotspots"] == []

    bad = await app_client.post(
        "/api/map/hotspots",
        headers=COLLECTOR,
        json={"coordinates": [200, 23.8], "address": "", "totalWeight": 0},
    )
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_hotspot_report_refuses_non_finite_weights(app_client):
    for weight in (float("nan"), float("inf")):
        response = await app_client.post(
            "/api/map/hotspots",
            headers={**COLLECTOR, "Content-Type": "application/json"},
            content=json.dumps({"coordinates": [90.40, 23.80], "address": "Canal bank", "totalWeight": weight}),
        )
        assert response.status_code == 400
        assert response.json()["fields"][0]["field"] == "totalWeight"

    response = await app_client.post(
        "/api/map/hotspots",
        headers={**COLLECTOR, "Content-Type": "application/json"},
        content=json.dumps(
            {"coordinates": [90.40, 23.80], "address": "Canal bank", "totalWeight": 5, "categories": {"PET": float("inf")}}
        ),
    )
    assert response.status_code == 400

    listed = await app_client.get(
        "/api/map/hotspots", headers=COLLECTOR, params={"lat": 23.8, "lng": 90.4, "radius": 2}
    )
    assert listed.json()["hotspots"] == []


@pytest.mark.asyncio
async def test_route_planning_endpoint(app_client):
    response = await app_client.post(
        "/api/map/optimize-route",
        headers=COLLECTOR,
        json={
            "origin": [90.40, 23.80],
            "strategy": "nearest",
            "waypoints": [
                {"id": "far", "coordinates": [90.40, 23.83], "weight": 1},
                {"id": "near", "coordinates": [90.40, 23.81], "weight": 1},
            ],
        },
    )
    assert response.status_code == 200
    route = response.json()["route"]
    assert [w["id"] for w in route["waypoints"]] == ["near", "far"]

    unknown = await app_client.post(
        "/api/map/optimize-route",
        headers=COLLECTOR,
        json={"origin": [90.40, 23.80], "strategy": "scenic", "waypoints": []},
    )
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_collector_profile_masks_payout_numbers(app_client):
    response = await app_client.put(
        "/api/collector/profile",
        headers=COLLECTOR,
        json={
            "personalInfo": {"name": "Rahim"},
            "paymentInfo": {"bkashNumber": "01712345678", "accountName": "Rahim"},
        },
    )
    assert response.status_code == 200
    payment = response.json()["profile"]["paymentInfo"]
    assert payment["bkashNumber"] == "*******5678"
    assert payment["nagadNumber"] is None

    fetched = await app_client.get("/api/collector/profile", headers=COLLECTOR)
    assert fetched.json()["profile"]["personalInfo"] == {"name": "Rahim"}


@pytest.mark.asyncio
async def test_collector_dashboard_counts_statuses(app_client, png_bytes):
    await _submit_pickup(app_client, png_bytes)
    await _verified_pickup(app_client, png_bytes, actual="4.0")

    response = await app_client.get("/api/collector/dashboard", headers=COLLECTOR)
    assert response.status_code == 200
    dashboard = response.json()["dashboard"]
    assert dashboard["statusCounts"]["pending"] == 1
    assert dashboard["statusCounts"]["verified"] == 1
    assert dashboard["statusCounts"]["paid"] == 0
    assert len(dashboard["recentPickups"]) == 2


@pytest.mark.asyncio
async def test_conversation_over_http(app_client):
    started = await app_client.post(
        "/api/messages/conversations",
        headers=BRAND,
        json={"participantId": "collector-1", "subject": "PET batch", "message": "Hello!"},
    )
    assert started.status_code in (200, 201)
    conversation_id = started.json()["conversation"]["id"]

    inbox = await app_client.get("/api/messages/conversations", headers=COLLECTOR)
    assert inbox.json()["unreadTotal"] == 1

    opened = await app_client.get(f"/api/messages/conversations/{conversation_id}", headers=COLLECTOR)
    assert [m["content"] for m in opened.json()["messages"]] == ["Hello!"]

    inbox = await app_client.get("/api/messages/conversations", headers=COLLECTOR)
    assert inbox.json()["unreadTotal"] == 0

    outsider = await app_client.get(
        f"/api/messages/conversations/{conversation_id}",
        headers=auth_headers("collector-2", "collector"),
    )
    assert outsider.status_code == 404
