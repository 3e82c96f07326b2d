"""Tests for the geocoder, the blob stores and submission compensation."""

import json

import httpx
import pytest
from sqlalchemy import func, select

from conftest import StubClassifier, StubGeocoder, confident_result, make_png
from ekotaka.db.models import Pickup
from ekotaka.maps.geocoding import Geocoder
from ekotaka.pipeline.storage import HttpBlobStorage, LocalBlobStorage, delete_quietly
from ekotaka.pipeline.submission import PhotoUpload, SubmissionPipeline, SubmissionRequest


def _geocoder(handler) -> Geocoder:
    geocoder = Geocoder(base_url="https://geo.test")
    geocoder._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return geocoder


@pytest.mark.asyncio
async def test_forward_geocoding_parses_first_match():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/search"
        assert request.url.params["q"] == "Dhanmondi 27"
        return httpx.Response(
            200, json=[{"lon": "90.3742", "lat": "23.7461", "display_name": "Road 27, Dhanmondi"}]
        )

    geocoder = _geocoder(handler)
    result = await geocoder.forward("  Dhanmondi 27 ")
    assert result == {"coordinates": [90.3742, 23.7461], "address": "Road 27, Dhanmondi"}
    await geocoder.close()


@pytest.mark.asyncio
async def test_geocoding_failures_degrade_to_none():
    geocoder = _geocoder(lambda request: httpx.Response(503))
    assert await geocoder.forward("Mirpur 10") is None
    assert await geocoder.reverse(23.8, 90.4) is None

    empty = _geocoder(lambda request: httpx.Response(200, json=[]))
    assert await empty.forward("Nowhere") is None
    assert await empty.forward("   ") is None


@pytest.mark.asyncio
async def test_reverse_geocoding():
    geocoder = _geocoder(lambda request: httpx.Response(200, json={"display_name": "Gulshan 2"}))
    assert await geocoder.reverse(23.79, 90.41) == {
        "coordinates": [90.41, 23.79],
        "address": "Gulshan 2",
    }


@pytest.mark.asyncio
async def test_local_storage_round_trip(tmp_path):
    storage = LocalBlobStorage(root=tmp_path, public_base_url="/media/")
    blob = await storage.upload(make_png(size=(40, 20)), "pickups/c1", "before.png", "image/png")
    assert blob["url"] == f"/media/{blob['id']}"
    assert (blob["width"], blob["height"], blob["format"]) == (40, 20, "png")

    assert await delete_quietly(storage, blob["id"]) is True
    assert await delete_quietly(storage, blob["id"]) is False
    assert await delete_quietly(storage, "../outside.png") is False


@pytest.mark.asyncio
async def test_http_storage_upload_and_delete():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"id": "blob-1", "url": "https://cdn.test/blob-1"})
        return httpx.Response(404)

    storage = HttpBlobStorage(base_url="https://blobs.test", api_key="k")
    storage._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    blob = await storage.upload(make_png(), "pickups/c1", "before.png", "image/png")
    assert blob["id"] == "blob-1"
    assert blob["format"] == "png"
    assert await storage.delete("blob-1") is False
    assert seen == [("POST", "/upload"), ("DELETE", "/files/blob-1")]
    await storage.close()


class FailingAfterStorage(LocalBlobStorage):
    """Accepts the before photo, then fails."""

    async def upload(self, data, folder, filename, content_type):
        if folder.endswith("/after"):
            raise httpx.ConnectError("blob store unreachable")
        return await super().upload(data, folder, filename, content_type)


@pytest.mark.asyncio
async def test_failed_upload_leaves_no_photos_or_pickup(db_session, tmp_path):
    storage = FailingAfterStorage(root=tmp_path, public_base_url="/media")
    pipeline = SubmissionPipeline(storage, StubClassifier(result=confident_result()), StubGeocoder())
    request = SubmissionRequest(
        collector_id="collector-1",
        before_photo=PhotoUpload(make_png(), "before.png", "image/png"),
        after_photo=PhotoUpload(make_png(color=(1, 2, 3)), "after.png", "image/png"),
        category="PET",
        weight="5",
        address="House 12, Road 5, Dhanmondi, Dhaka",
        coordinates=json.dumps([90.3742, 23.7461]),
    )

    with pytest.raises(httpx.ConnectError):
        await pipeline.submit(db_session, request)

    assert [p for p in tmp_path.rglob("*") if p.is_file()] == []
    count = await db_session.execute(select(func.count(Pickup.id)))
    assert count.scalar_one() == 0
