"""Shared fixtures: in-memory SQLite, stubbed providers and an ASGI client."""

import io
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="ekotaka-tests-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LLM_CACHE_ENABLED"] = "false"
os.environ["TRACK_LLM_COSTS"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["IDENTITY_JWT_SECRET"] = "test-secret"
os.environ["LOG_DIR"] = _TMP
os.environ["LOCAL_STORAGE_DIR"] = os.path.join(_TMP, "uploads")
os.environ["AUTO_VERIFY_ENABLED"] = "false"

from decimal import Decimal  # noqa: E402
from typing import Any, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ekotaka.ai.classifier import ClassificationResult, PlasticClassifier  # noqa: E402
from ekotaka.auth import BrandPrincipal, CollectorPrincipal, create_token  # noqa: E402
from ekotaka.db.models import Base, Pickup, PickupStatus, PickupStatusEvent, utcnow  # noqa: E402
from ekotaka.errors import ExternalServiceDegraded  # noqa: E402
from ekotaka.lifecycle.pickups import verify_pickup  # noqa: E402
from ekotaka.pipeline.storage import LocalBlobStorage  # noqa: E402

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}


class StubClassifier(PlasticClassifier):
    """Real classify() flow with the provider call replaced."""

    def __init__(self, result: Optional[ClassificationResult] = None, error: Optional[str] = None):
        super().__init__(llm=None)
        self.result = result
        self.error = error
        self.calls = 0

    async def _call_provider(self, image, mime_type, hint):
        self.calls += 1
        if self.error or self.result is None:
            raise ExternalServiceDegraded(self.error or "provider unavailable")
        return self.result


class StubGeocoder:
    def __init__(self, result: Optional[dict[str, Any]] = None):
        self.result = result
        self.queries: list[str] = []

    async def forward(self, query: str):
        self.queries.append(query)
        return self.result

    async def reverse(self, lat: float, lng: float):
        if self.result is None:
            return None
        return {"coordinates": [lng, lat], "address": self.result["address"]}

    async def close(self):
        pass


def make_png(color=(20, 160, 60), size=(32, 32)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def auth_headers(user_id: str, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_token(user_id, role)}"}


def confident_result(category="PET", weight=5.0, confidence=0.92) -> ClassificationResult:
    return ClassificationResult(
        detected_category=category,
        confidence=confidence,
        estimated_weight=weight,
        reasoning="Clear PET bottles",
        manual_review_required=False,
        detected_items=[{"item": "bottle", "category": category, "confidence": confidence}],
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def storage(tmp_path) -> LocalBlobStorage:
    return LocalBlobStorage(root=tmp_path / "blobs", public_base_url="/media")


@pytest.fixture
def collector() -> CollectorPrincipal:
    return CollectorPrincipal(user_id="collector-1")


@pytest.fixture
def brand() -> BrandPrincipal:
    return BrandPrincipal(user_id="brand-1")


@pytest.fixture
def pickup_factory(db_session):
    """Insert a pickup directly, optionally verifying it at ``actual`` kg."""

    async def create(
        collector_id: str = "collector-1",
        category: str = "PET",
        weight: str = "10",
        verify_at: Optional[str] = None,
        coordinates=(90.4125, 23.8103),
    ) -> Pickup:
        now = utcnow()
        pickup = Pickup(
            collector_id=collector_id,
            category=category,
            estimated_weight=Decimal(weight),
            committed_weight=Decimal("0"),
            status=PickupStatus.PENDING.value,
            location={"coordinates": list(coordinates), "address": "House 12, Road 5, Dhanmondi, Dhaka"},
            longitude=coordinates[0],
            latitude=coordinates[1],
            photos={"before": {"id": "p/before.png", "url": "/media/p/before.png"}, "after": None},
            verification={"aiConfidence": 0.92, "aiCategory": category, "manualReview": False},
            created_at=now,
            updated_at=now,
            history=[
                PickupStatusEvent(
                    seq=1, status=PickupStatus.PENDING.value, timestamp=now, changed_by=collector_id
                )
            ],
        )
        db_session.add(pickup)
        await db_session.commit()
        if verify_at is not None:
            return await verify_pickup(db_session, pickup.id, verify_at, "verifier-1")
        return pickup

    return create


@pytest.fixture
def stub_classifier() -> StubClassifier:
    return StubClassifier(result=confident_result())


@pytest.fixture
def stub_geocoder() -> StubGeocoder:
    return StubGeocoder()


@pytest_asyncio.fixture
async def app_client(session_factory, storage, stub_classifier, stub_geocoder):
    """ASGI client with the database, storage and providers overridden."""
    from ekotaka.api import deps
    from ekotaka.main import app

    async def override_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[deps.get_database] = override_database
    app.dependency_overrides[deps.get_storage] = lambda: storage
    app.dependency_overrides[deps.get_classifier] = lambda: stub_classifier
    app.dependency_overrides[deps.get_geocoder] = lambda: stub_geocoder

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
