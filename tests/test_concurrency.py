"""Racing writers on separate sessions: the guarded UPDATEs decide the winner."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ekotaka.auth import BrandPrincipal
from ekotaka.db.models import Order
from ekotaka.errors import InsufficientInventory, InvalidTransition
from ekotaka.lifecycle import orders, pickups
from ekotaka.lifecycle.orders import create_order
from ekotaka.lifecycle.pickups import load_pickup, reject_pickup, verify_pickup

ADDRESS = {"street": "12 Tejgaon I/A", "city": "Dhaka", "district": "Dhaka", "country": "Bangladesh"}


def serve_stale_read(monkeypatch, module, stale):
    """Hand ``stale`` to the next load_pickup call in ``module``, as if read before the other writer."""
    original = module.load_pickup
    served = []

    async def load(db, pickup_id):
        if not served:
            served.append(pickup_id)
            return stale
        return await original(db, pickup_id)

    monkeypatch.setattr(module, "load_pickup", load)
    return served


@pytest.mark.asyncio
async def test_order_on_stale_inventory_cannot_oversell(session_factory, pickup_factory, brand, monkeypatch):
    pickup = await pickup_factory(weight="10", verify_at="10")

    async with session_factory() as first, session_factory() as second:
        stale = await load_pickup(second, pickup.id)
        assert stale.available_weight == Decimal("10")

        await create_order(first, brand, pickup.id, "8", "25", ADDRESS)

        served = serve_stale_read(monkeypatch, orders, stale)
        with pytest.raises(InsufficientInventory) as exc_info:
            await create_order(second, BrandPrincipal(user_id="brand-2"), pickup.id, "5", "25", ADDRESS)
        assert served == [pickup.id]
        assert exc_info.value.payload() == {"available": 2.0, "requested": 5.0}

        reloaded = await load_pickup(first, pickup.id)
        assert reloaded.committed_weight == Decimal("8")
        count = await first.execute(select(func.count(Order.id)).where(Order.pickup_id == pickup.id))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_second_verifier_with_stale_read_loses(session_factory, pickup_factory, monkeypatch):
    pickup = await pickup_factory(weight="10")

    async with session_factory() as first, session_factory() as second:
        stale = await load_pickup(second, pickup.id)

        await verify_pickup(first, pickup.id, "10", "verifier-1")

        serve_stale_read(monkeypatch, pickups, stale)
        with pytest.raises(InvalidTransition) as exc_info:
            await verify_pickup(second, pickup.id, "3", "verifier-2")
        assert exc_info.value.current == "verified"
        await second.rollback()

        reloaded = await load_pickup(first, pickup.id)
        assert reloaded.actual_weight == Decimal("10")
        assert reloaded.verification["verifiedBy"] == "verifier-1"
        assert [e.status for e in reloaded.history] == ["pending", "verified"]


@pytest.mark.asyncio
async def test_reject_with_stale_read_does_not_undo_verification(session_factory, pickup_factory, monkeypatch):
    pickup = await pickup_factory(weight="6")

    async with session_factory() as first, session_factory() as second:
        stale = await load_pickup(second, pickup.id)
        assert stale.status == "pending"

        await verify_pickup(first, pickup.id, "6", "verifier-1")

        serve_stale_read(monkeypatch, pickups, stale)
        with pytest.raises(InvalidTransition) as exc_info:
            await reject_pickup(second, pickup.id, "Looks like glass", "verifier-2")
        assert exc_info.value.current == "verified"
        assert exc_info.value.requested == "rejected"
        await second.rollback()

        reloaded = await load_pickup(first, pickup.id)
        assert reloaded.status == "verified"
        assert "rejectionReason" not in reloaded.verification
        assert [e.status for e in reloaded.history] == ["pending", "verified"]
