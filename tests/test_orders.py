"""Tests for order creation against pickup inventory and role-scoped actions."""

from decimal import Decimal

import pytest

from ekotaka.auth import BrandPrincipal, CollectorPrincipal
from ekotaka.errors import (
    Conflict,
    Forbidden,
    InsufficientInventory,
    InvalidPrice,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from ekotaka.lifecycle import orders
from ekotaka.lifecycle.orders import apply_order_action, compute_total, create_order, generate_order_id
from ekotaka.lifecycle.pickups import load_pickup
from ekotaka.lifecycle.transactions import create_purchase, settle_transaction

ADDRESS = {"street": "12 Tejgaon I/A", "city": "Dhaka", "district": "Dhaka", "country": "Bangladesh"}


def test_total_is_rounded_half_up_to_cents():
    assert compute_total(Decimal("2.345"), Decimal("10.01")) == Decimal("23.47")
    assert compute_total(Decimal("0.5"), Decimal("0.05")) == Decimal("0.03")


def test_order_id_format():
    order_id = generate_order_id()
    prefix, year, stamp, suffix = order_id.split("-")
    assert prefix == "ORD"
    assert len(year) == 4 and len(stamp) == 8 and len(suffix) == 4


@pytest.mark.asyncio
async def test_second_order_exceeding_availability_fails_outright(db_session, pickup_factory, brand):
    pickup = await pickup_factory(weight="10", verify_at="10")
    other_brand = BrandPrincipal(user_id="brand-2")

    first = await create_order(db_session, brand, pickup.id, "8", "25", ADDRESS)
    assert first.status == "pending"
    assert first.total_amount == Decimal("200.00")

    with pytest.raises(InsufficientInventory) as exc_info:
        await create_order(db_session, other_brand, pickup.id, "5", "25", ADDRESS)
    assert exc_info.value.payload() == {"available": 2.0, "requested": 5.0}

    reloaded = await load_pickup(db_session, pickup.id)
    assert reloaded.committed_weight == Decimal("8")
    assert reloaded.available_weight == Decimal("2")


@pytest.mark.asyncio
async def test_remaining_weight_can_still_be_ordered(db_session, pickup_factory, brand):
    pickup = await pickup_factory(weight="10", verify_at="10")
    await create_order(db_session, brand, pickup.id, "8", "25", ADDRESS)
    rest = await create_order(db_session, BrandPrincipal(user_id="brand-2"), pickup.id, "2", "25", ADDRESS)
    assert rest.quantity == Decimal("2")
    assert (await load_pickup(db_session, pickup.id)).available_weight == Decimal("0")


@pytest.mark.asyncio
async def test_price_and_quantity_validation(db_session, pickup_factory, brand):
    pickup = await pickup_factory(verify_at="10")

    with pytest.raises(InvalidPrice):
        await create_order(db_session, brand, pickup.id, "1", "0", ADDRESS)

    with pytest.raises(ValidationError) as exc_info:
        await create_order(db_session, brand, pickup.id, "0.05", "-3", ADDRESS)
    assert {e.field for e in exc_info.value.errors} == {"quantity", "unitPrice"}

    with pytest.raises(ValidationError) as exc_info:
        await create_order(db_session, brand, pickup.id, "1", "10", {"street": "x"})
    assert "shippingAddress.city" in {e.field for e in exc_info.value.errors}


@pytest.mark.asyncio
async def test_only_verified_pickups_can_be_ordered(db_session, pickup_factory, brand):
    pickup = await pickup_factory()
    with pytest.raises(ValidationError) as exc_info:
        await create_order(db_session, brand, pickup.id, "1", "10", ADDRESS)
    assert exc_info.value.errors[0].field == "pickupId"


@pytest.mark.asyncio
async def test_collector_cannot_cancel_processing_order(db_session, pickup_factory, brand, collector):
    pickup = await pickup_factory(verify_at="10")
    order = await create_order(db_session, brand, pickup.id, "4", "30", ADDRESS)

    await apply_order_action(db_session, collector, order.order_id, "confirm")
    processing = await apply_order_action(db_session, collector, order.order_id, "process")
    assert processing.status == "processing"
    assert processing.processing_at is not None

    with pytest.raises(InvalidTransition) as exc_info:
        await apply_order_action(
            db_session, collector, order.order_id, "cancel", cancellation_reason="Changed my mind"
        )
    assert exc_info.value.current == "processing"

    after = await apply_order_action(db_session, collector, order.order_id, "update_notes", notes="Packed")
    assert after.status == "processing"
    assert after.cancellation_reason is None
    assert after.collector_notes == "Packed"
    assert (await load_pickup(db_session, pickup.id)).committed_weight == Decimal("4")


@pytest.mark.asyncio
async def test_cancel_releases_committed_weight(db_session, pickup_factory, brand):
    pickup = await pickup_factory(weight="10", verify_at="10")
    order = await create_order(db_session, brand, pickup.id, "6", "20", ADDRESS)

    with pytest.raises(ValidationError):
        await apply_order_action(db_session, brand, order.id, "cancel")

    cancelled = await apply_order_action(
        db_session, brand, order.id, "cancel", cancellation_reason="Budget cut"
    )
    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Budget cut"
    assert [(e.status, e.changed_by_role) for e in cancelled.history] == [
        ("pending", "brand"),
        ("cancelled", "brand"),
    ]
    assert (await load_pickup(db_session, pickup.id)).committed_weight == Decimal("0")


@pytest.mark.asyncio
async def test_actions_are_role_scoped(db_session, pickup_factory, brand, collector):
    pickup = await pickup_factory(verify_at="10")
    order = await create_order(db_session, brand, pickup.id, "3", "20", ADDRESS)

    with pytest.raises(Forbidden):
        await apply_order_action(db_session, brand, order.id, "confirm")
    with pytest.raises(Forbidden):
        await apply_order_action(db_session, collector, order.id, "deliver")
    with pytest.raises(NotFound):
        await apply_order_action(
            db_session, CollectorPrincipal(user_id="collector-9"), order.id, "confirm"
        )


@pytest.mark.asyncio
async def test_full_fulfilment_and_payment(db_session, pickup_factory, brand, collector):
    pickup = await pickup_factory(verify_at="10")
    order = await create_order(db_session, brand, pickup.id, "5", "40", ADDRESS)

    for actor, action in [(collector, "confirm"), (collector, "process"), (collector, "ship"), (brand, "deliver")]:
        order = await apply_order_action(db_session, actor, order.id, action, tracking_number="TRK-1")
    assert order.status == "delivered"
    assert order.tracking_number == "TRK-1"
    assert len(order.history) == 5

    with pytest.raises(ValidationError):
        await create_purchase(db_session, brand, order.order_id, "card", "150")

    payment = await create_purchase(db_session, brand, order.order_id, "card", "200.00")
    assert payment.transaction_id.startswith("CD")
    result = await settle_transaction(db_session, payment.transaction_id, "completed")
    assert result["effects"] == {"paymentStatus": "paid"}

    paid_order = await apply_order_action(db_session, brand, order.id, "update_notes", notes="Received")
    assert paid_order.payment_status == "paid"
    assert paid_order.transaction_id == payment.transaction_id
    assert len(paid_order.history) == 5

    with pytest.raises(ValidationError):
        await create_purchase(db_session, brand, order.order_id, "card", "200.00")


@pytest.mark.asyncio
async def test_colliding_order_id_is_redrawn(db_session, pickup_factory, brand, monkeypatch):
    pickup = await pickup_factory(weight="10", verify_at="10")
    first = await create_order(db_session, brand, pickup.id, "3", "25", ADDRESS)

    drawn = iter([first.order_id, "ORD-2026-10171200-0042"])
    monkeypatch.setattr(orders, "generate_order_id", lambda now=None: next(drawn))

    second = await create_order(db_session, brand, pickup.id, "4", "25", ADDRESS)

    assert second.order_id == "ORD-2026-10171200-0042"
    assert [e.status for e in second.history] == ["pending"]
    reloaded = await load_pickup(db_session, pickup.id)
    assert reloaded.committed_weight == Decimal("7")


@pytest.mark.asyncio
async def test_order_id_exhaustion_releases_the_reservation(db_session, pickup_factory, brand, monkeypatch):
    pickup = await pickup_factory(weight="10", verify_at="10")
    pickup_id = pickup.id
    first = await create_order(db_session, brand, pickup_id, "3", "25", ADDRESS)
    first_order_id = first.order_id
    monkeypatch.setattr(orders, "generate_order_id", lambda now=None: first_order_id)

    with pytest.raises(Conflict):
        await create_order(db_session, brand, pickup_id, "4", "25", ADDRESS)

    reloaded = await load_pickup(db_session, pickup_id)
    assert reloaded.committed_weight == Decimal("3")
