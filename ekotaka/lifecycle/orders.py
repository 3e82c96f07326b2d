"""Order lifecycle: creation against pickup inventory and role-scoped transitions."""

import logging
import random
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.analytics.stats import get_or_create_brand_profile, refresh_after_change
from ekotaka.auth import BrandPrincipal, CollectorPrincipal, Principal
from ekotaka.db.models import (
    Order,
    OrderStatus,
    OrderStatusEvent,
    Pickup,
    PickupStatus,
    utcnow,
)
from ekotaka.errors import (
    Conflict,
    FieldError,
    Forbidden,
    InsufficientInventory,
    InvalidPrice,
    NotFound,
    ValidationError,
)
from ekotaka.lifecycle.history import commit_or_conflict, compare_and_set, next_seq
from ekotaka.lifecycle.machine import ORDER_MACHINE
from ekotaka.lifecycle.pickups import load_pickup

logger = logging.getLogger(__name__)

MIN_ORDER_QUANTITY = Decimal("0.1")
ORDER_ID_ATTEMPTS = 3
CENT = Decimal("0.01")

# action -> (target status, timestamp column)
ORDER_ACTIONS = {
    "confirm": (OrderStatus.CONFIRMED.value, "confirmed_at"),
    "process": (OrderStatus.PROCESSING.value, "processing_at"),
    "ship": (OrderStatus.SHIPPED.value, "shipped_at"),
    "deliver": (OrderStatus.DELIVERED.value, "delivered_at"),
    "cancel": (OrderStatus.CANCELLED.value, "cancelled_at"),
}

SHIPPING_ADDRESS_FIELDS = ("street", "city", "district", "country")


def generate_order_id(now: Optional[datetime] = None) -> str:
    """Human-readable order id: ORD-YYYY-MMDDHHmm-XXXX."""
    now = now or utcnow()
    return f"ORD-{now:%Y}-{now:%m%d%H%M}-{random.randint(0, 9999):04d}"


def compute_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _validate_order_input(
    pickup_id: Any, quantity: Any, unit_price: Any, shipping_address: Optional[dict]
) -> tuple[Decimal, Decimal]:
    errors: list[FieldError] = []
    if not pickup_id:
        errors.append(FieldError("pickupId", "Pickup is required"))

    qty = parse_decimal(quantity)
    if qty is None:
        errors.append(FieldError("quantity", "Quantity must be a number"))
    elif qty < MIN_ORDER_QUANTITY:
        errors.append(FieldError("quantity", f"Quantity must be at least {MIN_ORDER_QUANTITY} kg"))

    price = parse_decimal(unit_price)
    price_error = price is None or price <= 0
    if price_error:
        errors.append(FieldError("unitPrice", f"Unit price must be greater than 0 (got {unit_price})"))

    if shipping_address is not None:
        for name in SHIPPING_ADDRESS_FIELDS:
            if not str(shipping_address.get(name) or "").strip():
                errors.append(FieldError(f"shippingAddress.{name}", f"{name} is required"))

    if price_error and len(errors) == 1:
        raise InvalidPrice(unit_price)
    if errors:
        raise ValidationError(errors)
    return qty, price


async def load_order(db: AsyncSession, order_ref: str) -> Order:
    """Load by internal id or human-readable order id."""
    result = await db.execute(
        select(Order)
        .where(or_(Order.id == order_ref, Order.order_id == order_ref))
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_ref)
    return order


def _is_participant(order: Order, principal: Principal) -> bool:
    if isinstance(principal, BrandPrincipal):
        return order.brand_id == principal.user_id
    return order.collector_id == principal.user_id


async def load_order_for(db: AsyncSession, order_ref: str, principal: Principal) -> Order:
    order = await load_order(db, order_ref)
    if not _is_participant(order, principal):
        raise NotFound("Order", order_ref)
    return order


async def _insert_order(db: AsyncSession, now: datetime, **fields) -> Order:
    """Insert an order under a fresh human-readable id, redrawing on collision.

    Each attempt runs in a SAVEPOINT so the inventory reservation already
    made in this transaction survives a duplicate id.
    """
    for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
        order = Order(order_id=generate_order_id(now), **fields)
        try:
            async with db.begin_nested():
                db.add(order)
            return order
        except IntegrityError as e:
            logger.warning(f"Order id {order.order_id} already taken (attempt {attempt}): {e.orig}")

    await db.rollback()
    raise Conflict(f"Could not allocate a unique order id after {ORDER_ID_ATTEMPTS} attempts, please retry")


async def create_order(
    db: AsyncSession,
    brand: BrandPrincipal,
    pickup_id: str,
    quantity: Any,
    unit_price: Any,
    shipping_address: Optional[dict] = None,
    notes: Optional[str] = None,
    pickup_location: Optional[dict] = None,
    estimated_delivery_date: Optional[datetime] = None,
) -> Order:
    """
    Create a pending order and reserve its quantity on the pickup.

    The reservation is a single conditional UPDATE that only succeeds while
    committed + requested stays within the pickup's weight, so concurrent
    orders can never oversell it.
    """
    if shipping_address is None:
        profile = await get_or_create_brand_profile(db, brand.user_id)
        shipping_address = profile.billing_address
        if not shipping_address:
            raise ValidationError.single("shippingAddress", "Shipping address is required")

    qty, price = _validate_order_input(pickup_id, quantity, unit_price, shipping_address)

    pickup = await load_pickup(db, pickup_id)
    if pickup.status != PickupStatus.VERIFIED.value:
        raise ValidationError.single(
            "pickupId", "Pickup is not available for purchase. Only verified pickups can be ordered."
        )

    reserved = await db.execute(
        update(Pickup)
        .where(
            Pickup.id == pickup_id,
            Pickup.status == PickupStatus.VERIFIED.value,
            Pickup.committed_weight + qty
            <= func.coalesce(Pickup.actual_weight, Pickup.estimated_weight),
        )
        .values(committed_weight=Pickup.committed_weight + qty)
        .execution_options(synchronize_session=False)
    )
    if reserved.rowcount != 1:
        await db.rollback()
        fresh = await load_pickup(db, pickup_id)
        if fresh.status != PickupStatus.VERIFIED.value:
            raise ValidationError.single("pickupId", "Pickup is no longer available for purchase")
        metrics.inventory_rejections_total.inc()
        logger.info(
            f"Order refused for pickup {pickup_id}: requested {qty} kg, available {fresh.available_weight} kg"
        )
        raise InsufficientInventory(fresh.available_weight, qty)

    now = utcnow()
    order = await _insert_order(
        db,
        now,
        brand_id=brand.user_id,
        collector_id=pickup.collector_id,
        pickup_id=pickup_id,
        quantity=qty,
        unit_price=price,
        total_amount=compute_total(qty, price),
        status=OrderStatus.PENDING.value,
        order_date=now,
        shipping_address=shipping_address,
        pickup_location=pickup_location
        or {"coordinates": pickup.location.get("coordinates"), "address": pickup.location.get("address")},
        notes=notes,
        estimated_delivery_date=estimated_delivery_date,
        order_metadata={"source": "web"},
    )
    db.add(
        OrderStatusEvent(
            order_id=order.id,
            seq=1,
            status=OrderStatus.PENDING.value,
            timestamp=now,
            notes="Order created",
            changed_by=brand.user_id,
            changed_by_role=brand.role,
        )
    )
    await commit_or_conflict(db, f"order for pickup {pickup_id}")

    metrics.orders_created_total.labels(category=pickup.category).inc()
    logger.info(
        f"Order {order.order_id} created by {brand.user_id}: {qty} kg x {price} = {order.total_amount}"
    )
    await refresh_after_change(db, brand_ids=[brand.user_id])
    return await load_order(db, order.id)


async def apply_order_action(
    db: AsyncSession,
    principal: Principal,
    order_ref: str,
    action: str,
    notes: Optional[str] = None,
    cancellation_reason: Optional[str] = None,
    tracking_number: Optional[str] = None,
) -> Order:
    """
    Apply a participant's action to an order.

    Raises:
        NotFound: Unknown order, or the caller is not a participant
        Forbidden: The caller's role may not perform this action
        ValidationError: Unknown action, or cancel without a reason
        InvalidTransition: The action is not valid from the current status
    """
    order = await load_order_for(db, order_ref, principal)

    if action not in ORDER_ACTIONS and action != "update_notes":
        raise ValidationError.single(
            "action", f"Invalid action. Supported actions: {', '.join([*ORDER_ACTIONS, 'update_notes'])}"
        )
    if action not in principal.order_actions:
        raise Forbidden(f"A {principal.role} cannot {action.replace('_', ' ')} an order")

    if action == "update_notes":
        if isinstance(principal, CollectorPrincipal):
            order.collector_notes = notes
        else:
            order.notes = notes
        await db.commit()
        return await load_order(db, order.id)

    target, timestamp_column = ORDER_ACTIONS[action]
    reason = (cancellation_reason or "").strip()
    if action == "cancel" and not reason:
        raise ValidationError.single("cancellationReason", "Cancellation reason is required")

    now = utcnow()
    values: dict[str, Any] = {timestamp_column: now, "updated_at": now}
    if action == "cancel":
        values["cancellation_reason"] = reason
    if action == "ship" and tracking_number:
        values["tracking_number"] = tracking_number

    await compare_and_set(
        db, Order, ORDER_MACHINE, order.id, expected=order.status, requested=target, values=values
    )

    if action == "cancel":
        # Give the reserved weight back in the same transaction
        await db.execute(
            update(Pickup)
            .where(Pickup.id == order.pickup_id)
            .values(committed_weight=Pickup.committed_weight - order.quantity)
            .execution_options(synchronize_session=False)
        )

    seq = await next_seq(db, OrderStatusEvent.seq, OrderStatusEvent.order_id, order.id)
    db.add(
        OrderStatusEvent(
            order_id=order.id,
            seq=seq,
            status=target,
            timestamp=now,
            notes=reason if action == "cancel" else notes,
            changed_by=principal.user_id,
            changed_by_role=principal.role,
        )
    )
    await commit_or_conflict(db, f"order {order.order_id}")

    logger.info(f"Order {order.order_id}: {order.status} -> {target} by {principal.role} {principal.user_id}")
    await refresh_after_change(db, brand_ids=[order.brand_id])
    return await load_order(db, order.id)


async def list_orders(
    db: AsyncSession,
    principal: Principal,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "date",
    sort_order: str = "desc",
) -> tuple[list[Order], int]:
    """Orders where the caller is the brand or the collector."""
    owner = Order.brand_id if isinstance(principal, BrandPrincipal) else Order.collector_id
    conditions = [owner == principal.user_id]
    if status and status != "all":
        conditions.append(Order.status == status)

    sort_column = Order.total_amount if sort_by == "amount" else Order.order_date
    ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()

    total = await db.execute(select(func.count(Order.id)).where(*conditions))
    rows = await db.execute(
        select(Order).where(*conditions).order_by(ordering).offset((page - 1) * limit).limit(limit)
    )
    return list(rows.scalars().all()), int(total.scalar_one())
