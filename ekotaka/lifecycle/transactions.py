"""Payment transactions: brand purchases, collector payouts and gateway settlement."""

import logging
import random
import time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.analytics.stats import refresh_after_change
from ekotaka.auth import BrandPrincipal, Principal
from ekotaka.db.models import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PickupStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from ekotaka.errors import Conflict, NotFound, ValidationError
from ekotaka.lifecycle.history import commit_or_conflict, compare_and_set
from ekotaka.lifecycle.machine import TRANSACTION_MACHINE
from ekotaka.lifecycle.orders import load_order_for, parse_decimal
from ekotaka.lifecycle.pickups import load_pickup, mark_paid

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

TRANSACTION_ID_PREFIXES = {
    PaymentMethod.BKASH.value: "BK",
    PaymentMethod.NAGAD.value: "NG",
    PaymentMethod.BANK_TRANSFER.value: "BT",
    PaymentMethod.CARD.value: "CD",
}

ACTIVE_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value)


def generate_transaction_id(payment_method: str, now_ms: Optional[int] = None) -> str:
    """Gateway-style id: method prefix, epoch milliseconds, 4 random digits."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    prefix = TRANSACTION_ID_PREFIXES.get(payment_method, "TX")
    return f"{prefix}{now_ms}{random.randint(0, 9999):04d}"


def _check_payment_method(payment_method: Any):
    if payment_method not in TRANSACTION_ID_PREFIXES:
        raise ValidationError.single(
            "paymentMethod", f"Payment method must be one of {', '.join(TRANSACTION_ID_PREFIXES)}"
        )


async def load_transaction(db: AsyncSession, transaction_ref: str) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(or_(Transaction.id == transaction_ref, Transaction.transaction_id == transaction_ref))
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFound("Transaction", transaction_ref)
    return transaction


async def create_purchase(
    db: AsyncSession,
    brand: BrandPrincipal,
    order_ref: str,
    payment_method: str,
    amount: Any,
) -> Transaction:
    """Open a pending brand_purchase for one of the brand's orders."""
    _check_payment_method(payment_method)
    paid = parse_decimal(amount)
    if paid is None or paid <= 0:
        raise ValidationError.single("amount", "Amount must be greater than 0")

    order = await load_order_for(db, order_ref, brand)
    if order.status == OrderStatus.CANCELLED.value:
        raise ValidationError.single("orderId", "Cannot pay for a cancelled order")
    if order.payment_status == PaymentStatus.PAID.value:
        raise ValidationError.single("orderId", "Order is already paid")
    if abs(paid - order.total_amount) > AMOUNT_TOLERANCE:
        raise ValidationError.single(
            "amount", f"Amount mismatch. Order total: {order.total_amount}, Provided: {paid}"
        )

    in_flight = await db.execute(
        select(func.count(Transaction.id)).where(
            Transaction.order_id == order.id,
            Transaction.status.in_(ACTIVE_STATUSES),
        )
    )
    if in_flight.scalar_one():
        raise Conflict("A payment for this order is already in progress")

    transaction = Transaction(
        transaction_id=generate_transaction_id(payment_method),
        transaction_type=TransactionType.BRAND_PURCHASE.value,
        collector_id=order.collector_id,
        brand_id=brand.user_id,
        pickup_id=order.pickup_id,
        order_id=order.id,
        amount=order.total_amount,
        payment_method=payment_method,
        status=TransactionStatus.PENDING.value,
        initiated_at=utcnow(),
        transaction_metadata={"reference": order.order_id},
    )
    db.add(transaction)
    await commit_or_conflict(db, f"payment for order {order.order_id}")

    logger.info(
        f"Payment {transaction.transaction_id} opened by {brand.user_id} for order {order.order_id}: "
        f"{transaction.amount} via {payment_method}"
    )
    return transaction


async def create_payout(
    db: AsyncSession,
    pickup_id: str,
    amount: Any,
    payment_method: str,
    initiated_by: str,
) -> Transaction:
    """Open a pending collector_payout for a verified pickup."""
    _check_payment_method(payment_method)
    value = parse_decimal(amount)
    if value is None or value < 0:
        raise ValidationError.single("amount", "Amount must be 0 or greater")

    pickup = await load_pickup(db, pickup_id)
    if pickup.status != PickupStatus.VERIFIED.value:
        raise ValidationError.single("pickupId", f"Only verified pickups can be paid out (status {pickup.status})")

    existing = await db.execute(
        select(func.count(Transaction.id)).where(
            Transaction.pickup_id == pickup_id,
            Transaction.transaction_type == TransactionType.COLLECTOR_PAYOUT.value,
            Transaction.status.in_((*ACTIVE_STATUSES, TransactionStatus.COMPLETED.value)),
        )
    )
    if existing.scalar_one():
        raise Conflict(f"Pickup {pickup_id} already has a payout")

    transaction = Transaction(
        transaction_id=generate_transaction_id(payment_method),
        transaction_type=TransactionType.COLLECTOR_PAYOUT.value,
        collector_id=pickup.collector_id,
        pickup_id=pickup_id,
        amount=value,
        payment_method=payment_method,
        status=TransactionStatus.PENDING.value,
        initiated_at=utcnow(),
        transaction_metadata={"initiatedBy": initiated_by},
    )
    db.add(transaction)
    await commit_or_conflict(db, f"payout for pickup {pickup_id}")

    logger.info(f"Payout {transaction.transaction_id} opened for pickup {pickup_id}: {value}")
    return transaction


async def settle_transaction(
    db: AsyncSession,
    transaction_ref: str,
    status: str,
    failure_reason: Optional[str] = None,
    gateway_reference: Optional[str] = None,
) -> dict[str, Any]:
    """
    Apply a gateway status update and its effects in one DB transaction.

    A completed purchase marks the order paid; a failed one marks the order's
    payment failed. A completed payout moves the pickup to paid and credits
    EkoTokens.
    """
    if status not in {s.value for s in TransactionStatus}:
        raise ValidationError.single("status", f"Unknown transaction status {status}")

    transaction = await load_transaction(db, transaction_ref)
    now = utcnow()
    values: dict[str, Any] = {"updated_at": now}
    if status == TransactionStatus.COMPLETED.value:
        values["completed_at"] = now
    elif status == TransactionStatus.FAILED.value:
        values["failed_at"] = now
        values["failure_reason"] = failure_reason or "Payment failed"
    if gateway_reference:
        metadata = dict(transaction.transaction_metadata or {})
        metadata["gatewayReference"] = gateway_reference
        values["transaction_metadata"] = metadata

    await compare_and_set(
        db,
        Transaction,
        TRANSACTION_MACHINE,
        transaction.id,
        expected=transaction.status,
        requested=status,
        values=values,
    )

    effects: dict[str, Any] = {}
    if transaction.transaction_type == TransactionType.BRAND_PURCHASE.value and transaction.order_id:
        if status == TransactionStatus.COMPLETED.value:
            await db.execute(
                update(Order)
                .where(Order.id == transaction.order_id)
                .values(
                    payment_status=PaymentStatus.PAID.value,
                    payment_method=transaction.payment_method,
                    transaction_id=transaction.transaction_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            effects["paymentStatus"] = PaymentStatus.PAID.value
        elif status == TransactionStatus.FAILED.value:
            await db.execute(
                update(Order)
                .where(
                    Order.id == transaction.order_id,
                    Order.payment_status != PaymentStatus.PAID.value,
                )
                .values(payment_status=PaymentStatus.FAILED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            effects["paymentStatus"] = PaymentStatus.FAILED.value
    elif (
        transaction.transaction_type == TransactionType.COLLECTOR_PAYOUT.value
        and status == TransactionStatus.COMPLETED.value
    ):
        effects["tokens"] = await mark_paid(db, transaction.pickup_id, transaction.transaction_id)
        effects["pickupStatus"] = PickupStatus.PAID.value

    await commit_or_conflict(db, f"transaction {transaction.transaction_id}")

    metrics.transactions_total.labels(
        transaction_type=transaction.transaction_type, status=status
    ).inc()
    logger.info(f"Transaction {transaction.transaction_id}: {transaction.status} -> {status}")

    await refresh_after_change(
        db,
        collector_ids=[transaction.collector_id],
        brand_ids=[transaction.brand_id] if transaction.brand_id else [],
    )
    return {"transaction": await load_transaction(db, transaction.id), "effects": effects}


async def list_transactions(
    db: AsyncSession,
    principal: Principal,
    status: Optional[str] = None,
    transaction_type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Transaction], int]:
    owner = Transaction.brand_id if isinstance(principal, BrandPrincipal) else Transaction.collector_id
    conditions = [owner == principal.user_id]
    if status and status != "all":
        conditions.append(Transaction.status == status)
    if transaction_type and transaction_type != "all":
        conditions.append(Transaction.transaction_type == transaction_type)

    total = await db.execute(select(func.count(Transaction.id)).where(*conditions))
    rows = await db.execute(
        select(Transaction)
        .where(*conditions)
        .order_by(Transaction.initiated_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(rows.scalars().all()), int(total.scalar_one())
