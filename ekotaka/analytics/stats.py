"""Profile stats caches, recomputed from pickups, orders, transactions and the token ledger."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.config import settings
from ekotaka.db.models import (
    BrandProfile,
    CollectorProfile,
    Order,
    OrderStatus,
    PaymentStatus,
    Pickup,
    PickupStatus,
    Transaction,
    TransactionStatus,
    utcnow,
)
from ekotaka.ledger.tokens import get_balance

logger = logging.getLogger(__name__)

ACTIVE_ORDER_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
)
VERIFIED_PICKUP_STATUSES = (PickupStatus.VERIFIED.value, PickupStatus.PAID.value)


def pickup_weight():
    """SQL expression for a pickup's effective weight."""
    return func.coalesce(Pickup.actual_weight, Pickup.estimated_weight)


async def get_or_create_collector_profile(db: AsyncSession, user_id: str) -> CollectorProfile:
    result = await db.execute(select(CollectorProfile).where(CollectorProfile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        profile = CollectorProfile(
            user_id=user_id,
            personal_info={},
            preferences={"notifications": {"email": True, "push": True, "sms": False}, "language": "en", "currency": "BDT"},
            stats={"memberSince": utcnow().isoformat()},
        )
        db.add(profile)
        await db.flush()
    return profile


async def get_or_create_brand_profile(db: AsyncSession, user_id: str) -> BrandProfile:
    result = await db.execute(select(BrandProfile).where(BrandProfile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        profile = BrandProfile(
            user_id=user_id,
            company_info={},
            contact_info={},
            preferences={"notifications": {"email": True, "push": True, "sms": False}, "language": "en", "currency": "BDT"},
            stats={"memberSince": utcnow().isoformat()},
        )
        db.add(profile)
        await db.flush()
    return profile


async def compute_collector_stats(db: AsyncSession, user_id: str) -> dict:
    verified = Pickup.status.in_(VERIFIED_PICKUP_STATUSES)
    pickups = await db.execute(
        select(
            func.count(Pickup.id),
            func.coalesce(func.sum(case((verified, 1), else_=0)), 0),
            func.coalesce(func.sum(case((verified, pickup_weight()), else_=0)), 0),
        ).where(Pickup.collector_id == user_id)
    )
    total, verified_count, weight = pickups.one()

    earnings = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.collector_id == user_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
    )

    total = int(total)
    verified_count = int(verified_count)
    weight = float(weight)
    return {
        "totalPickups": total,
        "verifiedPickups": verified_count,
        "verificationRate": round(verified_count / total * 100, 1) if total else 0.0,
        "totalWeightCollected": round(weight, 2),
        "totalCO2Saved": round(weight * settings.co2_per_kg, 2),
        "totalEarnings": round(float(earnings.scalar_one()), 2),
        "ekoTokens": await get_balance(db, user_id),
    }


async def compute_brand_stats(db: AsyncSession, user_id: str) -> dict:
    not_cancelled = Order.status != OrderStatus.CANCELLED.value
    orders = await db.execute(
        select(
            func.coalesce(func.sum(case((not_cancelled, 1), else_=0)), 0),
            func.coalesce(
                func.sum(
                    case((Order.payment_status == PaymentStatus.PAID.value, Order.total_amount), else_=0)
                ),
                0,
            ),
            func.coalesce(func.sum(case((Order.status.in_(ACTIVE_ORDER_STATUSES), 1), else_=0)), 0),
            func.coalesce(
                func.sum(case((Order.status == OrderStatus.DELIVERED.value, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((Order.status == OrderStatus.CANCELLED.value, 1), else_=0)), 0
            ),
            func.coalesce(func.sum(case((not_cancelled, Order.quantity), else_=0)), 0),
            func.coalesce(func.sum(case((not_cancelled, Order.total_amount), else_=0)), 0),
        ).where(Order.brand_id == user_id)
    )
    purchases, spent, active, completed, cancelled, weight, ordered_value = orders.one()

    purchases = int(purchases)
    weight = float(weight)
    return {
        "totalPurchases": purchases,
        "totalSpent": round(float(spent), 2),
        "activeOrders": int(active),
        "completedOrders": int(completed),
        "cancelledOrders": int(cancelled),
        "totalWeightPurchased": round(weight, 2),
        "totalCO2Impact": round(weight * settings.co2_per_kg, 2),
        "averageOrderValue": round(float(ordered_value) / purchases, 2) if purchases else 0.0,
    }


async def refresh_collector_stats(db: AsyncSession, user_id: str) -> CollectorProfile:
    """Recompute and store a collector's stats cache."""
    profile = await get_or_create_collector_profile(db, user_id)
    now = utcnow()
    stats = await compute_collector_stats(db, user_id)
    stats["memberSince"] = (profile.stats or {}).get("memberSince", profile.created_at.isoformat())
    stats["lastStatsUpdate"] = now.isoformat()
    profile.stats = stats
    profile.stats_updated_at = now
    await db.commit()
    return profile


async def refresh_brand_stats(db: AsyncSession, user_id: str) -> BrandProfile:
    """Recompute and store a brand's stats cache."""
    profile = await get_or_create_brand_profile(db, user_id)
    now = utcnow()
    stats = await compute_brand_stats(db, user_id)
    stats["memberSince"] = (profile.stats or {}).get("memberSince", profile.created_at.isoformat())
    stats["lastStatsUpdate"] = now.isoformat()
    profile.stats = stats
    profile.stats_updated_at = now
    await db.commit()
    return profile


def _is_stale(updated_at: Optional[datetime], now: datetime) -> bool:
    if updated_at is None:
        return True
    return now - updated_at > timedelta(seconds=settings.stats_ttl_seconds)


async def fresh_collector_profile(db: AsyncSession, user_id: str) -> CollectorProfile:
    """Collector profile whose stats are at most ``stats_ttl_seconds`` old."""
    profile = await get_or_create_collector_profile(db, user_id)
    if _is_stale(profile.stats_updated_at, utcnow()):
        return await refresh_collector_stats(db, user_id)
    return profile


async def fresh_brand_profile(db: AsyncSession, user_id: str) -> BrandProfile:
    """Brand profile whose stats are at most ``stats_ttl_seconds`` old."""
    profile = await get_or_create_brand_profile(db, user_id)
    if _is_stale(profile.stats_updated_at, utcnow()):
        return await refresh_brand_stats(db, user_id)
    return profile


async def refresh_after_change(
    db: AsyncSession,
    collector_ids: Iterable[str] = (),
    brand_ids: Iterable[str] = (),
):
    """
    Recompute stats after a committed state change.

    The change itself is already durable; a failed recompute leaves a stale
    cache that the next read past the TTL repairs, so it is logged only.
    """
    for user_id in set(collector_ids):
        try:
            await refresh_collector_stats(db, user_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to refresh collector stats for {user_id}: {e}", exc_info=True)
    for user_id in set(brand_ids):
        try:
            await refresh_brand_stats(db, user_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to refresh brand stats for {user_id}: {e}", exc_info=True)
