"""Read models for the collector dashboard and the brand inventory/analytics pages."""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.analytics.stats import (
    VERIFIED_PICKUP_STATUSES,
    fresh_brand_profile,
    fresh_collector_profile,
    pickup_weight,
)
from ekotaka.config import settings
from ekotaka.db.models import Order, OrderStatus, Pickup, PickupStatus, PlasticCategory, utcnow
from ekotaka.errors import ValidationError
from ekotaka.ledger.calculator import next_milestone
from ekotaka.ledger.tokens import count_paid_pickups, get_balance

logger = logging.getLogger(__name__)

RECENT_PICKUPS = 5
DASHBOARD_MONTHS = 6
TOP_COLLECTORS = 5

# grouping -> (window, bucket label format)
ANALYTICS_PERIODS = {
    "daily": (timedelta(days=30), "%Y-%m-%d"),
    "weekly": (timedelta(weeks=12), "%G-W%V"),
    "monthly": (timedelta(days=365), "%Y-%m"),
}

INVENTORY_SORTS = ("date", "weight")


def _month_labels(now: datetime, months: int) -> list[str]:
    labels = []
    year, month = now.year, now.month
    for _ in range(months):
        labels.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(labels))


async def collector_dashboard(db: AsyncSession, collector_id: str) -> dict[str, Any]:
    now = utcnow()
    profile = await fresh_collector_profile(db, collector_id)

    rows = await db.execute(
        select(Pickup.status, func.count(Pickup.id))
        .where(Pickup.collector_id == collector_id)
        .group_by(Pickup.status)
    )
    status_counts = {status.value: 0 for status in PickupStatus}
    status_counts.update({status: int(count) for status, count in rows.all()})

    verified = Pickup.status.in_(VERIFIED_PICKUP_STATUSES)
    rows = await db.execute(
        select(Pickup.category, func.count(Pickup.id), func.coalesce(func.sum(pickup_weight()), 0))
        .where(Pickup.collector_id == collector_id, verified)
        .group_by(Pickup.category)
    )
    categories = [
        {
            "category": category,
            "count": int(count),
            "weight": round(float(weight), 2),
            "co2Saved": round(float(weight) * settings.co2_per_kg, 2),
        }
        for category, count, weight in rows.all()
    ]
    categories.sort(key=lambda c: c["weight"], reverse=True)

    months = _month_labels(now, DASHBOARD_MONTHS)
    monthly = OrderedDict((label, {"month": label, "weight": 0.0, "pickups": 0}) for label in months)
    window_start = datetime.strptime(months[0] + "-01", "%Y-%m-%d")
    rows = await db.execute(
        select(Pickup.created_at, pickup_weight()).where(
            Pickup.collector_id == collector_id,
            verified,
            Pickup.created_at >= window_start,
        )
    )
    for created_at, weight in rows.all():
        bucket = monthly.get(f"{created_at:%Y-%m}")
        if bucket is not None:
            bucket["weight"] = round(bucket["weight"] + float(weight), 2)
            bucket["pickups"] += 1

    recent = await db.execute(
        select(Pickup)
        .where(Pickup.collector_id == collector_id)
        .order_by(Pickup.created_at.desc())
        .limit(RECENT_PICKUPS)
    )

    return {
        "stats": profile.stats,
        "statusCounts": status_counts,
        "categoryBreakdown": categories,
        "monthlyWeight": list(monthly.values()),
        "recentPickups": list(recent.scalars().all()),
        "tokens": {
            "balance": await get_balance(db, collector_id),
            "nextMilestone": next_milestone(await count_paid_pickups(db, collector_id)),
        },
    }


async def brand_inventory(
    db: AsyncSession,
    category: Optional[str] = None,
    min_weight: Optional[float] = None,
    max_weight: Optional[float] = None,
    location: Optional[str] = None,
    sort_by: str = "date",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Pickup], int]:
    """Verified pickups that still have weight left to order."""
    if category and category != "all" and category not in PlasticCategory.values():
        raise ValidationError.single("category", "Unknown plastic category")
    if sort_by not in INVENTORY_SORTS:
        raise ValidationError.single("sortBy", f"sortBy must be one of {', '.join(INVENTORY_SORTS)}")

    available = pickup_weight() - Pickup.committed_weight
    conditions = [Pickup.status == PickupStatus.VERIFIED.value, available > 0]
    if category and category != "all":
        conditions.append(Pickup.category == category)
    if min_weight is not None:
        conditions.append(available >= min_weight)
    if max_weight is not None:
        conditions.append(available <= max_weight)
    if location and location.strip():
        address = Pickup.location["address"].as_string()
        conditions.append(func.lower(address).contains(location.strip().lower()))

    sort_column = available if sort_by == "weight" else Pickup.created_at
    ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()

    total = await db.execute(select(func.count(Pickup.id)).where(*conditions))
    rows = await db.execute(
        select(Pickup).where(*conditions).order_by(ordering).offset((page - 1) * limit).limit(limit)
    )
    return list(rows.scalars().all()), int(total.scalar_one())


async def brand_analytics(db: AsyncSession, brand_id: str, period: str = "monthly") -> dict[str, Any]:
    """Spending and volume trends grouped daily, weekly or monthly."""
    if period not in ANALYTICS_PERIODS:
        raise ValidationError.single(
            "period", f"period must be one of {', '.join(ANALYTICS_PERIODS)}"
        )
    window, label_format = ANALYTICS_PERIODS[period]
    now = utcnow()
    since = now - window

    profile = await fresh_brand_profile(db, brand_id)

    rows = await db.execute(
        select(Order.order_date, Order.quantity, Order.total_amount, Order.collector_id, Pickup.category)
        .join(Pickup, Pickup.id == Order.pickup_id)
        .where(
            Order.brand_id == brand_id,
            Order.status != OrderStatus.CANCELLED.value,
            Order.order_date >= since,
        )
        .order_by(Order.order_date.asc())
    )

    trends: "OrderedDict[str, dict[str, Any]]" = OrderedDict()
    categories: dict[str, dict[str, Any]] = {}
    collectors: dict[str, dict[str, Any]] = {}
    total_weight = 0.0
    total_spent = 0.0
    order_count = 0

    for order_date, quantity, amount, collector_id, category in rows.all():
        weight = float(quantity)
        spent = float(amount)
        total_weight += weight
        total_spent += spent
        order_count += 1

        label = order_date.strftime(label_format)
        bucket = trends.setdefault(label, {"period": label, "spent": 0.0, "weight": 0.0, "orders": 0})
        bucket["spent"] = round(bucket["spent"] + spent, 2)
        bucket["weight"] = round(bucket["weight"] + weight, 2)
        bucket["orders"] += 1

        entry = categories.setdefault(category, {"category": category, "weight": 0.0, "spent": 0.0, "orders": 0})
        entry["weight"] = round(entry["weight"] + weight, 2)
        entry["spent"] = round(entry["spent"] + spent, 2)
        entry["orders"] += 1

        seller = collectors.setdefault(
            collector_id, {"collectorId": collector_id, "weight": 0.0, "spent": 0.0, "orders": 0}
        )
        seller["weight"] = round(seller["weight"] + weight, 2)
        seller["spent"] = round(seller["spent"] + spent, 2)
        seller["orders"] += 1

    for entry in categories.values():
        entry["percentage"] = round(entry["weight"] / total_weight * 100, 1) if total_weight else 0.0

    top = sorted(collectors.values(), key=lambda c: c["weight"], reverse=True)[:TOP_COLLECTORS]

    return {
        "period": period,
        "since": since.isoformat(),
        "summary": {
            "orders": order_count,
            "totalSpent": round(total_spent, 2),
            "totalWeight": round(total_weight, 2),
            "averageOrderValue": round(total_spent / order_count, 2) if order_count else 0.0,
        },
        "stats": profile.stats,
        "trends": list(trends.values()),
        "categoryBreakdown": sorted(categories.values(), key=lambda c: c["weight"], reverse=True),
        "topCollectors": top,
        "co2Impact": {
            "periodKg": round(total_weight * settings.co2_per_kg, 2),
            "lifetimeKg": (profile.stats or {}).get("totalCO2Impact", 0.0),
            "kgPerKgPlastic": settings.co2_per_kg,
        },
    }
