"""Waste hotspot upkeep, reporting and search."""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.config import settings
from ekotaka.db.models import (
    HotspotCollection,
    HotspotStatus,
    Pickup,
    PickupStatus,
    PlasticCategory,
    WasteHotspot,
    utcnow,
)
from ekotaka.errors import FieldError, ValidationError
from ekotaka.lifecycle.history import commit_or_conflict, next_seq
from ekotaka.maps.geo import bounding_box, haversine_m, valid_coordinates

logger = logging.getLogger(__name__)

OPEN_STATUSES = (HotspotStatus.ACTIVE.value, HotspotStatus.DEPLETED.value)
REPORTER_TYPES = ("collector", "authority", "brand")
MAX_HOTSPOTS = 100
MAX_COLLECTION_POINTS = 50


def _in_box(model, center: Sequence[float], radius_m: float) -> tuple:
    min_lng, min_lat, max_lng, max_lat = bounding_box(center, radius_m)
    return (
        model.longitude.between(min_lng, max_lng),
        model.latitude.between(min_lat, max_lat),
    )


async def find_nearby_open_hotspot(
    db: AsyncSession, coordinates: Sequence[float], radius_m: Optional[float] = None
) -> Optional[WasteHotspot]:
    """Closest active or depleted hotspot within ``radius_m`` (merge radius by default)."""
    radius_m = radius_m if radius_m is not None else settings.hotspot_merge_radius_m
    result = await db.execute(
        select(WasteHotspot).where(
            WasteHotspot.status.in_(OPEN_STATUSES),
            *_in_box(WasteHotspot, coordinates, radius_m),
        )
    )
    best, best_distance = None, None
    for hotspot in result.scalars().all():
        distance = haversine_m(coordinates, (hotspot.longitude, hotspot.latitude))
        if distance <= radius_m and (best_distance is None or distance < best_distance):
            best, best_distance = hotspot, distance
    return best


async def _append_collection(db: AsyncSession, hotspot: WasteHotspot, pickup: Pickup, weight: float):
    seq = await next_seq(db, HotspotCollection.seq, HotspotCollection.hotspot_id, hotspot.id)
    db.add(
        HotspotCollection(
            hotspot_id=hotspot.id,
            seq=seq,
            collector_id=pickup.collector_id,
            pickup_id=pickup.id,
            weight=weight,
            category=pickup.category,
            collected_at=utcnow(),
        )
    )


async def update_from_pickup(db: AsyncSession, pickup: Pickup) -> Optional[WasteHotspot]:
    """
    Reflect a new pickup on the hotspot map.

    A hotspot within the merge radius loses the collected weight (and goes
    depleted at zero). Otherwise a pickup of at least
    ``hotspot_min_weight_kg`` seeds a new hotspot, assuming more waste is
    left than was collected.
    """
    coordinates = pickup.location["coordinates"]
    weight = float(pickup.estimated_weight)
    now = utcnow()

    hotspot = await find_nearby_open_hotspot(db, coordinates)
    if hotspot is not None:
        categories = dict(hotspot.categories or {})
        if pickup.category in categories:
            categories[pickup.category] = max(0.0, categories[pickup.category] - weight)
        hotspot.categories = categories
        hotspot.total_weight = max(0.0, hotspot.total_weight - weight)
        if hotspot.total_weight <= 0:
            hotspot.status = HotspotStatus.DEPLETED.value
        hotspot.last_collected_at = now
        hotspot.last_updated = now
        await _append_collection(db, hotspot, pickup, weight)
        await commit_or_conflict(db, f"hotspot {hotspot.id}")
        logger.info(
            f"Hotspot {hotspot.id} collected {weight} kg by pickup {pickup.id}, "
            f"{hotspot.total_weight:.2f} kg left"
        )
        return hotspot

    if weight < settings.hotspot_min_weight_kg:
        return None

    estimated = weight * settings.hotspot_available_multiplier
    hotspot = WasteHotspot(
        address=pickup.location.get("address", ""),
        longitude=coordinates[0],
        latitude=coordinates[1],
        status=HotspotStatus.ACTIVE.value,
        total_weight=estimated,
        categories={pickup.category: estimated},
        reported_by=pickup.collector_id,
        reporter_type="collector",
        description=f"Waste collection point - {pickup.category} plastic collected",
        reported_at=now,
        last_updated=now,
        last_collected_at=now,
        expires_at=now + timedelta(days=settings.hotspot_ttl_days),
    )
    db.add(hotspot)
    await db.flush()
    await _append_collection(db, hotspot, pickup, weight)
    await commit_or_conflict(db, f"hotspot {hotspot.id}")
    logger.info(f"Hotspot {hotspot.id} created from pickup {pickup.id} ({estimated:.2f} kg estimated)")
    return hotspot


def _finite_non_negative(value: Any) -> bool:
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number >= 0


def _validate_report(coordinates: Any, address: Any, total_weight: Any, categories: Any, reporter_type: str) -> float:
    errors: list[FieldError] = []
    if not valid_coordinates(coordinates):
        errors.append(FieldError("location.coordinates", "Coordinates [lng, lat] are required"))
    if not address or not str(address).strip():
        errors.append(FieldError("location.address", "Address is required"))
    weight = 0.0
    try:
        weight = float(total_weight)
        if not math.isfinite(weight) or weight <= 0:
            errors.append(FieldError("estimatedAvailable.totalWeight", "Weight must be a finite number greater than 0"))
    except (TypeError, ValueError):
        errors.append(FieldError("estimatedAvailable.totalWeight", "Estimated available weight is required"))
    for name, amount in (categories or {}).items():
        if name not in PlasticCategory.values():
            errors.append(FieldError("estimatedAvailable.categories", f"Unknown category {name}"))
        elif not _finite_non_negative(amount):
            errors.append(FieldError(f"estimatedAvailable.categories.{name}", "Weight must be a finite number"))
    if reporter_type not in REPORTER_TYPES:
        errors.append(FieldError("reporterType", f"Reporter type must be one of {', '.join(REPORTER_TYPES)}"))
    if errors:
        raise ValidationError(errors)
    return weight


async def report_hotspot(
    db: AsyncSession,
    reporter_id: str,
    coordinates: Any,
    address: Any,
    total_weight: Any,
    categories: Optional[dict[str, float]] = None,
    description: Optional[str] = None,
    access_instructions: Optional[str] = None,
    reporter_type: str = "collector",
) -> tuple[WasteHotspot, bool]:
    """
    Report waste at a location. Returns (hotspot, merged).

    A report within the merge radius of an open hotspot adds to it instead
    of creating a duplicate.
    """
    weight = _validate_report(coordinates, address, total_weight, categories, reporter_type)
    categories = {k: float(v or 0) for k, v in (categories or {}).items()}
    now = utcnow()
    expires_at = now + timedelta(days=settings.hotspot_ttl_days)

    hotspot = await find_nearby_open_hotspot(db, coordinates)
    if hotspot is not None:
        merged = dict(hotspot.categories or {})
        for name, amount in categories.items():
            merged[name] = merged.get(name, 0.0) + amount
        hotspot.categories = merged
        hotspot.total_weight = hotspot.total_weight + weight
        hotspot.status = HotspotStatus.ACTIVE.value
        hotspot.last_updated = now
        hotspot.expires_at = max(hotspot.expires_at, expires_at)
        if description:
            hotspot.description = description
        if access_instructions:
            hotspot.access_instructions = access_instructions
        await commit_or_conflict(db, f"hotspot {hotspot.id}")
        logger.info(f"Hotspot {hotspot.id} topped up by {reporter_id} (+{weight} kg)")
        return hotspot, True

    hotspot = WasteHotspot(
        address=str(address).strip(),
        longitude=float(coordinates[0]),
        latitude=float(coordinates[1]),
        status=HotspotStatus.ACTIVE.value,
        total_weight=weight,
        categories=categories,
        reported_by=reporter_id,
        reporter_type=reporter_type,
        description=description,
        access_instructions=access_instructions,
        reported_at=now,
        last_updated=now,
        expires_at=expires_at,
    )
    db.add(hotspot)
    await commit_or_conflict(db, "new hotspot")
    logger.info(f"Hotspot {hotspot.id} reported by {reporter_id} ({weight} kg)")
    return hotspot, False


async def expire_stale_hotspots(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Move open hotspots past ``expires_at`` to expired. Returns rows changed."""
    now = now or utcnow()
    result = await db.execute(
        update(WasteHotspot)
        .where(WasteHotspot.status.in_(OPEN_STATUSES), WasteHotspot.expires_at < now)
        .values(status=HotspotStatus.EXPIRED.value, last_updated=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Expired {result.rowcount} hotspots")
    return result.rowcount


async def search_hotspots(
    db: AsyncSession,
    center: Sequence[float],
    radius_km: float,
    status: str = "active",
) -> list[tuple[WasteHotspot, float]]:
    """Hotspots within ``radius_km`` of center as (hotspot, distance_m), heaviest first."""
    await expire_stale_hotspots(db)

    radius_m = radius_km * 1000
    conditions = list(_in_box(WasteHotspot, center, radius_m))
    if status == "all":
        conditions.append(WasteHotspot.status.in_(OPEN_STATUSES))
    else:
        conditions.append(WasteHotspot.status == status)

    result = await db.execute(
        select(WasteHotspot)
        .where(*conditions)
        .order_by(WasteHotspot.total_weight.desc(), WasteHotspot.last_updated.desc())
    )
    found = []
    for hotspot in result.scalars().all():
        distance = haversine_m(center, (hotspot.longitude, hotspot.latitude))
        if distance <= radius_m:
            found.append((hotspot, distance))
        if len(found) >= MAX_HOTSPOTS:
            break

    metrics.hotspots_active.set(
        sum(1 for h, _ in found if h.status == HotspotStatus.ACTIVE.value)
    )
    return found


async def recent_collection_points(
    db: AsyncSession, center: Sequence[float], radius_km: float, now: Optional[datetime] = None
) -> list[Pickup]:
    """Verified or paid pickups from the last ``recent_pickup_days`` near center."""
    now = now or utcnow()
    radius_m = radius_km * 1000
    result = await db.execute(
        select(Pickup)
        .where(
            Pickup.status.in_((PickupStatus.VERIFIED.value, PickupStatus.PAID.value)),
            Pickup.created_at >= now - timedelta(days=settings.recent_pickup_days),
            *_in_box(Pickup, center, radius_m),
        )
        .order_by(Pickup.created_at.desc())
    )
    points = [
        p
        for p in result.scalars().all()
        if haversine_m(center, (p.longitude, p.latitude)) <= radius_m
    ]
    return points[:MAX_COLLECTION_POINTS]


async def collection_counts(db: AsyncSession, hotspot_ids: Sequence[str]) -> dict[str, int]:
    """Number of recorded collections per hotspot id."""
    if not hotspot_ids:
        return {}
    result = await db.execute(
        select(HotspotCollection.hotspot_id, func.count(HotspotCollection.id))
        .where(HotspotCollection.hotspot_id.in_(list(hotspot_ids)))
        .group_by(HotspotCollection.hotspot_id)
    )
    return {hotspot_id: int(count) for hotspot_id, count in result.all()}
