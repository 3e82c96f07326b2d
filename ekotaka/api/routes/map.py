"""Map routes: hotspots, recent collection points, geocoding and route planning."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, FiniteFloat
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.api.deps import get_database, get_geocoder, get_principal
from ekotaka.api.serializers import hotspot_out
from ekotaka.auth import Principal
from ekotaka.config import settings
from ekotaka.errors import ValidationError
from ekotaka.maps.geo import valid_coordinates
from ekotaka.maps.geocoding import Geocoder
from ekotaka.maps.hotspots import (
    collection_counts,
    recent_collection_points,
    report_hotspot,
    search_hotspots,
)
from ekotaka.maps.route_optimizer import MAX_WAYPOINTS, STRATEGIES, Waypoint, optimize_route

router = APIRouter(prefix="/api/map", tags=["map"])


class HotspotReport(BaseModel):
    coordinates: list[float]
    address: str
    totalWeight: float = Field(..., allow_inf_nan=False)
    categories: Optional[dict[str, FiniteFloat]] = None
    description: Optional[str] = None
    accessInstructions: Optional[str] = None


class WaypointIn(BaseModel):
    id: str
    coordinates: list[float]
    address: str = ""
    weight: float = Field(0.0, ge=0)
    value: Optional[float] = None
    category: Optional[str] = None
    status: Optional[str] = None


class RouteRequest(BaseModel):
    origin: list[float]
    waypoints: list[WaypointIn]
    strategy: str = "balanced"


def _center(lat: Optional[float], lng: Optional[float]) -> list[float]:
    if lat is None or lng is None:
        return [settings.default_longitude, settings.default_latitude]
    center = [lng, lat]
    if not valid_coordinates(center):
        raise ValidationError.single("coordinates", "lat/lng out of range")
    return center


@router.get("/hotspots")
async def get_hotspots(
    lat: Optional[float] = Query(None),
    lng: Optional[float] = Query(None),
    radius: float = Query(settings.hotspot_default_radius_km, gt=0, le=100),
    status: str = Query("active"),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    """Open hotspots around a point plus recently verified pickups."""
    if status not in ("active", "depleted", "expired", "all"):
        raise ValidationError.single("status", "status must be active, depleted, expired or all")
    center = _center(lat, lng)

    found = await search_hotspots(db, center, radius, status)
    counts = await collection_counts(db, [h.id for h, _ in found])
    points = await recent_collection_points(db, center, radius)
    return {
        "success": True,
        "center": center,
        "radius": radius,
        "hotspots": [hotspot_out(h, d, counts.get(h.id, 0)) for h, d in found],
        "collectionPoints": [
            {
                "id": p.id,
                "coordinates": [p.longitude, p.latitude],
                "address": (p.location or {}).get("address"),
                "category": p.category,
                "weight": float(p.base_weight),
                "status": p.status,
                "collectedAt": p.created_at.isoformat(),
            }
            for p in points
        ],
        "pollInterval": settings.hotspot_poll_interval_seconds,
    }


@router.post("/hotspots", status_code=201)
async def create_hotspot(
    body: HotspotReport,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    hotspot, merged = await report_hotspot(
        db,
        principal.user_id,
        body.coordinates,
        body.address,
        body.totalWeight,
        categories=body.categories,
        description=body.description,
        access_instructions=body.accessInstructions,
        reporter_type=principal.role,
    )
    counts = await collection_counts(db, [hotspot.id])
    return {
        "success": True,
        "merged": merged,
        "hotspot": hotspot_out(hotspot, collections=counts.get(hotspot.id, 0)),
    }


@router.get("/geocode")
async def geocode(
    q: str = Query(..., min_length=1),
    principal: Principal = Depends(get_principal),
    geocoder: Geocoder = Depends(get_geocoder),
):
    result = await geocoder.forward(q)
    return {"success": True, "found": result is not None, "result": result}


@router.get("/reverse")
async def reverse_geocode(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    principal: Principal = Depends(get_principal),
    geocoder: Geocoder = Depends(get_geocoder),
):
    result = await geocoder.reverse(lat, lng)
    return {"success": True, "found": result is not None, "result": result}


@router.post("/optimize-route")
async def plan_route(
    body: RouteRequest,
    principal: Principal = Depends(get_principal),
):
    """Order pickup stops from an origin. Straight-line distances only."""
    if not valid_coordinates(body.origin):
        raise ValidationError.single("origin", "Origin must be [lng, lat]")
    if body.strategy not in STRATEGIES:
        raise ValidationError.single("strategy", f"strategy must be one of {', '.join(STRATEGIES)}")
    if len(body.waypoints) > MAX_WAYPOINTS:
        raise ValidationError.single("waypoints", f"At most {MAX_WAYPOINTS} waypoints are supported")
    for index, waypoint in enumerate(body.waypoints):
        if not valid_coordinates(waypoint.coordinates):
            raise ValidationError.single(f"waypoints[{index}].coordinates", "Coordinates must be [lng, lat]")

    waypoints = [
        Waypoint(
            id=w.id,
            coordinates=(w.coordinates[0], w.coordinates[1]),
            address=w.address,
            weight=w.weight,
            value=w.value,
            category=w.category,
            status=w.status,
        )
        for w in body.waypoints
    ]
    route = optimize_route(body.origin, waypoints, body.strategy)
    return {"success": True, "route": route}
