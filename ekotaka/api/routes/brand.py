"""Brand profile, inventory browser and purchase analytics."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.analytics.dashboards import brand_analytics, brand_inventory
from ekotaka.analytics.stats import fresh_brand_profile, get_or_create_brand_profile
from ekotaka.api.deps import get_database, require_brand
from ekotaka.api.serializers import brand_profile_out, paginated, pickup_out
from ekotaka.auth import BrandPrincipal
from ekotaka.db.models import utcnow

router = APIRouter(prefix="/api/brand", tags=["brand"])


class BrandProfileUpdate(BaseModel):
    companyInfo: Optional[dict] = None
    contactInfo: Optional[dict] = None
    preferences: Optional[dict] = None
    billingAddress: Optional[dict] = None


@router.get("/profile")
async def get_profile(
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    profile = await fresh_brand_profile(db, brand.user_id)
    return {"success": True, "profile": brand_profile_out(profile)}


@router.put("/profile")
async def update_profile(
    body: BrandProfileUpdate,
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    profile = await get_or_create_brand_profile(db, brand.user_id)
    if body.companyInfo is not None:
        profile.company_info = {**(profile.company_info or {}), **body.companyInfo}
    if body.contactInfo is not None:
        profile.contact_info = {**(profile.contact_info or {}), **body.contactInfo}
    if body.preferences is not None:
        profile.preferences = {**(profile.preferences or {}), **body.preferences}
    if body.billingAddress is not None:
        profile.billing_address = body.billingAddress
    profile.updated_at = utcnow()
    await db.commit()
    return {"success": True, "profile": brand_profile_out(profile)}


@router.get("/inventory")
async def get_inventory(
    category: Optional[str] = Query(None),
    minWeight: Optional[float] = Query(None, ge=0),
    maxWeight: Optional[float] = Query(None, ge=0),
    location: Optional[str] = Query(None),
    sortBy: str = Query("date"),
    sortOrder: str = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    """Verified pickups with weight still available to order."""
    pickups, total = await brand_inventory(
        db, category, minWeight, maxWeight, location, sortBy, sortOrder, page, limit
    )
    return {
        "success": True,
        "inventory": [pickup_out(p, include_history=False) for p in pickups],
        "pagination": paginated(page, limit, total),
    }


@router.get("/analytics")
async def get_analytics(
    period: str = Query("monthly"),
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    return {"success": True, "analytics": await brand_analytics(db, brand.user_id, period)}
