"""Collector profile, dashboard and EkoToken routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.analytics.dashboards import collector_dashboard
from ekotaka.analytics.stats import fresh_collector_profile, get_or_create_collector_profile
from ekotaka.api.deps import get_database, require_collector
from ekotaka.api.serializers import collector_profile_out, paginated, pickup_out, token_entry_out
from ekotaka.auth import CollectorPrincipal
from ekotaka.db.models import utcnow
from ekotaka.ledger.tokens import ENTRY_TYPES, redeem_tokens, token_history, token_summary
from ekotaka.errors import ValidationError

router = APIRouter(prefix="/api/collector", tags=["collector"])


class PaymentInfo(BaseModel):
    bkashNumber: Optional[str] = None
    nagadNumber: Optional[str] = None
    accountName: Optional[str] = None


class CollectorProfileUpdate(BaseModel):
    personalInfo: Optional[dict] = None
    preferences: Optional[dict] = None
    paymentInfo: Optional[PaymentInfo] = None


class RedeemRequest(BaseModel):
    amount: int
    reward: str


@router.get("/profile")
async def get_profile(
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    profile = await fresh_collector_profile(db, collector.user_id)
    return {"success": True, "profile": collector_profile_out(profile)}


@router.put("/profile")
async def update_profile(
    body: CollectorProfileUpdate,
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    """Edit personal info, preferences and payout accounts. Stats are never writable."""
    profile = await get_or_create_collector_profile(db, collector.user_id)
    if body.personalInfo is not None:
        profile.personal_info = {**(profile.personal_info or {}), **body.personalInfo}
    if body.preferences is not None:
        profile.preferences = {**(profile.preferences or {}), **body.preferences}
    if body.paymentInfo is not None:
        payment = body.paymentInfo.model_dump(exclude_unset=True)
        if "bkashNumber" in payment:
            profile.bkash_number = payment["bkashNumber"] or None
        if "nagadNumber" in payment:
            profile.nagad_number = payment["nagadNumber"] or None
        if "accountName" in payment:
            profile.account_name = payment["accountName"] or None
    profile.updated_at = utcnow()
    await db.commit()
    return {"success": True, "profile": collector_profile_out(profile)}


@router.get("/dashboard")
async def get_dashboard(
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    dashboard = await collector_dashboard(db, collector.user_id)
    dashboard["recentPickups"] = [
        pickup_out(p, include_history=False) for p in dashboard["recentPickups"]
    ]
    return {"success": True, "dashboard": dashboard}


@router.get("/tokens")
async def get_tokens(
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    summary = await token_summary(db, collector.user_id, utcnow())
    summary["recentEntries"] = [token_entry_out(e) for e in summary["recentEntries"]]
    return {"success": True, "tokens": summary}


@router.get("/tokens/history")
async def get_token_history(
    type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    if type and type != "all" and type not in ENTRY_TYPES:
        raise ValidationError.single("type", f"type must be one of {', '.join(ENTRY_TYPES)}")
    entries, total = await token_history(db, collector.user_id, page, limit, type)
    return {
        "success": True,
        "entries": [token_entry_out(e) for e in entries],
        "pagination": paginated(page, limit, total),
    }


@router.post("/tokens/redeem")
async def redeem(
    body: RedeemRequest,
    collector: CollectorPrincipal = Depends(require_collector),
    db: AsyncSession = Depends(get_database),
):
    entry = await redeem_tokens(db, collector.user_id, body.amount, body.reward)
    return {"success": True, "entry": token_entry_out(entry), "balance": entry.balance_after}
