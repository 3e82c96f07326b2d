"""Verifier and payment-gateway routes, guarded by the admin API key."""

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.api.deps import get_database, require_admin_api_key
from ekotaka.api.serializers import pickup_out, transaction_out
from ekotaka.lifecycle.pickups import reject_pickup, verify_pickup
from ekotaka.lifecycle.transactions import create_payout, settle_transaction

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class VerifyRequest(BaseModel):
    actualWeight: Any
    verifiedBy: str
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str
    verifiedBy: str


class PayoutCreate(BaseModel):
    pickupId: str
    amount: Any
    paymentMethod: str
    initiatedBy: str = "admin"


class TransactionUpdate(BaseModel):
    status: str
    failureReason: Optional[str] = None
    gatewayReference: Optional[str] = None


@router.post("/pickups/{pickup_id}/verify")
async def verify(pickup_id: str, body: VerifyRequest, db: AsyncSession = Depends(get_database)):
    pickup = await verify_pickup(db, pickup_id, body.actualWeight, body.verifiedBy, body.notes)
    return {"success": True, "pickup": pickup_out(pickup)}


@router.post("/pickups/{pickup_id}/reject")
async def reject(pickup_id: str, body: RejectRequest, db: AsyncSession = Depends(get_database)):
    pickup = await reject_pickup(db, pickup_id, body.reason, body.verifiedBy)
    return {"success": True, "pickup": pickup_out(pickup)}


@router.post("/transactions", status_code=201)
async def open_payout(body: PayoutCreate, db: AsyncSession = Depends(get_database)):
    """Open a collector payout for a verified pickup."""
    transaction = await create_payout(
        db, body.pickupId, body.amount, body.paymentMethod, body.initiatedBy
    )
    return {"success": True, "transaction": transaction_out(transaction)}


@router.put("/transactions/{transaction_ref}")
async def gateway_update(
    transaction_ref: str, body: TransactionUpdate, db: AsyncSession = Depends(get_database)
):
    """Payment gateway callback: move a transaction to its next status."""
    result = await settle_transaction(
        db, transaction_ref, body.status, body.failureReason, body.gatewayReference
    )
    return {
        "success": True,
        "transaction": transaction_out(result["transaction"]),
        "effects": result["effects"],
    }
