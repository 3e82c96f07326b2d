"""Transaction routes for participants; gateway updates live under /api/admin."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.api.deps import get_database, get_principal, require_brand
from ekotaka.api.serializers import paginated, transaction_out
from ekotaka.auth import BrandPrincipal, Principal
from ekotaka.errors import NotFound
from ekotaka.lifecycle.transactions import create_purchase, list_transactions, load_transaction

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


class PurchaseCreate(BaseModel):
    orderId: str
    paymentMethod: str
    amount: Any


@router.get("")
async def get_transactions(
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    transactions, total = await list_transactions(db, principal, status, type, page, limit)
    return {
        "success": True,
        "transactions": [transaction_out(t) for t in transactions],
        "pagination": paginated(page, limit, total),
    }


@router.post("", status_code=201)
async def pay_order(
    body: PurchaseCreate,
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    """Open a pending payment for one of the brand's orders."""
    transaction = await create_purchase(db, brand, body.orderId, body.paymentMethod, body.amount)
    return {"success": True, "transaction": transaction_out(transaction)}


@router.get("/{transaction_ref}")
async def get_transaction(
    transaction_ref: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    transaction = await load_transaction(db, transaction_ref)
    owner = transaction.brand_id if isinstance(principal, BrandPrincipal) else transaction.collector_id
    if owner != principal.user_id:
        raise NotFound("Transaction", transaction_ref)
    return {"success": True, "transaction": transaction_out(transaction)}
