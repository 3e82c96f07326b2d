"""Order routes shared by brands and collectors."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.api.deps import get_database, get_principal, require_brand
from ekotaka.api.serializers import order_out, paginated
from ekotaka.auth import BrandPrincipal, Principal
from ekotaka.lifecycle.orders import apply_order_action, create_order, list_orders, load_order_for

router = APIRouter(prefix="/api/orders", tags=["orders"])

DEFAULT_CANCELLATION_REASON = "Cancelled by user"


class OrderCreate(BaseModel):
    pickupId: str
    quantity: Any
    unitPrice: Any
    shippingAddress: Optional[dict] = None
    pickupLocation: Optional[dict] = None
    notes: Optional[str] = None
    estimatedDeliveryDate: Optional[datetime] = None


class OrderAction(BaseModel):
    action: str
    notes: Optional[str] = None
    cancellationReason: Optional[str] = None
    trackingNumber: Optional[str] = None


@router.get("")
async def get_orders(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sortBy: str = Query("date"),
    sortOrder: str = Query("desc"),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    orders, total = await list_orders(db, principal, status, page, limit, sortBy, sortOrder)
    return {
        "success": True,
        "orders": [order_out(o) for o in orders],
        "pagination": paginated(page, limit, total),
    }


@router.post("", status_code=201)
async def place_order(
    body: OrderCreate,
    brand: BrandPrincipal = Depends(require_brand),
    db: AsyncSession = Depends(get_database),
):
    """Order part or all of a verified pickup's available weight."""
    order = await create_order(
        db,
        brand,
        pickup_id=body.pickupId,
        quantity=body.quantity,
        unit_price=body.unitPrice,
        shipping_address=body.shippingAddress,
        notes=body.notes,
        pickup_location=body.pickupLocation,
        estimated_delivery_date=body.estimatedDeliveryDate,
    )
    return {"success": True, "message": "Order created successfully", "order": order_out(order)}


@router.get("/{order_ref}")
async def get_order(
    order_ref: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    order = await load_order_for(db, order_ref, principal)
    return {"success": True, "order": order_out(order)}


@router.put("/{order_ref}")
async def update_order(
    order_ref: str,
    body: OrderAction,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    order = await apply_order_action(
        db,
        principal,
        order_ref,
        body.action,
        notes=body.notes,
        cancellation_reason=body.cancellationReason,
        tracking_number=body.trackingNumber,
    )
    return {"success": True, "message": f"Order {body.action} successful", "order": order_out(order)}


@router.delete("/{order_ref}")
async def cancel_order(
    order_ref: str,
    reason: Optional[str] = Query(None),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_database),
):
    """Cancel an order; orders are never deleted."""
    order = await apply_order_action(
        db,
        principal,
        order_ref,
        "cancel",
        cancellation_reason=reason or DEFAULT_CANCELLATION_REASON,
    )
    return {"success": True, "message": "Order cancelled", "order": order_out(order)}
