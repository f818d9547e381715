"""
Orderflow - Orders API

Customer-facing placement, tracking and history, plus the staff payment
actions that release an order to the kitchen.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.api.deps import get_broadcast
from orderflow.db.database import get_db
from orderflow.models.order import PaymentMethod
from orderflow.schemas.order import (
    ConfirmPaymentRequest,
    HistoryOrderResponse,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    StaffActionRequest,
)
from orderflow.services import archiver, order_service
from orderflow.services.broadcast import BroadcastChannel

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    """Place an order. It waits in payment_status=pending until staff confirm it."""
    return await order_service.create_order(db, payload, broadcast=broadcast)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    user_id: str | None = None,
    restaurant_id: str | None = None,
    status_filter: str | None = Query(None, alias="status", description="active | delivered"),
    kitchen: bool = False,
    payment_method: PaymentMethod | None = None,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    return await order_service.list_orders(
        db,
        user_id=user_id,
        restaurant_id=restaurant_id,
        status=status_filter,
        kitchen=kitchen,
        payment_method=payment_method,
        page=page,
        limit=limit,
    )


@router.get("/track", response_model=OrderResponse)
async def track_order(reference: str = Query(..., min_length=1), db: AsyncSession = Depends(get_db)):
    """Find an order by id, order number or transaction id."""
    return await order_service.track_order(db, reference)


@router.get("/history", response_model=list[HistoryOrderResponse])
async def order_history(user_id: str = Query(..., min_length=1), db: AsyncSession = Depends(get_db)):
    return await archiver.history_for_user(db, user_id)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await order_service.get_order(db, order_id)


@router.patch("/{order_id}/confirm-payment", response_model=OrderResponse)
async def confirm_payment(
    order_id: str,
    payload: ConfirmPaymentRequest,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.confirm_payment(
        db, order_id, payload.staff_id, payload.verify_transaction, broadcast=broadcast,
    )


@router.patch("/{order_id}/verify-transaction", response_model=OrderResponse)
async def verify_transaction(
    order_id: str,
    payload: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.verify_transaction(db, order_id, payload.staff_id, broadcast=broadcast)


@router.patch("/{order_id}/payment-failed", response_model=OrderResponse)
async def mark_payment_failed(
    order_id: str,
    payload: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.mark_payment_failed(db, order_id, payload.staff_id, broadcast=broadcast)


@router.patch("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.cancel_order(db, order_id, broadcast=broadcast)


@router.post("/{order_id}/archive", response_model=OrderResponse)
async def archive_order(
    order_id: str,
    payload: StaffActionRequest,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    """Close the order out as Delivered and copy it into history. Repeating it is harmless."""
    await archiver.archive_order_manually(db, order_id, payload.staff_id, broadcast=broadcast)
    return await order_service.get_order(db, order_id, fresh=True)
