"""
Orderflow - Kitchen API

Dashboard reads, kitchen status transitions and the live SSE feed.
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.api.deps import get_broadcast
from orderflow.db.database import AsyncSessionLocal, get_db
from orderflow.schemas.order import HideAcknowledgement, KitchenStatusUpdate, OrderResponse
from orderflow.services import order_service
from orderflow.services.broadcast import BroadcastChannel, Subscriber, stream_events

router = APIRouter(prefix="/kitchen", tags=["kitchen"])


@router.get("/orders", response_model=list[OrderResponse])
async def kitchen_orders(restaurant_id: str | None = None, db: AsyncSession = Depends(get_db)):
    """Paid, dispatched, visible orders; most recently paid first."""
    return await order_service.kitchen_orders(db, restaurant_id)


@router.get("/pending-payments", response_model=list[OrderResponse])
async def pending_payments(restaurant_id: str | None = None, db: AsyncSession = Depends(get_db)):
    return await order_service.pending_payment_orders(db, restaurant_id)


@router.get("/verified-transactions", response_model=list[OrderResponse])
async def verified_transactions(restaurant_id: str | None = None, db: AsyncSession = Depends(get_db)):
    return await order_service.verified_transactions(db, restaurant_id)


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_kitchen_status(
    order_id: str,
    payload: KitchenStatusUpdate,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.update_kitchen_status(db, order_id, payload.kitchen_status, broadcast=broadcast)


@router.post("/orders/{order_id}/advance", response_model=OrderResponse)
async def advance_kitchen_status(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    return await order_service.advance_kitchen_status(db, order_id, broadcast=broadcast)


@router.patch("/orders/{order_id}/hide", response_model=HideAcknowledgement)
async def hide_from_kitchen(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    order = await order_service.hide_from_kitchen(db, order_id, broadcast=broadcast)
    return HideAcknowledgement(
        order_id=order.id,
        kitchen_hidden=order.kitchen_hidden,
        message=f"Order {order.order_number} hidden from kitchen dashboard.",
    )


@router.get("/updates")
async def kitchen_updates(
    request: Request,
    restaurant_id: str | None = Query(None),
    broadcast: BroadcastChannel = Depends(get_broadcast),
):
    """
    SSE endpoint. A kitchen dashboard opens an EventSource here and receives
    the current orders as initial_order events, then every live change.
    """

    async def load_initial_orders():
        # The request-scoped session is gone once the stream starts.
        async with AsyncSessionLocal() as db:
            return await order_service.kitchen_orders(db, restaurant_id)

    subscriber = Subscriber(restaurant_id=restaurant_id)
    return StreamingResponse(
        stream_events(broadcast, subscriber, request.is_disconnected, initial_loader=load_initial_orders),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable Nginx buffering
            "Connection": "keep-alive",
        },
    )
