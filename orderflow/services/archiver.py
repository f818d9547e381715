"""
Orderflow - History archiver

Copies an order that reached Delivered into order_history exactly once and
flags the live order. The live row is kept. The flag guards the common path;
the unique original_order_id column catches the concurrent one.
"""
import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.errors import NotFoundError
from orderflow.core.optimistic_lock import with_optimistic_retry
from orderflow.models.order import KitchenStatus, Order, OrderStatus
from orderflow.models.order_history import ArchiveReason, OrderHistory
from orderflow.models.review import Review
from orderflow.schemas.order import HistoryOrderResponse, HistoryReview
from orderflow.services.broadcast import KITCHEN_STATUS_UPDATE, BroadcastChannel
from orderflow.services.outbox import register_handler

logger = logging.getLogger(__name__)

ARCHIVE_EVENT = "order.archive"


def snapshot(order: Order, reason: ArchiveReason, archived_by: str) -> OrderHistory:
    return OrderHistory(
        original_order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        restaurant_id=order.restaurant_id,
        restaurant_name=order.restaurant_name,
        restaurant_slug=order.restaurant_slug,
        items=list(order.items),
        total_price=order.total_price,
        payment_method=order.payment_method.value,
        transaction_id=order.transaction_id,
        status=order.status.value,
        kitchen_status_at_archive=order.kitchen_status.value,
        estimated_preparation_time=order.estimated_preparation_time,
        customer_notes=order.customer_notes or "",
        reviewed=order.reviewed,
        archived_reason=reason,
        archived_by=archived_by,
        original_created_at=order.created_at,
    )


async def archive(
    db: AsyncSession,
    order: Order,
    reason: ArchiveReason = ArchiveReason.AUTO_DELIVERED,
    archived_by: str = "system",
) -> OrderHistory | None:
    """
    Add the history snapshot and flip archived_to_history on the order.
    Returns None when the order was already archived. Does not commit.
    """
    if order.archived_to_history:
        return None

    existing = await db.execute(
        select(OrderHistory.id).where(OrderHistory.original_order_id == order.id)
    )
    if existing.scalar_one_or_none() is not None:
        # Snapshot written earlier but the flag update was lost.
        order.archived_to_history = True
        return None

    record = snapshot(order, reason, archived_by)
    db.add(record)
    order.archived_to_history = True
    logger.info("Archiving order %s to history (%s)", order.order_number, reason.value)
    return record


@register_handler(ARCHIVE_EVENT)
async def handle_archive_event(db: AsyncSession, payload: dict) -> None:
    order = await db.get(Order, payload["order_id"], populate_existing=True)
    if order is None:
        raise NotFoundError(f"Order {payload['order_id']} not found for archival.")
    await archive(
        db,
        order,
        reason=ArchiveReason(payload.get("reason", ArchiveReason.AUTO_DELIVERED.value)),
        archived_by=payload.get("archived_by", "system"),
    )


@with_optimistic_retry()
async def archive_order_manually(
    db: AsyncSession,
    order_id: str,
    archived_by: str,
    broadcast: BroadcastChannel | None = None,
) -> OrderHistory | None:
    """
    Close the order out as Delivered (cancelled orders keep their status)
    and snapshot it. Returns None when it was already archived.
    """
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError(f"Order with id={order_id} not found")
    if order.archived_to_history:
        return None
    order.close_for_history()
    record = await archive(db, order, reason=ArchiveReason.MANUAL_ARCHIVE, archived_by=archived_by)
    try:
        await db.commit()
    except IntegrityError:
        # Another request inserted the snapshot first.
        await db.rollback()
        logger.info("Order %s was archived concurrently", order_id)
        return None
    except StaleDataError:
        await db.rollback()
        raise

    if broadcast is not None:
        try:
            # Terminal now, so dashboards drop the card.
            await broadcast.publish_order(order, KITCHEN_STATUS_UPDATE)
        except Exception:
            logger.exception("Broadcast of manual archive for order %s failed", order.order_number)
    return record


async def archive_delivered_for_user(db: AsyncSession, user_id: str) -> int:
    """Lazily archive the user's delivered orders that never made it to history."""
    result = await db.execute(
        select(Order).where(
            Order.user_id == user_id,
            Order.archived_to_history.is_(False),
            or_(Order.status == OrderStatus.DELIVERED, Order.kitchen_status == KitchenStatus.DELIVERED),
        )
    )
    orders = list(result.scalars().all())
    archived = 0
    for order in orders:
        if await archive(db, order) is not None:
            archived += 1
    if orders:
        await db.commit()
        logger.info("Archived %d delivered orders for user %s", archived, user_id)
    return archived


async def history_for_user(db: AsyncSession, user_id: str) -> list[HistoryOrderResponse]:
    """The user's archived orders, newest first, each with its review if any."""
    try:
        await archive_delivered_for_user(db, user_id)
    except Exception:
        logger.exception("Lazy archival failed for user %s; serving existing history", user_id)
        await db.rollback()

    result = await db.execute(
        select(OrderHistory)
        .where(OrderHistory.user_id == user_id)
        .order_by(OrderHistory.original_created_at.desc(), OrderHistory.archived_at.desc())
    )
    records = list(result.scalars().all())
    if not records:
        return []

    reviews_result = await db.execute(
        select(Review).where(
            Review.user_id == user_id,
            Review.order_id.in_([r.original_order_id for r in records]),
        )
    )
    reviews = {review.order_id: review for review in reviews_result.scalars().all()}

    history = []
    for record in records:
        entry = HistoryOrderResponse.model_validate(record)
        review = reviews.get(record.original_order_id)
        if review is not None:
            entry.review = HistoryReview.model_validate(review)
        history.append(entry)
    return history
