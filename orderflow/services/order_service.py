"""
Orderflow - Order state machine operations

Every mutation is a read-modify-write against the versioned orders row:
  - READ:  fresh SELECT of the order (populate_existing)
  - CHECK: the model method raises PreconditionError before touching anything
  - WRITE: commit; the UPDATE carries WHERE version_id = <seen>
  - If another request committed first → StaleDataError → rollback → retry

The kitchen broadcast happens after commit and never fails the request.
"""
import logging
import math

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.config import get_settings
from orderflow.core.errors import (
    DuplicateTransactionError,
    InfrastructureError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.core.optimistic_lock import with_optimistic_retry
from orderflow.models.order import (
    TERMINAL_STATUSES,
    KitchenStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    generate_order_number,
)
from orderflow.models.order_history import ArchiveReason
from orderflow.schemas.order import OrderCreateRequest, OrderListResponse, OrderResponse, Pagination
from orderflow.services.archiver import ARCHIVE_EVENT
from orderflow.services.broadcast import KITCHEN_STATUS_UPDATE, ORDER_UPDATE, BroadcastChannel
from orderflow.services.outbox import dispatch, enqueue

settings = get_settings()
logger = logging.getLogger(__name__)

STATUS_FILTERS = ("active", "delivered")


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise


async def _announce(broadcast: BroadcastChannel | None, order: Order, event_type: str) -> None:
    if broadcast is None:
        return
    try:
        await broadcast.publish_order(order, event_type)
    except Exception:
        logger.exception("Broadcast of %s for order %s failed", event_type, order.order_number)


async def get_order(db: AsyncSession, order_id: str, fresh: bool = False) -> Order:
    order = await db.get(Order, order_id, populate_existing=fresh)
    if order is None:
        raise NotFoundError(f"Order with id={order_id} not found")
    return order


async def track_order(db: AsyncSession, reference: str) -> Order:
    """Look an order up by id, order number or transaction reference."""
    reference = reference.strip()
    if not reference:
        raise ValidationError("An order id, order number or transaction id is required.")
    result = await db.execute(
        select(Order).where(
            or_(
                Order.id == reference,
                Order.order_number == reference.upper(),
                Order.transaction_id == reference,
            )
        )
    )
    order = result.scalars().first()
    if order is None:
        raise NotFoundError(f"No order matches '{reference}'")
    return order


# ── Creation ──────────────────────────────────────────────────


async def _transaction_taken(db: AsyncSession, transaction_id: str) -> bool:
    taken = await db.execute(select(Order.id).where(Order.transaction_id == transaction_id))
    return taken.scalar_one_or_none() is not None


async def _unique_order_number(db: AsyncSession) -> str:
    for _ in range(settings.ORDER_NUMBER_MAX_ATTEMPTS):
        candidate = generate_order_number()
        taken = await db.execute(select(Order.id).where(Order.order_number == candidate))
        if taken.scalar_one_or_none() is None:
            return candidate
    raise InfrastructureError("Could not allocate a unique order number; try again.")


async def create_order(
    db: AsyncSession,
    data: OrderCreateRequest | dict,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    if not isinstance(data, OrderCreateRequest):
        try:
            data = OrderCreateRequest.model_validate(data)
        except PydanticValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise ValidationError(f"Invalid order: {fields}") from exc

    if await _transaction_taken(db, data.transaction_id):
        raise DuplicateTransactionError(
            f"Transaction ID '{data.transaction_id}' has already been used for another order."
        )

    items = [item.model_dump() for item in data.items]
    for _ in range(settings.ORDER_NUMBER_MAX_ATTEMPTS):
        order_number = await _unique_order_number(db)
        order = Order(
            order_number=order_number,
            user_id=data.user_id,
            restaurant_id=data.restaurant_id,
            restaurant_name=data.restaurant_name,
            restaurant_slug=data.restaurant_slug,
            total_price=data.total_price,
            payment_method=data.payment_method,
            transaction_id=data.transaction_id,
            customer_notes=data.customer_notes,
        )
        order.set_items(items)
        db.add(order)
        try:
            await db.commit()
            break
        except IntegrityError as exc:
            await db.rollback()
            if await _transaction_taken(db, data.transaction_id):
                raise DuplicateTransactionError(
                    f"Transaction ID '{data.transaction_id}' has already been used for another order."
                ) from exc
            logger.warning("Order number %s was taken concurrently; allocating another", order_number)
    else:
        raise InfrastructureError("Could not allocate a unique order number; try again.")

    logger.info(
        "Order %s created for user %s at %s (%d items, %.2f)",
        order.order_number, order.user_id, order.restaurant_id, len(order.items), order.total_price,
    )
    # Pending payment, so the publish policy drops it; logged for traceability.
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


# ── Payment ───────────────────────────────────────────────────


@with_optimistic_retry()
async def confirm_payment(
    db: AsyncSession,
    order_id: str,
    staff_id: str | None,
    verify_transaction: bool = True,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    """Confirm payment and send the order to the kitchen. Re-confirming is a no-op."""
    order = await get_order(db, order_id, fresh=True)
    if not order.confirm_payment_and_send_to_kitchen(staff_id, verify_transaction):
        logger.info("Order %s payment already confirmed; nothing to do", order.order_number)
        return order
    await _commit(db)
    logger.info("Payment confirmed for order %s by %s; sent to kitchen", order.order_number, staff_id)
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


@with_optimistic_retry()
async def verify_transaction(
    db: AsyncSession,
    order_id: str,
    staff_id: str,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    order = await get_order(db, order_id, fresh=True)
    order.verify_transaction(staff_id)
    await _commit(db)
    logger.info("Transaction %s verified by %s", order.transaction_id, staff_id)
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


@with_optimistic_retry()
async def mark_payment_failed(
    db: AsyncSession,
    order_id: str,
    staff_id: str | None,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    order = await get_order(db, order_id, fresh=True)
    order.mark_payment_failed(staff_id)
    await _commit(db)
    logger.warning("Payment for order %s marked failed by %s", order.order_number, staff_id)
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


# ── Kitchen ───────────────────────────────────────────────────


def _parse_kitchen_status(value: KitchenStatus | str) -> KitchenStatus:
    try:
        return KitchenStatus(value)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in KitchenStatus)
        raise ValidationError(f"Invalid kitchen status '{value}'. Expected one of: {allowed}") from exc


async def _apply_kitchen_status(
    db: AsyncSession,
    order: Order,
    new_status: KitchenStatus,
    broadcast: BroadcastChannel | None,
) -> Order:
    previous = order.kitchen_status
    order.update_kitchen_status(new_status)

    pending = []
    if new_status == KitchenStatus.DELIVERED and not order.archived_to_history:
        pending.append(enqueue(db, ARCHIVE_EVENT, {
            "order_id": order.id,
            "reason": ArchiveReason.AUTO_DELIVERED.value,
            "archived_by": "system",
        }))
    await _commit(db)
    logger.info(
        "Order %s kitchen status %s -> %s",
        order.order_number, previous.value, new_status.value,
    )
    await _announce(broadcast, order, KITCHEN_STATUS_UPDATE)

    if pending:
        await dispatch(db, pending)
        await db.refresh(order)
    return order


@with_optimistic_retry()
async def update_kitchen_status(
    db: AsyncSession,
    order_id: str,
    new_status: KitchenStatus | str,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    new_status = _parse_kitchen_status(new_status)
    order = await get_order(db, order_id, fresh=True)
    return await _apply_kitchen_status(db, order, new_status, broadcast)


@with_optimistic_retry()
async def advance_kitchen_status(
    db: AsyncSession,
    order_id: str,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    """Move the order one kitchen stage forward: Pending → Preparing → Ready → Delivered."""
    order = await get_order(db, order_id, fresh=True)
    if not order.is_ready_for_kitchen():
        raise PreconditionError("Order is not ready for kitchen operations.")
    return await _apply_kitchen_status(db, order, order.next_kitchen_status(), broadcast)


@with_optimistic_retry()
async def hide_from_kitchen(
    db: AsyncSession,
    order_id: str,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    order = await get_order(db, order_id, fresh=True)
    if order.kitchen_hidden:
        return order
    order.hide_from_kitchen()
    await _commit(db)
    logger.info("Order %s hidden from kitchen dashboard", order.order_number)
    # Dashboards drop the card when they see kitchen_hidden=true.
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


@with_optimistic_retry()
async def cancel_order(
    db: AsyncSession,
    order_id: str,
    broadcast: BroadcastChannel | None = None,
) -> Order:
    order = await get_order(db, order_id, fresh=True)
    order.cancel()
    await _commit(db)
    logger.info("Order %s cancelled", order.order_number)
    await _announce(broadcast, order, ORDER_UPDATE)
    return order


# ── Queries ───────────────────────────────────────────────────


def _kitchen_visible():
    return (
        Order.payment_status == PaymentStatus.CONFIRMED,
        Order.sent_to_kitchen.is_(True),
        Order.kitchen_hidden.is_(False),
        Order.status.not_in(list(TERMINAL_STATUSES)),
    )


async def list_orders(
    db: AsyncSession,
    user_id: str | None = None,
    restaurant_id: str | None = None,
    status: str | None = None,
    kitchen: bool = False,
    payment_method: PaymentMethod | str | None = None,
    page: int = 1,
    limit: int | None = None,
) -> OrderListResponse:
    page = max(page, 1)
    limit = limit or settings.ORDERS_PAGE_SIZE_DEFAULT
    if limit < 1:
        raise ValidationError("limit must be at least 1")

    conditions = []
    if user_id:
        conditions.append(Order.user_id == user_id)
    if restaurant_id:
        conditions.append(Order.restaurant_id == restaurant_id)
    if status == "active":
        conditions.append(Order.status.not_in(list(TERMINAL_STATUSES)))
    elif status == "delivered":
        conditions.append(or_(Order.status == OrderStatus.DELIVERED, Order.kitchen_status == KitchenStatus.DELIVERED))
    elif status is not None:
        raise ValidationError(f"Unknown status filter '{status}'. Expected one of: {', '.join(STATUS_FILTERS)}")
    if kitchen:
        conditions.extend(_kitchen_visible())
    if payment_method:
        try:
            conditions.append(Order.payment_method == PaymentMethod(payment_method))
        except ValueError as exc:
            raise ValidationError(f"Unknown payment method '{payment_method}'") from exc

    total = (await db.execute(select(func.count(Order.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    orders = [OrderResponse.model_validate(o) for o in result.scalars().all()]
    return OrderListResponse(
        orders=orders,
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
    )


async def kitchen_orders(db: AsyncSession, restaurant_id: str | None = None) -> list[Order]:
    """Orders the kitchen dashboard shows, most recently paid first."""
    query = select(Order).where(*_kitchen_visible())
    if restaurant_id:
        query = query.where(Order.restaurant_id == restaurant_id)
    result = await db.execute(
        query.order_by(Order.payment_confirmed_at.desc(), Order.created_at.desc())
    )
    return list(result.scalars().all())


async def pending_payment_orders(db: AsyncSession, restaurant_id: str | None = None) -> list[Order]:
    query = select(Order).where(
        Order.payment_status == PaymentStatus.PENDING,
        Order.status != OrderStatus.CANCELLED,
    )
    if restaurant_id:
        query = query.where(Order.restaurant_id == restaurant_id)
    result = await db.execute(query.order_by(Order.created_at.desc()))
    return list(result.scalars().all())


async def verified_transactions(db: AsyncSession, restaurant_id: str | None = None) -> list[Order]:
    query = select(Order).where(Order.transaction_verified.is_(True))
    if restaurant_id:
        query = query.where(Order.restaurant_id == restaurant_id)
    result = await db.execute(query.order_by(Order.verification_timestamp.desc()))
    return list(result.scalars().all())
