"""
Orderflow - Side-effect outbox

Secondary effects of a status change (archiving a delivered order,
recomputing ratings) are enqueued in the same transaction as the change.
The request dispatches them inline right after commit; whatever fails stays
pending with a backoff and is picked up by the drain_outbox Celery task.
A primary transition therefore never fails because a side effect did, and a
failed side effect is still visible and retried.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import get_settings
from orderflow.models.outbox import OutboxEvent, OutboxStatus

settings = get_settings()
logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]

_handlers: dict[str, Handler] = {}


def register_handler(event_type: str):
    """Decorator binding an outbox event type to the coroutine that performs it."""
    def decorator(func: Handler) -> Handler:
        _handlers[event_type] = func
        return func
    return decorator


def enqueue(db: AsyncSession, event_type: str, payload: dict[str, Any]) -> OutboxEvent:
    """Add an event to the caller's transaction. The caller commits."""
    event = OutboxEvent(event_type=event_type, payload=payload)
    db.add(event)
    return event


def retry_delay(attempts: int) -> timedelta:
    seconds = min(settings.OUTBOX_RETRY_BASE_SECONDS * (2 ** (attempts - 1)), settings.OUTBOX_RETRY_MAX_SECONDS)
    return timedelta(seconds=seconds)


async def _deliver(db: AsyncSession, event_id: str) -> bool:
    event = await db.get(OutboxEvent, event_id, populate_existing=True)
    if event is None or event.status != OutboxStatus.PENDING.value:
        return False
    event_type = event.event_type
    handler = _handlers.get(event_type)
    try:
        if handler is None:
            raise LookupError(f"No outbox handler registered for '{event_type}'")
        await handler(db, dict(event.payload))
        event.attempts += 1
        event.status = OutboxStatus.DELIVERED.value
        event.delivered_at = datetime.now(tz=timezone.utc)
        event.last_error = None
        await db.commit()
        return True
    except Exception as exc:
        logger.exception("Outbox event %s (%s) failed", event_id, event_type)
        error = f"{type(exc).__name__}: {exc}"[:1000]
        await db.rollback()

    # Record the failure in a fresh transaction.
    event = await db.get(OutboxEvent, event_id, populate_existing=True)
    if event is None:
        return False
    event.attempts += 1
    event.last_error = error
    if event.attempts >= settings.OUTBOX_MAX_ATTEMPTS:
        event.status = OutboxStatus.FAILED.value
        logger.error("Outbox event %s gave up after %d attempts", event_id, event.attempts)
    else:
        event.available_at = datetime.now(tz=timezone.utc) + retry_delay(event.attempts)
    await db.commit()
    return False


async def dispatch(db: AsyncSession, events: list[OutboxEvent]) -> int:
    """Deliver the given events now. Never raises; returns how many succeeded."""
    delivered = 0
    for event_id in [event.id for event in events]:
        try:
            if await _deliver(db, event_id):
                delivered += 1
        except Exception:
            # Even recording the failure failed (database down); the drain retries later.
            logger.exception("Could not record outbox failure for event %s", event_id)
            await db.rollback()
    return delivered


async def dispatch_pending(db: AsyncSession, limit: int | None = None) -> int:
    result = await db.execute(
        select(OutboxEvent)
        .where(
            OutboxEvent.status == OutboxStatus.PENDING.value,
            OutboxEvent.available_at <= datetime.now(tz=timezone.utc),
        )
        .order_by(OutboxEvent.created_at)
        .limit(limit or settings.OUTBOX_BATCH_SIZE)
    )
    events = list(result.scalars().all())
    if not events:
        return 0
    delivered = await dispatch(db, events)
    logger.info("Outbox drain: %d/%d events delivered", delivered, len(events))
    return delivered


async def stats(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(OutboxEvent.status, func.count(OutboxEvent.id)).group_by(OutboxEvent.status)
    )
    counts = {status.value: 0 for status in OutboxStatus}
    for status, count in result.all():
        counts[status] = count
    return counts
