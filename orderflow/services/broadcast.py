"""
Orderflow - Kitchen broadcast channel

Architecture:
  - Each kitchen dashboard holds one streaming response backed by a Subscriber
    (a bounded asyncio.Queue the stream drains).
  - BroadcastChannel owns the set of subscribers and fans order events out to
    them. It lives on app.state and is injected into handlers.
  - RedisBroadcastChannel keeps the same interface but routes publishes through
    a Redis pub/sub channel so every instance's dashboards hear every update.

Delivery is best-effort: a failed push is logged and the subscriber stays
registered until its stream disconnects. Nothing is replayed.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable, Iterable

import redis.asyncio as aioredis

from orderflow.core.config import get_settings
from orderflow.models.order import Order

settings = get_settings()
logger = logging.getLogger(__name__)

INITIAL_ORDER = "initial_order"
ORDER_UPDATE = "order_update"
KITCHEN_STATUS_UPDATE = "kitchen_status_update"
HEARTBEAT = "heartbeat"
CONNECTION_ESTABLISHED = "connection_established"
ERROR = "error"

InitialLoader = Callable[[], Awaitable[Iterable[Order]]]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def kitchen_event_payload(order: Order, event_type: str) -> dict[str, Any]:
    """The order card a kitchen dashboard renders."""
    return {
        "type": event_type,
        "id": order.id,
        "order_number": order.order_number,
        "restaurant_id": order.restaurant_id,
        "restaurant_name": order.restaurant_name,
        "items": order.items,
        "total_price": order.total_price,
        "status": order.status.value,
        "kitchen_status": order.kitchen_status.value,
        "payment_status": order.payment_status.value,
        "payment_confirmed_at": _iso(order.payment_confirmed_at),
        "sent_to_kitchen_at": _iso(order.sent_to_kitchen_at),
        "created_at": _iso(order.created_at),
        "customer_notes": order.customer_notes or "",
        "estimated_preparation_time": order.estimated_preparation_time,
        "kitchen_priority": order.kitchen_priority,
        "kitchen_hidden": order.kitchen_hidden,
        "timestamp": _now_iso(),
    }


def control_event(event_type: str, **fields: Any) -> dict[str, Any]:
    return {"type": event_type, "timestamp": _now_iso(), **fields}


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class Subscriber:
    """One connected dashboard. The queue is its push primitive."""

    def __init__(self, restaurant_id: str | None = None, queue_size: int | None = None):
        self.id = uuid.uuid4().hex
        self.restaurant_id = restaurant_id
        self.max_pending = queue_size or settings.SSE_SUBSCRIBER_QUEUE_SIZE
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def wants(self, event: dict[str, Any]) -> bool:
        if self.restaurant_id is None:
            return True
        return event.get("restaurant_id") in (None, self.restaurant_id)

    def push(self, event: dict[str, Any], force: bool = False) -> None:
        """Queue an event. Live pushes beyond max_pending raise asyncio.QueueFull."""
        if not force and self.queue.qsize() >= self.max_pending:
            raise asyncio.QueueFull(f"{self!r} has {self.queue.qsize()} undelivered events")
        self.queue.put_nowait(event)

    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def __repr__(self) -> str:
        return f"<Subscriber {self.id[:8]} restaurant={self.restaurant_id or 'all'}>"


class BroadcastChannel:
    """Process-local fan-out of kitchen events."""

    def __init__(self):
        self._subscribers: set[Subscriber] = set()
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def subscribe(self, subscriber: Subscriber, initial_loader: InitialLoader | None = None) -> int:
        """
        Register a subscriber and queue the current kitchen-visible orders as
        initial_order events, then connection_established. The lock is held
        throughout, so no live event can overtake the initial snapshot.
        Returns the number of initial orders sent.
        """
        async with self._lock:
            self._subscribers.add(subscriber)
            count = 0
            if initial_loader is not None:
                try:
                    for order in await initial_loader():
                        subscriber.push(kitchen_event_payload(order, INITIAL_ORDER), force=True)
                        count += 1
                except Exception as exc:
                    logger.exception("Failed to load initial kitchen orders for %r", subscriber)
                    subscriber.push(control_event(
                        ERROR, message="Failed to load kitchen orders", error=str(exc)[:200],
                    ), force=True)
                    return count
            subscriber.push(control_event(
                CONNECTION_ESTABLISHED,
                orders_count=count,
                restaurant_id=subscriber.restaurant_id or "all",
            ), force=True)
        logger.info("Kitchen dashboard %r connected (%d initial orders)", subscriber, count)
        return count

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        async with self._lock:
            self._subscribers.discard(subscriber)
        logger.info("Kitchen dashboard %r disconnected", subscriber)

    async def publish(self, event: dict[str, Any]) -> int:
        return await self._fan_out(event)

    async def _fan_out(self, event: dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for subscriber in targets:
            if not subscriber.wants(event):
                continue
            try:
                subscriber.push(event)
                delivered += 1
            except Exception:
                logger.exception("Error broadcasting %s to %r", event.get("type"), subscriber)
        return delivered

    async def publish_order(self, order: Order, event_type: str = ORDER_UPDATE) -> bool:
        """Broadcast an order change if the kitchen should see it at all."""
        if not order.is_broadcastable():
            logger.info(
                "Skipping broadcast for order %s: payment not confirmed or not sent to kitchen",
                order.order_number,
            )
            return False
        await self.publish(kitchen_event_payload(order, event_type))
        logger.info("Broadcasted %s for order %s", event_type, order.order_number)
        return True


class RedisBroadcastChannel(BroadcastChannel):
    """
    Cross-instance variant: publish() goes to Redis, and a listener task
    relays every message on the channel to this instance's subscribers.
    A lost subscription is re-established with capped exponential backoff.
    """

    def __init__(self, redis_factory: Callable[[], aioredis.Redis], channel_name: str):
        super().__init__()
        self._redis_factory = redis_factory
        self._channel_name = channel_name
        self._pubsub = None
        self._listener: asyncio.Task | None = None
        self._failures = 0

    async def start(self) -> None:
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen(), name="kitchen-broadcast-relay")
        logger.info("Kitchen broadcast relay listening on %s", self._channel_name)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Kitchen broadcast relay had already failed")
            self._listener = None
        await self._close_pubsub()

    async def publish(self, event: dict[str, Any]) -> int:
        try:
            return await self._redis_factory().publish(self._channel_name, json.dumps(event))
        except Exception:
            logger.exception("Redis publish failed for %s event", event.get("type"))
            return 0

    async def _subscribe(self) -> None:
        pubsub = self._redis_factory().pubsub()
        await pubsub.subscribe(self._channel_name)
        self._pubsub = pubsub

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self._channel_name)
        except Exception as exc:
            logger.warning("Could not unsubscribe from %s: %s", self._channel_name, exc)
        try:
            await pubsub.aclose()
        except Exception as exc:
            logger.warning("Could not close Redis pub/sub: %s", exc)

    def _retry_delay(self, attempt: int) -> float:
        delay = settings.BROADCAST_RELAY_RETRY_SECONDS * (2 ** (attempt - 1))
        return min(delay, settings.BROADCAST_RELAY_RETRY_MAX_SECONDS)

    async def _relay(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed broadcast message: %r", message.get("data"))
                continue
            self._failures = 0
            await self._fan_out(event)

    async def _listen(self) -> None:
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info("Kitchen broadcast relay resubscribed to %s", self._channel_name)
                await self._relay()
                logger.warning("Redis pub/sub stream on %s ended", self._channel_name)
            except Exception:
                logger.exception("Kitchen broadcast relay lost its Redis subscription")
            await self._close_pubsub()
            self._failures += 1
            delay = self._retry_delay(self._failures)
            logger.info("Resubscribing kitchen broadcast relay in %.1fs", delay)
            await asyncio.sleep(delay)


def build_broadcast_channel(redis_factory: Callable[[], aioredis.Redis] | None = None) -> BroadcastChannel:
    if settings.BROADCAST_BACKEND == "redis":
        if redis_factory is None:
            from orderflow.core.redis_client import get_redis
            redis_factory = get_redis
        return RedisBroadcastChannel(redis_factory, settings.BROADCAST_REDIS_CHANNEL)
    return BroadcastChannel()


async def stream_events(
    channel: BroadcastChannel,
    subscriber: Subscriber,
    is_disconnected: Callable[[], Awaitable[bool]],
    initial_loader: InitialLoader | None = None,
    heartbeat_interval: float | None = None,
) -> AsyncGenerator[str, None]:
    """
    SSE body for one dashboard: retry hint, initial snapshot, then live
    events with a heartbeat after every idle interval. Ends on disconnect.
    """
    heartbeat = heartbeat_interval or settings.SSE_HEARTBEAT_INTERVAL_SECONDS
    poll = min(1.0, heartbeat)
    try:
        yield f"retry: {settings.SSE_RETRY_MILLISECONDS}\n\n"
        await channel.subscribe(subscriber, initial_loader)

        idle = 0.0
        while True:
            if await is_disconnected():
                break
            event = await subscriber.next_event(timeout=poll)
            if event is None:
                idle += poll
                if idle < heartbeat:
                    continue
                event = control_event(HEARTBEAT)
            idle = 0.0
            yield format_sse(event)
    finally:
        await channel.unsubscribe(subscriber)
