"""
Kitchen broadcast channel: publish policy, initial snapshot ordering,
subscriber isolation and the SSE stream body.
"""
import asyncio
import json
import logging

import pytest

from conftest import order_payload
from orderflow.models.order import KitchenStatus, Order, OrderStatus, PaymentStatus
from orderflow.services import order_service
from orderflow.services import broadcast as broadcast_module
from orderflow.services.broadcast import (
    CONNECTION_ESTABLISHED,
    ERROR,
    HEARTBEAT,
    INITIAL_ORDER,
    KITCHEN_STATUS_UPDATE,
    ORDER_UPDATE,
    BroadcastChannel,
    RedisBroadcastChannel,
    Subscriber,
    format_sse,
    kitchen_event_payload,
    stream_events,
)


def _order(**fields) -> Order:
    defaults = dict(
        id="order-1",
        order_number="ORD-261019-101",
        restaurant_id="rest-1",
        restaurant_name="Karachi Kitchen",
        items=[{"item_id": "item-biryani", "name": "Chicken Biryani", "price": 850.0, "quantity": 1}],
        total_price=850.0,
        status=OrderStatus.CONFIRMED,
        kitchen_status=KitchenStatus.PENDING,
        payment_status=PaymentStatus.CONFIRMED,
        sent_to_kitchen=True,
        kitchen_hidden=False,
        customer_notes="",
        estimated_preparation_time=7,
        kitchen_priority=False,
    )
    defaults.update(fields)
    return Order(**defaults)


def _drain(subscriber: Subscriber) -> list[dict]:
    events = []
    while not subscriber.queue.empty():
        events.append(subscriber.queue.get_nowait())
    return events


class BrokenSubscriber(Subscriber):
    def push(self, event, force=False):
        raise ConnectionResetError("dashboard went away")


def test_payload_carries_the_order_card():
    payload = kitchen_event_payload(_order(), ORDER_UPDATE)
    assert payload["type"] == ORDER_UPDATE
    assert payload["id"] == "order-1"
    assert payload["status"] == "Confirmed"
    assert payload["kitchen_status"] == "Pending"
    assert payload["payment_status"] == "confirmed"
    assert "timestamp" in payload


def test_sse_frame_is_one_json_object():
    frame = format_sse({"type": HEARTBEAT, "timestamp": "now"})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": HEARTBEAT, "timestamp": "now"}


@pytest.mark.asyncio
async def test_unpaid_or_undispatched_orders_are_not_broadcast():
    channel = BroadcastChannel()
    subscriber = Subscriber()
    await channel.subscribe(subscriber)
    _drain(subscriber)

    assert await channel.publish_order(_order(payment_status=PaymentStatus.PENDING)) is False
    assert await channel.publish_order(_order(sent_to_kitchen=False)) is False
    assert subscriber.queue.empty()

    assert await channel.publish_order(_order(), KITCHEN_STATUS_UPDATE) is True
    [event] = _drain(subscriber)
    assert event["type"] == KITCHEN_STATUS_UPDATE


@pytest.mark.asyncio
async def test_initial_snapshot_precedes_connection_established_and_live_events():
    channel = BroadcastChannel()
    subscriber = Subscriber()
    orders = [_order(id="a", order_number="ORD-1"), _order(id="b", order_number="ORD-2")]
    loader_started = asyncio.Event()
    release_loader = asyncio.Event()

    async def slow_loader():
        loader_started.set()
        await release_loader.wait()
        return orders

    subscribing = asyncio.create_task(channel.subscribe(subscriber, slow_loader))
    await loader_started.wait()
    publishing = asyncio.create_task(channel.publish_order(_order(id="live")))
    await asyncio.sleep(0)
    release_loader.set()
    assert await subscribing == 2
    await publishing

    events = _drain(subscriber)
    assert [e["type"] for e in events] == [INITIAL_ORDER, INITIAL_ORDER, CONNECTION_ESTABLISHED, ORDER_UPDATE]
    assert [e["id"] for e in events[:2]] == ["a", "b"]
    assert events[2]["orders_count"] == 2
    assert events[2]["restaurant_id"] == "all"
    assert events[3]["id"] == "live"


@pytest.mark.asyncio
async def test_failing_loader_sends_error_event():
    channel = BroadcastChannel()
    subscriber = Subscriber()

    async def broken_loader():
        raise RuntimeError("database unavailable")

    assert await channel.subscribe(subscriber, broken_loader) == 0
    [event] = _drain(subscriber)
    assert event["type"] == ERROR


@pytest.mark.asyncio
async def test_failed_push_is_logged_and_others_still_receive(caplog):
    channel = BroadcastChannel()
    healthy = Subscriber()
    broken = BrokenSubscriber()
    await channel.subscribe(healthy)
    channel._subscribers.add(broken)
    _drain(healthy)

    with caplog.at_level(logging.ERROR, logger="orderflow.services.broadcast"):
        delivered = await channel.publish({"type": ORDER_UPDATE, "id": "x"})

    assert delivered == 1
    assert [e["id"] for e in _drain(healthy)] == ["x"]
    assert "Error broadcasting" in caplog.text
    # No pruning on failure.
    assert channel.subscriber_count == 2


@pytest.mark.asyncio
async def test_full_queue_counts_as_failed_write():
    channel = BroadcastChannel()
    subscriber = Subscriber(queue_size=1)
    await channel.subscribe(subscriber)  # connection_established fills the queue

    assert await channel.publish({"type": ORDER_UPDATE, "id": "x"}) == 0
    assert subscriber.queue.qsize() == 1


@pytest.mark.asyncio
async def test_unsubscribed_handle_receives_nothing():
    channel = BroadcastChannel()
    subscriber = Subscriber()
    await channel.subscribe(subscriber)
    await channel.unsubscribe(subscriber)
    _drain(subscriber)

    await channel.publish_order(_order())
    assert subscriber.queue.empty()
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_restaurant_filter():
    channel = BroadcastChannel()
    mine = Subscriber(restaurant_id="rest-1")
    theirs = Subscriber(restaurant_id="rest-2")
    await channel.subscribe(mine)
    await channel.subscribe(theirs)
    _drain(mine)
    _drain(theirs)

    await channel.publish_order(_order(restaurant_id="rest-1"))
    assert len(_drain(mine)) == 1
    assert _drain(theirs) == []


@pytest.mark.asyncio
async def test_stream_emits_retry_snapshot_live_and_heartbeat():
    channel = BroadcastChannel()
    subscriber = Subscriber()
    disconnected = False

    async def is_disconnected():
        return disconnected

    async def loader():
        return [_order()]

    stream = stream_events(channel, subscriber, is_disconnected, initial_loader=loader, heartbeat_interval=0.05)

    assert (await anext(stream)).startswith("retry: ")
    first = json.loads((await anext(stream))[len("data: "):])
    assert first["type"] == INITIAL_ORDER
    second = json.loads((await anext(stream))[len("data: "):])
    assert second["type"] == CONNECTION_ESTABLISHED

    await channel.publish_order(_order(id="live"))
    live = json.loads((await anext(stream))[len("data: "):])
    assert live["id"] == "live"

    heartbeat = json.loads((await anext(stream))[len("data: "):])
    assert heartbeat["type"] == HEARTBEAT

    disconnected = True
    with pytest.raises(StopAsyncIteration):
        await anext(stream)
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_service_operations_announce_changes(db):
    channel = BroadcastChannel()
    subscriber = Subscriber()
    await channel.subscribe(subscriber)
    _drain(subscriber)

    order = await order_service.create_order(db, order_payload(), broadcast=channel)
    assert subscriber.queue.empty()

    await order_service.confirm_payment(db, order.id, "staff-1", broadcast=channel)
    await order_service.update_kitchen_status(db, order.id, KitchenStatus.PREPARING, broadcast=channel)
    await order_service.hide_from_kitchen(db, order.id, broadcast=channel)

    events = _drain(subscriber)
    assert [e["type"] for e in events] == [ORDER_UPDATE, KITCHEN_STATUS_UPDATE, ORDER_UPDATE]
    assert events[1]["kitchen_status"] == "Preparing"
    assert events[2]["kitchen_hidden"] is True


class ScriptedPubSub:
    """Replays messages, then either raises or stays open like a quiet channel."""

    def __init__(self, messages, error=None, unsubscribe_error=None):
        self.messages = messages
        self.error = error
        self.unsubscribe_error = unsubscribe_error
        self.channels = []
        self.closed = False

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def unsubscribe(self, channel):
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error
        self.channels.remove(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()


class ScriptedRedis:
    def __init__(self, *pubsubs):
        self.pubsubs = list(pubsubs)

    def pubsub(self):
        return self.pubsubs.pop(0)


def _relayed(event_id: str) -> dict:
    return {"type": "message", "data": json.dumps({"type": ORDER_UPDATE, "id": event_id})}


async def _wait_for_events(subscriber: Subscriber, count: int) -> list[dict]:
    for _ in range(200):
        if subscriber.queue.qsize() >= count:
            break
        await asyncio.sleep(0.01)
    return _drain(subscriber)


@pytest.mark.asyncio
async def test_redis_relay_resubscribes_after_connection_loss(monkeypatch, caplog):
    monkeypatch.setattr(broadcast_module.settings, "BROADCAST_RELAY_RETRY_SECONDS", 0.01)
    first = ScriptedPubSub(
        [{"type": "subscribe", "data": 1}, _relayed("before")],
        error=ConnectionError("connection reset by peer"),
    )
    second = ScriptedPubSub([{"type": "message", "data": "not json"}, _relayed("after")])
    redis = ScriptedRedis(first, second)
    channel = RedisBroadcastChannel(lambda: redis, "kitchen:test")
    subscriber = Subscriber()
    await channel.subscribe(subscriber)
    _drain(subscriber)

    with caplog.at_level(logging.INFO, logger="orderflow.services.broadcast"):
        await channel.start()
        events = await _wait_for_events(subscriber, 2)

        assert [e["id"] for e in events] == ["before", "after"]
        assert first.closed is True
        assert second.channels == ["kitchen:test"]
        assert "lost its Redis subscription" in caplog.text
        assert "Dropping malformed broadcast message" in caplog.text

        await channel.stop()

    assert second.closed is True
    assert second.channels == []


@pytest.mark.asyncio
async def test_stop_closes_pubsub_when_relay_already_failed():
    pubsub = ScriptedPubSub([], unsubscribe_error=ConnectionError("redis is down"))
    channel = RedisBroadcastChannel(lambda: ScriptedRedis(pubsub), "kitchen:test")

    async def failed_relay():
        raise ConnectionError("redis is down")

    channel._pubsub = pubsub
    channel._listener = asyncio.create_task(failed_relay())
    await asyncio.sleep(0)

    await channel.stop()

    assert pubsub.closed is True
    assert channel._pubsub is None
