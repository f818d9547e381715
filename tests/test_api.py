"""
HTTP surface: status codes, error mapping and the end-to-end kitchen flow.
"""
import json

import pytest

from conftest import order_payload
from orderflow.api import kitchen
from orderflow.models.order import KitchenStatus
from orderflow.services import order_service
from orderflow.services.broadcast import (
    CONNECTION_ESTABLISHED,
    INITIAL_ORDER,
    KITCHEN_STATUS_UPDATE,
    BroadcastChannel,
    Subscriber,
)


async def _place(client, **overrides) -> dict:
    r = await client.post("/orders", json=order_payload(**overrides))
    assert r.status_code == 201, r.text
    return r.json()


@pytest.mark.asyncio
async def test_root_and_health(client):
    r = await client.get("/")
    assert r.json()["service"] == "orderflow"

    r = await client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["dependencies"]["database"] == "ok"
    assert body["kitchen_subscribers"] == 0
    assert body["outbox"]["pending"] == 0


@pytest.mark.asyncio
async def test_create_and_fetch_order(client):
    order = await _place(client)
    assert order["payment_status"] == "pending"
    assert order["kitchen_hidden"] is True

    r = await client.get(f"/orders/{order['id']}")
    assert r.status_code == 200
    assert r.json()["order_number"] == order["order_number"]

    r = await client.get("/orders/track", params={"reference": "TXN-1001"})
    assert r.json()["id"] == order["id"]


@pytest.mark.asyncio
async def test_error_mapping(client):
    await _place(client)

    r = await client.post("/orders", json=order_payload(user_id="user-2"))
    assert r.status_code == 409
    assert "already been used" in r.json()["detail"]

    r = await client.post("/orders", json=order_payload(items=[], transaction_id="TXN-x"))
    assert r.status_code == 422

    r = await client.get("/orders/unknown")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_kitchen_flow_end_to_end(client, broadcast):
    subscriber = Subscriber()
    await broadcast.subscribe(subscriber)
    subscriber.queue.get_nowait()

    order = await _place(client)
    order_id = order["id"]

    r = await client.patch(f"/kitchen/orders/{order_id}/status", json={"kitchen_status": "Preparing"})
    assert r.status_code == 409

    r = await client.patch(f"/orders/{order_id}/confirm-payment", json={"staff_id": "staff-1"})
    assert r.status_code == 200
    assert r.json()["sent_to_kitchen"] is True

    r = await client.get("/kitchen/orders", params={"restaurant_id": "rest-1"})
    assert [o["id"] for o in r.json()] == [order_id]

    for expected in ("Preparing", "Ready", "Delivered"):
        r = await client.post(f"/kitchen/orders/{order_id}/advance")
        assert r.status_code == 200, r.text
        assert r.json()["kitchen_status"] == expected

    assert r.json()["status"] == "Delivered"
    assert r.json()["archived_to_history"] is True

    statuses = []
    while not subscriber.queue.empty():
        event = subscriber.queue.get_nowait()
        if event["type"] == KITCHEN_STATUS_UPDATE:
            statuses.append(event["kitchen_status"])
    assert statuses == ["Preparing", "Ready", "Delivered"]

    r = await client.get("/orders/history", params={"user_id": "user-1"})
    assert [h["original_order_id"] for h in r.json()] == [order_id]

    r = await client.get("/kitchen/orders")
    assert r.json() == []


@pytest.mark.asyncio
async def test_hide_returns_acknowledgement(client):
    order = await _place(client)
    await client.patch(f"/orders/{order['id']}/confirm-payment", json={"staff_id": "staff-1"})

    r = await client.patch(f"/kitchen/orders/{order['id']}/hide")
    assert r.status_code == 200
    assert r.json()["kitchen_hidden"] is True
    assert r.json()["order_id"] == order["id"]


@pytest.mark.asyncio
async def test_payment_queues_and_failure(client):
    order = await _place(client)

    r = await client.get("/kitchen/pending-payments")
    assert [o["id"] for o in r.json()] == [order["id"]]

    r = await client.patch(f"/orders/{order['id']}/payment-failed", json={"staff_id": "staff-1"})
    assert r.json()["payment_status"] == "failed"

    r = await client.patch(f"/orders/{order['id']}/confirm-payment", json={"staff_id": "staff-1"})
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_list_orders_pagination(client):
    for n in range(3):
        await _place(client, transaction_id=f"TXN-{n}")

    r = await client.get("/orders", params={"user_id": "user-1", "limit": 2, "page": 2})
    body = r.json()
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}
    assert len(body["orders"]) == 1

    r = await client.get("/orders", params={"status": "sideways"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_manual_archive_and_cancel(client):
    order = await _place(client)

    r = await client.post(f"/orders/{order['id']}/archive", json={"staff_id": "staff-1"})
    assert r.json()["archived_to_history"] is True
    assert r.json()["status"] == "Delivered"
    r = await client.post(f"/orders/{order['id']}/archive", json={"staff_id": "staff-1"})
    assert r.status_code == 200
    r = await client.patch(f"/orders/{order['id']}/cancel")
    assert r.status_code == 409

    other = await _place(client, transaction_id="TXN-2")
    r = await client.patch(f"/orders/{other['id']}/cancel")
    assert r.json()["status"] == "Cancelled"
    r = await client.patch(f"/orders/{other['id']}/cancel")
    assert r.status_code == 409

    r = await client.post(f"/orders/{other['id']}/archive", json={"staff_id": "staff-1"})
    assert r.json()["status"] == "Cancelled"
    assert r.json()["archived_to_history"] is True


@pytest.mark.asyncio
async def test_reviews_and_ratings_endpoints(client):
    order = await _place(client)

    r = await client.post("/reviews", json={
        "order_id": order["id"],
        "user_id": "user-1",
        "overall_rating": 5,
        "item_reviews": [{"item_id": "item-biryani", "item_name": "Chicken Biryani", "rating": 4}],
    })
    assert r.status_code == 201, r.text

    r = await client.get("/reviews", params={"order_id": order["id"]})
    assert r.json()["overall_rating"] == 5

    r = await client.get("/reviews", params={"item_id": "item-biryani"})
    assert [e["rating"] for e in r.json()] == [4]

    r = await client.get("/reviews")
    assert r.status_code == 400

    r = await client.get("/ratings/restaurant/rest-1")
    assert r.json()["average_rating"] == 5.0

    r = await client.post("/reviews", json={"order_id": order["id"], "user_id": "user-1", "overall_rating": 6})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_admin_outbox(client):
    r = await client.get("/admin/outbox")
    assert r.json() == {"counts": {"pending": 0, "delivered": 0, "failed": 0}, "failed": []}

    r = await client.post("/admin/outbox/drain")
    assert r.json()["delivered"] == 0


class DashboardRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


async def _frames_until_connected(body) -> list[dict]:
    events = []
    async for frame in body:
        if not frame.startswith("data: "):
            continue
        event = json.loads(frame[len("data: "):])
        events.append(event)
        if event["type"] == CONNECTION_ESTABLISHED:
            break
    return events


@pytest.mark.asyncio
async def test_kitchen_updates_stream_starts_with_visible_orders(db):
    async def paid(**overrides):
        order = await order_service.create_order(db, order_payload(**overrides))
        return await order_service.confirm_payment(db, order.id, "staff-1")

    await order_service.create_order(db, order_payload(transaction_id="TXN-unpaid"))
    hidden = await paid(transaction_id="TXN-hidden")
    await order_service.hide_from_kitchen(db, hidden.id)
    cancelled = await paid(transaction_id="TXN-cancelled")
    await order_service.cancel_order(db, cancelled.id)
    delivered = await paid(transaction_id="TXN-delivered")
    await order_service.update_kitchen_status(db, delivered.id, KitchenStatus.DELIVERED)
    visible = await paid(transaction_id="TXN-visible")
    preparing = await paid(transaction_id="TXN-preparing")
    await order_service.update_kitchen_status(db, preparing.id, KitchenStatus.PREPARING)
    elsewhere = await paid(transaction_id="TXN-elsewhere", restaurant_id="rest-2")

    channel = BroadcastChannel()
    response = await kitchen.kitchen_updates(DashboardRequest(), restaurant_id=None, broadcast=channel)
    assert response.media_type == "text/event-stream"
    events = await _frames_until_connected(response.body_iterator)

    assert [e["type"] for e in events[:-1]] == [INITIAL_ORDER] * 3
    assert {e["id"] for e in events[:-1]} == {visible.id, preparing.id, elsewhere.id}
    assert events[-1]["orders_count"] == 3
    await response.body_iterator.aclose()
    assert channel.subscriber_count == 0

    response = await kitchen.kitchen_updates(DashboardRequest(), restaurant_id="rest-1", broadcast=channel)
    events = await _frames_until_connected(response.body_iterator)
    assert {e["id"] for e in events if e["type"] == INITIAL_ORDER} == {visible.id, preparing.id}
    assert events[-1]["restaurant_id"] == "rest-1"
    await response.body_iterator.aclose()
