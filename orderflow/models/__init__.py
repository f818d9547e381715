"""
Importing this package registers every table on Base.metadata.
"""
from orderflow.models.order import (
    KitchenStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from orderflow.models.order_history import ArchiveReason, OrderHistory
from orderflow.models.outbox import OutboxEvent, OutboxStatus
from orderflow.models.review import RatingSummary, Review

__all__ = [
    "ArchiveReason",
    "KitchenStatus",
    "Order",
    "OrderHistory",
    "OrderStatus",
    "OutboxEvent",
    "OutboxStatus",
    "PaymentMethod",
    "PaymentStatus",
    "RatingSummary",
    "Review",
]
