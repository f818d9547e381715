"""
Orderflow - Pydantic schemas for orders, kitchen and history
"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.models.order import KitchenStatus, OrderStatus, PaymentMethod, PaymentStatus
from orderflow.models.order_history import ArchiveReason


class OrderItemIn(BaseModel):
    item_id: str = Field(..., min_length=1, examples=["item-001"])
    name: str = Field(..., min_length=1, max_length=255)
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    special_instructions: str = Field("", max_length=500)

    @field_validator("name", "special_instructions")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class OrderCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    restaurant_name: str = Field(..., min_length=1, max_length=255)
    restaurant_slug: str = Field(..., min_length=1, max_length=255)
    items: list[OrderItemIn] = Field(..., min_length=1)
    total_price: float = Field(..., gt=0)
    payment_method: PaymentMethod
    transaction_id: str = Field(..., min_length=1, max_length=128)
    customer_notes: str = Field("", max_length=1000)


class ConfirmPaymentRequest(BaseModel):
    staff_id: str = Field(..., min_length=1, max_length=64)
    verify_transaction: bool = True


class StaffActionRequest(BaseModel):
    staff_id: str = Field(..., min_length=1, max_length=64)


class KitchenStatusUpdate(BaseModel):
    kitchen_status: KitchenStatus


class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: str
    restaurant_id: str
    restaurant_name: str
    restaurant_slug: str
    items: list[dict[str, Any]]
    total_price: float
    payment_method: PaymentMethod
    transaction_id: str
    customer_notes: str
    payment_status: PaymentStatus
    payment_confirmed_at: datetime | None
    payment_confirmed_by: str | None
    transaction_verified: bool
    verification_timestamp: datetime | None
    verified_by: str | None
    payment_failed_at: datetime | None = None
    payment_failed_by: str | None = None
    status: OrderStatus
    kitchen_status: KitchenStatus
    kitchen_priority: bool
    kitchen_hidden: bool
    sent_to_kitchen: bool
    sent_to_kitchen_at: datetime | None
    estimated_preparation_time: int
    reviewed: bool
    archived_to_history: bool
    version_id: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    pagination: Pagination


class HideAcknowledgement(BaseModel):
    order_id: str
    kitchen_hidden: bool
    message: str


class HistoryReview(BaseModel):
    overall_rating: int | None
    overall_comment: str
    item_reviews: list[dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryOrderResponse(BaseModel):
    id: str
    original_order_id: str
    order_number: str
    restaurant_id: str
    restaurant_name: str
    restaurant_slug: str
    items: list[dict[str, Any]]
    total_price: float
    payment_method: str
    status: str
    kitchen_status_at_archive: str | None
    archived_reason: ArchiveReason
    archived_by: str
    archived_at: datetime
    original_created_at: datetime
    review: HistoryReview | None = None

    model_config = ConfigDict(from_attributes=True)
