"""
Orderflow - Order DB model and its status state machine

An order carries three correlated status enums (payment, lifecycle, kitchen)
plus the visibility flags that decide whether the kitchen dashboard sees it.
Line items are stored as a JSON document on the row.
"""
import random
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.core.errors import PreconditionError
from orderflow.db.database import Base


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_order_number(now: datetime | None = None) -> str:
    """ORD-<YYMMDD>-<3 digits>, e.g. ORD-261019-482."""
    now = now or utcnow()
    return f"ORD-{now.strftime('%y%m%d')}-{random.randint(100, 999)}"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class OrderStatus(str, PyEnum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PREPARING = "Preparing"
    READY = "Ready"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class KitchenStatus(str, PyEnum):
    PENDING = "Pending"
    PREPARING = "Preparing"
    READY = "Ready"
    DELIVERED = "Delivered"


class PaymentMethod(str, PyEnum):
    EASYPAISA = "EasyPaisa"
    JAZZCASH = "JazzCash"
    NAYAPAY = "NayaPay"
    SADAPAY = "SadaPay"
    ALLIED_BANK = "Allied Bank"
    CASH = "Cash"
    CREDIT_CARD = "Credit Card"
    DEBIT_CARD = "Debit Card"
    ONLINE_PAYMENT = "Online Payment"
    MOBILE_WALLET = "Mobile Wallet"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Kitchen statuses that are mirrored into the order lifecycle status.
KITCHEN_TO_ORDER_STATUS: dict[KitchenStatus, OrderStatus] = {
    KitchenStatus.PREPARING: OrderStatus.PREPARING,
    KitchenStatus.READY: OrderStatus.READY,
    KitchenStatus.DELIVERED: OrderStatus.DELIVERED,
}

NEXT_KITCHEN_STATUS: dict[KitchenStatus, KitchenStatus] = {
    KitchenStatus.PENDING: KitchenStatus.PREPARING,
    KitchenStatus.PREPARING: KitchenStatus.READY,
    KitchenStatus.READY: KitchenStatus.DELIVERED,
}


def _str_enum(enum_cls: type[PyEnum], name: str) -> Enum:
    # Stored as VARCHAR holding the enum *values*; avoids database enum types.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def kitchen_priority_for(items: list[dict[str, Any]]) -> bool:
    return len(items) > 3 or any(item.get("special_instructions") for item in items)


def preparation_minutes_for(items: list[dict[str, Any]]) -> int:
    return 5 + len(items) * 2


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    restaurant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    restaurant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    restaurant_slug: Mapped[str] = mapped_column(String(255), nullable=False)

    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _str_enum(PaymentMethod, "payment_method"), index=True, nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    customer_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    staff_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # ── Payment ───────────────────────────────────────────────
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _str_enum(PaymentStatus, "payment_status"), index=True, nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_confirmed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_failed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # ── Lifecycle / kitchen ───────────────────────────────────
    status: Mapped[OrderStatus] = mapped_column(
        _str_enum(OrderStatus, "order_status"), index=True, nullable=False,
        default=OrderStatus.PENDING,
    )
    kitchen_status: Mapped[KitchenStatus] = mapped_column(
        _str_enum(KitchenStatus, "kitchen_status"), index=True, nullable=False,
        default=KitchenStatus.PENDING,
    )
    kitchen_priority: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    kitchen_hidden: Mapped[bool] = mapped_column(Boolean, index=True, nullable=False, default=True)
    sent_to_kitchen: Mapped[bool] = mapped_column(Boolean, index=True, nullable=False, default=False)
    sent_to_kitchen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_preparation_time: Mapped[int] = mapped_column(Integer, nullable=False, default=15)

    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_to_history: Mapped[bool] = mapped_column(Boolean, index=True, nullable=False, default=False)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status} kitchen={self.kitchen_status}>"

    # ── Derived fields ────────────────────────────────────────

    def set_items(self, items: list[dict[str, Any]]) -> None:
        self.items = items
        self.kitchen_priority = kitchen_priority_for(items)
        self.estimated_preparation_time = preparation_minutes_for(items)

    # ── Predicates ────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_ready_for_kitchen(self) -> bool:
        return (
            self.payment_status == PaymentStatus.CONFIRMED
            and bool(self.sent_to_kitchen)
            and not self.kitchen_hidden
            and not self.is_terminal
        )

    def is_broadcastable(self) -> bool:
        """Kitchen dashboards only hear about paid orders that were dispatched."""
        return self.payment_status == PaymentStatus.CONFIRMED and self.sent_to_kitchen is not False

    @property
    def is_delivered(self) -> bool:
        return self.status == OrderStatus.DELIVERED or self.kitchen_status == KitchenStatus.DELIVERED

    # ── Transitions ───────────────────────────────────────────

    def confirm_payment_and_send_to_kitchen(self, staff_id: str | None, verify_transaction: bool = True) -> bool:
        """
        Confirm payment and release the order to the kitchen.
        Returns False when the payment was already confirmed (nothing changes).
        """
        if self.is_terminal:
            raise PreconditionError(f"Cannot confirm payment for a {self.status.value} order.")
        if self.payment_status == PaymentStatus.CONFIRMED:
            return False

        now = utcnow()
        self.payment_status = PaymentStatus.CONFIRMED
        self.status = OrderStatus.CONFIRMED
        self.payment_confirmed_at = now
        self.payment_confirmed_by = staff_id
        self.sent_to_kitchen = True
        self.sent_to_kitchen_at = now
        self.kitchen_hidden = False
        if verify_transaction:
            self.transaction_verified = True
            self.verification_timestamp = now
            self.verified_by = staff_id
        return True

    def verify_transaction(self, staff_id: str) -> None:
        if self.payment_status != PaymentStatus.CONFIRMED:
            raise PreconditionError("Cannot verify transaction for unconfirmed payment.")
        self.transaction_verified = True
        self.verification_timestamp = utcnow()
        self.verified_by = staff_id

    def mark_payment_failed(self, staff_id: str | None) -> None:
        if self.payment_status != PaymentStatus.PENDING:
            raise PreconditionError(
                f"Only pending payments can be marked failed (current: {self.payment_status.value})."
            )
        self.payment_status = PaymentStatus.FAILED
        self.payment_failed_at = utcnow()
        self.payment_failed_by = staff_id

    def update_kitchen_status(self, new_status: KitchenStatus) -> None:
        if not self.is_ready_for_kitchen():
            raise PreconditionError("Order is not ready for kitchen operations.")
        self.kitchen_status = new_status
        mirrored = KITCHEN_TO_ORDER_STATUS.get(new_status)
        if mirrored is not None:
            self.status = mirrored

    def next_kitchen_status(self) -> KitchenStatus:
        next_status = NEXT_KITCHEN_STATUS.get(self.kitchen_status)
        if next_status is None:
            raise PreconditionError(
                f"Cannot advance order from kitchen status '{self.kitchen_status.value}'."
            )
        return next_status

    def hide_from_kitchen(self) -> None:
        self.kitchen_hidden = True

    def close_for_history(self) -> None:
        """Manual archival ends the lifecycle. A cancelled order stays cancelled."""
        if self.status != OrderStatus.CANCELLED:
            self.status = OrderStatus.DELIVERED

    def cancel(self) -> None:
        if self.is_terminal:
            raise PreconditionError(f"Order is already {self.status.value}.")
        self.status = OrderStatus.CANCELLED
