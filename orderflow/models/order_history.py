"""
Orderflow - Archived order snapshots

One row per order that reached Delivered (or was archived by hand). The
unique back-reference is what keeps archival exactly-once.
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.db.database import Base
from orderflow.models.order import utcnow


class ArchiveReason(str, PyEnum):
    AUTO_DELIVERED = "Auto-Delivered"
    MANUAL_ARCHIVE = "Manual-Archive"
    SYSTEM_CLEANUP = "System-Cleanup"


class OrderHistory(Base):
    __tablename__ = "order_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    original_order_id: Mapped[str] = mapped_column(String(36), unique=True, index=True, nullable=False)
    order_number: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    restaurant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    restaurant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    restaurant_slug: Mapped[str] = mapped_column(String(255), nullable=False)

    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Delivered")
    kitchen_status_at_archive: Mapped[str | None] = mapped_column(String(32), nullable=True)
    estimated_preparation_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reviewed: Mapped[bool] = mapped_column(nullable=False, default=False)

    archived_reason: Mapped[ArchiveReason] = mapped_column(
        Enum(
            ArchiveReason,
            name="archive_reason",
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=ArchiveReason.AUTO_DELIVERED,
    )
    archived_by: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False, default=utcnow)
    original_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
