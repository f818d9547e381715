"""
Orderflow - Reviews and aggregated rating summaries
"""
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.db.database import Base
from orderflow.models.order import utcnow


class Review(Base):
    """Overall order rating plus per-item ratings, one per (order, user)."""
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("order_id", "user_id", name="uq_review_order_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    restaurant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    overall_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    overall_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    item_reviews: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class RatingSummary(Base):
    """Average rating for a restaurant or a menu item, rebuilt from reviews."""
    __tablename__ = "rating_summaries"
    __table_args__ = (UniqueConstraint("subject_type", "subject_id", name="uq_rating_subject"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
