"""
Orderflow - Review and rating schemas
"""
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ItemReviewIn(BaseModel):
    item_id: str = Field(..., min_length=1)
    item_name: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class ReviewRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    overall_rating: int | None = Field(None, ge=1, le=5)
    overall_comment: str = Field("", max_length=2000)
    item_reviews: list[ItemReviewIn] = Field(default_factory=list)


class ReviewResponse(BaseModel):
    id: str
    order_id: str
    user_id: str
    restaurant_id: str
    overall_rating: int | None
    overall_comment: str
    item_reviews: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ItemReviewEntry(BaseModel):
    user_id: str
    item_id: str
    item_name: str
    rating: int
    comment: str
    created_at: datetime


class RatingSummaryResponse(BaseModel):
    subject_type: Literal["restaurant", "item"]
    subject_id: str
    average_rating: float
    total_reviews: int
