"""
Orderflow - Reviews and ratings API
"""
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.db.database import get_db
from orderflow.schemas.review import ItemReviewEntry, RatingSummaryResponse, ReviewRequest, ReviewResponse
from orderflow.services import ratings, review_service

router = APIRouter(tags=["reviews"])


@router.post("/reviews", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def submit_review(payload: ReviewRequest, db: AsyncSession = Depends(get_db)):
    """Create or replace the caller's review of an order."""
    return await review_service.submit_review(db, payload)


@router.get("/reviews", response_model=ReviewResponse | list[ItemReviewEntry] | None)
async def get_reviews(
    order_id: str | None = Query(None),
    item_id: str | None = Query(None),
    restaurant_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """The review of one order, or every rating one menu item received."""
    if order_id:
        review = await review_service.get_review(db, order_id)
        return ReviewResponse.model_validate(review) if review else None
    if item_id:
        return await review_service.reviews_for_item(db, item_id, restaurant_id)
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Either order_id or item_id query parameter is required",
    )


@router.get("/ratings/{subject_type}/{subject_id}", response_model=RatingSummaryResponse)
async def get_rating(
    subject_type: Literal["restaurant", "item"],
    subject_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await ratings.rating_summary(db, subject_type, subject_id)
