"""
Orderflow - Order reviews

One review per (order, user), upserted. Rating summaries are recomputed
through the outbox after the review commits.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.errors import ValidationError
from orderflow.core.optimistic_lock import with_optimistic_retry
from orderflow.models.order_history import OrderHistory
from orderflow.models.review import Review
from orderflow.schemas.review import ItemReviewEntry, ReviewRequest
from orderflow.services.order_service import get_order
from orderflow.services.outbox import dispatch, enqueue
from orderflow.services.ratings import RECOMPUTE_EVENT

logger = logging.getLogger(__name__)


async def get_review(db: AsyncSession, order_id: str) -> Review | None:
    result = await db.execute(select(Review).where(Review.order_id == order_id))
    return result.scalars().first()


@with_optimistic_retry()
async def submit_review(db: AsyncSession, data: ReviewRequest) -> Review:
    order = await get_order(db, data.order_id, fresh=True)
    if order.user_id != data.user_id:
        raise ValidationError("Reviews can only be left by the user who placed the order.")

    result = await db.execute(
        select(Review).where(Review.order_id == data.order_id, Review.user_id == data.user_id)
    )
    review = result.scalar_one_or_none()
    previously_rated = {entry.get("item_id") for entry in review.item_reviews} if review else set()
    await db.execute(
        update(OrderHistory).where(OrderHistory.original_order_id == order.id).values(reviewed=True)
    )

    if review is None:
        review = Review(order_id=order.id, user_id=data.user_id, restaurant_id=order.restaurant_id)
        db.add(review)

    review.overall_rating = data.overall_rating
    review.overall_comment = data.overall_comment.strip()
    review.item_reviews = [item.model_dump() for item in data.item_reviews]

    order.reviewed = True

    item_ids = sorted(previously_rated | {item.item_id for item in data.item_reviews})
    event = enqueue(db, RECOMPUTE_EVENT, {"restaurant_id": order.restaurant_id, "item_ids": item_ids})
    try:
        await db.commit()
    except IntegrityError as exc:
        # A concurrent first review for the same (order, user) won; retry as an update.
        await db.rollback()
        raise StaleDataError("Review was created concurrently.") from exc
    except StaleDataError:
        await db.rollback()
        raise

    logger.info("Review saved for order %s by user %s", order.order_number, data.user_id)
    await dispatch(db, [event])
    await db.refresh(review)
    return review


async def reviews_for_item(db: AsyncSession, item_id: str, restaurant_id: str | None = None) -> list[ItemReviewEntry]:
    """Every rating left for one menu item, newest first."""
    query = select(Review).order_by(Review.created_at.desc())
    if restaurant_id:
        query = query.where(Review.restaurant_id == restaurant_id)
    result = await db.execute(query)

    entries = []
    for review in result.scalars().all():
        for item in review.item_reviews or []:
            if item.get("item_id") != item_id:
                continue
            entries.append(ItemReviewEntry(
                user_id=review.user_id,
                item_id=item_id,
                item_name=item.get("item_name", ""),
                rating=item.get("rating", 0),
                comment=item.get("comment", ""),
                created_at=review.created_at,
            ))
            break
    return entries
