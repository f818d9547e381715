"""
Orderflow - Rating aggregation

Summaries are rebuilt from the reviews table rather than updated
incrementally, so a re-run after a failed or duplicated delivery converges.
"""
import logging
from collections import defaultdict
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models.review import RatingSummary, Review
from orderflow.schemas.review import RatingSummaryResponse
from orderflow.services.outbox import register_handler

logger = logging.getLogger(__name__)

RECOMPUTE_EVENT = "ratings.recompute"
RESTAURANT = "restaurant"
ITEM = "item"


def _valid(rating) -> bool:
    return isinstance(rating, int) and not isinstance(rating, bool) and 1 <= rating <= 5


def average(ratings: list[int]) -> float:
    if not ratings:
        return 0.0
    return round(sum(ratings) / len(ratings), 1)


async def _upsert_summary(db: AsyncSession, subject_type: str, subject_id: str, ratings: list[int]) -> RatingSummary:
    result = await db.execute(
        select(RatingSummary).where(
            RatingSummary.subject_type == subject_type,
            RatingSummary.subject_id == subject_id,
        )
    )
    summary = result.scalar_one_or_none()
    if summary is None:
        summary = RatingSummary(subject_type=subject_type, subject_id=subject_id)
        db.add(summary)
    summary.average_rating = average(ratings)
    summary.total_reviews = len(ratings)
    return summary


async def recompute_restaurant_rating(db: AsyncSession, restaurant_id: str) -> RatingSummary:
    result = await db.execute(
        select(Review.overall_rating).where(
            Review.restaurant_id == restaurant_id,
            Review.overall_rating.is_not(None),
        )
    )
    ratings = [rating for rating in result.scalars().all() if _valid(rating)]
    summary = await _upsert_summary(db, RESTAURANT, restaurant_id, ratings)
    logger.info(
        "Restaurant %s rating recomputed: %.1f from %d reviews",
        restaurant_id, summary.average_rating, summary.total_reviews,
    )
    return summary


async def recompute_item_ratings(
    db: AsyncSession,
    item_ids: Iterable[str],
    restaurant_id: str | None = None,
) -> list[RatingSummary]:
    wanted = set(item_ids)
    if not wanted:
        return []

    query = select(Review.item_reviews)
    if restaurant_id is not None:
        query = query.where(Review.restaurant_id == restaurant_id)
    result = await db.execute(query)

    ratings: dict[str, list[int]] = defaultdict(list)
    for item_reviews in result.scalars().all():
        for entry in item_reviews or []:
            item_id = entry.get("item_id")
            if item_id in wanted and _valid(entry.get("rating")):
                ratings[item_id].append(entry["rating"])

    summaries = []
    for item_id in sorted(wanted):
        summaries.append(await _upsert_summary(db, ITEM, item_id, ratings[item_id]))
    return summaries


@register_handler(RECOMPUTE_EVENT)
async def handle_recompute_event(db: AsyncSession, payload: dict) -> None:
    restaurant_id = payload.get("restaurant_id")
    if restaurant_id:
        await recompute_restaurant_rating(db, restaurant_id)
    await recompute_item_ratings(db, payload.get("item_ids") or [], restaurant_id)


async def rating_summary(db: AsyncSession, subject_type: str, subject_id: str) -> RatingSummaryResponse:
    """Stored summary for a subject; a subject nobody rated yet reads as 0 from 0 reviews."""
    result = await db.execute(
        select(RatingSummary).where(
            RatingSummary.subject_type == subject_type,
            RatingSummary.subject_id == subject_id,
        )
    )
    summary = result.scalar_one_or_none()
    if summary is None:
        return RatingSummaryResponse(
            subject_type=subject_type, subject_id=subject_id, average_rating=0.0, total_reviews=0,
        )
    return RatingSummaryResponse(
        subject_type=summary.subject_type,
        subject_id=summary.subject_id,
        average_rating=summary.average_rating,
        total_reviews=summary.total_reviews,
    )
