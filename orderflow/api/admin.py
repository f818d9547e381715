"""
Orderflow - Outbox administration

Shows the side-effect backlog and lets an operator drain it without
waiting for the next Celery beat tick.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.db.database import get_db
from orderflow.models.outbox import OutboxEvent, OutboxStatus
from orderflow.services import outbox

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/outbox")
async def outbox_status(
    failed_limit: int = Query(20, ge=0, le=200),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.FAILED.value)
        .order_by(OutboxEvent.created_at.desc())
        .limit(failed_limit)
    )
    failed = [
        {
            "id": event.id,
            "event_type": event.event_type,
            "payload": event.payload,
            "attempts": event.attempts,
            "last_error": event.last_error,
            "created_at": event.created_at.isoformat(),
        }
        for event in result.scalars().all()
    ]
    return {"counts": await outbox.stats(db), "failed": failed}


@router.post("/outbox/drain")
async def drain_outbox(limit: int | None = Query(None, ge=1, le=1000), db: AsyncSession = Depends(get_db)):
    delivered = await outbox.dispatch_pending(db, limit)
    return {"delivered": delivered, "counts": await outbox.stats(db)}
