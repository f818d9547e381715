"""
Orderflow - Celery tasks (outbox drain)

Runs in the Celery worker, separate from the FastAPI process. Beat triggers
drain_outbox on a fixed interval; each run delivers the pending side effects
whose backoff has elapsed.
"""
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orderflow.core.celery_app import celery_app
from orderflow.core.config import get_settings
from orderflow.db.database import _engine_options
from orderflow.services import outbox

settings = get_settings()
logger = logging.getLogger(__name__)


async def _drain(limit: int | None) -> int:
    # Each asyncio.run() gets its own loop, so the engine cannot be shared across runs.
    engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
    try:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as db:
            return await outbox.dispatch_pending(db, limit)
    finally:
        await engine.dispose()


@celery_app.task(
    name="drain_outbox",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def drain_outbox(self, limit: int | None = None) -> int:
    try:
        delivered = asyncio.run(_drain(limit))
    except Exception as exc:
        logger.error("Outbox drain failed: %s", exc)
        raise self.retry(exc=exc)
    if delivered:
        logger.info("Outbox drain delivered %d events", delivered)
    return delivered
