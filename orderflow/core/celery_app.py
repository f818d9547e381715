"""
Orderflow - Celery application

Uses Redis as both broker and result backend. Beat drives the outbox drain
so archival and rating side effects that failed inline are retried.
"""
from celery import Celery
from orderflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "orderflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["orderflow.tasks.outbox_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "drain-outbox": {
            "task": "drain_outbox",
            "schedule": settings.OUTBOX_POLL_INTERVAL_SECONDS,
        },
    },
)
