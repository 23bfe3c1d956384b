"""Celery task definitions for the commission workflow activities."""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "commission",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,
    # Activities are idempotent; redeliver if a worker dies mid-task
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

# Periodic beat schedule
celery_app.conf.beat_schedule = {
    "check-batch-sla": {
        "task": "app.tasks.commission_tasks.check_batch_sla",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
    },
    "check-disbursement-sla": {
        "task": "app.tasks.commission_tasks.check_disbursement_sla",
        "schedule": crontab(minute="*/30"),  # Every 30 minutes
    },
    # ── Suspense ─────────────────────────────────────────
    "refresh-suspense-aging": {
        "task": "app.tasks.commission_tasks.refresh_suspense_aging",
        "schedule": crontab(hour=0, minute=30),  # 12:30 AM daily
    },
    "escalate-suspense": {
        "task": "app.tasks.commission_tasks.escalate_suspense",
        "schedule": crontab(hour=9, minute=0),  # 9 AM daily
    },
}

# Import tasks so they get registered
from app.tasks.commission_tasks import *  # noqa
