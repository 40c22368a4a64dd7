"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "media_ledger",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # אירועי webhook FAILED / PENDING תקועים — כל 5 דקות
    "retry-failed-webhooks-every-5-minutes": {
        "task": "app.workers.tasks.retry_failed_webhooks",
        "schedule": 300.0,
    },
    # חבילות שנתקעו ב-ACTIVE / GENERATING — כל 5 דקות
    "reconcile-stuck-packages-every-5-minutes": {
        "task": "app.workers.tasks.reconcile_stuck_packages",
        "schedule": 300.0,
    },
}
