"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "social_webhook_gateway",
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
    task_default_queue=settings.WEBHOOK_QUEUE_NAME,
    task_routes={
        "app.workers.tasks.process_webhook_event": {"queue": settings.WEBHOOK_QUEUE_NAME},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Failed events whose immediate retries were lost (worker restart, broker outage)
    "retry-failed-webhook-events-every-5-minutes": {
        "task": "app.workers.tasks.retry_failed_webhook_events",
        "schedule": 300.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": crontab(hour="3", minute="0"),
    },
    # Counters expire on their own; this sweeps keys left without a TTL
    "cleanup-webhook-security-data-hourly": {
        "task": "app.workers.tasks.cleanup_webhook_security_data",
        "schedule": 3600.0,
    },
}
