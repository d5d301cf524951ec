"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "sales_engine",
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
    task_time_limit=300,  # 5 minutes, same as the zombie threshold
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-pending-messages-every-3-seconds": {
        "task": "app.workers.tasks.process_pending_messages",
        "schedule": 3.0,
    },
    # Dead-letter sweep and zombie release must not depend on new traffic
    "cleanup-stale-messages-every-minute": {
        "task": "app.workers.tasks.cleanup_stale_messages",
        "schedule": 60.0,
    },
    "process-followups-every-minute": {
        "task": "app.workers.tasks.process_followups",
        "schedule": 60.0,
    },
    "cleanup-followup-locks-every-5-minutes": {
        "task": "app.workers.tasks.cleanup_followup_locks",
        "schedule": 300.0,
    },
}
