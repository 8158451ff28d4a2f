"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2 -Q notifications

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "community_pulse",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a lost worker re-queues the run;
    # the job lock and reminder dedup make a second run harmless
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # At most one job run per minute per worker
    task_annotations={
        "tasks.notification_tasks.create_event_reminders": {"rate_limit": "1/m"},
        "tasks.notification_tasks.process_pending_notifications": {"rate_limit": "1/m"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Day-before reminders for every approved event starting tomorrow
    "create-event-reminders": {
        "task": "tasks.notification_tasks.create_event_reminders",
        "schedule": crontab(hour=settings.REMINDER_HOUR, minute=0),
    },

    # Dispatch queued notifications that have come due
    "process-pending-notifications": {
        "task": "tasks.notification_tasks.process_pending_notifications",
        "schedule": settings.PENDING_NOTIFICATION_INTERVAL_MINUTES * 60,
    },
}
