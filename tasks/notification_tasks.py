"""
tasks/notification_tasks.py
Celery beat tasks wrapping the scheduled notification jobs.

Each task opens its own NullPool session and Redis connection inside a
fresh event loop, then hands off to services.notification.jobs. The job
lock means an overlapping run (e.g. the cron endpoint firing at the same
time) is skipped rather than duplicated.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.database import TaskSessionLocal, get_db_context
from config.logging import setup_logging
from config.redis_client import RedisCache, create_redis
from services.notification import jobs
from services.notification.delivery import DeliveryChannel, get_delivery_channel
from tasks.celery_app import celery_app

setup_logging()
logger = logging.getLogger(__name__)

JobFunc = Callable[[AsyncSession, DeliveryChannel], Awaitable[dict]]


async def _run(job_name: str, job: JobFunc) -> Optional[dict]:
    redis = create_redis()
    try:
        async with get_db_context(TaskSessionLocal) as db:
            return await jobs.run_exclusive(
                RedisCache(redis),
                job_name,
                lambda: job(db, get_delivery_channel()),
            )
    finally:
        await redis.aclose()


@celery_app.task
def create_event_reminders():
    """
    Beat task: runs daily at REMINDER_HOUR.
    Sends a reminder to every registrant of each approved event starting tomorrow.
    """
    result = asyncio.run(_run(jobs.REMINDER_JOB, jobs.create_tomorrow_reminders))
    if result is None:
        logger.info("create_event_reminders skipped: lock held")
    return result


@celery_app.task
def process_pending_notifications():
    """Beat task: dispatch one batch of queued notifications that are due."""
    result = asyncio.run(_run(jobs.PENDING_JOB, jobs.process_pending_notifications))
    if result is None:
        logger.info("process_pending_notifications skipped: lock held")
    return result
