import logging
from typing import Any

from arq import cron

from app.core.database import SessionLocal
from app.services.dunning_sweeps import DunningSweepService
from app.tasks import redis_settings

logger = logging.getLogger(__name__)


async def process_due_retries_task(ctx: dict[str, Any]) -> int:
    """Background task: charge cases whose next retry is due.

    Runs every 5 minutes.
    """
    db = SessionLocal()
    try:
        result = DunningSweepService(db).process_due_retries()
        return result.processed
    finally:
        db.close()


async def process_due_suspensions_task(ctx: dict[str, Any]) -> int:
    """Background task: suspend cases past grace and cancel those past auto-cancel.

    Runs hourly.
    """
    db = SessionLocal()
    try:
        result = DunningSweepService(db).process_due_suspensions()
        return result.processed
    finally:
        db.close()


async def reconcile_account_access_task(ctx: dict[str, Any]) -> int:
    """Background task: bring account access in line with case state.

    Runs every 5 minutes, so failed suspend/restore calls are retried on
    their backoff schedule.
    """
    db = SessionLocal()
    try:
        result = DunningSweepService(db).reconcile_account_access()
        return result.processed
    finally:
        db.close()


async def reconcile_pending_attempts_task(ctx: dict[str, Any]) -> int:
    """Background task: resolve charge attempts stuck in pending."""
    db = SessionLocal()
    try:
        result = DunningSweepService(db).reconcile_pending_attempts()
        return result.processed
    finally:
        db.close()


async def retry_failed_communications_task(ctx: dict[str, Any]) -> int:
    """Background task: re-dispatch failed dunning emails and SMS."""
    db = SessionLocal()
    try:
        result = DunningSweepService(db).retry_failed_communications()
        return result.processed
    finally:
        db.close()


async def purge_processed_events_task(ctx: dict[str, Any]) -> int:
    """Background task: drop webhook dedup records past retention. Runs daily."""
    db = SessionLocal()
    try:
        count = DunningSweepService(db).purge_processed_events().processed
        if count > 0:
            logger.info("Purged %d processed webhook events", count)
        return count
    finally:
        db.close()


EVERY_5_MINUTES = {0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}


class WorkerSettings:
    functions = [
        process_due_retries_task,
        process_due_suspensions_task,
        reconcile_account_access_task,
        reconcile_pending_attempts_task,
        retry_failed_communications_task,
        purge_processed_events_task,
    ]
    cron_jobs = [
        cron(process_due_retries_task, minute=EVERY_5_MINUTES),
        cron(process_due_suspensions_task, minute={0}),  # hourly
        cron(reconcile_account_access_task, minute=EVERY_5_MINUTES),
        cron(reconcile_pending_attempts_task, minute={2, 17, 32, 47}),
        cron(retry_failed_communications_task, minute=EVERY_5_MINUTES),
        cron(purge_processed_events_task, hour=0, minute=0),  # daily at midnight
    ]
    redis_settings = redis_settings
