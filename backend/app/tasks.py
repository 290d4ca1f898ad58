from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from app.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)

# Sweep name (as used by POST /v1/dunning/sweeps/{sweep}) -> worker task name
SWEEP_TASKS: dict[str, str] = {
    "retries": "process_due_retries_task",
    "suspensions": "process_due_suspensions_task",
    "account_access": "reconcile_account_access_task",
    "pending_attempts": "reconcile_pending_attempts_task",
    "communications": "retry_failed_communications_task",
    "processed_events": "purge_processed_events_task",
}


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq
    """
    pool = await get_redis_pool()
    try:
        job = await pool.enqueue_job(task_name, *args, **kwargs)
        return job  # type: ignore[return-value]
    finally:
        await pool.close()
