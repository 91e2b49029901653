"""Celery tasks for sandbox operations."""

from celery import shared_task
from celery import Task
from redis.lock import Lock as RedisLock

from shipyard.background.celery.apps.app_base import task_logger
from shipyard.configs.constants import ShipyardCeleryTask
from shipyard.configs.constants import ShipyardRedisLocks
from shipyard.db.engine.sql_engine import get_session_with_default_engine
from shipyard.redis.redis_pool import get_redis_client
from shipyard.sandbox.configs import CLEANUP_THRESHOLD_MINUTES

# Stopping a container takes at most SANDBOX_STOP_TIMEOUT_SECONDS each
TIMEOUT_SECONDS = 15 * 60


@shared_task(
    name=ShipyardCeleryTask.CLEANUP_IDLE_SANDBOXES,
    soft_time_limit=TIMEOUT_SECONDS,
    bind=True,
    ignore_result=True,
)
def cleanup_idle_sandboxes_task(
    self: Task, *, threshold_minutes: int = CLEANUP_THRESHOLD_MINUTES
) -> int | None:
    """Stop sandboxes of chat sessions idle for longer than threshold_minutes.

    Runs from beat every CLEANUP_INTERVAL_MINUTES. Production sandboxes are
    left running. Overlapping runs are skipped via a Redis lock.

    Returns:
        Number of sandboxes stopped, or None if another run holds the lock
    """
    task_logger.info(
        f"cleanup_idle_sandboxes_task starting (threshold: {threshold_minutes}min)"
    )

    redis_client = get_redis_client()
    lock: RedisLock = redis_client.lock(
        ShipyardRedisLocks.CLEANUP_IDLE_SANDBOXES_BEAT_LOCK,
        timeout=TIMEOUT_SECONDS,
    )

    # Prevent overlapping runs of this task
    if not lock.acquire(blocking=False):
        task_logger.debug("cleanup_idle_sandboxes_task - lock not acquired, skipping")
        return None

    try:
        # Import here to avoid circular imports
        from shipyard.sandbox import get_sandbox_manager
        from shipyard.sandbox.cleanup import cleanup_inactive_sessions

        sandbox_manager = get_sandbox_manager()

        with get_session_with_default_engine() as db_session:
            stopped = cleanup_inactive_sessions(
                db_session, sandbox_manager, threshold_minutes
            )

        task_logger.info(f"cleanup_idle_sandboxes_task finished, stopped {stopped}")
        return stopped
    except Exception:
        task_logger.exception("Error in cleanup_idle_sandboxes_task")
        raise
    finally:
        if lock.owned():
            lock.release()
