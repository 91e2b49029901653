from enum import Enum


class BuildDispatchMode(str, Enum):
    """Where the build phase runs once planning produced tickets.

    INLINE: Stream build events in the same request as the plan phase
    QUEUED: Enqueue a build job for the Celery build worker
    """

    INLINE = "inline"
    QUEUED = "queued"


class ShipyardCeleryQueues:
    PRIMARY = "celery"
    SANDBOX_BUILD = "sandbox_build"


class ShipyardCeleryTask:
    CLEANUP_IDLE_SANDBOXES = "cleanup_idle_sandboxes_task"
    RUN_BUILD_JOB = "run_build_job_task"


class ShipyardRedisLocks:
    CLEANUP_IDLE_SANDBOXES_BEAT_LOCK = "shipyard_lock:cleanup_idle_sandboxes_beat"


PUBLIC_API_TAGS: list[str | Enum] = ["public"]
