"""Celery application for the sandbox worker and beat processes.

Run with:
    celery -A shipyard.background.celery.apps.primary worker -Q celery
    celery -A shipyard.background.celery.apps.primary worker \
        -Q sandbox_build --concurrency=1
    celery -A shipyard.background.celery.apps.primary beat
"""

from celery import Celery
from kombu import Queue

from shipyard.configs.app_configs import CELERY_BROKER_URL
from shipyard.configs.constants import ShipyardCeleryQueues
from shipyard.configs.constants import ShipyardCeleryTask
from shipyard.sandbox.configs import CLEANUP_INTERVAL_MINUTES

# Builds run for up to 2 hours
BUILD_VISIBILITY_TIMEOUT_SECONDS = 2 * 60 * 60 + 600

celery_app = Celery(__name__)
celery_app.conf.update(
    broker_url=CELERY_BROKER_URL,
    broker_transport_options={
        "visibility_timeout": BUILD_VISIBILITY_TIMEOUT_SECONDS,
    },
    task_default_queue=ShipyardCeleryQueues.PRIMARY,
    task_queues=(
        Queue(ShipyardCeleryQueues.PRIMARY),
        Queue(ShipyardCeleryQueues.SANDBOX_BUILD),
    ),
    task_routes={
        ShipyardCeleryTask.RUN_BUILD_JOB: {
            "queue": ShipyardCeleryQueues.SANDBOX_BUILD
        },
    },
    # Builds are long; hand out one at a time
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule={
        "cleanup-idle-sandboxes": {
            "task": ShipyardCeleryTask.CLEANUP_IDLE_SANDBOXES,
            "schedule": CLEANUP_INTERVAL_MINUTES * 60.0,
            "options": {"expires": CLEANUP_INTERVAL_MINUTES * 60},
        },
    },
)

celery_app.autodiscover_tasks(
    [
        "shipyard.sandbox.tasks",
        "shipyard.agent.tasks",
    ]
)
