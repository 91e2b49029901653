import os

from shipyard.configs.constants import BuildDispatchMode


#####
# App database (chat sessions, messages, build jobs)
#####
POSTGRES_USER = os.environ.get("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.environ.get("POSTGRES_PASSWORD", "password")
POSTGRES_HOST = os.environ.get("POSTGRES_HOST", "localhost")
POSTGRES_PORT = int(os.environ.get("POSTGRES_PORT", "5432"))
POSTGRES_DB = os.environ.get("POSTGRES_DB", "shipyard")

POSTGRES_POOL_SIZE = int(os.environ.get("POSTGRES_POOL_SIZE", "20"))
POSTGRES_POOL_MAX_OVERFLOW = int(os.environ.get("POSTGRES_POOL_MAX_OVERFLOW", "10"))
POSTGRES_POOL_RECYCLE = int(os.environ.get("POSTGRES_POOL_RECYCLE", "1200"))

# Database server that hosts the per-session preview databases. Defaults to
# the app database server; the connecting role needs CREATEDB.
SANDBOX_POSTGRES_HOST = os.environ.get("SANDBOX_POSTGRES_HOST", POSTGRES_HOST)
SANDBOX_POSTGRES_PORT = int(
    os.environ.get("SANDBOX_POSTGRES_PORT", str(POSTGRES_PORT))
)
SANDBOX_POSTGRES_USER = os.environ.get("SANDBOX_POSTGRES_USER", POSTGRES_USER)
SANDBOX_POSTGRES_PASSWORD = os.environ.get(
    "SANDBOX_POSTGRES_PASSWORD", POSTGRES_PASSWORD
)
# Host the sandbox containers use to reach the database server (usually the
# compose service name rather than localhost)
SANDBOX_POSTGRES_CONTAINER_HOST = os.environ.get(
    "SANDBOX_POSTGRES_CONTAINER_HOST", "postgres"
)

#####
# Redis / Celery
#####
REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")
REDIS_PORT = int(os.environ.get("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.environ.get("REDIS_PASSWORD") or None
REDIS_DB_NUMBER = int(os.environ.get("REDIS_DB_NUMBER", "0"))
REDIS_DB_NUMBER_CELERY = int(os.environ.get("REDIS_DB_NUMBER_CELERY", "15"))

_redis_auth = f":{REDIS_PASSWORD}@" if REDIS_PASSWORD else ""
CELERY_BROKER_URL = os.environ.get(
    "CELERY_BROKER_URL",
    f"redis://{_redis_auth}{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB_NUMBER_CELERY}",
)

#####
# Agent workflow
#####
# "queued" hands the build phase to the Celery build worker,
# "inline" streams it in the same request as the plan phase
BUILD_DISPATCH_MODE = BuildDispatchMode(
    os.environ.get("BUILD_DISPATCH_MODE", BuildDispatchMode.QUEUED.value)
)
BUILD_ENABLE_REVIEW = os.environ.get("BUILD_ENABLE_REVIEW", "true").lower() == "true"
BUILD_ENABLE_TEST = os.environ.get("BUILD_ENABLE_TEST", "false").lower() == "true"
BUILD_TEST_URL = os.environ.get("BUILD_TEST_URL") or None

# Token used for first-party repositories (imported repositories use the
# token of the user who imported them)
GITHUB_APP_TOKEN = os.environ.get("GITHUB_APP_TOKEN", "")
