import threading
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from shipyard.configs.app_configs import POSTGRES_DB
from shipyard.configs.app_configs import POSTGRES_HOST
from shipyard.configs.app_configs import POSTGRES_PASSWORD
from shipyard.configs.app_configs import POSTGRES_POOL_MAX_OVERFLOW
from shipyard.configs.app_configs import POSTGRES_POOL_RECYCLE
from shipyard.configs.app_configs import POSTGRES_POOL_SIZE
from shipyard.configs.app_configs import POSTGRES_PORT
from shipyard.configs.app_configs import POSTGRES_USER
from shipyard.utils.logger import setup_logger

logger = setup_logger()

SYNC_DB_API = "psycopg2"


def build_connection_string(
    *,
    db_api: str = SYNC_DB_API,
    user: str = POSTGRES_USER,
    password: str = POSTGRES_PASSWORD,
    host: str = POSTGRES_HOST,
    port: int = POSTGRES_PORT,
    db: str = POSTGRES_DB,
) -> str:
    return f"postgresql+{db_api}://{user}:{password}@{host}:{port}/{db}"


class SqlEngine:
    """Process-wide holder for the app database engine."""

    _engine: Engine | None = None
    _lock = threading.Lock()

    @classmethod
    def init_engine(
        cls,
        pool_size: int = POSTGRES_POOL_SIZE,
        max_overflow: int = POSTGRES_POOL_MAX_OVERFLOW,
    ) -> None:
        with cls._lock:
            if cls._engine:
                return

            cls._engine = create_engine(
                build_connection_string(),
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
                pool_recycle=POSTGRES_POOL_RECYCLE,
            )
            logger.info(
                f"Initialized SqlEngine: pool_size={pool_size}, "
                f"max_overflow={max_overflow}"
            )

    @classmethod
    def get_engine(cls) -> Engine:
        if not cls._engine:
            cls.init_engine()
        assert cls._engine is not None
        return cls._engine


@contextmanager
def get_session_with_default_engine() -> Generator[Session, None, None]:
    """Session context manager for code running outside a request
    (Celery tasks, streaming generators)."""
    session_factory = sessionmaker(bind=SqlEngine.get_engine(), expire_on_commit=False)
    with session_factory() as session:
        yield session


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a session for the request."""
    with get_session_with_default_engine() as session:
        yield session
