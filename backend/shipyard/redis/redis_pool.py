import threading

import redis

from shipyard.configs.app_configs import REDIS_DB_NUMBER
from shipyard.configs.app_configs import REDIS_HOST
from shipyard.configs.app_configs import REDIS_PASSWORD
from shipyard.configs.app_configs import REDIS_PORT


class RedisPool:
    _instance: "RedisPool | None" = None
    _lock = threading.Lock()
    _pool: redis.BlockingConnectionPool

    def __new__(cls) -> "RedisPool":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._init_pool()
        return cls._instance

    def _init_pool(self) -> None:
        self._pool = redis.BlockingConnectionPool(
            host=REDIS_HOST,
            port=REDIS_PORT,
            db=REDIS_DB_NUMBER,
            password=REDIS_PASSWORD,
            max_connections=128,
            timeout=None,
            health_check_interval=60,
        )

    def get_client(self) -> redis.Redis:
        return redis.Redis(connection_pool=self._pool)


def get_redis_client() -> redis.Redis:
    return RedisPool().get_client()
