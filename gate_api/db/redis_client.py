"""Redis client configuration (provider validation cache)."""

import os
from typing import Optional
from urllib.parse import urlparse

import redis

from gate_api.config.settings import get_settings


class RedisClient:
    """Singleton Redis client."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    def get_client(cls) -> redis.Redis:
        """
        Get Redis client instance.

        - URL from settings (REDIS_URL, default redis://localhost:6379/0)
        - REDIS_PASSWORD applied only if the URL carries none
        - 1s socket timeouts (cache sits on the access path)

        Returns:
            redis.Redis: Redis client
        """
        if cls._instance is None:
            redis_url = get_settings().redis_url
            redis_password = os.getenv("REDIS_PASSWORD")
            parsed = urlparse(redis_url)

            kwargs = {
                "decode_responses": True,
                "socket_connect_timeout": 1,
                "socket_timeout": 1,
                "health_check_interval": 30,
            }
            if not parsed.password and redis_password:
                kwargs["password"] = redis_password

            cls._instance = redis.from_url(redis_url, **kwargs)

        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset Redis client (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None
