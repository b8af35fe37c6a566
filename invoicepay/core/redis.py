"""
Shared Redis client (audit log store and live event broadcasts)
"""
from functools import lru_cache

import redis

from invoicepay.core.config import settings


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """Client is lazy: no connection is opened until the first command."""
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
