"""
Shared Redis client.

Created on first use so importing a service never opens a connection.
"""

import functools

import redis

from basecore.settings import get_settings


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """Redis client for REDIS_URL (cached, string responses)."""
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)
