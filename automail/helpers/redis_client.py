# automail/helpers/redis_client.py
"""Redis connection shared by the plan store and the queue slot counters."""

import os

import redis

_client = None


def get_redis_client() -> "redis.Redis":
    """Connect to REDIS_URL (cached).

    Returns:
        redis.Redis client with decode_responses=True
    """
    global _client
    if _client is None:
        url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        _client = redis.Redis.from_url(url, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Override the cached client (tests use fakeredis)."""
    global _client
    _client = client
