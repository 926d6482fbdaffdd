# automail/helpers/__init__.py
"""Shared helper modules for services and Celery tasks.

Database sessions, the Redis connection and the retry policy live here
so that services and tasks do not duplicate connection handling.
"""

from .database import get_db_session, get_session_factory, get_user, get_enabled_rules
from .redis_client import get_redis_client
from .retry import RetryPolicy

__all__ = [
    # Database helpers
    "get_db_session",
    "get_session_factory",
    "get_user",
    "get_enabled_rules",
    # Redis
    "get_redis_client",
    # Retry
    "RetryPolicy",
]
