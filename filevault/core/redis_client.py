from __future__ import annotations

import logging

import redis

from filevault.config import REDIS_URL

logger = logging.getLogger("filevault")

_client = None
_checked = False


def get_redis_client():
    """Return a connected Redis client, or None when Redis is not configured or unreachable."""
    global _client, _checked
    if _checked:
        return _client
    _checked = True
    if not REDIS_URL:
        return None

    try:
        client = redis.from_url(REDIS_URL)
        client.ping()
    except (redis.RedisError, ValueError) as exc:
        logger.warning("event=redis_unavailable url=%s error=%s; using in-memory stores", REDIS_URL, exc)
        return None

    _client = client
    return _client
