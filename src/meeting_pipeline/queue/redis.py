"""
Redis-клиент для очередей стадий.

Назначение:
- Единая точка подключения к Redis
- Используется очередями стадий, воркерами и healthcheck'ом
"""

from __future__ import annotations

import redis

from meeting_pipeline.common.config import get_settings

_client: redis.Redis | None = None


def redis_client() -> redis.Redis:
    """
    Singleton Redis client.
    """
    global _client
    if _client is None:
        _client = redis.Redis.from_url(get_settings().redis_url, decode_responses=True)
    return _client


def ping() -> bool:
    try:
        return bool(redis_client().ping())
    except redis.RedisError:
        return False
