from __future__ import annotations

import logging

import redis

from backend.app.settings import Settings

logger = logging.getLogger(__name__)


def build_redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=2,
        socket_connect_timeout=2,
    )


def ping_redis(client: redis.Redis) -> bool:
    try:
        return bool(client.ping())
    except redis.RedisError as exc:
        logger.warning("redis_unreachable error=%s", exc)
        return False
