from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import redis

from backend.app.observability import MetricsRegistry

logger = logging.getLogger(__name__)


def callback_key(campaign_id: str, lead_id: str, timestamp: datetime) -> str:
    return f"callback:{campaign_id}:{lead_id}:{timestamp.isoformat()}"


class IdempotencyCache:
    """Fast-path duplicate filter for worker callbacks.

    The cache is advisory. When redis is unreachable every lookup is a miss and
    the lead row's own status keeps outcomes from being applied twice.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: int = 86400,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics

    def seen(self, campaign_id: str, lead_id: str, timestamp: datetime) -> bool:
        key = callback_key(campaign_id, lead_id, timestamp)
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as exc:
            self._unavailable("seen", key, exc)
            return False

    def remember(self, campaign_id: str, lead_id: str, timestamp: datetime) -> None:
        key = callback_key(campaign_id, lead_id, timestamp)
        try:
            self.client.set(key, "1", ex=self.ttl_seconds)
        except redis.RedisError as exc:
            self._unavailable("remember", key, exc)

    def _unavailable(self, operation: str, key: str, exc: Exception) -> None:
        logger.warning("idempotency_cache_unavailable op=%s key=%s error=%s", operation, key, exc)
        if self.metrics is not None:
            self.metrics.increment("cache_unavailable")
