from __future__ import annotations

import json
import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)

LEAD_UPDATED = "lead.updated"
CAMPAIGN_COMPLETED = "campaign.completed"
CAMPAIGN_STATUS_CHANGED = "campaign.status_changed"


def org_channel(org_id: str) -> str:
    return f"campaigns:org:{org_id}"


class Notifier:
    """Publishes dashboard events on a per-organization redis channel.

    Delivery is best effort; a failed publish never fails the state change.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def publish(self, org_id: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        try:
            self.client.publish(org_channel(org_id), message)
        except redis.RedisError as exc:
            logger.warning("notification_publish_failed org_id=%s event=%s error=%s", org_id, event, exc)

    def lead_updated(self, org_id: str, payload: dict[str, Any]) -> None:
        self.publish(org_id, LEAD_UPDATED, payload)

    def campaign_completed(self, org_id: str, campaign_id: str) -> None:
        self.publish(org_id, CAMPAIGN_COMPLETED, {"campaign_id": campaign_id})

    def campaign_status_changed(self, org_id: str, campaign_id: str, status: str) -> None:
        self.publish(
            org_id,
            CAMPAIGN_STATUS_CHANGED,
            {"campaign_id": campaign_id, "status": status},
        )
