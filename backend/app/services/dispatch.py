from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from http.client import HTTPException
from typing import Any, Callable, Optional
from urllib import request
from urllib.error import HTTPError, URLError

from backend.app.models import CampaignRecord, CampaignStatus, DispatchLead
from backend.app.observability import MetricsRegistry
from backend.app.services.backoff import BackoffPolicy, dispatch_policy
from backend.app.services.webhooks import sign_payload
from backend.app.store import CampaignStore

logger = logging.getLogger(__name__)

Transport = Callable[..., None]


class WebhookDeliveryError(Exception):
    pass


class DispatchFailed(Exception):
    def __init__(self, campaign_id: str, attempts: int, reason: str) -> None:
        super().__init__(f"dispatch failed for campaign {campaign_id} after {attempts} attempts: {reason}")
        self.campaign_id = campaign_id
        self.attempts = attempts
        self.reason = reason


def post_json(url: str, payload: dict[str, Any], *, timeout: float, secret: str = "") -> None:
    if not url:
        raise WebhookDeliveryError("worker webhook url is not configured")
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Signature"] = sign_payload(body, secret)
    try:
        req = request.Request(url, data=body, method="POST", headers=headers)
        with request.urlopen(req, timeout=timeout) as response:
            response.read()
    except HTTPError as exc:
        raise WebhookDeliveryError(f"worker responded with status {exc.code}") from exc
    except (URLError, TimeoutError, OSError, HTTPException) as exc:
        raise WebhookDeliveryError(f"worker request failed: {exc}") from exc
    except ValueError as exc:
        raise WebhookDeliveryError(f"invalid worker webhook url: {exc}") from exc


def build_dispatch_payload(campaign: CampaignRecord, leads: list[DispatchLead]) -> dict[str, Any]:
    return {
        "campaign_id": campaign.id,
        "org_id": campaign.org_id,
        "agent_reference": campaign.agent_reference,
        "leads": [lead.model_dump() for lead in leads],
    }


@dataclass(frozen=True)
class DispatchResult:
    campaign_id: str
    attempts: int
    lead_count: int
    status: CampaignStatus


class WebhookSender:
    """Hands a RUNNING campaign's pending leads to the external call worker.

    Retries locally with linear backoff. Success moves the campaign to
    WAITING_FOR_CALLBACKS; exhaustion moves it to FAILED and raises
    ``DispatchFailed``. Callers must not retry a failed dispatch.
    """

    def __init__(
        self,
        store: CampaignStore,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        secret: str = "",
        policy: Optional[BackoffPolicy] = None,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.secret = secret
        self.policy = policy or dispatch_policy()
        self.transport = transport or post_json
        self.sleep = sleep
        self.metrics = metrics

    def send(self, campaign: CampaignRecord) -> DispatchResult:
        try:
            leads = self.store.dispatchable_leads(campaign.id)
            payload = build_dispatch_payload(campaign, leads)
        except Exception as exc:
            logger.exception("dispatch_payload_failed campaign_id=%s", campaign.id)
            raise self._fail(campaign, 0, f"could not build payload: {type(exc).__name__}: {exc}") from exc

        attempts = 0
        last_error = "no attempt made"
        while self.policy.has_attempts_left(attempts):
            attempts += 1
            try:
                self.transport(self.url, payload, timeout=self.timeout_seconds, secret=self.secret)
            except WebhookDeliveryError as exc:
                last_error = str(exc)
                logger.warning(
                    "dispatch_attempt_failed campaign_id=%s attempt=%s max_attempts=%s error=%s",
                    campaign.id,
                    attempts,
                    self.policy.max_attempts,
                    last_error,
                )
                if self.policy.has_attempts_left(attempts):
                    self.sleep(self.policy.delay_after(attempts))
                continue
            except Exception as exc:
                # Not a delivery error, so retrying will not help.
                logger.exception("dispatch_attempt_error campaign_id=%s attempt=%s", campaign.id, attempts)
                raise self._fail(campaign, attempts, f"{type(exc).__name__}: {exc}") from exc

            moved = self.store.compare_and_set_status(
                campaign.id,
                expected=CampaignStatus.running,
                new=CampaignStatus.waiting_for_callbacks,
            )
            if not moved:
                logger.warning("dispatch_status_not_running campaign_id=%s", campaign.id)
            logger.info(
                "dispatch_succeeded campaign_id=%s org_id=%s leads=%s attempts=%s",
                campaign.id,
                campaign.org_id,
                len(leads),
                attempts,
            )
            return DispatchResult(
                campaign_id=campaign.id,
                attempts=attempts,
                lead_count=len(leads),
                status=CampaignStatus.waiting_for_callbacks,
            )

        raise self._fail(campaign, attempts, last_error)

    def _fail(self, campaign: CampaignRecord, attempts: int, reason: str) -> DispatchFailed:
        """Move the campaign RUNNING -> FAILED and build the error for the caller to raise."""
        self.store.compare_and_set_status(
            campaign.id,
            expected=CampaignStatus.running,
            new=CampaignStatus.failed,
        )
        if self.metrics is not None:
            self.metrics.increment("dispatch_failed")
        logger.error(
            "dispatch_failed campaign_id=%s org_id=%s attempts=%s error=%s",
            campaign.id,
            campaign.org_id,
            attempts,
            reason,
        )
        return DispatchFailed(campaign.id, attempts, reason)
