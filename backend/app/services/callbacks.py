from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.models import CallbackRequest, LeadOutcome, LeadRecord, LeadStatus
from backend.app.observability import MetricsRegistry
from backend.app.services.campaigns import CampaignLifecycle
from backend.app.services.idempotency import IdempotencyCache
from backend.app.services.notifications import Notifier
from backend.app.store import CampaignStore

logger = logging.getLogger(__name__)

OUTCOME_MAP = {
    "qualified": LeadOutcome.qualified,
    "meeting_scheduled": LeadOutcome.meeting_scheduled,
    "site_visit_scheduled": LeadOutcome.site_visit_scheduled,
    "no_answer": LeadOutcome.no_answer,
    "failed": LeadOutcome.failed,
    "validation_error": LeadOutcome.validation_error,
}


def map_outcome(value: str) -> tuple[LeadOutcome, bool]:
    """Worker outcome to lead outcome. Unknown values become FAILED; the flag says which."""
    outcome = OUTCOME_MAP.get(value)
    if outcome is None:
        return LeadOutcome.failed, False
    return outcome, True


@dataclass(frozen=True)
class CallbackResult:
    duplicate: bool
    lead: Optional[LeadRecord] = None

    @property
    def outcome(self) -> Optional[LeadOutcome]:
        return self.lead.outcome if self.lead else None


class CallbackHandler:
    def __init__(
        self,
        store: CampaignStore,
        cache: IdempotencyCache,
        lifecycle: CampaignLifecycle,
        notifier: Notifier,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.metrics = metrics

    def handle(self, payload: CallbackRequest, *, org_id: Optional[str] = None) -> CallbackResult:
        if org_id is not None:
            # Raises StoreNotFoundError when the campaign belongs to another org.
            self.store.get_campaign(payload.campaign_id, org_id=org_id)
        if self.cache.seen(payload.campaign_id, payload.lead_id, payload.timestamp):
            return self._duplicate(payload, None, reason="cache")

        lead = self.store.get_lead(payload.lead_id, campaign_id=payload.campaign_id)
        if lead.status == LeadStatus.completed:
            self.cache.remember(payload.campaign_id, payload.lead_id, payload.timestamp)
            return self._duplicate(payload, lead, reason="lead_completed")

        outcome, recognized = map_outcome(payload.outcome)
        if not recognized:
            logger.warning(
                "callback_unknown_outcome campaign_id=%s lead_id=%s outcome=%r",
                payload.campaign_id,
                payload.lead_id,
                payload.outcome,
            )
            self._count("callback_unknown_outcome")

        updated, applied = self.store.complete_lead(
            campaign_id=payload.campaign_id,
            lead_id=payload.lead_id,
            outcome=outcome,
            reported_at_utc=payload.timestamp,
            meeting_details=payload.meeting_details,
            site_visit_details=payload.site_visit_details,
        )
        self.cache.remember(payload.campaign_id, payload.lead_id, payload.timestamp)
        if not applied:
            return self._duplicate(payload, updated, reason="concurrent_update")

        logger.info(
            "callback_processed campaign_id=%s lead_id=%s outcome=%s",
            payload.campaign_id,
            payload.lead_id,
            outcome.value,
        )
        campaign = self.store.get_campaign(payload.campaign_id)
        self.notifier.lead_updated(
            campaign.org_id,
            {
                "campaign_id": campaign.id,
                "lead_id": updated.id,
                "status": updated.status.value,
                "outcome": outcome.value,
            },
        )
        try:
            self.lifecycle.check_completion(campaign.id)
        except Exception:
            # The lead update is committed; the callback is acknowledged regardless.
            logger.exception("completion_check_failed campaign_id=%s", campaign.id)
            self._count("cascade_error")
        return CallbackResult(duplicate=False, lead=updated)

    def _duplicate(
        self,
        payload: CallbackRequest,
        lead: Optional[LeadRecord],
        *,
        reason: str,
    ) -> CallbackResult:
        logger.info(
            "callback_duplicate campaign_id=%s lead_id=%s reason=%s",
            payload.campaign_id,
            payload.lead_id,
            reason,
        )
        self._count("callback_duplicate")
        return CallbackResult(duplicate=True, lead=lead)

    def _count(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(event)
