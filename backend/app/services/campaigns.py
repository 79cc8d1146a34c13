from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.models import (
    AdmissionJobRecord,
    CampaignCreateRequest,
    CampaignRecord,
    CampaignStatus,
    LeadRecord,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.backoff import BackoffPolicy
from backend.app.services.dispatch import DispatchFailed, DispatchResult, WebhookSender
from backend.app.services.notifications import Notifier
from backend.app.services.retry_queue import RetryDispatcher
from backend.app.store import CampaignStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionDecision:
    campaign_id: str
    admitted: bool
    active_campaign_id: Optional[str] = None


class AdmissionController:
    def __init__(self, store: CampaignStore, metrics: Optional[MetricsRegistry] = None) -> None:
        self.store = store
        self.metrics = metrics

    def try_admit(self, *, org_id: str, campaign_id: str) -> AdmissionDecision:
        if self.store.try_admit(org_id=org_id, campaign_id=campaign_id):
            logger.info("admission_granted campaign_id=%s org_id=%s", campaign_id, org_id)
            return AdmissionDecision(campaign_id=campaign_id, admitted=True)

        active_campaign_id = self.store.find_other_active_campaign(org_id=org_id, campaign_id=campaign_id)
        logger.info(
            "admission_deferred campaign_id=%s org_id=%s active_campaign_id=%s",
            campaign_id,
            org_id,
            active_campaign_id,
        )
        if self.metrics is not None:
            self.metrics.increment("admission_deferred")
        return AdmissionDecision(
            campaign_id=campaign_id,
            admitted=False,
            active_campaign_id=active_campaign_id,
        )


@dataclass(frozen=True)
class CampaignCreation:
    campaign: CampaignRecord
    leads: list[LeadRecord]
    admitted: bool
    job: Optional[AdmissionJobRecord] = None


class CampaignLifecycle:
    """Drives a campaign from upload to completion and promotes the next one.

    The only cross-process coordination is the store's conditional updates;
    no step holds a transaction open across the outbound webhook call.
    """

    def __init__(
        self,
        store: CampaignStore,
        sender: WebhookSender,
        notifier: Notifier,
        *,
        retry_policy: Optional[BackoffPolicy] = None,
        job_lease_seconds: int = 300,
        completed_retention_seconds: int = 3600,
        failed_retention_seconds: int = 86400,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.notifier = notifier
        self.metrics = metrics
        self.admission = AdmissionController(store, metrics)
        self.retry = RetryDispatcher(
            store,
            self,
            policy=retry_policy,
            lease_seconds=job_lease_seconds,
            completed_retention_seconds=completed_retention_seconds,
            failed_retention_seconds=failed_retention_seconds,
            metrics=metrics,
        )

    def create_campaign(self, org_id: str, payload: CampaignCreateRequest) -> CampaignCreation:
        campaign, leads = self.store.create_campaign(
            org_id=org_id,
            agent_reference=payload.agent_reference,
            leads=payload.leads,
            validation_errors=payload.validation_errors,
        )
        logger.info(
            "campaign_created campaign_id=%s org_id=%s valid_leads=%s validation_errors=%s",
            campaign.id,
            org_id,
            len(payload.leads),
            len(payload.validation_errors),
        )
        decision = self.admission.try_admit(org_id=org_id, campaign_id=campaign.id)
        if not decision.admitted:
            job = self.retry.enqueue(campaign)
            return CampaignCreation(campaign=campaign, leads=leads, admitted=False, job=job)

        self.dispatch_campaign(campaign.model_copy(update={"status": CampaignStatus.running}))
        return CampaignCreation(
            campaign=self.store.get_campaign(campaign.id),
            leads=self.store.list_leads(campaign.id),
            admitted=True,
        )

    def dispatch_campaign(self, campaign: CampaignRecord) -> DispatchResult:
        """Dispatch an admitted campaign; a failure frees the slot for the next one."""
        try:
            return self._dispatch(campaign)
        except DispatchFailed:
            self._cascade_safely(campaign.org_id)
            raise

    def check_completion(self, campaign_id: str) -> bool:
        remaining = self.store.count_unfinished_leads(campaign_id)
        if remaining:
            return False
        completed = self.store.compare_and_set_status(
            campaign_id,
            expected=CampaignStatus.waiting_for_callbacks,
            new=CampaignStatus.completed,
        )
        if not completed:
            return False
        campaign = self.store.get_campaign(campaign_id)
        logger.info("campaign_completed campaign_id=%s org_id=%s", campaign.id, campaign.org_id)
        self.notifier.campaign_completed(campaign.org_id, campaign.id)
        self._cascade_safely(campaign.org_id)
        return True

    def process_next_queued_campaign(self, org_id: str) -> Optional[CampaignRecord]:
        """Promote and dispatch the oldest queued campaign of the org, if the slot is free.

        A promoted campaign whose dispatch fails ends FAILED and is not re-queued;
        the next queued campaign is tried in its place.
        """
        while True:
            campaign = self.store.claim_next_queued(org_id)
            if campaign is None:
                return None
            logger.info("campaign_promoted campaign_id=%s org_id=%s", campaign.id, org_id)
            self.notifier.campaign_status_changed(org_id, campaign.id, CampaignStatus.running.value)
            try:
                self._dispatch(campaign)
            except DispatchFailed as exc:
                logger.warning(
                    "promoted_campaign_dispatch_failed campaign_id=%s org_id=%s attempts=%s",
                    campaign.id,
                    org_id,
                    exc.attempts,
                )
                continue
            return self.store.get_campaign(campaign.id)

    def _dispatch(self, campaign: CampaignRecord) -> DispatchResult:
        try:
            result = self.sender.send(campaign)
        except DispatchFailed:
            self.notifier.campaign_status_changed(
                campaign.org_id, campaign.id, CampaignStatus.failed.value
            )
            raise
        self.notifier.campaign_status_changed(
            campaign.org_id, campaign.id, CampaignStatus.waiting_for_callbacks.value
        )
        # Callbacks may have finished every lead while the campaign was still RUNNING.
        self.check_completion(campaign.id)
        return result

    def _cascade_safely(self, org_id: str) -> None:
        try:
            self.process_next_queued_campaign(org_id)
        except Exception:
            logger.exception("cascade_failed org_id=%s", org_id)
            if self.metrics is not None:
                self.metrics.increment("cascade_error")
