from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from backend.app.models import (
    AdmissionJobRecord,
    AdmissionJobStatus,
    CampaignRecord,
    CampaignStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.backoff import BackoffPolicy, admission_policy
from backend.app.services.dispatch import DispatchFailed
from backend.app.store import CampaignStore, StoreNotFoundError

if TYPE_CHECKING:
    from backend.app.services.campaigns import CampaignLifecycle

logger = logging.getLogger(__name__)


class AdmissionContention(Exception):
    """Another campaign of the organization holds the active slot."""

    def __init__(self, campaign_id: str, active_campaign_id: Optional[str]) -> None:
        super().__init__(
            f"campaign {campaign_id} waiting on active campaign {active_campaign_id or 'unknown'}"
        )
        self.campaign_id = campaign_id
        self.active_campaign_id = active_campaign_id


class RetryDispatcher:
    """Durable outer retry for campaigns that lost admission.

    Each queued campaign gets one ``admission_jobs`` row. Due rows are claimed
    with a conditional update, so any number of workers may poll the table.
    """

    def __init__(
        self,
        store: CampaignStore,
        lifecycle: "CampaignLifecycle",
        *,
        policy: Optional[BackoffPolicy] = None,
        lease_seconds: int = 300,
        completed_retention_seconds: int = 3600,
        failed_retention_seconds: int = 86400,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.policy = policy or admission_policy()
        self.lease_seconds = lease_seconds
        self.completed_retention_seconds = completed_retention_seconds
        self.failed_retention_seconds = failed_retention_seconds
        self.metrics = metrics
        self.clock = clock

    def enqueue(self, campaign: CampaignRecord) -> AdmissionJobRecord:
        run_at = self.clock() + timedelta(seconds=self.policy.delay_after(1))
        job = self.store.create_admission_job(
            campaign_id=campaign.id,
            org_id=campaign.org_id,
            max_attempts=self.policy.max_attempts,
            run_at_utc=run_at,
        )
        logger.info(
            "admission_job_enqueued job_id=%s campaign_id=%s org_id=%s run_at=%s",
            job.id,
            campaign.id,
            campaign.org_id,
            run_at.isoformat(),
        )
        return job

    def on_due(self, campaign_id: str) -> str:
        """One admission attempt. Returns the job result or raises ``AdmissionContention``."""
        campaign = self.store.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.queued:
            logger.info(
                "admission_job_skipped campaign_id=%s status=%s",
                campaign_id,
                campaign.status.value,
            )
            return "skipped"

        active_campaign_id = self.store.find_other_active_campaign(
            org_id=campaign.org_id,
            campaign_id=campaign.id,
        )
        if active_campaign_id:
            raise AdmissionContention(campaign.id, active_campaign_id)

        decision = self.lifecycle.admission.try_admit(org_id=campaign.org_id, campaign_id=campaign.id)
        if not decision.admitted:
            # Lost the race; the winner may have been this campaign via the cascader.
            current = self.store.get_campaign(campaign.id)
            if current.status != CampaignStatus.queued:
                return "skipped"
            raise AdmissionContention(campaign.id, decision.active_campaign_id)

        self.lifecycle.dispatch_campaign(
            campaign.model_copy(update={"status": CampaignStatus.running})
        )
        return "dispatched"

    def run_due_jobs(self, now: Optional[datetime] = None, *, limit: int = 20) -> list[AdmissionJobRecord]:
        now = now or self.clock()
        jobs = self.store.claim_due_admission_jobs(
            now=now,
            lease_seconds=self.lease_seconds,
            limit=limit,
        )
        return [self._run_job(job, now) for job in jobs]

    def purge_finished(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        removed = self.store.purge_finished_admission_jobs(
            completed_before=now - timedelta(seconds=self.completed_retention_seconds),
            failed_before=now - timedelta(seconds=self.failed_retention_seconds),
        )
        if removed:
            logger.info("admission_jobs_purged count=%s", removed)
        return removed

    def _run_job(self, job: AdmissionJobRecord, now: datetime) -> AdmissionJobRecord:
        attempts = job.attempts + 1
        try:
            result = self.on_due(job.campaign_id)
        except AdmissionContention as exc:
            logger.info(
                "admission_contention job_id=%s campaign_id=%s active_campaign_id=%s attempt=%s",
                job.id,
                job.campaign_id,
                exc.active_campaign_id,
                attempts,
            )
            self._count("admission_contention")
            return self._retry_or_exhaust(job, attempts, now, str(exc))
        except DispatchFailed as exc:
            # The sender already spent its own budget and failed the campaign.
            return self.store.finish_admission_job(
                job.id,
                status=AdmissionJobStatus.failed,
                attempts=attempts,
                result="dispatch_failed",
                error=str(exc),
            )
        except StoreNotFoundError as exc:
            logger.warning("admission_job_campaign_missing job_id=%s campaign_id=%s", job.id, job.campaign_id)
            return self.store.finish_admission_job(
                job.id,
                status=AdmissionJobStatus.failed,
                attempts=attempts,
                result="campaign_missing",
                error=str(exc),
            )
        except Exception as exc:
            logger.exception(
                "admission_job_error job_id=%s campaign_id=%s attempt=%s",
                job.id,
                job.campaign_id,
                attempts,
            )
            self._count("admission_job_error")
            return self._retry_or_exhaust(job, attempts, now, f"{type(exc).__name__}: {exc}")

        return self.store.finish_admission_job(
            job.id,
            status=AdmissionJobStatus.completed,
            attempts=attempts,
            result=result,
        )

    def _retry_or_exhaust(
        self,
        job: AdmissionJobRecord,
        attempts: int,
        now: datetime,
        error: str,
    ) -> AdmissionJobRecord:
        if attempts < job.max_attempts:
            # Enqueue already waited delay_after(1); each retry waits the next step.
            next_run = now + timedelta(seconds=self.policy.delay_after(attempts + 1))
            return self.store.reschedule_admission_job(
                job.id,
                attempts=attempts,
                next_run_at_utc=next_run,
                error=error,
            )
        logger.warning(
            "admission_job_exhausted job_id=%s campaign_id=%s attempts=%s",
            job.id,
            job.campaign_id,
            attempts,
        )
        self._count("admission_job_exhausted")
        return self.store.finish_admission_job(
            job.id,
            status=AdmissionJobStatus.failed,
            attempts=attempts,
            result="exhausted",
            error=error,
        )

    def _count(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(event)


class RetryWorker:
    """Background thread that polls due admission jobs and purges old ones."""

    def __init__(self, dispatcher: RetryDispatcher, *, poll_interval_seconds: float = 5.0) -> None:
        self.dispatcher = dispatcher
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="admission-retry-worker", daemon=True)
        self._thread.start()
        logger.info("retry_worker_started poll_interval_seconds=%s", self.poll_interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("retry_worker_stopped")

    def run_once(self, now: Optional[datetime] = None) -> int:
        jobs = self.dispatcher.run_due_jobs(now)
        self.dispatcher.purge_finished(now)
        return len(jobs)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("retry_worker_tick_failed")
            self._stop.wait(self.poll_interval_seconds)
