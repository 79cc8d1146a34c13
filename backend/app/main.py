from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    AdmissionJobRecord,
    CallbackRequest,
    CallbackResponse,
    CampaignCreateRequest,
    CampaignCreateResponse,
    CampaignDetailResponse,
    CampaignItem,
    CampaignProgressResponse,
    CampaignRecord,
    CampaignStatus,
    LeadCounts,
    LeadItem,
    LeadOutcome,
    LeadRecord,
    LeadStatus,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import Database
from backend.app.redis_client import build_redis_client, ping_redis
from backend.app.services.backoff import admission_policy, dispatch_policy
from backend.app.services.callbacks import CallbackHandler
from backend.app.services.campaigns import CampaignLifecycle
from backend.app.services.crypto import build_phone_cipher
from backend.app.services.dispatch import DispatchFailed, WebhookSender
from backend.app.services.idempotency import IdempotencyCache
from backend.app.services.notifications import Notifier
from backend.app.services.retry_queue import RetryWorker
from backend.app.services.webhooks import SignatureVerificationError, verify_callback_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import CampaignStore, StoreConflictError, StoreNotFoundError


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker: RetryWorker = app.state.retry_worker
    if app.state.settings.retry_worker_enabled:
        worker.start()
    try:
        yield
    finally:
        worker.stop()
        app.state.database.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Campaign Dispatch API", version="0.1.0", lifespan=lifespan)
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    metrics = MetricsRegistry()
    database = Database(settings.database_url)
    cipher = build_phone_cipher(
        settings.phone_encryption_key,
        settings.phone_encryption_keys_old,
        app_env=settings.app_env,
    )
    store = CampaignStore(database, cipher)
    redis_client = build_redis_client(settings)
    notifier = Notifier(redis_client)
    sender = WebhookSender(
        store,
        url=settings.worker_webhook_url,
        timeout_seconds=settings.dispatch_timeout_seconds,
        secret=settings.worker_webhook_secret,
        policy=dispatch_policy(
            max_attempts=settings.dispatch_max_attempts,
            backoff_seconds=settings.dispatch_retry_backoff_seconds,
        ),
        metrics=metrics,
    )
    lifecycle = CampaignLifecycle(
        store,
        sender,
        notifier,
        retry_policy=admission_policy(
            max_attempts=settings.admission_max_attempts,
            initial_delay_seconds=settings.admission_initial_delay_seconds,
        ),
        job_lease_seconds=settings.admission_job_lease_seconds,
        completed_retention_seconds=settings.admission_completed_retention_seconds,
        failed_retention_seconds=settings.admission_failed_retention_seconds,
        metrics=metrics,
    )
    cache = IdempotencyCache(
        redis_client,
        ttl_seconds=settings.idempotency_ttl_seconds,
        metrics=metrics,
    )

    app.state.settings = settings
    app.state.metrics = metrics
    app.state.database = database
    app.state.store = store
    app.state.redis = redis_client
    app.state.lifecycle = lifecycle
    app.state.callbacks = CallbackHandler(store, cache, lifecycle, notifier, metrics=metrics)
    app.state.retry_worker = RetryWorker(
        lifecycle.retry,
        poll_interval_seconds=settings.admission_poll_interval_seconds,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> CampaignStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_lifecycle(request: Request) -> CampaignLifecycle:
    return request.app.state.lifecycle


def percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round((part / whole) * 100, 2)


def campaign_item(campaign: CampaignRecord, counts: LeadCounts) -> CampaignItem:
    return CampaignItem(
        campaign_id=campaign.id,
        org_id=campaign.org_id,
        agent_reference=campaign.agent_reference,
        status=campaign.status,
        created_at_utc=campaign.created_at_utc,
        completed_at_utc=campaign.completed_at_utc,
        lead_counts=counts,
    )


def lead_item(lead: LeadRecord) -> LeadItem:
    return LeadItem(
        lead_id=lead.id,
        campaign_id=lead.campaign_id,
        name=lead.name,
        phone=lead.phone,
        custom_fields=lead.custom_fields,
        status=lead.status,
        outcome=lead.outcome,
        meeting_details=lead.meeting_details,
        site_visit_details=lead.site_visit_details,
        error_type=lead.error_type,
        tags=lead.tags,
        created_at_utc=lead.created_at_utc,
        reported_at_utc=lead.reported_at_utc,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not request.app.state.database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        redis_state = "ok" if ping_redis(request.app.state.redis) else "unavailable"
        return {"status": "ready", "redis": redis_state}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/campaigns", response_model=CampaignCreateResponse)
    def create_campaign(
        payload: CampaignCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> CampaignCreateResponse:
        settings = get_settings(request)
        if len(payload.leads) > settings.max_leads_per_campaign:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"at most {settings.max_leads_per_campaign} leads per campaign",
            )
        try:
            created = get_lifecycle(request).create_campaign(context.org_id, payload)
        except DispatchFailed as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "campaign_id": exc.campaign_id,
                    "status": CampaignStatus.failed.value,
                    "error": str(exc),
                },
            ) from exc
        return CampaignCreateResponse(
            campaign_id=created.campaign.id,
            status=created.campaign.status,
            valid_leads=len(payload.leads),
            errors=len(payload.validation_errors),
            validation_errors=payload.validation_errors,
        )

    @router.get("/campaigns", response_model=list[CampaignItem])
    def list_campaigns(
        request: Request,
        limit: int = 50,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> list[CampaignItem]:
        store = get_store(request)
        campaigns = store.list_campaigns(context.org_id, limit=limit)
        counts = store.lead_counts([campaign.id for campaign in campaigns])
        return [campaign_item(campaign, counts[campaign.id]) for campaign in campaigns]

    @router.get("/campaigns/{campaign_id}", response_model=CampaignDetailResponse)
    def campaign_detail(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> CampaignDetailResponse:
        store = get_store(request)
        try:
            campaign = store.get_campaign(campaign_id, org_id=context.org_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        counts = store.lead_counts([campaign.id])[campaign.id]
        item = campaign_item(campaign, counts)
        return CampaignDetailResponse(
            **item.model_dump(),
            requires_intervention=campaign.status == CampaignStatus.failed,
            leads=[lead_item(lead) for lead in store.list_leads(campaign.id)],
        )

    @router.get("/campaigns/{campaign_id}/progress", response_model=CampaignProgressResponse)
    def campaign_progress(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> CampaignProgressResponse:
        store = get_store(request)
        try:
            campaign = store.get_campaign(campaign_id, org_id=context.org_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        by_status, by_outcome = store.lead_breakdown(campaign.id)
        total = sum(by_status.values())
        completed = by_status[LeadStatus.completed.value]
        answered = (
            by_outcome[LeadOutcome.qualified.value]
            + by_outcome[LeadOutcome.meeting_scheduled.value]
            + by_outcome[LeadOutcome.site_visit_scheduled.value]
        )
        return CampaignProgressResponse(
            campaign_id=campaign.id,
            status=campaign.status,
            total_contacts=total,
            completed_contacts=completed,
            pending_contacts=by_status[LeadStatus.pending.value],
            in_progress_contacts=by_status[LeadStatus.in_progress.value],
            validation_error_contacts=by_status[LeadStatus.validation_error.value],
            outcome_counts=by_outcome,
            answer_rate=percentage(answered, total),
            qualification_rate=percentage(by_outcome[LeadOutcome.qualified.value], completed),
            failure_rate=percentage(by_outcome[LeadOutcome.failed.value], completed),
        )

    @router.get("/campaigns/{campaign_id}/leads", response_model=list[LeadItem])
    def campaign_leads(
        campaign_id: str,
        request: Request,
        lead_status: Optional[LeadStatus] = None,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> list[LeadItem]:
        store = get_store(request)
        try:
            store.get_campaign(campaign_id, org_id=context.org_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        leads = store.list_leads(campaign_id)
        if lead_status is not None:
            leads = [lead for lead in leads if lead.status == lead_status]
        return [lead_item(lead) for lead in leads]

    @router.get("/leads/{lead_id}", response_model=LeadItem)
    def lead_detail(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("operator", "admin")),
    ) -> LeadItem:
        store = get_store(request)
        try:
            lead = store.get_lead(lead_id)
            store.get_campaign(lead.campaign_id, org_id=context.org_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return lead_item(lead)

    @router.post("/webhooks/callback", response_model=CallbackResponse)
    async def callback_webhook(
        request: Request,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> CallbackResponse:
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_callback_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.callback_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            decoded = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc
        try:
            payload = CallbackRequest.model_validate(decoded)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=str(exc),
            ) from exc

        handler: CallbackHandler = request.app.state.callbacks
        try:
            result = await run_in_threadpool(handler.handle, payload, org_id=context.org_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return CallbackResponse(
            status="duplicate" if result.duplicate else "processed",
            duplicate=result.duplicate,
            lead_id=payload.lead_id,
            outcome=result.outcome,
        )

    @router.post("/admission-jobs/run", response_model=list[AdmissionJobRecord])
    def run_admission_jobs(
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> list[AdmissionJobRecord]:
        return get_lifecycle(request).retry.run_due_jobs()

    @router.get("/admission-jobs", response_model=list[AdmissionJobRecord])
    def list_admission_jobs(
        request: Request,
        campaign_id: Optional[str] = None,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> list[AdmissionJobRecord]:
        return get_store(request).list_admission_jobs(campaign_id=campaign_id)

    return router


app = create_app()
