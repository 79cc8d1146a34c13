from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import pytest
import redis
from cryptography.fernet import Fernet
from fastapi import FastAPI
from fastapi.testclient import TestClient

import backend.app.main as main_module
import backend.app.services.dispatch as dispatch_module
from backend.app.main import create_app
from backend.app.models import (
    CallbackRequest,
    CampaignCreateRequest,
    CampaignStatus,
    LeadInput,
    LeadStatus,
    LeadValidationIssue,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.persistence import Database
from backend.app.services.backoff import admission_policy, dispatch_policy
from backend.app.services.callbacks import CallbackHandler, CallbackResult
from backend.app.services.campaigns import CampaignCreation, CampaignLifecycle
from backend.app.services.crypto import PhoneCipher
from backend.app.services.dispatch import WebhookDeliveryError, WebhookSender
from backend.app.services.idempotency import IdempotencyCache
from backend.app.services.notifications import Notifier
from backend.app.store import CampaignStore

WORKER_URL = "http://worker.test/dispatch"


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the service issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def ping(self) -> bool:
        self._check()
        return True

    def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if key in self.values)

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self.values.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, json.loads(message)))
        return 0

    def events(self, kind: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            message
            for _, message in self.published
            if kind is None or message["event"] == kind
        ]


class TransportRecorder:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_next = 0
        self.always_fail = False

    def __call__(self, url: str, payload: dict[str, Any], *, timeout: float, secret: str = "") -> None:
        self.calls.append({"url": url, "payload": payload, "timeout": timeout, "secret": secret})
        if self.always_fail:
            raise WebhookDeliveryError("worker unreachable")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise WebhookDeliveryError("worker unreachable")

    def campaign_ids(self) -> list[str]:
        return [call["payload"]["campaign_id"] for call in self.calls]


@dataclass
class Harness:
    store: CampaignStore
    lifecycle: CampaignLifecycle
    callbacks: CallbackHandler
    sender: WebhookSender
    transport: TransportRecorder
    redis: FakeRedis
    metrics: MetricsRegistry
    sleeps: list[float] = field(default_factory=list)

    def create(
        self,
        org_id: str = "org_a",
        *,
        leads: int = 2,
        agent_reference: str = "agent-sales-1",
        validation_errors: int = 0,
    ) -> CampaignCreation:
        payload = CampaignCreateRequest(
            agent_reference=agent_reference,
            leads=[
                LeadInput(
                    name=f"Lead {index}",
                    phone=f"+1555000{index:04d}",
                    custom_fields={"budget": index * 1000},
                )
                for index in range(leads)
            ],
            validation_errors=[
                LeadValidationIssue(row=index + 2, error="invalid phone", phone="12")
                for index in range(validation_errors)
            ],
        )
        return self.lifecycle.create_campaign(org_id, payload)

    def lead_ids(self, campaign_id: str) -> list[str]:
        return [
            lead.id
            for lead in self.store.list_leads(campaign_id)
            if lead.status != LeadStatus.validation_error
        ]

    def status(self, campaign_id: str) -> CampaignStatus:
        return self.store.get_campaign(campaign_id).status

    def callback(
        self,
        campaign_id: str,
        lead_id: str,
        outcome: str = "qualified",
        *,
        timestamp: Optional[datetime] = None,
        **extra: Any,
    ) -> CallbackResult:
        payload = CallbackRequest(
            campaign_id=campaign_id,
            lead_id=lead_id,
            outcome=outcome,
            timestamp=timestamp or utc_now(),
            **extra,
        )
        return self.callbacks.handle(payload)

    def finish_all(self, campaign_id: str, outcome: str = "qualified") -> None:
        for lead_id in self.lead_ids(campaign_id):
            self.callback(campaign_id, lead_id, outcome)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def transport() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture()
def phone_key() -> str:
    return Fernet.generate_key().decode("utf-8")


@pytest.fixture()
def database(tmp_path) -> Database:
    db = Database(f"sqlite:///{str(tmp_path / 'campaigns.sqlite3').replace(chr(92), '/')}")
    yield db
    db.dispose()


@pytest.fixture()
def harness(database: Database, fake_redis: FakeRedis, transport: TransportRecorder, phone_key: str) -> Harness:
    metrics = MetricsRegistry()
    store = CampaignStore(database, PhoneCipher(phone_key))
    sleeps: list[float] = []
    sender = WebhookSender(
        store,
        url=WORKER_URL,
        timeout_seconds=10,
        policy=dispatch_policy(),
        transport=transport,
        sleep=sleeps.append,
        metrics=metrics,
    )
    notifier = Notifier(fake_redis)
    lifecycle = CampaignLifecycle(
        store,
        sender,
        notifier,
        retry_policy=admission_policy(),
        metrics=metrics,
    )
    cache = IdempotencyCache(fake_redis, ttl_seconds=86400, metrics=metrics)
    return Harness(
        store=store,
        lifecycle=lifecycle,
        callbacks=CallbackHandler(store, cache, lifecycle, notifier, metrics=metrics),
        sender=sender,
        transport=transport,
        redis=fake_redis,
        metrics=metrics,
        sleeps=sleeps,
    )


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path, phone_key: str, fake_redis: FakeRedis, transport: TransportRecorder):
    db_path = tmp_path / "campaign_dispatch.sqlite3"
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("PHONE_ENCRYPTION_KEY", phone_key)
    monkeypatch.setenv("WORKER_WEBHOOK_URL", WORKER_URL)
    monkeypatch.setenv("CALLBACK_WEBHOOK_SECRET", "")
    monkeypatch.setenv("DISPATCH_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("RETRY_WORKER_ENABLED", "false")
    monkeypatch.setattr(main_module, "build_redis_client", lambda settings: fake_redis)
    monkeypatch.setattr(dispatch_module, "post_json", transport)
    return monkeypatch


@pytest.fixture()
def app(app_env) -> FastAPI:
    return create_app()


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
