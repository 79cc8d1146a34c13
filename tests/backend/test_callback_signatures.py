from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.webhooks import SignatureVerificationError, verify_callback_signature


def _signature(secret: str, payload: dict) -> str:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _signed_client(app_env, secret: str) -> TestClient:
    app_env.setenv("CALLBACK_WEBHOOK_SECRET", secret)
    return TestClient(create_app())


def _campaign_with_lead(client: TestClient) -> tuple[str, str]:
    created = client.post(
        "/campaigns",
        json={"agent_reference": "agent-sig", "leads": [{"name": "Meera", "phone": "+919800011111"}]},
    ).json()
    leads = client.get(f"/campaigns/{created['campaign_id']}/leads").json()
    return created["campaign_id"], leads[0]["lead_id"]


def test_callback_signature_required_when_secret_set(app_env) -> None:
    client = _signed_client(app_env, "topsecret")
    campaign_id, lead_id = _campaign_with_lead(client)
    payload = {
        "campaign_id": campaign_id,
        "lead_id": lead_id,
        "outcome": "qualified",
        "timestamp": "2026-03-01T10:00:00Z",
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    missing = client.post(
        "/webhooks/callback",
        content=body,
        headers={"content-type": "application/json"},
    )
    assert missing.status_code == 403

    forged = client.post(
        "/webhooks/callback",
        content=body,
        headers={"content-type": "application/json", "x-signature": _signature("wrong", payload)},
    )
    assert forged.status_code == 403

    lead = client.get(f"/leads/{lead_id}").json()
    assert lead["status"] == "PENDING"


def test_callback_signature_valid_processes_event(app_env) -> None:
    secret = "topsecret"
    client = _signed_client(app_env, secret)
    campaign_id, lead_id = _campaign_with_lead(client)
    payload = {
        "campaign_id": campaign_id,
        "lead_id": lead_id,
        "outcome": "site_visit_scheduled",
        "timestamp": "2026-03-01T10:00:00Z",
        "site_visit_details": {"datetime": "2026-03-04 11:00", "location": "Whitefield"},
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    response = client.post(
        "/webhooks/callback",
        content=body,
        headers={"content-type": "application/json", "x-signature": _signature(secret, payload)},
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "SITE_VISIT_SCHEDULED"

    campaign = client.get(f"/campaigns/{campaign_id}").json()
    assert campaign["status"] == "COMPLETED"


def test_signature_check_accepts_bare_hex_and_alternate_header() -> None:
    body = b'{"lead_id":"lead_1"}'
    digest = hmac.new(b"k", body, hashlib.sha256).hexdigest()

    verify_callback_signature({"x-webhook-signature": digest}, body, "k")
    verify_callback_signature({}, body, "")

    with pytest.raises(SignatureVerificationError):
        verify_callback_signature({"x-signature": digest}, body + b" ", "k")
