from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app

CAMPAIGN = {
    "agent_reference": "agent-auth",
    "leads": [{"name": "Auth Lead", "phone": "+919800022222"}],
}


def _token(secret: str, subject: str, roles: list[str], org_id: Optional[str] = "org_auth") -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if org_id is not None:
        payload["org_id"] = org_id
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(app_env) -> TestClient:
    app_env.setenv("AUTH_ENABLED", "true")
    app_env.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(app_env) -> None:
    client = _auth_client(app_env)

    response = client.post("/campaigns", json=CAMPAIGN)
    assert response.status_code == 401


def test_auth_allows_operator_token_and_scopes_by_org(app_env) -> None:
    client = _auth_client(app_env)
    token = _token("test-secret", "operator-1", ["operator"])

    response = client.post(
        "/campaigns",
        headers={"Authorization": f"Bearer {token}"},
        json=CAMPAIGN,
    )
    assert response.status_code == 200
    campaign_id = response.json()["campaign_id"]

    other_org = _token("test-secret", "operator-2", ["operator"], org_id="org_other")
    hidden = client.get(
        f"/campaigns/{campaign_id}",
        headers={"Authorization": f"Bearer {other_org}"},
    )
    assert hidden.status_code == 404


def test_auth_rejects_token_without_org(app_env) -> None:
    client = _auth_client(app_env)
    token = _token("test-secret", "operator-1", ["operator"], org_id=None)

    response = client.get("/campaigns", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_service_role_cannot_create_campaigns(app_env) -> None:
    client = _auth_client(app_env)
    token = _token("test-secret", "call-worker", ["service"])

    response = client.post(
        "/campaigns",
        headers={"Authorization": f"Bearer {token}"},
        json=CAMPAIGN,
    )
    assert response.status_code == 403


def test_health_is_public_even_when_auth_enabled(app_env) -> None:
    client = _auth_client(app_env)

    assert client.get("/health").status_code == 200


def test_service_token_cannot_complete_leads_of_another_org(app_env) -> None:
    client = _auth_client(app_env)
    operator = _token("test-secret", "operator-1", ["operator"])
    created = client.post(
        "/campaigns",
        headers={"Authorization": f"Bearer {operator}"},
        json=CAMPAIGN,
    ).json()
    leads = client.get(
        f"/campaigns/{created['campaign_id']}/leads",
        headers={"Authorization": f"Bearer {operator}"},
    ).json()
    callback = {
        "campaign_id": created["campaign_id"],
        "lead_id": leads[0]["lead_id"],
        "outcome": "qualified",
        "timestamp": "2026-03-01T10:00:00Z",
    }

    foreign = _token("test-secret", "call-worker", ["service"], org_id="org_other")
    rejected = client.post(
        "/webhooks/callback",
        headers={"Authorization": f"Bearer {foreign}"},
        json=callback,
    )
    assert rejected.status_code == 404
    lead = client.get(
        f"/leads/{leads[0]['lead_id']}",
        headers={"Authorization": f"Bearer {operator}"},
    ).json()
    assert lead["status"] == "PENDING"

    own = _token("test-secret", "call-worker", ["service"])
    accepted = client.post(
        "/webhooks/callback",
        headers={"Authorization": f"Bearer {own}"},
        json=callback,
    )
    assert accepted.status_code == 200
    assert accepted.json()["duplicate"] is False
