from __future__ import annotations

from fastapi.testclient import TestClient

from backend.app.main import create_app


def build_campaign_payload(agent_reference: str = "agent-sales-1", leads: int = 2) -> dict:
    return {
        "agent_reference": agent_reference,
        "leads": [
            {
                "name": f"Lead {index}",
                "phone": f"+9198450{index:05d}",
                "custom_fields": {"project": "Skyline", "bhk": 2 + index},
            }
            for index in range(leads)
        ],
        "validation_errors": [{"row": 7, "error": "invalid phone", "phone": "98x"}],
    }


def build_callback(campaign_id: str, lead_id: str, outcome: str, timestamp: str) -> dict:
    return {
        "campaign_id": campaign_id,
        "lead_id": lead_id,
        "phone": "+919845000000",
        "outcome": outcome,
        "timestamp": timestamp,
    }


def _pending_lead_ids(client, campaign_id: str) -> list[str]:
    response = client.get(f"/campaigns/{campaign_id}/leads", params={"lead_status": "PENDING"})
    assert response.status_code == 200
    return [lead["lead_id"] for lead in response.json()]


def test_campaign_lifecycle_end_to_end(client, transport, fake_redis) -> None:
    first = client.post("/campaigns", json=build_campaign_payload("agent-a"))
    assert first.status_code == 200
    first_json = first.json()
    assert first_json["status"] == "WAITING_FOR_CALLBACKS"
    assert first_json["valid_leads"] == 2
    assert first_json["errors"] == 1

    second = client.post("/campaigns", json=build_campaign_payload("agent-b", leads=1))
    assert second.status_code == 200
    assert second.json()["status"] == "QUEUED"

    campaign_id = first_json["campaign_id"]
    lead_ids = _pending_lead_ids(client, campaign_id)
    assert [lead["lead_id"] for lead in transport.calls[0]["payload"]["leads"]] == lead_ids

    processed = client.post(
        "/webhooks/callback",
        json=build_callback(campaign_id, lead_ids[0], "qualified", "2026-03-01T10:00:00Z"),
    )
    assert processed.status_code == 200
    assert processed.json() == {
        "status": "processed",
        "duplicate": False,
        "lead_id": lead_ids[0],
        "outcome": "QUALIFIED",
        "detail": None,
    }

    duplicate = client.post(
        "/webhooks/callback",
        json=build_callback(campaign_id, lead_ids[0], "qualified", "2026-03-01T10:00:00Z"),
    )
    assert duplicate.json()["status"] == "duplicate"

    client.post(
        "/webhooks/callback",
        json=build_callback(campaign_id, lead_ids[1], "no_answer", "2026-03-01T10:05:00Z"),
    )

    detail = client.get(f"/campaigns/{campaign_id}")
    assert detail.status_code == 200
    detail_json = detail.json()
    assert detail_json["status"] == "COMPLETED"
    assert detail_json["requires_intervention"] is False
    assert detail_json["lead_counts"] == {
        "total": 3,
        "pending": 0,
        "completed": 2,
        "validation_errors": 1,
    }

    second_detail = client.get(f"/campaigns/{second.json()['campaign_id']}")
    assert second_detail.json()["status"] == "WAITING_FOR_CALLBACKS"
    assert transport.campaign_ids()[-1] == second.json()["campaign_id"]

    published = [message["event"] for _, message in fake_redis.published]
    assert "campaign.completed" in published


def test_progress_reports_rates(client) -> None:
    created = client.post("/campaigns", json=build_campaign_payload(leads=4)).json()
    campaign_id = created["campaign_id"]
    outcomes = ["qualified", "meeting_scheduled", "failed"]
    for index, lead_id in enumerate(_pending_lead_ids(client, campaign_id)[:3]):
        client.post(
            "/webhooks/callback",
            json=build_callback(campaign_id, lead_id, outcomes[index], f"2026-03-01T10:0{index}:00Z"),
        )

    progress = client.get(f"/campaigns/{campaign_id}/progress")
    assert progress.status_code == 200
    body = progress.json()
    assert body["status"] == "WAITING_FOR_CALLBACKS"
    assert body["total_contacts"] == 5
    assert body["completed_contacts"] == 3
    assert body["pending_contacts"] == 1
    assert body["validation_error_contacts"] == 1
    assert body["outcome_counts"]["QUALIFIED"] == 1
    assert body["answer_rate"] == 40.0
    assert body["qualification_rate"] == 33.33
    assert body["failure_rate"] == 33.33


def test_list_campaigns_is_newest_first_and_org_scoped(client) -> None:
    older = client.post("/campaigns", json=build_campaign_payload("agent-old")).json()
    newer = client.post("/campaigns", json=build_campaign_payload("agent-new")).json()
    client.post(
        "/campaigns",
        json=build_campaign_payload("agent-other"),
        headers={"X-Org-Id": "org_other"},
    )

    listed = client.get("/campaigns")
    assert listed.status_code == 200
    assert [item["campaign_id"] for item in listed.json()] == [
        newer["campaign_id"],
        older["campaign_id"],
    ]

    hidden = client.get(f"/campaigns/{older['campaign_id']}", headers={"X-Org-Id": "org_other"})
    assert hidden.status_code == 404


def test_lead_detail_returns_decrypted_phone(client) -> None:
    created = client.post("/campaigns", json=build_campaign_payload()).json()
    lead_id = _pending_lead_ids(client, created["campaign_id"])[0]

    response = client.get(f"/leads/{lead_id}")
    assert response.status_code == 200
    assert response.json()["phone"] == "+919845000000"
    assert response.json()["custom_fields"] == {"project": "Skyline", "bhk": 2}

    assert client.get("/leads/lead_missing").status_code == 404


def test_dispatch_failure_returns_bad_gateway(client, transport) -> None:
    transport.always_fail = True

    response = client.post("/campaigns", json=build_campaign_payload())
    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["status"] == "FAILED"

    campaign = client.get(f"/campaigns/{detail['campaign_id']}").json()
    assert campaign["status"] == "FAILED"
    assert campaign["requires_intervention"] is True
    assert len(transport.calls) == 3


def test_campaign_requires_at_least_one_lead(client) -> None:
    payload = build_campaign_payload()
    payload["leads"] = []
    assert client.post("/campaigns", json=payload).status_code == 422


def test_campaign_lead_limit(app_env) -> None:
    app_env.setenv("MAX_LEADS_PER_CAMPAIGN", "2")
    client = TestClient(create_app())

    response = client.post("/campaigns", json=build_campaign_payload(leads=3))
    assert response.status_code == 422


def test_callback_errors(client) -> None:
    created = client.post("/campaigns", json=build_campaign_payload()).json()
    campaign_id = created["campaign_id"]

    bad_json = client.post(
        "/webhooks/callback",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert bad_json.status_code == 400

    missing_field = client.post("/webhooks/callback", json={"campaign_id": campaign_id})
    assert missing_field.status_code == 422

    unknown = client.post(
        "/webhooks/callback",
        json=build_callback(campaign_id, "lead_missing", "qualified", "2026-03-01T10:00:00Z"),
    )
    assert unknown.status_code == 404

    rejected = next(
        lead["lead_id"]
        for lead in client.get(f"/campaigns/{campaign_id}/leads").json()
        if lead["status"] == "VALIDATION_ERROR"
    )
    conflict = client.post(
        "/webhooks/callback",
        json=build_callback(campaign_id, rejected, "qualified", "2026-03-01T10:00:00Z"),
    )
    assert conflict.status_code == 409


def test_admission_jobs_endpoints(client) -> None:
    client.post("/campaigns", json=build_campaign_payload("agent-a"))
    queued = client.post("/campaigns", json=build_campaign_payload("agent-b")).json()

    jobs = client.get("/admission-jobs", params={"campaign_id": queued["campaign_id"]})
    assert jobs.status_code == 200
    assert [job["status"] for job in jobs.json()] == ["pending"]

    ran = client.post("/admission-jobs/run")
    assert ran.status_code == 200
    assert ran.json() == []
