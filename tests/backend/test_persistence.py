from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from backend.app.main import create_app
from backend.app.models import CampaignStatus, utc_now
from backend.app.persistence import Database
from backend.app.services.crypto import PhoneCipher, PhoneCipherError


def _new_client(app_env, db_path: Path) -> TestClient:
    app_env.setenv("PERSISTENCE_DB_PATH", str(db_path))
    app_env.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    return TestClient(create_app())


def test_campaigns_persist_across_restart(app_env, tmp_path) -> None:
    db_path = tmp_path / "restart.sqlite3"
    first_client = _new_client(app_env, db_path)
    created = first_client.post(
        "/campaigns",
        json={"agent_reference": "agent-p", "leads": [{"name": "Persist", "phone": "+919800044444"}]},
    )
    assert created.status_code == 200
    campaign_id = created.json()["campaign_id"]

    restarted_client = _new_client(app_env, db_path)
    detail = restarted_client.get(f"/campaigns/{campaign_id}")
    assert detail.status_code == 200
    assert detail.json()["status"] == "WAITING_FOR_CALLBACKS"
    assert detail.json()["leads"][0]["phone"] == "+919800044444"

    queued = restarted_client.post(
        "/campaigns",
        json={"agent_reference": "agent-q", "leads": [{"phone": "+919800055555"}]},
    )
    assert queued.json()["status"] == "QUEUED"


def test_database_rejects_second_active_campaign(tmp_path) -> None:
    database = Database(str(tmp_path / "index.sqlite3"))
    now = utc_now()
    with database.engine.begin() as conn:
        conn.execute(database.organizations.insert().values(id="org_i", created_at_utc=now))
        conn.execute(
            database.campaigns.insert().values(
                id="cmp_one",
                org_id="org_i",
                agent_reference="a",
                status=CampaignStatus.running.value,
                created_at_utc=now,
                updated_at_utc=now,
            )
        )

    with pytest.raises(IntegrityError):
        with database.engine.begin() as conn:
            conn.execute(
                database.campaigns.insert().values(
                    id="cmp_two",
                    org_id="org_i",
                    agent_reference="b",
                    status=CampaignStatus.waiting_for_callbacks.value,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            )
    database.dispose()


def test_phone_cipher_rotates_keys() -> None:
    old_key = Fernet.generate_key().decode("utf-8")
    new_key = Fernet.generate_key().decode("utf-8")
    ciphertext = PhoneCipher(old_key).encrypt("+919800066666")

    rotated = PhoneCipher(new_key, [old_key])
    assert rotated.decrypt(ciphertext) == "+919800066666"

    with pytest.raises(PhoneCipherError):
        PhoneCipher(new_key).decrypt(ciphertext)
