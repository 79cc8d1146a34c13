from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _list_env(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_db_path: str
    database_url: str
    redis_url: str
    callback_webhook_secret: str
    worker_webhook_url: str
    worker_webhook_secret: str
    dispatch_timeout_seconds: float
    dispatch_max_attempts: int
    dispatch_retry_backoff_seconds: float
    admission_max_attempts: int
    admission_initial_delay_seconds: float
    admission_poll_interval_seconds: float
    admission_job_lease_seconds: int
    admission_completed_retention_seconds: int
    admission_failed_retention_seconds: int
    retry_worker_enabled: bool
    idempotency_ttl_seconds: int
    phone_encryption_key: str
    phone_encryption_keys_old: tuple[str, ...]
    max_leads_per_campaign: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv(
        "PERSISTENCE_DB_PATH", "data/campaign_dispatch.sqlite3"
    ).strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0").strip(),
        callback_webhook_secret=os.getenv("CALLBACK_WEBHOOK_SECRET", "").strip(),
        worker_webhook_url=os.getenv("WORKER_WEBHOOK_URL", "").strip(),
        worker_webhook_secret=os.getenv("WORKER_WEBHOOK_SECRET", "").strip(),
        dispatch_timeout_seconds=max(1.0, _float_env("DISPATCH_TIMEOUT_SECONDS", 10.0)),
        dispatch_max_attempts=max(1, _int_env("DISPATCH_MAX_ATTEMPTS", 3)),
        dispatch_retry_backoff_seconds=max(
            0.0, _float_env("DISPATCH_RETRY_BACKOFF_SECONDS", 1.0)
        ),
        admission_max_attempts=max(1, _int_env("ADMISSION_MAX_ATTEMPTS", 10)),
        admission_initial_delay_seconds=max(
            0.0, _float_env("ADMISSION_INITIAL_DELAY_SECONDS", 30.0)
        ),
        admission_poll_interval_seconds=max(
            0.1, _float_env("ADMISSION_POLL_INTERVAL_SECONDS", 5.0)
        ),
        admission_job_lease_seconds=max(30, _int_env("ADMISSION_JOB_LEASE_SECONDS", 300)),
        admission_completed_retention_seconds=max(
            0, _int_env("ADMISSION_COMPLETED_RETENTION_SECONDS", 3600)
        ),
        admission_failed_retention_seconds=max(
            0, _int_env("ADMISSION_FAILED_RETENTION_SECONDS", 86400)
        ),
        retry_worker_enabled=_bool_env("RETRY_WORKER_ENABLED", True),
        idempotency_ttl_seconds=max(60, _int_env("IDEMPOTENCY_TTL_SECONDS", 86400)),
        phone_encryption_key=os.getenv("PHONE_ENCRYPTION_KEY", "").strip(),
        phone_encryption_keys_old=tuple(_list_env("PHONE_ENCRYPTION_KEYS_OLD")),
        max_leads_per_campaign=max(1, min(5000, _int_env("MAX_LEADS_PER_CAMPAIGN", 500))),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
