from __future__ import annotations

from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import CampaignStatus


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front so
    # check-then-update sequences are serializable across connections.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    SQLAlchemy engine plus the campaign schema. Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        is_sqlite = self.database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if is_sqlite:
            _use_immediate_transactions(self.engine)
        self.metadata = MetaData()
        self.organizations = Table(
            "organizations",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("id", String(64), nullable=False, unique=True),
            Column("org_id", String(64), ForeignKey("organizations.id"), nullable=False),
            Column("agent_reference", String(255), nullable=False),
            Column("status", String(32), nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            Column("completed_at_utc", DateTime, nullable=True),
        )
        active_statuses = [
            CampaignStatus.running.value,
            CampaignStatus.waiting_for_callbacks.value,
        ]
        Index("ix_campaigns_org_status", self.campaigns.c.org_id, self.campaigns.c.status)
        Index(
            "uq_campaigns_one_active_per_org",
            self.campaigns.c.org_id,
            unique=True,
            sqlite_where=self.campaigns.c.status.in_(active_statuses),
            postgresql_where=self.campaigns.c.status.in_(active_statuses),
        )
        self.leads = Table(
            "leads",
            self.metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("id", String(64), nullable=False, unique=True),
            Column("campaign_id", String(64), ForeignKey("campaigns.id"), nullable=False),
            Column("name", String(200), nullable=True),
            Column("phone_encrypted", Text, nullable=True),
            Column("custom_fields_json", Text, nullable=True),
            Column("status", String(32), nullable=False),
            Column("outcome", String(32), nullable=True),
            Column("meeting_details_json", Text, nullable=True),
            Column("site_visit_details_json", Text, nullable=True),
            Column("error_type", String(200), nullable=True),
            Column("tags_json", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            Column("reported_at_utc", DateTime, nullable=True),
        )
        Index("ix_leads_campaign_status", self.leads.c.campaign_id, self.leads.c.status)
        self.admission_jobs = Table(
            "admission_jobs",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("campaign_id", String(64), nullable=False, index=True),
            Column("org_id", String(64), nullable=False),
            Column("status", String(32), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("max_attempts", Integer, nullable=False),
            Column("next_run_at_utc", DateTime, nullable=False),
            Column("claimed_at_utc", DateTime, nullable=True),
            Column("result", String(64), nullable=True),
            Column("last_error", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            Column("finished_at_utc", DateTime, nullable=True),
        )
        Index(
            "ix_admission_jobs_due",
            self.admission_jobs.c.status,
            self.admission_jobs.c.next_run_at_utc,
        )
        self._ensure_schema()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
