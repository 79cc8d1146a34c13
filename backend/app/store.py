from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    AdmissionJobRecord,
    AdmissionJobStatus,
    AppointmentDetails,
    CampaignRecord,
    CampaignStatus,
    DispatchLead,
    LeadCounts,
    LeadInput,
    LeadOutcome,
    LeadRecord,
    LeadStatus,
    LeadValidationIssue,
    utc_now,
)
from backend.app.persistence import Database
from backend.app.services.crypto import PhoneCipher, PhoneCipherError
from backend.app.services.workflow import (
    ACTIVE_CAMPAIGN_STATUSES,
    OPEN_LEAD_STATUSES,
    UNFINISHED_LEAD_STATUSES,
    can_transition,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_CAMPAIGN_STATUSES]
_OPEN_LEAD_VALUES = [status.value for status in OPEN_LEAD_STATUSES]
_UNFINISHED_LEAD_VALUES = [status.value for status in UNFINISHED_LEAD_STATUSES]


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    return json.dumps(value)


def _load_json(value: Optional[str]) -> Any:
    if not value:
        return None
    return json.loads(value)


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class CampaignStore:
    """Campaign, lead and admission-job rows.

    Every status change is a conditional ``UPDATE ... WHERE status = <expected>``
    and the affected-row count decides which caller won. No in-process locks are
    held, so several API or worker processes can share one database.
    """

    def __init__(self, database: Database, cipher: PhoneCipher) -> None:
        self.database = database
        self.cipher = cipher

    @property
    def _campaigns(self):
        return self.database.campaigns

    @property
    def _leads(self):
        return self.database.leads

    @property
    def _jobs(self):
        return self.database.admission_jobs

    # -- campaigns -----------------------------------------------------------

    def create_campaign(
        self,
        *,
        org_id: str,
        agent_reference: str,
        leads: list[LeadInput],
        validation_errors: list[LeadValidationIssue],
    ) -> tuple[CampaignRecord, list[LeadRecord]]:
        now = utc_now()
        campaign_id = new_id("cmp")
        campaign_row = {
            "id": campaign_id,
            "org_id": org_id,
            "agent_reference": agent_reference.strip(),
            "status": CampaignStatus.queued.value,
            "created_at_utc": now,
            "updated_at_utc": now,
            "completed_at_utc": None,
        }
        lead_rows: list[dict[str, Any]] = []
        for lead in leads:
            lead_rows.append(
                {
                    "id": new_id("lead"),
                    "campaign_id": campaign_id,
                    "name": lead.name.strip() if lead.name else None,
                    "phone_encrypted": self.cipher.encrypt(lead.phone.strip()),
                    "custom_fields_json": _dump_json(lead.custom_fields or None),
                    "status": LeadStatus.pending.value,
                    "outcome": None,
                    "error_type": None,
                    "created_at_utc": now,
                    "updated_at_utc": now,
                }
            )
        for issue in validation_errors:
            lead_rows.append(
                {
                    "id": new_id("lead"),
                    "campaign_id": campaign_id,
                    "name": None,
                    "phone_encrypted": self.cipher.encrypt(issue.phone) if issue.phone else None,
                    "custom_fields_json": None,
                    "status": LeadStatus.validation_error.value,
                    "outcome": LeadOutcome.validation_error.value,
                    "error_type": issue.error,
                    "created_at_utc": now,
                    "updated_at_utc": now,
                }
            )

        with self.database.engine.begin() as conn:
            self._ensure_organization(conn, org_id, now)
            conn.execute(self._campaigns.insert().values(**campaign_row))
            if lead_rows:
                conn.execute(self._leads.insert(), lead_rows)

        campaign = self.get_campaign(campaign_id)
        return campaign, self.list_leads(campaign_id)

    def get_campaign(self, campaign_id: str, *, org_id: Optional[str] = None) -> CampaignRecord:
        query = select(self._campaigns).where(self._campaigns.c.id == campaign_id)
        if org_id is not None:
            query = query.where(self._campaigns.c.org_id == org_id)
        with self.database.engine.connect() as conn:
            row = conn.execute(query).first()
        if not row:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return self._row_to_campaign(row)

    def list_campaigns(self, org_id: str, *, limit: int = 50) -> list[CampaignRecord]:
        safe_limit = max(1, min(limit, 500))
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(self._campaigns)
                .where(self._campaigns.c.org_id == org_id)
                .order_by(self._campaigns.c.created_at_utc.desc(), self._campaigns.c.seq.desc())
                .limit(safe_limit)
            ).all()
        return [self._row_to_campaign(row) for row in rows]

    def list_campaigns_by_status(
        self, org_id: str, statuses: tuple[CampaignStatus, ...]
    ) -> list[CampaignRecord]:
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(self._campaigns)
                .where(
                    self._campaigns.c.org_id == org_id,
                    self._campaigns.c.status.in_([status.value for status in statuses]),
                )
                .order_by(self._campaigns.c.created_at_utc.asc(), self._campaigns.c.seq.asc())
            ).all()
        return [self._row_to_campaign(row) for row in rows]

    def find_other_active_campaign(self, *, org_id: str, campaign_id: str) -> Optional[str]:
        with self.database.engine.connect() as conn:
            row = conn.execute(
                select(self._campaigns.c.id)
                .where(
                    self._campaigns.c.org_id == org_id,
                    self._campaigns.c.id != campaign_id,
                    self._campaigns.c.status.in_(_ACTIVE_VALUES),
                )
                .limit(1)
            ).first()
        return row.id if row else None

    def try_admit(self, *, org_id: str, campaign_id: str) -> bool:
        """QUEUED -> RUNNING, only while no other campaign of the org is active."""
        now = utc_now()
        statement = (
            update(self._campaigns)
            .where(
                self._campaigns.c.id == campaign_id,
                self._campaigns.c.org_id == org_id,
                self._campaigns.c.status == CampaignStatus.queued.value,
                ~self._other_active_exists(org_id, campaign_id),
            )
            .values(status=CampaignStatus.running.value, updated_at_utc=now)
        )
        try:
            with self.database.engine.begin() as conn:
                self._lock_organization(conn, org_id)
                result = conn.execute(statement)
        except IntegrityError:
            # The one-active-per-org index rejected a concurrent winner.
            return False
        return result.rowcount == 1

    def claim_next_queued(self, org_id: str) -> Optional[CampaignRecord]:
        """Promote the oldest QUEUED campaign of the org to RUNNING.

        Returns None when another campaign is active, when nothing is queued, or
        when a concurrent caller promoted the candidate first.
        """
        now = utc_now()
        try:
            with self.database.engine.begin() as conn:
                self._lock_organization(conn, org_id)
                active = conn.execute(
                    select(self._campaigns.c.id)
                    .where(
                        self._campaigns.c.org_id == org_id,
                        self._campaigns.c.status.in_(_ACTIVE_VALUES),
                    )
                    .limit(1)
                ).first()
                if active:
                    return None
                candidate = conn.execute(
                    select(self._campaigns)
                    .where(
                        self._campaigns.c.org_id == org_id,
                        self._campaigns.c.status == CampaignStatus.queued.value,
                    )
                    .order_by(self._campaigns.c.created_at_utc.asc(), self._campaigns.c.seq.asc())
                    .limit(1)
                ).first()
                if not candidate:
                    return None
                result = conn.execute(
                    update(self._campaigns)
                    .where(
                        self._campaigns.c.id == candidate.id,
                        self._campaigns.c.status == CampaignStatus.queued.value,
                        ~self._other_active_exists(org_id, candidate.id),
                    )
                    .values(status=CampaignStatus.running.value, updated_at_utc=now)
                )
                if result.rowcount != 1:
                    return None
        except IntegrityError:
            return None
        return self._row_to_campaign(candidate).model_copy(
            update={"status": CampaignStatus.running, "updated_at_utc": now}
        )

    def compare_and_set_status(
        self,
        campaign_id: str,
        *,
        expected: CampaignStatus,
        new: CampaignStatus,
    ) -> bool:
        if not can_transition(expected, new):
            raise StoreConflictError(f"invalid transition {expected.value} -> {new.value}")
        now = utc_now()
        values: dict[str, Any] = {"status": new.value, "updated_at_utc": now}
        if new == CampaignStatus.completed:
            values["completed_at_utc"] = now
        with self.database.engine.begin() as conn:
            result = conn.execute(
                update(self._campaigns)
                .where(
                    self._campaigns.c.id == campaign_id,
                    self._campaigns.c.status == expected.value,
                )
                .values(**values)
            )
        return result.rowcount == 1

    # -- leads ---------------------------------------------------------------

    def get_lead(self, lead_id: str, *, campaign_id: Optional[str] = None) -> LeadRecord:
        query = select(self._leads).where(self._leads.c.id == lead_id)
        if campaign_id is not None:
            query = query.where(self._leads.c.campaign_id == campaign_id)
        with self.database.engine.connect() as conn:
            row = conn.execute(query).first()
        if not row:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        return self._row_to_lead(row)

    def list_leads(self, campaign_id: str) -> list[LeadRecord]:
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(self._leads)
                .where(self._leads.c.campaign_id == campaign_id)
                .order_by(self._leads.c.seq.asc())
            ).all()
        return [self._row_to_lead(row) for row in rows]

    def dispatchable_leads(self, campaign_id: str) -> list[DispatchLead]:
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(
                    self._leads.c.id,
                    self._leads.c.name,
                    self._leads.c.phone_encrypted,
                    self._leads.c.custom_fields_json,
                )
                .where(
                    self._leads.c.campaign_id == campaign_id,
                    self._leads.c.status == LeadStatus.pending.value,
                )
                .order_by(self._leads.c.seq.asc())
            ).all()
        return [
            DispatchLead(
                lead_id=row.id,
                name=row.name or "",
                phone=self.cipher.decrypt(row.phone_encrypted) if row.phone_encrypted else "",
                custom_fields=_load_json(row.custom_fields_json) or {},
            )
            for row in rows
        ]

    def complete_lead(
        self,
        *,
        campaign_id: str,
        lead_id: str,
        outcome: LeadOutcome,
        reported_at_utc: datetime,
        meeting_details: Optional[AppointmentDetails] = None,
        site_visit_details: Optional[AppointmentDetails] = None,
    ) -> tuple[LeadRecord, bool]:
        """Write the lead's outcome once. Returns the stored lead and whether this call won."""
        now = utc_now()
        with self.database.engine.begin() as conn:
            result = conn.execute(
                update(self._leads)
                .where(
                    self._leads.c.id == lead_id,
                    self._leads.c.campaign_id == campaign_id,
                    self._leads.c.status.in_(_OPEN_LEAD_VALUES),
                )
                .values(
                    status=LeadStatus.completed.value,
                    outcome=outcome.value,
                    reported_at_utc=reported_at_utc,
                    meeting_details_json=_dump_json(meeting_details),
                    site_visit_details_json=_dump_json(site_visit_details),
                    updated_at_utc=now,
                )
            )
            row = conn.execute(
                select(self._leads).where(
                    self._leads.c.id == lead_id,
                    self._leads.c.campaign_id == campaign_id,
                )
            ).first()
        if not row:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        lead = self._row_to_lead(row)
        if result.rowcount == 0 and lead.status == LeadStatus.validation_error:
            raise StoreConflictError(f"lead {lead_id} failed validation and was never dispatched")
        return lead, result.rowcount == 1

    def count_unfinished_leads(self, campaign_id: str) -> int:
        with self.database.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(self._leads)
                .where(
                    self._leads.c.campaign_id == campaign_id,
                    self._leads.c.status.in_(_UNFINISHED_LEAD_VALUES),
                )
            ).scalar_one()

    def lead_counts(self, campaign_ids: list[str]) -> dict[str, LeadCounts]:
        counts = {campaign_id: LeadCounts() for campaign_id in campaign_ids}
        if not campaign_ids:
            return counts
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(self._leads.c.campaign_id, self._leads.c.status, func.count())
                .where(self._leads.c.campaign_id.in_(campaign_ids))
                .group_by(self._leads.c.campaign_id, self._leads.c.status)
            ).all()
        for campaign_id, status, count in rows:
            bucket = counts[campaign_id]
            bucket.total += count
            if status == LeadStatus.completed.value:
                bucket.completed += count
            elif status == LeadStatus.validation_error.value:
                bucket.validation_errors += count
            else:
                bucket.pending += count
        return counts

    def lead_breakdown(self, campaign_id: str) -> tuple[dict[str, int], dict[str, int]]:
        with self.database.engine.connect() as conn:
            status_rows = conn.execute(
                select(self._leads.c.status, func.count())
                .where(self._leads.c.campaign_id == campaign_id)
                .group_by(self._leads.c.status)
            ).all()
            outcome_rows = conn.execute(
                select(self._leads.c.outcome, func.count())
                .where(
                    self._leads.c.campaign_id == campaign_id,
                    self._leads.c.outcome.is_not(None),
                )
                .group_by(self._leads.c.outcome)
            ).all()
        by_status = {status.value: 0 for status in LeadStatus}
        by_status.update({status: count for status, count in status_rows})
        by_outcome = {outcome.value: 0 for outcome in LeadOutcome}
        by_outcome.update({outcome: count for outcome, count in outcome_rows})
        return by_status, by_outcome

    # -- admission jobs ------------------------------------------------------

    def create_admission_job(
        self,
        *,
        campaign_id: str,
        org_id: str,
        max_attempts: int,
        run_at_utc: datetime,
    ) -> AdmissionJobRecord:
        now = utc_now()
        record = AdmissionJobRecord(
            id=new_id("job"),
            campaign_id=campaign_id,
            org_id=org_id,
            status=AdmissionJobStatus.pending,
            attempts=0,
            max_attempts=max_attempts,
            next_run_at_utc=run_at_utc,
            created_at_utc=now,
            updated_at_utc=now,
        )
        with self.database.engine.begin() as conn:
            conn.execute(self._jobs.insert().values(**self._job_values(record)))
        return record

    def get_admission_job(self, job_id: str) -> AdmissionJobRecord:
        with self.database.engine.connect() as conn:
            row = conn.execute(select(self._jobs).where(self._jobs.c.id == job_id)).first()
        if not row:
            raise StoreNotFoundError(f"admission job not found: {job_id}")
        return self._row_to_job(row)

    def list_admission_jobs(self, *, campaign_id: Optional[str] = None) -> list[AdmissionJobRecord]:
        query = select(self._jobs).order_by(self._jobs.c.created_at_utc.asc())
        if campaign_id is not None:
            query = query.where(self._jobs.c.campaign_id == campaign_id)
        with self.database.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [self._row_to_job(row) for row in rows]

    def claim_due_admission_jobs(
        self,
        *,
        now: datetime,
        lease_seconds: int,
        limit: int = 20,
    ) -> list[AdmissionJobRecord]:
        lease_expired = now - timedelta(seconds=lease_seconds)
        due = or_(
            and_(
                self._jobs.c.status == AdmissionJobStatus.pending.value,
                self._jobs.c.next_run_at_utc <= now,
            ),
            and_(
                self._jobs.c.status == AdmissionJobStatus.running.value,
                self._jobs.c.claimed_at_utc < lease_expired,
            ),
        )
        claimed: list[AdmissionJobRecord] = []
        with self.database.engine.begin() as conn:
            rows = conn.execute(
                select(self._jobs)
                .where(due)
                .order_by(self._jobs.c.next_run_at_utc.asc())
                .limit(max(1, limit))
            ).all()
            for row in rows:
                result = conn.execute(
                    update(self._jobs)
                    .where(
                        self._jobs.c.id == row.id,
                        self._jobs.c.status == row.status,
                        self._jobs.c.updated_at_utc == row.updated_at_utc,
                    )
                    .values(
                        status=AdmissionJobStatus.running.value,
                        claimed_at_utc=now,
                        updated_at_utc=now,
                    )
                )
                if result.rowcount == 1:
                    claimed.append(
                        self._row_to_job(row).model_copy(
                            update={
                                "status": AdmissionJobStatus.running,
                                "claimed_at_utc": now,
                                "updated_at_utc": now,
                            }
                        )
                    )
        return claimed

    def reschedule_admission_job(
        self,
        job_id: str,
        *,
        attempts: int,
        next_run_at_utc: datetime,
        error: str,
    ) -> AdmissionJobRecord:
        return self._update_job(
            job_id,
            status=AdmissionJobStatus.pending.value,
            attempts=attempts,
            next_run_at_utc=next_run_at_utc,
            claimed_at_utc=None,
            last_error=error,
        )

    def finish_admission_job(
        self,
        job_id: str,
        *,
        status: AdmissionJobStatus,
        attempts: int,
        result: str,
        error: Optional[str] = None,
    ) -> AdmissionJobRecord:
        now = utc_now()
        return self._update_job(
            job_id,
            status=status.value,
            attempts=attempts,
            result=result,
            last_error=error,
            claimed_at_utc=None,
            finished_at_utc=now,
        )

    def purge_finished_admission_jobs(
        self,
        *,
        completed_before: datetime,
        failed_before: datetime,
    ) -> int:
        with self.database.engine.begin() as conn:
            result = conn.execute(
                self._jobs.delete().where(
                    or_(
                        and_(
                            self._jobs.c.status == AdmissionJobStatus.completed.value,
                            self._jobs.c.finished_at_utc < completed_before,
                        ),
                        and_(
                            self._jobs.c.status == AdmissionJobStatus.failed.value,
                            self._jobs.c.finished_at_utc < failed_before,
                        ),
                    )
                )
            )
        return result.rowcount

    # -- helpers -------------------------------------------------------------

    def _update_job(self, job_id: str, **values: Any) -> AdmissionJobRecord:
        values["updated_at_utc"] = utc_now()
        with self.database.engine.begin() as conn:
            result = conn.execute(
                update(self._jobs).where(self._jobs.c.id == job_id).values(**values)
            )
            if result.rowcount != 1:
                raise StoreNotFoundError(f"admission job not found: {job_id}")
            row = conn.execute(select(self._jobs).where(self._jobs.c.id == job_id)).one()
        return self._row_to_job(row)

    def _other_active_exists(self, org_id: str, campaign_id: str):
        others = self._campaigns.alias("active_campaigns")
        return (
            select(others.c.id)
            .where(
                others.c.org_id == org_id,
                others.c.id != campaign_id,
                others.c.status.in_(_ACTIVE_VALUES),
            )
            .exists()
        )

    def _ensure_organization(self, conn: Connection, org_id: str, now: datetime) -> None:
        table = self.database.organizations
        if self.database.dialect_name == "postgresql":
            statement = postgresql_insert(table).values(id=org_id, created_at_utc=now)
        else:
            statement = sqlite_insert(table).values(id=org_id, created_at_utc=now)
        conn.execute(statement.on_conflict_do_nothing(index_elements=["id"]))

    def _lock_organization(self, conn: Connection, org_id: str) -> None:
        # Row lock on PostgreSQL; SQLite already holds the database write lock.
        table = self.database.organizations
        conn.execute(select(table.c.id).where(table.c.id == org_id).with_for_update()).first()

    def _decrypt_phone(self, lead_id: str, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self.cipher.decrypt(ciphertext)
        except PhoneCipherError:
            logger.warning("phone_decrypt_failed lead_id=%s", lead_id)
            return None

    @staticmethod
    def _job_values(record: AdmissionJobRecord) -> dict[str, Any]:
        values = record.model_dump()
        values["status"] = record.status.value
        return values

    @staticmethod
    def _row_to_campaign(row: Row) -> CampaignRecord:
        return CampaignRecord(
            id=row.id,
            org_id=row.org_id,
            agent_reference=row.agent_reference,
            status=CampaignStatus(row.status),
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
            completed_at_utc=row.completed_at_utc,
        )

    def _row_to_lead(self, row: Row) -> LeadRecord:
        meeting = _load_json(row.meeting_details_json)
        site_visit = _load_json(row.site_visit_details_json)
        return LeadRecord(
            id=row.id,
            campaign_id=row.campaign_id,
            name=row.name,
            phone=self._decrypt_phone(row.id, row.phone_encrypted),
            custom_fields=_load_json(row.custom_fields_json),
            status=LeadStatus(row.status),
            outcome=LeadOutcome(row.outcome) if row.outcome else None,
            meeting_details=AppointmentDetails.model_validate(meeting) if meeting else None,
            site_visit_details=(
                AppointmentDetails.model_validate(site_visit) if site_visit else None
            ),
            error_type=row.error_type,
            tags=_load_json(row.tags_json) or [],
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
            reported_at_utc=row.reported_at_utc,
        )

    @staticmethod
    def _row_to_job(row: Row) -> AdmissionJobRecord:
        return AdmissionJobRecord(
            id=row.id,
            campaign_id=row.campaign_id,
            org_id=row.org_id,
            status=AdmissionJobStatus(row.status),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            next_run_at_utc=row.next_run_at_utc,
            claimed_at_utc=row.claimed_at_utc,
            result=row.result,
            last_error=row.last_error,
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
            finished_at_utc=row.finished_at_utc,
        )
