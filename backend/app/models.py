from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CampaignStatus(str, Enum):
    queued = "QUEUED"
    running = "RUNNING"
    waiting_for_callbacks = "WAITING_FOR_CALLBACKS"
    completed = "COMPLETED"
    failed = "FAILED"


class LeadStatus(str, Enum):
    pending = "PENDING"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    validation_error = "VALIDATION_ERROR"


class LeadOutcome(str, Enum):
    qualified = "QUALIFIED"
    meeting_scheduled = "MEETING_SCHEDULED"
    site_visit_scheduled = "SITE_VISIT_SCHEDULED"
    no_answer = "NO_ANSWER"
    failed = "FAILED"
    validation_error = "VALIDATION_ERROR"


class AdmissionJobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class AppointmentDetails(BaseModel):
    datetime: Optional[str] = Field(default=None, max_length=64)
    location: Optional[str] = Field(default=None, max_length=250)


class CampaignRecord(BaseModel):
    id: str
    org_id: str
    agent_reference: str
    status: CampaignStatus
    created_at_utc: datetime
    updated_at_utc: datetime
    completed_at_utc: Optional[datetime] = None


class LeadRecord(BaseModel):
    id: str
    campaign_id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None
    status: LeadStatus
    outcome: Optional[LeadOutcome] = None
    meeting_details: Optional[AppointmentDetails] = None
    site_visit_details: Optional[AppointmentDetails] = None
    error_type: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at_utc: datetime
    updated_at_utc: datetime
    reported_at_utc: Optional[datetime] = None


class DispatchLead(BaseModel):
    lead_id: str
    name: str = ""
    phone: str
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class AdmissionJobRecord(BaseModel):
    id: str
    campaign_id: str
    org_id: str
    status: AdmissionJobStatus
    attempts: int
    max_attempts: int
    next_run_at_utc: datetime
    claimed_at_utc: Optional[datetime] = None
    result: Optional[str] = None
    last_error: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime
    finished_at_utc: Optional[datetime] = None


class LeadInput(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    phone: str = Field(min_length=4, max_length=32)
    custom_fields: Optional[dict[str, Any]] = None


class LeadValidationIssue(BaseModel):
    row: Optional[int] = Field(default=None, ge=1)
    error: str = Field(min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)


class CampaignCreateRequest(BaseModel):
    agent_reference: str = Field(min_length=1, max_length=200)
    leads: list[LeadInput] = Field(min_length=1)
    validation_errors: list[LeadValidationIssue] = Field(default_factory=list)


class CampaignCreateResponse(BaseModel):
    campaign_id: str
    status: CampaignStatus
    valid_leads: int
    errors: int
    validation_errors: list[LeadValidationIssue]


class LeadCounts(BaseModel):
    total: int = 0
    pending: int = 0
    completed: int = 0
    validation_errors: int = 0


class CampaignItem(BaseModel):
    campaign_id: str
    org_id: str
    agent_reference: str
    status: CampaignStatus
    created_at_utc: datetime
    completed_at_utc: Optional[datetime]
    lead_counts: LeadCounts


class LeadItem(BaseModel):
    lead_id: str
    campaign_id: str
    name: Optional[str]
    phone: Optional[str]
    custom_fields: Optional[dict[str, Any]]
    status: LeadStatus
    outcome: Optional[LeadOutcome]
    meeting_details: Optional[AppointmentDetails]
    site_visit_details: Optional[AppointmentDetails]
    error_type: Optional[str]
    tags: list[str]
    created_at_utc: datetime
    reported_at_utc: Optional[datetime]


class CampaignDetailResponse(CampaignItem):
    requires_intervention: bool
    leads: list[LeadItem]


class CampaignProgressResponse(BaseModel):
    campaign_id: str
    status: CampaignStatus
    total_contacts: int
    completed_contacts: int
    pending_contacts: int
    in_progress_contacts: int
    validation_error_contacts: int
    outcome_counts: dict[str, int]
    answer_rate: float
    qualification_rate: float
    failure_rate: float


class CallbackRequest(BaseModel):
    campaign_id: str = Field(min_length=1, max_length=64)
    lead_id: str = Field(min_length=1, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=32)
    outcome: str = Field(max_length=64)
    timestamp: datetime
    meeting_details: Optional[AppointmentDetails] = None
    site_visit_details: Optional[AppointmentDetails] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class CallbackResponse(BaseModel):
    status: str
    duplicate: bool
    lead_id: str
    outcome: Optional[LeadOutcome] = None
    detail: Optional[str] = None
