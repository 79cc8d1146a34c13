from __future__ import annotations

from backend.app.models import CampaignStatus, LeadStatus

ACTIVE_CAMPAIGN_STATUSES = (
    CampaignStatus.running,
    CampaignStatus.waiting_for_callbacks,
)

ALLOWED_TRANSITIONS = {
    CampaignStatus.queued: {CampaignStatus.running},
    CampaignStatus.running: {
        CampaignStatus.waiting_for_callbacks,
        CampaignStatus.failed,
    },
    CampaignStatus.waiting_for_callbacks: {
        CampaignStatus.completed,
        CampaignStatus.failed,
    },
    CampaignStatus.completed: set(),
    CampaignStatus.failed: set(),
}

# Leads that can still receive an outcome.
OPEN_LEAD_STATUSES = (LeadStatus.pending, LeadStatus.in_progress)

# Leads that hold a campaign open. Validation errors are never dispatched.
UNFINISHED_LEAD_STATUSES = OPEN_LEAD_STATUSES


def can_transition(from_status: CampaignStatus, to_status: CampaignStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]
