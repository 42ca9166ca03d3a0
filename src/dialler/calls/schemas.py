"""
Pydantic schemas for the dialler API.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dialler.calls.models import (
    AgentStatus,
    CallbackStatus,
    CallDirection,
    CallStatus,
    DocumentType,
    OutcomeType,
    QueueStatus,
    QueueType,
)

MAX_NEXT_CALL_DELAY_HOURS = 168


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# User context (external user/claims service)
# ---------------------------------------------------------------------------


class ClaimRequirement(BaseModel):
    """Outstanding requirement on a claim."""

    id: str
    type: str
    status: str
    reason: str | None = None


class UserClaim(BaseModel):
    """Claim summary shown to the agent."""

    id: int
    type: str
    status: str
    lender: str | None = None
    value: float | None = None
    requirements: list[ClaimRequirement] = Field(default_factory=list)


class CallScoreSummary(BaseModel):
    current_score: int
    total_attempts: int
    last_outcome: OutcomeType | None = None
    next_call_after: datetime | None = None


class UserCallContext(BaseModel):
    """Everything an agent needs on screen for one customer."""

    user_id: int
    first_name: str
    last_name: str
    email: str | None = None
    phone_number: str | None = None
    claims: list[UserClaim] = Field(default_factory=list)
    call_score: CallScoreSummary | None = None


# ---------------------------------------------------------------------------
# Call sessions
# ---------------------------------------------------------------------------


class InitiateCallRequest(BaseModel):
    user_id: int = Field(..., gt=0, description="Customer to call")
    queue_id: UUID | None = Field(default=None, description="Queue entry the call came from")
    phone_number: str | None = Field(default=None, max_length=50)
    direction: CallDirection = CallDirection.OUTBOUND


class UpdateCallStatusRequest(BaseModel):
    status: CallStatus | None = None
    twilio_call_sid: str | None = Field(default=None, max_length=64)
    failure_reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def require_change(self) -> "UpdateCallStatusRequest":
        if self.status is None and self.twilio_call_sid is None:
            raise ValueError("status or twilio_call_sid is required")
        return self


class CallOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    call_session_id: UUID
    outcome_type: OutcomeType
    outcome_notes: str
    next_call_delay_hours: int
    score_adjustment: int
    magic_link_sent: bool
    sms_sent: bool
    documents_requested: list[DocumentType] | None = None
    recorded_by_agent_id: int
    is_final: bool
    created_at: datetime


class CallSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: int
    agent_id: int
    call_queue_id: UUID | None
    twilio_call_sid: str | None
    status: CallStatus
    direction: CallDirection
    started_at: datetime
    connected_at: datetime | None
    ended_at: datetime | None
    duration_seconds: int | None
    talk_time_seconds: int | None
    user_claims_context: list[dict[str, Any]] | None = None
    provider_status: str | None = None
    recording_url: str | None = None
    failure_reason: str | None = None
    created_at: datetime


class CallSessionDetail(CallSessionResponse):
    outcomes: list[CallOutcomeResponse] = Field(default_factory=list)
    user_context: UserCallContext | None = None


class InitiateCallResponse(BaseModel):
    call_session: CallSessionResponse
    user_context: UserCallContext


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class RecordOutcomeRequest(BaseModel):
    """Agent disposition for a call."""

    outcome_type: OutcomeType
    outcome_notes: str | None = Field(default=None, max_length=5000)
    next_call_delay_hours: int | None = Field(
        default=None,
        ge=0,
        le=MAX_NEXT_CALL_DELAY_HOURS,
        description="Override the default retry delay (max one week)",
    )
    magic_link_sent: bool = False
    sms_sent: bool = False
    documents_requested: list[DocumentType] | None = None
    callback_date_time: datetime | None = None
    callback_reason: str | None = Field(default=None, max_length=500)
    score_adjustment: int | None = Field(default=None, ge=-1000, le=1000)

    @field_validator("callback_date_time")
    @classmethod
    def normalise_callback_time(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("documents_requested")
    @classmethod
    def dedupe_documents(cls, v: list[DocumentType] | None) -> list[DocumentType] | None:
        if v is None:
            return None
        return list(dict.fromkeys(v))


# ---------------------------------------------------------------------------
# Telephony webhook
# ---------------------------------------------------------------------------


class TwilioWebhookPayload(BaseModel):
    """Twilio status callback form fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_sid: str = Field(..., alias="CallSid", min_length=1)
    call_status: str = Field(..., alias="CallStatus")
    direction: str | None = Field(default=None, alias="Direction")
    from_number: str | None = Field(default=None, alias="From")
    to_number: str | None = Field(default=None, alias="To")
    duration: str | None = Field(default=None, alias="Duration")
    call_duration: str | None = Field(default=None, alias="CallDuration")
    recording_url: str | None = Field(default=None, alias="RecordingUrl")
    digits: str | None = Field(default=None, alias="Digits")


# ---------------------------------------------------------------------------
# History / analytics
# ---------------------------------------------------------------------------


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PaginationMeta":
        return cls(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit)


class CallHistoryFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    agent_id: int | None = None
    user_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    outcome: OutcomeType | None = None
    status: CallStatus | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalise_dates(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class CallHistoryItem(CallSessionResponse):
    latest_outcome: CallOutcomeResponse | None = None


class CallHistoryResponse(BaseModel):
    calls: list[CallHistoryItem]
    meta: PaginationMeta


class CallAnalyticsFilters(BaseModel):
    agent_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    outcome_type: OutcomeType | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalise_dates(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class CallAnalytics(BaseModel):
    total_calls: int
    completed_calls: int
    successful_contacts: int
    no_answers: int
    callbacks: int
    not_interested: int
    outcome_counts: dict[str, int]
    avg_duration_minutes: float
    avg_talk_time_minutes: float
    contact_rate: int


class TodaysSummary(BaseModel):
    calls_today: int
    contacts_today: int
    avg_talk_time_minutes: float
    contact_rate: int


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class CallbackFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    agent_id: int | None = None
    status: CallbackStatus | None = None
    scheduled_from: datetime | None = None
    scheduled_to: datetime | None = None

    @field_validator("scheduled_from", "scheduled_to")
    @classmethod
    def normalise_dates(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class CallbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: int
    scheduled_for: datetime
    callback_reason: str
    preferred_agent_id: int | None
    original_call_session_id: UUID | None
    status: CallbackStatus
    completed_call_session_id: UUID | None
    created_at: datetime


class CallbackListResponse(BaseModel):
    callbacks: list[CallbackResponse]
    meta: PaginationMeta


class CallbackRescheduleRequest(BaseModel):
    scheduled_for: datetime
    callback_reason: str | None = Field(default=None, max_length=500)

    @field_validator("scheduled_for")
    @classmethod
    def normalise_time(cls, v: datetime) -> datetime:
        return _as_utc(v)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class QueueEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: int
    claim_id: int | None
    queue_type: QueueType
    priority_score: int
    status: QueueStatus
    assigned_to_agent_id: int | None
    assigned_at: datetime | None
    callback_id: UUID | None
    preferred_agent_id: int | None
    available_from: datetime | None
    reason: str | None
    created_at: datetime


class QueueListResponse(BaseModel):
    entries: list[QueueEntryResponse]
    meta: PaginationMeta


class MaterializeResponse(BaseModel):
    priority_calls_created: int
    callbacks_created: int


class FollowUpRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    claim_id: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)
    available_from: datetime | None = None

    @field_validator("available_from")
    @classmethod
    def normalise_time(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class SeedLeadRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    base_score: int = Field(default=0, ge=0, le=10_000)


class UserCallScoreResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    current_score: int
    next_call_after: datetime | None
    last_call_at: datetime | None
    total_attempts: int
    successful_calls: int
    last_outcome: OutcomeType | None
    base_score: int
    outcome_penalty_score: int
    time_penalty_score: int


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentStatusUpdate(BaseModel):
    status: AgentStatus


class AgentSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    agent_id: int
    status: AgentStatus
    current_call_session_id: UUID | None
    calls_completed_today: int
    total_talk_time_seconds: int
    last_activity: datetime
