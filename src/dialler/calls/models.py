"""
SQLAlchemy models for the dialler: scores, queue, sessions, outcomes,
callbacks and agent sessions.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dialler.shared.clock import utcnow
from dialler.shared.database import Base


class OutcomeType(str, Enum):
    """Disposition recorded by an agent for a call attempt."""

    CONTACTED = "contacted"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    WRONG_NUMBER = "wrong_number"
    NOT_INTERESTED = "not_interested"
    CALLBACK_REQUESTED = "callback_requested"
    LEFT_VOICEMAIL = "left_voicemail"
    FAILED = "failed"


class DocumentType(str, Enum):
    """Document tags an agent can request from a customer."""

    ID_DOCUMENT = "ID_DOCUMENT"
    BANK_STATEMENTS = "BANK_STATEMENTS"
    CREDIT_STATEMENTS = "CREDIT_STATEMENTS"
    PROOF_OF_ADDRESS = "PROOF_OF_ADDRESS"
    INCOME_VERIFICATION = "INCOME_VERIFICATION"
    VEHICLE_DOCUMENTS = "VEHICLE_DOCUMENTS"
    LOAN_AGREEMENT = "LOAN_AGREEMENT"


class QueueType(str, Enum):
    """Kind of outbound work item."""

    PRIORITY_CALL = "priority_call"
    CALLBACK = "callback"
    FOLLOW_UP = "follow_up"


class QueueStatus(str, Enum):
    """Queue entry lifecycle."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CallStatus(str, Enum):
    """Call session state machine values."""

    INITIATED = "initiated"
    CONNECTING = "connecting"
    RINGING = "ringing"
    CONNECTED = "connected"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset(
    {CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.NO_ANSWER}
)
ACTIVE_CALL_STATUSES = frozenset(
    {CallStatus.INITIATED, CallStatus.CONNECTING, CallStatus.RINGING, CallStatus.CONNECTED}
)


class CallDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class CallbackStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AgentStatus(str, Enum):
    AVAILABLE = "available"
    ON_CALL = "on_call"
    BREAK = "break"
    OFFLINE = "offline"


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    # Store the value ("no_answer"), not the member name ("NO_ANSWER").
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class UserCallScore(Base):
    """Per-user priority record. Lower ``current_score`` is called sooner."""

    __tablename__ = "user_call_scores"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    current_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_call_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    last_call_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_outcome: Mapped[OutcomeType | None] = mapped_column(
        _enum(OutcomeType, "outcome_type"),
        nullable=True,
    )
    base_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outcome_penalty_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_penalty_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<UserCallScore(user_id={self.user_id}, score={self.current_score})>"


class CallQueueEntry(Base):
    """A materialised, assignable unit of outbound-call work."""

    __tablename__ = "call_queue"
    __table_args__ = (
        Index("ix_call_queue_status_type", "status", "queue_type"),
        Index("ix_call_queue_user_status", "user_id", "status"),
        # At most one assigned entry per user, even across concurrent claims.
        Index(
            "uq_call_queue_user_assigned",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'assigned'"),
            sqlite_where=text("status = 'assigned'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    claim_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    queue_type: Mapped[QueueType] = mapped_column(_enum(QueueType, "queue_type"), nullable=False)
    priority_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[QueueStatus] = mapped_column(
        _enum(QueueStatus, "queue_status"),
        nullable=False,
        default=QueueStatus.PENDING,
    )
    assigned_to_agent_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    callback_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("callbacks.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    preferred_agent_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    available_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<CallQueueEntry(id={self.id}, user_id={self.user_id}, "
            f"type={self.queue_type}, status={self.status})>"
        )


class CallSession(Base):
    """One row per call attempt."""

    __tablename__ = "call_sessions"
    __table_args__ = (Index("ix_call_sessions_agent_status", "agent_id", "status"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    agent_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    call_queue_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    twilio_call_sid: Mapped[str | None] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        index=True,
    )
    status: Mapped[CallStatus] = mapped_column(
        _enum(CallStatus, "call_status"),
        nullable=False,
        default=CallStatus.INITIATED,
    )
    direction: Mapped[CallDirection] = mapped_column(
        _enum(CallDirection, "call_direction"),
        nullable=False,
        default=CallDirection.OUTBOUND,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    talk_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_claims_context: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    provider_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    outcomes: Mapped[list["CallOutcome"]] = relationship(
        "CallOutcome",
        back_populates="call_session",
        lazy="selectin",
        order_by="CallOutcome.created_at",
    )

    def __repr__(self) -> str:
        return f"<CallSession(id={self.id}, user_id={self.user_id}, status={self.status})>"


class CallOutcome(Base):
    """Append-only disposition for a call session."""

    __tablename__ = "call_outcomes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    call_session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    outcome_type: Mapped[OutcomeType] = mapped_column(
        _enum(OutcomeType, "outcome_type"),
        nullable=False,
        index=True,
    )
    outcome_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    next_call_delay_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    score_adjustment: Mapped[int] = mapped_column(Integer, nullable=False)
    magic_link_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sms_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    documents_requested: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    recorded_by_agent_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    call_session: Mapped[CallSession] = relationship("CallSession", back_populates="outcomes")

    def __repr__(self) -> str:
        return f"<CallOutcome(id={self.id}, type={self.outcome_type})>"


class Callback(Base):
    """A user-requested, time-scheduled future call commitment."""

    __tablename__ = "callbacks"
    __table_args__ = (Index("ix_callbacks_status_scheduled", "status", "scheduled_for"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    callback_reason: Mapped[str] = mapped_column(String(500), nullable=False)
    preferred_agent_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    original_call_session_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[CallbackStatus] = mapped_column(
        _enum(CallbackStatus, "callback_status"),
        nullable=False,
        default=CallbackStatus.PENDING,
    )
    completed_call_session_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Callback(id={self.id}, user_id={self.user_id}, status={self.status})>"


class AgentSession(Base):
    """Availability and counters for one agent."""

    __tablename__ = "agent_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    agent_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    status: Mapped[AgentStatus] = mapped_column(
        _enum(AgentStatus, "agent_status"),
        nullable=False,
        default=AgentStatus.OFFLINE,
    )
    current_call_session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    calls_completed_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_talk_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<AgentSession(agent_id={self.agent_id}, status={self.status})>"
