"""
Call session state machine.

    initiated -> connecting -> ringing -> connected -> {completed | failed | no_answer}

Transitions only move forward. A session in a terminal status is frozen:
its timestamps and derived durations are stamped exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from dialler.calls.models import CallSession, CallStatus
from dialler.shared.clock import ensure_utc, seconds_between

_RANK: dict[CallStatus, int] = {
    CallStatus.INITIATED: 0,
    CallStatus.CONNECTING: 1,
    CallStatus.RINGING: 2,
    CallStatus.CONNECTED: 3,
    CallStatus.COMPLETED: 4,
    CallStatus.FAILED: 4,
    CallStatus.NO_ANSWER: 4,
}

TWILIO_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.CONNECTING,
    "initiated": CallStatus.CONNECTING,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.CONNECTED,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.NO_ANSWER,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
    "canceled": CallStatus.FAILED,
}


def map_twilio_status(raw_status: str) -> CallStatus:
    """Map a Twilio ``CallStatus`` value; anything unrecognised is a failure."""
    return TWILIO_STATUS_MAP.get((raw_status or "").strip().lower(), CallStatus.FAILED)


class TransitionResult(str, Enum):
    """What happened when a transition was requested."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    TERMINAL = "terminal"
    BACKWARDS = "backwards"


@dataclass(frozen=True)
class Transition:
    result: TransitionResult
    previous: CallStatus
    current: CallStatus

    @property
    def applied(self) -> bool:
        return self.result is TransitionResult.APPLIED

    @property
    def entered_terminal(self) -> bool:
        return self.applied and self.current.is_terminal


def check_transition(current: CallStatus, target: CallStatus) -> TransitionResult:
    """Classify a requested transition without applying it."""
    if current.is_terminal:
        return TransitionResult.TERMINAL
    if current == target:
        return TransitionResult.UNCHANGED
    if _RANK[target] <= _RANK[current]:
        return TransitionResult.BACKWARDS
    return TransitionResult.APPLIED


def apply_transition(session: CallSession, target: CallStatus, at: datetime) -> Transition:
    """Move a session to ``target`` and stamp timing fields.

    ``connected_at`` is set on the first entry into ``connected`` and never
    overwritten. Durations are computed from the stamped ``ended_at``.

    Args:
        session: Session to mutate in place.
        target: Requested status.
        at: Event time.

    Returns:
        The classified transition; the session is only modified when applied.
    """
    previous = session.status
    result = check_transition(previous, target)
    if result is not TransitionResult.APPLIED:
        return Transition(result=result, previous=previous, current=previous)

    at = ensure_utc(at)  # type: ignore[assignment]
    session.status = target

    if target == CallStatus.CONNECTED and session.connected_at is None:
        session.connected_at = at

    if target.is_terminal:
        session.ended_at = at
        apply_durations(session)

    return Transition(result=result, previous=previous, current=target)


def apply_durations(session: CallSession) -> None:
    """Derive duration and talk time from the stamped timestamps."""
    if session.ended_at is None:
        return
    session.duration_seconds = seconds_between(session.started_at, session.ended_at)
    if session.connected_at is not None:
        session.talk_time_seconds = seconds_between(session.connected_at, session.ended_at)
    else:
        session.talk_time_seconds = None
