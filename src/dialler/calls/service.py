"""
Call service: call session lifecycle and the outcome recorder.

Every public method runs inside the caller's transaction; any raised error
leaves the store untouched once the caller rolls back.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from dialler.calls.agents import AgentSessionRepository
from dialler.calls.callbacks import CallbackScheduler
from dialler.calls.models import (
    CallDirection,
    CallOutcome,
    CallSession,
    CallStatus,
    OutcomeType,
)
from dialler.calls.queue import QueueBuilder
from dialler.calls.repository import CallSessionRepository
from dialler.calls.schemas import (
    CallAnalytics,
    CallAnalyticsFilters,
    CallHistoryFilters,
    CallHistoryItem,
    CallHistoryResponse,
    CallOutcomeResponse,
    CallScoreSummary,
    CallSessionDetail,
    CallSessionResponse,
    PaginationMeta,
    RecordOutcomeRequest,
    TodaysSummary,
    TwilioWebhookPayload,
    UpdateCallStatusRequest,
    UserCallContext,
)
from dialler.calls.scoring import ScoringEngine, resolve
from dialler.calls.state_machine import (
    TransitionResult,
    apply_transition,
    map_twilio_status,
)
from dialler.calls.user_context import UserContextProvider
from dialler.config import Settings, get_settings
from dialler.shared.clock import Clock, utcnow
from dialler.shared.exceptions import (
    ConflictError,
    DependencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from dialler.shared.logging import get_logger

logger = get_logger(__name__)

STALE_CALL_STATUSES = (CallStatus.INITIATED, CallStatus.CONNECTING)
STALE_CALL_NOTE = "Call expired before the telephony provider reported progress"


def _minutes(seconds: float | None) -> float:
    if not seconds:
        return 0.0
    return round(seconds / 60, 2)


class CallService:
    """Orchestrates call sessions, outcomes, scoring and callbacks."""

    def __init__(
        self,
        session: AsyncSession,
        user_context_provider: UserContextProvider,
        clock: Clock = utcnow,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            session: Async database session (the caller owns the transaction).
            user_context_provider: Source of customer and claim context.
            clock: Source of "now".
            settings: Optional settings override.
        """
        self._session = session
        self._users = user_context_provider
        self._clock = clock
        self._settings = settings or get_settings()

        self._calls = CallSessionRepository(session)
        self._scoring = ScoringEngine(session, clock=clock)
        self._queue = QueueBuilder(
            session,
            clock=clock,
            affinity_grace_minutes=self._settings.callback_affinity_grace_minutes,
        )
        self._callbacks = CallbackScheduler(session, clock=clock)
        self._agents = AgentSessionRepository(session, clock=clock)

    # ------------------------------------------------------------------
    # User context
    # ------------------------------------------------------------------

    async def get_user_context(self, user_id: int) -> UserCallContext:
        """Fetch the customer context and merge in the local score summary."""
        context = await self._users.get_user_context(user_id)
        score = await self._scoring.get(user_id)
        if score is None:
            return context
        return context.model_copy(
            update={
                "call_score": CallScoreSummary(
                    current_score=score.current_score,
                    total_attempts=score.total_attempts,
                    last_outcome=score.last_outcome,
                    next_call_after=score.next_call_after,
                )
            }
        )

    async def _try_user_context(self, user_id: int) -> UserCallContext | None:
        # Read paths degrade to "no context" rather than failing the request.
        try:
            return await self.get_user_context(user_id)
        except (DependencyError, NotFoundError) as e:
            logger.warning(
                "User context unavailable for read",
                extra={"user_id": user_id, "error": str(e)},
            )
            return None

    # ------------------------------------------------------------------
    # Call lifecycle
    # ------------------------------------------------------------------

    async def initiate_call(
        self,
        user_id: int,
        agent_id: int,
        queue_id: UUID | None = None,
        direction: CallDirection = CallDirection.OUTBOUND,
        phone_number: str | None = None,
    ) -> tuple[CallSession, UserCallContext]:
        """Start a call for an agent.

        Snapshots the customer's claims onto a new session, claims the queue
        entry if one is given and flips the agent to ``on_call``.

        Raises:
            NotFoundError: Unknown user or queue entry.
            ValidationError: Queue entry belongs to another user.
            ConflictError: Queue entry already taken, or agent unavailable.
            DependencyError: The user service is unavailable.
        """
        context = await self.get_user_context(user_id)

        if queue_id is not None:
            entry = await self._queue.assign(queue_id, agent_id)
            if entry.user_id != user_id:
                raise ValidationError(
                    message=f"Queue entry {queue_id} is for a different user",
                    details={"queue_user_id": entry.user_id, "user_id": user_id},
                )

        call_session = await self._calls.create(
            user_id=user_id,
            agent_id=agent_id,
            started_at=self._clock(),
            call_queue_id=queue_id,
            direction=direction,
            user_claims_context=[claim.model_dump(mode="json") for claim in context.claims],
        )
        await self._agents.mark_on_call(agent_id, call_session.id)

        logger.info(
            "Call initiated",
            extra={
                "call_session_id": str(call_session.id),
                "user_id": user_id,
                "agent_id": agent_id,
                "queue_id": str(queue_id) if queue_id else None,
                "direction": direction.value,
                "has_phone_number": phone_number is not None,
            },
        )
        return call_session, context

    async def _load_for_agent(self, session_id: UUID, agent_id: int, privileged: bool) -> CallSession:
        call_session = await self._calls.get_by_id(session_id, for_update=True)
        if call_session is None:
            raise NotFoundError(message=f"Call session not found: {session_id}")
        if not privileged and call_session.agent_id != agent_id:
            raise PermissionDeniedError(
                message="Call session belongs to another agent",
                details={"call_session_id": str(session_id)},
            )
        return call_session

    async def update_call_status(
        self,
        session_id: UUID,
        agent_id: int,
        request: UpdateCallStatusRequest,
        privileged: bool = False,
    ) -> CallSession:
        """Apply an agent-driven status change.

        Repeating the current status is a no-op. Moving backwards, or changing
        a session that has already ended, is a conflict.
        """
        call_session = await self._load_for_agent(session_id, agent_id, privileged)

        if request.twilio_call_sid is not None:
            if call_session.twilio_call_sid not in (None, request.twilio_call_sid):
                raise ConflictError(
                    message="Call session already has a different CallSid",
                    details={"twilio_call_sid": call_session.twilio_call_sid},
                )
            call_session.twilio_call_sid = request.twilio_call_sid

        if request.failure_reason is not None and not call_session.status.is_terminal:
            call_session.failure_reason = request.failure_reason

        if request.status is not None:
            transition = apply_transition(call_session, request.status, self._clock())
            if transition.result is TransitionResult.TERMINAL and request.status != transition.previous:
                raise ConflictError(
                    message=f"Call already ended with status {transition.previous.value}",
                    details={"status": transition.previous.value},
                )
            if transition.result is TransitionResult.BACKWARDS:
                raise ConflictError(
                    message=f"Cannot move call from {transition.previous.value} to {request.status.value}",
                    details={"status": transition.previous.value},
                )
            await self._session.flush()
            if transition.entered_terminal:
                await self._on_terminal(call_session)

        await self._session.flush()
        logger.info(
            "Call status updated",
            extra={
                "call_session_id": str(session_id),
                "agent_id": agent_id,
                "status": call_session.status.value,
            },
        )
        return call_session

    async def handle_twilio_webhook(self, payload: TwilioWebhookPayload) -> CallSession | None:
        """Apply a telephony status callback.

        Events for unknown calls, events after the call ended and
        out-of-order events are logged and dropped.

        Returns:
            The session, or None when the CallSid is unknown.
        """
        call_session = await self._calls.get_by_twilio_sid(payload.call_sid, for_update=True)
        if call_session is None:
            logger.warning(
                "Webhook for unknown CallSid dropped",
                extra={"call_sid": payload.call_sid, "call_status": payload.call_status},
            )
            return None

        if call_session.status.is_terminal:
            logger.info(
                "Webhook after call end dropped",
                extra={
                    "call_session_id": str(call_session.id),
                    "call_status": payload.call_status,
                    "status": call_session.status.value,
                },
            )
            return call_session

        call_session.provider_status = payload.call_status
        if payload.recording_url:
            call_session.recording_url = payload.recording_url

        target = map_twilio_status(payload.call_status)
        transition = apply_transition(call_session, target, self._clock())
        if target == CallStatus.FAILED and transition.applied and call_session.failure_reason is None:
            call_session.failure_reason = f"Provider status: {payload.call_status}"
        await self._session.flush()

        if transition.entered_terminal:
            await self._on_terminal(call_session)
        elif not transition.applied:
            logger.debug(
                "Webhook status ignored",
                extra={
                    "call_session_id": str(call_session.id),
                    "call_status": payload.call_status,
                    "result": transition.result.value,
                },
            )

        return call_session

    async def _on_terminal(self, call_session: CallSession) -> None:
        if call_session.call_queue_id is not None:
            entry = await self._queue.get(call_session.call_queue_id)
            if entry is not None and entry.callback_id is not None:
                await self._callbacks.complete(entry.callback_id, call_session.id)

        # The disposition may have been recorded while the call was live.
        if await self._calls.has_outcome(call_session.id):
            await self._agents.release(
                call_session.agent_id,
                call_session.id,
                call_session.talk_time_seconds,
            )

        logger.info(
            "Call ended",
            extra={
                "call_session_id": str(call_session.id),
                "agent_id": call_session.agent_id,
                "status": call_session.status.value,
                "duration_seconds": call_session.duration_seconds,
                "talk_time_seconds": call_session.talk_time_seconds,
            },
        )

    # ------------------------------------------------------------------
    # Outcome recorder
    # ------------------------------------------------------------------

    async def record_outcome(
        self,
        session_id: UUID,
        agent_id: int,
        request: RecordOutcomeRequest,
        privileged: bool = False,
    ) -> CallOutcome:
        """Record an agent's disposition for a call.

        Writes the outcome, rescores the user, schedules a requested callback,
        releases the agent if the call has ended and closes the queue entry.
        All of it happens in the caller's transaction, so a failure at any
        step leaves nothing behind.

        Args:
            session_id: Call session the outcome belongs to.
            agent_id: Recording agent.
            request: Validated disposition.
            privileged: Allow recording on another agent's session.

        Returns:
            The stored outcome.

        Raises:
            NotFoundError: Unknown session.
            PermissionDeniedError: Session belongs to another agent.
            ConflictError: A final outcome is already recorded.
        """
        call_session = await self._load_for_agent(session_id, agent_id, privileged)
        is_final = call_session.status.is_terminal
        if is_final and await self._calls.has_outcome(session_id, final_only=True):
            raise ConflictError(
                message="A final outcome is already recorded for this call",
                details={"call_session_id": str(session_id)},
            )

        rule = resolve(request.outcome_type, request.score_adjustment, request.next_call_delay_hours)
        outcome = await self._calls.add_outcome(
            CallOutcome(
                call_session_id=session_id,
                outcome_type=request.outcome_type,
                outcome_notes=request.outcome_notes or "",
                next_call_delay_hours=rule.delay_hours,
                score_adjustment=rule.score_adjustment,
                magic_link_sent=request.magic_link_sent,
                sms_sent=request.sms_sent,
                documents_requested=(
                    [doc.value for doc in request.documents_requested]
                    if request.documents_requested is not None
                    else None
                ),
                recorded_by_agent_id=agent_id,
                is_final=is_final,
                created_at=self._clock(),
            )
        )

        await self._scoring.adjust(
            call_session.user_id,
            request.outcome_type,
            explicit_adjustment=request.score_adjustment,
            explicit_delay_hours=request.next_call_delay_hours,
        )

        if request.outcome_type == OutcomeType.CALLBACK_REQUESTED and request.callback_date_time:
            await self._callbacks.create(
                user_id=call_session.user_id,
                scheduled_for=request.callback_date_time,
                original_call_session_id=session_id,
                preferred_agent_id=agent_id,
                callback_reason=request.callback_reason,
            )

        if is_final:
            await self._agents.release(
                call_session.agent_id,
                session_id,
                call_session.talk_time_seconds,
            )

        if call_session.call_queue_id is not None:
            await self._queue.complete(call_session.call_queue_id)
        await self._queue.cancel_stale_for_user(call_session.user_id, keep_entry_id=call_session.call_queue_id)

        logger.info(
            "Call outcome recorded",
            extra={
                "call_session_id": str(session_id),
                "agent_id": agent_id,
                "outcome_type": request.outcome_type.value,
                "is_final": is_final,
                "callback_requested": request.outcome_type == OutcomeType.CALLBACK_REQUESTED,
            },
        )
        return outcome

    async def expire_stale_sessions(self, now: datetime | None = None) -> int:
        """Fail sessions stuck before ringing and record a ``failed`` outcome.

        Returns:
            Number of sessions expired.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self._settings.stale_call_timeout_minutes)
        stale = await self._calls.get_stale(cutoff, STALE_CALL_STATUSES)

        expired = 0
        for call_session in stale:
            transition = apply_transition(call_session, CallStatus.FAILED, now)
            if not transition.applied:
                continue
            call_session.failure_reason = call_session.failure_reason or "Timed out"
            await self._session.flush()
            await self._on_terminal(call_session)

            if not await self._calls.has_outcome(call_session.id, final_only=True):
                await self.record_outcome(
                    call_session.id,
                    call_session.agent_id,
                    RecordOutcomeRequest(outcome_type=OutcomeType.FAILED, outcome_notes=STALE_CALL_NOTE),
                    privileged=True,
                )
            expired += 1

        if expired:
            logger.info("Stale calls expired", extra={"expired": expired, "cutoff": cutoff.isoformat()})
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _detail(self, call_session: CallSession) -> CallSessionDetail:
        detail = CallSessionDetail.model_validate(call_session)
        context = await self._try_user_context(call_session.user_id)
        return detail.model_copy(update={"user_context": context})

    async def get_current_call(self, agent_id: int) -> CallSessionDetail | None:
        """The agent's live call with customer context, if any."""
        call_session = await self._calls.get_current_for_agent(agent_id)
        if call_session is None:
            return None
        return await self._detail(call_session)

    async def get_call_session(
        self,
        session_id: UUID,
        agent_id: int,
        privileged: bool = False,
    ) -> CallSessionDetail:
        """One session with outcomes and customer context.

        Agents only see their own sessions; supervisors and admins see all.
        """
        call_session = await self._calls.get_by_id(session_id)
        if call_session is None:
            raise NotFoundError(message=f"Call session not found: {session_id}")
        if not privileged and call_session.agent_id != agent_id:
            raise PermissionDeniedError(message="Call session belongs to another agent")
        return await self._detail(call_session)

    async def get_call_history(
        self,
        filters: CallHistoryFilters,
        agent_id: int,
        privileged: bool = False,
    ) -> CallHistoryResponse:
        if not privileged:
            filters = filters.model_copy(update={"agent_id": agent_id})

        sessions, total = await self._calls.list_history(filters)
        calls = []
        for call_session in sessions:
            latest = call_session.outcomes[-1] if call_session.outcomes else None
            calls.append(
                CallHistoryItem(
                    **CallSessionResponse.model_validate(call_session).model_dump(),
                    latest_outcome=CallOutcomeResponse.model_validate(latest) if latest else None,
                )
            )
        return CallHistoryResponse(
            calls=calls,
            meta=PaginationMeta.build(filters.page, filters.limit, total),
        )

    async def get_call_analytics(
        self,
        filters: CallAnalyticsFilters,
        agent_id: int,
        privileged: bool = False,
    ) -> CallAnalytics:
        """Call counts, outcome mix, contact rate and average durations."""
        if not privileged:
            filters = filters.model_copy(update={"agent_id": agent_id})

        stats = await self._calls.analytics(filters)
        outcomes: dict[str, int] = stats["outcome_counts"]
        total_calls: int = stats["total_calls"]
        contacted = outcomes.get(OutcomeType.CONTACTED.value, 0)

        return CallAnalytics(
            total_calls=total_calls,
            completed_calls=stats["completed_calls"],
            successful_contacts=contacted,
            no_answers=outcomes.get(OutcomeType.NO_ANSWER.value, 0),
            callbacks=outcomes.get(OutcomeType.CALLBACK_REQUESTED.value, 0),
            not_interested=outcomes.get(OutcomeType.NOT_INTERESTED.value, 0),
            outcome_counts=outcomes,
            avg_duration_minutes=_minutes(stats["avg_duration_seconds"]),
            avg_talk_time_minutes=_minutes(stats["avg_talk_time_seconds"]),
            contact_rate=round(contacted / total_calls * 100) if total_calls else 0,
        )

    async def get_todays_summary(self, agent_id: int) -> TodaysSummary:
        """The agent's figures since midnight UTC."""
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        analytics = await self.get_call_analytics(
            CallAnalyticsFilters(agent_id=agent_id, start_date=midnight, end_date=now),
            agent_id=agent_id,
        )
        return TodaysSummary(
            calls_today=analytics.total_calls,
            contacts_today=analytics.successful_contacts,
            avg_talk_time_minutes=analytics.avg_talk_time_minutes,
            contact_rate=analytics.contact_rate,
        )
