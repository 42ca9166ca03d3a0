"""
Repository for call session and outcome database operations.
"""

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from dialler.calls.models import (
    ACTIVE_CALL_STATUSES,
    CallDirection,
    CallOutcome,
    CallSession,
    CallStatus,
)
from dialler.calls.schemas import CallAnalyticsFilters, CallHistoryFilters


class CallSessionRepository:
    """Repository for call session database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create(
        self,
        user_id: int,
        agent_id: int,
        started_at: datetime,
        call_queue_id: UUID | None = None,
        direction: CallDirection = CallDirection.OUTBOUND,
        user_claims_context: list[dict[str, Any]] | None = None,
    ) -> CallSession:
        """Create a new call session record.

        Args:
            user_id: Customer being called.
            agent_id: Agent placing the call.
            started_at: Call start time.
            call_queue_id: Queue entry the call came from, if any.
            direction: Call direction.
            user_claims_context: Snapshot of the customer's claims.

        Returns:
            Created CallSession instance.
        """
        call_session = CallSession(
            user_id=user_id,
            agent_id=agent_id,
            call_queue_id=call_queue_id,
            status=CallStatus.INITIATED,
            direction=direction,
            started_at=started_at,
            user_claims_context=user_claims_context,
            created_at=started_at,
        )
        self._session.add(call_session)
        await self._session.flush()
        await self._session.refresh(call_session)
        return call_session

    async def get_by_id(self, session_id: UUID, for_update: bool = False) -> CallSession | None:
        """Get call session by ID.

        Args:
            session_id: Call session UUID.
            for_update: Lock the row (ignored by SQLite).

        Returns:
            CallSession if found, None otherwise.
        """
        stmt = (
            select(CallSession)
            .where(CallSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_twilio_sid(self, call_sid: str, for_update: bool = False) -> CallSession | None:
        """Get call session by Twilio CallSid."""
        stmt = (
            select(CallSession)
            .where(CallSession.twilio_call_sid == call_sid)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current_for_agent(self, agent_id: int) -> CallSession | None:
        """Most recent non-terminal session for an agent."""
        stmt = (
            select(CallSession)
            .where(
                CallSession.agent_id == agent_id,
                CallSession.status.in_(ACTIVE_CALL_STATUSES),
            )
            .order_by(CallSession.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_stale(self, started_before: datetime, statuses: Sequence[CallStatus]) -> Sequence[CallSession]:
        """Sessions stuck in one of ``statuses`` since before the cutoff."""
        stmt = (
            select(CallSession)
            .where(
                CallSession.status.in_(statuses),
                CallSession.started_at < started_before,
            )
            .order_by(CallSession.started_at.asc())
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def has_outcome(self, session_id: UUID, final_only: bool = False) -> bool:
        stmt = select(func.count(CallOutcome.id)).where(CallOutcome.call_session_id == session_id)
        if final_only:
            stmt = stmt.where(CallOutcome.is_final.is_(True))
        result = await self._session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def add_outcome(self, outcome: CallOutcome) -> CallOutcome:
        self._session.add(outcome)
        await self._session.flush()
        return outcome

    async def list_history(self, filters: CallHistoryFilters) -> tuple[Sequence[CallSession], int]:
        """List call sessions with filtering and pagination, newest first.

        Args:
            filters: Page, limit and optional agent, user, date range,
                outcome and status filters.

        Returns:
            Tuple of (sessions with outcomes loaded, total count).
        """
        base_query = select(CallSession).execution_options(populate_existing=True)
        if filters.agent_id is not None:
            base_query = base_query.where(CallSession.agent_id == filters.agent_id)
        if filters.user_id is not None:
            base_query = base_query.where(CallSession.user_id == filters.user_id)
        if filters.start_date is not None:
            base_query = base_query.where(CallSession.started_at >= filters.start_date)
        if filters.end_date is not None:
            base_query = base_query.where(CallSession.started_at <= filters.end_date)
        if filters.status is not None:
            base_query = base_query.where(CallSession.status == filters.status)
        if filters.outcome is not None:
            base_query = base_query.where(self._has_outcome(filters.outcome))

        count_stmt = select(func.count()).select_from(base_query.subquery())
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            base_query
            .order_by(CallSession.started_at.desc(), CallSession.id.asc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    @staticmethod
    def _has_outcome(outcome_type: Any):
        # Aliased so it correlates to CallSession only, even inside a join on CallOutcome.
        matched = aliased(CallOutcome)
        return (
            select(matched.id)
            .where(
                matched.call_session_id == CallSession.id,
                matched.outcome_type == outcome_type,
            )
            .exists()
        )

    async def analytics(self, filters: CallAnalyticsFilters) -> dict[str, Any]:
        """Aggregate call counts, outcome counts and average durations.

        Returns:
            Dict with ``total_calls``, ``completed_calls``, ``outcome_counts``,
            ``avg_duration_seconds`` and ``avg_talk_time_seconds``.
        """
        conditions = []
        if filters.agent_id is not None:
            conditions.append(CallSession.agent_id == filters.agent_id)
        if filters.start_date is not None:
            conditions.append(CallSession.started_at >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(CallSession.started_at <= filters.end_date)
        if filters.outcome_type is not None:
            conditions.append(self._has_outcome(filters.outcome_type))

        totals_stmt = select(
            func.count(CallSession.id),
            func.count(CallSession.id).filter(CallSession.status == CallStatus.COMPLETED),
            func.avg(CallSession.duration_seconds),
            func.avg(CallSession.talk_time_seconds),
        ).where(*conditions)
        total_calls, completed_calls, avg_duration, avg_talk_time = (
            await self._session.execute(totals_stmt)
        ).one()

        outcome_stmt = (
            select(CallOutcome.outcome_type, func.count(CallOutcome.id))
            .join(CallSession, CallSession.id == CallOutcome.call_session_id)
            .where(*conditions)
            .group_by(CallOutcome.outcome_type)
        )
        outcome_counts = {
            outcome_type.value: count
            for outcome_type, count in (await self._session.execute(outcome_stmt)).all()
        }

        return {
            "total_calls": total_calls or 0,
            "completed_calls": completed_calls or 0,
            "outcome_counts": outcome_counts,
            "avg_duration_seconds": float(avg_duration) if avg_duration is not None else None,
            "avg_talk_time_seconds": float(avg_talk_time) if avg_talk_time is not None else None,
        }
