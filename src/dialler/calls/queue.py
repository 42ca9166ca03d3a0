"""
Queue builder.

Materialises assignable work items from the score store and the callback
store, orders them for an agent and hands them out exclusively.

Ordering: callbacks first, then priority calls, then follow-ups; inside a
type the lowest score wins, then the earliest availability.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from dialler.calls.callbacks import CallbackScheduler
from dialler.calls.models import (
    Callback,
    CallbackStatus,
    CallQueueEntry,
    QueueStatus,
    QueueType,
    UserCallScore,
)
from dialler.calls.scoring import ScoringEngine
from dialler.shared.clock import Clock, utcnow
from dialler.shared.exceptions import ConflictError, NotFoundError
from dialler.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AFFINITY_GRACE_MINUTES = 15

OPEN_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.ASSIGNED)

QUEUE_TYPE_PRECEDENCE: dict[QueueType, int] = {
    QueueType.CALLBACK: 0,
    QueueType.PRIORITY_CALL: 1,
    QueueType.FOLLOW_UP: 2,
}


@dataclass(frozen=True)
class MaterializeResult:
    priority_calls_created: int
    callbacks_created: int


class QueueBuilder:
    """Builds, orders and assigns call queue entries."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utcnow,
        affinity_grace_minutes: int = DEFAULT_AFFINITY_GRACE_MINUTES,
    ) -> None:
        """Initialize the builder.

        Args:
            session: Async database session (the caller owns the transaction).
            clock: Source of "now".
            affinity_grace_minutes: How long a due callback stays reserved for
                its preferred agent before other agents can see it.
        """
        self._session = session
        self._clock = clock
        self._grace = timedelta(minutes=affinity_grace_minutes)

    # ------------------------------------------------------------------
    # Materialisation
    # ------------------------------------------------------------------

    async def materialize(self, now: datetime | None = None) -> MaterializeResult:
        """Create queue entries for due callbacks and eligible users.

        Callbacks are materialised first so a user with a pending callback
        never also gets a priority call.
        """
        now = now or self._clock()
        callbacks_created = await self._materialize_callbacks(now)
        priority_calls_created = await self._materialize_priority_calls(now)

        if callbacks_created or priority_calls_created:
            logger.info(
                "Queue materialised",
                extra={
                    "callbacks_created": callbacks_created,
                    "priority_calls_created": priority_calls_created,
                },
            )
        return MaterializeResult(
            priority_calls_created=priority_calls_created,
            callbacks_created=callbacks_created,
        )

    async def _materialize_callbacks(self, now: datetime) -> int:
        due = await CallbackScheduler(self._session, clock=self._clock).due(now)
        if not due:
            return 0

        queued_stmt = select(CallQueueEntry.callback_id).where(
            CallQueueEntry.callback_id.in_([callback.id for callback in due]),
            CallQueueEntry.status.in_(OPEN_QUEUE_STATUSES),
        )
        queued = set((await self._session.execute(queued_stmt)).scalars().all())

        scores_stmt = select(UserCallScore.user_id, UserCallScore.current_score).where(
            UserCallScore.user_id.in_(list({callback.user_id for callback in due}))
        )
        scores = dict((await self._session.execute(scores_stmt)).all())

        created = 0
        for callback in due:
            if callback.id in queued:
                continue
            self._session.add(
                CallQueueEntry(
                    user_id=callback.user_id,
                    queue_type=QueueType.CALLBACK,
                    priority_score=scores.get(callback.user_id) or 0,
                    status=QueueStatus.PENDING,
                    callback_id=callback.id,
                    preferred_agent_id=callback.preferred_agent_id,
                    available_from=callback.scheduled_for,
                    reason=callback.callback_reason,
                    created_at=now,
                    updated_at=now,
                )
            )
            created += 1
        if created:
            await self._session.flush()
        return created

    async def _materialize_priority_calls(self, now: datetime) -> int:
        open_entry = (
            select(CallQueueEntry.id)
            .where(
                CallQueueEntry.user_id == UserCallScore.user_id,
                CallQueueEntry.queue_type.in_((QueueType.PRIORITY_CALL, QueueType.CALLBACK)),
                CallQueueEntry.status.in_(OPEN_QUEUE_STATUSES),
            )
            .exists()
        )
        pending_callback = (
            select(Callback.id)
            .where(
                Callback.user_id == UserCallScore.user_id,
                Callback.status == CallbackStatus.PENDING,
            )
            .exists()
        )
        stmt = (
            select(UserCallScore)
            .where(
                or_(UserCallScore.next_call_after.is_(None), UserCallScore.next_call_after <= now),
                ~open_entry,
                ~pending_callback,
            )
            .order_by(UserCallScore.current_score.asc(), UserCallScore.user_id.asc())
        )
        scores = (await self._session.execute(stmt)).scalars().all()

        for score in scores:
            self._session.add(
                CallQueueEntry(
                    user_id=score.user_id,
                    queue_type=QueueType.PRIORITY_CALL,
                    priority_score=score.current_score,
                    status=QueueStatus.PENDING,
                    available_from=score.next_call_after,
                    created_at=now,
                    updated_at=now,
                )
            )
        if scores:
            await self._session.flush()
        return len(scores)

    async def enqueue_follow_up(
        self,
        user_id: int,
        claim_id: int | None = None,
        reason: str | None = None,
        available_from: datetime | None = None,
    ) -> tuple[CallQueueEntry, bool]:
        """Queue a follow-up call for a claim or requirement change.

        Returns:
            Tuple of (entry, created). An open follow-up for the same user and
            claim is returned as-is instead of being duplicated.
        """
        existing_stmt = select(CallQueueEntry).where(
            CallQueueEntry.user_id == user_id,
            CallQueueEntry.queue_type == QueueType.FOLLOW_UP,
            CallQueueEntry.status.in_(OPEN_QUEUE_STATUSES),
            CallQueueEntry.claim_id.is_(None) if claim_id is None else CallQueueEntry.claim_id == claim_id,
        )
        existing = (await self._session.execute(existing_stmt)).scalars().first()
        if existing is not None:
            return existing, False

        score_stmt = select(UserCallScore.current_score).where(UserCallScore.user_id == user_id)
        current_score = (await self._session.execute(score_stmt)).scalar_one_or_none()

        now = self._clock()
        entry = CallQueueEntry(
            user_id=user_id,
            claim_id=claim_id,
            queue_type=QueueType.FOLLOW_UP,
            priority_score=current_score or 0,
            status=QueueStatus.PENDING,
            available_from=available_from,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        self._session.add(entry)
        await self._session.flush()

        logger.info(
            "Follow-up queued",
            extra={"entry_id": str(entry.id), "user_id": user_id, "claim_id": claim_id},
        )
        return entry, True

    async def seed_lead(self, user_id: int, base_score: int = 0) -> UserCallScore:
        """Make a new lead eligible for the next materialisation."""
        return await ScoringEngine(self._session, clock=self._clock).seed(user_id, base_score)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _user_held():
        held = aliased(CallQueueEntry)
        return (
            select(held.id)
            .where(
                held.user_id == CallQueueEntry.user_id,
                held.status == QueueStatus.ASSIGNED,
            )
            .exists()
        )

    def _visible_to(self, agent_id: int, now: datetime):
        reserved_for_other = and_(
            CallQueueEntry.queue_type == QueueType.CALLBACK,
            CallQueueEntry.preferred_agent_id.is_not(None),
            CallQueueEntry.preferred_agent_id != agent_id,
            CallQueueEntry.available_from > now - self._grace,
        )
        return and_(
            CallQueueEntry.status == QueueStatus.PENDING,
            or_(CallQueueEntry.available_from.is_(None), CallQueueEntry.available_from <= now),
            ~reserved_for_other,
            ~self._user_held(),
        )

    @staticmethod
    def _ordering():
        precedence = case(
            {qt: rank for qt, rank in QUEUE_TYPE_PRECEDENCE.items()},
            value=CallQueueEntry.queue_type,
            else_=len(QUEUE_TYPE_PRECEDENCE),
        )
        return (
            precedence.asc(),
            CallQueueEntry.priority_score.asc(),
            func.coalesce(CallQueueEntry.available_from, CallQueueEntry.created_at).asc(),
            CallQueueEntry.id.asc(),
        )

    async def list_for_agent(
        self,
        agent_id: int,
        page: int = 1,
        limit: int = 20,
        now: datetime | None = None,
    ) -> tuple[Sequence[CallQueueEntry], int]:
        """Ordered, paginated list of entries the agent may take right now.

        The queue is brought up to date first, so callbacks that have come
        due and users whose wait has passed show up without a separate
        materialisation step.

        Args:
            agent_id: Requesting agent.
            page: 1-based page number.
            limit: Page size.
            now: Override for the current time.

        Returns:
            Tuple of (entries, total visible count).
        """
        now = now or self._clock()
        await self.materialize(now)
        visible = self._visible_to(agent_id, now)

        count_stmt = select(func.count(CallQueueEntry.id)).where(visible)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(CallQueueEntry)
            .where(visible)
            .order_by(*self._ordering())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def get(self, entry_id: UUID) -> CallQueueEntry | None:
        return await self._session.get(CallQueueEntry, entry_id, populate_existing=True)

    async def queue_stats(self) -> dict[str, int]:
        """Pending entry counts by queue type."""
        stmt = (
            select(CallQueueEntry.queue_type, func.count(CallQueueEntry.id))
            .where(CallQueueEntry.status == QueueStatus.PENDING)
            .group_by(CallQueueEntry.queue_type)
        )
        counts = {qt.value: 0 for qt in QueueType}
        for queue_type, count in (await self._session.execute(stmt)).all():
            counts[QueueType(queue_type).value] = count
        return counts

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign(self, entry_id: UUID, agent_id: int) -> CallQueueEntry:
        """Claim a pending entry for an agent.

        The claim is one conditional UPDATE, so of two concurrent claims only
        one can match. Claims on different entries for the same user are
        settled by the unique index on assigned entries. Re-claiming an entry
        the agent already holds is a no-op.

        Raises:
            NotFoundError: Unknown entry.
            ConflictError: Entry is not pending or its user is already held.
        """
        now = self._clock()
        stmt = (
            update(CallQueueEntry)
            .where(
                CallQueueEntry.id == entry_id,
                CallQueueEntry.status == QueueStatus.PENDING,
                ~self._user_held(),
            )
            .values(
                status=QueueStatus.ASSIGNED,
                assigned_to_agent_id=agent_id,
                assigned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(stmt)
        except IntegrityError as e:
            # A concurrent claim for the same user committed first.
            logger.info(
                "Queue assignment lost",
                extra={"entry_id": str(entry_id), "agent_id": agent_id, "reason": "user_held"},
            )
            raise ConflictError(
                message=f"Queue entry {entry_id} is no longer available",
                details={"reason": "user_held"},
            ) from e

        entry = await self.get(entry_id)
        if entry is None:
            raise NotFoundError(message=f"Queue entry not found: {entry_id}")

        if result.rowcount == 0:
            if entry.status == QueueStatus.ASSIGNED and entry.assigned_to_agent_id == agent_id:
                return entry
            logger.info(
                "Queue assignment lost",
                extra={"entry_id": str(entry_id), "agent_id": agent_id, "status": entry.status.value},
            )
            raise ConflictError(
                message=f"Queue entry {entry_id} is no longer available",
                details={"status": entry.status.value},
            )

        logger.info(
            "Queue entry assigned",
            extra={"entry_id": str(entry_id), "agent_id": agent_id, "user_id": entry.user_id},
        )
        return entry

    async def release(self, entry_id: UUID, agent_id: int) -> CallQueueEntry:
        """Hand an assigned entry back to the pool."""
        stmt = (
            update(CallQueueEntry)
            .where(
                CallQueueEntry.id == entry_id,
                CallQueueEntry.status == QueueStatus.ASSIGNED,
                CallQueueEntry.assigned_to_agent_id == agent_id,
            )
            .values(
                status=QueueStatus.PENDING,
                assigned_to_agent_id=None,
                assigned_at=None,
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        entry = await self.get(entry_id)
        if entry is None:
            raise NotFoundError(message=f"Queue entry not found: {entry_id}")
        if result.rowcount == 0:
            raise ConflictError(message=f"Queue entry {entry_id} is not assigned to agent {agent_id}")

        logger.info("Queue entry released", extra={"entry_id": str(entry_id), "agent_id": agent_id})
        return entry

    async def complete(self, entry_id: UUID) -> bool:
        """Mark an open entry completed. Returns False if it was already closed."""
        stmt = (
            update(CallQueueEntry)
            .where(
                CallQueueEntry.id == entry_id,
                CallQueueEntry.status.in_(OPEN_QUEUE_STATUSES),
            )
            .values(status=QueueStatus.COMPLETED, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def cancel_stale_for_user(self, user_id: int, keep_entry_id: UUID | None = None) -> int:
        """Cancel a user's pending priority calls after a rescore.

        Their score snapshot is out of date; the next materialisation creates
        a fresh entry once the user is eligible again.
        """
        conditions = [
            CallQueueEntry.user_id == user_id,
            CallQueueEntry.queue_type == QueueType.PRIORITY_CALL,
            CallQueueEntry.status == QueueStatus.PENDING,
        ]
        if keep_entry_id is not None:
            conditions.append(CallQueueEntry.id != keep_entry_id)

        stmt = (
            update(CallQueueEntry)
            .where(*conditions)
            .values(status=QueueStatus.CANCELLED, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(
                "Stale queue entries cancelled",
                extra={"user_id": user_id, "cancelled": result.rowcount},
            )
        return result.rowcount
