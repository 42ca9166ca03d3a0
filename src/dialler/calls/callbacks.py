"""
Callback scheduler: future-dated call commitments with preferred-agent
affinity.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dialler.calls.models import (
    Callback,
    CallbackStatus,
    CallQueueEntry,
    QueueStatus,
)
from dialler.calls.schemas import CallbackFilters
from dialler.shared.clock import Clock, utcnow
from dialler.shared.exceptions import ConflictError, NotFoundError, PermissionDeniedError
from dialler.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CALLBACK_REASON = "User requested callback"

_OPEN_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.ASSIGNED)


class CallbackScheduler:
    """Creates, lists and retires callbacks."""

    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock

    async def create(
        self,
        user_id: int,
        scheduled_for: datetime,
        original_call_session_id: UUID | None,
        preferred_agent_id: int | None = None,
        callback_reason: str | None = None,
    ) -> Callback:
        """Create a pending callback.

        Args:
            user_id: Customer to call back.
            scheduled_for: When the customer asked to be called.
            original_call_session_id: Session during which it was requested.
            preferred_agent_id: Agent the customer spoke to.
            callback_reason: Free text; defaults to a generic reason.

        Returns:
            The created callback.
        """
        now = self._clock()
        callback = Callback(
            user_id=user_id,
            scheduled_for=scheduled_for,
            callback_reason=callback_reason or DEFAULT_CALLBACK_REASON,
            preferred_agent_id=preferred_agent_id,
            original_call_session_id=original_call_session_id,
            status=CallbackStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self._session.add(callback)
        await self._session.flush()

        logger.info(
            "Callback scheduled",
            extra={
                "callback_id": str(callback.id),
                "user_id": user_id,
                "scheduled_for": scheduled_for.isoformat(),
                "preferred_agent_id": preferred_agent_id,
            },
        )
        return callback

    async def get(self, callback_id: UUID) -> Callback | None:
        stmt = (
            select(Callback)
            .where(Callback.id == callback_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require(
        self,
        callback_id: UUID,
        agent_id: int | None = None,
        privileged: bool = True,
    ) -> Callback:
        callback = await self.get(callback_id)
        if callback is None:
            raise NotFoundError(message=f"Callback not found: {callback_id}")
        # Agents may only touch their own callbacks or unowned ones.
        if (
            not privileged
            and callback.preferred_agent_id is not None
            and callback.preferred_agent_id != agent_id
        ):
            raise PermissionDeniedError(message="Callback belongs to another agent")
        return callback

    async def due(self, now: datetime | None = None) -> Sequence[Callback]:
        """Pending callbacks whose time has come, oldest first.

        Past-due callbacks stay due until they are completed or cancelled.
        """
        now = now or self._clock()
        stmt = (
            select(Callback)
            .where(
                Callback.status == CallbackStatus.PENDING,
                Callback.scheduled_for <= now,
            )
            .order_by(Callback.scheduled_for.asc(), Callback.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_callbacks(self, filters: CallbackFilters) -> tuple[Sequence[Callback], int]:
        """List callbacks with filtering and pagination.

        Args:
            filters: Page, limit, preferred agent, status and scheduled range.

        Returns:
            Tuple of (callbacks ordered by scheduled time, total count).
        """
        base_query = select(Callback)
        if filters.agent_id is not None:
            base_query = base_query.where(Callback.preferred_agent_id == filters.agent_id)
        if filters.status is not None:
            base_query = base_query.where(Callback.status == filters.status)
        if filters.scheduled_from is not None:
            base_query = base_query.where(Callback.scheduled_for >= filters.scheduled_from)
        if filters.scheduled_to is not None:
            base_query = base_query.where(Callback.scheduled_for <= filters.scheduled_to)

        count_stmt = select(func.count()).select_from(base_query.subquery())
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            base_query
            .order_by(Callback.scheduled_for.asc(), Callback.id.asc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def complete(self, callback_id: UUID, call_session_id: UUID) -> bool:
        """Mark a pending callback completed by the given call session.

        Returns:
            True if this call completed it, False if it was no longer pending.
        """
        stmt = (
            update(Callback)
            .where(Callback.id == callback_id, Callback.status == CallbackStatus.PENDING)
            .values(
                status=CallbackStatus.COMPLETED,
                completed_call_session_id=call_session_id,
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        completed = result.rowcount > 0
        if completed:
            logger.info(
                "Callback completed",
                extra={"callback_id": str(callback_id), "call_session_id": str(call_session_id)},
            )
        return completed

    async def cancel(
        self,
        callback_id: UUID,
        agent_id: int | None = None,
        privileged: bool = True,
    ) -> Callback:
        """Cancel a pending callback and withdraw its open queue entries.

        Raises:
            NotFoundError: Unknown callback.
            PermissionDeniedError: Callback belongs to another agent.
            ConflictError: Callback is no longer pending.
        """
        callback = await self._require(callback_id, agent_id, privileged)
        now = self._clock()
        stmt = (
            update(Callback)
            .where(Callback.id == callback_id, Callback.status == CallbackStatus.PENDING)
            .values(status=CallbackStatus.CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConflictError(message=f"Callback {callback_id} is not pending")

        await self._session.execute(
            update(CallQueueEntry)
            .where(
                CallQueueEntry.callback_id == callback_id,
                CallQueueEntry.status.in_(_OPEN_QUEUE_STATUSES),
            )
            .values(status=QueueStatus.CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(callback)

        logger.info("Callback cancelled", extra={"callback_id": str(callback_id)})
        return callback

    async def reschedule(
        self,
        callback_id: UUID,
        scheduled_for: datetime,
        callback_reason: str | None = None,
        agent_id: int | None = None,
        privileged: bool = True,
    ) -> Callback:
        """Move a pending callback to a new time.

        Open queue entries for the old time are cancelled; the queue builder
        re-materialises the callback when the new time arrives.
        """
        callback = await self._require(callback_id, agent_id, privileged)
        if callback.status != CallbackStatus.PENDING:
            raise ConflictError(message=f"Callback {callback_id} is not pending")

        now = self._clock()
        callback.scheduled_for = scheduled_for
        if callback_reason:
            callback.callback_reason = callback_reason
        callback.updated_at = now

        await self._session.execute(
            update(CallQueueEntry)
            .where(
                CallQueueEntry.callback_id == callback_id,
                CallQueueEntry.status == QueueStatus.PENDING,
            )
            .values(status=QueueStatus.CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()

        logger.info(
            "Callback rescheduled",
            extra={"callback_id": str(callback_id), "scheduled_for": scheduled_for.isoformat()},
        )
        return callback
