"""
Agent availability and daily counters.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dialler.calls.models import AgentSession, AgentStatus
from dialler.shared.clock import Clock, utcnow
from dialler.shared.exceptions import ConflictError
from dialler.shared.logging import get_logger

logger = get_logger(__name__)

_CAN_TAKE_CALL = (AgentStatus.AVAILABLE, AgentStatus.BREAK)


class AgentSessionRepository:
    """Repository for agent session rows.

    Status changes that race with call handling are conditional updates; a
    lost race surfaces as ``ConflictError``.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock

    async def get(self, agent_id: int) -> AgentSession | None:
        stmt = (
            select(AgentSession)
            .where(AgentSession.agent_id == agent_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, agent_id: int) -> AgentSession:
        agent = await self.get(agent_id)
        if agent is not None:
            return agent
        now = self._clock()
        agent = AgentSession(
            agent_id=agent_id,
            status=AgentStatus.OFFLINE,
            last_activity=now,
            created_at=now,
        )
        self._session.add(agent)
        await self._session.flush()
        return agent

    async def set_status(self, agent_id: int, status: AgentStatus) -> AgentSession:
        """Change an agent's availability.

        ``on_call`` is only entered by starting a call, and an agent with a
        call in hand cannot change status until the call is released.

        Raises:
            ConflictError: The agent is on a call, or ``on_call`` was requested.
        """
        if status == AgentStatus.ON_CALL:
            raise ConflictError(message="Agents go on call by starting a call")

        agent = await self.get_or_create(agent_id)
        stmt = (
            update(AgentSession)
            .where(
                AgentSession.agent_id == agent_id,
                AgentSession.current_call_session_id.is_(None),
            )
            .values(status=status, last_activity=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConflictError(
                message=f"Agent {agent_id} is on a call",
                details={"current_call_session_id": str(agent.current_call_session_id)},
            )

        logger.info("Agent status changed", extra={"agent_id": agent_id, "status": status.value})
        return await self.get(agent_id)  # type: ignore[return-value]

    async def mark_on_call(self, agent_id: int, call_session_id: UUID) -> AgentSession:
        """Flip an available (or on-break) agent to ``on_call``.

        A missing row is created directly in ``on_call``.

        Raises:
            ConflictError: The agent is already on a call or offline.
        """
        now = self._clock()
        agent = await self.get(agent_id)
        if agent is None:
            agent = AgentSession(
                agent_id=agent_id,
                status=AgentStatus.ON_CALL,
                current_call_session_id=call_session_id,
                last_activity=now,
                created_at=now,
            )
            self._session.add(agent)
            await self._session.flush()
            return agent

        stmt = (
            update(AgentSession)
            .where(
                AgentSession.agent_id == agent_id,
                AgentSession.status.in_(_CAN_TAKE_CALL),
                AgentSession.current_call_session_id.is_(None),
            )
            .values(
                status=AgentStatus.ON_CALL,
                current_call_session_id=call_session_id,
                last_activity=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConflictError(
                message=f"Agent {agent_id} cannot start a call while {agent.status.value}",
                details={"status": agent.status.value},
            )
        return await self.get(agent_id)  # type: ignore[return-value]

    async def release(self, agent_id: int, call_session_id: UUID, talk_time_seconds: int | None) -> bool:
        """Return an agent to ``available`` after a finished call.

        Only releases if the agent is still holding this call, so a replayed
        or late release never clobbers a newer call.

        Returns:
            True if released.
        """
        stmt = (
            update(AgentSession)
            .where(
                AgentSession.agent_id == agent_id,
                AgentSession.current_call_session_id == call_session_id,
            )
            .values(
                status=AgentStatus.AVAILABLE,
                current_call_session_id=None,
                calls_completed_today=AgentSession.calls_completed_today + 1,
                total_talk_time_seconds=AgentSession.total_talk_time_seconds + (talk_time_seconds or 0),
                last_activity=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        released = result.rowcount > 0
        if released:
            logger.info(
                "Agent released",
                extra={
                    "agent_id": agent_id,
                    "call_session_id": str(call_session_id),
                    "talk_time_seconds": talk_time_seconds,
                },
            )
        return released

    async def reset_daily_counters(self) -> int:
        """Zero every agent's daily counters. Returns rows touched."""
        stmt = (
            update(AgentSession)
            .values(calls_completed_today=0, total_talk_time_seconds=0)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        logger.info("Agent daily counters reset", extra={"agents": result.rowcount})
        return result.rowcount
