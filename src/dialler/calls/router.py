"""
API routers for calls, the agent queue, callbacks and agent availability.
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from dialler.auth.dependencies import CurrentAgent, get_current_agent
from dialler.calls.agents import AgentSessionRepository
from dialler.calls.callbacks import CallbackScheduler
from dialler.calls.models import CallbackStatus, CallStatus, OutcomeType
from dialler.calls.queue import QueueBuilder
from dialler.calls.schemas import (
    AgentSessionResponse,
    AgentStatusUpdate,
    CallAnalytics,
    CallAnalyticsFilters,
    CallbackFilters,
    CallbackListResponse,
    CallbackRescheduleRequest,
    CallbackResponse,
    CallHistoryFilters,
    CallHistoryResponse,
    CallOutcomeResponse,
    CallSessionDetail,
    CallSessionResponse,
    FollowUpRequest,
    InitiateCallRequest,
    InitiateCallResponse,
    MaterializeResponse,
    PaginationMeta,
    QueueEntryResponse,
    QueueListResponse,
    RecordOutcomeRequest,
    SeedLeadRequest,
    TodaysSummary,
    UpdateCallStatusRequest,
    UserCallScoreResponse,
)
from dialler.calls.service import CallService
from dialler.calls.user_context import UserContextProvider, get_user_context_provider
from dialler.config import get_settings
from dialler.shared.clock import Clock, utcnow
from dialler.shared.database import get_db_session
from dialler.shared.exceptions import PermissionDeniedError
from dialler.shared.logging import get_logger

logger = get_logger(__name__)

calls_router = APIRouter(prefix="/api/calls", tags=["calls"])
queue_router = APIRouter(prefix="/api/queue", tags=["queue"])
callbacks_router = APIRouter(prefix="/api/callbacks", tags=["callbacks"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_clock() -> Clock:
    """Dependency for the time source (tests pin it)."""
    return utcnow


def get_call_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    user_context_provider: Annotated[UserContextProvider, Depends(get_user_context_provider)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> CallService:
    """Dependency for call service."""
    return CallService(session=session, user_context_provider=user_context_provider, clock=clock)


def get_queue_builder(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> QueueBuilder:
    """Dependency for queue builder."""
    return QueueBuilder(
        session,
        clock=clock,
        affinity_grace_minutes=get_settings().callback_affinity_grace_minutes,
    )


def get_callback_scheduler(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> CallbackScheduler:
    return CallbackScheduler(session, clock=clock)


def get_agent_repository(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> AgentSessionRepository:
    return AgentSessionRepository(session, clock=clock)


async def require_supervisor(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
) -> CurrentAgent:
    if not current_agent.is_privileged:
        raise PermissionDeniedError(message="Supervisor or admin role required")
    return current_agent


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


@calls_router.post(
    "",
    response_model=InitiateCallResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a call",
)
async def initiate_call(
    request: InitiateCallRequest,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> InitiateCallResponse:
    """Start a call for the current agent, optionally from a queue entry."""
    call_session, context = await service.initiate_call(
        user_id=request.user_id,
        agent_id=current_agent.id,
        queue_id=request.queue_id,
        direction=request.direction,
        phone_number=request.phone_number,
    )
    await session.commit()
    return InitiateCallResponse(
        call_session=CallSessionResponse.model_validate(call_session),
        user_context=context,
    )


@calls_router.get(
    "/current",
    response_model=CallSessionDetail | None,
    summary="Current agent's live call",
)
async def get_current_call(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
) -> CallSessionDetail | None:
    return await service.get_current_call(current_agent.id)


@calls_router.get(
    "/history",
    response_model=CallHistoryResponse,
    summary="Call history",
    description="Agents only see their own calls; supervisors and admins see all.",
)
async def get_call_history(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    agent_id: Annotated[int | None, Query()] = None,
    user_id: Annotated[int | None, Query()] = None,
    start_date: Annotated[datetime | None, Query()] = None,
    end_date: Annotated[datetime | None, Query()] = None,
    outcome: Annotated[OutcomeType | None, Query()] = None,
    call_status: Annotated[CallStatus | None, Query(alias="status")] = None,
) -> CallHistoryResponse:
    filters = CallHistoryFilters(
        page=page,
        limit=limit,
        agent_id=agent_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        outcome=outcome,
        status=call_status,
    )
    return await service.get_call_history(
        filters,
        agent_id=current_agent.id,
        privileged=current_agent.is_privileged,
    )


@calls_router.get(
    "/analytics",
    response_model=CallAnalytics,
    summary="Call analytics",
)
async def get_call_analytics(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
    agent_id: Annotated[int | None, Query()] = None,
    start_date: Annotated[datetime | None, Query()] = None,
    end_date: Annotated[datetime | None, Query()] = None,
    outcome_type: Annotated[OutcomeType | None, Query()] = None,
) -> CallAnalytics:
    filters = CallAnalyticsFilters(
        agent_id=agent_id,
        start_date=start_date,
        end_date=end_date,
        outcome_type=outcome_type,
    )
    return await service.get_call_analytics(
        filters,
        agent_id=current_agent.id,
        privileged=current_agent.is_privileged,
    )


@calls_router.get(
    "/summary/today",
    response_model=TodaysSummary,
    summary="Today's figures for the current agent",
)
async def get_todays_summary(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
) -> TodaysSummary:
    return await service.get_todays_summary(current_agent.id)


@calls_router.get(
    "/{session_id}",
    response_model=CallSessionDetail,
    summary="Get a call session",
)
async def get_call_session(
    session_id: UUID,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
) -> CallSessionDetail:
    return await service.get_call_session(
        session_id,
        agent_id=current_agent.id,
        privileged=current_agent.is_privileged,
    )


@calls_router.patch(
    "/{session_id}/status",
    response_model=CallSessionResponse,
    summary="Update call status",
)
async def update_call_status(
    session_id: UUID,
    request: UpdateCallStatusRequest,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CallSessionResponse:
    call_session = await service.update_call_status(
        session_id,
        agent_id=current_agent.id,
        request=request,
        privileged=current_agent.is_privileged,
    )
    await session.commit()
    return CallSessionResponse.model_validate(call_session)


@calls_router.post(
    "/{session_id}/outcome",
    response_model=CallOutcomeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a call outcome",
)
async def record_outcome(
    session_id: UUID,
    request: RecordOutcomeRequest,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    service: Annotated[CallService, Depends(get_call_service)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CallOutcomeResponse:
    """Record the agent's disposition.

    Writes the outcome, rescores the customer, books a requested callback
    and frees the agent in a single transaction.
    """
    outcome = await service.record_outcome(session_id, current_agent.id, request)
    await session.commit()
    return CallOutcomeResponse.model_validate(outcome)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@queue_router.get(
    "",
    response_model=QueueListResponse,
    summary="Next calls for the current agent",
)
async def list_queue(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
) -> QueueListResponse:
    limit = limit or get_settings().queue_default_page_size
    entries, total = await queue.list_for_agent(current_agent.id, page=page, limit=limit)
    await session.commit()
    return QueueListResponse(
        entries=[QueueEntryResponse.model_validate(e) for e in entries],
        meta=PaginationMeta.build(page, limit, total),
    )


@queue_router.get(
    "/stats",
    response_model=dict[str, int],
    summary="Pending queue entries by type",
)
async def queue_stats(
    _: Annotated[CurrentAgent, Depends(require_supervisor)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
) -> dict[str, int]:
    return await queue.queue_stats()


@queue_router.post(
    "/materialize",
    response_model=MaterializeResponse,
    summary="Materialise due callbacks and eligible users",
)
async def materialize_queue(
    current_agent: Annotated[CurrentAgent, Depends(require_supervisor)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> MaterializeResponse:
    result = await queue.materialize()
    await session.commit()
    return MaterializeResponse(
        priority_calls_created=result.priority_calls_created,
        callbacks_created=result.callbacks_created,
    )


@queue_router.post(
    "/follow-ups",
    response_model=QueueEntryResponse,
    summary="Queue a follow-up call",
)
async def enqueue_follow_up(
    request: FollowUpRequest,
    response: Response,
    _: Annotated[CurrentAgent, Depends(require_supervisor)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> QueueEntryResponse:
    """Queue a follow-up; an open follow-up for the same claim is returned with 200."""
    entry, created = await queue.enqueue_follow_up(
        user_id=request.user_id,
        claim_id=request.claim_id,
        reason=request.reason,
        available_from=request.available_from,
    )
    await session.commit()
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return QueueEntryResponse.model_validate(entry)


@queue_router.post(
    "/leads",
    response_model=UserCallScoreResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Seed a new lead",
)
async def seed_lead(
    request: SeedLeadRequest,
    _: Annotated[CurrentAgent, Depends(require_supervisor)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> UserCallScoreResponse:
    score = await queue.seed_lead(request.user_id, request.base_score)
    await session.commit()
    return UserCallScoreResponse.model_validate(score)


@queue_router.post(
    "/{entry_id}/assign",
    response_model=QueueEntryResponse,
    summary="Claim a queue entry",
)
async def assign_entry(
    entry_id: UUID,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> QueueEntryResponse:
    entry = await queue.assign(entry_id, current_agent.id)
    await session.commit()
    return QueueEntryResponse.model_validate(entry)


@queue_router.post(
    "/{entry_id}/release",
    response_model=QueueEntryResponse,
    summary="Hand a claimed entry back",
)
async def release_entry(
    entry_id: UUID,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    queue: Annotated[QueueBuilder, Depends(get_queue_builder)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> QueueEntryResponse:
    entry = await queue.release(entry_id, current_agent.id)
    await session.commit()
    return QueueEntryResponse.model_validate(entry)


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


@callbacks_router.get(
    "",
    response_model=CallbackListResponse,
    summary="List callbacks",
    description="Agents only see callbacks reserved for them.",
)
async def list_callbacks(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    scheduler: Annotated[CallbackScheduler, Depends(get_callback_scheduler)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    agent_id: Annotated[int | None, Query()] = None,
    callback_status: Annotated[CallbackStatus | None, Query(alias="status")] = None,
    scheduled_from: Annotated[datetime | None, Query()] = None,
    scheduled_to: Annotated[datetime | None, Query()] = None,
) -> CallbackListResponse:
    filters = CallbackFilters(
        page=page,
        limit=limit,
        agent_id=agent_id if current_agent.is_privileged else current_agent.id,
        status=callback_status,
        scheduled_from=scheduled_from,
        scheduled_to=scheduled_to,
    )
    callbacks, total = await scheduler.list_callbacks(filters)
    return CallbackListResponse(
        callbacks=[CallbackResponse.model_validate(c) for c in callbacks],
        meta=PaginationMeta.build(filters.page, filters.limit, total),
    )


@callbacks_router.post(
    "/{callback_id}/cancel",
    response_model=CallbackResponse,
    summary="Cancel a pending callback",
)
async def cancel_callback(
    callback_id: UUID,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    scheduler: Annotated[CallbackScheduler, Depends(get_callback_scheduler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CallbackResponse:
    callback = await scheduler.cancel(
        callback_id,
        agent_id=current_agent.id,
        privileged=current_agent.is_privileged,
    )
    await session.commit()
    return CallbackResponse.model_validate(callback)


@callbacks_router.patch(
    "/{callback_id}",
    response_model=CallbackResponse,
    summary="Reschedule a pending callback",
)
async def reschedule_callback(
    callback_id: UUID,
    request: CallbackRescheduleRequest,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    scheduler: Annotated[CallbackScheduler, Depends(get_callback_scheduler)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CallbackResponse:
    callback = await scheduler.reschedule(
        callback_id,
        scheduled_for=request.scheduled_for,
        callback_reason=request.callback_reason,
        agent_id=current_agent.id,
        privileged=current_agent.is_privileged,
    )
    await session.commit()
    return CallbackResponse.model_validate(callback)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@agents_router.get(
    "/me",
    response_model=AgentSessionResponse,
    summary="Current agent's availability and counters",
)
async def get_my_session(
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    agents: Annotated[AgentSessionRepository, Depends(get_agent_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> AgentSessionResponse:
    agent = await agents.get_or_create(current_agent.id)
    await session.commit()
    return AgentSessionResponse.model_validate(agent)


@agents_router.put(
    "/me/status",
    response_model=AgentSessionResponse,
    summary="Change availability",
)
async def set_my_status(
    request: AgentStatusUpdate,
    current_agent: Annotated[CurrentAgent, Depends(get_current_agent)],
    agents: Annotated[AgentSessionRepository, Depends(get_agent_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> AgentSessionResponse:
    agent = await agents.set_status(current_agent.id, request.status)
    await session.commit()
    return AgentSessionResponse.model_validate(agent)


@agents_router.post(
    "/reset-daily-counters",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Zero every agent's daily counters",
)
async def reset_daily_counters(
    _: Annotated[CurrentAgent, Depends(require_supervisor)],
    agents: Annotated[AgentSessionRepository, Depends(get_agent_repository)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> Response:
    await agents.reset_daily_counters()
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
