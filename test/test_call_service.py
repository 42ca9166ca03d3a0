"""
Tests for the call service: call lifecycle, webhooks, outcome recording,
stale call expiry and reporting.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from dialler.calls.agents import AgentSessionRepository
from dialler.calls.callbacks import CallbackScheduler
from dialler.calls.models import (
    AgentStatus,
    CallbackStatus,
    CallStatus,
    OutcomeType,
    QueueStatus,
)
from dialler.calls.queue import QueueBuilder
from dialler.calls.repository import CallSessionRepository
from dialler.calls.schemas import (
    CallAnalyticsFilters,
    CallHistoryFilters,
    RecordOutcomeRequest,
    TwilioWebhookPayload,
    UpdateCallStatusRequest,
)
from dialler.calls.scoring import ScoringEngine
from dialler.calls.service import STALE_CALL_NOTE, CallService
from dialler.shared.clock import ensure_utc
from dialler.shared.exceptions import (
    ConflictError,
    DependencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

from conftest import T0


@pytest.fixture
def service(db_session, user_provider, clock, test_settings) -> CallService:
    return CallService(db_session, user_provider, clock=clock, settings=test_settings)


def _status(status: CallStatus, **kwargs) -> UpdateCallStatusRequest:
    return UpdateCallStatusRequest(status=status, **kwargs)


def _webhook(call_sid: str, call_status: str, **extra) -> TwilioWebhookPayload:
    return TwilioWebhookPayload.model_validate({"CallSid": call_sid, "CallStatus": call_status, **extra})


async def _finished_call(service, clock, user_id, agent_id, outcome, talk_seconds=60):
    call, _ = await service.initiate_call(user_id, agent_id)
    clock.advance(seconds=10)
    await service.update_call_status(call.id, agent_id, _status(CallStatus.CONNECTED))
    clock.advance(seconds=talk_seconds)
    await service.update_call_status(call.id, agent_id, _status(CallStatus.COMPLETED))
    await service.record_outcome(call.id, agent_id, RecordOutcomeRequest(outcome_type=outcome))
    return call


class TestInitiateCall:
    async def test_creates_session_with_claims_snapshot(self, service, db_session, clock) -> None:
        call, context = await service.initiate_call(user_id=1, agent_id=7)

        assert call.status == CallStatus.INITIATED
        assert call.agent_id == 7
        assert call.user_claims_context == [
            {
                "id": 10,
                "type": "vehicle_finance",
                "status": "active",
                "lender": "Acme",
                "value": None,
                "requirements": [],
            }
        ]
        assert context.user_id == 1
        assert context.call_score is None

        agent = await AgentSessionRepository(db_session, clock=clock).get(7)
        assert agent.status == AgentStatus.ON_CALL
        assert agent.current_call_session_id == call.id

    async def test_context_carries_score_summary(self, service, db_session, clock) -> None:
        await ScoringEngine(db_session, clock=clock).seed(1, base_score=6)

        _, context = await service.initiate_call(user_id=1, agent_id=7)

        assert context.call_score is not None
        assert context.call_score.current_score == 6
        assert context.call_score.total_attempts == 0

    async def test_claims_queue_entry(self, service, db_session, clock) -> None:
        await ScoringEngine(db_session, clock=clock).seed(1)
        builder = QueueBuilder(db_session, clock=clock)
        await builder.materialize()
        (entry,), _ = await builder.list_for_agent(7)

        call, _ = await service.initiate_call(user_id=1, agent_id=7, queue_id=entry.id)

        assert call.call_queue_id == entry.id
        claimed = await builder.get(entry.id)
        assert claimed.status == QueueStatus.ASSIGNED
        assert claimed.assigned_to_agent_id == 7

    async def test_queue_entry_for_another_user(self, service, db_session, clock) -> None:
        await ScoringEngine(db_session, clock=clock).seed(2)
        builder = QueueBuilder(db_session, clock=clock)
        await builder.materialize()
        (entry,), _ = await builder.list_for_agent(7)

        with pytest.raises(ValidationError):
            await service.initiate_call(user_id=1, agent_id=7, queue_id=entry.id)

    async def test_unknown_user(self, service, user_provider) -> None:
        user_provider.missing.add(99)
        with pytest.raises(NotFoundError):
            await service.initiate_call(user_id=99, agent_id=7)

    async def test_user_service_down(self, service, user_provider) -> None:
        user_provider.unavailable = True
        with pytest.raises(DependencyError):
            await service.initiate_call(user_id=1, agent_id=7)

    async def test_agent_cannot_hold_two_calls(self, service) -> None:
        await service.initiate_call(user_id=1, agent_id=7)
        with pytest.raises(ConflictError):
            await service.initiate_call(user_id=2, agent_id=7)


class TestStatusUpdates:
    async def test_full_lifecycle_stamps_times(self, service, clock) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)

        clock.advance(seconds=5)
        await service.update_call_status(call.id, 7, _status(CallStatus.RINGING, twilio_call_sid="CA1"))
        clock.advance(seconds=5)
        await service.update_call_status(call.id, 7, _status(CallStatus.CONNECTED))
        clock.advance(seconds=125)
        updated = await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))

        assert updated.twilio_call_sid == "CA1"
        assert updated.status == CallStatus.COMPLETED
        assert updated.talk_time_seconds == 125
        assert updated.duration_seconds == 135

    async def test_repeat_status_is_a_no_op(self, service, clock) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, _status(CallStatus.RINGING))
        again = await service.update_call_status(call.id, 7, _status(CallStatus.RINGING))
        assert again.status == CallStatus.RINGING

    async def test_backwards_move_conflicts(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, _status(CallStatus.CONNECTED))

        with pytest.raises(ConflictError):
            await service.update_call_status(call.id, 7, _status(CallStatus.RINGING))

    async def test_ended_call_is_frozen(self, service, clock) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        clock.advance(seconds=30)
        await service.update_call_status(call.id, 7, _status(CallStatus.NO_ANSWER))

        clock.advance(seconds=30)
        same = await service.update_call_status(call.id, 7, _status(CallStatus.NO_ANSWER))
        assert same.duration_seconds == 30

        with pytest.raises(ConflictError):
            await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))

    async def test_call_sid_cannot_change(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, UpdateCallStatusRequest(twilio_call_sid="CA1"))

        with pytest.raises(ConflictError):
            await service.update_call_status(call.id, 7, UpdateCallStatusRequest(twilio_call_sid="CA2"))

    async def test_other_agents_session(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)

        with pytest.raises(PermissionDeniedError):
            await service.update_call_status(call.id, 8, _status(CallStatus.RINGING))

        updated = await service.update_call_status(call.id, 8, _status(CallStatus.RINGING), privileged=True)
        assert updated.status == CallStatus.RINGING


class TestWebhooks:
    async def _call_with_sid(self, service, sid="CA100"):
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, UpdateCallStatusRequest(twilio_call_sid=sid))
        return call

    async def test_provider_progress(self, service, clock) -> None:
        call = await self._call_with_sid(service)

        clock.advance(seconds=3)
        await service.handle_twilio_webhook(_webhook("CA100", "ringing"))
        clock.advance(seconds=4)
        await service.handle_twilio_webhook(_webhook("CA100", "in-progress"))
        clock.advance(seconds=60)
        ended = await service.handle_twilio_webhook(
            _webhook("CA100", "completed", RecordingUrl="https://rec.example/1")
        )

        assert ended.id == call.id
        assert ended.status == CallStatus.COMPLETED
        assert ended.provider_status == "completed"
        assert ended.recording_url == "https://rec.example/1"
        assert ended.talk_time_seconds == 60

    async def test_replayed_terminal_event_is_idempotent(self, service, clock) -> None:
        await self._call_with_sid(service)
        clock.advance(seconds=20)
        first = await service.handle_twilio_webhook(_webhook("CA100", "completed"))
        ended_at = first.ended_at

        clock.advance(minutes=5)
        replay = await service.handle_twilio_webhook(_webhook("CA100", "completed"))
        late = await service.handle_twilio_webhook(_webhook("CA100", "in-progress"))

        assert ensure_utc(replay.ended_at) == ensure_utc(ended_at) == T0 + timedelta(seconds=20)
        assert late.status == CallStatus.COMPLETED
        assert late.duration_seconds == 20

    async def test_out_of_order_event_is_ignored(self, service) -> None:
        call = await self._call_with_sid(service)
        await service.handle_twilio_webhook(_webhook("CA100", "in-progress"))

        stale = await service.handle_twilio_webhook(_webhook("CA100", "ringing"))

        assert stale.id == call.id
        assert stale.status == CallStatus.CONNECTED

    async def test_busy_maps_to_no_answer(self, service) -> None:
        await self._call_with_sid(service)
        ended = await service.handle_twilio_webhook(_webhook("CA100", "busy"))
        assert ended.status == CallStatus.NO_ANSWER

    async def test_provider_failure_records_reason(self, service) -> None:
        await self._call_with_sid(service)
        ended = await service.handle_twilio_webhook(_webhook("CA100", "failed"))
        assert ended.status == CallStatus.FAILED
        assert ended.failure_reason == "Provider status: failed"

    async def test_unknown_call_sid(self, service) -> None:
        assert await service.handle_twilio_webhook(_webhook("CA-unknown", "ringing")) is None


class TestRecordOutcome:
    async def test_final_outcome_rescores_and_releases(self, service, db_session, clock) -> None:
        call = await _finished_call(service, clock, 1, 7, OutcomeType.NO_ANSWER, talk_seconds=90)

        calls = CallSessionRepository(db_session)
        assert await calls.has_outcome(call.id, final_only=True)

        score = await ScoringEngine(db_session, clock=clock).get(1)
        assert score.current_score == 5
        assert score.total_attempts == 1
        assert ensure_utc(score.next_call_after) == clock.now + timedelta(hours=4)

        agent = await AgentSessionRepository(db_session, clock=clock).get(7)
        assert agent.status == AgentStatus.AVAILABLE
        assert agent.current_call_session_id is None
        assert agent.calls_completed_today == 1
        assert agent.total_talk_time_seconds == 90

    async def test_outcome_stores_resolved_rule(self, service, db_session) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))

        outcome = await service.record_outcome(
            call.id,
            7,
            RecordOutcomeRequest(
                outcome_type=OutcomeType.WRONG_NUMBER,
                outcome_notes="Number belongs to a shop",
                next_call_delay_hours=72,
                documents_requested=["ID_DOCUMENT", "ID_DOCUMENT", "BANK_STATEMENTS"],
                sms_sent=True,
            ),
        )

        assert outcome.is_final is True
        assert outcome.score_adjustment == 50
        assert outcome.next_call_delay_hours == 72
        assert outcome.documents_requested == ["ID_DOCUMENT", "BANK_STATEMENTS"]
        assert outcome.recorded_by_agent_id == 7

    async def test_second_final_outcome_conflicts(self, service, clock) -> None:
        call = await _finished_call(service, clock, 1, 7, OutcomeType.CONTACTED)

        with pytest.raises(ConflictError):
            await service.record_outcome(call.id, 7, RecordOutcomeRequest(outcome_type=OutcomeType.BUSY))

    async def test_outcome_during_call_releases_agent_at_end(self, service, db_session, clock) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, UpdateCallStatusRequest(twilio_call_sid="CA5"))
        await service.handle_twilio_webhook(_webhook("CA5", "in-progress"))

        live = await service.record_outcome(call.id, 7, RecordOutcomeRequest(outcome_type=OutcomeType.CONTACTED))
        assert live.is_final is False

        agents = AgentSessionRepository(db_session, clock=clock)
        assert (await agents.get(7)).status == AgentStatus.ON_CALL

        clock.advance(seconds=45)
        await service.handle_twilio_webhook(_webhook("CA5", "completed"))

        agent = await agents.get(7)
        assert agent.status == AgentStatus.AVAILABLE
        assert agent.total_talk_time_seconds == 45

    async def test_other_agent_cannot_record(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        request = RecordOutcomeRequest(outcome_type=OutcomeType.BUSY)

        with pytest.raises(PermissionDeniedError):
            await service.record_outcome(call.id, 8, request)

        outcome = await service.record_outcome(call.id, 8, request, privileged=True)
        assert outcome.recorded_by_agent_id == 8

    async def test_unknown_session(self, service) -> None:
        with pytest.raises(NotFoundError):
            await service.record_outcome(uuid4(), 7, RecordOutcomeRequest(outcome_type=OutcomeType.BUSY))

    async def test_callback_request_schedules_callback(self, service, db_session, clock) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))
        when = T0 + timedelta(days=1)

        await service.record_outcome(
            call.id,
            7,
            RecordOutcomeRequest(
                outcome_type=OutcomeType.CALLBACK_REQUESTED,
                callback_date_time=when,
                callback_reason="Wants to talk to partner first",
            ),
        )

        callbacks = CallbackScheduler(db_session, clock=clock)
        (callback,) = await callbacks.due(now=when)
        assert callback.user_id == 1
        assert callback.preferred_agent_id == 7
        assert callback.original_call_session_id == call.id
        assert callback.callback_reason == "Wants to talk to partner first"

        score = await ScoringEngine(db_session, clock=clock).get(1)
        assert score.current_score == 0

    async def test_outcome_closes_queue_entry_and_cancels_stale_ones(self, service, db_session, clock) -> None:
        builder = QueueBuilder(db_session, clock=clock)
        await ScoringEngine(db_session, clock=clock).seed(1)
        await builder.materialize()
        (entry,), _ = await builder.list_for_agent(7)
        follow_up, _ = await builder.enqueue_follow_up(1, claim_id=10)

        call, _ = await service.initiate_call(user_id=1, agent_id=7, queue_id=entry.id)
        await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))
        await service.record_outcome(call.id, 7, RecordOutcomeRequest(outcome_type=OutcomeType.CONTACTED))

        assert (await builder.get(entry.id)).status == QueueStatus.COMPLETED
        assert (await builder.get(follow_up.id)).status == QueueStatus.PENDING

    async def test_ending_a_callback_call_completes_the_callback(self, service, db_session, clock) -> None:
        callback = await CallbackScheduler(db_session, clock=clock).create(
            user_id=3,
            scheduled_for=T0,
            original_call_session_id=None,
            preferred_agent_id=7,
        )
        builder = QueueBuilder(db_session, clock=clock)
        await builder.materialize()
        (entry,), _ = await builder.list_for_agent(7)

        call, _ = await service.initiate_call(user_id=3, agent_id=7, queue_id=entry.id)
        await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))

        done = await CallbackScheduler(db_session, clock=clock).get(callback.id)
        assert done.status == CallbackStatus.COMPLETED
        assert done.completed_call_session_id == call.id

    async def test_failure_leaves_nothing_behind(
        self, service, db_session, session_factory, clock, monkeypatch
    ) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        call_id = call.id
        await service.update_call_status(call.id, 7, _status(CallStatus.COMPLETED))
        await db_session.commit()

        async def _boom(self, *args, **kwargs):
            raise RuntimeError("callback store down")

        monkeypatch.setattr(CallbackScheduler, "create", _boom)

        with pytest.raises(RuntimeError):
            await service.record_outcome(
                call_id,
                7,
                RecordOutcomeRequest(
                    outcome_type=OutcomeType.CALLBACK_REQUESTED,
                    callback_date_time=T0 + timedelta(hours=3),
                ),
            )
        await db_session.rollback()

        async with session_factory() as fresh:
            assert await CallSessionRepository(fresh).has_outcome(call_id) is False
            assert await ScoringEngine(fresh, clock=clock).get(1) is None
            agent = await AgentSessionRepository(fresh, clock=clock).get(7)
            assert agent.status == AgentStatus.ON_CALL


class TestStaleSessions:
    async def test_stuck_calls_are_failed(self, service, db_session, clock) -> None:
        stuck, _ = await service.initiate_call(user_id=1, agent_id=7)
        ringing, _ = await service.initiate_call(user_id=2, agent_id=8)
        await service.update_call_status(ringing.id, 8, _status(CallStatus.RINGING))

        clock.advance(minutes=31)
        expired = await service.expire_stale_sessions()

        assert expired == 1
        calls = CallSessionRepository(db_session)
        failed = await calls.get_by_id(stuck.id)
        assert failed.status == CallStatus.FAILED
        assert failed.failure_reason == "Timed out"
        assert [(o.outcome_type, o.is_final, o.outcome_notes) for o in failed.outcomes] == [
            (OutcomeType.FAILED, True, STALE_CALL_NOTE)
        ]
        assert (await calls.get_by_id(ringing.id)).status == CallStatus.RINGING

        agent = await AgentSessionRepository(db_session, clock=clock).get(7)
        assert agent.status == AgentStatus.AVAILABLE

        score = await ScoringEngine(db_session, clock=clock).get(1)
        assert ensure_utc(score.next_call_after) == clock.now + timedelta(hours=1)

    async def test_recent_calls_are_left_alone(self, service, clock) -> None:
        await service.initiate_call(user_id=1, agent_id=7)
        clock.advance(minutes=10)
        assert await service.expire_stale_sessions() == 0


class TestReads:
    async def test_current_call(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)

        current = await service.get_current_call(7)

        assert current.id == call.id
        assert current.user_context.user_id == 1
        assert await service.get_current_call(8) is None

    async def test_session_detail_degrades_without_user_service(self, service, user_provider) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)
        user_provider.unavailable = True

        detail = await service.get_call_session(call.id, 7)

        assert detail.id == call.id
        assert detail.user_context is None

    async def test_session_detail_is_scoped_to_agent(self, service) -> None:
        call, _ = await service.initiate_call(user_id=1, agent_id=7)

        with pytest.raises(PermissionDeniedError):
            await service.get_call_session(call.id, 8)
        assert (await service.get_call_session(call.id, 8, privileged=True)).id == call.id

    async def test_history_is_scoped_and_carries_latest_outcome(self, service, clock) -> None:
        first = await _finished_call(service, clock, 1, 7, OutcomeType.NO_ANSWER)
        clock.advance(minutes=1)
        await _finished_call(service, clock, 2, 8, OutcomeType.CONTACTED)

        own = await service.get_call_history(CallHistoryFilters(), agent_id=7)
        assert own.meta.total == 1
        assert own.calls[0].id == first.id
        assert own.calls[0].latest_outcome.outcome_type == OutcomeType.NO_ANSWER

        everything = await service.get_call_history(CallHistoryFilters(), agent_id=7, privileged=True)
        assert [c.user_id for c in everything.calls] == [2, 1]

        contacted = await service.get_call_history(
            CallHistoryFilters(outcome=OutcomeType.CONTACTED), agent_id=7, privileged=True
        )
        assert [c.user_id for c in contacted.calls] == [2]

    async def test_analytics(self, service, clock) -> None:
        await _finished_call(service, clock, 1, 7, OutcomeType.CONTACTED, talk_seconds=60)
        await _finished_call(service, clock, 2, 7, OutcomeType.NO_ANSWER, talk_seconds=120)
        await _finished_call(service, clock, 3, 7, OutcomeType.CONTACTED, talk_seconds=180)

        analytics = await service.get_call_analytics(CallAnalyticsFilters(), agent_id=7)

        assert analytics.total_calls == 3
        assert analytics.completed_calls == 3
        assert analytics.successful_contacts == 2
        assert analytics.no_answers == 1
        assert analytics.outcome_counts == {"contacted": 2, "no_answer": 1}
        assert analytics.contact_rate == 67
        assert analytics.avg_talk_time_minutes == 2.0
        assert analytics.avg_duration_minutes == 2.17

        contacted_only = await service.get_call_analytics(
            CallAnalyticsFilters(outcome_type=OutcomeType.CONTACTED), agent_id=7
        )
        assert contacted_only.total_calls == 2

    async def test_analytics_without_calls(self, service) -> None:
        analytics = await service.get_call_analytics(CallAnalyticsFilters(), agent_id=7)
        assert analytics.total_calls == 0
        assert analytics.contact_rate == 0
        assert analytics.avg_talk_time_minutes == 0.0

    async def test_todays_summary(self, service, clock) -> None:
        await _finished_call(service, clock, 1, 7, OutcomeType.CONTACTED, talk_seconds=120)
        await _finished_call(service, clock, 2, 7, OutcomeType.BUSY, talk_seconds=0)

        summary = await service.get_todays_summary(7)

        assert summary.calls_today == 2
        assert summary.contacts_today == 1
        assert summary.contact_rate == 50
        assert summary.avg_talk_time_minutes == 1.0
