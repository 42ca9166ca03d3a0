"""
Scoring engine: turns call outcomes into priority score changes and
next-eligible call times.

Lower scores are called sooner. Scores never go below zero; the floor is
applied inside the store on every update, not just on creation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from dialler.calls.models import OutcomeType, UserCallScore
from dialler.shared.clock import Clock, utcnow
from dialler.shared.exceptions import DependencyError
from dialler.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutcomeRule:
    """Default score adjustment and retry delay for one outcome."""

    score_adjustment: int
    delay_hours: int


OUTCOME_RULES: dict[OutcomeType, OutcomeRule] = {
    OutcomeType.CONTACTED: OutcomeRule(score_adjustment=-10, delay_hours=24),
    OutcomeType.NO_ANSWER: OutcomeRule(score_adjustment=5, delay_hours=4),
    OutcomeType.BUSY: OutcomeRule(score_adjustment=2, delay_hours=2),
    OutcomeType.LEFT_VOICEMAIL: OutcomeRule(score_adjustment=10, delay_hours=8),
    OutcomeType.WRONG_NUMBER: OutcomeRule(score_adjustment=50, delay_hours=48),
    OutcomeType.NOT_INTERESTED: OutcomeRule(score_adjustment=100, delay_hours=48),
    # The real contact time for a callback lives on the Callback row.
    OutcomeType.CALLBACK_REQUESTED: OutcomeRule(score_adjustment=-20, delay_hours=0),
    OutcomeType.FAILED: OutcomeRule(score_adjustment=0, delay_hours=1),
}

UNKNOWN_OUTCOME_RULE = OutcomeRule(score_adjustment=0, delay_hours=4)


def rule_for(outcome_type: OutcomeType | str) -> OutcomeRule:
    """Return the default rule for an outcome, tolerating unknown values."""
    try:
        return OUTCOME_RULES[OutcomeType(outcome_type)]
    except (ValueError, KeyError):
        return UNKNOWN_OUTCOME_RULE


def resolve(
    outcome_type: OutcomeType | str,
    score_adjustment: int | None = None,
    delay_hours: int | None = None,
) -> OutcomeRule:
    """Apply caller overrides on top of the default rule.

    ``None`` means "use the default"; an explicit ``0`` is an override.
    """
    rule = rule_for(outcome_type)
    return OutcomeRule(
        score_adjustment=rule.score_adjustment if score_adjustment is None else score_adjustment,
        delay_hours=rule.delay_hours if delay_hours is None else delay_hours,
    )


@dataclass(frozen=True)
class ScoreUpdate:
    """Result of applying one outcome to a user's score."""

    user_id: int
    new_score: int
    next_call_after: datetime
    score_adjustment: int
    delay_hours: int
    total_attempts: int


class ScoringEngine:
    """Reads and writes the per-user score store."""

    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        """Initialize the engine.

        Args:
            session: Async database session (the caller owns the transaction).
            clock: Source of "now".
        """
        self._session = session
        self._clock = clock

    def _insert(self) -> Any:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(UserCallScore)
        if dialect == "sqlite":
            return sqlite_insert(UserCallScore)
        raise DependencyError(f"Unsupported database dialect for score upsert: {dialect}")

    async def get(self, user_id: int) -> UserCallScore | None:
        """Get the score record for a user, bypassing stale identity-map state."""
        stmt = (
            select(UserCallScore)
            .where(UserCallScore.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def adjust(
        self,
        user_id: int,
        outcome_type: OutcomeType,
        explicit_adjustment: int | None = None,
        explicit_delay_hours: int | None = None,
    ) -> ScoreUpdate:
        """Apply an outcome to a user's score as a single atomic upsert.

        Args:
            user_id: User whose score changes.
            outcome_type: Outcome being applied.
            explicit_adjustment: Override for the default score delta.
            explicit_delay_hours: Override for the default retry delay.

        Returns:
            The resulting score and next eligible call time.
        """
        rule = resolve(outcome_type, explicit_adjustment, explicit_delay_hours)
        now = self._clock()
        next_call_after = now + timedelta(hours=rule.delay_hours)
        adjustment = rule.score_adjustment
        contacted = 1 if outcome_type == OutcomeType.CONTACTED else 0
        seed = max(0, adjustment)

        table = UserCallScore.__table__
        stmt = self._insert().values(
            user_id=user_id,
            current_score=seed,
            base_score=0,
            outcome_penalty_score=seed,
            time_penalty_score=0,
            total_attempts=1,
            successful_calls=contacted,
            last_outcome=outcome_type,
            last_call_at=now,
            next_call_after=next_call_after,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_={
                "current_score": case(
                    (table.c.current_score + adjustment < 0, 0),
                    else_=table.c.current_score + adjustment,
                ),
                "outcome_penalty_score": case(
                    (table.c.outcome_penalty_score + adjustment < 0, 0),
                    else_=table.c.outcome_penalty_score + adjustment,
                ),
                "total_attempts": table.c.total_attempts + 1,
                "successful_calls": table.c.successful_calls + contacted,
                "last_outcome": outcome_type,
                "last_call_at": now,
                "next_call_after": next_call_after,
                "updated_at": now,
            },
        )
        await self._session.execute(stmt)

        score = await self.get(user_id)
        if score is None:
            raise DependencyError(f"Score upsert for user {user_id} did not persist")

        logger.info(
            "User score adjusted",
            extra={
                "user_id": user_id,
                "outcome_type": outcome_type.value,
                "score_adjustment": adjustment,
                "new_score": score.current_score,
                "next_call_after": next_call_after.isoformat(),
            },
        )
        return ScoreUpdate(
            user_id=user_id,
            new_score=score.current_score,
            next_call_after=next_call_after,
            score_adjustment=adjustment,
            delay_hours=rule.delay_hours,
            total_attempts=score.total_attempts,
        )

    async def seed(self, user_id: int, base_score: int = 0) -> UserCallScore:
        """Create a score record for a new lead so it is eligible immediately.

        Existing records are left untouched.
        """
        now = self._clock()
        base = max(0, base_score)
        stmt = self._insert().values(
            user_id=user_id,
            current_score=base,
            base_score=base,
            outcome_penalty_score=0,
            time_penalty_score=0,
            total_attempts=0,
            successful_calls=0,
            next_call_after=None,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=[UserCallScore.__table__.c.user_id])
        await self._session.execute(stmt)

        score = await self.get(user_id)
        if score is None:
            raise DependencyError(f"Score seed for user {user_id} did not persist")
        return score
