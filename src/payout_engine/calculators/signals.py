"""Eligibility signals: badges, required training, on-time history.

Signals are read-only inputs to tiering and bonuses. Any provider failure
must surface as SignalsUnavailableError so callers can degrade instead of
blocking the payout.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import Row, Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.models import (
    EarnedBadge,
    RequiredTraining,
    SettlementRecord,
    TrainingCompletion,
)


class SignalsUnavailableError(Exception):
    """Raised when eligibility signals cannot be read (upstream outage)."""

    def __init__(self, worker_id: UUID, reason: str):
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(f"Eligibility signals unavailable for worker {worker_id}: {reason}")


class EligibilitySignalsProvider(Protocol):
    """Source of per-worker eligibility signals."""

    async def get_badges(self, worker_id: UUID) -> set[str]:
        """Names of badges the worker has earned."""
        ...

    async def has_completed_required_training(self, worker_id: UUID, role: str) -> bool:
        """Whether every training module required for the role is complete."""
        ...

    async def on_time_ratio(self, worker_id: UUID, window_size: int) -> float | None:
        """On-time ratio in [0, 1] over the trailing window, None if no history."""
        ...


class SqlEligibilitySignals:
    """Eligibility signals read from the application database.

    Each lookup runs in a SAVEPOINT on the caller's session. A failed
    statement rolls back to it, leaving the caller's transaction usable
    on backends that abort a transaction after an error.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch(self, worker_id: UUID, lookup: str, stmt: Select[Any]) -> list[Row[Any]]:
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
                return list(result.all())
        except SQLAlchemyError as exc:
            raise SignalsUnavailableError(worker_id, f"{lookup} lookup failed") from exc

    async def get_badges(self, worker_id: UUID) -> set[str]:
        rows = await self._fetch(
            worker_id,
            "badge",
            select(EarnedBadge.badge_name).where(EarnedBadge.worker_id == worker_id),
        )
        return {name for (name,) in rows}

    async def has_completed_required_training(self, worker_id: UUID, role: str) -> bool:
        required = await self._fetch(
            worker_id,
            "training",
            select(RequiredTraining.module_code).where(RequiredTraining.role == role),
        )
        completed = await self._fetch(
            worker_id,
            "training",
            select(TrainingCompletion.module_code).where(
                TrainingCompletion.worker_id == worker_id
            ),
        )
        # No required modules for the role means nothing to complete
        return {code for (code,) in required} <= {code for (code,) in completed}

    async def on_time_ratio(self, worker_id: UUID, window_size: int) -> float | None:
        """Share of the last N completed jobs finished by their scheduled time."""
        rows = await self._fetch(
            worker_id,
            "completion history",
            select(SettlementRecord.job_completed_at, SettlementRecord.scheduled_at)
            .where(
                SettlementRecord.worker_id == worker_id,
                SettlementRecord.job_completed_at.is_not(None),
                SettlementRecord.scheduled_at.is_not(None),
            )
            .order_by(SettlementRecord.job_completed_at.desc())
            .limit(window_size),
        )
        if not rows:
            return None
        on_time = sum(1 for completed_at, scheduled_at in rows if completed_at <= scheduled_at)
        return on_time / len(rows)
