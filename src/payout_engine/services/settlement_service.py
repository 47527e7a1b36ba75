"""Settlement lifecycle: opening records, completion and client payment, admin remediation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payout_engine.calculators.tier_resolver import WorkerNotFoundError
from payout_engine.models import SettlementRecord, WorkerProfile
from payout_engine.services.settlement_gate import SettlementGate, SettlementNotFoundError
from payout_engine.services.state_machine import PayoutStatus

logger = logging.getLogger(__name__)

COMPLETED_BY_VALUES = ("worker", "admin")


class InvalidSettlementInputError(Exception):
    """Raised for malformed settlement input. Nothing is written."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class SettlementService:
    """Creates settlement records and applies completion and remediation.

    Payout columns stay with the gate; this service writes inputs,
    completion fields and blockers cleared by an administrator.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gate: SettlementGate,
    ):
        self.session_factory = session_factory
        self.gate = gate

    async def get_settlement(self, settlement_id: UUID) -> SettlementRecord:
        async with self.session_factory() as session:
            return await self._load(session, settlement_id)

    async def open_settlement(
        self,
        job_id: str,
        worker_id: UUID,
        pre_tier_base_cents: int,
        quote_total_cents: int,
        scheduled_at: datetime | None = None,
        bonus_override: bool = False,
        client_fully_paid_at: datetime | None = None,
    ) -> SettlementRecord:
        """Open the settlement for a job, or return the one already open.

        A positive base opens as pending; a zero base means nothing is
        owed (not_applicable).

        Raises:
            InvalidSettlementInputError: Negative amounts, empty job id, or
                a job already settled for a different worker
            WorkerNotFoundError: If the worker profile does not exist
        """
        if not job_id:
            raise InvalidSettlementInputError("job_id is required", field="job_id")
        if pre_tier_base_cents < 0:
            raise InvalidSettlementInputError(
                f"pre_tier_base_cents must not be negative, got {pre_tier_base_cents}",
                field="pre_tier_base_cents",
            )
        if quote_total_cents < 0:
            raise InvalidSettlementInputError(
                f"quote_total_cents must not be negative, got {quote_total_cents}",
                field="quote_total_cents",
            )

        async with self.session_factory() as session:
            existing = await self._by_job(session, job_id)
            if existing is not None:
                return self._same_worker(existing, worker_id)

            if await session.get(WorkerProfile, worker_id) is None:
                raise WorkerNotFoundError(worker_id)

            status = (
                PayoutStatus.PENDING if pre_tier_base_cents > 0 else PayoutStatus.NOT_APPLICABLE
            )
            record = SettlementRecord(
                job_id=job_id,
                worker_id=worker_id,
                pre_tier_base_cents=pre_tier_base_cents,
                quote_total_cents=quote_total_cents,
                scheduled_at=scheduled_at,
                bonus_override=bonus_override,
                client_fully_paid_at=client_fully_paid_at,
                payout_status=status.value,
                payout_blockers=[],
                bonus_breakdown_json=[],
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Another request opened the same job first
                await session.rollback()
                existing = await self._by_job(session, job_id)
                if existing is None:
                    raise
                return self._same_worker(existing, worker_id)

            await session.refresh(record)
            logger.info(
                "Opened settlement %s for job %s (worker %s, %s)",
                record.settlement_id,
                job_id,
                worker_id,
                status.value,
            )
            return record

    async def record_completion(
        self,
        settlement_id: UUID,
        completed_by: str,
        completed_at: datetime | None = None,
    ) -> SettlementRecord:
        """Record the job completion signal.

        Worker-reported completion sets the completion time. Admin
        confirmation is recorded whether or not the worker reported first.

        Raises:
            InvalidSettlementInputError: If completed_by is not worker/admin
            SettlementNotFoundError: If the settlement does not exist
        """
        if completed_by not in COMPLETED_BY_VALUES:
            raise InvalidSettlementInputError(
                f"completed_by must be one of {COMPLETED_BY_VALUES}, got {completed_by!r}",
                field="completed_by",
            )

        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.is_paid:
                logger.info(
                    "Completion by %s ignored for paid settlement %s",
                    completed_by,
                    settlement_id,
                )
                return record

            values: dict[str, Any] = {}
            if record.job_completed_at is None:
                values["job_completed_at"] = completed_at or datetime.now(timezone.utc)
                values["job_completed_by"] = completed_by
            if completed_by == "admin":
                values["completion_confirmed_by_admin"] = True
                values["job_completed_by"] = "admin"
            if not values:
                return record

            if not await self._update_unless_paid(session, settlement_id, values):
                return await self._load(session, settlement_id, refresh=True)
            await session.commit()
            record = await self._load(session, settlement_id, refresh=True)

        logger.info("Completion recorded for settlement %s by %s", settlement_id, completed_by)
        return record

    async def record_client_payment(
        self, settlement_id: UUID, paid_at: datetime | None = None
    ) -> SettlementRecord:
        """Record that the client has paid for the job in full.

        The first payment time wins; repeated notifications are no-ops.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
        """
        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.client_fully_paid_at is not None or record.is_paid:
                return record

            values = {"client_fully_paid_at": paid_at or datetime.now(timezone.utc)}
            if not await self._update_unless_paid(
                session, settlement_id, values, SettlementRecord.client_fully_paid_at.is_(None)
            ):
                return await self._load(session, settlement_id, refresh=True)
            await session.commit()
            record = await self._load(session, settlement_id, refresh=True)

        logger.info("Client payment recorded for settlement %s", settlement_id)
        return record

    async def clear_blockers(
        self, settlement_id: UUID, actor: str = "admin"
    ) -> SettlementRecord:
        """Clear recorded blockers and any permanent transfer failure.

        A blocked settlement returns to pending; the next release
        re-evaluates from scratch with a fresh transfer key if the last
        attempt failed definitively.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
        """
        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.is_paid:
                self.gate.reject_paid_mutation(record, "clear_blockers", actor)
                return record

            values: dict[str, Any] = {
                "payout_blockers": [],
                "last_transfer_error": None,
                "last_transfer_retryable": False,
            }
            if record.payout_status == PayoutStatus.BLOCKED.value:
                values["payout_status"] = PayoutStatus.PENDING.value

            if not await self._update_unless_paid(session, settlement_id, values):
                winner = await self._load(session, settlement_id, refresh=True)
                self.gate.reject_paid_mutation(winner, "clear_blockers", actor)
                return winner
            await session.commit()
            record = await self._load(session, settlement_id, refresh=True)

        logger.info("Blockers cleared on settlement %s by %s", settlement_id, actor)
        return record

    async def _load(
        self, session: AsyncSession, settlement_id: UUID, refresh: bool = False
    ) -> SettlementRecord:
        record = await session.get(
            SettlementRecord, settlement_id, populate_existing=refresh
        )
        if record is None:
            raise SettlementNotFoundError(settlement_id)
        return record

    async def _by_job(self, session: AsyncSession, job_id: str) -> SettlementRecord | None:
        result = await session.execute(
            select(SettlementRecord).where(SettlementRecord.job_id == job_id)
        )
        return result.scalar_one_or_none()

    async def _update_unless_paid(
        self,
        session: AsyncSession,
        settlement_id: UUID,
        values: dict[str, Any],
        *criteria: ColumnElement[bool],
    ) -> bool:
        result = await session.execute(
            update(SettlementRecord)
            .where(
                SettlementRecord.settlement_id == settlement_id,
                SettlementRecord.payout_status != PayoutStatus.PAID.value,
                *criteria,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    @staticmethod
    def _same_worker(record: SettlementRecord, worker_id: UUID) -> SettlementRecord:
        if record.worker_id != worker_id:
            raise InvalidSettlementInputError(
                f"Job {record.job_id} is already settled for another worker",
                field="job_id",
            )
        return record
