"""Settlement gate: computes chef payouts and decides whether money moves.

The gate is the only writer of the payout columns on a settlement record.
Each invocation is short and stateless against the persisted record:

1. Read and compute in one short transaction, persisting the snapshot
   (tier, multiplier, currency lock) the first time. The bonus and amount
   are recomputed on each release until they have been sent under the
   current idempotency key, and are fixed from then on.
2. Call the payment processor with no transaction open, using a stable
   per-settlement idempotency key.
3. Record the outcome in a second short transaction. The move to paid
   is a compare-and-swap on payout_status != 'paid'; a caller that loses
   the race returns the winner's record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import ColumnElement, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payout_engine.calculators.bonus_calculator import BONUS_CAP_PCT, BonusCalculator
from payout_engine.calculators.currency import BASE_CURRENCY, convert_for_display
from payout_engine.calculators.signals import (
    EligibilitySignalsProvider,
    SqlEligibilitySignals,
)
from payout_engine.calculators.tier_resolver import (
    TierResolver,
    WorkerNotFoundError,
    tier_label,
)
from payout_engine.calculators.types import BonusLine, BonusResult
from payout_engine.config import PayoutFlags
from payout_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    PaidMutationRejected,
    PayoutBlocked,
    PayoutHoldChanged,
    PayoutPaid,
    SettlementComputed,
)
from payout_engine.models import SettlementRecord, WorkerProfile
from payout_engine.providers.base import (
    TransferProvider,
    TransferProviderError,
    TransferProviderNotConfiguredError,
    TransferResult,
    TransferTimeoutError,
)
from payout_engine.services.currency_lock import (
    CurrencyLockService,
    CurrencyRateStore,
    SqlCurrencyRateStore,
)
from payout_engine.services.state_machine import PayoutStateMachine, PayoutStatus

logger = logging.getLogger(__name__)

PENDING_VERIFICATION = "Transfer pending verification"
NO_PAYOUT_ACCOUNT = "No payout account on file"
PAYOUTS_DISABLED = "Payouts not enabled for worker"
COMPLETION_MISSING = "Job completion not recorded"
ADMIN_CONFIRMATION_MISSING = "Awaiting admin confirmation of completion"
CLIENT_PAYMENT_MISSING = "Client payment not received"
NON_POSITIVE_AMOUNT = "Payout amount is not positive"


class SettlementNotFoundError(Exception):
    """Raised when a settlement record does not exist."""

    def __init__(self, settlement_id: UUID):
        self.settlement_id = settlement_id
        super().__init__(f"Settlement {settlement_id} not found")


def structural_blockers(
    record: SettlementRecord,
    profile: WorkerProfile,
    flags: PayoutFlags,
) -> list[str]:
    """Reasons money cannot move for this settlement right now.

    A manual hold is not a blocker; it is checked separately and wins.
    """
    blockers: list[str] = []
    if not profile.payout_account_ref:
        blockers.append(NO_PAYOUT_ACCOUNT)
    if not profile.payouts_enabled:
        blockers.append(PAYOUTS_DISABLED)
    if record.job_completed_at is None:
        blockers.append(COMPLETION_MISSING)
    elif flags.require_admin_completion and not record.completion_confirmed_by_admin:
        blockers.append(ADMIN_CONFIRMATION_MISSING)
    if record.client_fully_paid_at is None:
        blockers.append(CLIENT_PAYMENT_MISSING)
    if record.last_transfer_error and not record.last_transfer_retryable:
        blockers.append(f"Previous transfer failed: {record.last_transfer_error}")
    return blockers


@dataclass(frozen=True)
class _Snapshot:
    """Values frozen on first computation."""

    tier: str
    multiplier: Decimal
    base_cents: int
    currency: str
    fx_rate: Decimal


@dataclass(frozen=True)
class SettlementPreview:
    """Worker-facing earnings estimate, or the final values once paid."""

    settlement_id: UUID
    status: str
    tier: str
    tier_label: str
    multiplier: Decimal
    base_cents: int
    bonus_cents: int
    bonus_breakdown: list[dict[str, Any]]
    amount_cents: int
    currency: str
    fx_rate: Decimal
    display_amount: str
    is_final: bool = False


@dataclass(frozen=True)
class ReleaseResult:
    """Outcome of one release attempt."""

    settlement_id: UUID
    status: str
    blockers: tuple[str, ...] = field(default_factory=tuple)
    transfer_id: str | None = None
    created_transfer: bool = False

    @classmethod
    def from_record(
        cls, record: SettlementRecord, created_transfer: bool = False
    ) -> ReleaseResult:
        return cls(
            settlement_id=record.settlement_id,
            status=record.payout_status,
            blockers=tuple(record.payout_blockers or ()),
            transfer_id=record.external_transfer_id,
            created_transfer=created_transfer,
        )


class SettlementGate:
    """Orchestrates tiering, bonus, currency lock and transfer for a settlement.

    Usage:
        gate = SettlementGate(session_factory, build_transfer_provider(settings.transfer_provider))
        preview = await gate.compute_preview(settlement_id)
        result = await gate.attempt_release(settlement_id, triggered_by="admin")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: TransferProvider | None,
        flags: PayoutFlags | None = None,
        emitter: EventEmitter | None = None,
        signals_factory: Callable[[AsyncSession], EligibilitySignalsProvider] = SqlEligibilitySignals,
        rate_store_factory: Callable[[AsyncSession], CurrencyRateStore] = SqlCurrencyRateStore,
        base_currency: str = BASE_CURRENCY,
        transfer_timeout_seconds: float = 30.0,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.flags = flags or PayoutFlags()
        self.emitter = emitter or EventEmitter()
        self.signals_factory = signals_factory
        self.rate_store_factory = rate_store_factory
        self.base_currency = base_currency
        self.transfer_timeout_seconds = transfer_timeout_seconds

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def compute_preview(
        self, settlement_id: UUID, flags: PayoutFlags | None = None
    ) -> SettlementPreview:
        """Compute what the settlement would pay now. Writes nothing.

        Paid settlements return their stored values without invoking any
        resolver.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
        """
        flags = flags or self.flags
        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.is_paid:
                return self._preview_from_record(record)

            profile = await self._load_worker(session, record.worker_id)
            snapshot = self._stored_snapshot(record)
            if snapshot is None:
                snapshot = await self._fresh_snapshot(session, record, flags)
            if record.amount_requested:
                bonus = self._requested_bonus(record)
            else:
                bonus = await self._compute_bonus(session, record, profile, snapshot, flags)
            return self._preview(record, snapshot, bonus)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def attempt_release(
        self,
        settlement_id: UUID,
        triggered_by: str = "system",
        flags: PayoutFlags | None = None,
    ) -> ReleaseResult:
        """Evaluate a settlement and transfer the payout if nothing prevents it.

        Safe to call any number of times: a paid settlement returns its
        stored result, and repeated transfer requests share one
        idempotency key. Once an amount has been sent under the current
        key it is reused as is; the bonus is only recomputed after a
        definitive failure moves the settlement to a new key.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
            TransferProviderNotConfiguredError: If the gate has no provider
        """
        if self.provider is None:
            raise TransferProviderNotConfiguredError()
        flags = flags or self.flags

        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.is_paid:
                logger.info("Settlement %s already paid, release is a no-op", settlement_id)
                return ReleaseResult.from_record(record)

            profile = await self._load_worker(session, record.worker_id)
            snapshot = await self._ensure_snapshot(session, record, flags)
            if record.is_paid:
                return ReleaseResult.from_record(record)

            requested = record.amount_requested
            if requested:
                bonus = self._requested_bonus(record)
            else:
                bonus = await self._compute_bonus(session, record, profile, snapshot, flags)
            amount_cents = snapshot.base_cents + bonus.bonus_cents
            blockers = structural_blockers(record, profile, flags)

            if record.payout_hold:
                target = PayoutStatus.ON_HOLD
            elif amount_cents <= 0 and PayoutStateMachine.can_transition(
                record.payout_status, PayoutStatus.NOT_APPLICABLE
            ):
                target, blockers = PayoutStatus.NOT_APPLICABLE, []
            elif amount_cents <= 0:
                target, blockers = PayoutStatus.BLOCKED, [NON_POSITIVE_AMOUNT]
            elif blockers:
                target = PayoutStatus.BLOCKED
            else:
                target = PayoutStatus.PENDING
            PayoutStateMachine.validate_transition(record.payout_status, target)

            values: dict[str, Any] = {
                "payout_bonus_cents": bonus.bonus_cents,
                "bonus_breakdown_json": bonus.breakdown_dicts(),
                "payout_amount_cents": amount_cents,
                "payout_status": target.value,
                "payout_blockers": blockers,
            }
            releasing = target == PayoutStatus.PENDING
            criteria: list[ColumnElement[bool]] = []
            if releasing:
                values["payout_released_at"] = _now()
                values["requested_transfer_attempt"] = record.transfer_attempt
            if not requested:
                # Another release may have sent this key since we read it
                criteria.append(
                    or_(
                        SettlementRecord.requested_transfer_attempt.is_(None),
                        SettlementRecord.requested_transfer_attempt
                        != SettlementRecord.transfer_attempt,
                    )
                )

            if not await self._update_unless_paid(session, settlement_id, values, *criteria):
                return await self._winner(session, settlement_id)
            await session.refresh(record)
            await session.commit()

        self._emit(
            SettlementComputed(
                metadata=EventMetadata.create(settlement_id, triggered_by),
                tier=snapshot.tier,
                multiplier=snapshot.multiplier,
                base_cents=snapshot.base_cents,
                bonus_cents=bonus.bonus_cents,
                amount_cents=amount_cents,
                currency=snapshot.currency,
                fx_rate=snapshot.fx_rate,
                bonus_breakdown=tuple(bonus.breakdown_dicts()),
            )
        )

        if not releasing:
            if target == PayoutStatus.BLOCKED:
                logger.info("Settlement %s blocked: %s", settlement_id, "; ".join(blockers))
                self._emit(
                    PayoutBlocked(
                        metadata=EventMetadata.create(settlement_id, triggered_by),
                        blockers=tuple(blockers),
                        transfer_attempted=False,
                    )
                )
            else:
                logger.info("Settlement %s not released: %s", settlement_id, target.value)
            return ReleaseResult.from_record(record)

        return await self._transfer(
            record,
            destination=profile.payout_account_ref or "",
            triggered_by=triggered_by,
        )

    async def _transfer(
        self,
        record: SettlementRecord,
        destination: str,
        triggered_by: str,
    ) -> ReleaseResult:
        """Request the transfer outside any transaction and record the outcome."""
        settlement_id = record.settlement_id
        key = record.idempotency_key
        amount_cents = record.payout_amount_cents or 0

        logger.info(
            "Requesting transfer for settlement %s: %s cents via %s (key %s)",
            settlement_id,
            amount_cents,
            self.provider.provider_name,
            key,
        )
        try:
            result = await asyncio.wait_for(
                self.provider.create_transfer(key, amount_cents, destination),
                timeout=self.transfer_timeout_seconds,
            )
        except (asyncio.TimeoutError, TransferTimeoutError, TransferProviderError) as exc:
            logger.warning(
                "Transfer outcome unknown for settlement %s (key %s): %s",
                settlement_id,
                key,
                str(exc) or type(exc).__name__,
            )
            result = None

        async with self.session_factory() as session:
            if result is not None and result.succeeded:
                outcome = await self._record_paid(session, record, result)
            else:
                outcome = await self._record_failure(session, record, result)
            await session.commit()

        if outcome.created_transfer:
            self._emit(
                PayoutPaid(
                    metadata=EventMetadata.create(settlement_id, triggered_by),
                    amount_cents=amount_cents,
                    currency=self.base_currency,
                    transfer_id=outcome.transfer_id or "",
                )
            )
        elif outcome.status == PayoutStatus.BLOCKED.value:
            self._emit(
                PayoutBlocked(
                    metadata=EventMetadata.create(settlement_id, triggered_by),
                    blockers=outcome.blockers,
                    transfer_attempted=True,
                )
            )
        return outcome

    async def _record_paid(
        self,
        session: AsyncSession,
        record: SettlementRecord,
        result: TransferResult,
    ) -> ReleaseResult:
        """Compare-and-swap to paid; the loser returns the winner's record."""
        swapped = await self._update_unless_paid(
            session,
            record.settlement_id,
            {
                "payout_status": PayoutStatus.PAID.value,
                "payout_paid_at": _now(),
                "external_transfer_id": result.transfer_id,
                "payout_blockers": [],
                "last_transfer_error": None,
                "last_transfer_retryable": False,
            },
        )
        if not swapped:
            logger.info(
                "Settlement %s was paid by a concurrent release", record.settlement_id
            )
            return await self._winner(session, record.settlement_id)

        paid = await self._load(session, record.settlement_id, refresh=True)
        logger.info(
            "Settlement %s paid: %s cents, transfer %s",
            paid.settlement_id,
            paid.payout_amount_cents,
            paid.external_transfer_id,
        )
        return ReleaseResult.from_record(paid, created_transfer=True)

    async def _record_failure(
        self,
        session: AsyncSession,
        record: SettlementRecord,
        result: TransferResult | None,
    ) -> ReleaseResult:
        """Block the settlement with the failure reason.

        An unknown outcome keeps the idempotency key so a later release
        collapses onto the original transfer. A definitive failure moves
        to the next key.
        """
        if result is None:
            reason, retryable = PENDING_VERIFICATION, True
            blockers = [PENDING_VERIFICATION]
        else:
            reason = result.failure_reason or "Transfer failed"
            retryable = result.retryable
            blockers = [f"Transfer failed: {reason}"]

        values: dict[str, Any] = {
            "payout_status": PayoutStatus.BLOCKED.value,
            "payout_blockers": blockers,
            "last_transfer_error": reason,
            "last_transfer_retryable": retryable,
        }
        if result is not None and not retryable:
            values["transfer_attempt"] = SettlementRecord.transfer_attempt + 1

        if not await self._update_unless_paid(session, record.settlement_id, values):
            return await self._winner(session, record.settlement_id)

        if retryable:
            logger.warning(
                "Transfer for settlement %s not completed (%s); may be retried",
                record.settlement_id,
                reason,
            )
        else:
            logger.error(
                "Transfer for settlement %s failed permanently: %s",
                record.settlement_id,
                reason,
            )
        blocked = await self._load(session, record.settlement_id, refresh=True)
        return ReleaseResult.from_record(blocked)

    # ------------------------------------------------------------------
    # Hold
    # ------------------------------------------------------------------

    async def set_hold(
        self,
        settlement_id: UUID,
        hold: bool,
        reason: str | None = None,
        actor: str = "admin",
    ) -> SettlementRecord:
        """Set or release a manual hold.

        Setting a hold forces on_hold regardless of other conditions.
        Releasing it returns the settlement to pending (or blocked if
        blockers are still recorded) and clears the reason. Paid
        settlements are never changed.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
        """
        async with self.session_factory() as session:
            record = await self._load(session, settlement_id)
            if record.is_paid:
                self.reject_paid_mutation(record, "set_hold", actor)
                return record

            if hold:
                values: dict[str, Any] = {
                    "payout_hold": True,
                    "payout_hold_reason": reason,
                    "payout_status": PayoutStatus.ON_HOLD.value,
                }
            else:
                values = {"payout_hold": False, "payout_hold_reason": None}
                if record.payout_status == PayoutStatus.ON_HOLD.value:
                    values["payout_status"] = (
                        PayoutStatus.BLOCKED.value
                        if record.payout_blockers
                        else PayoutStatus.PENDING.value
                    )
            if "payout_status" in values:
                PayoutStateMachine.validate_transition(
                    record.payout_status, values["payout_status"]
                )

            if not await self._update_unless_paid(session, settlement_id, values):
                winner = await self._load(session, settlement_id, refresh=True)
                self.reject_paid_mutation(winner, "set_hold", actor)
                return winner
            await session.refresh(record)
            await session.commit()

        logger.info(
            "Hold %s on settlement %s by %s%s",
            "set" if hold else "released",
            settlement_id,
            actor,
            f": {reason}" if reason else "",
        )
        self._emit(
            PayoutHoldChanged(
                metadata=EventMetadata.create(settlement_id, actor),
                hold=hold,
                reason=record.payout_hold_reason,
            )
        )
        return record

    def reject_paid_mutation(
        self, record: SettlementRecord, operation: str, actor: str = "system"
    ) -> None:
        """Refuse a change to a paid settlement, loudly.

        Reaching this means a caller upstream ignored payout_status.
        """
        logger.critical(
            "Rejected %s on paid settlement %s (transfer %s)",
            operation,
            record.settlement_id,
            record.external_transfer_id,
        )
        self._emit(
            PaidMutationRejected(
                metadata=EventMetadata.create(record.settlement_id, actor),
                operation=operation,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(
        self, session: AsyncSession, settlement_id: UUID, refresh: bool = False
    ) -> SettlementRecord:
        record = await session.get(
            SettlementRecord, settlement_id, populate_existing=refresh
        )
        if record is None:
            raise SettlementNotFoundError(settlement_id)
        return record

    async def _load_worker(self, session: AsyncSession, worker_id: UUID) -> WorkerProfile:
        profile = await session.get(WorkerProfile, worker_id)
        if profile is None:
            raise WorkerNotFoundError(worker_id)
        return profile

    async def _winner(self, session: AsyncSession, settlement_id: UUID) -> ReleaseResult:
        """Result for a caller whose conditional update lost to another writer."""
        await session.rollback()
        record = await self._load(session, settlement_id, refresh=True)
        return ReleaseResult.from_record(record)

    async def _update_unless_paid(
        self,
        session: AsyncSession,
        settlement_id: UUID,
        values: dict[str, Any],
        *criteria: ColumnElement[bool],
    ) -> bool:
        """Conditional update; False if the record is paid or criteria fail."""
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
    def _requested_bonus(record: SettlementRecord) -> BonusResult:
        """Bonus already sent to the processor under the current key."""
        breakdown = tuple(
            BonusLine(badge=line["badge"], pct=line["pct"])
            for line in record.bonus_breakdown_json or []
        )
        return BonusResult(
            bonus_cents=record.payout_bonus_cents or 0,
            pct=min(sum(line.pct for line in breakdown), BONUS_CAP_PCT),
            breakdown=breakdown,
        )

    def _stored_snapshot(self, record: SettlementRecord) -> _Snapshot | None:
        if record.tier_applied is None or record.rate_multiplier_applied is None:
            return None
        return _Snapshot(
            tier=record.tier_applied,
            multiplier=record.rate_multiplier_applied,
            base_cents=record.payout_base_cents or 0,
            currency=record.payout_currency or self.base_currency,
            fx_rate=record.payout_fx_rate or Decimal("1"),
        )

    async def _fresh_snapshot(
        self, session: AsyncSession, record: SettlementRecord, flags: PayoutFlags
    ) -> _Snapshot:
        signals = self.signals_factory(session)
        resolution = await TierResolver(session, signals, flags).resolve_tier(record.worker_id)
        base_cents = resolution.apply(record.pre_tier_base_cents)
        lock = await CurrencyLockService(
            session,
            flags,
            rate_store=self.rate_store_factory(session),
            base_currency=self.base_currency,
        ).lock_payout_currency(record.worker_id, base_cents)
        return _Snapshot(
            tier=resolution.tier.value,
            multiplier=resolution.multiplier,
            base_cents=base_cents,
            currency=lock.currency,
            fx_rate=lock.rate,
        )

    async def _ensure_snapshot(
        self, session: AsyncSession, record: SettlementRecord, flags: PayoutFlags
    ) -> _Snapshot:
        """Freeze tier, multiplier and currency lock on first computation.

        Concurrent first computations race on tier_applied IS NULL; the
        record is reloaded so every caller uses the snapshot that won.
        """
        snapshot = self._stored_snapshot(record)
        if snapshot is not None:
            return snapshot

        fresh = await self._fresh_snapshot(session, record, flags)
        await session.execute(
            update(SettlementRecord)
            .where(
                SettlementRecord.settlement_id == record.settlement_id,
                SettlementRecord.tier_applied.is_(None),
                SettlementRecord.payout_status != PayoutStatus.PAID.value,
            )
            .values(
                tier_applied=fresh.tier,
                rate_multiplier_applied=fresh.multiplier,
                payout_base_cents=fresh.base_cents,
                payout_currency=fresh.currency,
                payout_fx_rate=fresh.fx_rate,
            )
            .execution_options(synchronize_session=False)
        )
        await session.refresh(record)
        return self._stored_snapshot(record) or fresh

    async def _compute_bonus(
        self,
        session: AsyncSession,
        record: SettlementRecord,
        profile: WorkerProfile,
        snapshot: _Snapshot,
        flags: PayoutFlags,
    ) -> BonusResult:
        calculator = BonusCalculator(self.signals_factory(session), flags)
        return await calculator.compute_bonus(
            record.worker_id,
            snapshot.base_cents,
            record.payout_status,
            override_requested=record.bonus_override,
            role=profile.role,
        )

    def _preview(
        self, record: SettlementRecord, snapshot: _Snapshot, bonus: BonusResult
    ) -> SettlementPreview:
        amount_cents = snapshot.base_cents + bonus.bonus_cents
        return SettlementPreview(
            settlement_id=record.settlement_id,
            status=record.payout_status,
            tier=snapshot.tier,
            tier_label=tier_label(snapshot.tier),
            multiplier=snapshot.multiplier,
            base_cents=snapshot.base_cents,
            bonus_cents=bonus.bonus_cents,
            bonus_breakdown=bonus.breakdown_dicts(),
            amount_cents=amount_cents,
            currency=snapshot.currency,
            fx_rate=snapshot.fx_rate,
            display_amount=self._display(amount_cents, snapshot.currency, snapshot.fx_rate),
        )

    def _preview_from_record(self, record: SettlementRecord) -> SettlementPreview:
        snapshot = self._stored_snapshot(record)
        tier = snapshot.tier if snapshot else ""
        currency = snapshot.currency if snapshot else self.base_currency
        fx_rate = snapshot.fx_rate if snapshot else Decimal("1")
        amount_cents = record.payout_amount_cents or 0
        return SettlementPreview(
            settlement_id=record.settlement_id,
            status=record.payout_status,
            tier=tier,
            tier_label=tier_label(tier),
            multiplier=snapshot.multiplier if snapshot else Decimal("1.00"),
            base_cents=record.payout_base_cents or 0,
            bonus_cents=record.payout_bonus_cents or 0,
            bonus_breakdown=list(record.bonus_breakdown_json or []),
            amount_cents=amount_cents,
            currency=currency,
            fx_rate=fx_rate,
            display_amount=self._display(amount_cents, currency, fx_rate),
            is_final=True,
        )

    def _display(self, amount_cents: int, currency: str, fx_rate: Decimal) -> str:
        locked = fx_rate if currency != self.base_currency else None
        return convert_for_display(
            amount_cents, currency, locked, self.base_currency
        ).formatted()

    def _emit(self, event: DomainEvent) -> None:
        self.emitter.emit(event)


def _now() -> datetime:
    return datetime.now(timezone.utc)
