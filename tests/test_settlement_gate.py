"""Tests for the settlement gate: computation, release, holds and races."""

import asyncio
import logging
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import text, update

from payout_engine.config import PayoutFlags
from payout_engine.events import (
    PaidMutationRejected,
    PayoutBlocked,
    PayoutHoldChanged,
    PayoutPaid,
    SettlementComputed,
)
from payout_engine.models import CurrencyRate, EarnedBadge, SettlementRecord, WorkerProfile
from payout_engine.providers import TransferProviderNotConfiguredError, TransferResult
from payout_engine.services import SettlementGate, SettlementNotFoundError
from payout_engine.services.settlement_gate import (
    ADMIN_CONFIRMATION_MISSING,
    CLIENT_PAYMENT_MISSING,
    COMPLETION_MISSING,
    NO_PAYOUT_ACCOUNT,
    PAYOUTS_DISABLED,
    PENDING_VERIFICATION,
)

pytestmark = pytest.mark.asyncio

NON_BASE = PayoutFlags(non_base_currency_payouts_enabled=True)


async def load(session_factory, settlement_id) -> SettlementRecord:
    async with session_factory() as session:
        return await session.get(SettlementRecord, settlement_id)


async def update_worker(session_factory, worker_id, **values) -> None:
    async with session_factory() as session:
        await session.execute(
            update(WorkerProfile).where(WorkerProfile.worker_id == worker_id).values(**values)
        )
        await session.commit()


async def award_badge(session_factory, worker_id, badge) -> None:
    async with session_factory() as session:
        session.add(EarnedBadge(worker_id=worker_id, badge_name=badge))
        await session.commit()


@pytest_asyncio.fixture
async def ready(make_worker, make_settlement):
    """A completed settlement for a standard chef with a payout account."""
    worker_id = await make_worker()
    return await make_settlement(worker_id)


class TestRelease:
    """Happy path and idempotence."""

    async def test_release_pays_once(self, gate, provider, session_factory, recorder, ready):
        result = await gate.attempt_release(ready, triggered_by="admin")

        assert result.status == "paid"
        assert result.created_transfer is True
        assert result.transfer_id is not None
        assert provider.transfer_count == 1

        record = await load(session_factory, ready)
        assert record.payout_amount_cents == 10000
        assert record.external_transfer_id == result.transfer_id
        assert record.payout_paid_at is not None
        assert record.payout_blockers == []
        assert len(recorder.of_type(PayoutPaid)) == 1
        assert len(recorder.of_type(SettlementComputed)) == 1

    async def test_second_release_returns_same_transfer(self, gate, provider, ready):
        first = await gate.attempt_release(ready, triggered_by="admin")
        second = await gate.attempt_release(ready, triggered_by="admin")

        assert second.status == "paid"
        assert second.transfer_id == first.transfer_id
        assert second.created_transfer is False
        assert provider.request_count == 1
        assert provider.transfer_count == 1

    async def test_transfer_uses_stable_key(self, gate, provider, ready):
        await gate.attempt_release(ready)

        assert list(provider.transfers) == [f"chef-payout:{ready}:1"]

    async def test_unknown_settlement_raises(self, gate):
        with pytest.raises(SettlementNotFoundError):
            await gate.attempt_release(uuid4())

    async def test_zero_base_is_not_applicable(self, gate, provider, make_worker, make_settlement):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id, base_cents=0)

        result = await gate.attempt_release(settlement_id)

        assert result.status == "not_applicable"
        assert provider.request_count == 0


class TestTierSnapshot:
    """Multiplier is frozen at first computation."""

    async def test_pro_snapshot_survives_demotion(
        self, gate, session_factory, make_worker, make_settlement, add_history
    ):
        worker_id = await make_worker(badges=("Certified Chef",), account=None)
        await add_history(worker_id, on_time=9, late=1)
        first = await make_settlement(worker_id, base_cents=10000)

        result = await gate.attempt_release(first)
        assert result.status == "blocked"

        record = await load(session_factory, first)
        assert record.tier_applied == "pro"
        assert record.rate_multiplier_applied == Decimal("1.10")
        assert record.payout_base_cents == 11000

        # Two late jobs drop the trailing ratio below 90%
        await add_history(worker_id, on_time=0, late=2, days_ago=1)
        second = await make_settlement(worker_id, base_cents=10000)

        assert (await gate.compute_preview(second)).multiplier == Decimal("1.00")
        preview = await gate.compute_preview(first)
        assert preview.tier == "pro"
        assert preview.multiplier == Decimal("1.10")
        assert preview.base_cents == 11000

    async def test_override_after_first_computation_ignored(
        self, gate, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker(payouts_enabled=False)
        settlement_id = await make_settlement(worker_id)
        await gate.attempt_release(settlement_id)

        await update_worker(session_factory, worker_id, tier_override="elite", payouts_enabled=True)
        result = await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        assert result.status == "paid"
        assert record.tier_applied == "standard"
        assert record.payout_amount_cents == 10000


class TestBonusOnRelease:
    """Bonus is computed against the tier-adjusted base."""

    async def test_bonus_added_and_recorded(self, gate, session_factory, make_worker, make_settlement):
        worker_id = await make_worker(
            badges=("On-Time Pro", "Prep Perfect", "Certified Chef"), tier_override="pro"
        )
        settlement_id = await make_settlement(worker_id, base_cents=10000)

        await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        assert record.payout_base_cents == 11000
        assert record.payout_bonus_cents == 1100
        assert record.payout_amount_cents == 12100
        assert [line["badge"] for line in record.bonus_breakdown_json] == [
            "On-Time Pro",
            "Prep Perfect",
            "Certified Chef",
        ]

    async def test_admin_bonus_override(self, gate, session_factory, make_worker, make_settlement):
        worker_id = await make_worker(badges=("On-Time Pro",))
        settlement_id = await make_settlement(worker_id, bonus_override=True)

        await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        assert record.payout_bonus_cents == 0
        assert record.payout_amount_cents == 10000

    async def test_signals_outage_still_pays(
        self, session_factory, provider, fake_signals, make_worker, make_settlement
    ):
        fake_signals.unavailable = True
        gate = SettlementGate(session_factory, provider, signals_factory=lambda _: fake_signals)
        worker_id = await make_worker(badges=("Certified Chef", "On-Time Pro"))
        settlement_id = await make_settlement(worker_id)

        result = await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        assert result.status == "paid"
        assert record.tier_applied == "standard"
        assert record.payout_bonus_cents == 0

    async def test_failed_badge_query_leaves_release_usable(
        self, engine, gate, provider, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id)
        async with engine.begin() as conn:
            await conn.execute(text("DROP TABLE earned_badge"))

        result = await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        assert result.status == "paid"
        assert record.payout_bonus_cents == 0
        assert record.payout_amount_cents == 10000
        assert provider.transfers[record.idempotency_key].amount_cents == 10000


class TestNoRetroactiveChange:
    """Paid settlements never change."""

    async def test_paid_values_frozen(
        self, gate, provider, session_factory, make_worker, make_settlement, add_rate
    ):
        worker_id = await make_worker(badges=("Certified Chef",))
        settlement_id = await make_settlement(worker_id)
        paid = await gate.attempt_release(settlement_id)
        before = await load(session_factory, settlement_id)

        await update_worker(
            session_factory, worker_id, tier_override="elite", preferred_payout_currency="EUR"
        )
        await add_rate("EUR", "0.91")

        preview = await gate.compute_preview(settlement_id, flags=NON_BASE)
        again = await gate.attempt_release(settlement_id, flags=NON_BASE)
        after = await load(session_factory, settlement_id)

        assert preview.is_final is True
        assert preview.amount_cents == before.payout_amount_cents
        assert preview.currency == before.payout_currency == "USD"
        assert preview.multiplier == before.rate_multiplier_applied
        assert again.transfer_id == paid.transfer_id
        assert after.payout_amount_cents == before.payout_amount_cents
        assert after.rate_multiplier_applied == before.rate_multiplier_applied
        assert after.payout_fx_rate == before.payout_fx_rate
        assert provider.request_count == 1


class TestCurrencyLock:
    """Currency lock on release."""

    async def test_missing_rate_does_not_block(
        self, gate, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker(preferred_currency="EUR")
        settlement_id = await make_settlement(worker_id)

        result = await gate.attempt_release(settlement_id, flags=NON_BASE)

        record = await load(session_factory, settlement_id)
        assert result.status == "paid"
        assert record.payout_currency == "USD"
        assert record.payout_fx_rate == Decimal("1")

    async def test_locked_rate_survives_rate_update(
        self, gate, session_factory, make_worker, make_settlement, add_rate
    ):
        worker_id = await make_worker(preferred_currency="JMD", account=None)
        settlement_id = await make_settlement(worker_id)
        await add_rate("JMD", "156.25")

        await gate.attempt_release(settlement_id, flags=NON_BASE)
        async with session_factory() as session:
            await session.execute(update(CurrencyRate).values(rate=Decimal("200")))
            await session.commit()

        preview = await gate.compute_preview(settlement_id, flags=NON_BASE)

        assert preview.currency == "JMD"
        assert preview.fx_rate == Decimal("156.25")
        assert preview.display_amount == "JMD 15625.00"


class TestBlockers:
    """Structural blockers prevent any transfer request."""

    @pytest.mark.parametrize(
        "worker_kwargs, completed, reason",
        [
            ({"account": None}, True, NO_PAYOUT_ACCOUNT),
            ({"payouts_enabled": False}, True, PAYOUTS_DISABLED),
            ({}, False, COMPLETION_MISSING),
        ],
    )
    async def test_blocked_without_transfer(
        self,
        gate,
        provider,
        recorder,
        make_worker,
        make_settlement,
        worker_kwargs,
        completed,
        reason,
    ):
        worker_id = await make_worker(**worker_kwargs)
        settlement_id = await make_settlement(worker_id, completed=completed)

        result = await gate.attempt_release(settlement_id)

        assert result.status == "blocked"
        assert reason in result.blockers
        assert provider.request_count == 0
        blocked = recorder.of_type(PayoutBlocked)
        assert blocked and blocked[-1].transfer_attempted is False

    async def test_admin_confirmation_required_by_policy(
        self, gate, service, provider, make_worker, make_settlement
    ):
        flags = PayoutFlags(require_admin_completion=True)
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id, completed_by="worker")

        blocked = await gate.attempt_release(settlement_id, flags=flags)
        assert blocked.blockers == (ADMIN_CONFIRMATION_MISSING,)

        await service.record_completion(settlement_id, completed_by="admin")
        paid = await gate.attempt_release(settlement_id, flags=flags)

        assert paid.status == "paid"
        assert provider.transfer_count == 1

    async def test_cleared_blocker_releases(self, gate, session_factory, make_worker, make_settlement):
        worker_id = await make_worker(account=None)
        settlement_id = await make_settlement(worker_id)
        assert (await gate.attempt_release(settlement_id)).status == "blocked"

        await update_worker(session_factory, worker_id, payout_account_ref="acct_new")
        result = await gate.attempt_release(settlement_id)

        assert result.status == "paid"

    async def test_client_payment_required(
        self, gate, service, provider, make_worker, make_settlement
    ):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id, client_paid=False)

        blocked = await gate.attempt_release(settlement_id)
        assert blocked.status == "blocked"
        assert blocked.blockers == (CLIENT_PAYMENT_MISSING,)
        assert provider.request_count == 0

        await service.record_client_payment(settlement_id)
        paid = await gate.attempt_release(settlement_id)

        assert paid.status == "paid"
        assert provider.transfer_count == 1


class TestHolds:
    """Manual holds take precedence."""

    async def test_hold_blocks_processor_contact(self, gate, provider, ready):
        await gate.set_hold(ready, True, "Customer dispute")

        result = await gate.attempt_release(ready)

        assert result.status == "on_hold"
        assert provider.request_count == 0

    async def test_release_hold_clears_reason(self, gate, recorder, ready):
        held = await gate.set_hold(ready, True, "Customer dispute")
        assert held.payout_status == "on_hold"
        assert held.payout_hold_reason == "Customer dispute"

        released = await gate.set_hold(ready, False)

        assert released.payout_status == "pending"
        assert released.payout_hold is False
        assert released.payout_hold_reason is None
        assert [e.hold for e in recorder.of_type(PayoutHoldChanged)] == [True, False]

    async def test_hold_on_paid_is_rejected(self, gate, recorder, ready, caplog):
        await gate.attempt_release(ready)

        with caplog.at_level(logging.CRITICAL):
            record = await gate.set_hold(ready, True, "too late")

        assert record.payout_status == "paid"
        assert record.payout_hold is False
        assert recorder.of_type(PaidMutationRejected)[0].operation == "set_hold"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


class TestTransferOutcomes:
    """Failures, timeouts and races against the processor."""

    async def test_concurrent_release_creates_one_transfer(self, gate, provider, ready):
        inner = []

        async def release_again(_key):
            inner.append(await gate.attempt_release(ready, triggered_by="admin"))

        provider.before_answer(release_again)
        outer = await gate.attempt_release(ready, triggered_by="worker")

        assert provider.transfer_count == 1
        assert inner[0].status == outer.status == "paid"
        assert inner[0].transfer_id == outer.transfer_id
        assert [inner[0].created_transfer, outer.created_transfer] == [True, False]

    async def test_timeout_is_pending_verification(self, gate, provider, session_factory, ready):
        provider.timeout_next()

        result = await gate.attempt_release(ready)

        assert result.status == "blocked"
        assert result.blockers == (PENDING_VERIFICATION,)
        assert result.transfer_id is None
        record = await load(session_factory, ready)
        assert record.transfer_attempt == 1

        retry = await gate.attempt_release(ready)

        assert retry.status == "paid"
        assert provider.transfer_count == 1
        assert list(provider.transfers) == [f"chef-payout:{ready}:1"]

    async def test_slow_processor_is_pending_verification(self, session_factory, ready):
        class SlowProvider:
            provider_name = "slow"

            async def create_transfer(self, idempotency_key, amount_cents, destination_account):
                await asyncio.sleep(5)
                return TransferResult.success("tr_late")

        gate = SettlementGate(session_factory, SlowProvider(), transfer_timeout_seconds=0.05)

        result = await gate.attempt_release(ready)

        assert result.status == "blocked"
        assert result.blockers == (PENDING_VERIFICATION,)

    async def test_permanent_failure_needs_remediation(
        self, gate, service, provider, session_factory, ready
    ):
        provider.fail_next("Destination account closed")

        failed = await gate.attempt_release(ready)
        assert failed.status == "blocked"
        assert failed.blockers == ("Transfer failed: Destination account closed",)

        still_blocked = await gate.attempt_release(ready)
        assert still_blocked.blockers == ("Previous transfer failed: Destination account closed",)
        assert provider.request_count == 1

        cleared = await service.clear_blockers(ready)
        assert cleared.payout_status == "pending"

        paid = await gate.attempt_release(ready)
        assert paid.status == "paid"
        assert list(provider.transfers) == [f"chef-payout:{ready}:2"]
        assert (await load(session_factory, ready)).transfer_attempt == 2

    async def test_retryable_failure_reuses_key(self, gate, provider, recorder, ready):
        provider.fail_next("Processor busy", retryable=True)

        failed = await gate.attempt_release(ready)
        assert failed.status == "blocked"
        assert recorder.of_type(PayoutBlocked)[-1].transfer_attempted is True

        paid = await gate.attempt_release(ready)
        assert paid.status == "paid"
        assert list(provider.transfers) == [f"chef-payout:{ready}:1"]

    async def test_amount_fixed_after_unknown_outcome(
        self, gate, provider, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id)
        provider.timeout_next()
        await gate.attempt_release(settlement_id)

        await award_badge(session_factory, worker_id, "On-Time Pro")
        retry = await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        sent = provider.transfers[f"chef-payout:{settlement_id}:1"]
        assert retry.status == "paid"
        assert record.payout_amount_cents == sent.amount_cents == 10000
        assert record.payout_bonus_cents == 0
        assert provider.transfer_count == 1

    async def test_amount_fixed_after_retryable_failure(
        self, gate, provider, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id)
        provider.fail_next("Processor busy", retryable=True)
        await gate.attempt_release(settlement_id)

        await award_badge(session_factory, worker_id, "On-Time Pro")
        await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        sent = provider.transfers[f"chef-payout:{settlement_id}:1"]
        assert record.payout_amount_cents == sent.amount_cents == 10000

    async def test_new_key_recomputes_amount(
        self, gate, service, provider, session_factory, make_worker, make_settlement
    ):
        worker_id = await make_worker()
        settlement_id = await make_settlement(worker_id)
        provider.fail_next("Destination account closed")
        await gate.attempt_release(settlement_id)

        await award_badge(session_factory, worker_id, "On-Time Pro")
        await service.clear_blockers(settlement_id)
        await gate.attempt_release(settlement_id)

        record = await load(session_factory, settlement_id)
        sent = provider.transfers[f"chef-payout:{settlement_id}:2"]
        assert record.payout_amount_cents == sent.amount_cents == 10500
        assert record.requested_transfer_attempt == record.transfer_attempt == 2


class TestPreview:
    """Preview is side-effect free."""

    async def test_preview_writes_nothing(self, gate, provider, session_factory, make_worker, make_settlement):
        worker_id = await make_worker(badges=("Prep Perfect",), tier_override="elite")
        settlement_id = await make_settlement(worker_id, completed=False)

        preview = await gate.compute_preview(settlement_id)

        assert preview.tier == "elite"
        assert preview.tier_label == "Elite Chef"
        assert preview.base_cents == 12000
        assert preview.bonus_cents == 360
        assert preview.amount_cents == 12360
        assert preview.display_amount == "$123.60"
        assert preview.is_final is False

        record = await load(session_factory, settlement_id)
        assert record.tier_applied is None
        assert record.payout_amount_cents is None
        assert record.payout_status == "pending"
        assert provider.request_count == 0

    async def test_preview_unknown_settlement(self, gate):
        with pytest.raises(SettlementNotFoundError):
            await gate.compute_preview(uuid4())


class TestUnconfiguredProvider:
    """A gate without a processor never releases."""

    async def test_release_refused_before_any_write(self, session_factory, ready):
        gate = SettlementGate(session_factory, None)

        with pytest.raises(TransferProviderNotConfiguredError):
            await gate.attempt_release(ready)

        record = await load(session_factory, ready)
        assert record.payout_status == "pending"
        assert record.tier_applied is None

    async def test_preview_still_available(self, session_factory, ready):
        gate = SettlementGate(session_factory, None)

        preview = await gate.compute_preview(ready)

        assert preview.amount_cents == 10000
        assert preview.is_final is False
