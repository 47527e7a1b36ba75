"""Performance-based payout bonuses.

On-Time Pro +5%, Prep Perfect +3%, Certified Chef +2%, capped at +10%.
Bonuses apply only once required training is complete and never change
after a settlement is paid.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from payout_engine.calculators.signals import (
    EligibilitySignalsProvider,
    SignalsUnavailableError,
)
from payout_engine.calculators.types import BonusLine, BonusResult, round_cents
from payout_engine.config import PayoutFlags

logger = logging.getLogger(__name__)

BONUS_PCT_BY_BADGE: dict[str, int] = {
    "On-Time Pro": 5,
    "Prep Perfect": 3,
    "Certified Chef": 2,
}

BONUS_CAP_PCT = 10


def bonus_gate_closed(
    base_amount_cents: int,
    settlement_status: str | None,
    override_requested: bool,
    flags: PayoutFlags,
) -> bool:
    """Conditions under which no bonus applies whatever the signals say."""
    if base_amount_cents <= 0:
        return True
    if (settlement_status or "").lower() == "paid":
        return True
    return not flags.bonuses_enabled or override_requested


def bonus_from_signals(
    *,
    base_amount_cents: int,
    badges: set[str],
    training_complete: bool,
    settlement_status: str | None,
    override_requested: bool,
    flags: PayoutFlags,
) -> BonusResult:
    """Compute the bonus from already-fetched signals. No side effects."""
    if bonus_gate_closed(base_amount_cents, settlement_status, override_requested, flags):
        return BonusResult.zero()
    if not training_complete:
        return BonusResult.zero()

    # Table order keeps the breakdown stable across calls
    breakdown = tuple(
        BonusLine(badge=name, pct=pct)
        for name, pct in BONUS_PCT_BY_BADGE.items()
        if name in badges
    )
    pct = min(sum(line.pct for line in breakdown), BONUS_CAP_PCT)
    if pct == 0:
        return BonusResult.zero()

    bonus_cents = round_cents(Decimal(base_amount_cents) * pct / 100)
    return BonusResult(bonus_cents=bonus_cents, pct=pct, breakdown=breakdown)


class BonusCalculator:
    """Fetches eligibility signals and applies the bonus table."""

    def __init__(self, signals: EligibilitySignalsProvider, flags: PayoutFlags):
        self.signals = signals
        self.flags = flags

    async def compute_bonus(
        self,
        worker_id: UUID,
        base_amount_cents: int,
        settlement_status: str | None,
        override_requested: bool = False,
        role: str = "chef",
    ) -> BonusResult:
        """Bonus for a tier-adjusted base amount.

        Returns a zero bonus when the base is not positive, the settlement
        is paid, bonuses are switched off, an admin override is requested,
        training is incomplete, or signals are unavailable.
        """
        if bonus_gate_closed(
            base_amount_cents, settlement_status, override_requested, self.flags
        ):
            return BonusResult.zero()

        try:
            training_complete = await self.signals.has_completed_required_training(
                worker_id, role
            )
            badges = await self.signals.get_badges(worker_id) if training_complete else set()
        except SignalsUnavailableError as exc:
            logger.warning("No bonus for worker %s, signals unavailable: %s", worker_id, exc.reason)
            return BonusResult.zero()

        return bonus_from_signals(
            base_amount_cents=base_amount_cents,
            badges=badges,
            training_complete=training_complete,
            settlement_status=settlement_status,
            override_requested=override_requested,
            flags=self.flags,
        )
