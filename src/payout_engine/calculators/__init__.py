"""Payout calculation: tiers, bonuses, currency."""

from payout_engine.calculators.bonus_calculator import BonusCalculator, bonus_from_signals
from payout_engine.calculators.currency import (
    BASE_CURRENCY,
    convert_for_display,
    effective_payout_currency,
    format_currency,
)
from payout_engine.calculators.signals import (
    EligibilitySignalsProvider,
    SignalsUnavailableError,
    SqlEligibilitySignals,
)
from payout_engine.calculators.tier_resolver import TierResolver, WorkerNotFoundError
from payout_engine.calculators.types import (
    BonusLine,
    BonusResult,
    CurrencyLock,
    Tier,
    TierResolution,
)

__all__ = [
    "BASE_CURRENCY",
    "BonusCalculator",
    "BonusLine",
    "BonusResult",
    "CurrencyLock",
    "EligibilitySignalsProvider",
    "SignalsUnavailableError",
    "SqlEligibilitySignals",
    "Tier",
    "TierResolution",
    "TierResolver",
    "WorkerNotFoundError",
    "bonus_from_signals",
    "convert_for_display",
    "effective_payout_currency",
    "format_currency",
]
