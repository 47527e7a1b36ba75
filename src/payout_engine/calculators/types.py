"""Type definitions for the payout calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any


class Tier(str, Enum):
    """Chef performance tiers."""

    STANDARD = "standard"
    PRO = "pro"
    ELITE = "elite"


RATE_MULTIPLIERS: dict[Tier, Decimal] = {
    Tier.STANDARD: Decimal("1.00"),
    Tier.PRO: Decimal("1.10"),
    Tier.ELITE: Decimal("1.20"),
}


def round_cents(value: Decimal) -> int:
    """Round a cent amount half-up to a whole cent."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class TierResolution:
    """Effective tier for a worker at resolution time."""

    tier: Tier
    multiplier: Decimal
    is_overridden: bool = False

    def apply(self, pre_tier_base_cents: int) -> int:
        """Tier-adjusted base amount in cents."""
        return round_cents(Decimal(pre_tier_base_cents) * self.multiplier)


@dataclass(frozen=True)
class BonusLine:
    """One badge's contribution to the bonus percentage."""

    badge: str
    pct: int

    def to_dict(self) -> dict[str, Any]:
        return {"badge": self.badge, "pct": self.pct}


@dataclass(frozen=True)
class BonusResult:
    """Bonus computed against a tier-adjusted base."""

    bonus_cents: int = 0
    pct: int = 0
    breakdown: tuple[BonusLine, ...] = field(default_factory=tuple)

    @classmethod
    def zero(cls) -> BonusResult:
        return cls()

    def breakdown_dicts(self) -> list[dict[str, Any]]:
        return [line.to_dict() for line in self.breakdown]


@dataclass(frozen=True)
class CurrencyLock:
    """Payout currency and the FX rate frozen for one settlement."""

    currency: str
    rate: Decimal
