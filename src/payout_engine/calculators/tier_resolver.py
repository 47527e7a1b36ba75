"""Performance tier resolution for chef payouts."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.calculators.signals import (
    EligibilitySignalsProvider,
    SignalsUnavailableError,
)
from payout_engine.calculators.types import RATE_MULTIPLIERS, Tier, TierResolution
from payout_engine.config import PayoutFlags
from payout_engine.models import WorkerProfile

logger = logging.getLogger(__name__)

CERTIFIED_BADGE = "Certified Chef"
PREP_PERFECT_BADGE = "Prep Perfect"

PRO_WINDOW = 10
PRO_MIN_ON_TIME_PCT = 90
ELITE_WINDOW = 20
ELITE_MIN_ON_TIME_PCT = 95


class WorkerNotFoundError(Exception):
    """Raised when a worker profile does not exist."""

    def __init__(self, worker_id: UUID):
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} not found")


def rate_multiplier(tier: Tier | str, flags: PayoutFlags) -> Decimal:
    """Multiplier for a tier, forced to 1.00 when tiered rates are off."""
    if not flags.tiered_rates_enabled:
        return Decimal("1.00")
    if not isinstance(tier, Tier):
        tier = Tier(tier.lower())
    return RATE_MULTIPLIERS.get(tier, Decimal("1.00"))


def tier_label(tier: Tier | str) -> str:
    """Client-facing tier label (no rates)."""
    value = str(tier.value if isinstance(tier, Tier) else tier).lower()
    if value == Tier.PRO.value:
        return "Pro Chef"
    if value == Tier.ELITE.value:
        return "Elite Chef"
    return ""


def _as_pct(ratio: float | None) -> int:
    """Whole-percent on-time rate; no history counts as 0%."""
    if ratio is None:
        return 0
    return int(Decimal(str(ratio * 100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TierResolver:
    """Resolves a worker's effective tier and rate multiplier.

    Resolution order:
    1. Admin tier_override on the worker profile, if set
    2. Computed from eligibility signals:
       - Pro: Certified Chef badge and >= 90% on time over the last 10 jobs
       - Elite: Pro, Prep Perfect badge and >= 95% on time over the last 20
       - Otherwise Standard

    Signals outages resolve to Standard; tiering never blocks a payout.
    """

    def __init__(
        self,
        session: AsyncSession,
        signals: EligibilitySignalsProvider,
        flags: PayoutFlags,
    ):
        self.session = session
        self.signals = signals
        self.flags = flags

    async def resolve_tier(self, worker_id: UUID) -> TierResolution:
        """Resolve the effective tier for a worker.

        Raises:
            WorkerNotFoundError: If the worker profile does not exist
        """
        profile = await self.session.get(WorkerProfile, worker_id)
        if profile is None:
            raise WorkerNotFoundError(worker_id)

        if profile.tier_override is not None:
            tier = Tier(profile.tier_override)
            return TierResolution(
                tier=tier,
                multiplier=rate_multiplier(tier, self.flags),
                is_overridden=True,
            )

        tier = await self.computed_tier(worker_id)
        return TierResolution(tier=tier, multiplier=rate_multiplier(tier, self.flags))

    async def computed_tier(self, worker_id: UUID) -> Tier:
        """Tier from criteria alone, ignoring any override."""
        try:
            badges = await self.signals.get_badges(worker_id)
            if CERTIFIED_BADGE not in badges:
                return Tier.STANDARD
            if _as_pct(await self.signals.on_time_ratio(worker_id, PRO_WINDOW)) < PRO_MIN_ON_TIME_PCT:
                return Tier.STANDARD
            if PREP_PERFECT_BADGE in badges:
                on_time_20 = _as_pct(await self.signals.on_time_ratio(worker_id, ELITE_WINDOW))
                if on_time_20 >= ELITE_MIN_ON_TIME_PCT:
                    return Tier.ELITE
            return Tier.PRO
        except SignalsUnavailableError as exc:
            logger.warning("Tier falls back to standard for worker %s: %s", worker_id, exc.reason)
            return Tier.STANDARD
