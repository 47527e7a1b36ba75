"""Payout currency resolution and FX rate locking.

An FX rate is locked once per settlement and reused for every later
display and statement. A missing or unreadable rate never blocks a
payout; it only prevents conversion (the lock falls back to base
currency at rate 1).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.calculators.currency import BASE_CURRENCY, effective_payout_currency
from payout_engine.calculators.tier_resolver import WorkerNotFoundError
from payout_engine.calculators.types import CurrencyLock
from payout_engine.config import PayoutFlags
from payout_engine.models import CurrencyRate, WorkerProfile

logger = logging.getLogger(__name__)


class RateUnavailableError(Exception):
    """Raised when the rate store cannot be read."""

    def __init__(self, from_code: str, to_code: str):
        self.from_code = from_code
        self.to_code = to_code
        super().__init__(f"Exchange rate {from_code}->{to_code} unavailable")


class CurrencyRateStore(Protocol):
    """Read access to the latest exchange rates."""

    async def get_rate(self, from_code: str, to_code: str) -> Decimal | None:
        """Latest rate, 1 for identical codes, None if no rate is stored."""
        ...


class SqlCurrencyRateStore:
    """Currency rates kept in the currency_rate table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_rate(self, from_code: str, to_code: str) -> Decimal | None:
        if from_code == to_code:
            return Decimal("1")
        try:
            row = await self.session.get(CurrencyRate, (from_code, to_code))
        except SQLAlchemyError as exc:
            raise RateUnavailableError(from_code, to_code) from exc
        return row.rate if row is not None else None

    async def latest_rates_from(self, from_code: str = BASE_CURRENCY) -> dict[str, Decimal]:
        """Map of to_code -> rate for every pair quoted from from_code."""
        result = await self.session.execute(
            select(CurrencyRate)
            .where(CurrencyRate.from_code == from_code)
            .order_by(CurrencyRate.fetched_at.desc())
        )
        rates: dict[str, Decimal] = {}
        for row in result.scalars().all():
            rates.setdefault(row.to_code, row.rate)
        return rates

    async def upsert_rate(self, from_code: str, to_code: str, rate: Decimal) -> CurrencyRate:
        """Insert or refresh a rate. Used by the periodic rate job.

        Existing settlement locks are unaffected; they hold their own copy.
        """
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}")
        from_code, to_code = from_code.upper(), to_code.upper()
        row = await self.session.get(CurrencyRate, (from_code, to_code))
        now = datetime.now(timezone.utc)
        if row is None:
            row = CurrencyRate(from_code=from_code, to_code=to_code, rate=rate, fetched_at=now)
            self.session.add(row)
        else:
            row.rate = rate
            row.fetched_at = now
        await self.session.flush()
        return row


class CurrencyLockService:
    """Resolves a worker's payout currency and the rate to freeze for it."""

    def __init__(
        self,
        session: AsyncSession,
        flags: PayoutFlags,
        rate_store: CurrencyRateStore | None = None,
        base_currency: str = BASE_CURRENCY,
    ):
        self.session = session
        self.flags = flags
        self.rate_store = rate_store or SqlCurrencyRateStore(session)
        self.base_currency = base_currency

    async def effective_currency(self, worker_id: UUID) -> str:
        """Admin override, else preference, else base; respects the global toggle."""
        profile = await self.session.get(WorkerProfile, worker_id)
        if profile is None:
            raise WorkerNotFoundError(worker_id)
        return effective_payout_currency(
            preferred=profile.preferred_payout_currency,
            override=profile.payout_currency_override,
            flags=self.flags,
            base_currency=self.base_currency,
        )

    async def lock_payout_currency(
        self, worker_id: UUID, base_amount_cents: int
    ) -> CurrencyLock:
        """Currency and rate to freeze onto a settlement.

        The transfer itself always settles base_amount_cents in base
        currency; the lock drives display and statements.
        """
        base_lock = CurrencyLock(currency=self.base_currency, rate=Decimal("1"))
        currency = await self.effective_currency(worker_id)
        if currency == self.base_currency:
            return base_lock

        try:
            rate = await self.rate_store.get_rate(self.base_currency, currency)
        except RateUnavailableError as exc:
            logger.warning(
                "Rate store unavailable for worker %s (%s); locking base currency",
                worker_id,
                exc,
            )
            return base_lock

        if rate is None or rate <= 0:
            logger.warning(
                "No %s->%s rate for worker %s (amount %s cents); locking base currency",
                self.base_currency,
                currency,
                worker_id,
                base_amount_cents,
            )
            return base_lock

        return CurrencyLock(currency=currency, rate=rate)
