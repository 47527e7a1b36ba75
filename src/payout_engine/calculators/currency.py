"""Multi-currency helpers.

All settlement math happens in base-currency cents. Conversion is for
display and statements only, always with the rate locked on the record.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from payout_engine.config import PayoutFlags

BASE_CURRENCY = "USD"
SUPPORTED_CURRENCIES: tuple[str, ...] = ("USD", "JMD", "EUR", "GBP")

_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}


def is_supported_currency(code: str | None) -> bool:
    return code is not None and code.upper() in SUPPORTED_CURRENCIES


def effective_payout_currency(
    *,
    preferred: str | None,
    override: str | None,
    flags: PayoutFlags,
    base_currency: str = BASE_CURRENCY,
) -> str:
    """Admin override, else preference, else base; base when non-base payouts are off."""
    effective = (override or preferred or base_currency).upper()
    if not flags.non_base_currency_payouts_enabled and effective != base_currency:
        return base_currency
    return effective if is_supported_currency(effective) else base_currency


@dataclass(frozen=True)
class DisplayAmount:
    """An amount converted for display, with the rate it used."""

    amount: Decimal
    currency: str
    rate: Decimal | None

    def formatted(self) -> str:
        return format_currency(self.amount, self.currency)


def convert_for_display(
    base_cents: int,
    target_currency: str | None,
    locked_rate: Decimal | None,
    base_currency: str = BASE_CURRENCY,
) -> DisplayAmount:
    """Convert base cents to a display amount using a locked rate.

    Without a locked rate, or for the base currency, the base amount is
    returned unconverted.
    """
    base_amount = Decimal(base_cents) / 100
    if target_currency is None or target_currency == base_currency or locked_rate is None:
        return DisplayAmount(
            amount=base_amount.quantize(Decimal("0.01")),
            currency=base_currency,
            rate=None,
        )
    converted = (base_amount * locked_rate * 100).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    ) / 100
    return DisplayAmount(
        amount=converted.quantize(Decimal("0.01")),
        currency=target_currency,
        rate=locked_rate,
    )


def format_currency(amount: Decimal | float, currency_code: str) -> str:
    """Format an amount with its currency symbol, or code prefix if none."""
    code = currency_code.upper()
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    symbol = _SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{value:.2f}"
    return f"{code} {value:.2f}"
