"""Base protocol and types for payout transfer providers.

The settlement gate talks to the payment processor only through
TransferProvider. Implementations must be idempotent per idempotency_key:
repeating a request with the same key returns the original outcome and
never moves money twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class TransferTimeoutError(Exception):
    """The processor did not answer in time; the outcome is unknown."""


class TransferProviderError(Exception):
    """The processor call failed before a definitive answer was received."""


class TransferProviderNotConfiguredError(Exception):
    """No payment processor is configured, so no transfer can be requested."""

    def __init__(self, name: str | None = None):
        self.name = name
        if name:
            super().__init__(f"Unknown transfer provider: {name!r}")
        else:
            super().__init__("No transfer provider configured (set TRANSFER_PROVIDER)")


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a create-transfer request."""

    transfer_id: str | None = None
    failure_reason: str | None = None
    retryable: bool = False

    @property
    def succeeded(self) -> bool:
        return self.transfer_id is not None

    @classmethod
    def success(cls, transfer_id: str) -> TransferResult:
        return cls(transfer_id=transfer_id)

    @classmethod
    def failure(cls, reason: str, retryable: bool = False) -> TransferResult:
        return cls(failure_reason=reason, retryable=retryable)


class TransferProvider(Protocol):
    """Protocol for payment processor adapters."""

    provider_name: str

    async def create_transfer(
        self,
        idempotency_key: str,
        amount_cents: int,
        destination_account: str,
    ) -> TransferResult:
        """Move amount_cents (base currency) to the destination account.

        Raises:
            TransferTimeoutError: If no answer arrived in time
            TransferProviderError: If the call failed without a definitive answer
        """
        ...
