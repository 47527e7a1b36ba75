"""Stub transfer provider for local development and testing.

Replace with a real processor adapter (e.g. connected-account transfers)
for production.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from typing import Awaitable, Callable

from payout_engine.providers.base import (
    TransferResult,
    TransferTimeoutError,
)

_EXECUTE = object()
_TIMEOUT = object()


@dataclass
class StubTransfer:
    """A transfer the stub has executed."""

    transfer_id: str
    idempotency_key: str
    amount_cents: int
    destination_account: str


class StubTransferProvider:
    """In-memory processor, idempotent per request key.

    Failure modes can be queued for tests:
        provider.fail_next("Destination account closed")
        provider.fail_next("Rate limited", retryable=True)
        provider.timeout_next()
    """

    provider_name = "stub"

    def __init__(self) -> None:
        self.transfers: dict[str, StubTransfer] = {}
        self.results: dict[str, TransferResult] = {}
        self.request_count = 0
        self._queued: list[TransferResult | object] = []
        self._before_answer: Callable[[str], Awaitable[None]] | None = None

    @property
    def transfer_count(self) -> int:
        """Number of transfers that actually moved money."""
        return len(self.transfers)

    def fail_next(self, reason: str, retryable: bool = False) -> None:
        """Make the next new request fail with the given reason."""
        self._queued.append(TransferResult.failure(reason, retryable=retryable))

    def timeout_next(self) -> None:
        """Make the next new request execute but time out before answering."""
        self._queued.append(_TIMEOUT)

    def before_answer(self, hook: Callable[[str], Awaitable[None]] | None) -> None:
        """Run hook(idempotency_key) after executing, before answering."""
        self._before_answer = hook

    async def create_transfer(
        self,
        idempotency_key: str,
        amount_cents: int,
        destination_account: str,
    ) -> TransferResult:
        self.request_count += 1
        await asyncio.sleep(0)

        if idempotency_key in self.results:
            result = self.results[idempotency_key]
        else:
            queued = self._queued.pop(0) if self._queued else _EXECUTE
            if isinstance(queued, TransferResult):
                # Retryable failures are not remembered, so the same key can retry
                if not queued.retryable:
                    self.results[idempotency_key] = queued
                return queued

            digest = hashlib.sha256(idempotency_key.encode()).hexdigest()[:16]
            transfer = StubTransfer(
                transfer_id=f"tr_stub_{digest}",
                idempotency_key=idempotency_key,
                amount_cents=amount_cents,
                destination_account=destination_account,
            )
            self.transfers[idempotency_key] = transfer
            result = TransferResult.success(transfer.transfer_id)
            self.results[idempotency_key] = result

            if queued is _TIMEOUT:
                raise TransferTimeoutError(f"Stub timeout for {idempotency_key}")

        if self._before_answer is not None:
            hook, self._before_answer = self._before_answer, None
            await hook(idempotency_key)
        return result
