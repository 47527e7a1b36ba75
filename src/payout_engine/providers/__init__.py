"""Payment processor adapters."""

from payout_engine.providers.base import (
    TransferProvider,
    TransferProviderError,
    TransferProviderNotConfiguredError,
    TransferResult,
    TransferTimeoutError,
)
from payout_engine.providers.registry import PROVIDERS, build_transfer_provider
from payout_engine.providers.stub import StubTransferProvider

__all__ = [
    "PROVIDERS",
    "StubTransferProvider",
    "TransferProvider",
    "TransferProviderError",
    "TransferProviderNotConfiguredError",
    "TransferResult",
    "TransferTimeoutError",
    "build_transfer_provider",
]
