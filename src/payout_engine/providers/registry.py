"""Transfer providers selectable by name.

Settings name the provider explicitly; nothing falls back to the stub.
"""

from __future__ import annotations

from typing import Callable

from payout_engine.providers.base import (
    TransferProvider,
    TransferProviderNotConfiguredError,
)
from payout_engine.providers.stub import StubTransferProvider

PROVIDERS: dict[str, Callable[[], TransferProvider]] = {
    "stub": StubTransferProvider,
}


def build_transfer_provider(name: str | None) -> TransferProvider | None:
    """Instantiate the named provider, or None when no name is set.

    Raises:
        TransferProviderNotConfiguredError: If the name is not registered
    """
    if not name:
        return None
    factory = PROVIDERS.get(name.lower())
    if factory is None:
        raise TransferProviderNotConfiguredError(name)
    return factory()
