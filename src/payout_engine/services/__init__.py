"""Settlement services."""

from payout_engine.services.currency_lock import (
    CurrencyLockService,
    RateUnavailableError,
    SqlCurrencyRateStore,
)
from payout_engine.services.settlement_gate import (
    ReleaseResult,
    SettlementGate,
    SettlementNotFoundError,
    SettlementPreview,
)
from payout_engine.services.settlement_service import (
    InvalidSettlementInputError,
    SettlementService,
)
from payout_engine.services.state_machine import (
    InvalidTransitionError,
    PayoutStateMachine,
    PayoutStatus,
)

__all__ = [
    "CurrencyLockService",
    "InvalidSettlementInputError",
    "InvalidTransitionError",
    "PayoutStateMachine",
    "PayoutStatus",
    "RateUnavailableError",
    "ReleaseResult",
    "SettlementGate",
    "SettlementNotFoundError",
    "SettlementPreview",
    "SettlementService",
    "SqlCurrencyRateStore",
]
