"""Settlement domain events."""

from payout_engine.events.emitter import EventEmitter, RecordingHandler
from payout_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    PaidMutationRejected,
    PayoutBlocked,
    PayoutHoldChanged,
    PayoutPaid,
    SettlementComputed,
)

__all__ = [
    "DomainEvent",
    "EventCategory",
    "EventEmitter",
    "EventMetadata",
    "PaidMutationRejected",
    "PayoutBlocked",
    "PayoutHoldChanged",
    "PayoutPaid",
    "RecordingHandler",
    "SettlementComputed",
]
