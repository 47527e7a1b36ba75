"""Domain events for chef payout settlement.

Events are immutable records of what the settlement gate decided. Worker
statements, admin notifications and audit logs subscribe to them; the
gate never depends on a subscriber succeeding.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    COMPUTATION = "computation"
    PAYOUT = "payout"
    ADMIN = "admin"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    settlement_id: UUID
    actor_type: str  # 'worker', 'admin', 'system'
    source_service: str = "settlement_gate"

    @classmethod
    def create(cls, settlement_id: UUID, actor_type: str = "system") -> EventMetadata:
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            settlement_id=settlement_id,
            actor_type=actor_type,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all settlement events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(v) for v in obj]
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


@dataclass(frozen=True)
class SettlementComputed(DomainEvent):
    """Amounts were computed (and snapshotted) for a settlement."""

    tier: str
    multiplier: Decimal
    base_cents: int
    bonus_cents: int
    amount_cents: int
    currency: str
    fx_rate: Decimal
    bonus_breakdown: tuple[dict[str, Any], ...] = ()

    @property
    def category(self) -> EventCategory:
        return EventCategory.COMPUTATION


@dataclass(frozen=True)
class PayoutPaid(DomainEvent):
    """Transfer succeeded and the settlement is now paid."""

    amount_cents: int
    currency: str
    transfer_id: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutBlocked(DomainEvent):
    """Release was evaluated and prevented by structural blockers."""

    blockers: tuple[str, ...]
    transfer_attempted: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYOUT


@dataclass(frozen=True)
class PayoutHoldChanged(DomainEvent):
    """An administrator set or released a manual hold."""

    hold: bool
    reason: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.ADMIN


@dataclass(frozen=True)
class PaidMutationRejected(DomainEvent):
    """Something tried to change a paid settlement. Indicates a bug upstream."""

    operation: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.ANOMALY
