"""Payout status state machine with transition validation."""

from __future__ import annotations

from enum import Enum


class PayoutStatus(str, Enum):
    """Settlement payout status values."""

    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    BLOCKED = "blocked"
    ON_HOLD = "on_hold"
    PAID = "paid"


def _value(status: str) -> str:
    """Plain string value; enum members hash by name, not value."""
    return status.value if isinstance(status, PayoutStatus) else status


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PayoutStateMachine:
    """State machine for settlement payout status.

    Allowed transitions:
    - not_applicable → pending, on_hold
    - pending → blocked, on_hold, paid, not_applicable
    - blocked → pending, on_hold, paid
    - on_hold → pending, blocked, paid (a transfer already in flight when the hold landed)
    - paid is terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayoutStatus.NOT_APPLICABLE.value: [
            PayoutStatus.PENDING.value,
            PayoutStatus.ON_HOLD.value,
        ],
        PayoutStatus.PENDING.value: [
            PayoutStatus.BLOCKED.value,
            PayoutStatus.ON_HOLD.value,
            PayoutStatus.PAID.value,
            PayoutStatus.NOT_APPLICABLE.value,
        ],
        PayoutStatus.BLOCKED.value: [
            PayoutStatus.PENDING.value,
            PayoutStatus.ON_HOLD.value,
            PayoutStatus.PAID.value,
        ],
        PayoutStatus.ON_HOLD.value: [
            PayoutStatus.PENDING.value,
            PayoutStatus.BLOCKED.value,
            PayoutStatus.PAID.value,
        ],
        PayoutStatus.PAID.value: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid. Staying put is always allowed except from paid."""
        from_status, to_status = _value(from_status), _value(to_status)
        if from_status == to_status:
            return from_status != PayoutStatus.PAID.value
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            reason = "paid is terminal" if from_status == PayoutStatus.PAID.value else None
            raise InvalidTransitionError(from_status, to_status, reason)

