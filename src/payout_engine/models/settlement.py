"""Settlement record and currency rate models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payout_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from payout_engine.models.worker import WorkerProfile


class SettlementRecord(Base, TimestampMixin):
    """One worker's payout for one completed job.

    Amount, multiplier, currency and FX rate are frozen once
    payout_status is 'paid'. Only the settlement gate writes the payout
    columns; admins write payout_hold / payout_hold_reason.
    """

    __tablename__ = "settlement_record"

    settlement_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    job_id: Mapped[str] = mapped_column(String, nullable=False)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_profile.worker_id"),
        nullable=False,
    )

    # Inputs
    quote_total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pre_tier_base_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bonus_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    client_fully_paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Computed (gate-owned)
    tier_applied: Mapped[str | None] = mapped_column(String, nullable=True)
    rate_multiplier_applied: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 4), nullable=True
    )
    payout_base_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payout_bonus_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bonus_breakdown_json: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    payout_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payout_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payout_fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)

    # Status
    payout_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payout_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_hold_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payout_blockers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Completion signal
    job_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    job_completed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    completion_confirmed_by_admin: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Transfer
    transfer_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Attempt whose amount has gone to the processor; that amount is then fixed
    requested_transfer_attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_transfer_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_transfer_retryable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    external_transfer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payout_released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payout_paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("job_id", name="settlement_record_one_per_job"),
        CheckConstraint(
            "payout_status IN ('not_applicable', 'pending', 'blocked', 'on_hold', 'paid')",
            name="settlement_record_status_check",
        ),
        CheckConstraint(
            "job_completed_by IS NULL OR job_completed_by IN ('worker', 'admin')",
            name="settlement_record_completed_by_check",
        ),
        CheckConstraint("pre_tier_base_cents >= 0", name="settlement_record_base_check"),
        CheckConstraint("payout_bonus_cents >= 0", name="settlement_record_bonus_check"),
    )

    worker: Mapped[WorkerProfile] = relationship()

    @property
    def is_paid(self) -> bool:
        """Whether the payout has reached the terminal paid state."""
        return self.payout_status == "paid"

    @property
    def amount_requested(self) -> bool:
        """Whether the current key has already been sent with an amount."""
        return (
            self.requested_transfer_attempt is not None
            and self.requested_transfer_attempt == self.transfer_attempt
        )

    @property
    def idempotency_key(self) -> str:
        """Stable request key for the current transfer attempt."""
        return f"chef-payout:{self.settlement_id}:{self.transfer_attempt}"


class CurrencyRate(Base):
    """Latest exchange rate for a currency pair.

    Written by the periodic rate job; read-only to settlement.
    """

    __tablename__ = "currency_rate"

    from_code: Mapped[str] = mapped_column(String(3), primary_key=True)
    to_code: Mapped[str] = mapped_column(String(3), primary_key=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (CheckConstraint("rate > 0", name="currency_rate_positive_check"),)
