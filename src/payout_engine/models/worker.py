"""Worker profile and eligibility signal models."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payout_engine.models.base import Base, TimestampMixin


class WorkerProfile(Base, TimestampMixin):
    """Service provider (chef) profile.

    Tier and currency overrides are admin-set and take precedence over
    computed values. The settlement pipeline never writes this table.
    """

    __tablename__ = "worker_profile"

    worker_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="chef")
    tier_override: Mapped[str | None] = mapped_column(String, nullable=True)
    preferred_payout_currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD"
    )
    payout_currency_override: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payout_account_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(
            "tier_override IS NULL OR tier_override IN ('standard', 'pro', 'elite')",
            name="worker_profile_tier_override_check",
        ),
    )

    badges: Mapped[list[EarnedBadge]] = relationship(back_populates="worker")


class EarnedBadge(Base):
    """A badge a worker has earned (e.g. 'Certified Chef')."""

    __tablename__ = "earned_badge"

    earned_badge_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_profile.worker_id", ondelete="CASCADE"),
        nullable=False,
    )
    badge_name: Mapped[str] = mapped_column(String, nullable=False)
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("worker_id", "badge_name", name="earned_badge_unique"),
    )

    worker: Mapped[WorkerProfile] = relationship(back_populates="badges")


class RequiredTraining(Base):
    """Training module a role must complete before bonuses apply."""

    __tablename__ = "required_training"

    required_training_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    role: Mapped[str] = mapped_column(String, nullable=False)
    module_code: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("role", "module_code", name="required_training_unique"),
    )


class TrainingCompletion(Base):
    """Record of a worker finishing a training module."""

    __tablename__ = "training_completion"

    training_completion_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_profile.worker_id", ondelete="CASCADE"),
        nullable=False,
    )
    module_code: Mapped[str] = mapped_column(String, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("worker_id", "module_code", name="training_completion_unique"),
    )
