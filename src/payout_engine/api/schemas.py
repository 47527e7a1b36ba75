"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Settlement schemas
# ============================================================================


class SettlementCreate(BaseModel):
    """Schema for opening a settlement for a job."""

    job_id: str = Field(min_length=1)
    worker_id: UUID
    pre_tier_base_cents: int
    quote_total_cents: int
    scheduled_at: datetime | None = None
    bonus_override: bool = False
    client_fully_paid_at: datetime | None = None


class SettlementResponse(BaseModel):
    """Schema for settlement record response."""

    model_config = ConfigDict(from_attributes=True)

    settlement_id: UUID
    job_id: str
    worker_id: UUID
    quote_total_cents: int
    pre_tier_base_cents: int
    bonus_override: bool
    scheduled_at: datetime | None = None
    client_fully_paid_at: datetime | None = None
    tier_applied: str | None = None
    rate_multiplier_applied: Decimal | None = None
    payout_base_cents: int | None = None
    payout_bonus_cents: int
    bonus_breakdown_json: list[dict[str, Any]] = Field(default_factory=list)
    payout_amount_cents: int | None = None
    payout_currency: str | None = None
    payout_fx_rate: Decimal | None = None
    payout_status: str
    payout_hold: bool
    payout_hold_reason: str | None = None
    payout_blockers: list[str] = Field(default_factory=list)
    job_completed_at: datetime | None = None
    job_completed_by: str | None = None
    completion_confirmed_by_admin: bool
    external_transfer_id: str | None = None
    payout_paid_at: datetime | None = None


class BonusLineResponse(BaseModel):
    """One badge's contribution to the bonus."""

    badge: str
    pct: int


class PreviewResponse(BaseModel):
    """Schema for settlement preview response."""

    model_config = ConfigDict(from_attributes=True)

    settlement_id: UUID
    status: str
    tier: str
    tier_label: str
    multiplier: Decimal
    base_cents: int
    bonus_cents: int
    bonus_breakdown: list[BonusLineResponse]
    amount_cents: int
    currency: str
    fx_rate: Decimal
    display_amount: str
    is_final: bool


class CompletionRequest(BaseModel):
    """Schema for recording job completion."""

    completed_by: Literal["worker", "admin"]
    completed_at: datetime | None = None


class ClientPaymentRequest(BaseModel):
    """Schema for recording the client's full payment."""

    paid_at: datetime | None = None


class ReleaseRequest(BaseModel):
    """Schema for a release trigger."""

    triggered_by: str = "admin"


class ReleaseResponse(BaseModel):
    """Schema for release outcome."""

    model_config = ConfigDict(from_attributes=True)

    settlement_id: UUID
    status: str
    blockers: list[str]
    transfer_id: str | None = None
    created_transfer: bool


class HoldRequest(BaseModel):
    """Schema for setting or releasing a manual hold."""

    hold: bool
    reason: str | None = None


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
