"""Settlement API endpoints."""

from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, status

from payout_engine.api.dependencies import Gate, Service
from payout_engine.api.schemas import (
    ClientPaymentRequest,
    CompletionRequest,
    ErrorResponse,
    HoldRequest,
    PreviewResponse,
    ReleaseRequest,
    ReleaseResponse,
    SettlementCreate,
    SettlementResponse,
)
from payout_engine.calculators import WorkerNotFoundError
from payout_engine.services import (
    InvalidSettlementInputError,
    InvalidTransitionError,
    SettlementNotFoundError,
)

router = APIRouter(prefix="/settlements", tags=["settlements"])

SettlementId = Annotated[UUID, Path()]


def _not_found(exc: Exception) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=str(exc),
    ) from exc


# ============================================================================
# Settlement records
# ============================================================================


@router.post(
    "",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def open_settlement(
    service: Service,
    payload: SettlementCreate,
) -> SettlementResponse:
    """Open the settlement for a completed job (idempotent per job)."""
    try:
        record = await service.open_settlement(
            job_id=payload.job_id,
            worker_id=payload.worker_id,
            pre_tier_base_cents=payload.pre_tier_base_cents,
            quote_total_cents=payload.quote_total_cents,
            scheduled_at=payload.scheduled_at,
            bonus_override=payload.bonus_override,
            client_fully_paid_at=payload.client_fully_paid_at,
        )
    except InvalidSettlementInputError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except WorkerNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)


@router.get(
    "/{settlement_id}",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_settlement(
    service: Service,
    settlement_id: SettlementId,
) -> SettlementResponse:
    """Get a settlement record."""
    try:
        record = await service.get_settlement(settlement_id)
    except SettlementNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)


@router.get(
    "/{settlement_id}/preview",
    response_model=PreviewResponse,
    responses={404: {"model": ErrorResponse}},
)
async def preview_settlement(
    gate: Gate,
    settlement_id: SettlementId,
) -> PreviewResponse:
    """Earnings estimate; final stored values once paid. Changes nothing."""
    try:
        preview = await gate.compute_preview(settlement_id)
    except (SettlementNotFoundError, WorkerNotFoundError) as e:
        _not_found(e)
    return PreviewResponse.model_validate(preview)


# ============================================================================
# Workflow
# ============================================================================


@router.post(
    "/{settlement_id}/completion",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def record_completion(
    service: Service,
    settlement_id: SettlementId,
    payload: CompletionRequest,
) -> SettlementResponse:
    """Record job completion by the worker or an administrator."""
    try:
        record = await service.record_completion(
            settlement_id,
            completed_by=payload.completed_by,
            completed_at=payload.completed_at,
        )
    except SettlementNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)


@router.post(
    "/{settlement_id}/client-payment",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def record_client_payment(
    service: Service,
    settlement_id: SettlementId,
    payload: ClientPaymentRequest | None = None,
) -> SettlementResponse:
    """Record that the client has paid for the job in full."""
    try:
        record = await service.record_client_payment(
            settlement_id, paid_at=payload.paid_at if payload else None
        )
    except SettlementNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)


@router.post(
    "/{settlement_id}/release",
    response_model=ReleaseResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def release_payout(
    gate: Gate,
    settlement_id: SettlementId,
    payload: ReleaseRequest | None = None,
) -> ReleaseResponse:
    """Evaluate the settlement and transfer the payout if nothing prevents it.

    Blocked and held outcomes are normal responses, not errors.
    """
    triggered_by = payload.triggered_by if payload else "admin"
    try:
        result = await gate.attempt_release(settlement_id, triggered_by=triggered_by)
    except (SettlementNotFoundError, WorkerNotFoundError) as e:
        _not_found(e)
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return ReleaseResponse.model_validate(result)


@router.post(
    "/{settlement_id}/hold",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def set_hold(
    gate: Gate,
    settlement_id: SettlementId,
    payload: HoldRequest,
) -> SettlementResponse:
    """Set or release a manual payout hold. Paid settlements are unchanged."""
    try:
        record = await gate.set_hold(settlement_id, payload.hold, payload.reason)
    except SettlementNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)


@router.post(
    "/{settlement_id}/clear-blockers",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}},
)
async def clear_blockers(
    service: Service,
    settlement_id: SettlementId,
) -> SettlementResponse:
    """Clear blockers after an administrator has fixed their cause."""
    try:
        record = await service.clear_blockers(settlement_id)
    except SettlementNotFoundError as e:
        _not_found(e)
    return SettlementResponse.model_validate(record)
