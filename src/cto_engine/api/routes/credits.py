"""CTO credit API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from cto_engine.api.dependencies import ActorId, Engine
from cto_engine.api.schemas import (
    BalanceResponse,
    CreditCreate,
    CreditResponse,
    EmployeeCreditResponse,
    ErrorResponse,
)

router = APIRouter(tags=["credits"])


# ============================================================================
# Credit batches
# ============================================================================


@router.post(
    "/credits",
    response_model=CreditResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def issue_credit(
    engine: Engine,
    actor_id: ActorId,
    payload: CreditCreate,
) -> CreditResponse:
    """Credit CTO hours from a memo to one or more employees."""
    credit = await engine.issue_credit(
        employee_ids=payload.employee_ids,
        duration=payload.duration.model_dump(),
        memo_no=payload.memo_no,
        issuer_id=actor_id,
        date_approved=payload.date_approved,
        attachment_ref=payload.attachment_ref,
    )
    return CreditResponse.model_validate(credit)


@router.post(
    "/credits/{credit_id}/rollback",
    response_model=CreditResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def rollback_credit(
    engine: Engine,
    actor_id: ActorId,
    credit_id: Annotated[UUID, Path()],
) -> CreditResponse:
    """Reverse a credit batch whose hours are untouched."""
    credit = await engine.rollback_credit(credit_id, actor_id)
    return CreditResponse.model_validate(credit)


@router.get("/credits", response_model=list[CreditResponse])
async def list_credits(
    engine: Engine,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[CreditResponse]:
    """List credit batches, most recent first."""
    credits = await engine.credits.list_credits(limit=limit)
    return [CreditResponse.model_validate(c) for c in credits]


@router.get(
    "/credits/{credit_id}",
    response_model=CreditResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_credit(
    engine: Engine,
    credit_id: Annotated[UUID, Path()],
) -> CreditResponse:
    """Get a credit batch with its entries."""
    credit = await engine.credits.get_credit(credit_id)
    return CreditResponse.model_validate(credit)


# ============================================================================
# Employee views
# ============================================================================


@router.get(
    "/employees/{employee_id}/credits",
    response_model=list[EmployeeCreditResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_employee_credits(
    engine: Engine,
    employee_id: Annotated[UUID, Path()],
) -> list[EmployeeCreditResponse]:
    """Per-batch CTO hours of one employee."""
    entries = await engine.credits.list_employee_credits(employee_id)
    return [EmployeeCreditResponse.from_entry(e) for e in entries]


@router.get(
    "/employees/{employee_id}/balance",
    response_model=BalanceResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_balance(
    engine: Engine,
    employee_id: Annotated[UUID, Path()],
) -> BalanceResponse:
    """Aggregate CTO balance of one employee."""
    summary = await engine.credits.get_balance_summary(employee_id)
    return BalanceResponse.model_validate(summary)
