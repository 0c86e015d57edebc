"""CTO application API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from cto_engine.api.dependencies import ActorId, Engine
from cto_engine.api.schemas import (
    ApplicationCreate,
    ApplicationResponse,
    DecisionRequest,
    ErrorResponse,
    PendingCountResponse,
)

router = APIRouter(tags=["applications"])


@router.post(
    "/applications",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def submit_application(
    engine: Engine,
    actor_id: ActorId,
    payload: ApplicationCreate,
) -> ApplicationResponse:
    """Submit a CTO application for the acting employee."""
    application = await engine.submit_application(
        employee_id=actor_id,
        requested_hours=payload.requested_hours,
        reason=payload.reason,
        inclusive_dates=payload.inclusive_dates,
        approvers=payload.approvers.model_dump() if payload.approvers else None,
        memos=[m.model_dump() for m in payload.memos] if payload.memos else None,
    )
    return ApplicationResponse.from_application(application)


@router.get(
    "/applications",
    response_model=list[ApplicationResponse],
    responses={400: {"model": ErrorResponse}},
)
async def list_applications(
    engine: Engine,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    employee_id: Annotated[UUID | None, Query()] = None,
) -> list[ApplicationResponse]:
    """All applications, newest first, for administrators."""
    applications = await engine.applications.list_applications(
        status=status_filter, employee_id=employee_id
    )
    return [ApplicationResponse.from_application(a) for a in applications]


@router.get(
    "/applications/{application_id}",
    response_model=ApplicationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_application(
    engine: Engine,
    application_id: Annotated[UUID, Path()],
) -> ApplicationResponse:
    """Get an application with its steps and memos."""
    application = await engine.applications.get_application(application_id)
    return ApplicationResponse.from_application(application)


@router.post(
    "/applications/{application_id}/cancel",
    response_model=ApplicationResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_application(
    engine: Engine,
    actor_id: ActorId,
    application_id: Annotated[UUID, Path()],
) -> ApplicationResponse:
    """Withdraw a pending application."""
    application = await engine.cancel_application(application_id, actor_id)
    return ApplicationResponse.from_application(application)


@router.post(
    "/applications/{application_id}/decision",
    response_model=ApplicationResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def decide_application(
    engine: Engine,
    actor_id: ActorId,
    application_id: Annotated[UUID, Path()],
    payload: DecisionRequest,
) -> ApplicationResponse:
    """Approve or reject the acting approver's level."""
    application = await engine.decide(
        application_id, actor_id, payload.decision, payload.remarks
    )
    return ApplicationResponse.from_application(application)


@router.get(
    "/employees/{employee_id}/applications",
    response_model=list[ApplicationResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_employee_applications(
    engine: Engine,
    employee_id: Annotated[UUID, Path()],
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> list[ApplicationResponse]:
    """Applications of one employee, newest first."""
    applications = await engine.applications.list_employee_applications(
        employee_id, status=status_filter
    )
    return [ApplicationResponse.from_application(a) for a in applications]


@router.get(
    "/approvers/{approver_id}/pending",
    response_model=list[ApplicationResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_pending_for_approver(
    engine: Engine,
    approver_id: Annotated[UUID, Path()],
) -> list[ApplicationResponse]:
    """Applications waiting on this approver's decision."""
    applications = await engine.approvals.list_pending_for_approver(approver_id)
    return [ApplicationResponse.from_application(a) for a in applications]


@router.get(
    "/approvers/{approver_id}/pending/count",
    response_model=PendingCountResponse,
    responses={404: {"model": ErrorResponse}},
)
async def count_pending_for_approver(
    engine: Engine,
    approver_id: Annotated[UUID, Path()],
) -> PendingCountResponse:
    """Number of applications waiting on this approver."""
    count = await engine.approvals.count_pending_for_approver(approver_id)
    return PendingCountResponse(approver_id=approver_id, count=count)
