"""Approver setting API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, status

from cto_engine.api.dependencies import ActorId, Engine
from cto_engine.api.schemas import ApproverChainIn, ApproverSettingResponse, ErrorResponse

router = APIRouter(prefix="/approver-settings", tags=["approver-settings"])


@router.put(
    "/{designation_id}",
    response_model=ApproverSettingResponse,
    responses={400: {"model": ErrorResponse}},
)
async def upsert_approver_setting(
    engine: Engine,
    actor_id: ActorId,
    designation_id: Annotated[UUID, Path()],
    payload: ApproverChainIn,
) -> ApproverSettingResponse:
    """Set the three-level approver chain of a designation."""
    setting = await engine.approver_settings.upsert(
        designation_id, payload.model_dump(), actor_id=actor_id
    )
    return ApproverSettingResponse.model_validate(setting)


@router.get(
    "/{designation_id}",
    response_model=ApproverSettingResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_approver_setting(
    engine: Engine,
    designation_id: Annotated[UUID, Path()],
) -> ApproverSettingResponse:
    """Get the approver chain of a designation."""
    setting = await engine.approver_settings.get(designation_id)
    if not setting:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No approver setting for designation {designation_id}",
        )
    return ApproverSettingResponse.model_validate(setting)
