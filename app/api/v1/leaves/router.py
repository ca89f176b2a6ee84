from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.cache import EffectiveAuthorization
from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission, require_system_admin
from app.core.enums import LeaveStatus
from app.core.exceptions import ServiceError
from app.db.session import get_db

from . import service
from .schemas import (
    ApprovalStepResponse,
    LeaveDecision,
    LeaveOverride,
    LeaveRequestCreate,
    LeaveRequestResponse,
    LeaveStatsResponse,
)

router = APIRouter(prefix="/api/v1/leaves", tags=["leaves"])


@router.post(
    "",
    response_model=LeaveRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_leave_request(
    payload: LeaveRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("create:leave_request")),
) -> LeaveRequestResponse:
    """Apply for leave. The approval chain (one step per level) is generated by the backend."""
    try:
        return await service.create_leave_request(db, current_user, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/my", response_model=List[LeaveRequestResponse])
async def list_my_leave_requests(
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(get_current_user),
) -> List[LeaveRequestResponse]:
    return await service.list_my_leave_requests(db, current_user.user_id)


@router.get("/pending-approvals", response_model=List[LeaveRequestResponse])
async def list_pending_approvals(
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("approve:leave_request")),
) -> List[LeaveRequestResponse]:
    """Requests waiting at a level whose approver role the caller holds."""
    return await service.list_pending_for_approver(db, current_user)


@router.get(
    "/stats",
    response_model=LeaveStatsResponse,
    dependencies=[Depends(check_permission("read:leave_request:all"))],
)
async def leave_stats(db: AsyncSession = Depends(get_db)) -> LeaveStatsResponse:
    return await service.leave_stats(db)


@router.get(
    "",
    response_model=List[LeaveRequestResponse],
    dependencies=[Depends(check_permission("read:leave_request:all"))],
)
async def list_leave_requests(
    status_filter: Optional[LeaveStatus] = Query(None, alias="status"),
    user_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
) -> List[LeaveRequestResponse]:
    return await service.list_leave_requests(db, status_filter=status_filter, user_id=user_id)


@router.get("/{leave_id}", response_model=LeaveRequestResponse)
async def get_leave_request(
    leave_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(get_current_user),
) -> LeaveRequestResponse:
    try:
        return await service.get_leave_request(db, leave_id, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{leave_id}/workflow", response_model=List[ApprovalStepResponse])
async def get_approval_workflow(
    leave_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(get_current_user),
) -> List[ApprovalStepResponse]:
    try:
        return await service.get_approval_workflow(db, leave_id, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{leave_id}/decision", response_model=LeaveRequestResponse)
async def decide_leave_request(
    leave_id: UUID,
    payload: LeaveDecision,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("approve:leave_request")),
) -> LeaveRequestResponse:
    """Approve or reject the current level. The caller must also hold that level's approver role."""
    try:
        return await service.decide_leave_request(
            db, leave_id, payload.level, current_user, payload.decision, payload.comments
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{leave_id}/cancel", response_model=LeaveRequestResponse)
async def cancel_leave_request(
    leave_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("cancel:leave_request")),
) -> LeaveRequestResponse:
    """Cancel your own request (pending, in progress or approved)."""
    try:
        return await service.cancel_leave_request(db, leave_id, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{leave_id}/override", response_model=LeaveRequestResponse)
async def override_leave_status(
    leave_id: UUID,
    payload: LeaveOverride,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(require_system_admin),
) -> LeaveRequestResponse:
    """Set any status outside the approval workflow. System administrators only; audited."""
    try:
        return await service.override_leave_status(db, leave_id, current_user, payload.status, payload.comments)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
