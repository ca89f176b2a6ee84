from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.cache import EffectiveAuthorization
from app.auth.rbac import check_permission
from app.core.exceptions import ServiceError
from app.db.session import get_db

from . import service
from .schemas import PermissionCreate, PermissionGroup, PermissionResponse, PermissionUpdate

router = APIRouter(prefix="/api/v1/permissions", tags=["permissions"])


@router.get(
    "",
    response_model=List[PermissionGroup],
    dependencies=[Depends(check_permission("read:permission"))],
)
async def list_permissions(db: AsyncSession = Depends(get_db)) -> List[PermissionGroup]:
    """Permissions grouped by category."""
    return await service.list_permissions(db)


@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    payload: PermissionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("create:permission")),
) -> PermissionResponse:
    try:
        return await service.create_permission(db, current_user.user_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: UUID,
    payload: PermissionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:permission")),
) -> PermissionResponse:
    try:
        return await service.update_permission(db, current_user.user_id, permission_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("delete:permission")),
) -> Response:
    """Permissions still granted to a role cannot be deleted."""
    try:
        await service.delete_permission(db, current_user.user_id, permission_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
