from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.cache import EffectiveAuthorization
from app.auth.rbac import check_permission
from app.core.exceptions import ServiceError
from app.db.session import get_db

from . import service
from .schemas import (
    PermissionGrant,
    RoleAssignment,
    RoleCreate,
    RoleResponse,
    RoleStatsResponse,
    RoleUpdate,
    UserRolesResponse,
)

router = APIRouter(prefix="/api/v1/roles", tags=["roles"])


@router.get(
    "",
    response_model=List[RoleResponse],
    dependencies=[Depends(check_permission("read:role"))],
)
async def list_roles(db: AsyncSession = Depends(get_db)) -> List[RoleResponse]:
    return await service.list_roles(db)


@router.get(
    "/stats",
    response_model=RoleStatsResponse,
    dependencies=[Depends(check_permission("read:role"))],
)
async def role_stats(db: AsyncSession = Depends(get_db)) -> RoleStatsResponse:
    return await service.role_stats(db)


@router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: RoleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("create:role")),
) -> RoleResponse:
    try:
        return await service.create_role(db, current_user.user_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/assign", response_model=UserRolesResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    payload: RoleAssignment,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:user_role")),
) -> UserRolesResponse:
    """Assign a role to a user. The user's cached authorization is dropped before responding."""
    try:
        return await service.assign_role(db, current_user.user_id, payload.user_id, payload.role_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/users/{user_id}",
    response_model=UserRolesResponse,
    dependencies=[Depends(check_permission("read:role"))],
)
async def get_user_roles(user_id: UUID, db: AsyncSession = Depends(get_db)) -> UserRolesResponse:
    try:
        return await service.get_user_roles(db, user_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/users/{user_id}/roles/{role_id}", response_model=UserRolesResponse)
async def remove_role(
    user_id: UUID,
    role_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:user_role")),
) -> UserRolesResponse:
    """Remove a role from a user. Removing the user's last role is rejected."""
    try:
        return await service.remove_role(db, current_user.user_id, user_id, role_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{role_id}",
    response_model=RoleResponse,
    dependencies=[Depends(check_permission("read:role"))],
)
async def get_role(role_id: UUID, db: AsyncSession = Depends(get_db)) -> RoleResponse:
    try:
        return await service.get_role(db, role_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: UUID,
    payload: RoleUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:role")),
) -> RoleResponse:
    try:
        return await service.update_role(db, current_user.user_id, role_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("delete:role")),
) -> Response:
    """System roles and roles still assigned to users cannot be deleted."""
    try:
        await service.delete_role(db, current_user.user_id, role_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{role_id}/permissions", response_model=RoleResponse)
async def grant_permission(
    role_id: UUID,
    payload: PermissionGrant,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:role")),
) -> RoleResponse:
    try:
        return await service.grant_permission(db, current_user.user_id, role_id, payload.permission_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/{role_id}/permissions/{permission_id}", response_model=RoleResponse)
async def revoke_permission(
    role_id: UUID,
    permission_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: EffectiveAuthorization = Depends(check_permission("update:role")),
) -> RoleResponse:
    try:
        return await service.revoke_permission(db, current_user.user_id, role_id, permission_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
