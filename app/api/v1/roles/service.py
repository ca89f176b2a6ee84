"""
Role and permission administration.

Every mutation commits first, then drops the authorization snapshots it made
stale (holders of the role, or every snapshot when a permission definition
changes), then writes the audit entry. A caller that gets a response can rely
on the next request of an affected user seeing the change.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set
from uuid import UUID

from fastapi import status
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.context import authorization_cache
from app.auth.models import Permission, Role, RolePermission, User, UserRole
from app.core.audit_service import record_audit_event
from app.core.enums import AuditAction
from app.core.exceptions import IntegrityViolation, NotFoundError, ServiceError

from .schemas import (
    PermissionCreate,
    PermissionGroup,
    PermissionResponse,
    PermissionUpdate,
    RoleCreate,
    RoleResponse,
    RoleStatsResponse,
    RoleSummary,
    RoleUpdate,
    UserRolesResponse,
)

logger = logging.getLogger(__name__)


# ----- lookups -----
async def _get_role_or_404(db: AsyncSession, role_id: UUID) -> Role:
    role = await db.get(Role, role_id)
    if not role:
        raise NotFoundError("Role not found")
    return role


async def _get_permission_or_404(db: AsyncSession, permission_id: UUID) -> Permission:
    permission = await db.get(Permission, permission_id)
    if not permission:
        raise NotFoundError("Permission not found")
    return permission


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def _role_name_taken(db: AsyncSession, name: str, exclude_id: Optional[UUID] = None) -> bool:
    q = select(Role.id).where(Role.name == name)
    if exclude_id is not None:
        q = q.where(Role.id != exclude_id)
    result = await db.execute(q.limit(1))
    return result.scalar_one_or_none() is not None


async def _permission_name_taken(db: AsyncSession, name: str, exclude_id: Optional[UUID] = None) -> bool:
    q = select(Permission.id).where(Permission.name == name)
    if exclude_id is not None:
        q = q.where(Permission.id != exclude_id)
    result = await db.execute(q.limit(1))
    return result.scalar_one_or_none() is not None


async def _granted_permission_ids(db: AsyncSession, role_id: UUID) -> Set[UUID]:
    result = await db.execute(select(RolePermission.permission_id).where(RolePermission.role_id == role_id))
    return set(result.scalars().all())


async def _role_holders(db: AsyncSession, role_id: UUID) -> List[UUID]:
    result = await db.execute(select(UserRole.user_id).where(UserRole.role_id == role_id))
    return list(result.scalars().all())


async def _require_permissions_exist(db: AsyncSession, permission_ids: Set[UUID]) -> None:
    if not permission_ids:
        return
    result = await db.execute(select(Permission.id).where(Permission.id.in_(list(permission_ids))))
    missing = permission_ids - set(result.scalars().all())
    if missing:
        raise ServiceError(
            f"Unknown permission id(s): {', '.join(sorted(str(m) for m in missing))}",
            status.HTTP_400_BAD_REQUEST,
        )


async def _role_to_response(db: AsyncSession, role: Role) -> RoleResponse:
    perms = await db.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role.id)
        .order_by(Permission.name)
    )
    users = await db.execute(select(func.count(UserRole.id)).where(UserRole.role_id == role.id))
    return RoleResponse(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        is_system_role=bool(role.is_system_role),
        permissions=list(perms.scalars().all()),
        user_count=users.scalar_one(),
        created_at=role.created_at,
        updated_at=role.updated_at,
    )


async def _invalidate_role_holders(db: AsyncSession, role_id: UUID) -> None:
    holders = await _role_holders(db, role_id)
    authorization_cache.invalidate_many(holders)
    if holders:
        logger.info("Invalidated %s cached authorization(s) for role %s", len(holders), role_id)


async def _commit(db: AsyncSession, conflict_message: str) -> None:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ServiceError(conflict_message, status.HTTP_409_CONFLICT)
    except Exception:
        await db.rollback()
        raise


# ----- roles -----
async def list_roles(db: AsyncSession) -> List[RoleResponse]:
    result = await db.execute(select(Role).order_by(Role.is_system_role.desc(), Role.name))
    return [await _role_to_response(db, r) for r in result.scalars().all()]


async def get_role(db: AsyncSession, role_id: UUID) -> RoleResponse:
    return await _role_to_response(db, await _get_role_or_404(db, role_id))


async def create_role(db: AsyncSession, actor_id: UUID, payload: RoleCreate) -> RoleResponse:
    """Custom roles only; system roles come from seeding."""
    if await _role_name_taken(db, payload.name):
        raise ServiceError("Role name already exists", status.HTTP_409_CONFLICT)
    permission_ids = set(payload.permission_ids)
    await _require_permissions_exist(db, permission_ids)

    role = Role(
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        is_system_role=False,
    )
    db.add(role)
    await db.flush()
    for permission_id in permission_ids:
        db.add(RolePermission(role_id=role.id, permission_id=permission_id))
    await _commit(db, "Role name already exists")
    await db.refresh(role)

    await record_audit_event(
        AuditAction.ROLE_CREATED,
        actor_id=actor_id,
        target_type="role",
        target_id=role.id,
        details={"name": role.name, "permission_ids": sorted(str(p) for p in permission_ids)},
    )
    return await _role_to_response(db, role)


async def update_role(db: AsyncSession, actor_id: UUID, role_id: UUID, payload: RoleUpdate) -> RoleResponse:
    """
    System roles accept display metadata and additional permissions only: they
    cannot be renamed and cannot lose a permission through this path.
    """
    role = await _get_role_or_404(db, role_id)
    changes: Dict[str, object] = {}

    if payload.name is not None and payload.name != role.name:
        if role.is_system_role:
            raise IntegrityViolation("Cannot rename system roles")
        if await _role_name_taken(db, payload.name, exclude_id=role.id):
            raise ServiceError("Role name already exists", status.HTTP_409_CONFLICT)
        changes["name"] = payload.name

    added: Set[UUID] = set()
    removed: Set[UUID] = set()
    if payload.permission_ids is not None:
        wanted = set(payload.permission_ids)
        current = await _granted_permission_ids(db, role.id)
        added, removed = wanted - current, current - wanted
        if removed and role.is_system_role:
            raise IntegrityViolation("Cannot remove permissions from system roles")
        await _require_permissions_exist(db, added)

    if "name" in changes:
        role.name = payload.name
    if payload.display_name is not None:
        role.display_name = payload.display_name
        changes["display_name"] = payload.display_name
    if payload.description is not None:
        role.description = payload.description
        changes["description"] = payload.description
    if removed:
        await db.execute(
            delete(RolePermission).where(
                RolePermission.role_id == role.id,
                RolePermission.permission_id.in_(list(removed)),
            )
        )
    for permission_id in added:
        db.add(RolePermission(role_id=role.id, permission_id=permission_id))
    await _commit(db, "Role name already exists")
    await db.refresh(role)

    # A role definition change is global: any snapshot may reference it
    if added or removed or "name" in changes:
        authorization_cache.invalidate_all()
        logger.info("Role %s definition changed; dropped all cached authorizations", role.id)

    await record_audit_event(
        AuditAction.ROLE_UPDATED,
        actor_id=actor_id,
        target_type="role",
        target_id=role.id,
        details={
            "changes": changes,
            "permissions_added": sorted(str(p) for p in added),
            "permissions_removed": sorted(str(p) for p in removed),
        },
    )
    return await _role_to_response(db, role)


async def delete_role(db: AsyncSession, actor_id: UUID, role_id: UUID) -> None:
    role = await _get_role_or_404(db, role_id)
    if role.is_system_role:
        raise IntegrityViolation("Cannot delete system roles")
    holders = await _role_holders(db, role.id)
    if holders:
        raise IntegrityViolation(f"Cannot delete role with {len(holders)} assigned user(s)")

    role_name = role.name
    try:
        await db.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        await db.execute(delete(Role).where(Role.id == role_id))
        await db.commit()
    except IntegrityError:
        # A user was assigned between the check and the delete
        await db.rollback()
        raise IntegrityViolation("Cannot delete role with assigned users")
    except Exception:
        await db.rollback()
        raise

    await record_audit_event(
        AuditAction.ROLE_DELETED,
        actor_id=actor_id,
        target_type="role",
        target_id=role_id,
        details={"name": role_name},
    )


async def grant_permission(db: AsyncSession, actor_id: UUID, role_id: UUID, permission_id: UUID) -> RoleResponse:
    role = await _get_role_or_404(db, role_id)
    permission = await _get_permission_or_404(db, permission_id)
    if permission_id in await _granted_permission_ids(db, role_id):
        raise ServiceError("Role already has this permission", status.HTTP_409_CONFLICT)

    db.add(RolePermission(role_id=role_id, permission_id=permission_id))
    await _commit(db, "Role already has this permission")
    await _invalidate_role_holders(db, role_id)

    await record_audit_event(
        AuditAction.PERMISSION_GRANTED,
        actor_id=actor_id,
        target_type="role",
        target_id=role_id,
        details={"role": role.name, "permission": permission.name},
    )
    return await _role_to_response(db, role)


async def revoke_permission(db: AsyncSession, actor_id: UUID, role_id: UUID, permission_id: UUID) -> RoleResponse:
    role = await _get_role_or_404(db, role_id)
    permission = await _get_permission_or_404(db, permission_id)
    if role.is_system_role:
        raise IntegrityViolation("Cannot remove permissions from system roles")

    try:
        result = await db.execute(
            delete(RolePermission).where(
                RolePermission.role_id == role_id,
                RolePermission.permission_id == permission_id,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Role does not have this permission")
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await _invalidate_role_holders(db, role_id)

    await record_audit_event(
        AuditAction.PERMISSION_REVOKED,
        actor_id=actor_id,
        target_type="role",
        target_id=role_id,
        details={"role": role.name, "permission": permission.name},
    )
    return await _role_to_response(db, role)


async def assign_role(db: AsyncSession, actor_id: UUID, user_id: UUID, role_id: UUID) -> UserRolesResponse:
    await _get_user_or_404(db, user_id)
    role = await _get_role_or_404(db, role_id)
    existing = await db.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise ServiceError("User already has this role", status.HTTP_409_CONFLICT)

    db.add(UserRole(user_id=user_id, role_id=role_id))
    await _commit(db, "User already has this role")
    authorization_cache.invalidate(user_id)

    await record_audit_event(
        AuditAction.ROLE_ASSIGNED,
        actor_id=actor_id,
        target_type="user",
        target_id=user_id,
        details={"role": role.name},
    )
    return await get_user_roles(db, user_id)


async def remove_role(db: AsyncSession, actor_id: UUID, user_id: UUID, role_id: UUID) -> UserRolesResponse:
    """Remove one assignment; a user always keeps at least one role."""
    role = await _get_role_or_404(db, role_id)
    existing = await db.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    assignment_id = existing.scalar_one_or_none()
    if assignment_id is None:
        raise NotFoundError("User does not have this role")

    remaining = (
        select(func.count(UserRole.id)).where(UserRole.user_id == user_id).scalar_subquery()
    )
    try:
        result = await db.execute(
            delete(UserRole)
            .where(UserRole.id == assignment_id, remaining > 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise IntegrityViolation("Cannot remove the user's last role")
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    authorization_cache.invalidate(user_id)

    await record_audit_event(
        AuditAction.ROLE_REMOVED,
        actor_id=actor_id,
        target_type="user",
        target_id=user_id,
        details={"role": role.name},
    )
    return await get_user_roles(db, user_id)


async def get_user_roles(db: AsyncSession, user_id: UUID) -> UserRolesResponse:
    await _get_user_or_404(db, user_id)
    result = await db.execute(
        select(Role, UserRole.created_at)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.name)
    )
    roles = [
        RoleSummary(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            is_system_role=bool(role.is_system_role),
            assigned_at=assigned_at,
        )
        for role, assigned_at in result.all()
    ]
    return UserRolesResponse(user_id=user_id, roles=roles)


async def role_stats(db: AsyncSession) -> RoleStatsResponse:
    total_roles = (await db.execute(select(func.count(Role.id)))).scalar_one()
    system_roles = (await db.execute(select(func.count(Role.id)).where(Role.is_system_role.is_(True)))).scalar_one()
    total_permissions = (await db.execute(select(func.count(Permission.id)))).scalar_one()
    total_assignments = (await db.execute(select(func.count(UserRole.id)))).scalar_one()
    per_role = await db.execute(
        select(Role.name, func.count(UserRole.id))
        .outerjoin(UserRole, UserRole.role_id == Role.id)
        .group_by(Role.name)
        .order_by(Role.name)
    )
    return RoleStatsResponse(
        total_roles=total_roles,
        system_roles=system_roles,
        custom_roles=total_roles - system_roles,
        total_permissions=total_permissions,
        total_assignments=total_assignments,
        users_per_role={name: count for name, count in per_role.all()},
    )


# ----- permissions -----
async def _permission_to_response(db: AsyncSession, permission: Permission) -> PermissionResponse:
    result = await db.execute(
        select(func.count(RolePermission.id)).where(RolePermission.permission_id == permission.id)
    )
    return PermissionResponse(
        id=permission.id,
        name=permission.name,
        category=permission.category,
        description=permission.description,
        role_count=result.scalar_one(),
    )


async def list_permissions(db: AsyncSession) -> List[PermissionGroup]:
    """All permissions grouped by category, each with the number of roles holding it."""
    result = await db.execute(
        select(Permission, func.count(RolePermission.id))
        .outerjoin(RolePermission, RolePermission.permission_id == Permission.id)
        .group_by(Permission.id)
        .order_by(Permission.category, Permission.name)
    )
    grouped: Dict[str, List[PermissionResponse]] = defaultdict(list)
    for permission, role_count in result.all():
        grouped[permission.category].append(
            PermissionResponse(
                id=permission.id,
                name=permission.name,
                category=permission.category,
                description=permission.description,
                role_count=role_count,
            )
        )
    return [PermissionGroup(category=c, permissions=p) for c, p in grouped.items()]


async def create_permission(db: AsyncSession, actor_id: UUID, payload: PermissionCreate) -> PermissionResponse:
    if await _permission_name_taken(db, payload.name):
        raise ServiceError("Permission name already exists", status.HTTP_409_CONFLICT)
    permission = Permission(name=payload.name, category=payload.category, description=payload.description)
    db.add(permission)
    await _commit(db, "Permission name already exists")
    await db.refresh(permission)

    await record_audit_event(
        AuditAction.PERMISSION_CREATED,
        actor_id=actor_id,
        target_type="permission",
        target_id=permission.id,
        details={"name": permission.name, "category": permission.category},
    )
    return await _permission_to_response(db, permission)


async def update_permission(
    db: AsyncSession,
    actor_id: UUID,
    permission_id: UUID,
    payload: PermissionUpdate,
) -> PermissionResponse:
    """Definition changes can alter any snapshot, so every cached authorization is dropped."""
    permission = await _get_permission_or_404(db, permission_id)
    changes: Dict[str, object] = {}
    if payload.name is not None and payload.name != permission.name:
        if await _permission_name_taken(db, payload.name, exclude_id=permission.id):
            raise ServiceError("Permission name already exists", status.HTTP_409_CONFLICT)
        changes["name"] = {"from": permission.name, "to": payload.name}
        permission.name = payload.name
    if payload.category is not None:
        permission.category = payload.category
        changes["category"] = payload.category
    if payload.description is not None:
        permission.description = payload.description
        changes["description"] = payload.description
    await _commit(db, "Permission name already exists")
    await db.refresh(permission)
    authorization_cache.invalidate_all()

    await record_audit_event(
        AuditAction.PERMISSION_UPDATED,
        actor_id=actor_id,
        target_type="permission",
        target_id=permission.id,
        details={"changes": changes},
    )
    return await _permission_to_response(db, permission)


async def delete_permission(db: AsyncSession, actor_id: UUID, permission_id: UUID) -> None:
    permission = await _get_permission_or_404(db, permission_id)
    result = await db.execute(
        select(func.count(RolePermission.id)).where(RolePermission.permission_id == permission_id)
    )
    role_count = result.scalar_one()
    if role_count:
        raise IntegrityViolation(f"Cannot delete permission assigned to {role_count} role(s)")

    name = permission.name
    try:
        await db.execute(delete(Permission).where(Permission.id == permission_id))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise IntegrityViolation("Cannot delete permission that is assigned to roles")
    except Exception:
        await db.rollback()
        raise
    authorization_cache.invalidate_all()

    await record_audit_event(
        AuditAction.PERMISSION_DELETED,
        actor_id=actor_id,
        target_type="permission",
        target_id=permission_id,
        details={"name": name},
    )
