from typing import Iterable

from fastapi import Depends, HTTPException, Request, status

from app.auth.cache import EffectiveAuthorization
from app.auth.context import policy
from app.auth.dependencies import get_current_user
from app.core.audit_service import record_audit_event
from app.core.enums import AuditAction


async def _deny(
    request: Request,
    current_user: EffectiveAuthorization,
    target_type: str,
    required: Iterable[str],
    detail: str,
) -> HTTPException:
    """Audit a failed guard (best-effort) and build the 403 to raise."""
    required = list(required)
    await record_audit_event(
        AuditAction.PERMISSION_DENIED,
        actor_id=current_user.user_id,
        target_type=target_type,
        target_id=",".join(required),
        details={
            "required": required,
            "roles": sorted(current_user.role_names),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def check_permission(permission: str):
    """
    Dependency factory to enforce a specific permission.

    Example:
        Depends(check_permission("approve:leave_request"))
    """

    async def _checker(
        request: Request,
        current_user: EffectiveAuthorization = Depends(get_current_user),
    ) -> EffectiveAuthorization:
        if not current_user.has_permission(permission):
            raise await _deny(
                request, current_user, "permission", [permission], f"Permission denied: {permission} required"
            )
        return current_user

    return _checker


def require_all_permissions(*permissions: str):
    async def _checker(
        request: Request,
        current_user: EffectiveAuthorization = Depends(get_current_user),
    ) -> EffectiveAuthorization:
        if not current_user.has_all_permissions(permissions):
            raise await _deny(
                request, current_user, "permission", permissions,
                f"All permissions required: {', '.join(permissions)}",
            )
        return current_user

    return _checker


def require_any_permission(*permissions: str):
    async def _checker(
        request: Request,
        current_user: EffectiveAuthorization = Depends(get_current_user),
    ) -> EffectiveAuthorization:
        if not current_user.has_any_permission(permissions):
            raise await _deny(
                request, current_user, "permission", permissions,
                f"One of these permissions required: {', '.join(permissions)}",
            )
        return current_user

    return _checker


def require_roles(*roles: str):
    """Role check against effective roles (inherited roles count) and the legacy single role."""

    async def _checker(
        request: Request,
        current_user: EffectiveAuthorization = Depends(get_current_user),
    ) -> EffectiveAuthorization:
        if not current_user.has_any_role(roles):
            raise await _deny(request, current_user, "role", roles, f"Role required: {' or '.join(roles)}")
        return current_user

    return _checker


async def require_system_admin(
    request: Request,
    current_user: EffectiveAuthorization = Depends(get_current_user),
) -> EffectiveAuthorization:
    """Only super-admin roles may act outside the normal workflow (leave status overrides)."""
    if current_user.effective_roles.isdisjoint(policy.super_admin_roles):
        raise await _deny(
            request, current_user, "role", sorted(policy.super_admin_roles), "System administrator access required"
        )
    return current_user
