import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.cache import EffectiveAuthorization
from app.auth.context import authorization_cache, clear_user_state, revoked_tokens
from app.auth.models import User
from app.auth.schemas import CurrentUser, LoginRequest, LoginResponse, UserInfo
from app.auth.security import create_access_token, verify_password
from app.core.audit_service import record_audit_event
from app.core.enums import AuditAction
from app.core.exceptions import AuthenticationFailure, ServiceError

logger = logging.getLogger(__name__)


def _user_info(authorization: EffectiveAuthorization) -> UserInfo:
    user = authorization.user
    return UserInfo(
        id=user.id,
        name=user.full_name,
        email=user.email,
        department=user.department,
        legacy_role=user.legacy_role,
    )


def to_current_user(authorization: EffectiveAuthorization) -> CurrentUser:
    return CurrentUser(
        user=_user_info(authorization),
        roles=sorted(authorization.role_names),
        effective_roles=sorted(authorization.effective_roles),
        permissions=sorted(authorization.permission_names),
    )


async def _audit_login(action: AuditAction, user: Optional[User], email: str, reason: Optional[str] = None) -> None:
    details = {"email": email}
    if reason:
        details["reason"] = reason
    await record_audit_event(
        action,
        actor_id=user.id if user else None,
        target_type="user",
        target_id=user.id if user else None,
        details=details,
    )


async def login_user(db: AsyncSession, payload: LoginRequest) -> LoginResponse:
    result = await db.execute(select(User).where(User.email == payload.email))
    user = result.scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        logger.info("Failed login for %s", payload.email)
        await _audit_login(AuditAction.LOGIN_FAILED, user, payload.email, "invalid_credentials")
        raise ServiceError("Invalid email or password", status.HTTP_401_UNAUTHORIZED)
    if not user.active:
        await _audit_login(AuditAction.LOGIN_FAILED, user, payload.email, "deactivated")
        raise AuthenticationFailure("User account is deactivated")

    # Fresh snapshot at login so role changes made while logged out are visible immediately
    authorization_cache.invalidate(user.id)
    authorization = await authorization_cache.resolve(user.id)
    await _audit_login(AuditAction.LOGIN_SUCCEEDED, user, payload.email)

    return LoginResponse(
        access_token=create_access_token(user_id=user.id),
        user=_user_info(authorization),
        roles=sorted(authorization.role_names),
        permissions=sorted(authorization.permission_names),
        issued_at=datetime.now(timezone.utc),
    )


async def logout_user(token: str, authorization: EffectiveAuthorization) -> None:
    revoked_tokens.revoke(token)
    clear_user_state(authorization.user_id)
    await record_audit_event(
        AuditAction.LOGOUT,
        actor_id=authorization.user_id,
        target_type="user",
        target_id=authorization.user_id,
    )
