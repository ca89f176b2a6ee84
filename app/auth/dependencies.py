import logging
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Response, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.exc import SQLAlchemyError

from app.auth.cache import EffectiveAuthorization
from app.auth.context import authorization_cache, identity_store, rate_limiter, revoked_tokens
from app.auth.rate_limit import RateLimitStatus
from app.auth.security import decode_access_token
from app.core.exceptions import AuthenticationFailure, RateLimitExceeded

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth", auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _rate_limit_headers(info: RateLimitStatus) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
        "X-RateLimit-Reset": info.reset_at.isoformat(),
    }


async def get_bearer_token(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    if not token:
        raise _unauthorized("Not authorized, no token")
    return token


async def get_current_user(
    response: Response,
    token: str = Depends(get_bearer_token),
) -> EffectiveAuthorization:
    """Resolve the caller's cached authorization, then charge the request to their rate budget."""
    try:
        if revoked_tokens.is_revoked(token):
            raise AuthenticationFailure("Token has been revoked")
        user_id = decode_access_token(token)
        authorization = await authorization_cache.resolve(user_id)
    except AuthenticationFailure as e:
        raise _unauthorized(e.message)

    try:
        limit_info = rate_limiter.check(user_id, authorization.effective_roles)
    except RateLimitExceeded as e:
        logger.info("Rate limit exceeded for user %s (limit=%s)", user_id, e.limit)
        headers = _rate_limit_headers(RateLimitStatus(limit=e.limit, remaining=0, reset_at=e.reset_at))
        headers["Retry-After"] = e.reset_at.strftime("%a, %d %b %Y %H:%M:%S GMT")
        raise HTTPException(status_code=e.status_code, detail=e.message, headers=headers)
    response.headers.update(_rate_limit_headers(limit_info))

    try:
        await identity_store.touch_last_activity(user_id)
    except SQLAlchemyError:
        logger.exception("Failed to update last activity for user %s", user_id)

    return authorization
