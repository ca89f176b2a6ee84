from datetime import datetime, timedelta, timezone
import secrets
from typing import Any, Dict, Optional
from uuid import UUID

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from app.core.config import settings
from app.core.exceptions import AuthenticationFailure


def hash_password(plain_password: str) -> str:
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # In case the stored hash is invalid/corrupted
        return False


def create_access_token(*, user_id: UUID, expires_minutes: Optional[int] = None) -> str:
    if expires_minutes is None:
        expires_minutes = settings.access_token_expire_minutes

    now = datetime.now(timezone.utc)
    to_encode: Dict[str, Any] = {
        "sub": str(user_id),
        "jti": secrets.token_hex(8),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID:
    """Return the user id carried by a valid token; AuthenticationFailure otherwise."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationFailure("Token has expired")
    except JWTError:
        raise AuthenticationFailure("Invalid token")

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise AuthenticationFailure("Invalid token")
    try:
        return UUID(user_id_str)
    except ValueError:
        raise AuthenticationFailure("Invalid token")
