from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserInfo(BaseModel):
    id: UUID
    name: str
    email: EmailStr
    department: Optional[str] = None
    legacy_role: Optional[str] = None


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserInfo
    roles: List[str]
    permissions: List[str]
    issued_at: datetime


class CurrentUser(BaseModel):
    """Resolved authorization of the caller, as exposed to clients for UI gating."""

    user: UserInfo
    roles: List[str]
    effective_roles: List[str]
    permissions: List[str]


class LogoutResponse(BaseModel):
    success: bool = True
    message: str = "Logged out successfully"
