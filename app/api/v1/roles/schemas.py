from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.auth.permissions import PermissionName

ROLE_NAME_PATTERN = r"^[a-z][a-z0-9_]*$"


def _validate_permission_name(value: str) -> str:
    value = value.strip()
    if PermissionName.parse(value) is None:
        raise ValueError("Permission name must look like action:resource or action:resource:scope")
    return value


# ----- Roles -----
class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100, pattern=ROLE_NAME_PATTERN)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    permission_ids: List[UUID] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class RoleUpdate(BaseModel):
    """Partial update. permission_ids, when given, replaces the role's permission set."""

    name: Optional[str] = Field(None, min_length=2, max_length=100, pattern=ROLE_NAME_PATTERN)
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    permission_ids: Optional[List[UUID]] = None

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class RoleResponse(BaseModel):
    id: UUID
    name: str
    display_name: str
    description: Optional[str] = None
    is_system_role: bool
    permissions: List[str]
    user_count: int = 0
    created_at: datetime
    updated_at: datetime


class RoleSummary(BaseModel):
    id: UUID
    name: str
    display_name: str
    is_system_role: bool
    assigned_at: datetime


class RoleAssignment(BaseModel):
    user_id: UUID
    role_id: UUID


class PermissionGrant(BaseModel):
    permission_id: UUID


class UserRolesResponse(BaseModel):
    user_id: UUID
    roles: List[RoleSummary]


class RoleStatsResponse(BaseModel):
    total_roles: int
    system_roles: int
    custom_roles: int
    total_permissions: int
    total_assignments: int
    users_per_role: Dict[str, int]


# ----- Permissions -----
class PermissionCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=150)
    category: str = Field("custom", min_length=1, max_length=100)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_permission_name(v)


class PermissionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=150)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _validate_permission_name(v) if v is not None else v


class PermissionResponse(BaseModel):
    id: UUID
    name: str
    category: str
    description: Optional[str] = None
    role_count: int = 0

    class Config:
        from_attributes = True


class PermissionGroup(BaseModel):
    category: str
    permissions: List[PermissionResponse]
