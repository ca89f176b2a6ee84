"""
Static RBAC configuration: role hierarchy, permission patterns, rate-limit tiers
and the leave approval chain. Loaded once at process start, never mutated.
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class RateLimitTier(BaseModel):
    role: str
    requests: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)


class RbacPolicy(BaseModel):
    version: str = "1"

    # role -> directly inherited roles; closure computed at resolve time
    role_hierarchy: Dict[str, List[str]]
    # role -> wildcard-capable "action:resource[:scope]" patterns
    permission_patterns: Dict[str, List[str]]
    # Highest priority first; the last tier is the default
    rate_limit_tiers: List[RateLimitTier]
    # approval level N (1-based) -> required approver role
    approval_chain: List[str] = Field(..., min_length=1)

    super_admin_roles: List[str] = Field(default_factory=lambda: ["super_admin", "admin"])
    # Roles allowed to decide any approval level / override a leave request
    approval_override_roles: List[str] = Field(default_factory=lambda: ["super_admin"])

    class Config:
        frozen = True

    @model_validator(mode="after")
    def validate_tiers(self) -> "RbacPolicy":
        if not self.rate_limit_tiers:
            raise ValueError("At least one rate limit tier is required")
        return self

    @property
    def default_tier(self) -> RateLimitTier:
        return self.rate_limit_tiers[-1]


_FIFTEEN_MINUTES = 15 * 60

DEFAULT_POLICY = RbacPolicy(
    role_hierarchy={
        "super_admin": ["admin"],
        "admin": ["hr_manager", "department_manager", "payroll"],
        "hr_manager": ["hr", "manager"],
        "department_manager": ["manager"],
        "manager": ["employee"],
        "payroll": ["employee"],
        "hr": ["employee"],
        "employee": [],
    },
    permission_patterns={
        "admin": ["*"],
        "hr_manager": ["*:hr", "*:user", "*:employee", "*:leave_request", "*:document"],
        "manager": ["read:*", "approve:leave_request", "view:team"],
        "payroll": ["*:payroll", "*:compensation", "read:user"],
        "hr": ["*:hr", "*:employee", "read:user", "*:leave_request"],
        "employee": ["read:own", "create:own", "update:own"],
    },
    rate_limit_tiers=[
        RateLimitTier(role="admin", requests=500, window_seconds=_FIFTEEN_MINUTES),
        RateLimitTier(role="hr", requests=300, window_seconds=_FIFTEEN_MINUTES),
        RateLimitTier(role="manager", requests=200, window_seconds=_FIFTEEN_MINUTES),
        RateLimitTier(role="employee", requests=100, window_seconds=_FIFTEEN_MINUTES),
    ],
    approval_chain=["department_manager", "hr_manager", "admin"],
)


def load_policy(path: Optional[str] = None) -> RbacPolicy:
    """Built-in policy, or the JSON document at `path` validated against RbacPolicy."""
    if not path:
        return DEFAULT_POLICY
    return RbacPolicy.model_validate_json(Path(path).read_text(encoding="utf-8"))
