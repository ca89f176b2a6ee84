from datetime import date, datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.core.enums import Decision, LeaveStatus, LeaveType


# ----- Create Leave Request -----
class LeaveRequestCreate(BaseModel):
    """Create a leave request for the current user. Approval steps are generated by the backend."""

    type: LeaveType
    start_date: date
    end_date: date
    reason: str = Field(..., min_length=1, max_length=2000)

    @model_validator(mode="after")
    def validate_dates(self) -> "LeaveRequestCreate":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        if not self.reason.strip():
            raise ValueError("reason is required")
        return self


# ----- Leave Request Response -----
class LeaveRequestResponse(BaseModel):
    id: UUID
    user_id: UUID
    type: LeaveType
    start_date: date
    end_date: date
    days: int
    reason: str
    status: LeaveStatus
    current_approval_level: Optional[int] = None
    approved_by: Optional[UUID] = None
    approval_notes: Optional[str] = None
    is_override: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ApprovalStepResponse(BaseModel):
    id: UUID
    leave_request_id: UUID
    approval_level: int
    approver_role: str
    approver_id: Optional[UUID] = None
    status: str
    comments: Optional[str] = None
    approved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ----- Decide / Override -----
class LeaveDecision(BaseModel):
    level: int = Field(..., ge=1, description="Approval level being decided; must be the current level")
    decision: Decision
    comments: Optional[str] = Field(None, max_length=2000)


class LeaveOverride(BaseModel):
    """Administrative status correction outside the approval workflow."""

    status: LeaveStatus
    comments: Optional[str] = Field(None, max_length=2000)


class LeaveStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
