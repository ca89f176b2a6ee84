"""Leave requests and their pre-materialized approval steps."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from app.core.enums import LeaveStatus, StepStatus
from app.db.session import Base


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=LeaveStatus.PENDING.value, index=True)
    # Null once the request reaches a terminal status
    current_approval_level = Column(Integer, nullable=True)
    approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approval_notes = Column(Text, nullable=True)
    # Set when an admin changed the status outside the approval workflow
    is_override = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    requester = relationship("User", foreign_keys=[user_id])
    steps = relationship(
        "ApprovalWorkflowStep",
        back_populates="leave_request",
        cascade="all, delete-orphan",
        order_by="ApprovalWorkflowStep.approval_level",
    )


class ApprovalWorkflowStep(Base):
    __tablename__ = "leave_approval_workflow"
    __table_args__ = (
        # Exactly one step per level per request
        UniqueConstraint("leave_request_id", "approval_level", name="uq_leave_approval_level"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    leave_request_id = Column(
        Uuid,
        ForeignKey("leave_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    approval_level = Column(Integer, nullable=False)
    approver_role = Column(String(100), nullable=False)
    approver_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default=StepStatus.PENDING.value)
    comments = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    leave_request = relationship("LeaveRequest", back_populates="steps")
