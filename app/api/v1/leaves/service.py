"""Leave create, decide, cancel, override and approver queues on top of the workflow table."""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import context
from app.auth.cache import EffectiveAuthorization
from app.core.audit_service import record_audit_event
from app.core.enums import AuditAction, Decision, LeaveStatus, StepStatus
from app.core.exceptions import (
    ApproverRoleMismatch,
    AuthorizationDenied,
    NotFoundError,
    ServiceError,
    WorkflowConflict,
)
from app.core.models import ApprovalWorkflowStep, LeaveRequest
from app.core.rbac_policy import RbacPolicy

from . import workflow
from .balance import LeaveBalanceService, default_balance_service
from .schemas import ApprovalStepResponse, LeaveRequestCreate, LeaveRequestResponse, LeaveStatsResponse

logger = logging.getLogger(__name__)

READ_ALL_PERMISSION = "read:leave_request:all"
TARGET_TYPE = "leave_request"


def _days(r: LeaveRequest) -> int:
    return (r.end_date - r.start_date).days + 1


def _request_to_response(r: LeaveRequest) -> LeaveRequestResponse:
    return LeaveRequestResponse(
        id=r.id,
        user_id=r.user_id,
        type=r.type,
        start_date=r.start_date,
        end_date=r.end_date,
        days=_days(r),
        reason=r.reason,
        status=r.status,
        current_approval_level=r.current_approval_level,
        approved_by=r.approved_by,
        approval_notes=r.approval_notes,
        is_override=bool(r.is_override),
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _state(r: LeaveRequest, total_levels: int) -> workflow.WorkflowState:
    return workflow.WorkflowState(
        status=LeaveStatus(r.status),
        current_level=r.current_approval_level,
        total_levels=total_levels,
    )


async def _get_request_or_404(db: AsyncSession, leave_id: UUID) -> LeaveRequest:
    req = await db.get(LeaveRequest, leave_id)
    if not req:
        raise NotFoundError("Leave request not found")
    return req


async def _count_levels(db: AsyncSession, leave_id: UUID) -> int:
    result = await db.execute(
        select(func.max(ApprovalWorkflowStep.approval_level)).where(
            ApprovalWorkflowStep.leave_request_id == leave_id
        )
    )
    return result.scalar_one_or_none() or 0


def _can_read(actor: EffectiveAuthorization, req: LeaveRequest) -> bool:
    return req.user_id == actor.user_id or actor.has_permission(READ_ALL_PERMISSION)


async def create_leave_request(
    db: AsyncSession,
    requester: EffectiveAuthorization,
    payload: LeaveRequestCreate,
    *,
    policy: Optional[RbacPolicy] = None,
) -> LeaveRequestResponse:
    """Create a pending request and materialize one pending step per level of the approval chain."""
    policy = policy or context.policy
    if payload.end_date < payload.start_date:
        raise ServiceError("end_date must be on or after start_date", status.HTTP_400_BAD_REQUEST)
    if not payload.reason.strip():
        raise ServiceError("reason is required", status.HTTP_400_BAD_REQUEST)
    if not policy.approval_chain:
        raise ServiceError("No approval chain configured", status.HTTP_500_INTERNAL_SERVER_ERROR)

    req = LeaveRequest(
        user_id=requester.user_id,
        type=payload.type.value,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason.strip(),
        status=LeaveStatus.PENDING.value,
        current_approval_level=1,
        is_override=False,
    )
    try:
        db.add(req)
        await db.flush()
        for level, role_name in enumerate(policy.approval_chain, start=1):
            db.add(
                ApprovalWorkflowStep(
                    leave_request_id=req.id,
                    approval_level=level,
                    approver_role=role_name,
                    status=StepStatus.PENDING.value,
                )
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(req)
    logger.info(
        "Leave request %s created by %s; awaiting level 1 (%s)",
        req.id,
        requester.user_id,
        policy.approval_chain[0],
    )

    await record_audit_event(
        AuditAction.LEAVE_CREATED,
        actor_id=requester.user_id,
        target_type=TARGET_TYPE,
        target_id=req.id,
        details={"type": req.type, "days": _days(req), "levels": len(policy.approval_chain)},
    )
    return _request_to_response(req)


async def decide_leave_request(
    db: AsyncSession,
    leave_id: UUID,
    level: int,
    actor: EffectiveAuthorization,
    decision: Decision,
    comments: Optional[str] = None,
    *,
    policy: Optional[RbacPolicy] = None,
    balance_service: LeaveBalanceService = default_balance_service,
) -> LeaveRequestResponse:
    """
    Approve or reject the step at `level`.

    The step and the parent request are updated with guarded UPDATEs in one
    transaction: the step must still be pending and the request must still be
    at `level` with the status we read. Losing either guard to a concurrent
    decision rolls everything back and reports a conflict. Final approval
    consumes leave balance inside the same transaction.
    """
    policy = policy or context.policy
    req = await _get_request_or_404(db, leave_id)
    state = _state(req, await _count_levels(db, leave_id))
    transition = workflow.decide(state, level, decision)

    result = await db.execute(
        select(ApprovalWorkflowStep).where(
            ApprovalWorkflowStep.leave_request_id == leave_id,
            ApprovalWorkflowStep.approval_level == level,
        )
    )
    step = result.scalar_one_or_none()
    if not step:
        raise WorkflowConflict(f"No approval step at level {level}")
    if step.status != StepStatus.PENDING.value:
        raise WorkflowConflict(f"Approval level {level} has already been {step.status}")
    may_override = not actor.effective_roles.isdisjoint(policy.approval_override_roles)
    if step.approver_role not in actor.effective_roles and not may_override:
        raise ApproverRoleMismatch(step.approver_role)

    now = datetime.utcnow()
    request_values = {
        "status": transition.to_status.value,
        "current_approval_level": transition.next_level,
        "updated_at": now,
    }
    if transition.to_status in workflow.TERMINAL_STATUSES:
        request_values["approved_by"] = actor.user_id
        request_values["approval_notes"] = comments

    try:
        step_result = await db.execute(
            update(ApprovalWorkflowStep)
            .where(
                ApprovalWorkflowStep.id == step.id,
                ApprovalWorkflowStep.status == StepStatus.PENDING.value,
            )
            .values(
                status=transition.step_status.value,
                approver_id=actor.user_id,
                comments=comments,
                approved_at=now,
            )
        )
        if step_result.rowcount != 1:
            raise WorkflowConflict(f"Approval level {level} was decided concurrently")

        request_result = await db.execute(
            update(LeaveRequest)
            .where(
                LeaveRequest.id == leave_id,
                LeaveRequest.status == state.status.value,
                LeaveRequest.current_approval_level == level,
            )
            .values(**request_values)
        )
        if request_result.rowcount != 1:
            raise WorkflowConflict("Leave request changed while the decision was being recorded")

        if transition.consume_balance:
            await balance_service.consume(db, req.user_id, req.type, _days(req), req.start_date.year)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(req)

    if transition.next_level is not None:
        logger.info(
            "Leave request %s approved at level %s; awaiting level %s",
            leave_id,
            level,
            transition.next_level,
        )
    else:
        logger.info("Leave request %s %s at level %s by %s", leave_id, req.status, level, actor.user_id)

    action = AuditAction.LEAVE_APPROVED if decision == Decision.APPROVED else AuditAction.LEAVE_REJECTED
    await record_audit_event(
        action,
        actor_id=actor.user_id,
        target_type=TARGET_TYPE,
        target_id=leave_id,
        details={
            "level": level,
            "approver_role": step.approver_role,
            "from_status": transition.from_status.value,
            "to_status": transition.to_status.value,
            "comments": comments,
        },
    )
    return _request_to_response(req)


async def cancel_leave_request(
    db: AsyncSession,
    leave_id: UUID,
    actor: EffectiveAuthorization,
) -> LeaveRequestResponse:
    """Requester-only cancellation; already-decided steps stay as they are."""
    req = await _get_request_or_404(db, leave_id)
    if req.user_id != actor.user_id:
        raise AuthorizationDenied("cancel:leave_request", "You can only cancel your own leave requests")
    state = _state(req, await _count_levels(db, leave_id))
    transition = workflow.cancel(state)

    try:
        result = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave_id, LeaveRequest.status == state.status.value)
            .values(
                status=transition.to_status.value,
                current_approval_level=None,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount != 1:
            raise WorkflowConflict("Leave request changed while it was being cancelled")
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(req)
    logger.info("Leave request %s cancelled by requester (was %s)", leave_id, state.status.value)

    await record_audit_event(
        AuditAction.LEAVE_CANCELLED,
        actor_id=actor.user_id,
        target_type=TARGET_TYPE,
        target_id=leave_id,
        details={"from_status": state.status.value},
    )
    return _request_to_response(req)


async def override_leave_status(
    db: AsyncSession,
    leave_id: UUID,
    actor: EffectiveAuthorization,
    target: LeaveStatus,
    comments: Optional[str] = None,
) -> LeaveRequestResponse:
    """
    Administrative status correction outside the approval workflow.

    Steps are left untouched and no balance is consumed; the request is
    flagged is_override and the change is audited separately.
    """
    req = await _get_request_or_404(db, leave_id)
    state = _state(req, await _count_levels(db, leave_id))
    transition = workflow.override(state, target)

    try:
        result = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave_id, LeaveRequest.status == state.status.value)
            .values(
                status=transition.to_status.value,
                current_approval_level=transition.next_level,
                approved_by=actor.user_id,
                approval_notes=comments,
                is_override=True,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount != 1:
            raise WorkflowConflict("Leave request changed while the override was being recorded")
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(req)
    logger.warning(
        "Leave request %s status overridden %s -> %s by %s",
        leave_id,
        state.status.value,
        target.value,
        actor.user_id,
    )

    await record_audit_event(
        AuditAction.LEAVE_OVERRIDE,
        actor_id=actor.user_id,
        target_type=TARGET_TYPE,
        target_id=leave_id,
        details={"from_status": state.status.value, "to_status": target.value, "comments": comments},
    )
    return _request_to_response(req)


async def list_pending_for_approver(
    db: AsyncSession,
    actor: EffectiveAuthorization,
) -> List[LeaveRequestResponse]:
    """Open requests whose current level is still pending and requires one of the actor's effective roles."""
    if not actor.effective_roles:
        return []
    result = await db.execute(
        select(LeaveRequest)
        .join(
            ApprovalWorkflowStep,
            and_(
                ApprovalWorkflowStep.leave_request_id == LeaveRequest.id,
                ApprovalWorkflowStep.approval_level == LeaveRequest.current_approval_level,
            ),
        )
        .where(
            LeaveRequest.status.in_([s.value for s in workflow.OPEN_STATUSES]),
            ApprovalWorkflowStep.status == StepStatus.PENDING.value,
            ApprovalWorkflowStep.approver_role.in_(sorted(actor.effective_roles)),
        )
        .order_by(LeaveRequest.created_at.desc())
    )
    return [_request_to_response(r) for r in result.scalars().unique().all()]


async def list_my_leave_requests(db: AsyncSession, user_id: UUID) -> List[LeaveRequestResponse]:
    result = await db.execute(
        select(LeaveRequest).where(LeaveRequest.user_id == user_id).order_by(LeaveRequest.created_at.desc())
    )
    return [_request_to_response(r) for r in result.scalars().all()]


async def list_leave_requests(
    db: AsyncSession,
    status_filter: Optional[LeaveStatus] = None,
    user_id: Optional[UUID] = None,
) -> List[LeaveRequestResponse]:
    """All requests, optionally filtered by status and requester."""
    q = select(LeaveRequest)
    if status_filter is not None:
        q = q.where(LeaveRequest.status == status_filter.value)
    if user_id is not None:
        q = q.where(LeaveRequest.user_id == user_id)
    result = await db.execute(q.order_by(LeaveRequest.created_at.desc()))
    return [_request_to_response(r) for r in result.scalars().all()]


async def get_leave_request(
    db: AsyncSession,
    leave_id: UUID,
    actor: EffectiveAuthorization,
) -> LeaveRequestResponse:
    req = await _get_request_or_404(db, leave_id)
    if not _can_read(actor, req):
        raise AuthorizationDenied(READ_ALL_PERMISSION)
    return _request_to_response(req)


async def get_approval_workflow(
    db: AsyncSession,
    leave_id: UUID,
    actor: EffectiveAuthorization,
) -> List[ApprovalStepResponse]:
    """Approval steps ordered by level."""
    req = await _get_request_or_404(db, leave_id)
    if not _can_read(actor, req):
        raise AuthorizationDenied(READ_ALL_PERMISSION)
    result = await db.execute(
        select(ApprovalWorkflowStep)
        .where(ApprovalWorkflowStep.leave_request_id == leave_id)
        .order_by(ApprovalWorkflowStep.approval_level)
    )
    return [ApprovalStepResponse.model_validate(s) for s in result.scalars().all()]


async def leave_stats(db: AsyncSession) -> LeaveStatsResponse:
    result = await db.execute(
        select(LeaveRequest.status, func.count(LeaveRequest.id)).group_by(LeaveRequest.status)
    )
    by_status: Dict[str, int] = {s.value: 0 for s in LeaveStatus}
    for status_value, count in result.all():
        by_status[status_value] = count
    return LeaveStatsResponse(total=sum(by_status.values()), by_status=by_status)
