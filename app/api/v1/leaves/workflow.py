"""
Leave approval state machine.

Request statuses move pending -> in_progress -> approved, or to rejected /
cancelled. Every legal move is an entry in TRANSITIONS; anything missing from
the table is a WorkflowConflict. A transition also states what happens to the
decided step, which level becomes current, and whether leave balance is
consumed (final approval only).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from app.core.enums import Decision, LeaveStatus, StepStatus
from app.core.exceptions import WorkflowConflict


class WorkflowEvent(str, Enum):
    APPROVE = "approve"
    APPROVE_FINAL = "approve_final"
    REJECT = "reject"
    CANCEL = "cancel"


TERMINAL_STATUSES = frozenset({LeaveStatus.APPROVED, LeaveStatus.REJECTED, LeaveStatus.CANCELLED})
OPEN_STATUSES = frozenset({LeaveStatus.PENDING, LeaveStatus.IN_PROGRESS})

TRANSITIONS: Dict[Tuple[LeaveStatus, WorkflowEvent], LeaveStatus] = {
    (LeaveStatus.PENDING, WorkflowEvent.APPROVE): LeaveStatus.IN_PROGRESS,
    (LeaveStatus.PENDING, WorkflowEvent.APPROVE_FINAL): LeaveStatus.APPROVED,
    (LeaveStatus.PENDING, WorkflowEvent.REJECT): LeaveStatus.REJECTED,
    (LeaveStatus.IN_PROGRESS, WorkflowEvent.APPROVE): LeaveStatus.IN_PROGRESS,
    (LeaveStatus.IN_PROGRESS, WorkflowEvent.APPROVE_FINAL): LeaveStatus.APPROVED,
    (LeaveStatus.IN_PROGRESS, WorkflowEvent.REJECT): LeaveStatus.REJECTED,
    (LeaveStatus.PENDING, WorkflowEvent.CANCEL): LeaveStatus.CANCELLED,
    (LeaveStatus.IN_PROGRESS, WorkflowEvent.CANCEL): LeaveStatus.CANCELLED,
    (LeaveStatus.APPROVED, WorkflowEvent.CANCEL): LeaveStatus.CANCELLED,
}


@dataclass(frozen=True)
class WorkflowState:
    status: LeaveStatus
    current_level: Optional[int]
    total_levels: int


@dataclass(frozen=True)
class Transition:
    from_status: LeaveStatus
    to_status: LeaveStatus
    next_level: Optional[int]
    # Status written to the step at the decided level; None when no step is touched
    step_status: Optional[StepStatus] = None
    consume_balance: bool = False


def event_for_decision(state: WorkflowState, decision: Decision) -> WorkflowEvent:
    if decision == Decision.REJECTED:
        return WorkflowEvent.REJECT
    if state.current_level is not None and state.current_level >= state.total_levels:
        return WorkflowEvent.APPROVE_FINAL
    return WorkflowEvent.APPROVE


def _lookup(status: LeaveStatus, event: WorkflowEvent) -> LeaveStatus:
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise WorkflowConflict(f"Cannot {event.value.replace('_', ' ')} a leave request with status '{status.value}'")


def decide(state: WorkflowState, level: int, decision: Decision) -> Transition:
    """Transition for a decision at `level`; levels are decided strictly in order."""
    if state.status in TERMINAL_STATUSES:
        raise WorkflowConflict(f"Leave request is already {state.status.value}")
    if state.current_level != level:
        raise WorkflowConflict(
            f"Cannot process approval at level {level}. Current level is {state.current_level}"
        )

    event = event_for_decision(state, decision)
    to_status = _lookup(state.status, event)
    if event == WorkflowEvent.APPROVE:
        return Transition(state.status, to_status, next_level=level + 1, step_status=StepStatus.APPROVED)
    if event == WorkflowEvent.APPROVE_FINAL:
        return Transition(
            state.status, to_status, next_level=None, step_status=StepStatus.APPROVED, consume_balance=True
        )
    return Transition(state.status, to_status, next_level=None, step_status=StepStatus.REJECTED)


def cancel(state: WorkflowState) -> Transition:
    """Cancellation leaves decided steps untouched."""
    return Transition(state.status, _lookup(state.status, WorkflowEvent.CANCEL), next_level=None)


def override(state: WorkflowState, target: LeaveStatus) -> Transition:
    """Administrative correction: any status may be set, no steps written, no balance consumed."""
    next_level = (state.current_level or 1) if target in OPEN_STATUSES else None
    return Transition(state.status, target, next_level=next_level)
