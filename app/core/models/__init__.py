from app.core.models.audit_log import AuditLog
from app.core.models.leave_balance import LeaveBalance
from app.core.models.leave_request import ApprovalWorkflowStep, LeaveRequest
