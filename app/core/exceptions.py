from datetime import datetime
from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class AuthenticationFailure(ServiceError):
    """Missing/invalid/revoked credential, or the authorization data could not be loaded."""

    def __init__(self, message: str = "Could not validate credentials") -> None:
        super().__init__(message, status.HTTP_401_UNAUTHORIZED)


class AuthorizationDenied(ServiceError):
    """The resolved identity lacks the required permission or role."""

    def __init__(self, required: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Permission denied: {required} required", status.HTTP_403_FORBIDDEN)
        self.required = required


class RateLimitExceeded(ServiceError):
    def __init__(self, limit: int, reset_at: datetime) -> None:
        super().__init__("Rate limit exceeded", status.HTTP_429_TOO_MANY_REQUESTS)
        self.limit = limit
        self.remaining = 0
        self.reset_at = reset_at


class WorkflowConflict(ServiceError):
    """Out-of-sequence, already-decided or otherwise illegal workflow transition."""

    def __init__(self, message: str, status_code: int = status.HTTP_409_CONFLICT) -> None:
        super().__init__(message, status_code)


class ApproverRoleMismatch(WorkflowConflict):
    """The acting user does not hold the role required at this approval level."""

    def __init__(self, required_role: str) -> None:
        super().__init__(
            f"Role required for this approval level: {required_role}",
            status.HTTP_403_FORBIDDEN,
        )
        self.required_role = required_role


class IntegrityViolation(ServiceError):
    """Rejected before any mutation: last role, system role, referenced permission."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)
