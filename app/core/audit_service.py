"""
Audit logging for logins, denied permission checks, role/permission mutations
and approval decisions.

Best-effort: called after the primary mutation committed, so a failed audit
write is logged for operators and never undoes the change it documents. Each
entry is written through its own short-lived session; rolling back a failed
write must not expire objects the caller still holds.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import AuditAction
from app.core.models import AuditLog
from app.db import session as db_session

logger = logging.getLogger(__name__)


async def record_audit_event(
    action: AuditAction,
    *,
    actor_id: Optional[UUID],
    target_type: str,
    target_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
) -> bool:
    """Append and commit one audit entry. Returns False when the write failed."""
    session_factory = session_factory or db_session.AsyncSessionLocal
    entry = AuditLog(
        action=action.value,
        actor_id=actor_id,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details or {},
        timestamp=datetime.utcnow(),
    )
    async with session_factory() as db:
        try:
            db.add(entry)
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "Failed to write audit event action=%s actor=%s target=%s:%s",
                action.value,
                actor_id,
                target_type,
                target_id,
            )
            return False
    return True
