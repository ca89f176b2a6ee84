"""Leave balance consumption, triggered once when a request is finally approved."""

import logging
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.models import LeaveBalance

logger = logging.getLogger(__name__)


class LeaveBalanceService(Protocol):
    async def consume(self, db: AsyncSession, user_id: UUID, leave_type: str, days: int, year: int) -> None: ...


class SqlLeaveBalanceService:
    """Adds to the used-days counter inside the caller's transaction; the caller commits."""

    async def consume(self, db: AsyncSession, user_id: UUID, leave_type: str, days: int, year: int) -> None:
        result = await db.execute(
            select(LeaveBalance).where(
                LeaveBalance.user_id == user_id,
                LeaveBalance.year == year,
                LeaveBalance.leave_type == leave_type,
            )
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            balance = LeaveBalance(user_id=user_id, year=year, leave_type=leave_type, used_days=0)
            db.add(balance)
        balance.used_days = (balance.used_days or 0) + days
        await db.flush()
        logger.info("Consumed %s %s day(s) of %s for user %s", days, leave_type, year, user_id)


default_balance_service = SqlLeaveBalanceService()
