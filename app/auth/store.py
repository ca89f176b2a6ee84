"""
SQL-backed reads over the identity store and the role-permission graph.

Both stores open their own short-lived session from an injected factory so the
authorization cache can load outside of any request transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, List, Optional, Protocol, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.models import Permission, Role, RolePermission, User, UserRole


@dataclass(frozen=True)
class UserIdentity:
    id: UUID
    email: str
    full_name: str
    active: bool
    legacy_role: Optional[str]
    department: Optional[str]


class IdentityStore(Protocol):
    async def get_user_by_id(self, user_id: UUID) -> Optional[UserIdentity]: ...

    async def touch_last_activity(self, user_id: UUID) -> None: ...


class RoleGraphStore(Protocol):
    async def load_grants(self, user_id: UUID) -> Tuple[FrozenSet[str], FrozenSet[str]]: ...


def _to_identity(user: User) -> UserIdentity:
    return UserIdentity(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        active=bool(user.active),
        legacy_role=user.legacy_role,
        department=user.department,
    )


class SqlIdentityStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user_by_id(self, user_id: UUID) -> Optional[UserIdentity]:
        async with self._session_factory() as db:
            user = await db.get(User, user_id)
            return _to_identity(user) if user else None

    async def touch_last_activity(self, user_id: UUID) -> None:
        async with self._session_factory() as db:
            await db.execute(update(User).where(User.id == user_id).values(last_activity=datetime.utcnow()))
            await db.commit()


class SqlRoleGraphStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_role_names_for_user(self, user_id: UUID) -> List[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Role.name)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            return list(result.scalars().all())

    async def get_permission_names_for_user(self, user_id: UUID) -> List[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(UserRole, UserRole.role_id == RolePermission.role_id)
                .where(UserRole.user_id == user_id)
                .distinct()
                .order_by(Permission.name)
            )
            return list(result.scalars().all())

    async def load_grants(self, user_id: UUID) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Role names and permission names in a single outer-join round trip."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Role.name, Permission.name)
                .select_from(UserRole)
                .join(Role, Role.id == UserRole.role_id)
                .outerjoin(RolePermission, RolePermission.role_id == Role.id)
                .outerjoin(Permission, Permission.id == RolePermission.permission_id)
                .where(UserRole.user_id == user_id)
            )
            rows = result.all()
        role_names = frozenset(role for role, _ in rows)
        permission_names = frozenset(perm for _, perm in rows if perm is not None)
        return role_names, permission_names
