import os
import tempfile
from typing import AsyncGenerator, Awaitable, Callable, Dict, Iterable, Optional
from uuid import UUID

# The app builds its engine and settings at import time; point them at a throwaway SQLite file first.
_DB_DIR = tempfile.mkdtemp(prefix="hr-rbac-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.pop("RBAC_POLICY_FILE", None)
os.environ.pop("INITIAL_ADMIN_EMAIL", None)
os.environ.pop("INITIAL_ADMIN_PASSWORD", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402

from app.auth import models as auth_models  # noqa: E402,F401
from app.auth.context import authorization_cache, rate_limiter, revoked_tokens  # noqa: E402
from app.auth.models import Role, User, UserRole  # noqa: E402
from app.auth.security import create_access_token, hash_password  # noqa: E402
from app.core import models as core_models  # noqa: E402,F401
from app.db.seed_rbac import seed_rbac  # noqa: E402
from app.db.session import AsyncSessionLocal, Base, engine  # noqa: E402
from app.main import app  # noqa: E402

DEFAULT_PASSWORD = "Passw0rd!"

MakeUser = Callable[..., Awaitable[UUID]]


def _bearer(user_id: UUID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


@pytest_asyncio.fixture()
async def database() -> AsyncGenerator[None, None]:
    """Fresh schema and empty in-process auth state for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    authorization_cache.invalidate_all()
    rate_limiter.reset_all()
    revoked_tokens.clear()
    yield
    app.dependency_overrides.clear()
    await engine.dispose()


@pytest_asyncio.fixture()
async def seeded(database) -> None:
    """System roles, base permissions and their grants."""
    async with AsyncSessionLocal() as db:
        await seed_rbac(db)


@pytest_asyncio.fixture()
async def make_user(seeded) -> MakeUser:
    async def _make_user(
        email: str,
        roles: Iterable[str] = ("employee",),
        *,
        password: str = DEFAULT_PASSWORD,
        active: bool = True,
        legacy_role: str = "employee",
        department: Optional[str] = None,
    ) -> UUID:
        async with AsyncSessionLocal() as db:
            user = User(
                full_name=email.split("@")[0].title(),
                email=email,
                password_hash=hash_password(password),
                legacy_role=legacy_role,
                department=department,
                active=active,
            )
            db.add(user)
            await db.flush()
            role_names = list(roles)
            if role_names:
                result = await db.execute(select(Role).where(Role.name.in_(role_names)))
                for role in result.scalars().all():
                    db.add(UserRole(user_id=user.id, role_id=role.id))
            await db.commit()
            return user.id

    return _make_user


@pytest_asyncio.fixture()
async def client(database) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def auth_headers() -> Callable[[UUID], Dict[str, str]]:
    """Bearer header for a user id, with a freshly minted token."""
    return _bearer
