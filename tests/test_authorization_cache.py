import asyncio
from typing import Dict, FrozenSet, Optional, Tuple
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.auth.cache import AuthorizationCache
from app.auth.store import UserIdentity
from app.core.exceptions import AuthenticationFailure
from app.core.rbac_policy import DEFAULT_POLICY


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeIdentityStore:
    def __init__(self) -> None:
        self.users: Dict[UUID, UserIdentity] = {}

    def add(self, active: bool = True, legacy_role: Optional[str] = "employee") -> UUID:
        user_id = uuid4()
        self.users[user_id] = UserIdentity(
            id=user_id,
            email=f"{user_id.hex[:8]}@example.com",
            full_name="Test User",
            active=active,
            legacy_role=legacy_role,
            department=None,
        )
        return user_id

    async def get_user_by_id(self, user_id: UUID) -> Optional[UserIdentity]:
        return self.users.get(user_id)

    async def touch_last_activity(self, user_id: UUID) -> None:
        return None


class FakeGraphStore:
    def __init__(self) -> None:
        self.grants: Dict[UUID, Tuple[FrozenSet[str], FrozenSet[str]]] = {}
        self.loads = 0
        self.delay = 0.0
        self.error: Optional[Exception] = None

    async def load_grants(self, user_id: UUID) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        self.loads += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.grants.get(user_id, (frozenset(), frozenset()))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def identities() -> FakeIdentityStore:
    return FakeIdentityStore()


@pytest.fixture()
def graph() -> FakeGraphStore:
    return FakeGraphStore()


@pytest.fixture()
def cache(identities: FakeIdentityStore, graph: FakeGraphStore, clock: FakeClock) -> AuthorizationCache:
    return AuthorizationCache(identities, graph, DEFAULT_POLICY, ttl_seconds=900, load_timeout=0.5, clock=clock)


async def test_resolve_builds_effective_roles(cache, identities, graph) -> None:
    user_id = identities.add()
    graph.grants[user_id] = (frozenset({"hr_manager"}), frozenset({"read:role"}))

    authz = await cache.resolve(user_id)

    assert authz.user_id == user_id
    assert authz.role_names == frozenset({"hr_manager"})
    assert authz.effective_roles == frozenset({"hr_manager", "hr", "manager", "employee"})
    assert authz.has_permission("read:role")
    assert authz.has_permission("approve:leave_request")
    assert not authz.has_permission("delete:role")


async def test_second_resolve_is_served_from_cache(cache, identities, graph) -> None:
    user_id = identities.add()
    first = await cache.resolve(user_id)
    second = await cache.resolve(user_id)

    assert first is second
    assert graph.loads == 1
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


async def test_entry_expires_after_ttl(cache, identities, graph, clock) -> None:
    user_id = identities.add()
    await cache.resolve(user_id)

    clock.now += 899
    await cache.resolve(user_id)
    assert graph.loads == 1

    clock.now += 2
    await cache.resolve(user_id)
    assert graph.loads == 2


async def test_invalidate_forces_reload_with_new_grants(cache, identities, graph) -> None:
    user_id = identities.add()
    graph.grants[user_id] = (frozenset({"employee"}), frozenset())
    assert not (await cache.resolve(user_id)).has_permission("approve:leave_request")

    graph.grants[user_id] = (frozenset({"manager"}), frozenset())
    cache.invalidate(user_id)

    assert (await cache.resolve(user_id)).has_permission("approve:leave_request")
    assert graph.loads == 2


async def test_invalidate_many_and_all(cache, identities, graph) -> None:
    a, b, c = identities.add(), identities.add(), identities.add()
    for user_id in (a, b, c):
        await cache.resolve(user_id)
    assert cache.stats()["size"] == 3

    cache.invalidate_many([a, b])
    assert cache.stats()["size"] == 1

    cache.invalidate_all()
    assert cache.stats()["size"] == 0


async def test_unknown_user_is_an_authentication_failure(cache) -> None:
    with pytest.raises(AuthenticationFailure):
        await cache.resolve(uuid4())


async def test_inactive_user_is_rejected_and_not_cached(cache, identities) -> None:
    user_id = identities.add(active=False)
    with pytest.raises(AuthenticationFailure) as exc:
        await cache.resolve(user_id)
    assert exc.value.status_code == 401
    assert cache.stats()["size"] == 0


async def test_store_error_surfaces_as_authentication_failure(cache, identities, graph) -> None:
    user_id = identities.add()
    graph.error = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with pytest.raises(AuthenticationFailure):
        await cache.resolve(user_id)
    assert cache.stats()["size"] == 0


async def test_slow_load_times_out(cache, identities, graph) -> None:
    user_id = identities.add()
    graph.delay = 2.0

    with pytest.raises(AuthenticationFailure) as exc:
        await cache.resolve(user_id)
    assert "timed out" in exc.value.message


async def test_load_racing_an_invalidation_is_not_stored(cache, identities, graph) -> None:
    user_id = identities.add()
    graph.delay = 0.05

    pending = asyncio.ensure_future(cache.resolve(user_id))
    await asyncio.sleep(0.01)
    cache.invalidate(user_id)
    await pending

    assert cache.stats()["size"] == 0


async def test_legacy_role_counts_for_role_checks(cache, identities, graph) -> None:
    user_id = identities.add(legacy_role="HR")
    graph.grants[user_id] = (frozenset({"employee"}), frozenset())

    authz = await cache.resolve(user_id)

    assert authz.has_role("hr")
    assert authz.has_role("employee")
    assert not authz.has_role("admin")
    # Legacy role is not part of the effective roles used for permission evaluation
    assert "hr" not in authz.effective_roles


async def test_role_checks_ignore_case(cache, identities, graph) -> None:
    user_id = identities.add(legacy_role=None)
    graph.grants[user_id] = (frozenset({"Auditor", "Manager"}), frozenset())

    authz = await cache.resolve(user_id)

    assert authz.role_names == frozenset({"auditor", "manager"})
    assert authz.has_role("auditor")
    assert authz.has_role("AUDITOR")
    # Inheritance still applies to a role stored with different case
    assert authz.has_role("employee")
