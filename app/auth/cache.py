"""
Per-user memoized authorization snapshots.

A snapshot holds the user's identity, assigned role names, granted permission
names and effective roles (assigned roles plus everything they inherit). It is
built on a miss, served until its TTL runs out, and dropped whenever roles or
permissions that affect it change.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable
from uuid import UUID

from cachetools import TTLCache
from sqlalchemy.exc import SQLAlchemyError

from app.auth.permissions import PermissionEvaluator, expand_roles
from app.auth.store import IdentityStore, RoleGraphStore, UserIdentity
from app.core.exceptions import AuthenticationFailure
from app.core.rbac_policy import RbacPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectiveAuthorization:
    user: UserIdentity
    role_names: FrozenSet[str]
    permission_names: FrozenSet[str]
    effective_roles: FrozenSet[str]
    loaded_at: float
    evaluator: PermissionEvaluator = field(repr=False, compare=False)

    @property
    def user_id(self) -> UUID:
        return self.user.id

    def has_role(self, role_name: str) -> bool:
        wanted = role_name.lower()
        if wanted in self.effective_roles:
            return True
        legacy = self.user.legacy_role
        return bool(legacy) and legacy.lower() == wanted

    def has_any_role(self, role_names: Iterable[str]) -> bool:
        return any(self.has_role(r) for r in role_names)

    def has_permission(self, permission_name: str) -> bool:
        return self.evaluator.has_permission(self.effective_roles, self.permission_names, permission_name)

    def has_all_permissions(self, permission_names: Iterable[str]) -> bool:
        return all(self.has_permission(p) for p in permission_names)

    def has_any_permission(self, permission_names: Iterable[str]) -> bool:
        return any(self.has_permission(p) for p in permission_names)


class AuthorizationCache:
    def __init__(
        self,
        identity_store: IdentityStore,
        graph_store: RoleGraphStore,
        policy: RbacPolicy,
        *,
        ttl_seconds: float = 15 * 60,
        max_entries: int = 10000,
        load_timeout: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._identity_store = identity_store
        self._graph_store = graph_store
        self._policy = policy
        self._evaluator = PermissionEvaluator(policy.permission_patterns, policy.super_admin_roles)
        self._ttl = ttl_seconds
        self._load_timeout = load_timeout
        self._clock = clock
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        # Bumped on every invalidation so a load racing with it is not stored
        self._generation = 0
        self._hits = 0
        self._misses = 0

    @property
    def evaluator(self) -> PermissionEvaluator:
        return self._evaluator

    async def resolve(self, user_id: UUID) -> EffectiveAuthorization:
        cached = self._entries.get(user_id)
        if cached is not None:
            self._hits += 1
            return cached
        self._misses += 1

        generation = self._generation
        try:
            authorization = await asyncio.wait_for(self._load(user_id), timeout=self._load_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Authorization load timed out for user %s after %ss", user_id, self._load_timeout)
            raise AuthenticationFailure("Authorization data loading timed out") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.exception("Failed to load authorization data for user %s", user_id)
            raise AuthenticationFailure("Could not load authorization data") from exc

        if generation == self._generation:
            self._entries[user_id] = authorization
        return authorization

    async def _load(self, user_id: UUID) -> EffectiveAuthorization:
        user = await self._identity_store.get_user_by_id(user_id)
        if user is None:
            raise AuthenticationFailure("User not found")
        if not user.active:
            raise AuthenticationFailure("User account is deactivated")

        role_names, permission_names = await self._graph_store.load_grants(user_id)
        # Role names are compared lowercased everywhere
        role_names = frozenset(r.lower() for r in role_names)
        effective = expand_roles(role_names, self._policy.role_hierarchy)
        return EffectiveAuthorization(
            user=user,
            role_names=role_names,
            permission_names=frozenset(permission_names),
            effective_roles=frozenset(effective),
            loaded_at=self._clock(),
            evaluator=self._evaluator,
        )

    def invalidate(self, user_id: UUID) -> None:
        self._generation += 1
        self._entries.pop(user_id, None)

    def invalidate_many(self, user_ids: Iterable[UUID]) -> None:
        self._generation += 1
        for user_id in user_ids:
            self._entries.pop(user_id, None)

    def invalidate_all(self) -> None:
        self._generation += 1
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        self._entries.expire()
        return {
            "size": len(self._entries),
            "max_entries": self._entries.maxsize,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
        }
