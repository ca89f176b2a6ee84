"""
Permission evaluation over already-resolved roles and grants.

Permission names look like ``action:resource`` or ``action:resource:scope``
(``read:leave_request:all``). Patterns use ``*`` in the action or resource
position; a pattern without a scope matches every scope of its action/resource.
"""

from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, List, Mapping, Optional, Set, Tuple

WILDCARD = "*"


@dataclass(frozen=True)
class PermissionName:
    action: str
    resource: str
    scope: Optional[str] = None

    @classmethod
    def parse(cls, name: str) -> Optional["PermissionName"]:
        parts = name.split(":", 2)
        if len(parts) < 2 or not parts[0] or not parts[1]:
            return None
        scope = parts[2] if len(parts) == 3 and parts[2] else None
        return cls(parts[0], parts[1], scope)


@dataclass(frozen=True)
class PermissionPattern:
    action: str
    resource: str
    scope: Optional[str] = None

    @classmethod
    def parse(cls, pattern: str) -> "PermissionPattern":
        if pattern == WILDCARD:
            return cls(WILDCARD, WILDCARD)
        parsed = PermissionName.parse(pattern)
        if parsed is None:
            raise ValueError(f"Invalid permission pattern: {pattern!r}")
        return cls(parsed.action, parsed.resource, parsed.scope)

    def matches(self, permission: PermissionName) -> bool:
        if self.action != WILDCARD and self.action != permission.action:
            return False
        if self.resource != WILDCARD and self.resource != permission.resource:
            return False
        return self.scope is None or self.scope == permission.scope


def compile_patterns(patterns: Mapping[str, Iterable[str]]) -> Dict[str, Tuple[PermissionPattern, ...]]:
    return {role: tuple(PermissionPattern.parse(p) for p in items) for role, items in patterns.items()}


def expand_roles(role_names: Iterable[str], hierarchy: Mapping[str, Iterable[str]]) -> Set[str]:
    """Role names plus everything reachable through the hierarchy (transitive)."""
    effective: Set[str] = set()
    stack: List[str] = list(role_names)
    while stack:
        role = stack.pop()
        if role in effective:
            continue
        effective.add(role)
        stack.extend(hierarchy.get(role, ()))
    return effective


class PermissionEvaluator:
    def __init__(
        self,
        patterns: Mapping[str, Iterable[str]],
        super_admin_roles: Iterable[str] = ("super_admin",),
    ) -> None:
        self._patterns = compile_patterns(patterns)
        self._super_admin_roles = frozenset(super_admin_roles)

    def has_permission(
        self,
        effective_roles: AbstractSet[str],
        direct_permissions: AbstractSet[str],
        permission_name: str,
    ) -> bool:
        """Break-glass role, then direct grant, then role patterns; first match wins."""
        if not self._super_admin_roles.isdisjoint(effective_roles):
            return True

        if permission_name in direct_permissions:
            return True

        requested = PermissionName.parse(permission_name)
        if requested is None:
            return False
        for role in effective_roles:
            for pattern in self._patterns.get(role, ()):
                if pattern.matches(requested):
                    return True
        return False
