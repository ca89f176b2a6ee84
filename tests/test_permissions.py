import pytest

from app.auth.permissions import PermissionEvaluator, PermissionName, PermissionPattern, expand_roles
from app.core.rbac_policy import DEFAULT_POLICY

HIERARCHY = DEFAULT_POLICY.role_hierarchy


@pytest.fixture()
def evaluator() -> PermissionEvaluator:
    # No bypass roles, so the pattern rules themselves are exercised
    return PermissionEvaluator(DEFAULT_POLICY.permission_patterns, super_admin_roles=())


def _effective(*roles: str) -> frozenset:
    return frozenset(expand_roles(roles, HIERARCHY))


def test_parse_permission_name() -> None:
    assert PermissionName.parse("read:leave_request:all") == PermissionName("read", "leave_request", "all")
    assert PermissionName.parse("approve:leave_request") == PermissionName("approve", "leave_request", None)
    assert PermissionName.parse("garbage") is None
    assert PermissionName.parse(":leave_request") is None


def test_bare_wildcard_pattern_matches_everything() -> None:
    pattern = PermissionPattern.parse("*")
    assert pattern.matches(PermissionName.parse("delete:payroll:all"))
    assert pattern.matches(PermissionName.parse("create:role"))


def test_invalid_pattern_is_rejected() -> None:
    with pytest.raises(ValueError):
        PermissionPattern.parse("nonsense")


def test_resource_wildcard_covers_every_scope(evaluator: PermissionEvaluator) -> None:
    hr = _effective("hr")
    assert evaluator.has_permission(hr, frozenset(), "read:leave_request:all")
    assert evaluator.has_permission(hr, frozenset(), "approve:leave_request")
    assert not evaluator.has_permission(hr, frozenset(), "delete:role")


def test_action_wildcard(evaluator: PermissionEvaluator) -> None:
    manager = _effective("manager")
    assert evaluator.has_permission(manager, frozenset(), "read:payroll")
    assert evaluator.has_permission(manager, frozenset(), "approve:leave_request")
    assert not evaluator.has_permission(manager, frozenset(), "delete:payroll")


def test_scoped_pattern_only_matches_its_scope() -> None:
    evaluator = PermissionEvaluator({"auditor": ["read:leave_request:own"]}, super_admin_roles=())
    roles = frozenset({"auditor"})
    assert evaluator.has_permission(roles, frozenset(), "read:leave_request:own")
    assert not evaluator.has_permission(roles, frozenset(), "read:leave_request:all")
    assert not evaluator.has_permission(roles, frozenset(), "read:leave_request")


def test_direct_grant_is_enough(evaluator: PermissionEvaluator) -> None:
    employee = _effective("employee")
    assert not evaluator.has_permission(employee, frozenset(), "create:leave_request")
    assert evaluator.has_permission(employee, frozenset({"create:leave_request"}), "create:leave_request")


def test_super_admin_bypass() -> None:
    evaluator = PermissionEvaluator(DEFAULT_POLICY.permission_patterns, DEFAULT_POLICY.super_admin_roles)
    assert evaluator.has_permission(frozenset({"super_admin"}), frozenset(), "anything:at:all")
    assert evaluator.has_permission(frozenset({"super_admin"}), frozenset(), "not-even-a-name")
    assert not evaluator.has_permission(frozenset({"employee"}), frozenset(), "not-even-a-name")


def test_unparseable_name_is_denied(evaluator: PermissionEvaluator) -> None:
    assert not evaluator.has_permission(_effective("admin"), frozenset(), "garbage")


def test_expand_roles_is_transitive() -> None:
    assert _effective("super_admin") == frozenset(HIERARCHY)
    assert _effective("hr_manager") == frozenset({"hr_manager", "hr", "manager", "employee"})
    assert _effective("employee") == frozenset({"employee"})


def test_expand_roles_tolerates_cycles_and_unknown_roles() -> None:
    hierarchy = {"a": ["b"], "b": ["a", "c"]}
    assert expand_roles(["a"], hierarchy) == {"a", "b", "c"}
    assert expand_roles(["ghost"], hierarchy) == {"ghost"}


@pytest.mark.parametrize("role", sorted(HIERARCHY))
def test_effective_roles_contain_assigned_roles(role: str) -> None:
    assert role in _effective(role)


SAMPLE_PERMISSIONS = [
    "read:leave_request:all",
    "approve:leave_request",
    "delete:role",
    "read:payroll",
    "update:compensation",
    "create:own",
    "view:team",
]


@pytest.mark.parametrize("extra_role", sorted(HIERARCHY))
def test_adding_a_role_never_removes_permissions(evaluator: PermissionEvaluator, extra_role: str) -> None:
    base = _effective("employee")
    widened = _effective("employee", extra_role)
    for permission in SAMPLE_PERMISSIONS:
        if evaluator.has_permission(base, frozenset(), permission):
            assert evaluator.has_permission(widened, frozenset(), permission)
