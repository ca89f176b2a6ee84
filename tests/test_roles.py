import logging
from typing import Dict
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from app.auth.context import authorization_cache
from app.auth.models import Permission, Role
from app.core.audit_service import record_audit_event
from app.core.enums import AuditAction
from app.core.models import AuditLog
from app.db.session import AsyncSessionLocal, engine


@pytest_asyncio.fixture()
async def admin_id(make_user) -> UUID:
    return await make_user("root@example.com", ["admin"])


async def _role_id(name: str) -> UUID:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Role.id).where(Role.name == name))
        return result.scalar_one()


async def _permission_id(name: str) -> UUID:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Permission.id).where(Permission.name == name))
        return result.scalar_one()


async def _create_role(client: AsyncClient, headers: Dict[str, str], name: str, permissions=()) -> dict:
    permission_ids = [str(await _permission_id(p)) for p in permissions]
    response = await client.post(
        "/api/v1/roles",
        json={"name": name, "display_name": name.title(), "permission_ids": permission_ids},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_list_roles_shows_system_roles_with_permissions(client, auth_headers, admin_id) -> None:
    response = await client.get("/api/v1/roles", headers=auth_headers(admin_id))

    assert response.status_code == 200
    roles = {r["name"]: r for r in response.json()}
    assert roles["employee"]["is_system_role"] is True
    assert "create:leave_request" in roles["employee"]["permissions"]
    assert roles["admin"]["user_count"] == 1


@pytest.mark.asyncio
async def test_create_role_normalizes_name_and_rejects_duplicates(client, auth_headers, admin_id) -> None:
    headers = auth_headers(admin_id)
    response = await client.post(
        "/api/v1/roles",
        json={"name": "Team_Lead", "display_name": "Team Lead"},
        headers=headers,
    )
    assert response.status_code == 201
    assert response.json()["name"] == "team_lead"
    assert response.json()["is_system_role"] is False

    duplicate = await client.post(
        "/api/v1/roles",
        json={"name": "team_lead", "display_name": "Again"},
        headers=headers,
    )
    assert duplicate.status_code == 409

    invalid = await client.post(
        "/api/v1/roles",
        json={"name": "has spaces", "display_name": "Nope"},
        headers=headers,
    )
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_role_assignment_is_visible_on_the_next_request(client, auth_headers, admin_id, make_user) -> None:
    user_id = await make_user("jane@example.com", ["employee"])
    me = await client.get("/api/v1/auth/me", headers=auth_headers(user_id))
    assert "manager" not in me.json()["effective_roles"]

    response = await client.post(
        "/api/v1/roles/assign",
        json={"user_id": str(user_id), "role_id": str(await _role_id("manager"))},
        headers=auth_headers(admin_id),
    )
    assert response.status_code == 201
    assert {r["name"] for r in response.json()["roles"]} == {"employee", "manager"}

    me = await client.get("/api/v1/auth/me", headers=auth_headers(user_id))
    assert "manager" in me.json()["effective_roles"]
    assert "approve:leave_request" in me.json()["permissions"]


@pytest.mark.asyncio
async def test_duplicate_assignment_conflicts(client, auth_headers, admin_id, make_user) -> None:
    user_id = await make_user("jane@example.com", ["employee"])
    response = await client.post(
        "/api/v1/roles/assign",
        json={"user_id": str(user_id), "role_id": str(await _role_id("employee"))},
        headers=auth_headers(admin_id),
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_last_role_cannot_be_removed(client, auth_headers, admin_id, make_user) -> None:
    user_id = await make_user("jane@example.com", ["employee", "hr"])
    employee_role, hr_role = await _role_id("employee"), await _role_id("hr")
    headers = auth_headers(admin_id)

    first = await client.delete(f"/api/v1/roles/users/{user_id}/roles/{hr_role}", headers=headers)
    assert first.status_code == 200
    assert [r["name"] for r in first.json()["roles"]] == ["employee"]

    last = await client.delete(f"/api/v1/roles/users/{user_id}/roles/{employee_role}", headers=headers)
    assert last.status_code == 400
    assert last.json()["detail"] == "Cannot remove the user's last role"

    roles = await client.get(f"/api/v1/roles/users/{user_id}", headers=headers)
    assert [r["name"] for r in roles.json()["roles"]] == ["employee"]


@pytest.mark.asyncio
async def test_system_roles_cannot_be_deleted_or_stripped(client, auth_headers, admin_id) -> None:
    headers = auth_headers(admin_id)
    employee_role = await _role_id("employee")
    create_leave = await _permission_id("create:leave_request")

    deleted = await client.delete(f"/api/v1/roles/{employee_role}", headers=headers)
    assert deleted.status_code == 400

    revoked = await client.delete(f"/api/v1/roles/{employee_role}/permissions/{create_leave}", headers=headers)
    assert revoked.status_code == 400

    stripped = await client.put(f"/api/v1/roles/{employee_role}", json={"permission_ids": []}, headers=headers)
    assert stripped.status_code == 400

    renamed = await client.put(f"/api/v1/roles/{employee_role}", json={"name": "staff"}, headers=headers)
    assert renamed.status_code == 400

    relabelled = await client.put(
        f"/api/v1/roles/{employee_role}",
        json={"display_name": "Staff Member"},
        headers=headers,
    )
    assert relabelled.status_code == 200
    assert relabelled.json()["display_name"] == "Staff Member"
    assert "create:leave_request" in relabelled.json()["permissions"]


@pytest.mark.asyncio
async def test_role_with_users_cannot_be_deleted(client, auth_headers, admin_id, make_user) -> None:
    headers = auth_headers(admin_id)
    role = await _create_role(client, headers, "auditor")
    user_id = await make_user("jane@example.com", ["employee", "auditor"])

    response = await client.delete(f"/api/v1/roles/{role['id']}", headers=headers)
    assert response.status_code == 400

    await client.delete(f"/api/v1/roles/users/{user_id}/roles/{role['id']}", headers=headers)
    response = await client.delete(f"/api/v1/roles/{role['id']}", headers=headers)
    assert response.status_code == 204
    assert (await client.get(f"/api/v1/roles/{role['id']}", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_revoking_a_permission_refreshes_holders(client, auth_headers, admin_id, make_user) -> None:
    headers = auth_headers(admin_id)
    role = await _create_role(client, headers, "auditor", ["read:leave_request:all"])
    user_id = await make_user("jane@example.com", ["employee", "auditor"])

    assert (await client.get("/api/v1/leaves", headers=auth_headers(user_id))).status_code == 200

    permission_id = await _permission_id("read:leave_request:all")
    response = await client.delete(f"/api/v1/roles/{role['id']}/permissions/{permission_id}", headers=headers)
    assert response.status_code == 200
    assert response.json()["permissions"] == []

    assert (await client.get("/api/v1/leaves", headers=auth_headers(user_id))).status_code == 403

    granted = await client.post(
        f"/api/v1/roles/{role['id']}/permissions",
        json={"permission_id": str(permission_id)},
        headers=headers,
    )
    assert granted.status_code == 200
    assert (await client.get("/api/v1/leaves", headers=auth_headers(user_id))).status_code == 200


@pytest.mark.asyncio
async def test_referenced_permission_cannot_be_deleted(client, auth_headers, admin_id) -> None:
    headers = auth_headers(admin_id)
    referenced = await _permission_id("create:leave_request")

    response = await client.delete(f"/api/v1/permissions/{referenced}", headers=headers)
    assert response.status_code == 400

    created = await client.post(
        "/api/v1/permissions",
        json={"name": "export:report", "category": "reports"},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["role_count"] == 0

    response = await client.delete(f"/api/v1/permissions/{created.json()['id']}", headers=headers)
    assert response.status_code == 204


@pytest.mark.asyncio
async def test_permission_name_must_be_well_formed(client, auth_headers, admin_id) -> None:
    response = await client.post(
        "/api/v1/permissions",
        json={"name": "nocolon"},
        headers=auth_headers(admin_id),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_permission_update_drops_every_cached_authorization(client, auth_headers, admin_id, make_user) -> None:
    user_id = await make_user("jane@example.com")
    await authorization_cache.resolve(user_id)
    assert authorization_cache.stats()["size"] >= 1

    permission_id = await _permission_id("read:leave_request:own")
    response = await client.put(
        f"/api/v1/permissions/{permission_id}",
        json={"description": "See your own leave requests"},
        headers=auth_headers(admin_id),
    )

    assert response.status_code == 200
    assert response.json()["description"] == "See your own leave requests"
    assert authorization_cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_permissions_are_grouped_by_category(client, auth_headers, admin_id) -> None:
    response = await client.get("/api/v1/permissions", headers=auth_headers(admin_id))

    assert response.status_code == 200
    groups = {g["category"]: g["permissions"] for g in response.json()}
    assert {"leave", "roles", "permissions"} <= set(groups)
    leave_names = {p["name"] for p in groups["leave"]}
    assert "approve:leave_request" in leave_names


@pytest.mark.asyncio
async def test_role_stats(client, auth_headers, admin_id, make_user) -> None:
    await make_user("jane@example.com", ["employee"])
    await _create_role(client, auth_headers(admin_id), "auditor")

    response = await client.get("/api/v1/roles/stats", headers=auth_headers(admin_id))

    assert response.status_code == 200
    body = response.json()
    assert body["system_roles"] == 8
    assert body["custom_roles"] == 1
    assert body["total_assignments"] == 2
    assert body["users_per_role"]["employee"] == 1
    assert body["users_per_role"]["auditor"] == 0


@pytest.mark.asyncio
async def test_role_mutations_are_audited(client, auth_headers, admin_id, make_user) -> None:
    user_id = await make_user("jane@example.com", ["employee"])
    await client.post(
        "/api/v1/roles/assign",
        json={"user_id": str(user_id), "role_id": str(await _role_id("hr"))},
        headers=auth_headers(admin_id),
    )

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(AuditLog).where(AuditLog.action == AuditAction.ROLE_ASSIGNED.value))
        entry = result.scalar_one()
    assert entry.actor_id == admin_id
    assert entry.target_id == str(user_id)
    assert entry.details == {"role": "hr"}


class _FailingSession:
    def __init__(self) -> None:
        self.rolled_back = False

    async def __aenter__(self) -> "_FailingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def add(self, _entry) -> None:
        return None

    async def commit(self) -> None:
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    async def rollback(self) -> None:
        self.rolled_back = True


@pytest.mark.asyncio
async def test_audit_failure_is_logged_not_raised(caplog) -> None:
    db = _FailingSession()

    with caplog.at_level(logging.ERROR, logger="app.core.audit_service"):
        ok = await record_audit_event(
            AuditAction.ROLE_CREATED,
            actor_id=None,
            target_type="role",
            target_id="r-1",
            session_factory=lambda: db,
        )

    assert ok is False
    assert db.rolled_back
    assert "Failed to write audit event" in caplog.text


@pytest.mark.asyncio
async def test_role_is_created_when_the_audit_write_fails(client, auth_headers, admin_id, caplog) -> None:
    headers = auth_headers(admin_id)
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE audit_logs"))

    with caplog.at_level(logging.ERROR, logger="app.core.audit_service"):
        response = await client.post(
            "/api/v1/roles",
            json={"name": "auditor", "display_name": "Auditor"},
            headers=headers,
        )

    assert response.status_code == 201, response.text
    assert response.json()["name"] == "auditor"
    assert "Failed to write audit event action=role_created" in caplog.text
    assert (await client.get(f"/api/v1/roles/{response.json()['id']}", headers=headers)).status_code == 200


@pytest.mark.asyncio
async def test_role_definition_change_drops_every_cached_authorization(
    client, auth_headers, admin_id, make_user
) -> None:
    headers = auth_headers(admin_id)
    role = await _create_role(client, headers, "auditor")
    bystander = await make_user("jane@example.com", ["employee"])
    await authorization_cache.resolve(bystander)
    assert authorization_cache.stats()["size"] >= 1

    response = await client.put(
        f"/api/v1/roles/{role['id']}",
        json={"permission_ids": [str(await _permission_id("read:leave_request:all"))]},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json()["permissions"] == ["read:leave_request:all"]
    assert authorization_cache.stats()["size"] == 0
