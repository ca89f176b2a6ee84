"""
Seed script for the RBAC tables: system roles, the base permission set, their
grants, and (optionally) the first administrator.

Run once after deploying, with env set:
  DATABASE_URL=postgresql+asyncpg://...
  INITIAL_ADMIN_EMAIL=admin@company.com
  INITIAL_ADMIN_PASSWORD=YourSecurePassword

  python -m app.db.seed_rbac

Idempotent: existing roles, permissions and grants are left as they are.
"""
import asyncio
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import Permission, Role, RolePermission, User, UserRole
from app.auth.security import hash_password
from app.core import models  # noqa: F401  (registers leave/audit tables on Base.metadata)
from app.core.config import settings
from app.db.session import AsyncSessionLocal, Base, engine

# name -> (display name, description)
SYSTEM_ROLES: Dict[str, Tuple[str, str]] = {
    "super_admin": ("Super Administrator", "Unrestricted access to every resource"),
    "admin": ("Administrator", "System administration and final leave approval"),
    "hr_manager": ("HR Manager", "Second-level leave approval and HR administration"),
    "department_manager": ("Department Manager", "First-level leave approval for a department"),
    "manager": ("Manager", "Team lead"),
    "hr": ("HR", "Human resources staff"),
    "payroll": ("Payroll", "Payroll and compensation staff"),
    "employee": ("Employee", "Default role for every user"),
}

# name -> (category, description)
BASE_PERMISSIONS: Dict[str, Tuple[str, str]] = {
    "create:leave_request": ("leave", "Apply for leave"),
    "read:leave_request:own": ("leave", "View own leave requests"),
    "read:leave_request:all": ("leave", "View all leave requests"),
    "approve:leave_request": ("leave", "Approve or reject leave requests"),
    "cancel:leave_request": ("leave", "Cancel own leave requests"),
    "create:role": ("roles", "Create roles"),
    "read:role": ("roles", "View roles"),
    "update:role": ("roles", "Edit roles and their permissions"),
    "delete:role": ("roles", "Delete roles"),
    "update:user_role": ("roles", "Assign and remove user roles"),
    "create:permission": ("permissions", "Create permissions"),
    "read:permission": ("permissions", "View permissions"),
    "update:permission": ("permissions", "Edit permissions"),
    "delete:permission": ("permissions", "Delete permissions"),
}

_EMPLOYEE: List[str] = ["create:leave_request", "read:leave_request:own", "cancel:leave_request"]
_APPROVER: List[str] = _EMPLOYEE + ["read:leave_request:all", "approve:leave_request"]

ROLE_GRANTS: Dict[str, List[str]] = {
    "employee": _EMPLOYEE,
    "manager": _APPROVER,
    "department_manager": _APPROVER,
    "hr": _EMPLOYEE + ["read:leave_request:all"],
    "hr_manager": _APPROVER + ["read:role", "update:user_role"],
    "payroll": _EMPLOYEE,
    "admin": list(BASE_PERMISSIONS),
}

DEFAULT_ADMIN_FULL_NAME = "System Administrator"


async def seed_rbac(db: AsyncSession) -> None:
    # 1. Permissions
    result = await db.execute(select(Permission))
    permissions = {p.name: p for p in result.scalars().all()}
    for name, (category, description) in BASE_PERMISSIONS.items():
        if name not in permissions:
            permissions[name] = Permission(name=name, category=category, description=description)
            db.add(permissions[name])
            print("Created permission:", name)
    await db.flush()

    # 2. System roles
    result = await db.execute(select(Role))
    roles = {r.name: r for r in result.scalars().all()}
    for name, (display_name, description) in SYSTEM_ROLES.items():
        if name not in roles:
            roles[name] = Role(name=name, display_name=display_name, description=description, is_system_role=True)
            db.add(roles[name])
            print("Created system role:", name)
    await db.flush()

    # 3. Grants
    result = await db.execute(select(RolePermission.role_id, RolePermission.permission_id))
    existing = set(result.all())
    for role_name, permission_names in ROLE_GRANTS.items():
        role = roles[role_name]
        for permission_name in permission_names:
            permission = permissions[permission_name]
            if (role.id, permission.id) not in existing:
                db.add(RolePermission(role_id=role.id, permission_id=permission.id))
                existing.add((role.id, permission.id))

    # 4. First administrator
    email = settings.initial_admin_email
    password = settings.initial_admin_password
    if not email or not password:
        await db.commit()
        print("No INITIAL_ADMIN_EMAIL / INITIAL_ADMIN_PASSWORD; skipping admin user.")
        return

    user_result = await db.execute(select(User).where(User.email == email))
    admin_user = user_result.scalar_one_or_none()
    if not admin_user:
        admin_user = User(
            full_name=DEFAULT_ADMIN_FULL_NAME,
            email=email,
            password_hash=hash_password(password),
            legacy_role="admin",
            active=True,
        )
        db.add(admin_user)
        await db.flush()
        print("Created admin user:", email)
    else:
        admin_user.password_hash = hash_password(password)
        print("Updated password for existing admin user:", email)

    assigned = await db.execute(
        select(UserRole.role_id).where(UserRole.user_id == admin_user.id)
    )
    assigned_ids = set(assigned.scalars().all())
    for role_name in ("super_admin", "employee"):
        if roles[role_name].id not in assigned_ids:
            db.add(UserRole(user_id=admin_user.id, role_id=roles[role_name].id))

    await db.commit()
    print("RBAC seed done.")


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as db:
        try:
            await seed_rbac(db)
        except Exception as e:
            await db.rollback()
            print("Error:", e)
            raise


if __name__ == "__main__":
    asyncio.run(main())
