#!/usr/bin/env python3
"""Provision an employee account with roles and an initial password.

Usage:
    # Using environment variables:
    EMPLOYEE_EMAIL=ops@example.com EMPLOYEE_PASSWORD='Str0ng!Passw0rd' \
        python scripts/provision_employee.py --role executive

    # Or with command line args, granting permissions to a role on the way:
    python scripts/provision_employee.py --email tech@example.com --password 'Str0ng!Passw0rd' \
        --role technician --grant technician=view.login_history.enable

Environment Variables:
    EMPLOYEE_EMAIL: Email for the employee
    EMPLOYEE_PASSWORD: Initial password (validated against the employee password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Sequence, Tuple

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def parse_grants(values: Sequence[str]) -> List[Tuple[str, str]]:
    grants = []
    for value in values:
        role, sep, permission_key = value.partition("=")
        if not sep or not role.strip() or not permission_key.strip():
            raise ValueError(f"grant must look like role=permission.key, got {value!r}")
        grants.append((role.strip(), permission_key.strip()))
    return grants


def _ensure_role(store, name: str) -> None:
    from gatekeeper.service.permissions import ROLE_LEVELS
    from gatekeeper.storage.errors import ConstraintViolation

    try:
        store.create_role(name, level=ROLE_LEVELS.get(name, 0))
    except ConstraintViolation:
        pass


def _ensure_grant(store, role: str, permission_key: str) -> None:
    from gatekeeper.storage.errors import ConstraintViolation

    _ensure_role(store, role)
    try:
        store.create_permission(permission_key)
    except ConstraintViolation:
        pass
    store.grant_permission(role, permission_key)


def provision_employee(
    email: str,
    password: str,
    roles: Sequence[str],
    *,
    grants: Sequence[Tuple[str, str]] = (),
    first_name: str | None = None,
    last_name: str | None = None,
    mfa_enabled: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the employee, or add roles to an existing one.

    Returns:
        dict with principal_id, email and status ('created', 'updated' or 'dry_run')
    """
    from gatekeeper.service.runtime import get_runtime
    from gatekeeper.storage.models import PrincipalKind

    runtime = get_runtime()
    store = runtime.store
    existing = store.get_principal_by_email(PrincipalKind.EMPLOYEE, email)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} employee {email} with roles {list(roles)}")
        return {"principal_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    for role, permission_key in grants:
        _ensure_grant(store, role, permission_key)
    for role in roles:
        _ensure_role(store, role)

    if existing:
        for role in roles:
            store.assign_role(existing.id, role)
        print(f"Updated employee {email} (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "updated"}

    hints = {"email": email, "first_name": first_name, "last_name": last_name}
    result = runtime.passwords.validate(password, hints, kind=PrincipalKind.EMPLOYEE)
    if not result.is_valid:
        raise ValueError("; ".join(result.feedback))

    principal = store.create_principal(
        PrincipalKind.EMPLOYEE,
        email,
        email_verified=True,
        first_name=first_name,
        last_name=last_name,
        mfa_enabled=mfa_enabled,
    )
    password_hash = runtime.passwords.hash(password)
    store.save_password(principal.id, password_hash)
    runtime.passwords.record_used(principal.id, password_hash, PrincipalKind.EMPLOYEE)
    runtime.passwords.mark_changed(principal.id, PrincipalKind.EMPLOYEE)
    for role in roles:
        store.assign_role(principal.id, role)

    print(f"Created employee: {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision a Gatekeeper employee account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("EMPLOYEE_EMAIL"),
        help="Employee email (or set EMPLOYEE_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("EMPLOYEE_PASSWORD"),
        help="Initial password (or set EMPLOYEE_PASSWORD env var)",
    )
    parser.add_argument(
        "--role", action="append", default=[], help="Role to assign; repeatable"
    )
    parser.add_argument(
        "--grant",
        action="append",
        default=[],
        help="role=permission.key grant to create; repeatable",
    )
    parser.add_argument("--first-name")
    parser.add_argument("--last-name")
    parser.add_argument("--mfa", action="store_true", help="Enable MFA for the account")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or EMPLOYEE_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or EMPLOYEE_PASSWORD environment variable required")
        sys.exit(1)
    try:
        grants = parse_grants(args.grant)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/gatekeeper-provision"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = provision_employee(
            args.email.strip().lower(),
            args.password,
            args.role,
            grants=grants,
            first_name=args.first_name,
            last_name=args.last_name,
            mfa_enabled=args.mfa,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nEmployee provisioned successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")


if __name__ == "__main__":
    main()
