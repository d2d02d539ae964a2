#!/usr/bin/env python3
"""
OpsGuard -- operator CLI for the authorization and login-security core.

Usage:
  python main.py check-catalog
  python main.py check-catalog --catalog /etc/opsguard/roles.json
  python main.py create-user owner@example.com --role owner
  python main.py users
  python main.py deactivate tech@example.com
  python main.py audit --limit 20
  python main.py audit --type permission_denied --json

Environment variables (see core/config.py):
  DATABASE_URL        SQLAlchemy URL of the user/role/audit store.
  ROLE_CATALOG_PATH   Role catalog JSON; the bundled auth/roles.json if unset.
"""

import argparse
import getpass
import json
import logging
import sys
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.catalog import PermissionCatalog, load_catalog
from auth.errors import CatalogError
from auth.models import AuditEventType, RoleAssignment, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def _check_catalog(args: argparse.Namespace) -> int:
    """Load the catalog and, unless --no-store, validate stored role names against it."""
    settings = get_settings()
    try:
        catalog = load_catalog(args.catalog or settings.role_catalog_path)
    except CatalogError as e:
        print(f"  [!] {e}")
        return 1

    print(f"\nRole catalog -- {len(catalog)} roles")
    print("─" * 40)
    for name in catalog.names():
        granted = catalog.permissions(name).granted()
        marks = []
        if name == catalog.default_role:
            marks.append("default")
        if name == catalog.top_tier_role:
            marks.append("top tier")
        suffix = f"  ({', '.join(marks)})" if marks else ""
        print(f"  {catalog.rank(name):>2}  {name:<28}{len(granted)} permission(s){suffix}")

    if args.no_store:
        return 0

    store = UserStore(settings.database_url)
    try:
        catalog.validate(store.list_assigned_roles())
    except CatalogError as e:
        print(f"\n  [!] Store does not match catalog: {e}")
        return 1
    finally:
        store.close()
    print("\n  Every stored role is defined in the catalog.\n")
    return 0


def _create_user(args: argparse.Namespace) -> int:
    """Bootstrap a user. Roles granted here bypass the guard, so this is an operator-only path."""
    settings = get_settings()
    catalog: PermissionCatalog = load_catalog(settings.role_catalog_path)
    try:
        catalog.validate(args.role)
    except CatalogError as e:
        print(f"  [!] {e}")
        return 1

    password = sys.stdin.readline().rstrip("\n") if args.password_stdin else getpass.getpass("Password: ")
    if not password:
        print("  [!] Password must not be empty.")
        return 1

    store = UserStore(settings.database_url)
    audit = AuditLog(store)
    try:
        try:
            user_id = store.create_user(User(email=args.email, hashed_password=hash_password(password)))
        except IntegrityError:
            print(f"  [!] A user with email '{args.email}' already exists.")
            return 1
        now = datetime.now(timezone.utc)
        for role in args.role:
            grant = RoleAssignment(principal_id=user_id, role=role, assigned_by=None, assigned_at=now)
            store.insert_role_assignment(grant)
            audit.record(
                AuditEventType.ROLE_CHANGE,
                subject=user_id,
                detail={"action": "role_assigned", "role": role, "status": "success", "source": "cli"},
            )
    finally:
        store.close()

    roles = ", ".join(args.role) or f"none ({catalog.default_role} permissions)"
    print(f"  Created user {user_id} <{args.email.strip().lower()}> with roles: {roles}")
    return 0


def _users(args: argparse.Namespace) -> int:
    """List users with their role grants (who granted each one, and when)."""
    store = UserStore(get_settings().database_url)
    try:
        users = store.list_users()
        grants = {u.id: store.get_role_assignments(u.id) for u in users}
    finally:
        store.close()

    if args.json:
        rows = [
            {
                "id": u.id,
                "email": u.email,
                "is_active": u.is_active,
                "last_login": u.last_login,
                "roles": [
                    {"role": g.role, "assigned_by": g.assigned_by, "assigned_at": g.assigned_at.isoformat()}
                    for g in grants[u.id]
                ],
            }
            for u in users
        ]
        print(json.dumps(rows, indent=2))
        return 0

    if not users:
        print("  No users.")
        return 0
    for u in users:
        state = "active" if u.is_active else "INACTIVE"
        roles = ", ".join(
            g.role if g.assigned_by is None else f"{g.role} (by {g.assigned_by})" for g in grants[u.id]
        )
        print(f"  {u.id:>5}  {u.email:<32} {state:<8} {roles or '-'}")
    return 0


def _set_active(args: argparse.Namespace) -> int:
    """Enable or disable login for an account. Role grants are left as they are."""
    store = UserStore(get_settings().database_url)
    try:
        user = store.get_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email '{args.email}'.")
            return 1
        store.set_active(user.id, args.active)
    finally:
        store.close()
    print(f"  {'Activated' if args.active else 'Deactivated'} user {user.id} <{user.email}>")
    return 0


def _audit(args: argparse.Namespace) -> int:
    """Print recent audit events, newest first."""
    store = UserStore(get_settings().database_url)
    try:
        events = store.list_audit_events(event_type=args.type, actor_id=args.actor, limit=args.limit)
    finally:
        store.close()

    if args.json:
        rows = [
            {
                "id": e.id,
                "event_type": e.event_type.value,
                "actor_id": e.actor_id,
                "subject": e.subject,
                "detail": e.detail,
                "created_at": e.created_at.isoformat(),
            }
            for e in events
        ]
        print(json.dumps(rows, indent=2))
        return 0

    if not events:
        print("  No audit events.")
        return 0
    for e in events:
        status = e.detail.get("status", "-")
        print(
            f"  {e.created_at:%Y-%m-%d %H:%M:%S}  {e.event_type.value:<20} "
            f"actor={e.actor_id:<8} subject={e.subject or '-':<24} {status}"
        )
    return 0


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = argparse.ArgumentParser(
        prog="opsguard",
        description="Operator tools for the OpsGuard authorization core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py check-catalog
  python main.py create-user owner@example.com --role owner
  echo 's3cret' | python main.py create-user tech@example.com --role technician --password-stdin
  python main.py users --json
  python main.py deactivate tech@example.com
  python main.py audit --type login_attempt --limit 100
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_check = sub.add_parser("check-catalog", help="Validate the role catalog and the stored role grants")
    p_check.add_argument("--catalog", metavar="PATH", default="", help="Catalog file (default: ROLE_CATALOG_PATH)")
    p_check.add_argument("--no-store", action="store_true", help="Only validate the catalog file itself")
    p_check.set_defaults(func=_check_catalog)

    p_user = sub.add_parser("create-user", help="Create a user, optionally granting roles")
    p_user.add_argument("email", help="Login email")
    p_user.add_argument(
        "--role",
        action="append",
        default=[],
        metavar="ROLE",
        help="Role to grant; repeat for several. Use the top-tier role to bootstrap the first owner.",
    )
    p_user.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    p_user.set_defaults(func=_create_user)

    p_users = sub.add_parser("users", help="List users and their role grants")
    p_users.add_argument("--json", action="store_true", help="Output structured JSON")
    p_users.set_defaults(func=_users)

    p_off = sub.add_parser("deactivate", help="Block an account from logging in")
    p_off.add_argument("email")
    p_off.set_defaults(func=_set_active, active=False)

    p_on = sub.add_parser("activate", help="Allow a deactivated account to log in again")
    p_on.add_argument("email")
    p_on.set_defaults(func=_set_active, active=True)

    p_audit = sub.add_parser("audit", help="Show recent audit events")
    p_audit.add_argument("--type", choices=[t.value for t in AuditEventType], default=None)
    p_audit.add_argument("--actor", default=None, metavar="ID", help="Only events by this actor id")
    p_audit.add_argument("--limit", type=int, default=50)
    p_audit.add_argument("--json", action="store_true", help="Output structured JSON")
    p_audit.set_defaults(func=_audit)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
