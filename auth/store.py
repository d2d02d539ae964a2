"""
auth/store.py -- SQLAlchemy Core persistence layer for users, role grants and
the audit trail.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
helpers are the mappers. Route, guard and resolver code never touches SQL.

UserStore is the bundled Persistence Gateway (see auth/interfaces.py):
principal_exists / get_roles_of / insert_role_assignment /
delete_role_assignment / delete_role_assignment_unless_last /
count_role_holders / list_assigned_roles / append_audit_event.

Security:
  All queries use bound parameters. No f-strings in SQL.

  audit_events is append-only from this codebase: the store exposes insert
  and select for it, nothing that updates or deletes. Retention is an
  operational concern handled outside the application.

  UNIQUE(user_id, role) on user_roles makes a repeated grant a no-op rather
  than a duplicate row; insert_role_assignment() reports whether anything
  changed.

DB: DATABASE_URL (default opsguard.db at the repository root).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AuditEvent, AuditEventType, RoleAssignment, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # trimmed + lower-cased
    Column("hashed_password", Text),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", Text),  # ISO 8601 timestamp of last successful auth
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(64), nullable=False),
    Column("assigned_by", Integer),  # NULL for bootstrap grants
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
)

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(32), nullable=False, index=True),
    Column("actor_id", String(64), nullable=False),
    Column("subject", String(255)),
    Column("detail", Text, nullable=False),  # JSON object
    Column("created_at", String(40), nullable=False),  # ISO 8601, stamped by AuditLog
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, role assignments and audit events.

    Usage:
        store = UserStore("sqlite:///opsguard.db")
        uid = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        store.insert_role_assignment(RoleAssignment(uid, "technician", assigned_by=None, assigned_at=now))
        store.get_roles_of(uid)   # {"technician"}
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def principal_exists(self, principal_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.id == principal_id)).fetchone()
        return row is not None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Returns True if a row was updated, False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    def get_roles_of(self, principal_id: int) -> set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_user_roles.c.role).where(_user_roles.c.user_id == principal_id)).fetchall()
        return {r.role for r in rows}

    def get_role_assignments(self, principal_id: int) -> list[RoleAssignment]:
        """Full grant records for a principal, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select()
                .where(_user_roles.c.user_id == principal_id)
                .order_by(_user_roles.c.assigned_at, _user_roles.c.id)
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def insert_role_assignment(self, assignment: RoleAssignment) -> bool:
        """Grant a role. Returns False (and changes nothing) if it was already held."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _user_roles.insert().values(
                        user_id=assignment.principal_id,
                        role=assignment.role,
                        assigned_by=assignment.assigned_by,
                        assigned_at=assignment.assigned_at.isoformat(),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def delete_role_assignment(self, principal_id: int, role: str) -> bool:
        """Revoke a role. Returns True if a grant was removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == principal_id) & (_user_roles.c.role == role))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_role_assignment_unless_last(self, principal_id: int, role: str) -> bool:
        """Revoke a role unless the principal is its only holder.

        The holder count and the delete are one statement in one transaction,
        so two concurrent revocations cannot both see "another holder remains"
        and leave the role with nobody. Returns True if a grant was removed.
        """
        holders = _user_roles.alias("holders")
        remaining = select(func.count()).select_from(holders).where(holders.c.role == role).scalar_subquery()
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_roles.delete().where(
                    (_user_roles.c.user_id == principal_id) & (_user_roles.c.role == role) & (remaining > 1)
                )
            )
        return result.rowcount > 0

    def count_role_holders(self, role: str) -> int:
        """Number of principals holding `role`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_user_roles).where(_user_roles.c.role == role)
            ).scalar()
        return result or 0

    def list_assigned_roles(self) -> set[str]:
        """Every distinct role name currently granted to anyone (startup catalog check)."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_user_roles.c.role).distinct()).fetchall()
        return {r.role for r in rows}

    # ------------------------------------------------------------------
    # Audit trail (append + read only)
    # ------------------------------------------------------------------

    def append_audit_event(self, audit_event: AuditEvent) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_events.insert().values(
                    event_type=audit_event.event_type.value,
                    actor_id=audit_event.actor_id,
                    subject=audit_event.subject,
                    detail=json.dumps(audit_event.detail, default=str, sort_keys=True),
                    created_at=audit_event.created_at.isoformat(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_events(
        self,
        *,
        event_type: str | None = None,
        actor_id: str | None = None,
        subject: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        """Audit events newest first, optionally filtered."""
        query = _audit_events.select()
        if event_type:
            query = query.where(_audit_events.c.event_type == event_type)
        if actor_id:
            query = query.where(_audit_events.c.actor_id == actor_id)
        if subject:
            query = query.where(_audit_events.c.subject == subject)
        query = query.order_by(_audit_events.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def ping(self) -> bool:
        """Connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        principal_id=row.user_id,
        role=row.role,
        assigned_by=row.assigned_by,
        assigned_at=datetime.fromisoformat(row.assigned_at),
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=AuditEventType(row.event_type),
        actor_id=row.actor_id,
        subject=row.subject,
        detail=json.loads(row.detail),
        created_at=datetime.fromisoformat(row.created_at),
    )
