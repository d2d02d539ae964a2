"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores, the resolver, the guard and the login orchestrator do
the work.

Role and permission records live in auth/catalog.py because they are
configuration, not persisted entities.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

UNKNOWN_ACTOR = "unknown"


class AuditEventType(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    ROLE_CHANGE = "role_change"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class LoginStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CHALLENGE = "challenge"
    ERROR = "error"


@dataclass
class User:
    """An identity that can log in.

    email is stored trimmed and lower-cased; it doubles as the login name and
    the throttling key. hashed_password is a bcrypt hash, never the raw value.
    Roles are not a column on the user -- they live in user_roles so a user
    can hold zero, one or many of them.
    """

    email: str
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class RoleAssignment:
    """One (principal, role) grant. Deleted, not updated, on revocation."""

    principal_id: int
    role: str
    assigned_by: int | None
    assigned_at: datetime


@dataclass(frozen=True)
class AuditEvent:
    """Append-only record of one security decision.

    created_at is always stamped by AuditLog at call time; callers cannot
    supply it. detail is copied on construction by AuditLog.
    """

    event_type: AuditEventType
    actor_id: str
    subject: str | None
    detail: dict[str, Any]
    created_at: datetime
    id: int | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a credential check: a principal id, or an error category."""

    principal_id: int | None = None
    error_category: str | None = None

    @property
    def ok(self) -> bool:
        return self.principal_id is not None


@dataclass(frozen=True)
class LoginResult:
    """Outcome of secure_login.

    status is for audit and tests; transport layers must not echo it to the
    caller beyond what error / requires_challenge already say.
    """

    success: bool
    status: LoginStatus
    error: str | None = None
    requires_challenge: bool = False
    principal_id: int | None = None
    retry_after: float | None = None


@dataclass(frozen=True)
class RoleChangeResult:
    success: bool
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
