"""
auth/guard.py -- Who may grant or revoke which role.

Rules, in the order they are checked:
  1. The actor must be identified.
  2. The actor's effective (governing) permission record must carry
     can_assign_roles. This is checked before the role name so a caller
     without the capability learns nothing about which role names exist.
  3. The role must exist in the catalog.
  4. Escalation:
       - no role ranked above the actor's governing role can be touched;
       - the top-tier role ("owner"), and every other role sharing the
         catalog's highest rank, can be granted or revoked only by a holder
         of the top-tier role. can_assign_roles alone never mints a peer at
         the highest tier.
  5. The subject must exist. Checked only once the actor is entitled to the
     change, so an unprivileged caller cannot tell which user ids exist.
  6. Revoking the top-tier role from its last holder is refused so the
     platform cannot be left without an owner. The holder count and the
     delete are atomic in the store, and top-tier revocations are also
     serialized here.

Every refusal is a declined RoleChangeResult plus exactly one
permission_denied audit event. Every attempted mutation is exactly one
role_change audit event, with status "success" or "error".

Fail-closed: can_assign() returns False on any failure to establish the
actor's roles. An exception while resolving is never read as permission.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from auth.bounded import run_bounded
from auth.catalog import PermissionSet
from auth.models import AuditEventType, RoleAssignment, RoleChangeResult

if TYPE_CHECKING:
    from auth.audit import AuditLog
    from auth.interfaces import PersistenceGateway
    from auth.resolver import RoleResolver

logger = logging.getLogger("opsguard.auth")

AUTH_REQUIRED = "Authentication required"
INVALID_ROLE = "Invalid role specified"
CANNOT_ASSIGN = "Insufficient permissions to assign roles"
CANNOT_REMOVE = "Insufficient permissions to remove roles"
SUBJECT_NOT_FOUND = "User not found"
LAST_TOP_TIER = "Cannot remove the role from its last holder"
UPDATE_FAILED = "Unable to update roles. Please try again."

_ASSIGN = "role_assigned"
_REMOVE = "role_removed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _Standing:
    """What the guard needs to know about an actor."""

    held: frozenset[str]
    rank: int
    permissions: PermissionSet


class RoleAssignmentGuard:
    def __init__(
        self,
        resolver: RoleResolver,
        gateway: PersistenceGateway,
        audit: AuditLog,
        *,
        timeout: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._resolver = resolver
        self._catalog = resolver.catalog
        self._gateway = gateway
        self._audit = audit
        self._timeout = timeout
        self._clock = clock
        self._top_tier_lock = threading.Lock()

    def can_assign(self, actor_id: int | None, target_role: str) -> bool:
        """True only if the actor may grant or revoke `target_role`. Never raises."""
        if actor_id is None or target_role not in self._catalog:
            return False
        standing = self._standing(actor_id)
        if standing is None or not standing.permissions.can_assign_roles:
            return False
        return self._within_reach(standing, target_role)

    def assign_role(self, actor_id: int | None, subject_id: int, role: str) -> RoleChangeResult:
        return self._change(_ASSIGN, actor_id, subject_id, role)

    def remove_role(self, actor_id: int | None, subject_id: int, role: str) -> RoleChangeResult:
        return self._change(_REMOVE, actor_id, subject_id, role)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _standing(self, actor_id: int) -> _Standing | None:
        try:
            held = self._resolver.roles_of(actor_id)
        except Exception:
            logger.error("Role resolution failed for actor %s; denying", actor_id, exc_info=True)
            return None
        governing = self._resolver.select(held) or self._catalog.get(self._catalog.default_role)
        return _Standing(
            held=frozenset(r.name for r in held),
            rank=governing.rank,
            permissions=governing.permissions,
        )

    def _within_reach(self, standing: _Standing, role: str) -> bool:
        target = self._catalog.get(role)
        if target.rank > standing.rank:
            return False
        top_tier = self._catalog.top_tier_role
        if role == top_tier or target.rank >= self._catalog.top_rank:
            return top_tier in standing.held
        return True

    def _change(self, action: str, actor_id: int | None, subject_id: int, role: str) -> RoleChangeResult:
        refused = CANNOT_ASSIGN if action == _ASSIGN else CANNOT_REMOVE
        if actor_id is None:
            return self._deny(action, actor_id, subject_id, role, "unauthenticated", AUTH_REQUIRED)
        standing = self._standing(actor_id)
        if standing is None or not standing.permissions.can_assign_roles:
            return self._deny(action, actor_id, subject_id, role, "insufficient_permissions", refused)
        if role not in self._catalog:
            return self._deny(action, actor_id, subject_id, role, "unknown_role", INVALID_ROLE)
        if not self._within_reach(standing, role):
            return self._deny(action, actor_id, subject_id, role, "escalation_blocked", refused)

        try:
            if not run_bounded(self._gateway.principal_exists, self._timeout, subject_id):
                return self._deny(action, actor_id, subject_id, role, "unknown_subject", SUBJECT_NOT_FOUND)
            if action == _ASSIGN:
                assignment = RoleAssignment(
                    principal_id=subject_id,
                    role=role,
                    assigned_by=actor_id,
                    assigned_at=self._clock(),
                )
                changed = run_bounded(self._gateway.insert_role_assignment, self._timeout, assignment)
            elif role == self._catalog.top_tier_role:
                with self._top_tier_lock:
                    changed = run_bounded(
                        self._gateway.delete_role_assignment_unless_last, self._timeout, subject_id, role
                    )
                    if not changed and role in run_bounded(self._gateway.get_roles_of, self._timeout, subject_id):
                        return self._deny(action, actor_id, subject_id, role, "last_holder", LAST_TOP_TIER)
            else:
                changed = run_bounded(self._gateway.delete_role_assignment, self._timeout, subject_id, role)
        except Exception:
            logger.error(
                "Role %s failed (actor=%s subject=%s role=%s)", action, actor_id, subject_id, role, exc_info=True
            )
            self._audit.record(
                AuditEventType.ROLE_CHANGE,
                actor_id=actor_id,
                subject=subject_id,
                detail={"action": action, "role": role, "status": "error"},
            )
            return RoleChangeResult(success=False, error=UPDATE_FAILED)

        self._audit.record(
            AuditEventType.ROLE_CHANGE,
            actor_id=actor_id,
            subject=subject_id,
            detail={"action": action, "role": role, "status": "success", "changed": bool(changed)},
        )
        logger.info("Role %s: actor=%s subject=%s role=%s", action, actor_id, subject_id, role)
        return RoleChangeResult(success=True, detail={"changed": bool(changed)})

    def _deny(
        self,
        action: str,
        actor_id: Any,
        subject_id: Any,
        role: str,
        reason: str,
        error: str,
    ) -> RoleChangeResult:
        logger.warning(
            "Role change denied: %s actor=%s subject=%s role=%s reason=%s", action, actor_id, subject_id, role, reason
        )
        self._audit.record(
            AuditEventType.PERMISSION_DENIED,
            actor_id=actor_id,
            subject=subject_id,
            detail={"action": action, "role": role, "reason": reason, "status": "denied"},
        )
        return RoleChangeResult(success=False, error=error)
