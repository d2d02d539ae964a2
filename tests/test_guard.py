"""
tests/test_guard.py -- Unit tests for auth/guard.py (RoleAssignmentGuard).

Covers:
  - can_assign(): requires can_assign_roles on the actor's effective record
  - Escalation: only a holder of the top-tier role may grant or revoke any
    role at the catalog's highest rank; nobody reaches above their own rank
  - Permission is checked before the role name and before the subject, so
    unprivileged callers cannot tell real roles or user ids from fake ones
  - Fail-closed: resolution errors and unknown roles answer False, never raise
  - Every declined path leaves exactly one permission_denied event
  - Every attempted mutation leaves exactly one role_change event
  - The last holder of the top-tier role cannot lose it, even when two
    owners revoke each other at the same moment
  - E2E: a technician cannot mint an owner

Uses a real in-memory UserStore for grants and the audit trail; MagicMock
gateways stand in where a failure has to be injected.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from auth.audit import AuditLog
from auth.catalog import PermissionCatalog
from auth.guard import (
    AUTH_REQUIRED,
    CANNOT_ASSIGN,
    CANNOT_REMOVE,
    INVALID_ROLE,
    LAST_TOP_TIER,
    SUBJECT_NOT_FOUND,
    UPDATE_FAILED,
    RoleAssignmentGuard,
)
from auth.models import AuditEventType, RoleAssignment, User
from auth.resolver import RoleResolver
from auth.store import UserStore


@pytest.fixture
def guard(catalog: PermissionCatalog, store: UserStore) -> RoleAssignmentGuard:
    return RoleAssignmentGuard(RoleResolver(catalog, store), store, AuditLog(store))


def _events(store: UserStore, event_type: AuditEventType) -> list:
    return store.list_audit_events(event_type=event_type.value)


def _owner(store: UserStore, email: str) -> int:
    uid = store.create_user(User(email=email))
    store.insert_role_assignment(
        RoleAssignment(principal_id=uid, role="owner", assigned_by=None, assigned_at=datetime.now(timezone.utc))
    )
    return uid


class TestCanAssign:
    def test_admin_may_assign_ordinary_roles(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        admin = make_user("admin@x.com", "admin")
        assert guard.can_assign(admin, "technician") is True
        assert guard.can_assign(admin, "manager") is True

    def test_role_without_capability_may_not_assign(self, guard: RoleAssignmentGuard, make_user) -> None:
        manager = make_user("manager@x.com", "manager")
        assert guard.can_assign(manager, "technician") is False

    def test_admin_may_not_grant_top_tier(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        """can_assign_roles alone never mints an owner."""
        admin = make_user("admin@x.com", "admin")
        assert guard.can_assign(admin, "owner") is False

    def test_developer_may_not_grant_top_tier(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        """Same rank and same record as owner is still not owner."""
        dev = make_user("dev@x.com", "developer")
        assert guard.can_assign(dev, "owner") is False

    def test_owner_may_grant_top_tier(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        owner = make_user("owner@x.com", "owner")
        assert guard.can_assign(owner, "owner") is True

    def test_admin_may_not_reach_top_rank_peers(self, guard: RoleAssignmentGuard, make_user) -> None:
        """developer shares owner's rank; can_assign_roles at rank 7 does not reach it."""
        admin = make_user("admin@x.com", "admin")
        assert guard.can_assign(admin, "developer") is False
        assert guard.can_assign(admin, "captain") is True

    def test_only_top_tier_holder_mints_top_rank(self, guard: RoleAssignmentGuard, make_user) -> None:
        dev = make_user("dev@x.com", "developer")
        owner = make_user("owner@x.com", "owner")
        assert guard.can_assign(dev, "developer") is False
        assert guard.can_assign(owner, "developer") is True

    def test_rank_ceiling_on_injected_catalog(self, store: UserStore, make_user) -> None:
        catalog = PermissionCatalog.from_mapping(
            {
                "default_role": "guest",
                "top_tier_role": "root",
                "roles": {
                    "guest": {"rank": 1, "permissions": []},
                    "lead": {"rank": 2, "permissions": ["can_assign_roles"]},
                    "auditor": {"rank": 3, "permissions": ["can_view_reports"]},
                    "root": {"rank": 4, "permissions": ["*"]},
                },
            }
        )
        guard = RoleAssignmentGuard(RoleResolver(catalog, store), store, AuditLog(store))
        lead = make_user("lead@x.com", "lead")
        assert guard.can_assign(lead, "guest") is True
        assert guard.can_assign(lead, "auditor") is False

    def test_uses_governing_role_not_any_held_role(self, store: UserStore, make_user) -> None:
        """A lower-ranked grant carrying can_assign_roles does not leak through a higher-ranked one."""
        catalog = PermissionCatalog.from_mapping(
            {
                "default_role": "guest",
                "top_tier_role": "root",
                "roles": {
                    "guest": {"rank": 1, "permissions": []},
                    "lead": {"rank": 2, "permissions": ["can_assign_roles"]},
                    "auditor": {"rank": 3, "permissions": ["can_view_reports"]},
                    "root": {"rank": 4, "permissions": ["*"]},
                },
            }
        )
        guard = RoleAssignmentGuard(RoleResolver(catalog, store), store, AuditLog(store))
        both = make_user("both@x.com", "lead", "auditor")
        assert guard.can_assign(both, "guest") is False
        result = guard.assign_role(both, make_user("g@x.com"), "guest")
        assert result.error == CANNOT_ASSIGN

    def test_no_actor(self, guard: RoleAssignmentGuard) -> None:
        assert guard.can_assign(None, "technician") is False

    def test_unknown_target_role(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        owner = make_user("owner@x.com", "owner")
        assert guard.can_assign(owner, "pirate") is False

    def test_actor_without_roles_gets_default(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        nobody = make_user("nobody@x.com")
        assert guard.can_assign(nobody, "customer") is False

    def test_resolution_failure_fails_closed(self, catalog: PermissionCatalog) -> None:
        gateway = MagicMock()
        gateway.get_roles_of.side_effect = RuntimeError("db down")
        guard = RoleAssignmentGuard(RoleResolver(catalog, gateway), gateway, MagicMock())
        assert guard.can_assign(1, "technician") is False

    def test_unknown_stored_role_fails_closed(self, catalog: PermissionCatalog) -> None:
        gateway = MagicMock()
        gateway.get_roles_of.return_value = {"pirate"}
        guard = RoleAssignmentGuard(RoleResolver(catalog, gateway), gateway, MagicMock())
        assert guard.can_assign(1, "technician") is False


class TestAssignRole:
    def test_success_persists_and_audits_once(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        admin = make_user("admin@x.com", "admin")
        target = make_user("tech@x.com")
        result = guard.assign_role(admin, target, "technician")
        assert result.success is True
        assert result.detail == {"changed": True}
        assert store.get_roles_of(target) == {"technician"}

        changes = _events(store, AuditEventType.ROLE_CHANGE)
        assert len(changes) == 1
        assert changes[0].actor_id == str(admin)
        assert changes[0].subject == str(target)
        assert changes[0].detail == {
            "action": "role_assigned",
            "role": "technician",
            "status": "success",
            "changed": True,
        }
        assert _events(store, AuditEventType.PERMISSION_DENIED) == []

    def test_repeat_grant_is_noop(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        admin = make_user("admin@x.com", "admin")
        target = make_user("tech@x.com", "technician")
        result = guard.assign_role(admin, target, "technician")
        assert result.success is True
        assert result.detail == {"changed": False}
        assert store.get_roles_of(target) == {"technician"}

    @pytest.mark.parametrize(
        "actor_roles,role,error,reason",
        [
            ((), "technician", CANNOT_ASSIGN, "insufficient_permissions"),
            (("technician",), "technician", CANNOT_ASSIGN, "insufficient_permissions"),
            (("technician",), "pirate", CANNOT_ASSIGN, "insufficient_permissions"),
            (("admin",), "owner", CANNOT_ASSIGN, "escalation_blocked"),
            (("admin",), "developer", CANNOT_ASSIGN, "escalation_blocked"),
            (("admin",), "pirate", INVALID_ROLE, "unknown_role"),
        ],
    )
    def test_declines_audited_once(
        self,
        guard: RoleAssignmentGuard,
        store: UserStore,
        make_user,
        actor_roles: tuple,
        role: str,
        error: str,
        reason: str,
    ) -> None:
        actor = make_user("actor@x.com", *actor_roles)
        target = make_user("target@x.com")
        result = guard.assign_role(actor, target, role)
        assert result.success is False
        assert result.error == error
        assert store.get_roles_of(target) == set()

        denied = _events(store, AuditEventType.PERMISSION_DENIED)
        assert len(denied) == 1
        assert denied[0].detail["reason"] == reason
        assert denied[0].detail["status"] == "denied"
        assert _events(store, AuditEventType.ROLE_CHANGE) == []

    def test_admin_cannot_self_promote_to_top_rank(
        self, guard: RoleAssignmentGuard, store: UserStore, make_user
    ) -> None:
        admin = make_user("admin@x.com", "admin")
        result = guard.assign_role(admin, admin, "developer")
        assert result.success is False
        assert result.error == CANNOT_ASSIGN
        assert store.get_roles_of(admin) == {"admin"}

    def test_unknown_subject_declined_after_permission(
        self, guard: RoleAssignmentGuard, store: UserStore, make_user
    ) -> None:
        owner = make_user("owner@x.com", "owner")
        result = guard.assign_role(owner, 99999, "technician")
        assert result.success is False
        assert result.error == SUBJECT_NOT_FOUND
        denied = _events(store, AuditEventType.PERMISSION_DENIED)
        assert len(denied) == 1
        assert denied[0].detail["reason"] == "unknown_subject"
        assert _events(store, AuditEventType.ROLE_CHANGE) == []

    def test_unprivileged_caller_learns_nothing_about_subjects(
        self, guard: RoleAssignmentGuard, store: UserStore, make_user
    ) -> None:
        tech = make_user("tech@x.com", "technician")
        colleague = make_user("colleague@x.com")
        existing = guard.assign_role(tech, colleague, "owner")
        missing = guard.assign_role(tech, 99999, "owner")
        assert existing == missing
        assert existing.error == CANNOT_ASSIGN
        assert len(_events(store, AuditEventType.PERMISSION_DENIED)) == 2

    def test_unauthenticated(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        target = make_user("target@x.com")
        result = guard.assign_role(None, target, "technician")
        assert result.error == AUTH_REQUIRED
        denied = _events(store, AuditEventType.PERMISSION_DENIED)
        assert len(denied) == 1
        assert denied[0].actor_id == "unknown"

    def test_mutation_failure_audited_as_error(self, catalog: PermissionCatalog) -> None:
        gateway = MagicMock()
        gateway.get_roles_of.return_value = {"owner"}
        gateway.insert_role_assignment.side_effect = RuntimeError("constraint exploded")
        audit = MagicMock()
        guard = RoleAssignmentGuard(RoleResolver(catalog, gateway), gateway, audit)

        result = guard.assign_role(1, 2, "technician")

        assert result.success is False
        assert result.error == UPDATE_FAILED
        audit.record.assert_called_once()
        args, kwargs = audit.record.call_args
        assert args[0] is AuditEventType.ROLE_CHANGE
        assert kwargs["detail"]["status"] == "error"

    def test_audit_failure_does_not_block_result(self, catalog: PermissionCatalog, store: UserStore, make_user) -> None:
        admin = make_user("admin@x.com", "admin")
        target = make_user("tech@x.com")
        broken = MagicMock()
        broken.append_audit_event.side_effect = RuntimeError("audit store down")
        audit = AuditLog(broken)
        guard = RoleAssignmentGuard(RoleResolver(catalog, store), store, audit)
        assert guard.assign_role(admin, target, "technician").success is True
        assert audit.dropped == 1


class TestRemoveRole:
    def test_success(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        admin = make_user("admin@x.com", "admin")
        target = make_user("tech@x.com", "technician")
        result = guard.remove_role(admin, target, "technician")
        assert result.success is True
        assert store.get_roles_of(target) == set()
        changes = _events(store, AuditEventType.ROLE_CHANGE)
        assert len(changes) == 1
        assert changes[0].detail["action"] == "role_removed"

    def test_insufficient_permissions(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        manager = make_user("manager@x.com", "manager")
        target = make_user("tech@x.com", "technician")
        result = guard.remove_role(manager, target, "technician")
        assert result.error == CANNOT_REMOVE
        assert store.get_roles_of(target) == {"technician"}
        assert len(_events(store, AuditEventType.PERMISSION_DENIED)) == 1

    def test_admin_cannot_demote_owner(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        make_user("owner1@x.com", "owner")
        owner2 = make_user("owner2@x.com", "owner")
        admin = make_user("admin@x.com", "admin")
        result = guard.remove_role(admin, owner2, "owner")
        assert result.error == CANNOT_REMOVE
        assert store.get_roles_of(owner2) == {"owner"}

    def test_admin_cannot_demote_developer(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        dev = make_user("dev@x.com", "developer")
        admin = make_user("admin@x.com", "admin")
        result = guard.remove_role(admin, dev, "developer")
        assert result.error == CANNOT_REMOVE
        assert store.get_roles_of(dev) == {"developer"}
        assert _events(store, AuditEventType.PERMISSION_DENIED)[0].detail["reason"] == "escalation_blocked"

    def test_owner_can_demote_developer(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        dev = make_user("dev@x.com", "developer")
        owner = make_user("owner@x.com", "owner")
        assert guard.remove_role(owner, dev, "developer").success is True
        assert store.get_roles_of(dev) == set()

    def test_removing_unheld_top_tier_is_noop(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        owner = make_user("owner@x.com", "owner")
        tech = make_user("tech@x.com", "technician")
        result = guard.remove_role(owner, tech, "owner")
        assert result.success is True
        assert result.detail == {"changed": False}
        assert store.count_role_holders("owner") == 1

    def test_owner_can_demote_another_owner(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        owner1 = make_user("owner1@x.com", "owner")
        owner2 = make_user("owner2@x.com", "owner")
        assert guard.remove_role(owner1, owner2, "owner").success is True
        assert store.count_role_holders("owner") == 1

    def test_last_owner_keeps_role(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        owner = make_user("owner@x.com", "owner")
        result = guard.remove_role(owner, owner, "owner")
        assert result.success is False
        assert result.error == LAST_TOP_TIER
        assert store.get_roles_of(owner) == {"owner"}
        denied = _events(store, AuditEventType.PERMISSION_DENIED)
        assert len(denied) == 1
        assert denied[0].detail["reason"] == "last_holder"
        assert _events(store, AuditEventType.ROLE_CHANGE) == []

    def test_mutual_revocation_race_keeps_an_owner(self, catalog: PermissionCatalog, tmp_path) -> None:
        """Two owners revoke each other at the same moment; one of them must remain."""
        # File-backed so both threads get real SQLite locking instead of shared-cache errors.
        store = UserStore(f"sqlite:///{tmp_path / 'owners.db'}")
        a = _owner(store, "a@x.com")
        b = _owner(store, "b@x.com")
        guard = RoleAssignmentGuard(RoleResolver(catalog, store), store, AuditLog(store))
        barrier = threading.Barrier(2)

        def revoke(actor: int, subject: int):
            barrier.wait(timeout=5)
            return guard.remove_role(actor, subject, "owner")

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(revoke, a, b), pool.submit(revoke, b, a)]
                results = [f.result(timeout=10) for f in futures]

            assert store.count_role_holders("owner") == 1
            assert sum(r.success for r in results) == 1
            assert {r.error for r in results if not r.success} <= {CANNOT_REMOVE, LAST_TOP_TIER}
        finally:
            store.close()


class TestEscalationScenario:
    def test_technician_cannot_mint_owner(self, guard: RoleAssignmentGuard, store: UserStore, make_user) -> None:
        """A technician tries to make a colleague (or themselves) owner."""
        tech = make_user("tech@x.com", "technician")
        colleague = make_user("colleague@x.com", "technician")

        for subject in (colleague, tech):
            result = guard.assign_role(tech, subject, "owner")
            assert result.success is False
            assert result.error == CANNOT_ASSIGN

        assert store.get_roles_of(colleague) == {"technician"}
        assert store.get_roles_of(tech) == {"technician"}
        assert store.count_role_holders("owner") == 0
        assert len(_events(store, AuditEventType.PERMISSION_DENIED)) == 2
        assert _events(store, AuditEventType.ROLE_CHANGE) == []
