"""
auth/interfaces.py -- Shapes of the two external collaborators.

The core never imports a concrete store or verifier. It is handed objects
that satisfy these protocols; auth/store.py (UserStore) and auth/tokens.py
(PasswordVerifier) are the bundled implementations, and tests substitute
MagicMocks or small fakes.
"""

from __future__ import annotations

from typing import Protocol

from auth.models import AuditEvent, RoleAssignment, VerificationResult


class CredentialVerifier(Protocol):
    def verify(self, email: str, password: str) -> VerificationResult: ...


class PersistenceGateway(Protocol):
    def principal_exists(self, principal_id: int) -> bool: ...

    def get_roles_of(self, principal_id: int) -> set[str]: ...

    def insert_role_assignment(self, assignment: RoleAssignment) -> bool: ...

    def delete_role_assignment(self, principal_id: int, role: str) -> bool: ...

    def delete_role_assignment_unless_last(self, principal_id: int, role: str) -> bool: ...

    def count_role_holders(self, role: str) -> int: ...

    def list_assigned_roles(self) -> set[str]: ...

    def append_audit_event(self, event: AuditEvent) -> int: ...
