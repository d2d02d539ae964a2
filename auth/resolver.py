"""
auth/resolver.py -- Held roles -> effective permission record.

Policy: the single highest-ranked held role governs. Its permission record
is returned as-is; lower-ranked roles contribute nothing. A principal moved
from "parts_manager" up to "manager" without the old grant being revoked
therefore gets exactly manager's record, not manager plus leftovers.

The choice lives in select_governing_role() so it is visible at one place
and can be swapped by passing a different `policy` to RoleResolver. Rank
ties go to the lexically smallest role name so the answer never depends on
set iteration order.

A principal with no roles gets the catalog's default role record.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from auth.bounded import run_bounded
from auth.catalog import PermissionCatalog, PermissionSet, RoleDefinition
from auth.errors import GatewayError

if TYPE_CHECKING:
    from auth.interfaces import PersistenceGateway

GoverningPolicy = Callable[[Iterable[RoleDefinition]], RoleDefinition | None]


def select_governing_role(roles: Iterable[RoleDefinition]) -> RoleDefinition | None:
    """Highest rank wins; ties go to the lexically smallest name. None if no roles."""
    return min(roles, key=lambda r: (-r.rank, r.name), default=None)


class RoleResolver:
    def __init__(
        self,
        catalog: PermissionCatalog,
        gateway: PersistenceGateway,
        *,
        timeout: float | None = None,
        policy: GoverningPolicy = select_governing_role,
    ) -> None:
        self.catalog = catalog
        self._gateway = gateway
        self._timeout = timeout
        self._policy = policy

    def roles_of(self, principal_id: int) -> frozenset[RoleDefinition]:
        """Roles currently held by the principal.

        Raises GatewayError if the store cannot answer and UnknownRoleError if
        it returns a role the catalog does not define.
        """
        try:
            names = run_bounded(self._gateway.get_roles_of, self._timeout, principal_id)
        except GatewayError:
            raise
        except Exception as exc:
            raise GatewayError(f"Role lookup failed for principal {principal_id}") from exc
        self.catalog.validate(names)
        return frozenset(self.catalog.get(n) for n in names)

    def governing_role(self, principal_id: int) -> RoleDefinition | None:
        return self.select(self.roles_of(principal_id))

    def select(self, roles: Iterable[RoleDefinition]) -> RoleDefinition | None:
        """Apply the governing-role policy to an explicit set of roles."""
        return self._policy(roles)

    def effective_permissions(self, principal_id: int) -> PermissionSet:
        return self._permissions_of(self.roles_of(principal_id))

    def permissions_for(self, role_names: Iterable[str]) -> PermissionSet:
        """Effective permissions for an explicit set of role names (no store access)."""
        names = list(role_names)
        self.catalog.validate(names)
        return self._permissions_of(self.catalog.get(n) for n in names)

    def _permissions_of(self, roles: Iterable[RoleDefinition]) -> PermissionSet:
        governing = self.select(roles)
        if governing is None:
            return self.catalog.permissions(self.catalog.default_role)
        return governing.permissions
