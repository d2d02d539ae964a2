"""
auth/errors.py -- Exception taxonomy for the authorization core.

Only two families are exceptions. Policy denials (rate limited, insufficient
permission, escalation blocked) are ordinary outcomes and travel as declined
result objects, never as raised errors.

  CatalogError   -- configuration/programming errors. Fatal at startup and
                    never swallowed by permission queries.
  GatewayError   -- a collaborator (store, credential verifier) failed or
                    timed out. Callers treat it as denial for the current
                    request; a new request may retry.
"""

from __future__ import annotations


class CatalogError(ValueError):
    """The role catalog is malformed or does not cover a referenced role."""


class UnknownRoleError(CatalogError):
    def __init__(self, names) -> None:
        self.names = sorted(set(names))
        super().__init__(f"Role(s) not present in the role catalog: {', '.join(self.names)}")


class UnknownCapabilityError(CatalogError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown capability: {name!r}")


class GatewayError(Exception):
    """An external collaborator call failed."""


class GatewayTimeout(GatewayError):
    """An external collaborator call did not finish within its time budget."""
