"""
auth/service.py -- SecurityService: the one object the rest of the platform
talks to.

It wires the catalog, resolver, throttles, guard, orchestrator and audit log
together and exposes the operations callers need:

    secure_login(email, password, origin=None)   -> LoginResult
    has_permission(principal_id, capability)     -> bool
    get_effective_permissions(principal_id)      -> PermissionSet
    assign_role(actor_id, subject_id, role)      -> RoleChangeResult
    remove_role(actor_id, subject_id, role)      -> RoleChangeResult
    authorize(principal_id, capability, resource=None) -> bool

Failure policy for permission queries:
  GatewayError (store down, timed out) -> False / all-False record. A caller
      that cannot establish permission does not get it.
  CatalogError (unknown capability, stored role missing from the catalog)
      -> propagates. That is a deployment or programming bug, and answering
      "no" would hide it behind what looks like an ordinary denial.

build_security_service() is the composition root used by the FastAPI
lifespan and the CLI; tests construct SecurityService directly with fakes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from auth.audit import AuditLog
from auth.catalog import PermissionCatalog, PermissionSet, load_catalog, normalize_capability
from auth.errors import GatewayError
from auth.guard import RoleAssignmentGuard
from auth.login import LoginSecurityOrchestrator
from auth.models import AuditEventType, LoginResult, RoleChangeResult
from auth.resolver import RoleResolver
from auth.throttle import RateLimiter, SuspiciousActivityDetector

if TYPE_CHECKING:
    from auth.interfaces import CredentialVerifier, PersistenceGateway
    from core.config import Settings

logger = logging.getLogger("opsguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityService:
    def __init__(
        self,
        catalog: PermissionCatalog,
        gateway: PersistenceGateway,
        verifier: CredentialVerifier,
        *,
        limiter: RateLimiter | None = None,
        detector: SuspiciousActivityDetector | None = None,
        persistence_timeout: float | None = None,
        verifier_timeout: float | None = None,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.catalog = catalog
        self.gateway = gateway
        self.limiter = limiter or RateLimiter()
        self.detector = detector or SuspiciousActivityDetector()
        self.audit = AuditLog(gateway, timeout=persistence_timeout, clock=wall_clock)
        self.resolver = RoleResolver(catalog, gateway, timeout=persistence_timeout)
        self.guard = RoleAssignmentGuard(
            self.resolver, gateway, self.audit, timeout=persistence_timeout, clock=wall_clock
        )
        self.login = LoginSecurityOrchestrator(
            self.limiter, self.detector, self.audit, verifier, verifier_timeout=verifier_timeout
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def validate_assignments(self) -> None:
        """Refuse to start if the store holds a role the catalog does not define.

        Raises UnknownRoleError (a CatalogError) naming the offending roles.
        Warns when no principal holds the top-tier role, since then no one
        can grant it through the guard.
        """
        stored = self.gateway.list_assigned_roles()
        self.catalog.validate(stored)
        logger.info("Role catalog covers all %d assigned role name(s)", len(stored))
        top_tier = self.catalog.top_tier_role
        if self.gateway.count_role_holders(top_tier) == 0:
            logger.warning(
                "Nobody holds %r; grant it with: opsguard create-user EMAIL --role %s", top_tier, top_tier
            )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def secure_login(self, email: str, password: str, origin: str | None = None) -> LoginResult:
        return self.login.secure_login(email, password, origin=origin)

    # ------------------------------------------------------------------
    # Permission queries
    # ------------------------------------------------------------------

    def get_effective_permissions(self, principal_id: int) -> PermissionSet:
        try:
            return self.resolver.effective_permissions(principal_id)
        except GatewayError:
            logger.error("Cannot resolve permissions for %s; returning none", principal_id, exc_info=True)
            return PermissionSet()

    def has_permission(self, principal_id: int, capability: str) -> bool:
        """True if the principal's effective record grants `capability`.

        Raises UnknownCapabilityError for a capability name that does not exist.
        """
        capability = normalize_capability(capability)
        try:
            effective = self.resolver.effective_permissions(principal_id)
        except GatewayError:
            logger.error("Cannot resolve permissions for %s; denying %s", principal_id, capability, exc_info=True)
            return False
        return effective.grants(capability)

    def authorize(self, principal_id: int | None, capability: str, resource: Any = None) -> bool:
        """has_permission() that leaves a permission_denied audit event on refusal."""
        capability = normalize_capability(capability)
        allowed = principal_id is not None and self.has_permission(principal_id, capability)
        if not allowed:
            detail: dict[str, Any] = {"capability": capability, "status": "denied"}
            if resource is not None:
                detail["resource"] = str(resource)
            self.audit.record(
                AuditEventType.PERMISSION_DENIED,
                actor_id=principal_id,
                subject=resource,
                detail=detail,
            )
        return allowed

    def governing_role(self, principal_id: int) -> str:
        """Name of the role whose record governs the principal (the default role if none held)."""
        role = self.resolver.governing_role(principal_id)
        return role.name if role is not None else self.catalog.default_role

    # ------------------------------------------------------------------
    # Role changes
    # ------------------------------------------------------------------

    def assign_role(self, actor_id: int | None, subject_id: int, role: str) -> RoleChangeResult:
        return self.guard.assign_role(actor_id, subject_id, role)

    def remove_role(self, actor_id: int | None, subject_id: int, role: str) -> RoleChangeResult:
        return self.guard.remove_role(actor_id, subject_id, role)


def build_security_service(
    settings: Settings,
    gateway: PersistenceGateway,
    verifier: CredentialVerifier,
    *,
    catalog: PermissionCatalog | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> SecurityService:
    """Compose a SecurityService from Settings. Loads the catalog if not given."""
    catalog = catalog or load_catalog(settings.role_catalog_path)
    return SecurityService(
        catalog,
        gateway,
        verifier,
        limiter=RateLimiter(
            max_attempts=settings.login_max_attempts,
            window_minutes=settings.login_window_minutes,
            clock=monotonic,
        ),
        detector=SuspiciousActivityDetector(
            threshold=settings.suspicious_threshold,
            window_minutes=settings.suspicious_window_minutes,
            clock=monotonic,
        ),
        persistence_timeout=settings.persistence_timeout_seconds,
        verifier_timeout=settings.verifier_timeout_seconds,
    )
