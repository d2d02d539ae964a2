"""
auth/login.py -- Login decision pipeline.

One attempt walks this state machine:

    Start -> RateLimited                      (terminal, audited "rate_limited")
          -> SuspicionFlagged                 (terminal, audited suspicious_activity)
          -> CredentialCheck -> Success       (limiter reset, audited "success")
                             -> CredentialFailure  (audited "failed")
    any unexpected error or verifier timeout  (audited "error")

The first three steps run under the email's throttle lock and touch only
in-memory state, so a slow or dead database can never let an attempt past
the limiter: the worst an outage does is deny logins. Once the attempt is
recorded it stays recorded, whatever happens afterwards.

The caller learns only success, a generic failure, "too many attempts" or
"challenge required". Which check failed and whether the email exists stay
in the audit trail.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from auth.bounded import run_bounded
from auth.errors import GatewayError
from auth.models import AuditEventType, LoginResult, LoginStatus
from auth.throttle import normalize_key

if TYPE_CHECKING:
    from auth.audit import AuditLog
    from auth.interfaces import CredentialVerifier
    from auth.throttle import RateLimiter, SuspiciousActivityDetector

logger = logging.getLogger("opsguard.auth")

TOO_MANY_ATTEMPTS = "Too many login attempts. Please try again later."
CHALLENGE_REQUIRED = "Additional verification required."
INVALID_CREDENTIALS = "Invalid email or password."
LOGIN_UNAVAILABLE = "Unable to sign in right now. Please try again."


class LoginSecurityOrchestrator:
    def __init__(
        self,
        limiter: RateLimiter,
        detector: SuspiciousActivityDetector,
        audit: AuditLog,
        verifier: CredentialVerifier,
        *,
        verifier_timeout: float | None = None,
    ) -> None:
        self._limiter = limiter
        self._detector = detector
        self._audit = audit
        self._verifier = verifier
        self._verifier_timeout = verifier_timeout

    def secure_login(self, email: str, password: str, origin: str | None = None) -> LoginResult:
        key = normalize_key(email or "")
        context: dict[str, Any] = {"origin": origin} if origin else {}
        try:
            return self._attempt(key, password, context)
        except Exception:
            logger.exception("Unexpected error in login pipeline for %s", key)
            self._audit_login(key, LoginStatus.ERROR, context, error_category="internal")
            return LoginResult(success=False, status=LoginStatus.ERROR, error=LOGIN_UNAVAILABLE)

    def _attempt(self, key: str, password: str, context: dict[str, Any]) -> LoginResult:
        retry_after = None
        with self._limiter.hold(key):
            if not self._limiter.allow(key):
                retry_after = self._limiter.retry_after(key)
                gate = LoginStatus.RATE_LIMITED
            elif self._detector.is_suspicious(key):
                gate = LoginStatus.CHALLENGE
            else:
                self._limiter.record(key)
                self._detector.observe(key)
                gate = None

        if gate is LoginStatus.RATE_LIMITED:
            logger.warning("Login rate limited for %s", key)
            self._audit_login(key, LoginStatus.RATE_LIMITED, context)
            return LoginResult(
                success=False,
                status=LoginStatus.RATE_LIMITED,
                error=TOO_MANY_ATTEMPTS,
                retry_after=retry_after,
            )
        if gate is LoginStatus.CHALLENGE:
            logger.warning("Suspicious login burst for %s; challenge required", key)
            self._audit.record(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                subject=key,
                detail={"status": LoginStatus.CHALLENGE.value, "reason": "attempt_burst", **context},
            )
            return LoginResult(
                success=False,
                status=LoginStatus.CHALLENGE,
                error=CHALLENGE_REQUIRED,
                requires_challenge=True,
            )

        try:
            result = run_bounded(self._verifier.verify, self._verifier_timeout, key, password)
        except GatewayError:
            logger.error("Credential verifier unavailable for %s", key, exc_info=True)
            self._audit_login(key, LoginStatus.ERROR, context, error_category="verifier_unavailable")
            return LoginResult(success=False, status=LoginStatus.ERROR, error=LOGIN_UNAVAILABLE)

        if not result.ok:
            logger.info("Login failed for %s (%s)", key, result.error_category)
            self._audit_login(key, LoginStatus.FAILED, context, error_category=result.error_category or "unknown")
            return LoginResult(success=False, status=LoginStatus.FAILED, error=INVALID_CREDENTIALS)

        self._limiter.reset(key)
        self._detector.clear(key)
        self._audit_login(key, LoginStatus.SUCCESS, context, actor_id=result.principal_id)
        return LoginResult(success=True, status=LoginStatus.SUCCESS, principal_id=result.principal_id)

    def _audit_login(
        self,
        key: str,
        status: LoginStatus,
        context: dict[str, Any],
        *,
        actor_id: int | None = None,
        error_category: str | None = None,
    ) -> None:
        detail: dict[str, Any] = {"status": status.value, **context}
        if error_category:
            detail["error_category"] = error_category
        self._audit.record(AuditEventType.LOGIN_ATTEMPT, actor_id=actor_id, subject=key, detail=detail)
