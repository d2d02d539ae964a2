"""
auth/tokens.py -- Password hashing, the bundled credential verifier, and JWT
session tokens.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Bcrypt's cost factor
       makes offline brute force expensive. _DUMMY_HASH enables timing
       equalization in PasswordVerifier.verify() so response time does not
       reveal whether an email is registered.

  Verifier: PasswordVerifier is the CredentialVerifier the login
       orchestrator calls. It answers with a principal id or an error
       category; the category goes to the audit trail only, never to the
       caller.

  JWT: python-jose with HS256. Tokens carry identity (user_id, email) and
       expiry, never roles or permissions -- those are recomputed from the
       store on every request so a revocation takes effect immediately.
       decode_access_token() returns None on any failure.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import VerificationResult
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("opsguard.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

INVALID_CREDENTIALS = "invalid_credentials"
INACTIVE_ACCOUNT = "inactive_account"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    length well below that (Pydantic max_length).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input.
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("opsguard_timing_dummy")


# ---------------------------------------------------------------------------
# Credential verifier
# ---------------------------------------------------------------------------


class PasswordVerifier:
    """Checks email/password pairs against UserStore with timing equalization.

    Always runs bcrypt whether or not the email exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)
    """

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def verify(self, email: str, password: str) -> VerificationResult:
        user = self._store.get_by_email(email)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return early before running bcrypt.
            verify_password(password, _DUMMY_HASH)
            return VerificationResult(error_category=INVALID_CREDENTIALS)
        if not verify_password(password, user.hashed_password):
            return VerificationResult(error_category=INVALID_CREDENTIALS)
        if not user.is_active:
            return VerificationResult(error_category=INACTIVE_ACCOUNT)
        self._store.update_last_login(user.id)
        return VerificationResult(principal_id=user.id)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, email: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity and expiry.

    expire_seconds=0 uses Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "user_id": user_id,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
