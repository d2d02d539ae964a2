"""
api/routes/v1/auth.py -- Login, logout and "who am I" endpoints.

Routes:
  POST /api/v1/auth/login    -- password login; sets JWT cookie
  POST /api/v1/auth/logout   -- clears cookie; 200
  GET  /api/v1/auth/me       -- identity, roles and effective permissions (requires auth)

Security:
  Login goes through SecurityService.secure_login(), which throttles per
  email, may demand a challenge, verifies with timing equalization and audits
  every attempt. Never call the verifier from here directly.
  Responses reveal only: success, generic failure, too many attempts (429 +
  Retry-After) or challenge required (401 + requires_challenge).
  Cache-Control: no-store on every login response.
"""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import LoginRequest, LoginResponse, MeResponse
from auth.dependencies import get_current_user
from auth.models import LoginStatus, User
from auth.service import SecurityService
from auth.store import normalize_email
from auth.tokens import create_access_token, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:      requires auth (get_current_user)
router = APIRouter()


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, **extra}},
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Sync def on purpose: secure_login() blocks on bcrypt and the store, so
    FastAPI runs it in the threadpool instead of on the event loop.
    """
    security: SecurityService = request.app.state.security
    origin = request.client.host if request.client else None
    result = security.secure_login(body.email, body.password, origin=origin)

    if result.status is LoginStatus.RATE_LIMITED:
        resp = _error(429, "rate_limited", result.error)
        resp.headers["Retry-After"] = str(max(1, math.ceil(result.retry_after or 0)))
        return resp
    if result.requires_challenge:
        return _error(401, "challenge_required", result.error, requires_challenge=True)
    if not result.success:
        return _error(401, "bad_credentials", result.error)

    email = normalize_email(body.email)
    expires_in = get_settings().token_expire_seconds
    token = create_access_token(result.principal_id, email)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            user_id=result.principal_id,
            email=email,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity, held roles and the effective permission record.

    Permissions are computed from the grants as they stand now, not from
    anything carried in the token.
    """
    security: SecurityService = request.app.state.security
    held = sorted(r.name for r in security.resolver.roles_of(current_user.id))
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        roles=held,
        governing_role=security.governing_role(current_user.id),
        permissions=security.get_effective_permissions(current_user.id).as_dict(),
    )
