"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and
capability checks.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /api/v1/auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a User object after verification. The token only says who
the caller is; what they may do is recomputed from their current role grants
on every request via app.state.security.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_capability(cap) builds a dependency that also raises HTTP 403 when
the caller's effective permissions lack `cap`.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.catalog import normalize_capability
from auth.models import User
from auth.tokens import decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer token.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    user_store = request.app.state.user_store

    # 1. Cookie
    token: str | None = request.cookies.get("access_token")

    # 2. Authorization: Bearer header
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    user = user_store.get_by_id(payload["user_id"])
    if user and user.is_active:
        return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_capability(capability: str) -> Callable[[Request], User]:
    """Dependency factory: authenticated AND effective permissions grant `capability`.

    The capability name is checked when the route module is imported, so a
    typo fails at startup instead of on the first request.

    Use as a FastAPI dependency:
        @router.get("/audit-events")
        async def route(user: User = Depends(require_capability("can_manage_settings"))): ...
    """
    capability = normalize_capability(capability)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        security = request.app.state.security
        if not security.authorize(user.id, capability, resource=request.url.path):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have permission to do that."},
            )
        return user

    return dependency
