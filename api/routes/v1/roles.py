"""
api/routes/v1/roles.py -- Grant and revoke roles.

Routes:
  GET    /api/v1/roles                       -- catalog: role names, ranks, permissions (requires auth)
  GET    /api/v1/users/{user_id}/roles       -- roles held by a user (can_view_users)
  POST   /api/v1/users/{user_id}/roles       -- grant a role (guarded)
  DELETE /api/v1/users/{user_id}/roles/{role} -- revoke a role (guarded)

Grant and revoke only require authentication here. Whether the caller may
touch that particular role, and whether the target user exists, is the
RoleAssignmentGuard's decision, made and audited inside
SecurityService.assign_role() / remove_role(); this module only maps its
declined results onto HTTP status codes. The user lookup happens after the
permission check, so a caller who may not change roles gets the same 403
for every user id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import RoleChangeResponse, RoleGrantRequest
from auth.dependencies import get_current_user, require_capability
from auth.guard import (
    AUTH_REQUIRED,
    CANNOT_ASSIGN,
    CANNOT_REMOVE,
    INVALID_ROLE,
    LAST_TOP_TIER,
    SUBJECT_NOT_FOUND,
    UPDATE_FAILED,
)
from auth.models import RoleChangeResult, User
from auth.service import SecurityService
from auth.store import UserStore

router = APIRouter()

# Declined guard result -> (HTTP status, error code)
_DECLINE_STATUS: dict[str, tuple[int, str]] = {
    AUTH_REQUIRED: (401, "unauthorized"),
    INVALID_ROLE: (400, "invalid_role"),
    CANNOT_ASSIGN: (403, "forbidden"),
    CANNOT_REMOVE: (403, "forbidden"),
    SUBJECT_NOT_FOUND: (404, "not_found"),
    LAST_TOP_TIER: (409, "last_holder"),
    UPDATE_FAILED: (503, "update_failed"),
}


@router.get("/roles")
def list_roles(request: Request, current_user: User = Depends(get_current_user)) -> list[dict]:
    """Catalog roles from most to least privileged."""
    catalog = request.app.state.security.catalog
    return [
        {"name": name, "rank": catalog.rank(name), "permissions": catalog.permissions(name).granted()}
        for name in catalog.names()
    ]


@router.get("/users/{user_id}/roles")
def list_user_roles(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_capability("can_view_users")),
) -> list[str]:
    _require_user(request, user_id)
    security: SecurityService = request.app.state.security
    return sorted(r.name for r in security.resolver.roles_of(user_id))


@router.post("/users/{user_id}/roles", response_model=RoleChangeResponse)
def grant_role(
    request: Request,
    user_id: int,
    body: RoleGrantRequest,
    current_user: User = Depends(get_current_user),
) -> RoleChangeResponse:
    security: SecurityService = request.app.state.security
    result = security.assign_role(current_user.id, user_id, body.role)
    return _to_response(request, result, user_id, body.role)


@router.delete("/users/{user_id}/roles/{role}", response_model=RoleChangeResponse)
def revoke_role(
    request: Request,
    user_id: int,
    role: str,
    current_user: User = Depends(get_current_user),
) -> RoleChangeResponse:
    security: SecurityService = request.app.state.security
    result = security.remove_role(current_user.id, user_id, role)
    return _to_response(request, result, user_id, role)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_user(request: Request, user_id: int) -> None:
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_id(user_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )


def _to_response(request: Request, result: RoleChangeResult, user_id: int, role: str) -> RoleChangeResponse:
    if not result.success:
        status_code, code = _DECLINE_STATUS.get(result.error, (400, "declined"))
        raise HTTPException(status_code=status_code, detail={"code": code, "message": result.error})
    user_store: UserStore = request.app.state.user_store
    return RoleChangeResponse(
        user_id=user_id,
        role=role,
        changed=result.detail.get("changed", False),
        roles=sorted(user_store.get_roles_of(user_id)),
    )
