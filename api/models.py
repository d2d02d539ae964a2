"""
API request and response models for OpsGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password max_length stays under bcrypt's 72-byte input limit.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class RoleGrantRequest(BaseModel):
    """Request body for POST /api/v1/users/{user_id}/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user_id: int
    email: str


class MeResponse(BaseModel):
    """GET /api/v1/auth/me: identity plus permissions as they stand right now."""

    user_id: int
    email: str
    roles: list[str]
    governing_role: str
    permissions: dict[str, bool]


class RoleChangeResponse(BaseModel):
    user_id: int
    role: str
    changed: bool
    roles: list[str]


class AuditEventResponse(BaseModel):
    id: int
    event_type: str
    actor_id: str
    subject: Optional[str] = None
    detail: dict[str, Any]
    created_at: str


class HealthResponse(BaseModel):
    """GET /api/v1/health.

    components maps each dependency to "ok" or "error"; status is
    "degraded" whenever any component is not "ok".
    """

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error body returned by every exception handler."""

    error: ErrorDetail
