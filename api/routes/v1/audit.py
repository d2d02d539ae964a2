"""
api/routes/v1/audit.py -- Read-only view of the security audit trail.

Routes:
  GET /api/v1/audit-events   -- newest first, filterable (can_manage_settings)

There is no write, update or delete route: events are appended only by the
core itself (AuditLog).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEventResponse
from auth.dependencies import require_capability
from auth.models import AuditEventType, User
from auth.store import UserStore

router = APIRouter()


@router.get("/audit-events", response_model=list[AuditEventResponse])
def list_audit_events(
    request: Request,
    event_type: Optional[AuditEventType] = None,
    actor_id: Optional[str] = None,
    subject: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(require_capability("can_manage_settings")),
) -> list[AuditEventResponse]:
    user_store: UserStore = request.app.state.user_store
    events = user_store.list_audit_events(
        event_type=event_type.value if event_type else None,
        actor_id=actor_id,
        subject=subject,
        limit=limit,
        offset=offset,
    )
    return [
        AuditEventResponse(
            id=e.id,
            event_type=e.event_type.value,
            actor_id=e.actor_id,
            subject=e.subject,
            detail=e.detail,
            created_at=e.created_at.isoformat(),
        )
        for e in events
    ]
