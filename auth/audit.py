"""
auth/audit.py -- Append-only audit trail of security decisions.

AuditLog.record() is best-effort relative to the decision it describes: a
failed write is logged at ERROR and counted in `dropped`, and the caller
still gets its login or role-change answer. The counter is what the
surrounding operational layer alerts on.

Timestamps are stamped here, at call time, from the logger's own clock.
Callers cannot pass one, so a caller cannot backdate or reorder the trail.
The detail mapping is copied before it is stored so later mutation by the
caller does not leak into the record.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from auth.bounded import run_bounded
from auth.models import UNKNOWN_ACTOR, AuditEvent, AuditEventType

if TYPE_CHECKING:
    from auth.interfaces import PersistenceGateway

logger = logging.getLogger("opsguard.audit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        timeout: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._timeout = timeout
        self._clock = clock
        self._dropped = 0
        self._lock = threading.Lock()

    @property
    def dropped(self) -> int:
        """Number of audit writes lost since start-up."""
        with self._lock:
            return self._dropped

    def record(
        self,
        event_type: AuditEventType | str,
        *,
        actor_id: Any = None,
        subject: Any = None,
        detail: Mapping[str, Any] | None = None,
    ) -> AuditEvent | None:
        """Append one event. Returns the stored event, or None if the write was dropped.

        Never raises.
        """
        try:
            event = AuditEvent(
                event_type=AuditEventType(event_type),
                actor_id=UNKNOWN_ACTOR if actor_id is None else str(actor_id),
                subject=None if subject is None else str(subject),
                detail=dict(detail or {}),
                created_at=self._clock(),
            )
            event_id = run_bounded(self._gateway.append_audit_event, self._timeout, event)
        except Exception:
            with self._lock:
                self._dropped += 1
            logger.error(
                "Audit write dropped (type=%s actor=%s subject=%s)",
                getattr(event_type, "value", event_type),
                actor_id,
                subject,
                exc_info=True,
            )
            return None
        logger.info(
            "audit %s actor=%s subject=%s status=%s",
            event.event_type.value,
            event.actor_id,
            event.subject,
            event.detail.get("status", "-"),
        )
        return replace(event, id=event_id)
