"""
Append-only security event log.

Privileged actions (role, override, and platform-owner changes) and
denials on sensitive operations are recorded here with ``success`` and a
``reason``. Rows are only ever inserted; this module exposes no update or
delete path.

Emission is fire-and-forget: each event is written in its own transaction,
so it survives a rollback of the caller's work, and a failing audit store
is logged but never turns into an error for the caller.
"""

import json
import logging
from typing import Any, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from caregate.config import DEFAULT_EVENT_LIMIT, MAX_EVENT_LIMIT
from caregate.database import connect, new_id, now_ms, security_event_from_row
from caregate.models import SecurityEvent

logger = logging.getLogger(__name__)


# ── Actions ──────────────────────────────────────────────────────────

PLATFORM_OWNER_SEED = "PLATFORM_OWNER_SEED"
PLATFORM_OWNER_GRANT_REQUESTED = "PLATFORM_OWNER_GRANT_REQUESTED"
PLATFORM_OWNER_GRANT_CONFIRMED = "PLATFORM_OWNER_GRANT_CONFIRMED"
PLATFORM_OWNER_GRANT_CANCELLED = "PLATFORM_OWNER_GRANT_CANCELLED"
PLATFORM_OWNER_REVOKE = "PLATFORM_OWNER_REVOKE"
ROLE_CHANGE = "ROLE_CHANGE"
MEMBER_CAP_OVERRIDE_CHANGE = "MEMBER_CAP_OVERRIDE_CHANGE"
MEMBER_DEACTIVATED = "MEMBER_DEACTIVATED"
ORG_CAP_OVERRIDE_CHANGE = "ORG_CAP_OVERRIDE_CHANGE"
ORG_MEMBERSHIP_CHANGE = "ORG_MEMBERSHIP_CHANGE"
PRESCRIPTION_STATUS_CHANGE = "PRESCRIPTION_STATUS_CHANGE"


# ── Sinks ────────────────────────────────────────────────────────────

class AuditSink:
    """Write-only destination for security events."""

    def emit(self, event: SecurityEvent) -> None:
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Persist events to the ``security_events`` table, one transaction per event."""

    def __init__(self, engine):
        self.engine = engine

    def emit(self, event: SecurityEvent) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("""
                        INSERT INTO security_events
                            (id, action, actor_id, actor_org_id, target_id, target_type,
                             diff, success, reason, timestamp)
                        VALUES
                            (:id, :action, :actor_id, :actor_org_id, :target_id, :target_type,
                             :diff, :success, :reason, :timestamp)
                    """),
                    {
                        "id": event.id or new_id(),
                        "action": event.action,
                        "actor_id": event.actor_id,
                        "actor_org_id": event.actor_org_id,
                        "target_id": event.target_id,
                        "target_type": event.target_type,
                        "diff": json.dumps(event.diff, sort_keys=True) if event.diff is not None else None,
                        "success": bool(event.success),
                        "reason": event.reason,
                        "timestamp": event.timestamp,
                    },
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to persist security event action=%s actor=%s target=%s",
                event.action, event.actor_id, event.target_id,
            )


class MemoryAuditSink(AuditSink):
    """Keeps events in a list; for tools and tests that run without a store."""

    def __init__(self):
        self.events: List[SecurityEvent] = []

    def emit(self, event: SecurityEvent) -> None:
        self.events.append(event)


# ── Helpers ──────────────────────────────────────────────────────────

def log_security_event(
    engine,
    action: str,
    success: bool,
    actor_id: Optional[str] = None,
    actor_org_id: Optional[str] = None,
    target_id: Optional[str] = None,
    target_type: Optional[str] = None,
    diff: Any = None,
    reason: Optional[str] = None,
    now: Optional[int] = None,
    sink: Optional[AuditSink] = None,
) -> SecurityEvent:
    """Build a security event and hand it to *sink* (the database by default)."""
    event = SecurityEvent(
        id=new_id(),
        action=action,
        success=success,
        timestamp=now if now is not None else now_ms(),
        actor_id=actor_id,
        actor_org_id=actor_org_id,
        target_id=target_id,
        target_type=target_type,
        diff=diff,
        reason=reason,
    )
    level = logging.INFO if success else logging.WARNING
    logger.log(level, "security event %s success=%s actor=%s target=%s reason=%s",
               action, success, actor_id, target_id, reason)
    (sink or DatabaseAuditSink(engine)).emit(event)
    return event


def list_security_events(
    bind,
    limit: int = DEFAULT_EVENT_LIMIT,
    action: Optional[str] = None,
) -> List[SecurityEvent]:
    """Return recent security events, newest first."""
    limit = max(1, min(int(limit), MAX_EVENT_LIMIT))
    sql = "SELECT * FROM security_events"
    params = {"limit": limit}
    if action:
        sql += " WHERE action = :action"
        params["action"] = action
    sql += " ORDER BY timestamp DESC, id DESC LIMIT :limit"
    with connect(bind) as conn:
        rows = conn.execute(text(sql), params).mappings().all()
    return [security_event_from_row(r) for r in rows]
