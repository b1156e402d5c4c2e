"""Audit logger — durable trail of scheduling decisions and data events.

Every terminal notification state (dispatched, cancelled), every reschedule,
every rejected signal and every recorded outcome is written to the
``audit_log`` table, so that no scheduled notification ever disappears
silently. The trail holds no behavioral data:

* ``input_hash`` — SHA-256 of canonical JSON (no raw ratings or notes).
* ``subject_id`` — the notification / signal / recommendation ID.
* ``metadata``   — small non-sensitive context (status, category, reason).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from riskwatch.core.storage.database import RecoveryDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON, or empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'notification_transition' | 'signal_rejected' | ...
    component: str = ""                  # 'scheduler' | 'engine' | 'feedback' | tool name
    subject_id: str | None = None
    input_hash: str = ""
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately so no entry is lost on crash.

    Usage::

        audit = AuditLogger(recovery_db)
        audit.log_transition(entry, "pending", "dispatched")
    """

    def __init__(self, database: RecoveryDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, component, subject_id, input_hash,
                    status, error_type, duration_ms, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.component or None,
                    event.subject_id,
                    event.input_hash or None,
                    event.status,
                    event.error_type,
                    event.duration_ms,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event %s", event.action)
            return ""

        return event_id

    def log_transition(
        self,
        notification_id: str,
        from_status: str,
        to_status: str,
        *,
        category: str = "",
        reason: str | None = None,
        dispatch_at: datetime | None = None,
        failed: bool = False,
    ) -> str:
        """Record a ledger state transition (pending -> dispatched, etc.)."""
        metadata: dict[str, Any] = {
            "from": from_status,
            "to": to_status,
            "category": category,
        }
        if reason:
            metadata["reason"] = reason
        if dispatch_at is not None:
            metadata["dispatch_at"] = dispatch_at.isoformat()
        return self.log_event(AuditEvent(
            action="notification_transition",
            component="scheduler",
            subject_id=notification_id,
            status="failure" if failed else "success",
            metadata=metadata,
        ))

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record an MCP tool invocation (input hashed, never stored raw)."""
        return self.log_event(AuditEvent(
            action="tool_invocation",
            component=tool_name,
            input_hash=_hash_input(tool_input) if tool_input else "",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_signal_rejected(self, reason: str, signal_input: Any = None) -> str:
        return self.log_event(AuditEvent(
            action="signal_rejected",
            component="engine",
            input_hash=_hash_input(signal_input) if signal_input is not None else "",
            status="failure",
            error_type="InvalidSignalError",
            metadata={"reason": reason},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        subject_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if subject_id:
            conditions.append("subject_id = ?")
            params.append(subject_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            raw = event.pop("metadata_json", None)
            event["metadata"] = json.loads(raw) if raw else {}
            events.append(event)
        return events

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally filtered by action and lower time bound."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
