"""MCP tools for viewing the audit trail.

The audit log holds no behavioral data: tool inputs are referenced by hash
only, and notification transitions carry status, category and reason.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from riskwatch.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 7,
        action: str = "",
    ) -> str:
        """View recent audit events: tool calls, notification transitions, rejections.

        Args:
            days: Number of days to look back (default: 7).
            action: Only this action, e.g. 'notification_transition',
                'signal_rejected', 'scheduling_conflict', 'outcome_recorded'.
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        total_events = audit_logger.count_events(action=action or None, since=since)
        transitions = audit_logger.count_events(action="notification_transition", since=since)
        rejected = audit_logger.count_events(action="signal_rejected", since=since)
        recent_events = audit_logger.get_events(action=action or None, since=since, limit=20)

        display_events = [
            {
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "component": event.get("component"),
                "subject_id": event.get("subject_id"),
                "status": event.get("status"),
                "error_type": event.get("error_type"),
                "metadata": event.get("metadata", {}),
            }
            for event in recent_events
        ]

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": total_events,
            "notification_transitions": transitions,
            "rejected_signals": rejected,
            "recent_events": display_events,
        }, indent=2)
