"""MCP tools for the notification ledger and notification preferences."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from riskwatch.core.storage.models import ACTIVE_STATUSES, ScheduledNotification

if TYPE_CHECKING:
    from riskwatch.core.audit.logger import AuditLogger
    from riskwatch.domains.recovery.connectors.providers import RepositoryPreferencesProvider
    from riskwatch.domains.recovery.domain_logic.engine import Engine

logger = logging.getLogger(__name__)

_STATUS_FILTERS = {
    "active": ACTIVE_STATUSES,
    "pending": ("pending",),
    "rescheduled": ("rescheduled",),
    "dispatched": ("dispatched",),
    "cancelled": ("cancelled",),
    "all": None,
}


def _notification_view(entry: ScheduledNotification) -> dict[str, Any]:
    return {
        "id": entry.id,
        "category": entry.category,
        "kind": entry.kind,
        "title": entry.payload.get("title", ""),
        "priority": entry.priority,
        "status": entry.status,
        "dispatch_at": entry.dispatch_at.isoformat(),
        "requested_at": entry.requested_at.isoformat(),
        "attempts": entry.attempts,
        "last_error": entry.last_error,
    }


def register_notification_tools(
    mcp: FastMCP,
    engine: Engine,
    preferences: RepositoryPreferencesProvider,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register scheduling, ledger and preference tools on the MCP server."""

    def _log_call(tool: str, start: float, tool_input: Any = None, **kwargs: Any) -> None:
        if audit_logger is not None:
            audit_logger.log_tool_call(
                tool,
                tool_input,
                duration_ms=(time.monotonic() - start) * 1000,
                **kwargs,
            )

    @mcp.tool
    async def run_scheduling_pass(ctx: Context) -> str:
        """Re-evaluate risk now and bring scheduled notifications up to date.

        Safe to call repeatedly: a repeated pass with no new check-ins
        schedules nothing new.
        """
        start = time.monotonic()
        report = engine.run_scheduling_pass()
        _log_call("run_scheduling_pass", start, metadata={"scheduled": len(report.scheduled)})
        return json.dumps(report.as_dict(), indent=2)

    @mcp.tool
    async def dispatch_due_notifications(ctx: Context) -> str:
        """Deliver every notification that is due now."""
        start = time.monotonic()
        report = await engine.dispatch_due()
        _log_call("dispatch_due_notifications", start, metadata={"dispatched": len(report.dispatched)})
        return json.dumps({"status": "ok", **report.as_dict()}, indent=2)

    @mcp.tool
    async def list_notifications(
        ctx: Context,
        status: str = "active",
        category: str = "",
        limit: int = 50,
    ) -> str:
        """List scheduled notifications, earliest dispatch first.

        Args:
            status: active, pending, rescheduled, dispatched, cancelled or all.
            category: Only this category (e.g. 'breathing'). Empty for all.
            limit: Maximum number of entries (default: 50).
        """
        start = time.monotonic()
        if status not in _STATUS_FILTERS:
            return json.dumps({
                "status": "error",
                "error": f"Unknown status filter {status!r}; use one of {', '.join(_STATUS_FILTERS)}",
            })
        entries = engine.repository.list_notifications(
            statuses=_STATUS_FILTERS[status],
            category=category or None,
            limit=limit,
        )
        summary = engine.repository.count_by_status()
        _log_call("list_notifications", start, metadata={"count": len(entries)})
        return json.dumps({
            "status": "ok",
            "counts": summary.counts,
            "active": summary.active,
            "notifications": [_notification_view(e) for e in entries],
        }, indent=2)

    @mcp.tool
    async def dismiss_notification(ctx: Context, notification_id: str) -> str:
        """Cancel a scheduled notification you do not want.

        Args:
            notification_id: ID from list_notifications.
        """
        start = time.monotonic()
        entry = engine.dismiss(notification_id)
        if entry is None:
            _log_call("dismiss_notification", start, status="failure", error_type="NotFound")
            return json.dumps({"status": "not_found", "notification_id": notification_id})
        _log_call("dismiss_notification", start)
        return json.dumps({"status": entry.status, "notification": _notification_view(entry)})

    @mcp.tool
    async def get_preferences(ctx: Context) -> str:
        """Show quiet hours, notification frequency and category toggles."""
        start = time.monotonic()
        prefs = preferences.get()
        _log_call("get_preferences", start)
        return json.dumps(prefs.as_dict(), indent=2)

    @mcp.tool
    async def update_preferences(
        ctx: Context,
        quiet_start: str | None = None,
        quiet_end: str | None = None,
        frequency: str | None = None,
        category_toggles: dict[str, bool] | None = None,
    ) -> str:
        """Change notification preferences.

        Disabling a category cancels its scheduled notifications right away.

        Args:
            quiet_start: Start of quiet hours, 'HH:MM'.
            quiet_end: End of quiet hours, 'HH:MM' (may be earlier than start).
            frequency: minimal (12h apart), normal (6h) or frequent (2h).
            category_toggles: e.g. {"social": false} to stop social suggestions.
                System messages toggle the same way: "checkin", "preventive",
                "intervention", "milestone".
        """
        start = time.monotonic()
        try:
            prefs = preferences.update(
                quiet_start=quiet_start,
                quiet_end=quiet_end,
                frequency=frequency,
                category_toggles=category_toggles,
            )
        except ValueError as exc:
            _log_call("update_preferences", start, status="failure", error_type="ValueError")
            return json.dumps({"status": "error", "error": str(exc)})

        cancelled = engine.scheduler.cancel_disabled_categories(prefs)
        _log_call("update_preferences", start, metadata={"cancelled": len(cancelled)})
        return json.dumps({
            "status": "updated",
            "preferences": prefs.as_dict(),
            "cancelled_notifications": [e.id for e in cancelled],
        }, indent=2)
