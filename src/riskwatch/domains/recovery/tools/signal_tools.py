"""MCP tools for behavioral check-ins, risk assessment and pattern analysis.

Check-ins go through the engine: an invalid check-in is rejected (never
clamped) and every accepted one triggers a scheduling pass.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from riskwatch.core.audit.logger import AuditLogger
    from riskwatch.domains.recovery.domain_logic.engine import Engine

logger = logging.getLogger(__name__)


def register_signal_tools(
    mcp: FastMCP,
    engine: Engine,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register check-in and analysis tools on the MCP server."""

    def _log_call(tool: str, start: float, tool_input: Any = None, **kwargs: Any) -> None:
        if audit_logger is not None:
            audit_logger.log_tool_call(
                tool,
                tool_input,
                duration_ms=(time.monotonic() - start) * 1000,
                **kwargs,
            )

    @mcp.tool
    async def record_signal(
        ctx: Context,
        mood: int,
        stress: int,
        sleep_quality: int,
        craving_level: int,
        social_support: int,
        relapse: bool = False,
        notes: str = "",
        timestamp: str = "",
    ) -> str:
        """Record a behavioral check-in and re-plan notifications.

        Args:
            mood: 1 (very low) to 5 (very good).
            stress: 1 (calm) to 5 (overwhelmed).
            sleep_quality: 1 (very poor) to 5 (very good).
            craving_level: 1 (none) to 5 (intense).
            social_support: 1 (isolated) to 5 (well supported).
            relapse: Whether a relapse happened since the last check-in.
            notes: Optional free text (stored encrypted).
            timestamp: ISO 8601 time of the check-in. Defaults to now.
        """
        start = time.monotonic()
        data = {
            "mood": mood,
            "stress": stress,
            "sleep_quality": sleep_quality,
            "craving_level": craving_level,
            "social_support": social_support,
            "relapse": relapse,
            "notes": notes,
            "timestamp": timestamp,
        }
        report = engine.ingest_signal(data)
        if report is None:
            _log_call("record_signal", start, data, status="failure", error_type="InvalidSignalError")
            return json.dumps({
                "status": "rejected",
                "error": "Check-in rejected: every rating must be an integer from 1 to 5 "
                         "and the timestamp must be ISO 8601.",
            })

        _log_call("record_signal", start, data, metadata={"level": report.assessment.level if report.assessment else None})
        return json.dumps({
            "status": "saved",
            "pass": report.as_dict(),
        }, indent=2)

    @mcp.tool
    async def assess_risk(ctx: Context) -> str:
        """Assess current relapse risk from the most recent check-in.

        Returns the risk level (low/medium/high/critical), a 0-100 score, the
        contributing factors and, for critical risk, escalation resources.
        """
        start = time.monotonic()
        evaluation = engine.evaluate()
        if evaluation is None:
            _log_call("assess_risk", start, metadata={"result": "no_signals"})
            return json.dumps({
                "status": "no_signals",
                "message": "No check-ins in the lookback window. Record one with record_signal.",
            })

        _log_call("assess_risk", start, metadata={"level": evaluation.assessment.level})
        return json.dumps({
            "status": "ok",
            "assessed_at": evaluation.latest.timestamp.isoformat(),
            "sample_size": evaluation.sample_size,
            "insufficient_history": evaluation.analysis.insufficient_data,
            **evaluation.assessment.as_dict(),
        }, indent=2)

    @mcp.tool
    async def analyze_patterns(ctx: Context) -> str:
        """Find recurring high-risk times of day, emotional triggers and the current streak.

        With fewer than 5 check-ins the result is marked insufficient_data;
        that is not the same as "no risk".
        """
        start = time.monotonic()
        history = engine.history()
        analysis = engine.analyzer.analyze(history)
        _log_call("analyze_patterns", start, metadata={"sample_size": len(history)})
        return json.dumps(analysis.as_dict(), indent=2)
