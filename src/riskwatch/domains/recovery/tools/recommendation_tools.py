"""MCP tools for ranked recommendations and outcome feedback."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from riskwatch.core.storage.models import OutcomeRecord

if TYPE_CHECKING:
    from riskwatch.core.audit.logger import AuditLogger
    from riskwatch.domains.recovery.domain_logic.engine import Engine

logger = logging.getLogger(__name__)


def register_recommendation_tools(
    mcp: FastMCP,
    engine: Engine,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register recommendation and feedback tools on the MCP server."""

    def _log_call(tool: str, start: float, tool_input: Any = None, **kwargs: Any) -> None:
        if audit_logger is not None:
            audit_logger.log_tool_call(
                tool,
                tool_input,
                duration_ms=(time.monotonic() - start) * 1000,
                **kwargs,
            )

    @mcp.tool
    async def get_recommendations(
        ctx: Context,
        available_minutes: int | None = None,
        limit: int = 5,
    ) -> str:
        """Get interventions ranked for how you are doing right now.

        Args:
            available_minutes: How much time you have. Defaults to the server setting.
            limit: Maximum number of recommendations (default: 5).
        """
        start = time.monotonic()
        now = engine.clock()
        evaluation = engine.evaluate(now)
        if evaluation is None:
            _log_call("get_recommendations", start, metadata={"result": "no_signals"})
            return json.dumps({
                "status": "no_signals",
                "message": "No check-ins yet. Record one with record_signal first.",
            })

        recs = engine.recommend(
            evaluation, now, available_minutes=available_minutes, limit=max(1, limit)
        )
        _log_call("get_recommendations", start, metadata={"count": len(recs)})
        return json.dumps({
            "status": "ok",
            "risk_level": evaluation.assessment.level,
            "recommendations": [
                {**r.to_payload(), "score": round(r.score, 4)} for r in recs
            ],
        }, indent=2)

    @mcp.tool
    async def record_outcome(
        ctx: Context,
        recommendation_id: str,
        accepted: bool,
        effectiveness: float,
        delivered: bool = True,
    ) -> str:
        """Report how a recommendation worked out; future ranking adapts.

        Args:
            recommendation_id: The recommendation's id (e.g. 'box-breathing').
            accepted: Whether you tried it.
            effectiveness: How much it helped, from -1.0 (made it worse) to 1.0.
            delivered: Whether the notification reached you.
        """
        start = time.monotonic()
        if not -1.0 <= effectiveness <= 1.0:
            _log_call("record_outcome", start, status="failure", error_type="ValueError")
            return json.dumps({"status": "error", "error": "effectiveness must be between -1.0 and 1.0"})

        outcome = OutcomeRecord(
            recommendation_id=recommendation_id,
            delivered=delivered,
            accepted=accepted,
            effectiveness_delta=effectiveness,
        )
        try:
            weight = engine.record_outcome(outcome)
        except ValueError as exc:
            _log_call("record_outcome", start, status="failure", error_type="ValueError")
            return json.dumps({"status": "error", "error": str(exc)})

        category = engine.resolve_recommendation(recommendation_id).category
        _log_call("record_outcome", start, metadata={"category": category})
        return json.dumps({
            "status": "recorded",
            "recommendation_id": recommendation_id,
            "category": category,
            "category_weight": round(weight, 4),
        })

    @mcp.tool
    async def record_activity_performance(
        ctx: Context,
        activity_id: str,
        score: float,
    ) -> str:
        """Record a score for an adaptive activity; its difficulty adjusts.

        Args:
            activity_id: Catalog id of an adaptive activity (e.g. 'memory-match').
            score: The score you reached.
        """
        start = time.monotonic()
        try:
            state = engine.record_activity_performance(activity_id, score)
        except ValueError as exc:
            _log_call("record_activity_performance", start, status="failure", error_type="ValueError")
            return json.dumps({"status": "error", "error": str(exc)})

        _log_call("record_activity_performance", start)
        return json.dumps({
            "status": "recorded",
            "activity_id": state.activity_id,
            "difficulty": state.difficulty,
            "target_score": state.target_score,
        })
