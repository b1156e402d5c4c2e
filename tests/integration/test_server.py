"""Integration tests for the RiskWatch Recovery MCP server."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client

from riskwatch.core.server.app import create_app


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _json(result) -> dict:
    """Decode the JSON text of a tool result."""
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "record_signal",
    "assess_risk",
    "analyze_patterns",
    "get_recommendations",
    "record_outcome",
    "record_activity_performance",
    "run_scheduling_pass",
    "dispatch_due_notifications",
    "list_notifications",
    "dismiss_notification",
    "get_preferences",
    "update_preferences",
    "audit_summary",
]

CALM = {"mood": 4, "stress": 2, "sleep_quality": 4, "craving_level": 1, "social_support": 4}
CRISIS = {"mood": 1, "stress": 5, "sleep_quality": 1, "craving_level": 5, "social_support": 1}


@pytest.fixture
def client(recovery_repository, notifier, clock):
    """MCP client on a server backed by in-memory storage and a fixed clock."""
    mcp = create_app(
        repository_override=recovery_repository,
        notifier_override=notifier,
        clock_override=clock,
        start_ticker=False,
    )
    return Client(mcp)


def test_server_starts_and_lists_tools(client):
    async def _check():
        async with client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_returns_ok(client):
    async def _check():
        async with client:
            data = _json(await client.call_tool("health_check", {}))
            assert data["status"] == "ok"
            assert data["interventions_loaded"] == 14
            assert data["scheduler_running"] is False
            assert data["active_notifications"] == 0
    _run(_check())


def test_assess_risk_without_signals(client):
    async def _check():
        async with client:
            data = _json(await client.call_tool("assess_risk", {}))
            assert data["status"] == "no_signals"
    _run(_check())


def test_record_signal_schedules_notifications(client):
    async def _check():
        async with client:
            saved = _json(await client.call_tool("record_signal", CALM))
            assert saved["status"] == "saved"
            assert saved["pass"]["assessment"]["level"] == "low"

            listing = _json(await client.call_tool("list_notifications", {}))
            assert listing["active"] == len(saved["pass"]["scheduled"])
            titles = {n["title"] for n in listing["notifications"]}
            assert "5-4-3-2-1 grounding" in titles

            again = _json(await client.call_tool("run_scheduling_pass", {}))
            assert again["scheduled"] == []
    _run(_check())


def test_out_of_range_signal_rejected(client):
    async def _check():
        async with client:
            data = _json(await client.call_tool("record_signal", {**CALM, "mood": 9}))
            assert data["status"] == "rejected"
            summary = _json(await client.call_tool("audit_summary", {}))
            assert summary["rejected_signals"] == 1
    _run(_check())


def test_critical_signal_reports_escalation(client):
    async def _check():
        async with client:
            await client.call_tool("record_signal", CRISIS)
            risk = _json(await client.call_tool("assess_risk", {}))
            assert risk["level"] == "critical"
            assert risk["emergency_contacts_required"] is True
            assert risk["escalation_resources"]

            dispatched = _json(await client.call_tool("dispatch_due_notifications", {}))
            assert len(dispatched["dispatched"]) == 1
    _run(_check())


def test_recommendations_and_outcome(client):
    async def _check():
        async with client:
            await client.call_tool("record_signal", CALM)
            recs = _json(await client.call_tool("get_recommendations", {"available_minutes": 5, "limit": 3}))
            assert recs["status"] == "ok"
            assert len(recs["recommendations"]) == 3
            assert all(r["time_to_complete"] <= 5 for r in recs["recommendations"])

            outcome = _json(await client.call_tool(
                "record_outcome",
                {"recommendation_id": "box-breathing", "accepted": True, "effectiveness": 1.0},
            ))
            assert outcome["status"] == "recorded"
            assert outcome["category"] == "breathing"
            assert outcome["category_weight"] == 0.6

            bad = _json(await client.call_tool(
                "record_outcome",
                {"recommendation_id": "box-breathing", "accepted": True, "effectiveness": 3.0},
            ))
            assert bad["status"] == "error"
    _run(_check())


def test_activity_performance(client):
    async def _check():
        async with client:
            data = _json(await client.call_tool(
                "record_activity_performance", {"activity_id": "memory-match", "score": 95}
            ))
            assert data == {
                "status": "recorded",
                "activity_id": "memory-match",
                "difficulty": 1.1,
                "target_score": 110,
            }
            err = _json(await client.call_tool(
                "record_activity_performance", {"activity_id": "body-scan", "score": 95}
            ))
            assert err["status"] == "error"
    _run(_check())


def test_preferences_round_trip_and_cancellation(client):
    async def _check():
        async with client:
            await client.call_tool("record_signal", CALM)
            updated = _json(await client.call_tool(
                "update_preferences",
                {"frequency": "minimal", "category_toggles": {"distraction": False}},
            ))
            assert updated["status"] == "updated"
            assert len(updated["cancelled_notifications"]) == 1

            prefs = _json(await client.call_tool("get_preferences", {}))
            assert prefs["frequency"] == "minimal"
            assert prefs["category_toggles"] == {"distraction": False}

            bad = _json(await client.call_tool("update_preferences", {"quiet_start": "25:00"}))
            assert bad["status"] == "error"
    _run(_check())


def test_dismiss_notification(client):
    async def _check():
        async with client:
            await client.call_tool("record_signal", CALM)
            listing = _json(await client.call_tool("list_notifications", {"category": "social"}))
            target = listing["notifications"][0]["id"]

            dismissed = _json(await client.call_tool("dismiss_notification", {"notification_id": target}))
            assert dismissed["status"] == "cancelled"

            missing = _json(await client.call_tool("dismiss_notification", {"notification_id": "nope"}))
            assert missing["status"] == "not_found"

            cancelled = _json(await client.call_tool("list_notifications", {"status": "cancelled"}))
            assert [n["id"] for n in cancelled["notifications"]] == [target]
    _run(_check())


def test_list_notifications_rejects_unknown_filter(client):
    async def _check():
        async with client:
            data = _json(await client.call_tool("list_notifications", {"status": "queued"}))
            assert data["status"] == "error"
    _run(_check())


def test_catalog_resource(client):
    async def _check():
        async with client:
            contents = await client.read_resource("catalog://interventions")
            data = json.loads(contents[0].text)
            assert data["intervention_count"] == 14
            assert "breathing" in data["categories"]
    _run(_check())
