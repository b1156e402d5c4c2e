"""Tests for the Engine — end-to-end scheduling passes over the packaged catalog."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from riskwatch.core.storage.models import OutcomeRecord, SignalSnapshot
from riskwatch.core.config.settings import Settings
from riskwatch.domains.recovery.domain_logic.engine import Engine, SchedulingTicker

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)

CALM = {"mood": 4, "stress": 2, "sleep_quality": 4, "craving_level": 1, "social_support": 4}
CRISIS = {"mood": 1, "stress": 5, "sleep_quality": 1, "craving_level": 5, "social_support": 1}
HIGH = {"mood": 2, "stress": 4, "sleep_quality": 2, "craving_level": 2, "social_support": 4}


def _run(coro):
    """Run an async function synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _snapshot(ratings: dict, at: datetime = NOW) -> SignalSnapshot:
    return SignalSnapshot(timestamp=at, **ratings)


def _active_keys(repository) -> set[str]:
    return {e.payload_key for e in repository.get_active_notifications()}


class TestIngest:
    def test_valid_signal_stored_and_scheduled(self, engine, recovery_repository):
        report = engine.ingest_signal(dict(CALM))
        assert report.status == "ok"
        assert report.assessment.level == "low"
        assert recovery_repository.count_signals() == 1
        assert report.scheduled

    def test_invalid_dict_rejected_and_audited(self, engine, recovery_repository, audit_logger):
        assert engine.ingest_signal({**CALM, "mood": 9}) is None
        assert recovery_repository.count_signals() == 0
        event = audit_logger.get_events(action="signal_rejected")[0]
        assert "mood" in event["metadata"]["reason"]

    def test_invalid_snapshot_rejected(self, engine, recovery_repository):
        assert engine.ingest_signal(_snapshot({**CALM, "craving_level": 0})) is None
        assert recovery_repository.count_signals() == 0

    def test_missing_rating_rejected(self, engine):
        data = dict(CALM)
        del data["stress"]
        assert engine.ingest_signal(data) is None

    def test_future_timestamp_rejected(self, engine, recovery_repository, audit_logger):
        tomorrow = (NOW + timedelta(days=1)).isoformat()
        assert engine.ingest_signal({**CALM, "timestamp": tomorrow}) is None
        assert recovery_repository.count_signals() == 0
        assert audit_logger.count_events(action="signal_rejected") == 1

    def test_slightly_ahead_signal_is_evaluated(self, engine):
        ahead = NOW + timedelta(minutes=3)
        report = engine.ingest_signal(_snapshot(CALM, ahead))
        assert report.status == "ok"
        assert report.run_at == ahead
        assert report.assessment.level == "low"


class TestSchedulingPass:
    def test_no_signals(self, engine, recovery_repository):
        report = engine.run_scheduling_pass()
        assert report.status == "no_signals"
        assert report.as_dict()["assessment"] is None
        assert recovery_repository.count_by_status().counts == {}

    def test_signals_outside_lookback_ignored(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM, NOW - timedelta(days=40)))
        assert engine.run_scheduling_pass().status == "no_signals"

    def test_calm_pass_schedules_one_per_category(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        report = engine.run_scheduling_pass()
        assert len(report.recommendations) == 5
        assert _active_keys(recovery_repository) == {
            "rec:emergency-grounding",
            "rec:urge-surfing",
            "rec:call-support",
            "msg:milestone-1-2026-03-10",
            "msg:checkin-2026-03-10",
        }
        categories = [e.category for e in recovery_repository.get_active_notifications()]
        assert len(categories) == len(set(categories))

    def test_calm_pass_respects_spacing_and_quiet_hours(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        times = {
            e.payload_key: (e.dispatch_at, e.status)
            for e in recovery_repository.get_active_notifications()
        }
        assert times["rec:emergency-grounding"] == (NOW, "pending")
        assert times["rec:urge-surfing"] == (NOW.replace(hour=20), "pending")
        assert times["rec:call-support"] == (NOW.replace(hour=8) + timedelta(days=1), "rescheduled")

    def test_repeated_pass_is_idempotent(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        first = engine.run_scheduling_pass()
        before = recovery_repository.count_by_status().counts
        second = engine.run_scheduling_pass()
        assert second.scheduled == []
        assert sorted(second.unchanged) == sorted(first.scheduled)
        assert recovery_repository.count_by_status().counts == before

    def test_disabled_category_cancelled_on_next_pass(
        self, engine, recovery_repository, preferences_provider
    ):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        urge = recovery_repository.find_by_payload_key("rec:urge-surfing")

        preferences_provider.update(category_toggles={"distraction": False})
        report = engine.run_scheduling_pass()
        assert report.cancelled == [urge.id]
        assert "rec:urge-surfing" not in _active_keys(recovery_repository)
        assert all(e.category != "distraction" for e in recovery_repository.get_active_notifications())


class TestCriticalRisk:
    def test_crisis_message_goes_first(self, engine, recovery_repository):
        report = engine.ingest_signal(dict(CRISIS))
        assert report.assessment.level == "critical"
        assert report.assessment.emergency_contacts_required is True

        crisis = recovery_repository.find_by_payload_key("msg:crisis-2026-03-10")
        assert crisis.priority == "critical"
        assert crisis.dispatch_at == NOW
        assert crisis.payload["data"]["escalation_resources"]

        grounding = recovery_repository.find_by_payload_key("rec:emergency-grounding")
        assert grounding.priority == "critical"
        assert grounding.dispatch_at == NOW + timedelta(minutes=30)

    def test_crisis_during_quiet_hours_not_delayed(self, engine, clock, recovery_repository):
        clock.now = NOW.replace(hour=23)
        engine.ingest_signal(dict(CRISIS))
        crisis = recovery_repository.find_by_payload_key("msg:crisis-2026-03-10")
        assert crisis.status == "pending"
        assert crisis.dispatch_at == NOW.replace(hour=23)

    def test_dispatched_crisis_not_repeated_same_day(self, engine, clock, notifier, recovery_repository):
        engine.ingest_signal(dict(CRISIS))
        report = _run(engine.dispatch_due())
        crisis = recovery_repository.find_by_payload_key("msg:crisis-2026-03-10")
        assert report.dispatched == [crisis.id]

        clock.advance(hours=1)
        engine.run_scheduling_pass()
        crisis_entries = recovery_repository.list_notifications(category="crisis")
        assert [e.status for e in crisis_entries] == ["dispatched"]


class TestMilestones:
    def test_three_day_streak_announced(self, engine, recovery_repository):
        for days_ago in (2, 1, 0):
            recovery_repository.append_signal(
                _snapshot(CALM, NOW.replace(hour=9) - timedelta(days=days_ago))
            )
        report = engine.run_scheduling_pass()
        assert report.analysis.streak.current_streak == 3
        entry = recovery_repository.find_by_payload_key("msg:milestone-3-2026-03-10")
        assert entry.category == "milestone"
        assert entry.payload["data"] == {"milestone": 3, "next_milestone": 7}

    def test_no_milestone_between_thresholds(self, engine, recovery_repository):
        for days_ago in (1, 0):
            recovery_repository.append_signal(
                _snapshot(CALM, NOW.replace(hour=9) - timedelta(days=days_ago))
            )
        engine.run_scheduling_pass()
        assert recovery_repository.list_notifications(category="milestone") == []


class TestHighRisk:
    def test_immediate_intervention_for_high_risk(self, engine, recovery_repository):
        report = engine.ingest_signal(dict(HIGH))
        assert report.assessment.level == "high"
        entry = recovery_repository.find_by_payload_key("msg:intervention-2026-03-10")
        assert entry.category == "intervention"
        assert entry.priority == "critical"
        assert entry.status == "pending"
        assert entry.dispatch_at == NOW
        assert entry.payload["data"]["risk_level"] == "high"

        top = recovery_repository.find_by_payload_key(f"rec:{report.recommendations[0].id}")
        assert top.dispatch_at == NOW

    def test_no_intervention_message_otherwise(self, engine, recovery_repository):
        engine.ingest_signal(dict(CALM))
        engine.ingest_signal(dict(CRISIS))
        assert recovery_repository.list_notifications(category="intervention") == []


def _evening_cravings(repository):
    for days_ago in range(6, 0, -1):
        repository.append_signal(_snapshot(
            {**CALM, "craving_level": 4},
            NOW.replace(hour=19) - timedelta(days=days_ago),
        ))


class TestPreventiveNudge:
    def test_nudge_ahead_of_recurring_window(self, engine, recovery_repository):
        _evening_cravings(recovery_repository)
        report = engine.run_scheduling_pass()
        assert [p.time_of_day for p in report.analysis.time.patterns] == ["evening"]

        entry = recovery_repository.find_by_payload_key("msg:preventive-evening-2026-03-10")
        assert entry.category == "preventive"
        assert entry.requested_at == NOW.replace(hour=17, minute=30)
        assert entry.payload["data"]["window_start"] == NOW.replace(hour=18).isoformat()

    def test_window_already_started_moves_to_next_day(self, engine, recovery_repository):
        _evening_cravings(recovery_repository)
        engine.run_scheduling_pass(NOW.replace(hour=18, minute=30))
        assert recovery_repository.find_by_payload_key("msg:preventive-evening-2026-03-10") is None
        entry = recovery_repository.find_by_payload_key("msg:preventive-evening-2026-03-11")
        assert entry.requested_at == NOW.replace(hour=17, minute=30) + timedelta(days=1)

    def test_no_nudge_without_patterns(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        assert recovery_repository.list_notifications(category="preventive") == []


class TestDailyCheckIn:
    def test_next_slot_today(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        entry = recovery_repository.find_by_payload_key("msg:checkin-2026-03-10")
        assert entry.category == "checkin"
        assert entry.requested_at == NOW.replace(hour=20, minute=30)
        assert entry.payload["data"] == {"slot": "20:30"}
        # Spaced behind the recommendations and the milestone, past quiet hours.
        assert entry.dispatch_at == NOW.replace(hour=20) + timedelta(days=1)
        assert entry.status == "rescheduled"

    def test_after_last_slot_uses_tomorrow_morning(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass(NOW.replace(hour=21))
        entry = recovery_repository.find_by_payload_key("msg:checkin-2026-03-11")
        assert entry.requested_at == NOW.replace(hour=8, minute=30) + timedelta(days=1)

    def test_disabled_by_empty_setting(
        self, recovery_repository, catalog, notifier, preferences_provider, audit_logger, clock
    ):
        engine = Engine(
            recovery_repository,
            catalog,
            notifier,
            preferences_provider,
            Settings(daily_checkin_times=""),
            audit_logger,
            clock=clock,
        )
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        assert recovery_repository.list_notifications(category="checkin") == []

    def test_bad_slot_rejected(self, recovery_repository, catalog, notifier, preferences_provider):
        with pytest.raises(ValueError):
            Engine(
                recovery_repository,
                catalog,
                notifier,
                preferences_provider,
                Settings(daily_checkin_times="08:30,25:00"),
            )


class TestFeedback:
    def test_outcome_resolved_from_ledger(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        weight = engine.record_outcome(OutcomeRecord(
            recommendation_id="emergency-grounding",
            delivered=True,
            accepted=True,
            effectiveness_delta=1.0,
        ))
        assert weight == pytest.approx(0.6)
        assert recovery_repository.get_category_weights() == {"breathing": pytest.approx(0.6)}

    def test_outcome_for_catalog_entry(self, engine, recovery_repository):
        engine.record_outcome(OutcomeRecord("body-scan", delivered=False, accepted=False, effectiveness_delta=-0.5))
        assert recovery_repository.get_category_weights()["mindfulness"] == pytest.approx(0.3)

    def test_unknown_recommendation(self, engine):
        with pytest.raises(ValueError, match="Unknown recommendation"):
            engine.record_outcome(OutcomeRecord("nope", delivered=True, accepted=True, effectiveness_delta=0.1))

    def test_learned_weight_changes_next_ranking(self, engine, recovery_repository):
        recovery_repository.append_signal(_snapshot(CALM))
        for _ in range(5):
            engine.record_outcome(OutcomeRecord("urge-surfing", True, True, 1.0))
        evaluation = engine.evaluate()
        recs = engine.recommend(evaluation, NOW)
        assert recs[0].id == "urge-surfing"

    def test_activity_performance(self, engine):
        state = engine.record_activity_performance("memory-match", 95)
        assert state.difficulty == 1.1

    def test_activity_must_be_adaptive(self, engine):
        with pytest.raises(ValueError, match="no adaptive difficulty"):
            engine.record_activity_performance("body-scan", 50)
        with pytest.raises(ValueError, match="Unknown activity"):
            engine.record_activity_performance("chess", 50)
        with pytest.raises(ValueError, match="negative"):
            engine.record_activity_performance("memory-match", -1)


class TestRestore:
    def test_counts_active_and_overdue(self, engine, recovery_repository, clock):
        recovery_repository.append_signal(_snapshot(CALM))
        engine.run_scheduling_pass()
        assert engine.restore() == {"active": 5, "overdue": 1}
        clock.advance(hours=7)
        assert engine.restore() == {"active": 5, "overdue": 2}


class TestSchedulingTicker:
    def test_tick_runs_pass_then_dispatches(self, engine, recovery_repository, clock, notifier):
        recovery_repository.append_signal(_snapshot(CALM))
        ticker = SchedulingTicker(engine, dispatch_interval=0.01, scheduling_interval=timedelta(hours=1))

        report = _run(ticker.tick())
        assert [n.payload_key for n in notifier.sent] == ["rec:emergency-grounding"]
        assert len(report.dispatched) == 1

        recovery_repository.append_signal(_snapshot(CRISIS, NOW + timedelta(minutes=5)))
        clock.advance(minutes=10)
        _run(ticker.tick())
        assert recovery_repository.find_by_payload_key("msg:crisis-2026-03-10") is None

        clock.advance(hours=1)
        _run(ticker.tick())
        crisis = recovery_repository.find_by_payload_key("msg:crisis-2026-03-10")
        assert crisis.status == "dispatched"

    def test_start_and_stop(self, engine, recovery_repository, notifier):
        recovery_repository.append_signal(_snapshot(CALM))
        ticker = SchedulingTicker(engine, dispatch_interval=0.01, scheduling_interval=timedelta(hours=1))

        async def scenario():
            ticker.start()
            await asyncio.sleep(0.05)
            await ticker.stop()

        _run(scenario())
        assert notifier.sent
