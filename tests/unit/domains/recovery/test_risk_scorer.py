"""Tests for the RiskScorer — additive weights, clamping and escalation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from riskwatch.core.storage.models import SignalSnapshot
from riskwatch.domains.recovery.domain_logic.models import (
    EmotionalTriggerSummary,
    PatternAnalysis,
    RiskWeights,
    StreakAnalysis,
    TimePatternAnalysis,
    TriggerPattern,
    level_for_score,
)
from riskwatch.domains.recovery.domain_logic.risk_scorer import RiskScorer


def _snapshot(hour: int = 14, **ratings) -> SignalSnapshot:
    values = dict(mood=4, stress=2, sleep_quality=4, craving_level=1, social_support=4)
    values.update(ratings)
    return SignalSnapshot(timestamp=datetime(2026, 3, 10, hour, 0, tzinfo=timezone.utc), **values)


def _patterns(*periods: str, insufficient: bool = False) -> PatternAnalysis:
    return PatternAnalysis(
        time=TimePatternAnalysis(
            patterns=tuple(
                TriggerPattern(f"{p}_risk_window", frequency=4, severity=6, time_of_day=p)
                for p in periods
            ),
            sample_size=20,
            insufficient_data=insufficient,
        ),
        emotional=EmotionalTriggerSummary(0.2, 3.1, 4, 20),
        streak=StreakAnalysis(current_streak=0, milestone=None, next_milestone=1),
    )


class TestScoring:
    def test_worst_case_is_critical(self):
        result = RiskScorer().assess(
            _snapshot(mood=1, stress=5, sleep_quality=1, craving_level=5, social_support=1)
        )
        assert result.score == 100
        assert result.level == "critical"
        assert result.emergency_contacts_required is True
        assert len(result.escalation_resources) >= 1

    def test_calm_day_is_low(self):
        result = RiskScorer().assess(
            _snapshot(mood=4, stress=2, sleep_quality=4, craving_level=1, social_support=4)
        )
        assert result.score == 0
        assert result.level == "low"
        assert result.factors == ()
        assert result.emergency_contacts_required is False
        assert result.escalation_resources == ()

    def test_factors_are_additive(self):
        result = RiskScorer().assess(_snapshot(stress=4, craving_level=4, sleep_quality=2))
        assert {f.name for f in result.factors} == {"high_stress", "high_craving", "poor_sleep"}
        assert result.score == 20 + 30 + 15
        assert result.level == "high"

    def test_thresholds_are_inclusive(self):
        result = RiskScorer().assess(_snapshot(mood=2, social_support=2))
        assert [f.name for f in result.factors] == ["low_mood", "low_social_support"]
        assert result.score == 45

    def test_custom_weights(self):
        scorer = RiskScorer(weights=RiskWeights(high_craving_weight=90))
        result = scorer.assess(_snapshot(craving_level=5))
        assert result.score == 90
        assert result.level == "critical"

    def test_deterministic(self):
        scorer = RiskScorer()
        snapshot = _snapshot(mood=2, stress=5)
        assert scorer.assess(snapshot) == scorer.assess(snapshot)


class TestLevels:
    @pytest.mark.parametrize(
        ("score", "level"),
        [(0, "low"), (20, "low"), (21, "medium"), (50, "medium"), (51, "high"), (80, "high"), (81, "critical"), (100, "critical")],
    )
    def test_level_boundaries(self, score, level):
        assert level_for_score(score) == level

    def test_monotonic(self):
        order = ["low", "medium", "high", "critical"]
        levels = [order.index(level_for_score(s)) for s in range(101)]
        assert levels == sorted(levels)


class TestRecurringWindow:
    def test_flagged_period_adds_factor(self):
        result = RiskScorer().assess(_snapshot(hour=19, mood=2), patterns=_patterns("evening"))
        assert "recurring_risk_window" in {f.name for f in result.factors}
        assert result.score == 35

    def test_other_period_ignored(self):
        result = RiskScorer().assess(_snapshot(hour=9, mood=2), patterns=_patterns("evening"))
        assert result.score == 25

    def test_insufficient_history_ignored(self):
        result = RiskScorer().assess(
            _snapshot(hour=19, mood=2), patterns=_patterns("evening", insufficient=True)
        )
        assert result.score == 25

    def test_hour_evaluated_in_scorer_timezone(self):
        plus_five = timezone(timedelta(hours=5))
        # 14:00 UTC is 19:00 at +05:00, an evening hour there.
        result = RiskScorer(tz=plus_five).assess(_snapshot(hour=14), patterns=_patterns("evening"))
        assert result.score == 10
