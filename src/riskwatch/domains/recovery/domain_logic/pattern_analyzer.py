"""Pattern mining over behavioral check-in history.

Finds recurring high-risk time windows, summarizes emotional triggers and
computes the current positive-day streak with its milestones. Results carry
``insufficient_data`` rather than an empty-but-confident answer when there is
too little history.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from collections.abc import Sequence
from datetime import date, timedelta, tzinfo

from riskwatch.core.storage.models import SignalSnapshot
from riskwatch.domains.recovery.domain_logic.models import (
    LOW_MOOD_MAX,
    MIN_HISTORY,
    MIN_PERIOD_SAMPLES,
    NEGATIVE_RATIO_THRESHOLD,
    PERIOD_BOUNDARIES,
    STREAK_MILESTONES,
    EmotionalTriggerSummary,
    PatternAnalysis,
    StreakAnalysis,
    TimeOfDay,
    TimePatternAnalysis,
    TriggerPattern,
    time_of_day_for_hour,
)

logger = logging.getLogger(__name__)

_PERIOD_ORDER: list[TimeOfDay] = [p for _, _, p in PERIOD_BOUNDARIES] + ["night"]


def _context_tags(snapshot: SignalSnapshot) -> list[str]:
    tags = []
    if snapshot.mood <= 2:
        tags.append("low_mood")
    if snapshot.stress >= 4:
        tags.append("high_stress")
    if snapshot.sleep_quality <= 2:
        tags.append("poor_sleep")
    if snapshot.social_support <= 2:
        tags.append("low_social_support")
    if snapshot.craving_level >= 4:
        tags.append("high_craving")
    if snapshot.relapse:
        tags.append("relapse")
    return tags


class PatternAnalyzer:
    """Mines check-in history for recurring risk.

    History is any sequence of SignalSnapshot; order does not matter.
    Hours and calendar days are evaluated in ``tz`` (UTC when omitted).

    Usage::

        analyzer = PatternAnalyzer(tz=ZoneInfo("Europe/Berlin"))
        analysis = analyzer.analyze(repo.query_signals(since, until))
    """

    def __init__(self, tz: tzinfo | None = None) -> None:
        self._tz = tz

    def _local(self, snapshot: SignalSnapshot):
        return snapshot.timestamp.astimezone(self._tz) if self._tz else snapshot.timestamp

    # ------------------------------------------------------------------
    # Time-of-day patterns
    # ------------------------------------------------------------------

    def analyze_time_patterns(self, history: Sequence[SignalSnapshot]) -> TimePatternAnalysis:
        """Find periods of the day with a high share of negative outcomes.

        A period qualifies with more than ``MIN_PERIOD_SAMPLES`` observations
        and a negative ratio above ``NEGATIVE_RATIO_THRESHOLD``.
        """
        if len(history) < MIN_HISTORY:
            return TimePatternAnalysis(patterns=(), sample_size=len(history), insufficient_data=True)

        by_period: dict[TimeOfDay, list[SignalSnapshot]] = defaultdict(list)
        for snapshot in history:
            by_period[time_of_day_for_hour(self._local(snapshot).hour)].append(snapshot)

        patterns: list[TriggerPattern] = []
        for period in _PERIOD_ORDER:
            entries = by_period.get(period, [])
            if len(entries) <= MIN_PERIOD_SAMPLES:
                continue
            negatives = [s for s in entries if s.is_negative()]
            ratio = len(negatives) / len(entries)
            if ratio <= NEGATIVE_RATIO_THRESHOLD:
                continue

            tag_counts: dict[str, int] = defaultdict(int)
            for snapshot in negatives:
                for tag in _context_tags(snapshot):
                    tag_counts[tag] += 1
            context = tuple(
                sorted(tag for tag, n in tag_counts.items() if n * 2 >= len(negatives))
            )
            patterns.append(TriggerPattern(
                trigger=f"{period}_risk_window",
                frequency=len(negatives),
                severity=min(10, round(ratio * 10)),
                time_of_day=period,
                context=context,
            ))

        patterns.sort(key=lambda p: (-p.severity, _PERIOD_ORDER.index(p.time_of_day)))
        if patterns:
            logger.info(
                "Detected %d recurring risk window(s): %s",
                len(patterns),
                ", ".join(p.time_of_day for p in patterns),
            )
        return TimePatternAnalysis(patterns=tuple(patterns), sample_size=len(history))

    # ------------------------------------------------------------------
    # Emotional triggers
    # ------------------------------------------------------------------

    def analyze_emotional_triggers(
        self, history: Sequence[SignalSnapshot]
    ) -> EmotionalTriggerSummary:
        """Share and count of low-mood entries plus the mean mood."""
        if not history:
            return EmotionalTriggerSummary(
                risk_ratio=0.0,
                average_mood=0.0,
                low_mood_count=0,
                sample_size=0,
                insufficient_data=True,
            )
        low = sum(1 for s in history if s.mood <= LOW_MOOD_MAX)
        return EmotionalTriggerSummary(
            risk_ratio=round(low / len(history), 4),
            average_mood=round(statistics.mean(s.mood for s in history), 4),
            low_mood_count=low,
            sample_size=len(history),
            insufficient_data=len(history) < MIN_HISTORY,
        )

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------

    def analyze_streak(self, history: Sequence[SignalSnapshot]) -> StreakAnalysis:
        """Consecutive positive days ending on the most recent check-in's day.

        A day counts when every entry that day is positive. A day with a
        negative entry, or a day without entries, ends the streak.
        """
        if not history:
            return StreakAnalysis(current_streak=0, milestone=None, next_milestone=STREAK_MILESTONES[0])

        days: dict[date, bool] = {}
        for snapshot in history:
            day = self._local(snapshot).date()
            days[day] = days.get(day, True) and not snapshot.is_negative()

        streak = 0
        day = max(days)
        while days.get(day, False):
            streak += 1
            day -= timedelta(days=1)

        reached = [m for m in STREAK_MILESTONES if m <= streak]
        upcoming = [m for m in STREAK_MILESTONES if m > streak]
        milestone = reached[-1] if reached else None
        return StreakAnalysis(
            current_streak=streak,
            milestone=milestone,
            next_milestone=upcoming[0] if upcoming else None,
            is_new_milestone=milestone is not None and milestone == streak,
        )

    # ------------------------------------------------------------------
    # Aggregate
    # ------------------------------------------------------------------

    def analyze(self, history: Sequence[SignalSnapshot]) -> PatternAnalysis:
        return PatternAnalysis(
            time=self.analyze_time_patterns(history),
            emotional=self.analyze_emotional_triggers(history),
            streak=self.analyze_streak(history),
        )
