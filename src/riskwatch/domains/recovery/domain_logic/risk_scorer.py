"""Risk scoring of a single behavioral snapshot.

Each self-reported dimension contributes a fixed weight once it crosses its
threshold. The sum (clamped to 0..100) is mapped to a discrete risk level.
A critical level always carries emergency escalation resources.
"""

from __future__ import annotations

import logging
from datetime import tzinfo

from riskwatch.core.storage.models import SignalSnapshot
from riskwatch.domains.recovery.domain_logic.models import (
    ESCALATION_RESOURCES,
    SCORE_MAX,
    SCORE_MIN,
    PatternAnalysis,
    RiskAssessment,
    RiskFactor,
    RiskWeights,
    level_for_score,
    time_of_day_for_hour,
)

logger = logging.getLogger(__name__)


class RiskScorer:
    """Maps a SignalSnapshot to a RiskAssessment.

    Pure and deterministic: identical inputs always give identical output.

    Usage::

        scorer = RiskScorer()
        assessment = scorer.assess(snapshot, patterns=analysis)
    """

    def __init__(self, weights: RiskWeights | None = None, tz: tzinfo | None = None) -> None:
        self._weights = weights or RiskWeights()
        self._tz = tz

    @property
    def weights(self) -> RiskWeights:
        return self._weights

    def assess(
        self,
        snapshot: SignalSnapshot,
        patterns: PatternAnalysis | None = None,
    ) -> RiskAssessment:
        """Score a snapshot.

        Args:
            snapshot: The check-in to assess (usually the most recent one).
            patterns: Optional history analysis. When it flags the snapshot's
                time of day as a recurring risk window, an extra factor is
                added.

        Returns:
            RiskAssessment with level, score and contributing factors.
        """
        w = self._weights
        factors: list[RiskFactor] = []

        if snapshot.mood <= w.low_mood_max:
            factors.append(RiskFactor("low_mood", w.low_mood_weight))
        if snapshot.stress >= w.high_stress_min:
            factors.append(RiskFactor("high_stress", w.high_stress_weight))
        if snapshot.sleep_quality <= w.poor_sleep_max:
            factors.append(RiskFactor("poor_sleep", w.poor_sleep_weight))
        if snapshot.social_support <= w.low_social_max:
            factors.append(RiskFactor("low_social_support", w.low_social_weight))
        if snapshot.craving_level >= w.high_craving_min:
            factors.append(RiskFactor("high_craving", w.high_craving_weight))

        if patterns is not None and not patterns.insufficient_data:
            local = snapshot.timestamp.astimezone(self._tz) if self._tz else snapshot.timestamp
            period = time_of_day_for_hour(local.hour)
            if patterns.time.flags(period):
                factors.append(RiskFactor("recurring_risk_window", w.recurring_window_weight))

        raw = sum(f.weight for f in factors)
        score = max(SCORE_MIN, min(SCORE_MAX, raw))
        level = level_for_score(score)
        critical = level == "critical"

        if critical:
            logger.warning("Critical risk assessed (score=%d, factors=%d)", score, len(factors))

        return RiskAssessment(
            level=level,
            score=score,
            factors=tuple(factors),
            emergency_contacts_required=critical,
            escalation_resources=tuple(ESCALATION_RESOURCES) if critical else (),
        )
