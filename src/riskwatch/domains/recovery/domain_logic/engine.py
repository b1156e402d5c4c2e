"""Recovery engine — owns the scoring, ranking, scheduling and feedback components.

One Engine per process. It holds the repository handle and the loaded
catalog, reads preferences fresh on every pass and keeps no state of its own
that is not also in the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from riskwatch.core.audit.logger import AuditLogger
from riskwatch.core.config.settings import Settings
from riskwatch.core.storage.models import OutcomeRecord, SignalSnapshot
from riskwatch.core.storage.repository import BucketClaim, RecoveryRepository
from riskwatch.domains.recovery.connectors import Notifier, PreferencesProvider
from riskwatch.domains.recovery.connectors.providers import RepositorySignalStore
from riskwatch.domains.recovery.domain_logic.catalog import InterventionCatalog
from riskwatch.domains.recovery.domain_logic.feedback import OutcomeFeedbackLoop
from riskwatch.domains.recovery.domain_logic.models import (
    CHECKIN_CATEGORY,
    CRISIS_CATEGORY,
    ESCALATION_RESOURCES,
    INTERVENTION_CATEGORY,
    MILESTONE_CATEGORY,
    PERIOD_START_HOURS,
    PREVENTIVE_CATEGORY,
    Message,
    PatternAnalysis,
    Preferences,
    RankingContext,
    Recommendation,
    RiskAssessment,
    RiskLevel,
    RiskWeights,
    TriggerPattern,
    parse_clock_times,
    time_of_day_for_hour,
)
from riskwatch.domains.recovery.domain_logic.pattern_analyzer import PatternAnalyzer
from riskwatch.domains.recovery.domain_logic.ranker import RecommendationRanker
from riskwatch.domains.recovery.domain_logic.risk_scorer import RiskScorer
from riskwatch.domains.recovery.domain_logic.scheduler import (
    DispatchReport,
    NotificationScheduler,
)
from riskwatch.domains.recovery.domain_logic.validation import (
    InvalidSignalError,
    snapshot_from_dict,
    validate_snapshot,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Evaluation:
    """Analysis of the lookback window ending at ``now``."""

    latest: SignalSnapshot
    analysis: PatternAnalysis
    assessment: RiskAssessment
    sample_size: int


@dataclass
class PassReport:
    """Outcome of one scheduling pass."""

    status: str                                   # 'ok' | 'no_signals'
    run_at: datetime
    assessment: RiskAssessment | None = None
    analysis: PatternAnalysis | None = None
    recommendations: list[Recommendation] = field(default_factory=list)
    scheduled: list[str] = field(default_factory=list)    # newly created entry IDs
    unchanged: list[str] = field(default_factory=list)    # already on the ledger
    cancelled: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "run_at": self.run_at.isoformat(),
            "assessment": self.assessment.as_dict() if self.assessment else None,
            "patterns": self.analysis.as_dict() if self.analysis else None,
            "recommendations": [r.to_payload() for r in self.recommendations],
            "scheduled": self.scheduled,
            "unchanged": self.unchanged,
            "cancelled": self.cancelled,
        }


class Engine:
    """Wires signal history through analysis, scoring, ranking and scheduling.

    Usage::

        engine = Engine(repo, catalog, LoggingNotifier(), prefs_provider, settings, audit)
        engine.restore()
        engine.ingest_signal(snapshot)
        await engine.dispatch_due()
    """

    def __init__(
        self,
        repository: RecoveryRepository,
        catalog: InterventionCatalog,
        notifier: Notifier,
        preferences: PreferencesProvider,
        settings: Settings | None = None,
        audit: AuditLogger | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
        weights: RiskWeights | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.repository = repository
        self.catalog = catalog
        self.preferences = preferences
        self.audit = audit
        self.clock = clock
        self.tz = (
            timezone.utc
            if self.settings.timezone.upper() == "UTC"
            else ZoneInfo(self.settings.timezone)
        )
        self.checkin_slots = parse_clock_times(self.settings.daily_checkin_times)

        self.store = RepositorySignalStore(repository)
        self.analyzer = PatternAnalyzer(tz=self.tz)
        self.scorer = RiskScorer(weights, tz=self.tz)
        self.ranker = RecommendationRanker(rng)
        self.scheduler = NotificationScheduler(
            repository,
            notifier,
            audit,
            tz=self.tz,
            notifier_timeout=self.settings.notifier_timeout_seconds,
            retry_backoff=timedelta(seconds=self.settings.dispatch_retry_backoff_seconds),
        )
        self.feedback = OutcomeFeedbackLoop(repository, audit)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_signal(
        self,
        signal: SignalSnapshot | dict[str, Any],
        now: datetime | None = None,
    ) -> PassReport | None:
        """Validate and store a check-in, then run a scheduling pass.

        Invalid input is logged, audited and discarded; returns None. A
        timestamp slightly ahead of the clock moves the pass to that time so
        the new check-in is inside the evaluated window.
        """
        now = now or self.clock()
        try:
            if isinstance(signal, SignalSnapshot):
                snapshot = validate_snapshot(signal, now=now)
            else:
                snapshot = snapshot_from_dict(signal, default_time=now)
        except InvalidSignalError as exc:
            logger.warning("Discarding invalid signal: %s", exc)
            if self.audit is not None:
                raw = signal.ratings() if isinstance(signal, SignalSnapshot) else signal
                self.audit.log_signal_rejected(str(exc), raw)
            return None

        self.store.append_signal(snapshot)
        return self.run_scheduling_pass(max(now, snapshot.timestamp))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def history(self, now: datetime | None = None) -> list[SignalSnapshot]:
        now = now or self.clock()
        since = now - timedelta(days=self.settings.history_lookback_days)
        return self.store.query_range(since, now)

    def evaluate(self, now: datetime | None = None) -> Evaluation | None:
        """Analyze the lookback window and assess its latest check-in."""
        history = self.history(now)
        if not history:
            return None
        analysis = self.analyzer.analyze(history)
        latest = history[-1]
        return Evaluation(
            latest=latest,
            analysis=analysis,
            assessment=self.scorer.assess(latest, analysis),
            sample_size=len(history),
        )

    def recommend(
        self,
        evaluation: Evaluation,
        now: datetime,
        *,
        available_minutes: int | None = None,
        limit: int | None = None,
    ) -> list[Recommendation]:
        prefs = self.preferences.get()
        context = RankingContext(
            time_of_day=time_of_day_for_hour(now.astimezone(self.tz).hour),
            available_minutes=(
                available_minutes
                if available_minutes is not None
                else self.settings.default_available_minutes
            ),
            mood=evaluation.latest.mood,
            category_toggles=dict(prefs.category_toggles),
        )
        return self.ranker.rank(
            context,
            evaluation.assessment,
            self.catalog.list_candidates(),
            self.repository.get_category_weights(),
            limit=limit or self.settings.max_recommendations,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def run_scheduling_pass(self, now: datetime | None = None) -> PassReport:
        """Re-evaluate risk and bring the ledger up to date.

        Schedules, in order: a crisis-support message for a critical
        assessment, the best recommendation per category, an immediate
        intervention message for a high assessment, a milestone message, a
        preventive nudge ahead of the next recurring risk window and the next
        daily check-in reminder.

        Idempotent: repeating a pass without new signals adds nothing.
        """
        now = now or self.clock()
        prefs = self.preferences.get()
        report = PassReport(status="ok", run_at=now)
        report.cancelled = [e.id for e in self.scheduler.cancel_disabled_categories(prefs)]

        evaluation = self.evaluate(now)
        if evaluation is None:
            report.status = "no_signals"
            logger.info("Scheduling pass at %s: no signals in lookback window", now)
            return report

        assessment = evaluation.assessment
        level = assessment.level
        report.assessment = assessment
        report.analysis = evaluation.analysis
        report.recommendations = self.recommend(evaluation, now)

        claims = []
        day = self.scheduler.day_bucket(now)
        if level == "critical":
            crisis = Message(
                id=f"crisis-{day}",
                category=CRISIS_CATEGORY,
                title="Support is available right now",
                body="This looks like a hard moment. Reach out before acting on a craving.",
                priority="critical",
                data={"escalation_resources": list(ESCALATION_RESOURCES)},
            )
            claims.append(self._schedule_once(crisis, now, prefs, level))

        claims.extend(
            self.scheduler.schedule_recommendation(rec, now, prefs, level)
            for rec in self._best_per_category(report.recommendations)
        )

        if level == "high":
            # Critical priority: keeps ``now`` and is spaced only against critical entries.
            intervention = Message(
                id=f"intervention-{day}",
                category=INTERVENTION_CATEGORY,
                title="Protect your progress",
                body="Risk is up right now. Try one of your coping strategies.",
                priority="critical",
                data={"risk_level": level, "score": assessment.score},
            )
            claims.append(self._schedule_once(intervention, now, prefs, level))

        streak = evaluation.analysis.streak
        if streak.is_new_milestone:
            milestone = Message(
                id=f"milestone-{streak.milestone}-{day}",
                category=MILESTONE_CATEGORY,
                title=f"{streak.milestone}-day streak",
                body=f"{streak.current_streak} day(s) in a row. Keep going.",
                data={"milestone": streak.milestone, "next_milestone": streak.next_milestone},
            )
            claims.append(self._schedule_once(milestone, now, prefs, level))

        upcoming = self._next_risk_window(evaluation.analysis, now)
        if upcoming is not None:
            pattern, starts_at = upcoming
            preventive = Message(
                id=f"preventive-{pattern.time_of_day}-{starts_at.date().isoformat()}",
                category=PREVENTIVE_CATEGORY,
                title=f"The {pattern.time_of_day} has been hard lately",
                body="Plan a coping strategy before it starts.",
                priority="high",
                data={
                    "time_of_day": pattern.time_of_day,
                    "window_start": starts_at.isoformat(),
                    "severity": pattern.severity,
                    "context": list(pattern.context),
                },
            )
            lead = timedelta(minutes=self.settings.preventive_lead_minutes)
            claims.append(self._schedule_once(preventive, starts_at - lead, prefs, level))

        checkin_at = self._next_checkin(now)
        if checkin_at is not None:
            checkin = Message(
                id=f"checkin-{checkin_at.date().isoformat()}",
                category=CHECKIN_CATEGORY,
                title="Time for a check-in",
                body="How are you doing? Log your mood to get fresh suggestions.",
                data={"slot": checkin_at.strftime("%H:%M")},
            )
            claims.append(self._schedule_once(checkin, checkin_at, prefs, level))

        for claim in claims:
            if claim is None:
                continue
            (report.scheduled if claim.created else report.unchanged).append(claim.entry.id)

        logger.info(
            "Scheduling pass at %s: level=%s score=%d scheduled=%d unchanged=%d cancelled=%d",
            now, level, assessment.score,
            len(report.scheduled), len(report.unchanged), len(report.cancelled),
        )
        return report

    def _best_per_category(self, recommendations: list[Recommendation]) -> list[Recommendation]:
        # A category holds one active entry per day; a second one would supersede the first.
        chosen: list[Recommendation] = []
        seen: set[str] = set()
        for rec in recommendations:
            if rec.category in seen:
                continue
            seen.add(rec.category)
            chosen.append(rec)
            if len(chosen) == self.settings.notifications_per_pass:
                break
        return chosen

    def _schedule_once(
        self, message: Message, target: datetime, prefs: Preferences, level: RiskLevel
    ) -> BucketClaim | None:
        """Schedule ``message`` unless an entry with its ID was already sent."""
        entry = self.repository.find_by_payload_key(f"msg:{message.id}")
        if entry is not None and entry.status == "dispatched":
            return None
        return self.scheduler.schedule_message(message, target, prefs, level)

    def _next_risk_window(
        self, analysis: PatternAnalysis, now: datetime
    ) -> tuple[TriggerPattern, datetime] | None:
        """The soonest flagged time-of-day window whose nudge is still ahead."""
        lead = timedelta(minutes=self.settings.preventive_lead_minutes)
        local = now.astimezone(self.tz)
        upcoming = None
        for pattern in analysis.time.patterns:
            start = datetime.combine(
                local.date(), time(PERIOD_START_HOURS[pattern.time_of_day]), tzinfo=self.tz
            )
            if start - lead <= local:
                start += timedelta(days=1)
            if upcoming is None or start < upcoming[1]:
                upcoming = (pattern, start)
        return upcoming

    def _next_checkin(self, now: datetime) -> datetime | None:
        """The first check-in slot after ``now`` (local time), or None when off."""
        local = now.astimezone(self.tz)
        for days in (0, 1):
            day = local.date() + timedelta(days=days)
            for slot in self.checkin_slots:
                at = datetime.combine(day, slot, tzinfo=self.tz)
                if at > local:
                    return at
        return None

    async def dispatch_due(self, now: datetime | None = None) -> DispatchReport:
        now = now or self.clock()
        return await self.scheduler.dispatch_due(now, self.preferences.get())

    def dismiss(self, notification_id: str):
        return self.scheduler.dismiss(notification_id)

    def restore(self, now: datetime | None = None) -> dict[str, int]:
        """Report ledger state after a restart.

        Active entries live only in the ledger, so nothing needs rebuilding;
        overdue ones go out on the next dispatch run.
        """
        now = now or self.clock()
        active = self.repository.get_active_notifications()
        overdue = [e for e in active if e.dispatch_at <= now]
        logger.info("Restored %d active notification(s), %d overdue", len(active), len(overdue))
        return {"active": len(active), "overdue": len(overdue)}

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def resolve_recommendation(self, recommendation_id: str) -> Recommendation:
        """Find the recommendation an outcome refers to.

        The ledger copy (what the user actually saw) wins over the catalog.

        Raises:
            ValueError: If the ID is neither on the ledger nor in the catalog.
        """
        entry = self.repository.find_by_payload_key(f"rec:{recommendation_id}")
        if entry is not None and entry.payload:
            return Recommendation.from_payload(entry.payload)
        candidate = self.catalog.get(recommendation_id)
        if candidate is None:
            raise ValueError(f"Unknown recommendation: {recommendation_id!r}")
        return Recommendation(
            id=candidate.id,
            type=candidate.type,
            title=candidate.title,
            category=candidate.category,
            confidence=candidate.base_confidence,
            urgency=candidate.urgency,
            time_to_complete=candidate.duration_minutes,
            difficulty=candidate.difficulty,
            reasoning="",
        )

    def record_outcome(self, outcome: OutcomeRecord) -> float:
        """Record an outcome and return the updated category weight."""
        recommendation = self.resolve_recommendation(outcome.recommendation_id)
        return self.feedback.record_outcome(recommendation, outcome)

    def record_activity_performance(self, activity_id: str, score: float):
        """Adapt an activity's difficulty to a new score.

        Raises:
            ValueError: If the activity is unknown or not adaptive.
        """
        candidate = self.catalog.get(activity_id)
        if candidate is None:
            raise ValueError(f"Unknown activity: {activity_id!r}")
        if not candidate.adaptive:
            raise ValueError(f"Activity {activity_id!r} has no adaptive difficulty")
        if score < 0:
            raise ValueError("score must not be negative")
        return self.feedback.record_activity_performance(activity_id, score)


class SchedulingTicker:
    """Drives the engine on a timer.

    Every ``dispatch_interval`` seconds due notifications are dispatched; a
    full scheduling pass runs when ``scheduling_interval`` has elapsed since
    the last one. The clock is injectable so tests can step time by hand.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        dispatch_interval: float,
        scheduling_interval: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._dispatch_interval = dispatch_interval
        self._scheduling_interval = scheduling_interval
        self._clock = clock or engine.clock
        self._last_pass: datetime | None = None
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def tick(self) -> DispatchReport:
        now = self._clock()
        if self._last_pass is None or now - self._last_pass >= self._scheduling_interval:
            self._engine.run_scheduling_pass(now)
            self._last_pass = now
        return await self._engine.dispatch_due(now)

    async def run(self) -> None:
        logger.info(
            "Scheduling ticker started (dispatch every %ss, pass every %s)",
            self._dispatch_interval, self._scheduling_interval,
        )
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduling tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._dispatch_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduling ticker stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
