"""Recovery domain models and constants for risk scoring, ranking and scheduling."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import time
from typing import Any, Literal

RiskLevel = Literal["low", "medium", "high", "critical"]
Urgency = Literal["low", "medium", "high", "critical"]
Difficulty = Literal["easy", "medium", "hard"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
RecommendationType = Literal["technique", "activity", "reminder", "social", "emergency"]
Frequency = Literal["minimal", "normal", "frequent"]


# ---------------------------------------------------------------------------
# Risk scoring constants
# ---------------------------------------------------------------------------

# Upper score bound (inclusive) for each level; anything above is critical.
LEVEL_THRESHOLDS: list[tuple[int, RiskLevel]] = [
    (20, "low"),
    (50, "medium"),
    (80, "high"),
]

SCORE_MIN = 0
SCORE_MAX = 100

ESCALATION_RESOURCES = [
    "Crisis hotline: call your local addiction helpline now",
    "Emergency services: call your local emergency number",
    "Peer support: contact your sponsor or a mutual-aid group meeting",
]

RISK_LEVEL_ORDER = {"low": 1, "medium": 2, "high": 3, "critical": 4}


@dataclass(frozen=True)
class RiskWeights:
    """Thresholds and additive weights of the risk score.

    These are hand-tuned values, kept here rather than inside the scoring
    function so they can be revised without touching the scoring logic.
    """

    low_mood_max: int = 2
    low_mood_weight: int = 25
    high_stress_min: int = 4
    high_stress_weight: int = 20
    poor_sleep_max: int = 2
    poor_sleep_weight: int = 15
    low_social_max: int = 2
    low_social_weight: int = 20
    high_craving_min: int = 4
    high_craving_weight: int = 30
    recurring_window_weight: int = 10


# ---------------------------------------------------------------------------
# Pattern analysis constants
# ---------------------------------------------------------------------------

MIN_HISTORY = 5                 # fewer entries -> insufficient_data
MIN_PERIOD_SAMPLES = 5          # a period needs more than this many observations
NEGATIVE_RATIO_THRESHOLD = 0.3
LOW_MOOD_MAX = 2
STREAK_MILESTONES = [1, 3, 7, 14, 30, 60, 90, 180, 365]

# Start hour of each period; night wraps midnight.
PERIOD_BOUNDARIES: list[tuple[int, int, TimeOfDay]] = [
    (6, 12, "morning"),
    (12, 18, "afternoon"),
    (18, 22, "evening"),
]

PERIOD_START_HOURS: dict[TimeOfDay, int] = {
    **{period: start for start, _, period in PERIOD_BOUNDARIES},
    "night": PERIOD_BOUNDARIES[-1][1],
}


# ---------------------------------------------------------------------------
# Ranking constants
# ---------------------------------------------------------------------------

URGENCY_WEIGHTS: dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}
DIFFICULTY_ORDER: dict[str, int] = {"easy": 1, "medium": 2, "hard": 3}
DEFAULT_CATEGORY_WEIGHT = 0.5   # neutral: confidence == base_confidence
DEFAULT_RANK_LIMIT = 5

HIGH_RISK_CATEGORIES = frozenset({"distraction", "breathing"})
LOW_MOOD_CATEGORIES = frozenset({"mindfulness"})

URGENCY_TO_PRIORITY: dict[str, str] = {
    "low": "low",
    "medium": "normal",
    "high": "high",
    "critical": "critical",
}


# ---------------------------------------------------------------------------
# Feedback loop constants
# ---------------------------------------------------------------------------

EMA_RETAIN = 0.8
EMA_LEARN = 0.2
DIFFICULTY_STEP = 0.1
DIFFICULTY_MIN = 0.5
DIFFICULTY_MAX = 3.0
DIFFICULTY_INITIAL = 1.0
TARGET_SCORE_INITIAL = 100
RAISE_RATIO = 0.9
LOWER_RATIO = 0.4


# ---------------------------------------------------------------------------
# Scheduling constants
# ---------------------------------------------------------------------------

FREQUENCY_SPACING_MINUTES: dict[str, int] = {
    "minimal": 12 * 60,
    "normal": 6 * 60,
    "frequent": 2 * 60,
}
CRITICAL_SPACING_MINUTES = 30
MAX_DISPATCH_ATTEMPTS = 2       # the first try plus one retry

CRISIS_CATEGORY = "crisis"
MILESTONE_CATEGORY = "milestone"
INTERVENTION_CATEGORY = "intervention"
PREVENTIVE_CATEGORY = "preventive"
CHECKIN_CATEGORY = "checkin"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RiskFactor:
    """A named contributor to a risk score."""

    name: str
    weight: int


@dataclass(frozen=True)
class RiskAssessment:
    """Risk classification derived from one snapshot (never persisted)."""

    level: RiskLevel
    score: int
    factors: tuple[RiskFactor, ...] = ()
    emergency_contacts_required: bool = False
    escalation_resources: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "score": self.score,
            "factors": [asdict(f) for f in self.factors],
            "emergency_contacts_required": self.emergency_contacts_required,
            "escalation_resources": list(self.escalation_resources),
        }


@dataclass(frozen=True)
class TriggerPattern:
    """A recurring high-risk time window mined from history."""

    trigger: str
    frequency: int
    severity: int            # 0..10
    time_of_day: TimeOfDay
    context: tuple[str, ...] = ()


@dataclass(frozen=True)
class TimePatternAnalysis:
    patterns: tuple[TriggerPattern, ...]
    sample_size: int
    insufficient_data: bool = False

    def flags(self, period: TimeOfDay) -> bool:
        """Whether ``period`` is a recurring risk window."""
        return any(p.time_of_day == period for p in self.patterns)


@dataclass(frozen=True)
class EmotionalTriggerSummary:
    risk_ratio: float        # share of entries with low mood
    average_mood: float
    low_mood_count: int
    sample_size: int
    insufficient_data: bool = False


@dataclass(frozen=True)
class StreakAnalysis:
    current_streak: int      # consecutive positive days
    milestone: int | None
    next_milestone: int | None
    is_new_milestone: bool = False


@dataclass(frozen=True)
class PatternAnalysis:
    """Aggregate output of one analyzer run. Recomputed, never mutated."""

    time: TimePatternAnalysis
    emotional: EmotionalTriggerSummary
    streak: StreakAnalysis

    @property
    def insufficient_data(self) -> bool:
        return self.time.insufficient_data

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": "insufficient_data" if self.insufficient_data else "ok",
            "time_patterns": [
                {**asdict(p), "context": list(p.context)} for p in self.time.patterns
            ],
            "sample_size": self.time.sample_size,
            "emotional_triggers": asdict(self.emotional),
            "streak": asdict(self.streak),
        }


@dataclass(frozen=True)
class CandidateIntervention:
    """A static catalog entry the ranker chooses from."""

    id: str
    title: str
    type: RecommendationType
    category: str
    duration_minutes: int
    difficulty: Difficulty
    base_confidence: float
    urgency: Urgency = "low"
    adaptive: bool = False
    description: str = ""


@dataclass(frozen=True)
class Recommendation:
    """A ranked intervention. A new ranking run produces new objects."""

    id: str
    type: RecommendationType
    title: str
    category: str
    confidence: float
    urgency: Urgency
    time_to_complete: int
    difficulty: Difficulty
    reasoning: str

    @property
    def score(self) -> float:
        return self.confidence * URGENCY_WEIGHTS[self.urgency]

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Recommendation:
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Message:
    """A system notification that is not a ranked recommendation."""

    id: str
    category: str
    title: str
    body: str
    priority: str = "normal"
    data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RankingContext:
    """Inputs to one ranking call besides the assessment."""

    time_of_day: TimeOfDay
    available_minutes: int
    mood: int
    category_toggles: dict[str, bool] = field(default_factory=dict)

    def category_enabled(self, category: str) -> bool:
        return self.category_toggles.get(category, True)


@dataclass(frozen=True)
class QuietHours:
    start: str = "22:00"     # 'HH:MM', window is [start, end)
    end: str = "08:00"


@dataclass(frozen=True)
class Preferences:
    """User notification preferences. Mutated only by explicit user action."""

    quiet_hours: QuietHours = QuietHours()
    category_toggles: dict[str, bool] = field(default_factory=dict)
    frequency: Frequency = "normal"

    def category_enabled(self, category: str) -> bool:
        return self.category_toggles.get(category, True)

    def disabled_categories(self) -> list[str]:
        return sorted(c for c, on in self.category_toggles.items() if not on)

    def as_dict(self) -> dict[str, Any]:
        return {
            "quiet_hours": {"start": self.quiet_hours.start, "end": self.quiet_hours.end},
            "category_toggles": dict(self.category_toggles),
            "frequency": self.frequency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Preferences:
        quiet = data.get("quiet_hours") or {}
        defaults = QuietHours()
        return cls(
            quiet_hours=QuietHours(
                start=quiet.get("start", defaults.start),
                end=quiet.get("end", defaults.end),
            ),
            category_toggles={str(k): bool(v) for k, v in (data.get("category_toggles") or {}).items()},
            frequency=data.get("frequency", "normal"),
        )


def level_for_score(score: int) -> RiskLevel:
    """Map a 0..100 score to its level (monotonic)."""
    for upper, level in LEVEL_THRESHOLDS:
        if score <= upper:
            return level
    return "critical"


def time_of_day_for_hour(hour: int) -> TimeOfDay:
    for start, end, period in PERIOD_BOUNDARIES:
        if start <= hour < end:
            return period
    return "night"


def parse_clock_times(value: str) -> list[time]:
    """Parse a comma-separated list of ``HH:MM`` times, sorted.

    Raises:
        ValueError: On a malformed or out-of-range entry.
    """
    times = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        hour, sep, minute = part.partition(":")
        if not sep or not hour.isdigit() or not minute.isdigit():
            raise ValueError(f"Expected HH:MM, got {part!r}")
        times.append(time(int(hour), int(minute)))
    return sorted(set(times))
