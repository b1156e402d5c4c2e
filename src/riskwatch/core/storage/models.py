"""Data models for the RiskWatch persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

NotificationStatus = Literal["pending", "dispatched", "cancelled", "rescheduled"]
NotificationPriority = Literal["low", "normal", "high", "critical"]
NotificationKind = Literal["recommendation", "message"]

# Entries still waiting for dispatch. Only these occupy a de-duplication bucket.
ACTIVE_STATUSES: tuple[str, ...] = ("pending", "rescheduled")

PRIORITY_ORDER = {"low": 1, "normal": 2, "high": 3, "critical": 4}

# Valid range for every 1..5 self-reported rating
RATING_MIN = 1
RATING_MAX = 5


@dataclass(frozen=True)
class SignalSnapshot:
    """A point-in-time behavioral check-in.

    Ratings are 1..5. ``relapse`` marks a streak-breaking event. Notes are
    free text and are stored encrypted; the ratings are stored in the clear
    for indexed range queries.
    """

    mood: int
    stress: int
    sleep_quality: int
    craving_level: int
    social_support: int
    timestamp: datetime
    relapse: bool = False
    notes: str = ""
    source: str = "manual"
    id: str = ""

    def ratings(self) -> dict[str, int]:
        """Return the five 1..5 ratings keyed by column name."""
        return {
            "mood": self.mood,
            "stress": self.stress,
            "sleep_quality": self.sleep_quality,
            "craving_level": self.craving_level,
            "social_support": self.social_support,
        }

    def is_negative(self) -> bool:
        """A relapse or a strong craving counts as a negative outcome."""
        return self.relapse or self.craving_level >= 4


@dataclass
class ScheduledNotification:
    """One row of the notification ledger.

    ``payload`` is the serialized Recommendation or Message (stored encrypted).
    ``payload_key`` identifies the content so that re-scheduling the same
    recommendation into the same bucket is a no-op.
    """

    id: str
    category: str
    day_bucket: str  # 'YYYY-MM-DD' in the engine time zone
    kind: NotificationKind
    payload_key: str
    payload: dict[str, Any]
    priority: NotificationPriority
    status: NotificationStatus
    dispatch_at: datetime
    requested_at: datetime
    attempts: int = 0
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def with_changes(self, **changes: Any) -> ScheduledNotification:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass
class OutcomeRecord:
    """Result of a delivered recommendation. Append-only."""

    recommendation_id: str
    delivered: bool
    accepted: bool
    effectiveness_delta: float
    category: str = ""
    recorded_at: str = ""
    id: str = ""


@dataclass
class ActivityDifficulty:
    """Adaptive difficulty state for one activity."""

    activity_id: str
    difficulty: float
    target_score: int
    updated_at: str = ""


@dataclass
class LedgerSummary:
    """Counts of ledger entries by status."""

    counts: dict[str, int] = field(default_factory=dict)

    @property
    def active(self) -> int:
        return sum(self.counts.get(s, 0) for s in ACTIVE_STATUSES)
