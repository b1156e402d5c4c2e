"""Validation of incoming behavioral check-ins.

Out-of-range ratings are rejected, never clamped.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from riskwatch.core.storage.models import RATING_MAX, RATING_MIN, SignalSnapshot

RATING_FIELDS = ("mood", "stress", "sleep_quality", "craving_level", "social_support")

# Tolerated clock difference between the reporting device and the server.
MAX_FUTURE_SKEW = timedelta(minutes=5)


class InvalidSignalError(ValueError):
    """Raised when a check-in is missing fields or has out-of-range ratings."""


def validate_snapshot(snapshot: SignalSnapshot, *, now: datetime | None = None) -> SignalSnapshot:
    """Return ``snapshot`` unchanged if valid.

    With ``now``, a timestamp more than ``MAX_FUTURE_SKEW`` ahead of it is
    rejected.

    Raises:
        InvalidSignalError: On a non-integer or out-of-range rating, or a
            missing/naive/future timestamp.
    """
    for name, value in snapshot.ratings().items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidSignalError(f"{name} must be an integer, got {value!r}")
        if not RATING_MIN <= value <= RATING_MAX:
            raise InvalidSignalError(
                f"{name} must be between {RATING_MIN} and {RATING_MAX}, got {value}"
            )
    if not isinstance(snapshot.timestamp, datetime):
        raise InvalidSignalError("timestamp must be a datetime")
    if snapshot.timestamp.tzinfo is None:
        raise InvalidSignalError("timestamp must be timezone-aware")
    if now is not None and snapshot.timestamp > now + MAX_FUTURE_SKEW:
        raise InvalidSignalError(
            f"timestamp {snapshot.timestamp.isoformat()} is in the future"
        )
    return snapshot


def snapshot_from_dict(data: dict[str, Any], *, default_time: datetime | None = None) -> SignalSnapshot:
    """Build and validate a snapshot from loosely-typed input (tool calls).

    ``default_time`` is the receive time: it stamps input without a timestamp
    and bounds how far in the future a supplied one may lie.

    Raises:
        InvalidSignalError: If a field is missing or malformed.
    """
    missing = [f for f in RATING_FIELDS if data.get(f) is None]
    if missing:
        raise InvalidSignalError(f"Missing rating(s): {', '.join(missing)}")

    raw_ts = data.get("timestamp")
    if raw_ts in (None, ""):
        timestamp = default_time or datetime.now(timezone.utc)
    elif isinstance(raw_ts, datetime):
        timestamp = raw_ts
    else:
        try:
            timestamp = datetime.fromisoformat(str(raw_ts))
        except ValueError as exc:
            raise InvalidSignalError(f"Invalid timestamp: {raw_ts!r}") from exc
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    snapshot = SignalSnapshot(
        mood=data["mood"],
        stress=data["stress"],
        sleep_quality=data["sleep_quality"],
        craving_level=data["craving_level"],
        social_support=data["social_support"],
        timestamp=timestamp,
        relapse=bool(data.get("relapse", False)),
        notes=str(data.get("notes") or ""),
        source=str(data.get("source") or "manual"),
    )
    return validate_snapshot(snapshot, now=default_time)
