"""Concrete SignalStore, Notifier and PreferencesProvider implementations."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any

from riskwatch.core.config.settings import Settings
from riskwatch.core.storage.models import ScheduledNotification, SignalSnapshot
from riskwatch.core.storage.repository import RecoveryRepository
from riskwatch.domains.recovery.domain_logic.models import Preferences, QuietHours

logger = logging.getLogger(__name__)

_VALID_FREQUENCIES = ("minimal", "normal", "frequent")


def _check_hhmm(value: str) -> str:
    parts = value.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


class RepositorySignalStore:
    """SignalStore backed by the ``signal_entries`` table."""

    def __init__(self, repository: RecoveryRepository) -> None:
        self._repo = repository

    def append_signal(self, snapshot: SignalSnapshot) -> str:
        return self._repo.append_signal(snapshot)

    def query_range(self, start: datetime, end: datetime) -> list[SignalSnapshot]:
        return self._repo.query_signals(start, end)


class RepositoryPreferencesProvider:
    """Preferences persisted in the ``preferences`` table.

    Until the user saves preferences, defaults come from Settings.
    """

    def __init__(self, repository: RecoveryRepository, settings: Settings | None = None) -> None:
        self._repo = repository
        self._settings = settings or Settings()

    def _defaults(self) -> Preferences:
        return Preferences(
            quiet_hours=QuietHours(
                start=self._settings.default_quiet_start,
                end=self._settings.default_quiet_end,
            ),
            frequency=self._settings.default_frequency,
        )

    def get(self) -> Preferences:
        data = self._repo.get_preferences_data()
        if data is None:
            return self._defaults()
        return Preferences.from_dict(data)

    def update(
        self,
        *,
        quiet_start: str | None = None,
        quiet_end: str | None = None,
        frequency: str | None = None,
        category_toggles: dict[str, bool] | None = None,
    ) -> Preferences:
        """Apply an explicit user change and persist it.

        Toggles are merged into the existing ones.

        Raises:
            ValueError: On a malformed time or unknown frequency.
        """
        current = self.get()
        data: dict[str, Any] = current.as_dict()
        if quiet_start is not None:
            data["quiet_hours"]["start"] = _check_hhmm(quiet_start)
        if quiet_end is not None:
            data["quiet_hours"]["end"] = _check_hhmm(quiet_end)
        if frequency is not None:
            if frequency not in _VALID_FREQUENCIES:
                raise ValueError(
                    f"Unknown frequency {frequency!r}; expected one of {', '.join(_VALID_FREQUENCIES)}"
                )
            data["frequency"] = frequency
        if category_toggles:
            data["category_toggles"].update({str(k): bool(v) for k, v in category_toggles.items()})

        self._repo.save_preferences_data(data)
        logger.info("Preferences updated (frequency=%s)", data["frequency"])
        return Preferences.from_dict(data)


class LoggingNotifier:
    """Default Notifier: writes deliveries to the log. Always succeeds.

    ``delivered`` keeps only the most recent IDs.
    """

    def __init__(self, history: int = 100) -> None:
        self.delivered: deque[str] = deque(maxlen=history)

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        title = notification.payload.get("title", notification.category)
        logger.info(
            "Notification %s [%s/%s]: %s",
            notification.id,
            notification.priority,
            notification.category,
            title,
        )
        self.delivered.append(notification.id)
        return True
