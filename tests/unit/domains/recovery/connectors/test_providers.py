"""Tests for the repository-backed connectors and the logging notifier."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from riskwatch.core.storage.models import ScheduledNotification, SignalSnapshot
from riskwatch.domains.recovery.connectors import (
    Notifier,
    PreferencesProvider,
    SignalStore,
)
from riskwatch.domains.recovery.connectors.providers import (
    LoggingNotifier,
    RepositoryPreferencesProvider,
    RepositorySignalStore,
)

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)


def _run(coro):
    """Run an async function synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _entry(notification_id: str) -> ScheduledNotification:
    return ScheduledNotification(
        id=notification_id,
        category="breathing",
        day_bucket="2026-03-10",
        kind="recommendation",
        payload_key="rec:box-breathing",
        payload={"title": "Box breathing"},
        priority="normal",
        status="pending",
        dispatch_at=NOW,
        requested_at=NOW,
    )


class TestProtocols:
    def test_implementations_satisfy_protocols(self, recovery_repository, preferences_provider):
        assert isinstance(RepositorySignalStore(recovery_repository), SignalStore)
        assert isinstance(preferences_provider, PreferencesProvider)
        assert isinstance(LoggingNotifier(), Notifier)


class TestRepositorySignalStore:
    def test_append_and_query_range(self, recovery_repository):
        store = RepositorySignalStore(recovery_repository)
        for hours in (30, 2, 1):
            store.append_signal(SignalSnapshot(3, 3, 3, 3, 3, timestamp=NOW - timedelta(hours=hours)))
        recent = store.query_range(NOW - timedelta(hours=3), NOW)
        assert [s.timestamp for s in recent] == [NOW - timedelta(hours=2), NOW - timedelta(hours=1)]


class TestRepositoryPreferencesProvider:
    def test_defaults_from_settings(self, preferences_provider):
        prefs = preferences_provider.get()
        assert prefs.quiet_hours.start == "22:00"
        assert prefs.quiet_hours.end == "08:00"
        assert prefs.frequency == "normal"
        assert prefs.category_toggles == {}

    def test_settings_override_defaults(self, recovery_repository, monkeypatch):
        from riskwatch.core.config.settings import Settings

        monkeypatch.setenv("DEFAULT_QUIET_START", "23:30")
        monkeypatch.setenv("DEFAULT_FREQUENCY", "minimal")
        prefs = RepositoryPreferencesProvider(recovery_repository, Settings()).get()
        assert prefs.quiet_hours.start == "23:30"
        assert prefs.frequency == "minimal"

    def test_update_persists(self, recovery_repository, settings):
        provider = RepositoryPreferencesProvider(recovery_repository, settings)
        provider.update(quiet_start="21:00", frequency="frequent")
        fresh = RepositoryPreferencesProvider(recovery_repository, settings).get()
        assert fresh.quiet_hours.start == "21:00"
        assert fresh.quiet_hours.end == "08:00"
        assert fresh.frequency == "frequent"

    def test_toggles_are_merged(self, preferences_provider):
        preferences_provider.update(category_toggles={"social": False})
        prefs = preferences_provider.update(category_toggles={"physical": False, "social": True})
        assert prefs.category_toggles == {"social": True, "physical": False}
        assert prefs.disabled_categories() == ["physical"]

    def test_time_normalized(self, preferences_provider):
        assert preferences_provider.update(quiet_end="7:05").quiet_hours.end == "07:05"

    @pytest.mark.parametrize("value", ["25:00", "10:60", "ten", "10-30", ""])
    def test_bad_time_rejected(self, preferences_provider, value):
        with pytest.raises(ValueError):
            preferences_provider.update(quiet_start=value)

    def test_bad_frequency_rejected(self, preferences_provider):
        with pytest.raises(ValueError, match="Unknown frequency"):
            preferences_provider.update(frequency="hourly")
        assert preferences_provider.get().frequency == "normal"


class TestLoggingNotifier:
    def test_records_delivery(self, caplog):
        notifier = LoggingNotifier()
        entry = _entry("n-1")
        with caplog.at_level("INFO"):
            assert _run(notifier.dispatch(entry)) is True
        assert list(notifier.delivered) == ["n-1"]
        assert "Box breathing" in caplog.text

    def test_delivery_log_is_bounded(self):
        notifier = LoggingNotifier(history=2)
        for i in range(5):
            _run(notifier.dispatch(_entry(f"n-{i}")))
        assert list(notifier.delivered) == ["n-3", "n-4"]
