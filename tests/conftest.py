"""Shared test fixtures for RiskWatch tests."""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("TIMEZONE", "UTC")
    monkeypatch.setenv("CATALOG_PATH", "")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from riskwatch.core.config.settings import Settings  # noqa: E402
from riskwatch.core.storage.models import ScheduledNotification  # noqa: E402
from riskwatch.domains.recovery.connectors import DispatchFailure  # noqa: E402

# A Tuesday afternoon, well clear of the default 22:00-08:00 quiet hours.
FIXED_NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock and notifier doubles
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that accepts everything and remembers what it got."""

    def __init__(self) -> None:
        self.sent: list[ScheduledNotification] = []

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        self.sent.append(notification)
        return True


class FailingNotifier:
    """Notifier that always fails, by raising or by returning False."""

    def __init__(self, *, raise_error: bool = True) -> None:
        self.raise_error = raise_error
        self.calls = 0

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        self.calls += 1
        if self.raise_error:
            raise DispatchFailure("push gateway unavailable")
        return False


class SlowNotifier:
    """Notifier that takes ``delay`` seconds per delivery and records what it sent."""

    def __init__(self, delay: float = 1.0) -> None:
        self.delay = delay
        self.sent: list[ScheduledNotification] = []

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        await asyncio.sleep(self.delay)
        self.sent.append(notification)
        return True


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def rejecting_notifier() -> FailingNotifier:
    return FailingNotifier(raise_error=False)


@pytest.fixture
def slow_notifier() -> SlowNotifier:
    return SlowNotifier()


@pytest.fixture
def delayed_notifier() -> SlowNotifier:
    """Delivers successfully, but only after 50 ms."""
    return SlowNotifier(delay=0.05)


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def recovery_db():
    """Create an in-memory RecoveryDatabase for testing."""
    from riskwatch.core.storage.database import RecoveryDatabase

    db = RecoveryDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from riskwatch.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def recovery_repository(recovery_db, field_encryptor):
    """Create a RecoveryRepository backed by in-memory SQLite."""
    from riskwatch.core.storage.repository import RecoveryRepository

    return RecoveryRepository(recovery_db, field_encryptor)


@pytest.fixture
def audit_logger(recovery_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from riskwatch.core.audit.logger import AuditLogger

    return AuditLogger(recovery_db)


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def catalog():
    """The packaged intervention catalog."""
    from riskwatch.domains.recovery.domain_logic.catalog import load_catalog_file

    return load_catalog_file()


@pytest.fixture
def preferences_provider(recovery_repository, settings):
    from riskwatch.domains.recovery.connectors.providers import RepositoryPreferencesProvider

    return RepositoryPreferencesProvider(recovery_repository, settings)


@pytest.fixture
def scheduler(recovery_repository, notifier, audit_logger):
    from riskwatch.domains.recovery.domain_logic.scheduler import NotificationScheduler

    return NotificationScheduler(
        recovery_repository, notifier, audit_logger, notifier_timeout=0.2
    )


@pytest.fixture
def engine(recovery_repository, catalog, notifier, preferences_provider, settings, audit_logger, clock):
    from riskwatch.domains.recovery.domain_logic.engine import Engine

    return Engine(
        recovery_repository,
        catalog,
        notifier,
        preferences_provider,
        settings,
        audit_logger,
        clock=clock,
    )
