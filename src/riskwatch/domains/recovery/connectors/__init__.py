"""Recovery connectors — interfaces to the core's external collaborators."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from riskwatch.core.storage.models import ScheduledNotification, SignalSnapshot
    from riskwatch.domains.recovery.domain_logic.models import Preferences


class DispatchFailure(Exception):
    """Raised by a Notifier when a notification could not be delivered."""


@runtime_checkable
class SignalStore(Protocol):
    """Time-series store of behavioral check-ins.

    The core only appends and reads ranges; retention and export belong to
    the store.
    """

    def append_signal(self, snapshot: SignalSnapshot) -> str:
        """Persist a check-in and return its ID."""
        ...

    def query_range(self, start: datetime, end: datetime) -> list[SignalSnapshot]:
        """Check-ins with ``start <= timestamp <= end``, oldest first."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """Delivery sink for scheduled notifications.

    Returning False or raising (DispatchFailure or otherwise) counts as a
    failed delivery.
    """

    async def dispatch(self, notification: ScheduledNotification) -> bool:
        ...


@runtime_checkable
class PreferencesProvider(Protocol):
    """Source of the user's notification preferences.

    Read fresh for every scheduling decision, never cached by the core.
    """

    def get(self) -> Preferences:
        ...
