"""Notification scheduling: quiet hours, spacing, de-duplication and dispatch.

Ledger state machine::

    pending -> dispatched
    pending -> rescheduled            (moved out of quiet hours)
    pending | rescheduled -> cancelled (disabled, superseded, dismissed,
                                        failed twice)
    rescheduled -> dispatched

``pending`` and ``rescheduled`` entries are *active*: both wait for dispatch
and both occupy their (category, day) de-duplication bucket. Every transition
is written to the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from riskwatch.core.audit.logger import AuditEvent, AuditLogger
from riskwatch.core.storage.models import (
    ACTIVE_STATUSES,
    NotificationKind,
    NotificationStatus,
    ScheduledNotification,
)
from riskwatch.core.storage.repository import (
    BucketClaim,
    BucketConflictError,
    RecoveryRepository,
)
from riskwatch.domains.recovery.connectors import DispatchFailure, Notifier
from riskwatch.domains.recovery.domain_logic.models import (
    CRITICAL_SPACING_MINUTES,
    FREQUENCY_SPACING_MINUTES,
    MAX_DISPATCH_ATTEMPTS,
    URGENCY_TO_PRIORITY,
    Message,
    Preferences,
    QuietHours,
    Recommendation,
    RiskLevel,
)

logger = logging.getLogger(__name__)

# Upper bound on spacing pushes for a single entry.
_MAX_SPACING_STEPS = 48


# ---------------------------------------------------------------------------
# Quiet hours
# ---------------------------------------------------------------------------

def _minutes(hhmm: str) -> int:
    hour, minute = hhmm.split(":")
    return int(hour) * 60 + int(minute)


def in_quiet_hours(local: datetime, quiet: QuietHours) -> bool:
    """Whether the local wall-clock time falls in ``[start, end)``.

    The window may wrap midnight. ``start == end`` means no quiet hours.
    """
    start, end = _minutes(quiet.start), _minutes(quiet.end)
    now = local.hour * 60 + local.minute
    if start == end:
        return False
    if start < end:
        return start <= now < end
    return now >= start or now < end


def quiet_hours_end(local: datetime, quiet: QuietHours) -> datetime:
    """The first window end strictly after ``local`` (same time zone)."""
    end = _minutes(quiet.end)
    candidate = local.replace(hour=end // 60, minute=end % 60, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate


def priority_for_urgency(urgency: str) -> str:
    return URGENCY_TO_PRIORITY[urgency]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass
class DispatchReport:
    """What one dispatch run did, by notification ID."""

    dispatched: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "rescheduled": self.rescheduled,
            "retried": self.retried,
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class NotificationScheduler:
    """Owns the notification ledger.

    Usage::

        scheduler = NotificationScheduler(repo, notifier, audit, tz=ZoneInfo("UTC"))
        scheduler.schedule_recommendation(rec, now, prefs, "high")
        report = await scheduler.dispatch_due(now, prefs)
    """

    def __init__(
        self,
        repository: RecoveryRepository,
        notifier: Notifier,
        audit: AuditLogger | None = None,
        *,
        tz: tzinfo | None = None,
        notifier_timeout: float = 5.0,
        retry_backoff: timedelta = timedelta(seconds=60),
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._audit = audit
        self._tz = tz or timezone.utc
        self._timeout = notifier_timeout
        self._backoff = retry_backoff
        self._dispatch_lock = asyncio.Lock()

    def local(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self._tz)

    def day_bucket(self, value: datetime) -> str:
        return self.local(value).date().isoformat()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_recommendation(
        self,
        recommendation: Recommendation,
        target: datetime,
        preferences: Preferences,
        risk_level: RiskLevel,
    ) -> BucketClaim | None:
        """Place a ranked recommendation on the ledger.

        Returns the bucket claim, or None when the category is disabled or a
        bucket conflict could not be resolved.
        """
        return self._schedule(
            kind="recommendation",
            category=recommendation.category,
            payload_key=f"rec:{recommendation.id}",
            payload=recommendation.to_payload(),
            priority=priority_for_urgency(recommendation.urgency),
            target=target,
            preferences=preferences,
            risk_level=risk_level,
        )

    def schedule_message(
        self,
        message: Message,
        target: datetime,
        preferences: Preferences,
        risk_level: RiskLevel,
    ) -> BucketClaim | None:
        """Place a system message (crisis support, milestone, check-in) on the ledger."""
        return self._schedule(
            kind="message",
            category=message.category,
            payload_key=f"msg:{message.id}",
            payload=message.to_payload(),
            priority=message.priority,
            target=target,
            preferences=preferences,
            risk_level=risk_level,
        )

    def _schedule(
        self,
        *,
        kind: NotificationKind,
        category: str,
        payload_key: str,
        payload: dict[str, Any],
        priority: str,
        target: datetime,
        preferences: Preferences,
        risk_level: RiskLevel,
    ) -> BucketClaim | None:
        if not preferences.category_enabled(category):
            logger.debug("Category %s disabled; not scheduling %s", category, payload_key)
            return None

        # Already waiting for dispatch (in any bucket): nothing to do.
        for existing in self._repo.get_active_notifications(category):
            if existing.payload_key == payload_key:
                return BucketClaim(entry=existing, created=False)

        dispatch_at, status = self._resolve_dispatch_time(
            target, category, priority, preferences, risk_level
        )
        entry = ScheduledNotification(
            id="",
            category=category,
            day_bucket=self.day_bucket(dispatch_at),
            kind=kind,
            payload_key=payload_key,
            payload=payload,
            priority=priority,
            status=status,
            dispatch_at=dispatch_at,
            requested_at=target,
        )

        for attempt in (1, 2):
            try:
                claim = self._repo.claim_bucket(entry)
            except BucketConflictError as exc:
                logger.warning(
                    "Scheduling conflict on %s/%s (attempt %d): %s",
                    category, entry.day_bucket, attempt, exc,
                )
                self._audit_event(
                    "scheduling_conflict",
                    subject_id=payload_key,
                    metadata={"category": category, "day_bucket": entry.day_bucket, "attempt": attempt},
                )
                continue
            self._record_claim(claim)
            return claim

        logger.error("Gave up scheduling %s after repeated bucket conflicts", payload_key)
        return None

    def _resolve_dispatch_time(
        self,
        target: datetime,
        category: str,
        priority: str,
        preferences: Preferences,
        risk_level: RiskLevel,
    ) -> tuple[datetime, NotificationStatus]:
        """Apply the quiet-hours override and spacing to a requested time."""
        critical = priority == "critical"
        if critical or risk_level == "critical":
            spacing = timedelta(minutes=CRITICAL_SPACING_MINUTES)
        else:
            spacing = timedelta(minutes=FREQUENCY_SPACING_MINUTES[preferences.frequency])

        dispatch_at = target
        moved = False
        for _ in range(_MAX_SPACING_STEPS):
            if not critical:
                local = self.local(dispatch_at)
                if in_quiet_hours(local, preferences.quiet_hours):
                    dispatch_at = quiet_hours_end(local, preferences.quiet_hours)
                    moved = True

            # An active entry in the target bucket gets superseded, not spaced against.
            neighbours = [
                n for n in self._repo.get_notifications_between(
                    dispatch_at - spacing,
                    dispatch_at + spacing,
                    statuses=(*ACTIVE_STATUSES, "dispatched"),
                )
                if not (
                    n.is_active
                    and n.category == category
                    and n.day_bucket == self.day_bucket(dispatch_at)
                )
                and (not critical or n.priority == "critical")
            ]
            if not neighbours:
                break
            dispatch_at = max(n.dispatch_at for n in neighbours) + spacing
        else:
            logger.warning("Spacing for %s did not settle; using %s", category, dispatch_at)
            local = self.local(dispatch_at)
            if not critical and in_quiet_hours(local, preferences.quiet_hours):
                dispatch_at = quiet_hours_end(local, preferences.quiet_hours)
                moved = True

        return dispatch_at, ("rescheduled" if moved else "pending")

    def _record_claim(self, claim: BucketClaim) -> None:
        if claim.superseded is not None:
            old = claim.superseded
            logger.info("Superseded %s in %s/%s", old.id, old.category, old.day_bucket)
            self._transition_audit(old, "active", "cancelled", reason="superseded")
        if claim.created:
            entry = claim.entry
            logger.info(
                "Scheduled %s (%s/%s, %s) at %s",
                entry.id, entry.category, entry.priority, entry.status, entry.dispatch_at,
            )
            self._transition_audit(entry, "new", entry.status)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_disabled_categories(self, preferences: Preferences) -> list[ScheduledNotification]:
        """Cancel every active entry of a category the user has disabled."""
        cancelled = []
        for category in preferences.disabled_categories():
            for entry in self._repo.get_active_notifications(category):
                updated = self._cancel(entry, "category_disabled")
                if updated is not None:
                    cancelled.append(updated)
        if cancelled:
            logger.info("Cancelled %d notification(s) of disabled categories", len(cancelled))
        return cancelled

    def dismiss(self, notification_id: str) -> ScheduledNotification | None:
        """Cancel an active entry on explicit user dismissal.

        Returns the entry (unchanged when no longer active), or None if unknown.
        """
        entry = self._repo.get_notification(notification_id)
        if entry is None:
            return None
        if not entry.is_active:
            return entry
        return self._cancel(entry, "dismissed") or self._repo.get_notification(notification_id)

    def _cancel(
        self, entry: ScheduledNotification, reason: str, *, failed: bool = False
    ) -> ScheduledNotification | None:
        """Cancel ``entry`` if its stored status is still the one it was read with.

        Returns None when another writer changed the entry first.
        """
        updated = self._repo.update_notification(
            entry.with_changes(status="cancelled", last_error=reason),
            expected_status=entry.status,
        )
        if updated is None:
            return None
        self._transition_audit(entry, entry.status, "cancelled", reason=reason, failed=failed)
        return updated

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_due(self, now: datetime, preferences: Preferences) -> DispatchReport:
        """Deliver every active entry due at ``now``.

        Quiet hours are re-checked here: a non-critical entry that comes due
        inside the window is moved to its end. A failed delivery is retried
        once after the backoff, then cancelled.

        Runs never overlap, and every entry is read again right before it is
        delivered, so an entry goes out at most once and a dismissal or
        category cancellation made during a run is respected.
        """
        report = DispatchReport()
        async with self._dispatch_lock:
            for due in self._repo.get_due_notifications(now):
                entry = self._repo.get_notification(due.id)
                if entry is None or not entry.is_active or entry.dispatch_at > now:
                    logger.debug("Skipping %s: changed since the due list was read", due.id)
                    continue
                await self._dispatch_one(entry, now, preferences, report)
        return report

    async def _dispatch_one(
        self,
        entry: ScheduledNotification,
        now: datetime,
        preferences: Preferences,
        report: DispatchReport,
    ) -> None:
        if entry.priority != "critical":
            local = self.local(now)
            if in_quiet_hours(local, preferences.quiet_hours):
                moved = self._move(
                    entry,
                    quiet_hours_end(local, preferences.quiet_hours),
                    status="rescheduled",
                    reason="quiet_hours",
                )
                if moved is not None:
                    (report.rescheduled if moved.is_active else report.cancelled).append(entry.id)
                return

        error = await self._deliver(entry)
        attempts = entry.attempts + 1
        if error is None:
            sent = self._repo.update_notification(
                entry.with_changes(status="dispatched", attempts=attempts, last_error=None),
                expected_status=entry.status,
            )
            if sent is None:
                logger.warning("%s changed state while it was being delivered", entry.id)
                return
            self._transition_audit(entry, entry.status, "dispatched")
            report.dispatched.append(entry.id)
        elif attempts < MAX_DISPATCH_ATTEMPTS:
            logger.warning("Dispatch of %s failed (%s); retrying", entry.id, error)
            moved = self._move(
                entry.with_changes(attempts=attempts),
                now + self._backoff,
                status=entry.status,
                reason=error,
                failed=True,
            )
            if moved is not None:
                (report.retried if moved.is_active else report.cancelled).append(entry.id)
        else:
            logger.error("Dispatch of %s failed again (%s); cancelling", entry.id, error)
            if self._cancel(entry.with_changes(attempts=attempts), error, failed=True) is not None:
                report.cancelled.append(entry.id)

    async def _deliver(self, entry: ScheduledNotification) -> str | None:
        """Call the notifier with a timeout. Returns an error string or None."""
        try:
            ok = await asyncio.wait_for(self._notifier.dispatch(entry), timeout=self._timeout)
        except asyncio.TimeoutError:
            return f"timeout after {self._timeout}s"
        except DispatchFailure as exc:
            return f"dispatch failure: {exc}"
        except Exception as exc:
            logger.exception("Notifier raised while dispatching %s", entry.id)
            return f"{type(exc).__name__}: {exc}"
        if not ok:
            return "notifier reported failure"
        return None

    def _move(
        self,
        entry: ScheduledNotification,
        dispatch_at: datetime,
        *,
        status: NotificationStatus,
        reason: str,
        failed: bool = False,
    ) -> ScheduledNotification | None:
        """Re-time an active entry; cancel it if its new bucket is taken.

        Returns None when another writer changed the entry first.
        """
        moved = entry.with_changes(
            dispatch_at=dispatch_at,
            day_bucket=self.day_bucket(dispatch_at),
            status=status,
            last_error=reason if failed else entry.last_error,
        )
        try:
            updated = self._repo.update_notification(moved, expected_status=entry.status)
        except BucketConflictError:
            logger.warning(
                "Bucket %s/%s already taken; cancelling %s",
                moved.category, moved.day_bucket, entry.id,
            )
            self._audit_event(
                "scheduling_conflict",
                subject_id=entry.id,
                metadata={"category": moved.category, "day_bucket": moved.day_bucket},
            )
            return self._cancel(entry, "superseded")
        if updated is None:
            return None
        self._transition_audit(
            entry, entry.status, status, reason=reason, dispatch_at=dispatch_at, failed=failed
        )
        return updated

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    def _transition_audit(
        self,
        entry: ScheduledNotification,
        from_status: str,
        to_status: str,
        *,
        reason: str | None = None,
        dispatch_at: datetime | None = None,
        failed: bool = False,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_transition(
            entry.id,
            from_status,
            to_status,
            category=entry.category,
            reason=reason,
            dispatch_at=dispatch_at or entry.dispatch_at,
            failed=failed,
        )

    def _audit_event(self, action: str, *, subject_id: str, metadata: dict[str, Any]) -> None:
        if self._audit is None:
            return
        self._audit.log_event(AuditEvent(
            action=action,
            component="scheduler",
            subject_id=subject_id,
            status="failure",
            error_type="SchedulingConflict",
            metadata=metadata,
        ))
