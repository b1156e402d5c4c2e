"""Recovery data repository — CRUD for the signal store, ledger and weight tables.

The repository mediates between domain objects (SignalSnapshot,
ScheduledNotification, ...) and the SQLite database, using FieldEncryptor to
encrypt/decrypt free text and notification payloads.

All datetimes are stored as UTC ISO 8601 strings with microsecond precision so
that lexical ordering in SQL matches chronological ordering.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from riskwatch.core.storage.database import RecoveryDatabase
from riskwatch.core.storage.encryption import FieldEncryptor
from riskwatch.core.storage.models import (
    ACTIVE_STATUSES,
    ActivityDifficulty,
    LedgerSummary,
    OutcomeRecord,
    ScheduledNotification,
    SignalSnapshot,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class BucketConflictError(RepositoryError):
    """Another active entry already occupies the (category, day) bucket."""


@dataclass
class BucketClaim:
    """Result of an atomic check-and-insert on a de-duplication bucket.

    ``entry`` is the entry that now occupies the bucket. ``created`` is False
    when an identical entry was already there (nothing written).
    ``superseded`` is the older entry that was cancelled to make room.
    """

    entry: ScheduledNotification
    created: bool
    superseded: ScheduledNotification | None = None


def to_db_time(value: datetime) -> str:
    """Serialize an aware datetime as a UTC ISO string (naive = UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecoveryRepository:
    """CRUD repository for signals, the notification ledger and learned weights.

    Usage::

        db = RecoveryDatabase(":memory:")
        db.initialize()
        repo = RecoveryRepository(db, FieldEncryptor(key))

        repo.append_signal(snapshot)
        history = repo.query_signals(since, until)
    """

    def __init__(self, database: RecoveryDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor
        # Serializes bucket check-and-insert within this process; the partial
        # UNIQUE index covers other processes.
        self._lock = threading.RLock()

    @property
    def database(self) -> RecoveryDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Signal store
    # ------------------------------------------------------------------

    def append_signal(self, snapshot: SignalSnapshot) -> str:
        """Persist a check-in. Returns the signal ID (generated if empty)."""
        sid = snapshot.id or self._new_id()
        conn = self._db.connection
        conn.execute(
            """INSERT INTO signal_entries (
                id, timestamp, source, mood, stress, sleep_quality,
                craving_level, social_support, relapse, notes_enc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                sid,
                to_db_time(snapshot.timestamp),
                snapshot.source,
                snapshot.mood,
                snapshot.stress,
                snapshot.sleep_quality,
                snapshot.craving_level,
                snapshot.social_support,
                1 if snapshot.relapse else 0,
                self._enc.encrypt(snapshot.notes) if snapshot.notes else None,
            ),
        )
        conn.commit()
        logger.debug("Appended signal %s at %s", sid, snapshot.timestamp)
        return sid

    def query_signals(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        *,
        limit: int | None = None,
    ) -> list[SignalSnapshot]:
        """Return signals in ``[since, until]``, oldest first.

        With ``limit`` the newest ``limit`` entries of the range are returned
        (still oldest first).
        """
        conditions: list[str] = []
        params: list[Any] = []
        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(to_db_time(since))
        if until is not None:
            conditions.append("timestamp <= ?")
            params.append(to_db_time(until))

        query = "SELECT * FROM signal_entries"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_signal(row) for row in reversed(rows)]

    def get_latest_signal(self) -> SignalSnapshot | None:
        results = self.query_signals(limit=1)
        return results[0] if results else None

    def count_signals(self) -> int:
        row = self._db.connection.execute("SELECT COUNT(*) FROM signal_entries").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Notification ledger
    # ------------------------------------------------------------------

    def claim_bucket(self, entry: ScheduledNotification) -> BucketClaim:
        """Atomically place ``entry`` in its (category, day_bucket).

        * Same ``payload_key`` already active in the bucket: nothing written.
        * A different active entry: it is cancelled (``superseded``) and
          ``entry`` is inserted.
        * Empty bucket: ``entry`` is inserted.

        Raises:
            BucketConflictError: If another writer filled the bucket between
                the check and the insert.
        """
        with self._lock:
            conn = self._db.connection
            existing_row = conn.execute(
                f"""SELECT * FROM notification_ledger
                    WHERE category = ? AND day_bucket = ?
                    AND status IN ({_placeholders(ACTIVE_STATUSES)})""",
                (entry.category, entry.day_bucket, *ACTIVE_STATUSES),
            ).fetchone()
            existing = self._row_to_notification(existing_row) if existing_row else None

            if existing is not None and existing.payload_key == entry.payload_key:
                return BucketClaim(entry=existing, created=False)

            eid = entry.id or self._new_id()
            now = self._now_iso()
            stored = entry.with_changes(id=eid, created_at=now, updated_at=now)
            superseded = None
            try:
                if existing is not None:
                    superseded = existing.with_changes(
                        status="cancelled", last_error="superseded", updated_at=now
                    )
                    self._write_status(conn, superseded)
                self._insert_notification(conn, stored)
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise BucketConflictError(
                    f"Bucket {entry.category}/{entry.day_bucket} is already occupied"
                ) from exc
            return BucketClaim(entry=stored, created=True, superseded=superseded)

    def _insert_notification(
        self, conn: sqlite3.Connection, entry: ScheduledNotification
    ) -> None:
        conn.execute(
            """INSERT INTO notification_ledger (
                id, category, day_bucket, kind, payload_key, payload_enc,
                priority, status, dispatch_at, requested_at, attempts,
                last_error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.category,
                entry.day_bucket,
                entry.kind,
                entry.payload_key,
                self._enc.encrypt(entry.payload),
                entry.priority,
                entry.status,
                to_db_time(entry.dispatch_at),
                to_db_time(entry.requested_at),
                entry.attempts,
                entry.last_error,
                entry.created_at,
                entry.updated_at,
            ),
        )

    @staticmethod
    def _write_status(conn: sqlite3.Connection, entry: ScheduledNotification) -> None:
        conn.execute(
            """UPDATE notification_ledger
               SET status = ?, dispatch_at = ?, day_bucket = ?, attempts = ?,
                   last_error = ?, updated_at = ?
               WHERE id = ?""",
            (
                entry.status,
                to_db_time(entry.dispatch_at),
                entry.day_bucket,
                entry.attempts,
                entry.last_error,
                entry.updated_at,
                entry.id,
            ),
        )

    def update_notification(
        self,
        entry: ScheduledNotification,
        *,
        expected_status: str | None = None,
    ) -> ScheduledNotification | None:
        """Persist status/dispatch changes of an existing ledger entry.

        With ``expected_status`` the write only happens while the stored row
        still has that status; otherwise None is returned and nothing changes.
        This keeps a terminal status from being overwritten by a writer that
        read the entry earlier.

        Raises:
            BucketConflictError: If the move would put two active entries in
                one bucket.
            RepositoryError: If the entry does not exist.
        """
        updated = entry.with_changes(updated_at=self._now_iso())
        query = """UPDATE notification_ledger
                   SET status = ?, dispatch_at = ?, day_bucket = ?, attempts = ?,
                       last_error = ?, updated_at = ?
                   WHERE id = ?"""
        params: list[Any] = [
            updated.status,
            to_db_time(updated.dispatch_at),
            updated.day_bucket,
            updated.attempts,
            updated.last_error,
            updated.updated_at,
            updated.id,
        ]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        with self._lock:
            conn = self._db.connection
            try:
                cursor = conn.execute(query, params)
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise BucketConflictError(
                    f"Bucket {updated.category}/{updated.day_bucket} is already occupied"
                ) from exc
        if cursor.rowcount == 0:
            current = self.get_notification(entry.id)
            if current is None:
                raise RepositoryError(f"Notification not found: {entry.id!r}")
            logger.info(
                "Notification %s is %s, not %s; update skipped",
                entry.id, current.status, expected_status,
            )
            return None
        return updated

    def get_notification(self, notification_id: str) -> ScheduledNotification | None:
        row = self._db.connection.execute(
            "SELECT * FROM notification_ledger WHERE id = ?", (notification_id,)
        ).fetchone()
        return self._row_to_notification(row) if row else None

    def find_by_payload_key(self, payload_key: str) -> ScheduledNotification | None:
        """Most recent ledger entry carrying the given payload key."""
        row = self._db.connection.execute(
            """SELECT * FROM notification_ledger WHERE payload_key = ?
               ORDER BY created_at DESC LIMIT 1""",
            (payload_key,),
        ).fetchone()
        return self._row_to_notification(row) if row else None

    def list_notifications(
        self,
        *,
        statuses: tuple[str, ...] | None = None,
        category: str | None = None,
        limit: int = 100,
    ) -> list[ScheduledNotification]:
        """Query ledger entries ordered by dispatch time (earliest first)."""
        conditions: list[str] = []
        params: list[Any] = []
        if statuses:
            conditions.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        if category:
            conditions.append("category = ?")
            params.append(category)

        query = "SELECT * FROM notification_ledger"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY dispatch_at ASC, created_at ASC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def get_active_notifications(self, category: str | None = None) -> list[ScheduledNotification]:
        return self.list_notifications(statuses=ACTIVE_STATUSES, category=category, limit=10_000)

    def get_due_notifications(self, now: datetime) -> list[ScheduledNotification]:
        """Active entries whose ``dispatch_at`` is at or before ``now``."""
        rows = self._db.connection.execute(
            f"""SELECT * FROM notification_ledger
                WHERE status IN ({_placeholders(ACTIVE_STATUSES)}) AND dispatch_at <= ?
                ORDER BY dispatch_at ASC""",
            (*ACTIVE_STATUSES, to_db_time(now)),
        ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def get_notifications_between(
        self,
        start: datetime,
        end: datetime,
        *,
        statuses: tuple[str, ...],
    ) -> list[ScheduledNotification]:
        """Entries with ``start < dispatch_at < end`` in the given statuses."""
        rows = self._db.connection.execute(
            f"""SELECT * FROM notification_ledger
                WHERE status IN ({_placeholders(statuses)})
                AND dispatch_at > ? AND dispatch_at < ?
                ORDER BY dispatch_at ASC""",
            (*statuses, to_db_time(start), to_db_time(end)),
        ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def count_by_status(self) -> LedgerSummary:
        rows = self._db.connection.execute(
            "SELECT status, COUNT(*) FROM notification_ledger GROUP BY status"
        ).fetchall()
        return LedgerSummary(counts={row[0]: row[1] for row in rows})

    # ------------------------------------------------------------------
    # Category weights (feedback loop state)
    # ------------------------------------------------------------------

    def get_category_weights(self) -> dict[str, float]:
        rows = self._db.connection.execute(
            "SELECT category, weight FROM category_weights"
        ).fetchall()
        return {row[0]: row[1] for row in rows}

    def get_category_weight(self, category: str, default: float) -> float:
        row = self._db.connection.execute(
            "SELECT weight FROM category_weights WHERE category = ?", (category,)
        ).fetchone()
        return row[0] if row else default

    def set_category_weight(self, category: str, weight: float) -> None:
        conn = self._db.connection
        conn.execute(
            """INSERT INTO category_weights (category, weight, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(category) DO UPDATE SET
                   weight = excluded.weight,
                   updated_at = excluded.updated_at""",
            (category, weight, self._now_iso()),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Adaptive activity difficulty
    # ------------------------------------------------------------------

    def get_activity_difficulty(self, activity_id: str) -> ActivityDifficulty | None:
        row = self._db.connection.execute(
            "SELECT * FROM activity_difficulty WHERE activity_id = ?", (activity_id,)
        ).fetchone()
        if row is None:
            return None
        return ActivityDifficulty(
            activity_id=row["activity_id"],
            difficulty=row["difficulty"],
            target_score=row["target_score"],
            updated_at=row["updated_at"],
        )

    def save_activity_difficulty(self, state: ActivityDifficulty) -> None:
        conn = self._db.connection
        conn.execute(
            """INSERT INTO activity_difficulty (activity_id, difficulty, target_score, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(activity_id) DO UPDATE SET
                   difficulty = excluded.difficulty,
                   target_score = excluded.target_score,
                   updated_at = excluded.updated_at""",
            (state.activity_id, state.difficulty, state.target_score, self._now_iso()),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Outcome records (append-only)
    # ------------------------------------------------------------------

    def append_outcome(self, outcome: OutcomeRecord) -> str:
        oid = outcome.id or self._new_id()
        conn = self._db.connection
        conn.execute(
            """INSERT INTO outcome_records (
                id, recommendation_id, category, delivered, accepted,
                effectiveness_delta, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                oid,
                outcome.recommendation_id,
                outcome.category,
                1 if outcome.delivered else 0,
                1 if outcome.accepted else 0,
                outcome.effectiveness_delta,
                outcome.recorded_at or self._now_iso(),
            ),
        )
        conn.commit()
        return oid

    def get_outcomes(
        self,
        *,
        category: str | None = None,
        limit: int = 50,
    ) -> list[OutcomeRecord]:
        """Outcome records, newest first."""
        query = "SELECT * FROM outcome_records"
        params: list[Any] = []
        if category:
            query += " WHERE category = ?"
            params.append(category)
        query += " ORDER BY recorded_at DESC LIMIT ?"
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [
            OutcomeRecord(
                id=row["id"],
                recommendation_id=row["recommendation_id"],
                category=row["category"],
                delivered=bool(row["delivered"]),
                accepted=bool(row["accepted"]),
                effectiveness_delta=row["effectiveness_delta"],
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences_data(self) -> dict[str, Any] | None:
        row = self._db.connection.execute(
            "SELECT prefs_json FROM preferences WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise RepositoryError(f"Stored preferences are corrupt: {exc}") from exc

    def save_preferences_data(self, data: dict[str, Any]) -> None:
        conn = self._db.connection
        conn.execute(
            """INSERT INTO preferences (id, prefs_json, updated_at) VALUES (1, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   prefs_json = excluded.prefs_json,
                   updated_at = excluded.updated_at""",
            (json.dumps(data, sort_keys=True), self._now_iso()),
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _row_to_signal(self, row: Any) -> SignalSnapshot:
        notes = self._enc.decrypt(row["notes_enc"] or "")
        return SignalSnapshot(
            id=row["id"],
            timestamp=from_db_time(row["timestamp"]),
            source=row["source"],
            mood=row["mood"],
            stress=row["stress"],
            sleep_quality=row["sleep_quality"],
            craving_level=row["craving_level"],
            social_support=row["social_support"],
            relapse=bool(row["relapse"]),
            notes=notes or "",
        )

    def _row_to_notification(self, row: Any) -> ScheduledNotification:
        return ScheduledNotification(
            id=row["id"],
            category=row["category"],
            day_bucket=row["day_bucket"],
            kind=row["kind"],
            payload_key=row["payload_key"],
            payload=self._enc.decrypt(row["payload_enc"] or "") or {},
            priority=row["priority"],
            status=row["status"],
            dispatch_at=from_db_time(row["dispatch_at"]),
            requested_at=from_db_time(row["requested_at"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _placeholders(values: tuple[Any, ...]) -> str:
    return ",".join("?" for _ in values)
