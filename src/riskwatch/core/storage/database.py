"""SQLite database management for the RiskWatch data bank.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 3

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per behavioral check-in (the signal store)
CREATE TABLE IF NOT EXISTS signal_entries (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL,
    source          TEXT NOT NULL,

    -- Unencrypted 1..5 ratings (indexed range queries feed the analyzers)
    mood            INTEGER NOT NULL,
    stress          INTEGER NOT NULL,
    sleep_quality   INTEGER NOT NULL,
    craving_level   INTEGER NOT NULL,
    social_support  INTEGER NOT NULL,
    relapse         INTEGER NOT NULL DEFAULT 0,

    -- Encrypted free text
    notes_enc       TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Scheduled notifications, keyed by id (owned by the scheduler)
CREATE TABLE IF NOT EXISTS notification_ledger (
    id            TEXT PRIMARY KEY,
    category      TEXT NOT NULL,
    day_bucket    TEXT NOT NULL,
    kind          TEXT NOT NULL,
    payload_key   TEXT NOT NULL,
    payload_enc   TEXT,
    priority      TEXT NOT NULL,
    status        TEXT NOT NULL,
    dispatch_at   TEXT NOT NULL,
    requested_at  TEXT NOT NULL,
    attempts      INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT,
    created_at    TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Learned per-category effectiveness (category -> float in [0, 1])
CREATE TABLE IF NOT EXISTS category_weights (
    category    TEXT PRIMARY KEY,
    weight      REAL NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_signals_ts        ON signal_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_ledger_status     ON notification_ledger(status);
CREATE INDEX IF NOT EXISTS idx_ledger_dispatch   ON notification_ledger(dispatch_at);
CREATE INDEX IF NOT EXISTS idx_ledger_category   ON notification_ledger(category);

-- At most one active entry per (category, day) de-duplication bucket
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_active_bucket
    ON notification_ledger(category, day_bucket)
    WHERE status IN ('pending', 'rescheduled');
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (terminal notification states, rejected signals, outcomes)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    component       TEXT,
    subject_id      TEXT,
    input_hash      TEXT,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    duration_ms     REAL,
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_subject   ON audit_log(subject_id);
"""

# ---------------------------------------------------------------------------
# V3: Feedback loop state and stored preferences
# ---------------------------------------------------------------------------

_SCHEMA_V3 = """
CREATE TABLE IF NOT EXISTS outcome_records (
    id                   TEXT PRIMARY KEY,
    recommendation_id    TEXT NOT NULL,
    category             TEXT NOT NULL,
    delivered            INTEGER NOT NULL,
    accepted             INTEGER NOT NULL,
    effectiveness_delta  REAL NOT NULL,
    recorded_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_difficulty (
    activity_id   TEXT PRIMARY KEY,
    difficulty    REAL NOT NULL,
    target_score  INTEGER NOT NULL,
    updated_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Single-row table; preferences are mutated only by explicit user action
CREATE TABLE IF NOT EXISTS preferences (
    id           INTEGER PRIMARY KEY CHECK (id = 1),
    prefs_json   TEXT NOT NULL,
    updated_at   TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_outcomes_category ON outcome_records(category);
CREATE INDEX IF NOT EXISTS idx_outcomes_rec      ON outcome_records(recommendation_id);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class RecoveryDatabase:
    """SQLite database manager for the RiskWatch data bank.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing and for key-less runs.

    Usage::

        db = RecoveryDatabase(":memory:")
        db.initialize()
        conn = db.connection
        # ... use connection ...
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_file))
        else:
            self._conn = sqlite3.connect(":memory:")

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Recovery database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # V1 is CREATE IF NOT EXISTS throughout, so it is always applied
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        if current_version < 3:
            conn.executescript(_SCHEMA_V3)
            logger.info("Applied schema migration V3: feedback and preferences tables")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Recovery database closed")

    def __enter__(self) -> RecoveryDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
