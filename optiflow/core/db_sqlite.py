"""
SQLite database layer for OptiFlow.
Thread-safe via check_same_thread=False + explicit locking.

Owns the connection and the schema. The job store, delivery queue,
lease manager and content store each keep their own queries and share
this connection.
"""

import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from optiflow.core.constants import DB_PATH

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority TEXT NOT NULL DEFAULT 'normal',
    priority_rank INTEGER NOT NULL DEFAULT 5,
    target_score INTEGER DEFAULT 90,
    current_score INTEGER DEFAULT 0,
    initial_score INTEGER DEFAULT 0,
    iterations INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,
    payload TEXT,
    result TEXT,
    error TEXT,
    scheduled_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    failed_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_subject_id ON jobs(subject_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_priority_scheduled
    ON jobs(priority_rank DESC, scheduled_at ASC);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);

-- one in-flight job per subject
CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_subject_in_flight
    ON jobs(subject_id) WHERE status IN ('pending', 'processing', 'retry');

CREATE TABLE IF NOT EXISTS webhook_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    capture_id INTEGER NOT NULL,
    destination_url TEXT NOT NULL,
    payload TEXT,
    attempts INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TEXT,
    updated_at TEXT,
    next_retry_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_webhook_queue_capture_id ON webhook_queue(capture_id);
CREATE INDEX IF NOT EXISTS idx_webhook_queue_status ON webhook_queue(status);
CREATE INDEX IF NOT EXISTS idx_webhook_queue_next_retry ON webhook_queue(next_retry_at);

CREATE TABLE IF NOT EXISTS leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subjects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    url TEXT,
    status TEXT DEFAULT 'publish',
    type TEXT DEFAULT 'post',
    seo_score INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    display_name TEXT NOT NULL,
    email TEXT,
    role TEXT
);

CREATE TABLE IF NOT EXISTS captures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    capture_type TEXT NOT NULL,
    user_id INTEGER,
    subject_id INTEGER,
    capture_data TEXT,
    metadata TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_captures_subject_id ON captures(subject_id);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 so timestamps compare correctly as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Database:
    """SQLite database wrapper for OptiFlow."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()
        logger.debug("Schema at version %d (%s)", _SCHEMA_VERSION, self.db_path)

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def execute(self, sql: str, params=()) -> sqlite3.Cursor:
        """Run a write statement and commit. Returns the cursor."""
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
            except sqlite3.Error:
                self.conn.rollback()
                raise
            self.conn.commit()
            return cur

    def fetch_one(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def scalar(self, sql: str, params=()):
        row = self.fetch_one(sql, params)
        return row[0] if row else None

    @staticmethod
    def placeholders(values) -> str:
        return ', '.join('?' for _ in values)
