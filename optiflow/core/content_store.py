"""
Subjects, captures and the users who recorded them.

These entities belong to the host content system; OptiFlow only reads
them (and writes webhook delivery metadata back onto captures). The
SQLite tables here give that system a concrete shape.
"""

import json
import logging
import sqlite3

from optiflow.core.db_sqlite import Database, utc_now, format_ts
from optiflow.core.models_sqlite import Subject, User, Capture

logger = logging.getLogger(__name__)


def _loads(value: str | None) -> dict:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed JSON column: %.80s", value)
        return {}
    return data if isinstance(data, dict) else {}


class ContentStore:
    """Read/write access to subjects, users and captures."""

    def __init__(self, db: Database):
        self.db = db

    # ── Subjects ──────────────────────────────────────────────────────

    def add_subject(self, title: str, url: str | None = None, status: str = "publish",
                    type: str = "post", seo_score: int = 0) -> Subject:
        cur = self.db.execute(
            "INSERT INTO subjects (title, url, status, type, seo_score) VALUES (?, ?, ?, ?, ?)",
            (title, url, status, type, seo_score),
        )
        return Subject(id=cur.lastrowid, title=title, url=url, status=status,
                       type=type, seo_score=seo_score)

    def get_subject(self, subject_id: int) -> Subject | None:
        row = self.db.fetch_one("SELECT * FROM subjects WHERE id = ?", (subject_id,))
        return Subject(**dict(row)) if row else None

    def subject_exists(self, subject_id: int) -> bool:
        return self.db.fetch_one(
            "SELECT 1 FROM subjects WHERE id = ?", (subject_id,)
        ) is not None

    def update_subject_score(self, subject_id: int, score: int):
        self.db.execute("UPDATE subjects SET seo_score = ? WHERE id = ?", (score, subject_id))

    # ── Users ─────────────────────────────────────────────────────────

    def add_user(self, display_name: str, email: str | None = None,
                 role: str | None = None) -> User:
        cur = self.db.execute(
            "INSERT INTO users (display_name, email, role) VALUES (?, ?, ?)",
            (display_name, email, role),
        )
        return User(id=cur.lastrowid, display_name=display_name, email=email, role=role)

    def get_user(self, user_id: int) -> User | None:
        row = self.db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User(**dict(row)) if row else None

    # ── Captures ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_capture(row: sqlite3.Row) -> Capture:
        data = dict(row)
        data['capture_data'] = _loads(data.get('capture_data'))
        data['metadata'] = _loads(data.get('metadata'))
        return Capture(**data)

    def add_capture(self, capture_type: str, user_id: int | None = None,
                    subject_id: int | None = None, capture_data: dict | None = None,
                    metadata: dict | None = None) -> Capture:
        now = format_ts(utc_now())
        cur = self.db.execute(
            """INSERT INTO captures
               (capture_type, user_id, subject_id, capture_data, metadata,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (capture_type, user_id, subject_id, json.dumps(capture_data or {}),
             json.dumps(metadata or {}), now, now),
        )
        return self.get_capture(cur.lastrowid)

    def get_capture(self, capture_id: int) -> Capture | None:
        row = self.db.fetch_one("SELECT * FROM captures WHERE id = ?", (capture_id,))
        return self._row_to_capture(row) if row else None

    def merge_capture_metadata(self, capture_id: int, values: dict) -> bool:
        """Merge ``values`` into the capture's metadata object."""
        with self.db.lock:
            capture = self.get_capture(capture_id)
            if not capture:
                return False
            metadata = dict(capture.metadata)
            metadata.update(values)
            self.db.execute(
                "UPDATE captures SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata), format_ts(utc_now()), capture_id),
            )
        return True
