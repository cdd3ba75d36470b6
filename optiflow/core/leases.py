"""
Durable leases: a named, time-bounded right to run something.

Used so that only one process at a time runs the dispatcher batch even
when several share the same database. Acquisition is one conditional
upsert, so it is atomic under SQLite's write lock.
"""

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable

from optiflow.core.db_sqlite import Database, utc_now, format_ts

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseManager:

    def __init__(self, db: Database, owner: str | None = None,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.owner = owner or default_owner()
        self.clock = clock

    def acquire(self, name: str, ttl: int) -> bool:
        """Take (or renew) lease ``name`` for ``ttl`` seconds if free, expired or ours."""
        now = self.clock()
        cur = self.db.execute(
            """INSERT INTO leases (name, owner, expires_at) VALUES (?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   owner = excluded.owner,
                   expires_at = excluded.expires_at
               WHERE leases.owner = excluded.owner OR leases.expires_at <= ?""",
            (name, self.owner, format_ts(now + timedelta(seconds=ttl)), format_ts(now)),
        )
        acquired = cur.rowcount == 1
        if not acquired:
            logger.info("Lease %r held by another worker", name)
        return acquired

    def release(self, name: str) -> bool:
        cur = self.db.execute(
            "DELETE FROM leases WHERE name = ? AND owner = ?", (name, self.owner)
        )
        return cur.rowcount == 1

    def holder(self, name: str) -> str | None:
        row = self.db.fetch_one(
            "SELECT owner FROM leases WHERE name = ? AND expires_at > ?",
            (name, format_ts(self.clock())),
        )
        return row['owner'] if row else None
