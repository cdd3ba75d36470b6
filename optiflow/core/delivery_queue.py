"""
Persistent retry queue for webhook deliveries that failed transiently.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Callable

from optiflow.core.constants import DeliveryStatus
from optiflow.core.db_sqlite import Database, utc_now, format_ts
from optiflow.core.models_sqlite import WebhookDeliveryItem

logger = logging.getLogger(__name__)


class DeliveryQueue:

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> WebhookDeliveryItem:
        data = dict(row)
        try:
            data['payload'] = json.loads(data['payload']) if data.get('payload') else {}
        except json.JSONDecodeError:
            logger.warning("Delivery item %s has a malformed payload", data['id'])
            data['payload'] = {}
        return WebhookDeliveryItem(**data)

    def add(self, capture_id: int, destination_url: str, payload: dict,
            next_retry_at: datetime, attempts: int = 1, error: str | None = None) -> int:
        now = format_ts(self.clock())
        cur = self.db.execute(
            """INSERT INTO webhook_queue
               (capture_id, destination_url, payload, attempts, status, error,
                created_at, updated_at, next_retry_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (capture_id, destination_url, json.dumps(payload, default=str), attempts,
             DeliveryStatus.PENDING, error, now, now, format_ts(next_retry_at)),
        )
        logger.info("Webhook for capture %s queued for retry at %s",
                    capture_id, format_ts(next_retry_at))
        return cur.lastrowid

    def get(self, item_id: int) -> WebhookDeliveryItem | None:
        row = self.db.fetch_one("SELECT * FROM webhook_queue WHERE id = ?", (item_id,))
        return self._row_to_item(row) if row else None

    def due(self, limit: int = 10) -> list[WebhookDeliveryItem]:
        """Pending items whose next_retry_at has passed, oldest first."""
        rows = self.db.fetch_all(
            """SELECT * FROM webhook_queue
               WHERE status = ? AND next_retry_at <= ?
               ORDER BY next_retry_at ASC, id ASC
               LIMIT ?""",
            (DeliveryStatus.PENDING, format_ts(self.clock()), limit),
        )
        return [self._row_to_item(r) for r in rows]

    def for_capture(self, capture_id: int) -> list[WebhookDeliveryItem]:
        rows = self.db.fetch_all(
            "SELECT * FROM webhook_queue WHERE capture_id = ? ORDER BY id", (capture_id,)
        )
        return [self._row_to_item(r) for r in rows]

    def delete(self, item_id: int) -> bool:
        cur = self.db.execute("DELETE FROM webhook_queue WHERE id = ?", (item_id,))
        return cur.rowcount == 1

    def record_failure(self, item_id: int, attempts: int, next_retry_at: datetime,
                       error: str | None = None) -> bool:
        cur = self.db.execute(
            """UPDATE webhook_queue
               SET attempts = ?, next_retry_at = ?, error = ?, updated_at = ?
               WHERE id = ?""",
            (attempts, format_ts(next_retry_at), (error or "")[:2000] or None,
             format_ts(self.clock()), item_id),
        )
        return cur.rowcount == 1

    def mark_failed(self, item_id: int, attempts: int, error: str | None = None) -> bool:
        cur = self.db.execute(
            "UPDATE webhook_queue SET status = ?, attempts = ?, error = ?, updated_at = ? WHERE id = ?",
            (DeliveryStatus.FAILED, attempts, (error or "")[:2000] or None,
             format_ts(self.clock()), item_id),
        )
        if cur.rowcount:
            logger.warning("Webhook delivery %s permanently failed after %d attempt(s)",
                           item_id, attempts)
        return cur.rowcount == 1

    def count(self) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM webhook_queue") or 0

    def count_by_status(self) -> dict:
        counts = {DeliveryStatus.PENDING: 0, DeliveryStatus.FAILED: 0}
        for row in self.db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM webhook_queue GROUP BY status"
        ):
            counts[row['status']] = row['n']
        return counts

    def delete_older_than(self, cutoff: datetime) -> int:
        """Purge failed items created before cutoff. Pending items are still being retried."""
        cur = self.db.execute(
            "DELETE FROM webhook_queue WHERE status = ? AND created_at < ?",
            (DeliveryStatus.FAILED, format_ts(cutoff)),
        )
        logger.info("Old failed webhook queue items deleted: %d", cur.rowcount)
        return cur.rowcount
