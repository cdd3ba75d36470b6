"""
Job Store: durable queue + state machine for optimization jobs.

Every job state change goes through this module. Claims are atomic
conditional updates, so two workers sharing one database can never both
move the same job to ``processing``.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from optiflow.core.constants import (
    JobStatus, JobPriority, VALID_STATUSES, IN_FLIGHT_STATUSES, DUE_STATUSES,
    TERMINAL_STATUSES, PRIORITY_RANK, DEFAULT_TARGET_SCORE,
)
from optiflow.core.db_sqlite import Database, utc_now, format_ts, parse_ts
from optiflow.core.error_codes import ValidationError, InvalidStatus, AlreadyQueued
from optiflow.core.events import EventBus, JobQueued, JobStatusChanged
from optiflow.core.models_sqlite import Job
from optiflow.core.payloads import OptimizationPayload, parse_score

logger = logging.getLogger(__name__)

# Columns update_status() may merge from ``extra``
_UPDATABLE = {
    'result', 'error', 'attempts', 'scheduled_at', 'iterations',
    'current_score', 'target_score', 'started_at', 'completed_at', 'failed_at',
}

_TIMESTAMP_FOR_STATUS = {
    JobStatus.PROCESSING: 'started_at',
    JobStatus.COMPLETED: 'completed_at',
    JobStatus.FAILED: 'failed_at',
}


def _ts(value) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return format_ts(value)


class JobStore:
    """Persistent optimization job queue."""

    def __init__(self, db: Database,
                 subject_exists: Optional[Callable[[int], bool]] = None,
                 events: Optional[EventBus] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.subject_exists = subject_exists
        self.events = events
        self.clock = clock

    def _now(self) -> str:
        return format_ts(self.clock())

    # ── Row mapping ───────────────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        data.pop('priority_rank', None)
        raw_payload = data.get('payload')
        data['payload'] = (
            OptimizationPayload.from_dict(json.loads(raw_payload)) if raw_payload else None
        )
        raw_result = data.get('result')
        data['result'] = json.loads(raw_result) if raw_result else None
        return Job(**data)

    def _rows_to_jobs(self, rows: list[sqlite3.Row]) -> list[Job]:
        """Map rows, failing any job whose stored payload no longer validates."""
        jobs = []
        for row in rows:
            try:
                jobs.append(self._row_to_job(row))
            except (ValidationError, json.JSONDecodeError) as e:
                logger.error("Job %s has an unreadable payload: %s", row['id'], e)
                self.db.execute(
                    "UPDATE jobs SET status = ?, error = ?, failed_at = ?, updated_at = ? WHERE id = ?",
                    (JobStatus.FAILED, f"invalid payload: {e}"[:2000],
                     self._now(), self._now(), row['id']),
                )
        return jobs

    # ── Validation ────────────────────────────────────────────────────

    def _validate(self, job: Mapping) -> list[str]:
        errors = []

        subject_id = job.get('subject_id')
        if isinstance(subject_id, bool) or not isinstance(subject_id, int) or subject_id <= 0:
            errors.append("Valid subject id is required")
        elif self.subject_exists is not None and not self.subject_exists(subject_id):
            errors.append(f"Subject {subject_id} does not exist")

        status = job.get('status')
        if status is not None and status not in VALID_STATUSES:
            errors.append(f"Invalid job status: {status!r}")

        priority = job.get('priority', JobPriority.NORMAL)
        if priority not in PRIORITY_RANK:
            errors.append(f"Invalid job priority: {priority!r}")

        for key in ('target_score', 'current_score', 'initial_score'):
            if job.get(key) is not None:
                try:
                    parse_score(job[key], key)
                except ValidationError as e:
                    errors.append(e.message)

        payload = job.get('payload')
        if payload is not None and not isinstance(payload, OptimizationPayload):
            errors.append("payload must be an OptimizationPayload")

        return errors

    # ── Create / read ─────────────────────────────────────────────────

    def add(self, job: Mapping) -> int:
        """Validate and insert a job. Returns the new job id."""
        errors = self._validate(job)
        if errors:
            logger.error("Invalid job data: %s", "; ".join(errors))
            raise ValidationError("; ".join(errors))

        now = self._now()
        priority = job.get('priority', JobPriority.NORMAL)
        current_score = int(job.get('current_score') or 0)
        payload = job.get('payload')

        try:
            cur = self.db.execute(
                """INSERT INTO jobs
                   (subject_id, status, priority, priority_rank, target_score,
                    current_score, initial_score, iterations, attempts, payload,
                    scheduled_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job['subject_id'],
                    job.get('status') or JobStatus.PENDING,
                    priority,
                    PRIORITY_RANK[priority],
                    int(job.get('target_score', DEFAULT_TARGET_SCORE)),
                    current_score,
                    int(job.get('initial_score', current_score)),
                    int(job.get('iterations', 0)),
                    int(job.get('attempts', 0)),
                    json.dumps(payload.to_dict()) if payload else None,
                    _ts(job.get('scheduled_at')) or now,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            # Lost the race against a concurrent dispatch for the same subject
            raise AlreadyQueued(job['subject_id'])

        job_id = cur.lastrowid
        logger.info("Job %d added to queue (subject %s, priority %s)",
                    job_id, job['subject_id'], priority)
        if self.events:
            self.events.emit(JobQueued(job_id=job_id, subject_id=job['subject_id'],
                                       priority=priority))
        return job_id

    def get(self, job_id: int) -> Job | None:
        row = self.db.fetch_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    def pending(self, limit: int = 10) -> list[Job]:
        """Due jobs, highest priority first, then oldest schedule, then insertion order."""
        rows = self.db.fetch_all(
            f"""SELECT * FROM jobs
                WHERE status IN ({Database.placeholders(DUE_STATUSES)})
                AND scheduled_at <= ?
                ORDER BY priority_rank DESC, scheduled_at ASC, id ASC
                LIMIT ?""",
            (*DUE_STATUSES, self._now(), limit),
        )
        return self._rows_to_jobs(rows)

    def by_status(self, status: str, limit: int = 100) -> list[Job]:
        if status not in VALID_STATUSES:
            raise InvalidStatus(status)
        rows = self.db.fetch_all(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (status, limit),
        )
        return self._rows_to_jobs(rows)

    def for_subject(self, subject_id: int, include_completed: bool = False) -> list[Job]:
        statuses = VALID_STATUSES if include_completed else tuple(
            s for s in VALID_STATUSES if s != JobStatus.COMPLETED
        )
        rows = self.db.fetch_all(
            f"""SELECT * FROM jobs
                WHERE subject_id = ? AND status IN ({Database.placeholders(statuses)})
                ORDER BY created_at DESC, id DESC""",
            (subject_id, *statuses),
        )
        return self._rows_to_jobs(rows)

    def in_flight(self, limit: int = 100, offset: int = 0) -> list[Job]:
        """The whole live queue in claim order."""
        rows = self.db.fetch_all(
            f"""SELECT * FROM jobs
                WHERE status IN ({Database.placeholders(IN_FLIGHT_STATUSES)})
                ORDER BY priority_rank DESC, scheduled_at ASC, id ASC
                LIMIT ? OFFSET ?""",
            (*IN_FLIGHT_STATUSES, limit, offset),
        )
        return self._rows_to_jobs(rows)

    def queue_count(self) -> int:
        return self.db.scalar(
            f"SELECT COUNT(*) FROM jobs WHERE status IN ({Database.placeholders(IN_FLIGHT_STATUSES)})",
            IN_FLIGHT_STATUSES,
        ) or 0

    def has_pending(self, subject_id: int) -> bool:
        row = self.db.fetch_one(
            f"""SELECT 1 FROM jobs WHERE subject_id = ?
                AND status IN ({Database.placeholders(IN_FLIGHT_STATUSES)}) LIMIT 1""",
            (subject_id, *IN_FLIGHT_STATUSES),
        )
        return row is not None

    # ── State transitions ─────────────────────────────────────────────

    def update_status(self, job_id: int, status: str, **extra) -> bool:
        """Set ``status``, stamp lifecycle timestamps and merge ``extra`` columns."""
        if status not in VALID_STATUSES:
            logger.error("Invalid job status: %r", status)
            raise InvalidStatus(status)

        unknown = set(extra) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Unknown job fields: {', '.join(sorted(unknown))}")

        now = self._now()
        fields = {'status': status, 'updated_at': now}
        stamp = _TIMESTAMP_FOR_STATUS.get(status)
        if stamp:
            fields[stamp] = now

        for key, value in extra.items():
            if key == 'result':
                fields[key] = json.dumps(value) if value is not None else None
            elif key in ('scheduled_at', 'started_at', 'completed_at', 'failed_at'):
                fields[key] = _ts(value)
            elif key == 'error' and value is not None:
                fields[key] = str(value)[:2000]
            else:
                fields[key] = value

        sets = ', '.join(f"{k} = ?" for k in fields)
        cur = self.db.execute(
            f"UPDATE jobs SET {sets} WHERE id = ?", (*fields.values(), job_id)
        )
        if cur.rowcount == 0:
            logger.warning("update_status: job %s not found", job_id)
            return False

        logger.info("Job %s status -> %s", job_id, status)
        if self.events:
            self.events.emit(JobStatusChanged(job_id=job_id, status=status))
        return True

    def claim(self, job_id: int) -> Job | None:
        """Atomically move a pending/retry job to processing.

        Returns the claimed job, or None when another worker got there
        first or the job is no longer claimable.
        """
        now = self._now()
        cur = self.db.execute(
            f"""UPDATE jobs SET status = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND status IN ({Database.placeholders(DUE_STATUSES)})""",
            (JobStatus.PROCESSING, now, now, job_id, *DUE_STATUSES),
        )
        if cur.rowcount != 1:
            return None
        if self.events:
            self.events.emit(JobStatusChanged(job_id=job_id, status=JobStatus.PROCESSING))
        return self.get(job_id)

    def cancel(self, job_id: int) -> bool:
        """Cancel a job that is waiting. Processing and terminal jobs are left alone."""
        now = self._now()
        cur = self.db.execute(
            f"""UPDATE jobs SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({Database.placeholders(DUE_STATUSES)})""",
            (JobStatus.CANCELLED, now, job_id, *DUE_STATUSES),
        )
        if cur.rowcount != 1:
            logger.info("Job %s not cancellable", job_id)
            return False
        logger.info("Job %s cancelled", job_id)
        if self.events:
            self.events.emit(JobStatusChanged(job_id=job_id, status=JobStatus.CANCELLED))
        return True

    def cancel_for_subject(self, subject_id: int) -> int:
        cur = self.db.execute(
            f"""UPDATE jobs SET status = ?, updated_at = ?
                WHERE subject_id = ? AND status IN ({Database.placeholders(DUE_STATUSES)})""",
            (JobStatus.CANCELLED, self._now(), subject_id, *DUE_STATUSES),
        )
        logger.info("Cancelled %d job(s) for subject %s", cur.rowcount, subject_id)
        return cur.rowcount

    def requeue_due_retries(self) -> int:
        """retry → pending for every job whose scheduled_at has passed."""
        now = self._now()
        cur = self.db.execute(
            "UPDATE jobs SET status = ?, updated_at = ? WHERE status = ? AND scheduled_at <= ?",
            (JobStatus.PENDING, now, JobStatus.RETRY, now),
        )
        return cur.rowcount

    def retry_failed(self, job_id: int, delay: int = 60) -> bool:
        """Manually put a failed job back on the queue after ``delay`` seconds."""
        job = self.get(job_id)
        if not job or job.status != JobStatus.FAILED:
            return False
        if self.has_pending(job.subject_id):
            raise AlreadyQueued(job.subject_id)
        return self.update_status(
            job_id, JobStatus.RETRY,
            attempts=0,
            error=None,
            scheduled_at=self.clock() + timedelta(seconds=delay),
        )

    # ── Maintenance ───────────────────────────────────────────────────

    def cleanup_stuck(self, timeout: int = 3600) -> int:
        """Requeue jobs left in processing for longer than ``timeout`` seconds."""
        now = self.clock()
        cutoff = format_ts(now - timedelta(seconds=timeout))
        cur = self.db.execute(
            """UPDATE jobs
               SET status = ?, attempts = attempts + 1, error = ?,
                   scheduled_at = ?, updated_at = ?
               WHERE status = ? AND started_at < ?""",
            (JobStatus.RETRY, "timeout", format_ts(now), format_ts(now),
             JobStatus.PROCESSING, cutoff),
        )
        if cur.rowcount > 0:
            logger.warning("Stuck jobs cleaned up: %d", cur.rowcount)
        return cur.rowcount

    def delete_older_than(self, cutoff: datetime) -> int:
        cur = self.db.execute(
            f"""DELETE FROM jobs
                WHERE status IN ({Database.placeholders(TERMINAL_STATUSES)})
                AND created_at < ?""",
            (*TERMINAL_STATUSES, format_ts(cutoff)),
        )
        logger.info("Old jobs deleted: %d (older than %s)", cur.rowcount, format_ts(cutoff))
        return cur.rowcount

    def reset(self) -> int:
        cur = self.db.execute("DELETE FROM jobs")
        logger.warning("Queue reset (%d jobs removed)", cur.rowcount)
        return cur.rowcount

    # ── Statistics ────────────────────────────────────────────────────

    def stats(self) -> dict:
        result = {status: 0 for status in VALID_STATUSES}
        result['total'] = 0
        for row in self.db.fetch_all("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"):
            if row['status'] in result:
                result[row['status']] = row['n']
                result['total'] += row['n']

        finished = result[JobStatus.COMPLETED] + result[JobStatus.FAILED]
        result['success_rate'] = (
            round(result[JobStatus.COMPLETED] / finished * 100, 2) if finished else 0
        )

        durations = []
        for row in self.db.fetch_all(
            """SELECT started_at, completed_at FROM jobs
               WHERE status = ? AND started_at IS NOT NULL AND completed_at IS NOT NULL""",
            (JobStatus.COMPLETED,),
        ):
            durations.append(
                (parse_ts(row['completed_at']) - parse_ts(row['started_at'])).total_seconds()
            )
        result['avg_processing_time'] = round(sum(durations) / len(durations)) if durations else 0

        improvement = self.db.scalar(
            "SELECT AVG(current_score - initial_score) FROM jobs WHERE status = ?",
            (JobStatus.COMPLETED,),
        )
        result['avg_score_improvement'] = round(improvement or 0, 2)
        return result
