"""
Dispatcher: validates and schedules optimization jobs and drives them
through the automation service.

Entry points called by the tick scheduler: process_batch, retry_due,
cleanup, recover_stuck. Entry points called by the host system:
dispatch, on_subject_saved, on_subject_deleted, cancel, status.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from optiflow.core.automation_client import AutomationClient
from optiflow.core.cache import ResultCache, optimization_cache_key
from optiflow.core.constants import (
    JobStatus, JobPriority, PRIORITY_RANK, DISPATCHER_LEASE,
    DEFAULT_BATCH_SIZE, DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY_SEC,
    DEFAULT_MAX_EXECUTION_SEC, DEFAULT_INTER_JOB_PAUSE_SEC, DEFAULT_TARGET_SCORE,
    DEFAULT_RETENTION_DAYS, DEFAULT_STUCK_TIMEOUT_SEC, DEFAULT_HTTP_TIMEOUT_SEC,
    DEFAULT_CACHE_TTL_SEC,
)
from optiflow.core.db_sqlite import utc_now
from optiflow.core.error_codes import (
    OptiFlowError, ValidationError, AlreadyQueued,
    PermanentDeliveryError, ExhaustedRetriesError,
)
from optiflow.core.events import (
    EventBus, SubjectSaved, SubjectDeleted, JobDispatched, JobCompleted,
    JobFailed, QueueProcessed,
)
from optiflow.core.job_store import JobStore
from optiflow.core.leases import LeaseManager
from optiflow.core.models_sqlite import Job
from optiflow.core.notifications import OperatorNotifier
from optiflow.core.payloads import OptimizationPayload, SystemInfo, parse_score

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float = 0.0
    ran: bool = True


class Dispatcher:
    """
    Orchestrates the job store and the automation service.
    Publishes job lifecycle announcements on the event bus.
    """

    def __init__(self, store: JobStore, client: AutomationClient,
                 cache: ResultCache, notifier: OperatorNotifier,
                 config=None, events: Optional[EventBus] = None,
                 leases: Optional[LeaseManager] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.store = store
        self.client = client
        self.cache = cache
        self.notifier = notifier
        self.config = config if config is not None else {}
        self.events = events
        self.leases = leases
        self.sleep = sleep
        self.clock = clock
        self.monotonic = monotonic

        # Guards against overlapping batches inside this process only;
        # the lease covers other processes.
        self._busy = threading.Lock()
        self._status = {
            'is_processing': False,
            'current_job': None,
            'last_error': None,
        }

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def batch_size(self) -> int:
        return self.config.get('batch_size', DEFAULT_BATCH_SIZE)

    @property
    def retry_attempts(self) -> int:
        return self.config.get('retry_attempts', DEFAULT_RETRY_ATTEMPTS)

    @property
    def retry_delay(self) -> int:
        return self.config.get('retry_delay', DEFAULT_RETRY_DELAY_SEC)

    @property
    def max_execution_time(self) -> int:
        return self.config.get('max_execution_time', DEFAULT_MAX_EXECUTION_SEC)

    @property
    def inter_job_pause(self) -> float:
        return self.config.get('inter_job_pause', DEFAULT_INTER_JOB_PAUSE_SEC)

    @property
    def target_score(self) -> int:
        return self.config.get('target_score', DEFAULT_TARGET_SCORE)

    @property
    def retention_days(self) -> int:
        return self.config.get('retention_days', DEFAULT_RETENTION_DAYS)

    @property
    def stuck_timeout(self) -> int:
        return self.config.get('stuck_timeout', DEFAULT_STUCK_TIMEOUT_SEC)

    @property
    def cache_ttl(self) -> int:
        return self.config.get('cache_ttl', DEFAULT_CACHE_TTL_SEC)

    @property
    def lease_ttl(self) -> int:
        http_timeout = self.config.get('http_timeout', DEFAULT_HTTP_TIMEOUT_SEC)
        return self.max_execution_time + http_timeout + 60

    def retry_delay_for(self, attempts: int) -> timedelta:
        """Linear backoff for optimization jobs."""
        return timedelta(seconds=self.retry_delay * attempts)

    # ── Dispatch ──────────────────────────────────────────────────────

    def _system_info(self) -> SystemInfo:
        return SystemInfo(
            site_url=self.config.get('site_url', ''),
            site_name=self.config.get('site_name', ''),
            timestamp=self.clock().isoformat(),
        )

    def dispatch(self, subject_id: int, payload: dict,
                 priority: str = JobPriority.NORMAL) -> int:
        """Validate, persist and possibly run an optimization job. Returns the job id."""
        logger.info("Dispatching optimization job (subject %s, priority %s)",
                    subject_id, priority)

        if priority not in PRIORITY_RANK:
            raise ValidationError(f"Invalid job priority: {priority!r}")

        if self.store.has_pending(subject_id):
            logger.warning("Job already in queue for subject %s", subject_id)
            raise AlreadyQueued(subject_id)

        try:
            parsed = OptimizationPayload.from_dict(payload)
        except ValidationError as e:
            logger.error("Invalid optimization data for subject %s: %s", subject_id, e.message)
            raise
        parsed = parsed.with_system(self._system_info())

        job_id = self.store.add({
            'subject_id': subject_id,
            'payload': parsed,
            'priority': priority,
            'status': JobStatus.PENDING,
            'target_score': self.target_score,
            'current_score': parsed.analysis.score,
            'initial_score': parsed.analysis.score,
            'attempts': 0,
        })

        if priority == JobPriority.HIGH and self._busy.acquire(blocking=False):
            try:
                self._status['is_processing'] = True
                self.process_job(job_id)
            finally:
                self._status['is_processing'] = False
                self._busy.release()

        self._emit(JobDispatched(job_id=job_id, subject_id=subject_id))
        return job_id

    # ── Batch processing ──────────────────────────────────────────────

    def process_batch(self) -> BatchReport:
        """Periodic entry point: claim and run up to batch_size due jobs."""
        if not self._busy.acquire(blocking=False):
            logger.warning("Queue processor already running")
            return BatchReport(ran=False)

        if self.leases and not self.leases.acquire(DISPATCHER_LEASE, self.lease_ttl):
            self._busy.release()
            return BatchReport(ran=False)

        report = BatchReport()
        start = self.monotonic()
        self._status['is_processing'] = True
        try:
            logger.info("Starting queue processing")
            jobs = self.store.pending(self.batch_size)
            if not jobs:
                logger.info("No jobs in queue")
                return report

            for index, job in enumerate(jobs):
                if self.monotonic() - start > self.max_execution_time:
                    logger.warning("Execution time limit reached, %d job(s) left for next tick",
                                   len(jobs) - index)
                    break

                outcome = self.process_job(job.id)
                if outcome is None:
                    report.skipped += 1
                elif outcome == JobStatus.COMPLETED:
                    report.processed += 1
                else:
                    report.failed += 1

                # Pause between jobs
                if index < len(jobs) - 1 and self.inter_job_pause:
                    self.sleep(self.inter_job_pause)
        finally:
            self._status['is_processing'] = False
            if self.leases:
                self.leases.release(DISPATCHER_LEASE)
            self._busy.release()
            report.duration = self.monotonic() - start

        logger.info("Queue processing completed: processed=%d failed=%d skipped=%d duration=%.1fs",
                    report.processed, report.failed, report.skipped, report.duration)
        self._emit(QueueProcessed(processed=report.processed, failed=report.failed))
        return report

    def process_job(self, job_id: int) -> str | None:
        """Claim and run one job. Returns its new status, or None if it could not be claimed."""
        job = self.store.claim(job_id)
        if job is None:
            logger.info("Job %s not claimable, skipping", job_id)
            return None

        self._status['current_job'] = job_id
        logger.info("Processing job %s (subject %s, attempt %d)",
                    job_id, job.subject_id, job.attempts + 1)
        try:
            request = self._build_request(job)
            result = self.client.optimize(request)
        except OptiFlowError as e:
            return self._handle_failure(job, e)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            return self._handle_failure(job, OptiFlowError(str(e), retryable=True))
        else:
            return self._complete(job, result)
        finally:
            self._status['current_job'] = None

    def _build_request(self, job: Job) -> dict:
        if job.payload is None:
            raise PermanentDeliveryError("Invalid job data")
        data = job.payload.to_dict()
        data['job'] = {
            'id': job.id,
            'subject_id': job.subject_id,
            'attempts': job.attempts,
            'priority': job.priority,
            'target_score': job.target_score,
            'created_at': job.created_at,
        }
        return data

    def _complete(self, job: Job, result: dict) -> str:
        extra = {'result': result, 'error': None}
        try:
            if 'score' in result:
                extra['current_score'] = parse_score(result['score'])
        except ValidationError:
            logger.warning("Ignoring out-of-range score in result for job %s", job.id)
        iterations = result.get('iterations')
        extra['iterations'] = int(iterations) if isinstance(iterations, int) else job.iterations + 1

        self.store.update_status(job.id, JobStatus.COMPLETED, **extra)
        self.cache.set(optimization_cache_key(job.subject_id), result, self.cache_ttl)
        logger.info("Job %s completed successfully", job.id)
        self._emit(JobCompleted(job_id=job.id, subject_id=job.subject_id, result=result))
        return JobStatus.COMPLETED

    def _handle_failure(self, job: Job, error: OptiFlowError) -> str:
        """Retry with linear backoff, or fail for good and notify the operator."""
        attempts = job.attempts + 1
        message = error.message
        self._status['last_error'] = message
        logger.error("Job %s processing failed (attempt %d): %s", job.id, attempts, message)

        if error.retryable and attempts < self.retry_attempts:
            retry_at = self.clock() + self.retry_delay_for(attempts)
            self.store.update_status(job.id, JobStatus.RETRY,
                                     attempts=attempts,
                                     scheduled_at=retry_at,
                                     error=message)
            logger.info("Job %s rescheduled for %s", job.id, retry_at.isoformat())
            return JobStatus.RETRY

        if not self.store.update_status(job.id, JobStatus.FAILED,
                                        attempts=attempts, error=message):
            return JobStatus.FAILED

        exhausted = ExhaustedRetriesError(job.id, attempts, message)
        logger.error("%s", exhausted)
        self.notifier.job_failed(job, exhausted)
        self._emit(JobFailed(job_id=job.id, subject_id=job.subject_id,
                             error=message, attempts=attempts))
        return JobStatus.FAILED

    # ── Periodic maintenance ──────────────────────────────────────────

    def retry_due(self) -> int:
        """Move retry jobs whose time has come back to pending."""
        retried = self.store.requeue_due_retries()
        logger.info("Failed jobs retry completed: %d requeued", retried)
        return retried

    def cleanup(self) -> int:
        """Purge terminal jobs older than the retention window."""
        cutoff = self.clock() - timedelta(days=self.retention_days)
        deleted = self.store.delete_older_than(cutoff)
        logger.info("Old jobs cleanup completed: %d deleted", deleted)
        return deleted

    def recover_stuck(self) -> int:
        recovered = self.store.cleanup_stuck(self.stuck_timeout)
        if recovered:
            logger.warning("%d job(s) exceeded %ss in processing, requeued",
                           recovered, self.stuck_timeout)
        return recovered

    # ── Management ────────────────────────────────────────────────────

    def cancel(self, job_id: int) -> bool:
        if self._status['current_job'] == job_id:
            logger.info("Job %s is being processed, cannot cancel", job_id)
            return False
        return self.store.cancel(job_id)

    def cancel_for_subject(self, subject_id: int) -> int:
        return self.store.cancel_for_subject(subject_id)

    def status(self) -> dict:
        return {
            'is_processing': self._status['is_processing'],
            'current_job': self._status['current_job'],
            'queue_depth': self.store.queue_count(),
            'last_error': self._status['last_error'],
        }

    def is_idle(self) -> bool:
        return not self._busy.locked()

    def force_process(self) -> bool:
        if not self.is_idle():
            return False
        return self.process_batch().ran

    # ── Triggers ──────────────────────────────────────────────────────

    def on_subject_saved(self, subject_id: int, should_optimize: bool, payload: dict,
                         priority: str = JobPriority.NORMAL) -> int | None:
        """Dispatch when the host says the subject needs work and auto-optimize is on."""
        if not should_optimize or not self.config.get('auto_optimize', False):
            return None
        try:
            return self.dispatch(subject_id, payload, priority)
        except AlreadyQueued:
            logger.info("Subject %s saved while a job is in flight, not requeued", subject_id)
            return None

    def on_subject_deleted(self, subject_id: int) -> int:
        cancelled = self.cancel_for_subject(subject_id)
        self.cache.delete(optimization_cache_key(subject_id))
        return cancelled

    def register(self, bus: EventBus):
        bus.subscribe(SubjectSaved, lambda e: self.on_subject_saved(
            e.subject_id, e.should_optimize, e.payload, e.priority))
        bus.subscribe(SubjectDeleted, lambda e: self.on_subject_deleted(e.subject_id))

    def _emit(self, event):
        if self.events:
            self.events.emit(event)
