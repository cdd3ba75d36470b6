#!/usr/bin/env python3
"""
Unit tests for the dispatcher: dispatch, batch processing, retry/backoff,
operator notification, triggers.
"""

import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Add project root and tests dir to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

import requests

from optiflow.core.automation_client import AutomationClient
from optiflow.core.cache import ResultCache, optimization_cache_key
from optiflow.core.constants import JobStatus, JobPriority, DISPATCHER_LEASE
from optiflow.core.db_sqlite import Database, format_ts
from optiflow.core.dispatcher import Dispatcher
from optiflow.core.error_codes import ValidationError, AlreadyQueued
from optiflow.core.events import (
    EventBus, SubjectSaved, SubjectDeleted, JobCompleted, JobFailed, QueueProcessed,
)
from optiflow.core.job_store import JobStore
from optiflow.core.leases import LeaseManager
from optiflow.core.transport import HttpTransport

from fakes import FakeClock, FakeResponse, FakeSession, CountingNotifier, NoSleep, valid_payload

RESULT = {'score': 92, 'iterations': 2, 'content': "<p>Optimized</p>"}


class SteppingClock:
    """Monotonic clock replaying fixed readings; the last one repeats."""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self) -> float:
        return self.readings.pop(0) if len(self.readings) > 1 else self.readings[0]


class DispatcherTestCase(unittest.TestCase):

    config = {
        'retry_attempts': 3,
        'retry_delay': 60,
        'batch_size': 5,
        'inter_job_pause': 2,
        'max_execution_time': 120,
        'site_url': "https://example.com",
        'site_name': "Example",
    }

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmpdir.name) / "test.db")
        self.clock = FakeClock()
        self.events = EventBus()
        self.store = JobStore(self.db, events=self.events, clock=self.clock)
        self.session = FakeSession(FakeResponse(200, RESULT))
        self.cache = ResultCache()
        self.notifier = CountingNotifier()
        self.sleep = NoSleep()
        self.dispatcher = self.make_dispatcher()

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def make_dispatcher(self, config=None, monotonic=None, owner="worker-1"):
        return Dispatcher(
            self.store,
            AutomationClient("http://automation.test", HttpTransport(self.session)),
            self.cache,
            self.notifier,
            config=dict(self.config, **(config or {})),
            events=self.events,
            leases=LeaseManager(self.db, owner=owner, clock=self.clock),
            sleep=self.sleep,
            clock=self.clock,
            monotonic=monotonic or SteppingClock(0.0),
        )

    def job_count(self) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM jobs")


class TestDispatch(DispatcherTestCase):

    def test_creates_one_pending_job(self):
        job_id = self.dispatcher.dispatch(42, valid_payload(), JobPriority.NORMAL)
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.priority, JobPriority.NORMAL)
        self.assertEqual(job.current_score, 61)
        self.assertEqual(job.payload.system.site_url, "https://example.com")
        self.assertEqual(self.session.calls, [])

        with self.assertRaises(AlreadyQueued):
            self.dispatcher.dispatch(42, valid_payload(), JobPriority.LOW)
        self.assertEqual(self.job_count(), 1)

    def test_invalid_payload_creates_nothing(self):
        bad = valid_payload()
        del bad['content']
        with self.assertRaises(ValidationError):
            self.dispatcher.dispatch(42, bad)
        with self.assertRaises(ValidationError):
            self.dispatcher.dispatch(42, valid_payload(score=140))
        with self.assertRaises(ValidationError):
            self.dispatcher.dispatch(42, valid_payload(), "urgent")
        self.assertEqual(self.job_count(), 0)

    def test_high_priority_runs_synchronously_when_idle(self):
        completed = []
        self.events.subscribe(JobCompleted, completed.append)

        job_id = self.dispatcher.dispatch(42, valid_payload(), JobPriority.HIGH)

        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.result, RESULT)
        self.assertEqual(job.current_score, 92)
        self.assertEqual(job.iterations, 2)
        self.assertEqual(self.cache.get(optimization_cache_key(42)), RESULT)
        self.assertEqual(len(completed), 1)

        request = self.session.calls[0]
        self.assertEqual(request['url'], "http://automation.test/webhook/optimize")
        self.assertEqual(request['payload']['job']['id'], job_id)
        self.assertEqual(request['payload']['job']['subject_id'], 42)
        self.assertEqual(request['payload']['analysis']['score'], 61)
        self.assertEqual(request['payload']['system']['timestamp'], self.clock().isoformat())

    def test_high_priority_waits_when_busy(self):
        self.dispatcher._busy.acquire()
        try:
            job_id = self.dispatcher.dispatch(42, valid_payload(), JobPriority.HIGH)
        finally:
            self.dispatcher._busy.release()
        self.assertEqual(self.store.get(job_id).status, JobStatus.PENDING)
        self.assertEqual(self.session.calls, [])


class TestRetryAndFailure(DispatcherTestCase):

    def test_linear_backoff_then_single_notification(self):
        self.session.responses = [FakeResponse(503, text="Service Unavailable")]
        failed = []
        self.events.subscribe(JobFailed, failed.append)
        job_id = self.dispatcher.dispatch(42, valid_payload())

        # attempt 1 -> retry in 60s
        self.dispatcher.process_batch()
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.RETRY)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(job.scheduled_at, format_ts(self.clock() + timedelta(seconds=60)))
        self.assertIn("503", job.error)

        # not due yet
        self.assertEqual(self.dispatcher.retry_due(), 0)
        self.clock.advance(60)
        self.assertEqual(self.dispatcher.retry_due(), 1)

        # attempt 2 -> retry in 120s
        self.dispatcher.process_batch()
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.RETRY)
        self.assertEqual(job.attempts, 2)
        self.assertEqual(job.scheduled_at, format_ts(self.clock() + timedelta(seconds=120)))
        self.assertEqual(self.notifier.calls, [])

        # attempt 3 == max -> failed, operator notified once
        self.clock.advance(120)
        self.dispatcher.retry_due()
        self.dispatcher.process_batch()
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.attempts, 3)
        self.assertIsNotNone(job.failed_at)
        self.assertEqual(len(self.notifier.calls), 1)
        notified_id, error = self.notifier.calls[0]
        self.assertEqual(notified_id, job_id)
        self.assertEqual(error.attempts, 3)

        # further ticks never notify again
        self.clock.advance(3600)
        self.dispatcher.retry_due()
        self.dispatcher.process_batch()
        self.assertIsNone(self.dispatcher.process_job(job_id))
        self.assertEqual(len(self.notifier.calls), 1)
        self.assertEqual(len(failed), 1)
        self.assertEqual(len(self.session.calls), 3)

    def test_client_error_fails_immediately(self):
        self.session.responses = [FakeResponse(422, text="bad payload")]
        job_id = self.dispatcher.dispatch(42, valid_payload())
        report = self.dispatcher.process_batch()
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(report.failed, 1)
        self.assertEqual(len(self.notifier.calls), 1)

    def test_network_error_is_retried(self):
        self.session.responses = [requests.exceptions.ConnectionError("refused")]
        job_id = self.dispatcher.dispatch(42, valid_payload())
        self.dispatcher.process_batch()
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.RETRY)
        self.assertEqual(self.dispatcher.status()['last_error'], job.error)

    def test_invalid_response_body_is_retried(self):
        self.session.responses = [FakeResponse(200, text="<html>oops</html>")]
        job_id = self.dispatcher.dispatch(42, valid_payload())
        self.dispatcher.process_batch()
        self.assertEqual(self.store.get(job_id).status, JobStatus.RETRY)

    def test_out_of_range_result_score_ignored(self):
        self.session.responses = [FakeResponse(200, {'score': 150})]
        job_id = self.dispatcher.dispatch(42, valid_payload(), JobPriority.HIGH)
        job = self.store.get(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.current_score, 61)
        self.assertEqual(job.iterations, 1)


class TestProcessBatch(DispatcherTestCase):

    def test_respects_batch_size_and_pauses_between_jobs(self):
        dispatcher = self.make_dispatcher({'batch_size': 2})
        for subject_id in (1, 2, 3):
            dispatcher.dispatch(subject_id, valid_payload())
        processed = []
        self.events.subscribe(QueueProcessed, processed.append)

        report = dispatcher.process_batch()

        self.assertTrue(report.ran)
        self.assertEqual(report.processed, 2)
        self.assertEqual(self.sleep.calls, [2])
        self.assertEqual(self.store.queue_count(), 1)
        self.assertEqual(processed, [QueueProcessed(processed=2, failed=0)])

    def test_claims_in_priority_order(self):
        low = self.dispatcher.dispatch(1, valid_payload(), JobPriority.LOW)
        normal = self.dispatcher.dispatch(2, valid_payload())
        self.dispatcher.process_batch()
        ids = [call['payload']['job']['id'] for call in self.session.calls]
        self.assertEqual(ids, [normal, low])

    def test_stops_at_execution_time_limit(self):
        dispatcher = self.make_dispatcher(monotonic=SteppingClock(0.0, 0.0, 121.0))
        for subject_id in (1, 2, 3):
            dispatcher.dispatch(subject_id, valid_payload())

        report = dispatcher.process_batch()

        self.assertEqual(report.processed, 1)
        self.assertEqual(self.store.queue_count(), 2)

    def test_empty_queue(self):
        report = self.dispatcher.process_batch()
        self.assertTrue(report.ran)
        self.assertEqual((report.processed, report.failed), (0, 0))

    def test_skips_when_already_running(self):
        self.dispatcher.dispatch(1, valid_payload())
        self.dispatcher._busy.acquire()
        try:
            report = self.dispatcher.process_batch()
        finally:
            self.dispatcher._busy.release()
        self.assertFalse(report.ran)
        self.assertEqual(self.session.calls, [])

    def test_skips_when_another_worker_holds_lease(self):
        self.dispatcher.dispatch(1, valid_payload())
        LeaseManager(self.db, owner="worker-2", clock=self.clock).acquire(DISPATCHER_LEASE, 300)

        report = self.dispatcher.process_batch()

        self.assertFalse(report.ran)
        self.assertEqual(self.session.calls, [])
        self.assertFalse(self.dispatcher._busy.locked())

    def test_releases_lease(self):
        self.dispatcher.dispatch(1, valid_payload())
        self.dispatcher.process_batch()
        other = LeaseManager(self.db, owner="worker-2", clock=self.clock)
        self.assertTrue(other.acquire(DISPATCHER_LEASE, 300))

    def test_force_process(self):
        self.dispatcher.dispatch(1, valid_payload())
        self.assertTrue(self.dispatcher.force_process())
        self.assertEqual(self.store.queue_count(), 0)


class TestManagementAndMaintenance(DispatcherTestCase):

    def test_cancel(self):
        job_id = self.dispatcher.dispatch(1, valid_payload())
        self.assertTrue(self.dispatcher.cancel(job_id))
        self.assertEqual(self.store.get(job_id).status, JobStatus.CANCELLED)
        self.assertFalse(self.dispatcher.cancel(job_id))

    def test_cannot_cancel_processing_job(self):
        job_id = self.dispatcher.dispatch(1, valid_payload())
        self.store.claim(job_id)
        self.assertFalse(self.dispatcher.cancel(job_id))

    def test_status(self):
        self.dispatcher.dispatch(1, valid_payload())
        status = self.dispatcher.status()
        self.assertEqual(status, {
            'is_processing': False,
            'current_job': None,
            'queue_depth': 1,
            'last_error': None,
        })

    def test_recover_stuck(self):
        job_id = self.dispatcher.dispatch(1, valid_payload())
        self.store.claim(job_id)
        self.clock.advance(7200)
        with self.assertLogs('optiflow.core.dispatcher', level='WARNING') as logs:
            self.assertEqual(self.dispatcher.recover_stuck(), 1)
        self.assertIn("1 job(s) exceeded 3600s in processing", logs.output[0])
        job = self.store.get(job_id)
        self.assertEqual((job.status, job.attempts, job.error), (JobStatus.RETRY, 1, "timeout"))

    def test_cleanup(self):
        job_id = self.dispatcher.dispatch(1, valid_payload(), JobPriority.HIGH)
        self.clock.advance(86400 * 31)
        self.assertEqual(self.dispatcher.cleanup(), 1)
        self.assertIsNone(self.store.get(job_id))


class TestTriggers(DispatcherTestCase):

    def test_subject_saved_requires_auto_optimize(self):
        self.dispatcher.register(self.events)
        results = self.events.publish(SubjectSaved(42, True, valid_payload()))
        self.assertEqual(results, [None])
        self.assertEqual(self.job_count(), 0)

    def test_subject_saved_dispatches(self):
        dispatcher = self.make_dispatcher({'auto_optimize': True})
        dispatcher.register(self.events)

        [job_id] = self.events.publish(SubjectSaved(42, True, valid_payload()))
        self.assertEqual(self.store.get(job_id).status, JobStatus.PENDING)

        # saved again while in flight, or saved without needing work
        self.assertEqual(self.events.publish(SubjectSaved(42, True, valid_payload())), [None])
        self.assertEqual(self.events.publish(SubjectSaved(43, False, valid_payload())), [None])
        self.assertEqual(self.job_count(), 1)

    def test_subject_saved_with_bad_payload_raises(self):
        dispatcher = self.make_dispatcher({'auto_optimize': True})
        dispatcher.register(self.events)
        with self.assertRaises(ValidationError):
            self.events.publish(SubjectSaved(42, True, {'content': {}}))

    def test_subject_deleted_cancels_and_evicts(self):
        self.dispatcher.register(self.events)
        self.cache.set(optimization_cache_key(42), RESULT)
        job_id = self.dispatcher.dispatch(42, valid_payload())

        self.assertEqual(self.events.publish(SubjectDeleted(42)), [1])
        self.assertEqual(self.store.get(job_id).status, JobStatus.CANCELLED)
        self.assertIsNone(self.cache.get(optimization_cache_key(42)))


if __name__ == '__main__':
    unittest.main()
