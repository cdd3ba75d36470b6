#!/usr/bin/env python3
"""
Tests for the management operations and the click CLI.
"""

import sys
import json
import tempfile
from pathlib import Path

# Add project root and tests dir to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from click.testing import CliRunner

from optiflow.cli.commands import cli, enqueue
from optiflow.core import management
from optiflow.core.config import AppConfig
from optiflow.core.constants import JobStatus
from optiflow.core.content_store import ContentStore
from optiflow.core.db_sqlite import Database
from optiflow.core.services import build_services, build_scheduler, run_tick, TICK_NAMES

from fakes import FakeResponse, FakeSession, NoSleep, valid_payload


def deny_all(action: str) -> bool:
    return False


class TestManagement(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        home = Path(self.tmpdir.name)
        self.config = AppConfig(home / "config.json", overrides={
            'automation_url': "http://automation.test",
            'webhook_url': "http://hooks.test",
        })
        self.session = FakeSession(FakeResponse(200, {'score': 95}))
        self.services = build_services(self.config, db=Database(home / "optiflow.db"),
                                       session=self.session, sleep=NoSleep())
        self.subject = self.services.content.add_subject("Coffee")

    def tearDown(self):
        self.services.close()
        self.tmpdir.cleanup()

    def test_denied(self):
        for result in (
            management.enqueue_job(self.services, deny_all, self.subject.id, valid_payload()),
            management.queue_status(self.services, deny_all),
            management.cancel_job(self.services, deny_all, 1),
            management.retry_job(self.services, deny_all, 1),
            management.resend_webhook(self.services, deny_all, 1),
            management.test_webhook(self.services, deny_all),
            management.list_jobs(self.services, deny_all),
            management.check_automation(self.services, deny_all),
        ):
            self.assertEqual(result, {'success': False, 'message': "Permission denied"})
        self.assertEqual(self.session.calls, [])

    def test_enqueue(self):
        result = management.enqueue_job(self.services, management.allow_all,
                                        self.subject.id, valid_payload())
        self.assertTrue(result['success'])
        self.assertEqual(result['status'], JobStatus.PENDING)

        again = management.enqueue_job(self.services, management.allow_all,
                                       self.subject.id, valid_payload())
        self.assertFalse(again['success'])
        self.assertEqual(again['code'], "ERR_ALREADY_QUEUED")

    def test_enqueue_unknown_subject(self):
        result = management.enqueue_job(self.services, management.allow_all, 999, valid_payload())
        self.assertFalse(result['success'])
        self.assertEqual(result['code'], "ERR_VALIDATION")

    def test_enqueue_high_priority_completes(self):
        result = management.enqueue_job(self.services, management.allow_all,
                                        self.subject.id, valid_payload(), "high")
        self.assertEqual(result['status'], JobStatus.COMPLETED)

    def test_status_and_cancel(self):
        job_id = management.enqueue_job(self.services, management.allow_all,
                                        self.subject.id, valid_payload())['job_id']
        status = management.queue_status(self.services, management.allow_all)
        self.assertEqual(status['dispatcher']['queue_depth'], 1)
        self.assertEqual(status['jobs'][JobStatus.PENDING], 1)
        self.assertIn('total_sent', status['webhooks'])

        self.assertTrue(management.cancel_job(self.services, management.allow_all, job_id)['success'])
        self.assertFalse(management.cancel_job(self.services, management.allow_all, job_id)['success'])

    def test_retry_failed_job(self):
        job_id = management.enqueue_job(self.services, management.allow_all,
                                        self.subject.id, valid_payload())['job_id']
        self.assertFalse(management.retry_job(self.services, management.allow_all, job_id)['success'])
        self.services.store.update_status(job_id, JobStatus.FAILED)
        self.assertTrue(management.retry_job(self.services, management.allow_all, job_id)['success'])
        self.assertEqual(self.services.store.get(job_id).status, JobStatus.RETRY)

    def test_resend_and_connection_test(self):
        capture = self.services.content.add_capture("video", subject_id=self.subject.id)
        result = management.resend_webhook(self.services, management.allow_all, capture.id)
        self.assertTrue(result['success'])
        self.assertEqual(result['message'], "Webhook sent successfully")

        connection = management.test_webhook(self.services, management.allow_all)
        self.assertTrue(connection['success'])

    def test_list_jobs(self):
        other = self.services.content.add_subject("Tea")
        waiting = management.enqueue_job(self.services, management.allow_all,
                                         self.subject.id, valid_payload())['job_id']
        done = management.enqueue_job(self.services, management.allow_all,
                                      other.id, valid_payload(), "high")['job_id']

        live = management.list_jobs(self.services, management.allow_all)
        self.assertTrue(live['success'])
        self.assertEqual([job['id'] for job in live['jobs']], [waiting])
        self.assertEqual(live['jobs'][0]['payload']['analysis']['keyword'], "coffee")

        completed = management.list_jobs(self.services, management.allow_all,
                                         status=JobStatus.COMPLETED)
        self.assertEqual([job['id'] for job in completed['jobs']], [done])

        history = management.list_jobs(self.services, management.allow_all, subject_id=other.id)
        self.assertEqual(history['count'], 0)
        history = management.list_jobs(self.services, management.allow_all,
                                       subject_id=other.id, include_completed=True)
        self.assertEqual([job['id'] for job in history['jobs']], [done])

        bad = management.list_jobs(self.services, management.allow_all, status="done")
        self.assertFalse(bad['success'])
        self.assertEqual(bad['code'], "ERR_INVALID_STATUS")

    def test_check_automation(self):
        result = management.check_automation(self.services, management.allow_all)
        self.assertEqual(result, {'success': True, 'message': "Automation service reachable"})
        self.assertEqual(self.session.calls[0]['payload'], {'test': True})

        self.session.responses = [FakeResponse(401)]
        result = management.check_automation(self.services, management.allow_all)
        self.assertFalse(result['success'])
        self.assertIn("401", result['message'])

    def test_completed_job_updates_subject_score(self):
        management.enqueue_job(self.services, management.allow_all,
                               self.subject.id, valid_payload(score=61), "high")
        self.assertEqual(self.services.content.get_subject(self.subject.id).seo_score, 95)

    def test_events_are_wired(self):
        from optiflow.core.events import SubjectDeleted
        job_id = management.enqueue_job(self.services, management.allow_all,
                                        self.subject.id, valid_payload())['job_id']
        self.services.events.publish(SubjectDeleted(self.subject.id))
        self.assertEqual(self.services.store.get(job_id).status, JobStatus.CANCELLED)

    def test_ticks(self):
        scheduler = build_scheduler(self.services)
        self.assertEqual(sorted(scheduler.names()), sorted(TICK_NAMES))
        self.assertEqual(run_tick(self.services, 'retry_due'), 0)
        with self.assertRaises(KeyError):
            run_tick(self.services, 'nope')

    def test_scheduler_without_auto_process(self):
        self.config.set('auto_process', False)
        self.assertNotIn('process_batch', build_scheduler(self.services).names())


class TestCLI(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.home = Path(self.tmpdir.name)
        db = Database(self.home / "optiflow.db")
        self.subject = ContentStore(db).add_subject("Coffee")
        db.close()
        self.runner = CliRunner()

    def tearDown(self):
        self.tmpdir.cleanup()

    def invoke(self, *args):
        return self.runner.invoke(cli, ['--home', str(self.home), *args])

    def test_enqueue_status_cancel(self):
        result = self.invoke('enqueue', str(self.subject.id), json.dumps(valid_payload()))
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("✓ Job 1 enqueued (pending)", result.output)

        result = self.invoke('enqueue', str(self.subject.id), json.dumps(valid_payload()))
        self.assertEqual(result.exit_code, 1)
        self.assertIn("already in queue", result.output)

        result = self.invoke('status', '--json')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)['dispatcher']['queue_depth'], 1)

        result = self.invoke('status')
        self.assertIn("Queue depth:    1", result.output)

        result = self.invoke('cancel', '1')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("✓ Job 1 cancelled", result.output)

    def test_enqueue_help_example_is_accepted(self):
        line = next(l for l in enqueue.help.splitlines() if "optiflow enqueue" in l)
        example = line.split("'")[1]
        result = self.invoke('enqueue', str(self.subject.id), example)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("enqueued (pending)", result.output)

    def test_jobs_listing_and_export(self):
        result = self.invoke('jobs')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("No jobs found", result.output)

        self.invoke('enqueue', str(self.subject.id), json.dumps(valid_payload()))

        result = self.invoke('jobs')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("pending", result.output)
        self.assertIn("61 -> 61", result.output)

        exported = json.loads(self.invoke('jobs', '--subject', str(self.subject.id), '--json').output)
        self.assertEqual(len(exported), 1)
        self.assertEqual(exported[0]['subject_id'], self.subject.id)

        result = self.invoke('jobs', '--status', 'completed')
        self.assertIn("No jobs found", result.output)

        result = self.invoke('jobs', '--status', 'done')
        self.assertNotEqual(result.exit_code, 0)

    def test_check_automation_without_url(self):
        result = self.invoke('check-automation')
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No automation service URL configured", result.output)

    def test_enqueue_invalid_json(self):
        result = self.invoke('enqueue', '1', '{broken')
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Invalid JSON", result.output)

    def test_config_show_and_set(self):
        result = self.invoke('config', 'set', 'batch_size', '10')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("batch_size = 10", result.output)

        self.invoke('config', 'set', 'webhook_api_key', 'super-secret-9876')
        shown = json.loads(self.invoke('config', 'show').output)
        self.assertEqual(shown['batch_size'], 10)
        self.assertTrue(shown['webhook_api_key'].endswith("9876"))
        self.assertNotIn("super-secret", shown['webhook_api_key'])

        result = self.invoke('config', 'set', 'no_such_key', '1')
        self.assertEqual(result.exit_code, 1)

    def test_tick(self):
        result = self.invoke('tick', 'process_batch')
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)['processed'], 0)

        result = self.invoke('tick', 'bogus')
        self.assertNotEqual(result.exit_code, 0)

    def test_webhook_commands_without_url(self):
        result = self.invoke('test-webhook')
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No webhook URL configured", result.output)

        result = self.invoke('resend', '1')
        self.assertEqual(result.exit_code, 1)

    def test_writes_log_file(self):
        self.invoke('status')
        self.assertTrue((self.home / "logs" / "optiflow.log").exists())


if __name__ == '__main__':
    unittest.main()
