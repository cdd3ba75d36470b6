"""
Management operations for an admin surface (the CLI, or anything else).

Each takes an ``authorize(action) -> bool`` callable supplied by the
caller and returns a JSON-style dict with a ``success`` key.
"""

import logging
from dataclasses import asdict
from typing import Callable

from optiflow.core.constants import JobPriority
from optiflow.core.error_codes import OptiFlowError
from optiflow.core.services import Services

logger = logging.getLogger(__name__)

Authorize = Callable[[str], bool]


def allow_all(action: str) -> bool:
    return True


def _denied(action: str) -> dict:
    logger.warning("Permission denied for %s", action)
    return {'success': False, 'message': "Permission denied"}


def _error(e: OptiFlowError) -> dict:
    return {'success': False, 'message': e.message, 'code': e.code}


def enqueue_job(services: Services, authorize: Authorize, subject_id: int,
                payload: dict, priority: str = JobPriority.NORMAL) -> dict:
    if not authorize('enqueue_job'):
        return _denied('enqueue_job')
    try:
        job_id = services.dispatcher.dispatch(subject_id, payload, priority)
    except OptiFlowError as e:
        return _error(e)
    job = services.store.get(job_id)
    return {
        'success': True,
        'job_id': job_id,
        'status': job.status if job else None,
        'message': "Job added to queue",
    }


def queue_status(services: Services, authorize: Authorize) -> dict:
    if not authorize('queue_status'):
        return _denied('queue_status')
    return {
        'success': True,
        'dispatcher': services.dispatcher.status(),
        'jobs': services.store.stats(),
        'webhooks': services.webhooks.statistics(),
        'cache': services.cache.stats(),
    }


def cancel_job(services: Services, authorize: Authorize, job_id: int) -> dict:
    if not authorize('cancel_job'):
        return _denied('cancel_job')
    if services.dispatcher.cancel(job_id):
        return {'success': True, 'message': f"Job {job_id} cancelled"}
    return {'success': False, 'message': f"Job {job_id} cannot be cancelled"}


def retry_job(services: Services, authorize: Authorize, job_id: int) -> dict:
    """Put a failed job back on the queue."""
    if not authorize('retry_job'):
        return _denied('retry_job')
    try:
        retried = services.store.retry_failed(job_id, services.config.get('retry_delay'))
    except OptiFlowError as e:
        return _error(e)
    if not retried:
        return {'success': False, 'message': f"Job {job_id} is not failed"}
    return {'success': True, 'message': f"Job {job_id} scheduled for retry"}


def resend_webhook(services: Services, authorize: Authorize, capture_id: int) -> dict:
    if not authorize('resend_webhook'):
        return _denied('resend_webhook')
    result = services.webhooks.resend(capture_id)
    response = asdict(result)
    response['message'] = ("Webhook sent successfully" if result.success
                           else result.error or "Webhook failed")
    return response


def test_webhook(services: Services, authorize: Authorize, url: str | None = None) -> dict:
    if not authorize('test_webhook'):
        return _denied('test_webhook')
    return services.webhooks.test_connection(url)


def list_jobs(services: Services, authorize: Authorize, status: str | None = None,
              subject_id: int | None = None, include_completed: bool = False,
              limit: int = 100, offset: int = 0) -> dict:
    """Export jobs for one subject, one status, or the live queue in claim order."""
    if not authorize('list_jobs'):
        return _denied('list_jobs')
    store = services.store
    try:
        if subject_id is not None:
            jobs = store.for_subject(subject_id, include_completed)
            if status is not None:
                jobs = [job for job in jobs if job.status == status]
        elif status is not None:
            jobs = store.by_status(status, limit)
        else:
            jobs = store.in_flight(limit, offset)
    except OptiFlowError as e:
        return _error(e)
    return {'success': True, 'count': len(jobs), 'jobs': [asdict(job) for job in jobs]}


def check_automation(services: Services, authorize: Authorize) -> dict:
    if not authorize('check_automation'):
        return _denied('check_automation')
    ok, message = services.dispatcher.client.verify()
    return {'success': ok, 'message': message}
