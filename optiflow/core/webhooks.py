"""
Webhook delivery for captures.

``send`` tries a few times in-line with exponential backoff
(1s, 2s, 4s...). Transient failures that outlive those attempts are
parked in the delivery queue and retried by ``process_queue`` on a much
slower exponential schedule (2^attempts * base). A 4xx from the receiver
is never retried.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from optiflow.core.constants import (
    APP_NAME, APP_VERSION,
    DEFAULT_WEBHOOK_MAX_RETRIES, DEFAULT_WEBHOOK_QUEUE_MAX_ATTEMPTS,
    DEFAULT_WEBHOOK_RETRY_BASE_SEC, DEFAULT_WEBHOOK_QUEUE_BATCH, DEFAULT_RETENTION_DAYS,
)
from optiflow.core.content_store import ContentStore
from optiflow.core.db_sqlite import utc_now, format_ts
from optiflow.core.delivery_queue import DeliveryQueue
from optiflow.core.error_codes import (
    DeliveryError, TransientDeliveryError, PermanentDeliveryError,
)
from optiflow.core.events import EventBus, CaptureCreated, CaptureUpdated, WebhookSent
from optiflow.core.models_sqlite import Capture
from optiflow.core.transport import HttpTransport, is_success

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    queued_id: Optional[int] = None


class WebhookDelivery:
    """Sends capture notifications to the configured webhook receiver."""

    def __init__(self, content: ContentStore, queue: DeliveryQueue,
                 transport: HttpTransport, config=None,
                 events: Optional[EventBus] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.content = content
        self.queue = queue
        self.transport = transport
        self.config = config if config is not None else {}
        self.events = events
        self.sleep = sleep
        self.clock = clock

    @property
    def webhook_url(self) -> str:
        return self.config.get('webhook_url', '')

    @property
    def max_retries(self) -> int:
        return max(1, int(self.config.get('webhook_max_retries', DEFAULT_WEBHOOK_MAX_RETRIES)))

    @property
    def queue_max_attempts(self) -> int:
        return self.config.get('webhook_queue_max_attempts', DEFAULT_WEBHOOK_QUEUE_MAX_ATTEMPTS)

    @property
    def retry_base(self) -> int:
        return self.config.get('webhook_retry_base', DEFAULT_WEBHOOK_RETRY_BASE_SEC)

    def next_retry_at(self, attempts: int) -> datetime:
        """Exponential backoff for queued deliveries."""
        return self.clock() + timedelta(seconds=(2 ** attempts) * self.retry_base)

    # ── Sending ───────────────────────────────────────────────────────

    def send(self, capture_id: int, extra: dict | None = None) -> DeliveryResult:
        """Send one capture. Transient failures are queued for later."""
        url = self.webhook_url
        if not url:
            logger.warning("No webhook URL configured")
            return DeliveryResult(False, error="No webhook URL configured")

        capture = self.content.get_capture(capture_id)
        if not capture:
            return DeliveryResult(False, error="Capture not found")

        data = self.build_payload(capture, extra)
        logger.info("Sending capture %s to webhook", capture_id)

        try:
            resp = self._send_with_retry(url, data)
        except PermanentDeliveryError as e:
            logger.error("Webhook rejected capture %s: %s", capture_id, e.message)
            return DeliveryResult(False, e.status_code, e.message)
        except TransientDeliveryError as e:
            logger.error("Failed to send webhook for capture %s: %s", capture_id, e.message)
            queued_id = self.queue.add(
                capture_id, url, data,
                next_retry_at=self.next_retry_at(1),
                attempts=1,
                error=e.message,
            )
            return DeliveryResult(False, e.status_code, e.message, queued_id)

        self._mark_as_sent(capture_id, resp.status_code)
        logger.info("Webhook sent successfully (capture %s, HTTP %s)",
                    capture_id, resp.status_code)
        return DeliveryResult(True, resp.status_code)

    def send_custom(self, payload: dict, url: str | None = None) -> DeliveryResult:
        """Send an arbitrary payload. Nothing is enriched or queued."""
        url = url or self.webhook_url
        if not url:
            return DeliveryResult(False, error="No webhook URL provided")
        try:
            resp = self._send_with_retry(url, payload)
        except DeliveryError as e:
            logger.error("Failed to send custom webhook: %s", e.message)
            return DeliveryResult(False, e.status_code, e.message)
        return DeliveryResult(True, resp.status_code)

    def test_connection(self, url: str | None = None) -> dict:
        url = url or self.webhook_url
        if not url:
            return {'success': False, 'message': "No webhook URL configured"}

        test_request = {
            'test': True,
            'app': APP_NAME,
            'version': APP_VERSION,
            'timestamp': format_ts(self.clock()),
            'site_url': self.config.get('site_url', ''),
        }
        logger.info("Testing webhook connection to %s", url)
        try:
            resp = self.transport.post(url, test_request)
        except TransientDeliveryError as e:
            return {'success': False, 'message': e.message, 'error_code': e.code}

        success = is_success(resp.status_code)
        return {
            'success': success,
            'message': "Connection successful" if success
                       else f"Server returned {resp.status_code}",
            'response_code': resp.status_code,
            'response_body': resp.text,
        }

    def _send_with_retry(self, url: str, data: dict):
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.transport.post_json(url, data)
            except PermanentDeliveryError:
                raise
            except TransientDeliveryError as e:
                last_error = e
                logger.warning("Webhook attempt %d/%d failed: %s",
                               attempt, self.max_retries, e.message)
                if attempt < self.max_retries:
                    self.sleep(2 ** (attempt - 1))
        raise TransientDeliveryError(
            f"Maximum retry attempts reached: {last_error.message}",
            status_code=last_error.status_code,
            code=last_error.code,
        )

    # ── Payload ───────────────────────────────────────────────────────

    def build_payload(self, capture: Capture, extra: dict | None = None) -> dict:
        data = {
            'capture_id': capture.id,
            'capture_type': capture.capture_type,
            'user_id': capture.user_id,
            'subject_id': capture.subject_id,
            'capture_data': capture.capture_data,
            'metadata': capture.metadata,
            'created_at': capture.created_at,
            'site_info': {
                'url': self.config.get('site_url', ''),
                'name': self.config.get('site_name', ''),
                'admin_email': self.config.get('operator_email', ''),
            },
            'timestamp': format_ts(self.clock()),
        }

        if capture.subject_id:
            subject = self.content.get_subject(capture.subject_id)
            if subject:
                data['subject_info'] = {
                    'title': subject.title,
                    'url': subject.url,
                    'status': subject.status,
                    'type': subject.type,
                }
                data['seo_score'] = subject.seo_score

        if capture.user_id:
            user = self.content.get_user(capture.user_id)
            if user:
                data['user_info'] = {
                    'display_name': user.display_name,
                    'email': user.email,
                    'role': user.role,
                }

        data.update(extra or {})
        return data

    def _mark_as_sent(self, capture_id: int, status_code: int):
        self.content.merge_capture_metadata(capture_id, {
            'webhook_sent': True,
            'webhook_sent_at': format_ts(self.clock()),
            'webhook_response_code': status_code,
        })
        if self.events:
            self.events.emit(WebhookSent(capture_id=capture_id, status_code=status_code))

    # ── Retry queue ───────────────────────────────────────────────────

    def process_queue(self, limit: int = DEFAULT_WEBHOOK_QUEUE_BATCH) -> dict:
        """Resend due queued deliveries. Returns counts per outcome."""
        items = self.queue.due(limit)
        outcome = {'sent': 0, 'rescheduled': 0, 'failed': 0}
        if not items:
            return outcome

        logger.info("Processing webhook queue (%d item(s))", len(items))
        for item in items:
            attempts = item.attempts + 1
            try:
                resp = self.transport.post_json(item.destination_url, item.payload)
            except PermanentDeliveryError as e:
                self.queue.mark_failed(item.id, attempts, e.message)
                outcome['failed'] += 1
                continue
            except TransientDeliveryError as e:
                if attempts >= self.queue_max_attempts:
                    self.queue.mark_failed(item.id, attempts, e.message)
                    outcome['failed'] += 1
                else:
                    retry_at = self.next_retry_at(attempts)
                    self.queue.record_failure(item.id, attempts, retry_at, e.message)
                    logger.debug("Queue item %s retry scheduled for %s",
                                 item.id, format_ts(retry_at))
                    outcome['rescheduled'] += 1
                continue

            self.queue.delete(item.id)
            self._mark_as_sent(item.capture_id, resp.status_code)
            logger.info("Queue item %s processed successfully (capture %s)",
                        item.id, item.capture_id)
            outcome['sent'] += 1

        return outcome

    def resend(self, capture_id: int) -> DeliveryResult:
        return self.send(capture_id)

    def clean_queue(self, days: int = DEFAULT_RETENTION_DAYS) -> int:
        return self.queue.delete_older_than(self.clock() - timedelta(days=days))

    def statistics(self) -> dict:
        counts = self.queue.count_by_status()
        row = self.content.db.fetch_one(
            """SELECT COUNT(*) AS total_sent,
                      MAX(json_extract(metadata, '$.webhook_sent_at')) AS last_sent
               FROM captures
               WHERE json_extract(metadata, '$.webhook_sent') = 1"""
        )
        return {
            'pending': counts.get('pending', 0),
            'failed': counts.get('failed', 0),
            'total_sent': row['total_sent'] if row else 0,
            'last_sent': row['last_sent'] if row else None,
        }

    # ── Triggers ──────────────────────────────────────────────────────

    def on_capture_created(self, capture_id: int) -> DeliveryResult | None:
        if not self.config.get('auto_send_webhooks', False):
            return None
        return self.send(capture_id, {'event': 'capture_created'})

    def on_capture_updated(self, capture_id: int) -> DeliveryResult | None:
        if not self.config.get('send_update_webhooks', False):
            return None
        return self.send(capture_id, {'event': 'capture_updated'})

    def register(self, bus: EventBus):
        bus.subscribe(CaptureCreated, lambda e: self.on_capture_created(e.capture_id))
        bus.subscribe(CaptureUpdated, lambda e: self.on_capture_updated(e.capture_id))
