"""
Wires the OptiFlow components together from an AppConfig.

Everything is passed in through constructors; this is the one place
that knows the whole object graph.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import requests

from optiflow.core.automation_client import AutomationClient
from optiflow.core.cache import ResultCache
from optiflow.core.config import AppConfig
from optiflow.core.content_store import ContentStore
from optiflow.core.db_sqlite import Database, utc_now
from optiflow.core.delivery_queue import DeliveryQueue
from optiflow.core.dispatcher import Dispatcher
from optiflow.core.events import EventBus, JobCompleted
from optiflow.core.job_store import JobStore
from optiflow.core.leases import LeaseManager
from optiflow.core.notifications import OperatorNotifier
from optiflow.core.scheduler import TickScheduler
from optiflow.core.transport import HttpTransport
from optiflow.core.webhooks import WebhookDelivery

logger = logging.getLogger(__name__)

HOURLY = 3600
DAILY = 86400

TICK_NAMES = (
    'process_batch', 'retry_due', 'recover_stuck', 'cleanup',
    'process_queue', 'clean_queue', 'purge_cache',
)


@dataclass
class Services:
    config: AppConfig
    db: Database
    events: EventBus
    content: ContentStore
    store: JobStore
    queue: DeliveryQueue
    cache: ResultCache
    dispatcher: Dispatcher
    webhooks: WebhookDelivery

    def close(self):
        self.db.close()


def build_services(config: AppConfig, db: Database | None = None,
                   session: Optional[requests.Session] = None,
                   sleep: Callable[[float], None] = time.sleep,
                   clock: Callable[[], datetime] = utc_now) -> Services:
    db = db or Database()
    events = EventBus()
    content = ContentStore(db)
    store = JobStore(db, subject_exists=content.subject_exists, events=events, clock=clock)
    queue = DeliveryQueue(db, clock=clock)
    cache = ResultCache(default_ttl=config.get('cache_ttl'))

    automation = AutomationClient(
        config.automation_url,
        HttpTransport(
            session=session,
            timeout=config.get('http_timeout'),
            api_key=config.get('automation_api_key') or None,
            site_url=config.site_url,
        ),
    )
    notifier = OperatorNotifier(
        recipient=config.get('operator_email'),
        smtp_host=config.get('smtp_host'),
        smtp_port=config.get('smtp_port'),
        sender=config.get('smtp_sender'),
        subject_lookup=content.get_subject,
    )
    dispatcher = Dispatcher(
        store, automation, cache, notifier,
        config=config,
        events=events,
        leases=LeaseManager(db, clock=clock),
        sleep=sleep,
        clock=clock,
    )
    webhooks = WebhookDelivery(
        content, queue,
        HttpTransport(
            session=session,
            timeout=config.get('http_timeout'),
            api_key=config.get('webhook_api_key') or None,
            site_url=config.site_url,
            include_api_key_header=True,
        ),
        config=config,
        events=events,
        sleep=sleep,
        clock=clock,
    )

    dispatcher.register(events)
    webhooks.register(events)
    events.subscribe(JobCompleted, _score_recorder(content, store))

    return Services(
        config=config, db=db, events=events, content=content, store=store,
        queue=queue, cache=cache, dispatcher=dispatcher, webhooks=webhooks,
    )


def _score_recorder(content: ContentStore, store: JobStore):
    """Write the optimized score back onto the subject once a job completes."""
    def record(event: JobCompleted):
        if 'score' not in event.result:
            return
        job = store.get(event.job_id)
        if job is not None:
            content.update_subject_score(job.subject_id, job.current_score)
    return record


def tick_table(services: Services) -> dict:
    """name -> (entry point, interval seconds, run on start)."""
    config = services.config
    dispatcher = services.dispatcher
    webhooks = services.webhooks
    return {
        'process_batch': (dispatcher.process_batch, config.get('process_interval'), True),
        'retry_due': (dispatcher.retry_due, HOURLY, True),
        'recover_stuck': (dispatcher.recover_stuck, HOURLY, True),
        'cleanup': (dispatcher.cleanup, DAILY, False),
        'process_queue': (webhooks.process_queue, 300, True),
        'clean_queue': (lambda: webhooks.clean_queue(config.get('retention_days')), DAILY, False),
        'purge_cache': (services.cache.purge_expired, HOURLY, False),
    }


def build_scheduler(services: Services) -> TickScheduler:
    """Register every periodic entry point on a fresh scheduler."""
    scheduler = TickScheduler()
    for name, (func, interval, run_immediately) in tick_table(services).items():
        if name == 'process_batch' and not services.config.get('auto_process'):
            logger.info("auto_process disabled, batch processing only via `optiflow tick`")
            continue
        scheduler.add(name, func, interval, run_immediately)
    return scheduler


def run_tick(services: Services, name: str):
    """Run one periodic entry point by name."""
    ticks = tick_table(services)
    if name not in ticks:
        raise KeyError(f"Unknown tick: {name}")
    func, _, _ = ticks[name]
    return func()
