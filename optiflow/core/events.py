"""
Typed publish/subscribe between OptiFlow components.

Handlers subscribe to an event class and receive instances of it.
``publish`` is for trigger events raised by callers (a subject was saved,
a capture was created): handler errors propagate back to the caller.
``emit`` is for announcements made after state has already been
persisted (a job completed): handler errors are logged and do not undo
the state change.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


# ── Trigger events (inputs) ───────────────────────────────────────────

@dataclass(frozen=True)
class SubjectSaved:
    subject_id: int
    should_optimize: bool
    payload: dict = field(default_factory=dict)
    priority: str = "normal"


@dataclass(frozen=True)
class SubjectDeleted:
    subject_id: int


@dataclass(frozen=True)
class CaptureCreated:
    capture_id: int


@dataclass(frozen=True)
class CaptureUpdated:
    capture_id: int


# ── Announcements (outputs) ───────────────────────────────────────────

@dataclass(frozen=True)
class JobQueued:
    job_id: int
    subject_id: int
    priority: str


@dataclass(frozen=True)
class JobStatusChanged:
    job_id: int
    status: str


@dataclass(frozen=True)
class JobDispatched:
    job_id: int
    subject_id: int


@dataclass(frozen=True)
class JobCompleted:
    job_id: int
    subject_id: int
    result: dict


@dataclass(frozen=True)
class JobFailed:
    job_id: int
    subject_id: int
    error: str
    attempts: int


@dataclass(frozen=True)
class QueueProcessed:
    processed: int
    failed: int


@dataclass(frozen=True)
class WebhookSent:
    capture_id: int
    status_code: Optional[int]


Handler = Callable[[Any], Any]


class EventBus:
    """Registry of handlers keyed by event class."""

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``. Returns an unsubscribe function."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def handlers(self, event_type: type) -> list[Handler]:
        with self._lock:
            return list(self._handlers.get(event_type, []))

    def publish(self, event) -> list:
        """Deliver a trigger event. Returns handler results; errors propagate."""
        return [handler(event) for handler in self.handlers(type(event))]

    def emit(self, event) -> None:
        """Deliver an announcement. Handler errors are logged, not raised."""
        for handler in self.handlers(type(event)):
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)
