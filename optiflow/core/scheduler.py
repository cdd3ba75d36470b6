"""
Tick scheduler: runs each periodic entry point on its own interval.

One daemon thread per tick. A tick always runs to completion before its
next interval starts, so the same tick never overlaps itself.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Tick:
    name: str
    func: Callable[[], object]
    interval: float
    run_immediately: bool = True


class TickScheduler:

    def __init__(self):
        self._ticks: dict[str, Tick] = {}
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._running = False

    def add(self, name: str, func: Callable[[], object], interval: float,
            run_immediately: bool = True):
        if interval <= 0:
            raise ValueError(f"Tick interval must be positive: {interval}")
        self._ticks[name] = Tick(name, func, interval, run_immediately)

    def names(self) -> list[str]:
        return list(self._ticks)

    def start(self):
        """Start one worker thread per registered tick."""
        if self._running:
            return
        self._stop_event.clear()
        self._running = True
        for tick in self._ticks.values():
            thread = threading.Thread(target=self._tick_loop, args=(tick,),
                                      name=f"tick-{tick.name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Scheduler started (%s)", ", ".join(self._ticks))

    def stop(self, timeout: Optional[float] = None):
        """Signal all ticks to stop and wait for in-progress ones to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""
        return self._stop_event.wait(timeout)

    # ── Worker loop ───────────────────────────────────────────────────

    def _tick_loop(self, tick: Tick):
        if not tick.run_immediately and self._stop_event.wait(tick.interval):
            return
        while not self._stop_event.is_set():
            try:
                tick.func()
            except Exception as e:
                logger.error("Tick %s failed: %s", tick.name, e, exc_info=True)
            if self._stop_event.wait(tick.interval):
                break
