"""
Turf — ecosystem/scheduler.py
PeriodicWorker: one background thread per periodic job.
=======================================================
Version:     0.2
Stack:       Python 3.11+ | threading
Status:      Canonical.

- run_once() is the manual entry point and the body of every scheduled tick.
- A run that overlaps an in-flight run of the same worker is skipped and
  returns a summary with skipped=True.
- The background loop never dies on a failed tick: the error is logged and
  the next tick retries. run_once() called by hand raises instead.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from ecosystem.bus import EVT_TICK_COMPLETED, EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.models import TickSummary

logger = logging.getLogger(__name__)

JobFn = Callable[[], TickSummary]


class WorkerStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    interval_seconds: float
    is_running: bool
    is_alive: bool
    last_run_at: Optional[datetime] = None
    last_summary: Optional[TickSummary] = None


class PeriodicWorker:
    def __init__(
        self,
        name: str,
        job: JobFn,
        interval_seconds: float,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.name = name
        self.job = job
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self.bus = bus

        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_run_at: Optional[datetime] = None
        self._last_summary: Optional[TickSummary] = None

    # ----------------------------------------------------------
    # Manual entry point
    # ----------------------------------------------------------

    def run_once(self) -> TickSummary:
        if not self._running.acquire(blocking=False):
            logger.info("Worker %s is already running; skipping", self.name)
            return TickSummary(worker=self.name, skipped=True, ran_at=self.clock.now())
        try:
            summary = self.job()
        finally:
            self._running.release()

        self._last_run_at = summary.ran_at
        self._last_summary = summary
        if summary.failed:
            logger.warning("Worker %s finished with %d failed regions", self.name, summary.failed)
        if self.bus is not None:
            self.bus.publish(
                EVT_TICK_COMPLETED,
                summary.ran_at,
                worker=self.name,
                summary=summary.model_dump(by_alias=True, mode="json"),
            )
        return summary

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            name=self.name,
            interval_seconds=self.interval_seconds,
            is_running=self._running.locked(),
            is_alive=self._thread is not None and self._thread.is_alive(),
            last_run_at=self._last_run_at,
            last_summary=self._last_summary,
        )

    # ----------------------------------------------------------
    # Background thread
    # ----------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"turf-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Worker %s started (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Worker %s stopped", self.name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s tick aborted; retrying in %ss",
                                 self.name, self.interval_seconds)
            self._stop.wait(self.interval_seconds)
