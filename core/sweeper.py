"""
Warden Background Sweeper

Daemon thread running the periodic housekeeping jobs independently of
request handlers: the stale-session reaper and the idle rate-limit counter
GC, each on its own interval. A failing job is logged and retried on its
next tick; it never kills the thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class SweepJob:
    name: str
    interval: float
    run: Callable[[], object]
    next_due: float = 0.0


class Sweeper:

    def __init__(self, tick: float = 1.0) -> None:
        self.tick = tick
        self._jobs: List[SweepJob] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(self, name: str, interval: float, run: Callable[[], object]) -> None:
        if interval <= 0:
            raise ValueError(f"interval for {name} must be positive")
        self._jobs.append(SweepJob(name, interval, run, next_due=time.monotonic() + interval))

    def run_pending(self, now: Optional[float] = None) -> int:
        """Run every job that is due. Returns how many ran."""
        now = time.monotonic() if now is None else now
        ran = 0
        for job in self._jobs:
            if now < job.next_due:
                continue
            job.next_due = now + job.interval
            ran += 1
            try:
                result = job.run()
                logger.debug(f"Sweep {job.name} finished: {result}")
            except Exception as e:
                logger.error(f"Sweep {job.name} failed: {e}")
        return ran

    def _loop(self) -> None:
        while not self._stop.wait(self.tick):
            self.run_pending()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="warden-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Sweeper started with {len(self._jobs)} jobs")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sweeper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
