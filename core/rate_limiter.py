"""
Warden Rate Limiter

Fixed-window per-user counters bounding how often a short-lived content
URL may be minted. Checked before the content collaborator is contacted so
an abusive client cannot be amplified into repeated signing calls.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict


logger = logging.getLogger(__name__)


@dataclass
class RateLimitCounter:
    count: int
    window_start: float


class RateLimiter(ABC):
    """allow() is the whole contract; sweep() is housekeeping."""

    def __init__(self, window: float = 60.0, max_per_window: int = 30) -> None:
        self.window = window
        self.max_per_window = max_per_window

    @abstractmethod
    def allow(self, user_id: str, now: float) -> bool:
        ...

    def sweep(self, now: float) -> int:
        """Drop counters idle beyond 2x the window. Returns how many were dropped."""
        return 0


class InMemoryRateLimiter(RateLimiter):
    """Single-process limiter; the check-increment-reset sequence is atomic under one lock."""

    def __init__(self, window: float = 60.0, max_per_window: int = 30) -> None:
        super().__init__(window, max_per_window)
        self._counters: Dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    def allow(self, user_id: str, now: float) -> bool:
        with self._lock:
            counter = self._counters.get(user_id)
            if counter is None or now - counter.window_start >= self.window:
                self._counters[user_id] = RateLimitCounter(count=1, window_start=now)
                return True
            # Saturate at max + 1 so a flood does not grow the counter unbounded
            if counter.count <= self.max_per_window:
                counter.count += 1
            return counter.count <= self.max_per_window

    def sweep(self, now: float) -> int:
        horizon = 2 * self.window
        with self._lock:
            idle = [
                user_id for user_id, counter in self._counters.items()
                if now - counter.window_start > horizon
            ]
            for user_id in idle:
                del self._counters[user_id]
        if idle:
            logger.debug(f"Dropped {len(idle)} idle rate-limit counters")
        return len(idle)

    def get(self, user_id: str) -> RateLimitCounter | None:
        with self._lock:
            counter = self._counters.get(user_id)
            return None if counter is None else RateLimitCounter(counter.count, counter.window_start)
