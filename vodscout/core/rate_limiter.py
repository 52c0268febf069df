"""
Rate Limiter
Per-host request pacing for catalog sites
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import threading
import time


@dataclass
class _KeyState:
    next_slot_at: float = 0.0
    window_started_at: float = 0.0
    window_count: int = 0


class RateLimiter:
    """
    Reserves request slots per key (usually a hostname).

    acquire() never sleeps itself; it books the slot and returns how long the
    caller has to wait before sending. Two rules apply per key:
    - consecutive requests are spaced by at least min_interval_seconds
    - at most max_per_minute requests start inside one 60s window
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        min_interval_seconds: float = 0.8,
        max_per_minute: int = 30,
        clock: Optional[Callable[[], float]] = None,
        sleeper: Optional[Callable[[float], None]] = None,
    ):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self.max_per_minute = max(1, int(max_per_minute))
        self._clock = clock or time.monotonic
        self._sleep = sleeper or time.sleep
        self._state: Dict[str, _KeyState] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str) -> float:
        """Book the next slot for key; returns seconds to wait (0.0 if free)"""
        with self._lock:
            now = self._clock()
            state = self._state.setdefault(key, _KeyState(window_started_at=now))

            start_at = max(now, state.next_slot_at)

            if start_at - state.window_started_at >= self.WINDOW_SECONDS:
                state.window_started_at = start_at
                state.window_count = 0
            if state.window_count >= self.max_per_minute:
                # Budget spent: push into the next window.
                start_at = max(start_at, state.window_started_at + self.WINDOW_SECONDS)
                state.window_started_at = start_at
                state.window_count = 0

            state.window_count += 1
            state.next_slot_at = start_at + self.min_interval_seconds
            return max(0.0, start_at - now)

    def wait(self, key: str) -> float:
        """acquire() and sleep for the returned duration"""
        delay = self.acquire(key)
        if delay > 0:
            self._sleep(delay)
        return delay

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._state.clear()
            else:
                self._state.pop(key, None)
