"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state, since the sweep runs on its
  own thread.
- Windows start at a client's first request, not at wall-clock boundaries, so
  a burst straddling a window edge can admit up to twice the limit.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.utils.periodic import PeriodicTask

logger = logging.getLogger(__name__)

# Sweep cadence is fixed regardless of the configured window
SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class _WindowState:
    count: int
    reset_time: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Fixed-window request counter keyed by client identifier.

    Rejected requests are free: they do not increment the counter.
    """

    def __init__(
        self,
        *,
        name: str,
        max_requests: int,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ) -> None:
        """Initialize the limiter.

        Args:
            name: Label used in logs (e.g. "api", "strict").
            max_requests: Requests admitted per window.
            window_ms: Window length in milliseconds.
            clock: Time source returning UNIX time in seconds.
            start_sweeper: Start the background sweep of elapsed windows.

        Raises:
            ValueError: If max_requests or window_ms are invalid.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        self.name = name
        self._max_requests = max_requests
        self._window_ms = window_ms
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}
        self._sweeper: PeriodicTask | None = None

        if start_sweeper:
            self._sweeper = PeriodicTask(
                f"rate-limit-sweep-{name}", SWEEP_INTERVAL_SECONDS, self.cleanup
            ).start()

    @property
    def limit(self) -> int:
        return self._max_requests

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_allowed(self, identifier: str) -> RateLimitResult:
        now = self.now_ms()

        with self._lock:
            state = self._state_by_key.get(identifier)

            if state is None or now > state.reset_time:
                state = _WindowState(count=1, reset_time=now + self._window_ms)
                self._state_by_key[identifier] = state
                return RateLimitResult(
                    allowed=True,
                    limit=self._max_requests,
                    remaining=self._max_requests - 1,
                    reset_time=state.reset_time,
                )

            if state.count >= self._max_requests:
                return RateLimitResult(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    reset_time=state.reset_time,
                )

            state.count += 1
            return RateLimitResult(
                allowed=True,
                limit=self._max_requests,
                remaining=self._max_requests - state.count,
                reset_time=state.reset_time,
            )

    def cleanup(self) -> int:
        """Forget identifiers whose window has elapsed.

        Returns:
            Number of entries removed.
        """
        now = self.now_ms()
        with self._lock:
            elapsed = [k for k, state in self._state_by_key.items() if now > state.reset_time]
            for key in elapsed:
                del self._state_by_key[key]

        if elapsed:
            logger.debug(
                "rate_limit.sweep",
                extra={"limiter": self.name, "removed": len(elapsed)},
            )
        return len(elapsed)

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
