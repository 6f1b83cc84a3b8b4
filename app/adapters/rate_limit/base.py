"""Rate limiter interfaces.

Routes depend on this abstraction rather than the in-memory implementation so
a shared store (e.g. Redis) can be swapped in later with minimal changes.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (0 when blocked).
        reset_time: Epoch milliseconds at which the current window ends.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int

    def retry_after_seconds(self, now_ms: int) -> int:
        """Seconds (rounded up) until the window resets, never negative."""

        return max(0, math.ceil((self.reset_time - now_ms) / 1000))


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @property
    @abstractmethod
    def limit(self) -> int:
        """Maximum requests admitted per window."""

    def now_ms(self) -> int:
        """Current time in epoch milliseconds, as seen by this limiter."""

        return int(time.time() * 1000)

    @abstractmethod
    def is_allowed(self, identifier: str) -> RateLimitResult:
        """Record a request for ``identifier`` and decide whether it may proceed.

        Args:
            identifier: Client identifier (IP address or ``"unknown"``).

        Returns:
            RateLimitResult describing the decision.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release background resources, if any."""
