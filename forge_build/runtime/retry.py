"""Per-key exponential backoff."""

from __future__ import annotations

import threading
from collections.abc import Hashable
from dataclasses import dataclass, field


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for failed reconciles.

    The n-th consecutive failure of a key waits ``base_delay * 2**n``
    seconds, capped at ``max_delay``. With ``max_retries`` set, a key
    that failed that many times in a row is dropped.

    Attributes:
        base_delay: Delay after the first failure.
        max_delay: Upper bound of any delay.
        max_retries: Consecutive failures before giving up; None retries forever.
    """

    base_delay: float = 0.005
    max_delay: float = 1000.0
    max_retries: int | None = None
    _failures: dict[Hashable, int] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def when(self, key: Hashable) -> float | None:
        """Record a failure and return the delay before the next attempt.

        Returns:
            Delay in seconds, or None once the retry budget is exhausted.
        """
        with self._lock:
            failures = self._failures.get(key, 0)
            if self.max_retries is not None and failures >= self.max_retries:
                return None
            self._failures[key] = failures + 1
        return min(self.base_delay * (2**failures), self.max_delay)

    def forget(self, key: Hashable) -> None:
        """Reset the failure count after a success."""
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


__all__ = ["RetryPolicy"]
