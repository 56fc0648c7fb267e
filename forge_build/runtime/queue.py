"""Rate-limited work queue.

Keys are de-duplicated while waiting, and a key handed to a worker is
not handed to another one until ``done`` is called. A key added while
it is being processed is queued again once processing finishes.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from forge_build.runtime.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ShutDownError(Exception):
    """Raised by ``get`` once the queue is shut down and drained."""

    def __init__(self) -> None:
        super().__init__("work queue is shut down")
        self.code = "queue_shut_down"


class WorkQueue:
    """Thread-safe de-duplicating queue with delayed adds.

    Args:
        retry_policy: Backoff used by ``add_rate_limited``.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._counter = itertools.count()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add item once delay seconds have passed."""
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(
                self._waiting, (self._clock() + delay, next(self._counter), item)
            )
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> bool:
        """Re-add a failed item after its backoff.

        Returns:
            False if the retry budget is exhausted and the item was dropped.
        """
        delay = self.retry_policy.when(item)
        if delay is None:
            logger.error("Dropping %s after %d retries", item, self.retry_policy.max_retries)
            self.retry_policy.forget(item)
            return False
        self.add_after(item, delay)
        return True

    def forget(self, item: Hashable) -> None:
        self.retry_policy.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.retry_policy.failures(item)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Take the next item, blocking until one is ready.

        Returns:
            The item, or None if timeout passed without one.

        Raises:
            ShutDownError: If the queue is shut down.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_waiting()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item
                if self._shutting_down:
                    raise ShutDownError()
                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0)
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, item: Hashable) -> None:
        """Mark item processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting)

    def _promote_waiting(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            self._add_locked(item)


__all__ = ["ShutDownError", "WorkQueue"]
