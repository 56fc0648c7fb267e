"""Controller: watches feeding a work queue drained by worker threads.

A controller owns one reconcile function. Watch events are filtered by
predicates, mapped to requests and queued; workers take requests off
the queue one at a time, so a key is never reconciled by two workers at
once. Failures are re-queued with the controller's RetryPolicy,
requested requeues with a delay.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from forge_build.runtime.predicates import Predicate
from forge_build.runtime.queue import ShutDownError, WorkQueue
from forge_build.runtime.result import Request, Result
from forge_build.runtime.retry import RetryPolicy
from forge_build.store.client import ObjectStore, WatchEvent, WatchEventType
from forge_build.store.unstructured import GroupVersionKind, Unstructured

logger = logging.getLogger(__name__)

Reconcile = Callable[[Request], Result]
Mapper = Callable[[Unstructured], list[Request]]


def request_for_object(obj: Unstructured) -> list[Request]:
    return [Request(obj.namespace, obj.name)]


def request_for_controller_owner(group: str, kind: str) -> Mapper:
    """Map an object to its controlling owner of the given type."""

    def mapper(obj: Unstructured) -> list[Request]:
        owner = obj.controller_owner()
        if owner is None or owner.get("kind") != kind:
            return []
        owner_group = str(owner.get("apiVersion", "")).rpartition("/")[0]
        if owner_group != group:
            return []
        return [Request(obj.namespace, str(owner.get("name", "")))]

    return mapper


class Controller:
    """Runs a reconcile function for queued requests.

    Args:
        name: Controller name used in logs.
        reconcile: Function called for each request.
        store: Store whose watches feed the queue.
        workers: Number of worker threads.
        retry_policy: Backoff for failed reconciles.
    """

    def __init__(
        self,
        name: str,
        reconcile: Reconcile,
        store: ObjectStore,
        workers: int = 1,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.name = name
        self.reconcile = reconcile
        self.store = store
        self.workers = workers
        self.queue = WorkQueue(retry_policy)
        self._unsubscribers: list[Callable[[], None]] = []
        self._sources: list[tuple[str, str, Callable[[WatchEvent], None]]] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def watch(
        self,
        group: str,
        kind: str,
        mapper: Mapper = request_for_object,
        predicates: Iterable[Predicate] = (),
    ) -> None:
        """Queue requests for changes to objects of one kind."""
        filters = list(predicates)

        def handler(event: WatchEvent) -> None:
            if not all(p(event) for p in filters):
                return
            for request in mapper(event.object):
                self.queue.add(request)

        unsubscribe = self.store.watch(group, kind, handler)
        with self._lock:
            self._unsubscribers.append(unsubscribe)
            self._sources.append((group, kind, handler))
        logger.debug("Controller %s watching %s/%s", self.name, group, kind)

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Reconcile one queued request.

        Returns:
            False when nothing was processed (timeout or shutdown).
        """
        try:
            request = self.queue.get(timeout)
        except ShutDownError:
            return False
        if request is None:
            return False
        try:
            result = self.reconcile(request)  # type: ignore[arg-type]
        except Exception:
            logger.exception("Reconciler %s error for %s", self.name, request)
            self.queue.add_rate_limited(request)
        else:
            self.queue.forget(request)
            if result.requeue_after > 0:
                self.queue.add_after(request, result.requeue_after)
        finally:
            self.queue.done(request)
        return True

    def resync(self) -> None:
        """Queue requests for every object already in the store.

        Each existing object is passed through the watch handlers as if
        it had just been added.
        """
        with self._lock:
            sources = list(self._sources)
        for group, kind, handler in sources:
            for obj in self.store.list(GroupVersionKind(group, "", kind)):
                handler(WatchEvent(WatchEventType.ADDED, obj))

    def start(self) -> None:
        """Queue existing objects and start the worker threads."""
        self.resync()
        logger.info("Starting controller %s with %d workers", self.name, self.workers)
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _worker(self) -> None:
        while not self.queue.shutting_down:
            self.process_next_item(timeout=1.0)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and shut the workers down."""
        with self._lock:
            unsubscribers, self._unsubscribers = self._unsubscribers, []
            self._sources = []
        for unsubscribe in unsubscribers:
            unsubscribe()
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Stopped controller %s", self.name)


__all__ = [
    "Controller",
    "Mapper",
    "Reconcile",
    "request_for_controller_owner",
    "request_for_object",
]
