"""Lease-based leader election.

Managers sharing a store compete for one ``Lease`` object. The holder
renews it periodically; anyone may take it over once it has not been
renewed for ``lease_duration`` seconds. Every write is conditional on
the resourceVersion read just before, so two candidates can never both
succeed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from forge_build.store.client import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
)
from forge_build.store.unstructured import GroupVersionKind, Unstructured

logger = logging.getLogger(__name__)

LEASE_GVK = GroupVersionKind("coordination.k8s.io", "v1", "Lease")


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def _parse_time(value: str) -> float:
    return datetime.fromisoformat(value).timestamp()


class LeaderElector:
    """Acquires and renews a Lease.

    Args:
        store: Object store holding the Lease.
        name: Lease name.
        namespace: Lease namespace.
        identity: Unique identity of this candidate.
        lease_duration: Seconds the lease stays valid without renewal.
        clock: Wall-clock time source, replaceable in tests.
    """

    def __init__(
        self,
        store: ObjectStore,
        name: str,
        namespace: str,
        identity: str,
        lease_duration: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.name = name
        self.namespace = namespace
        self.identity = identity
        self.lease_duration = lease_duration
        self._clock = clock
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def retry_period(self) -> float:
        return self.lease_duration / 3

    def try_acquire_or_renew(self) -> bool:
        """Make one attempt to take or keep the lease.

        Returns:
            True if this candidate holds the lease afterwards.
        """
        now = self._clock()
        try:
            lease = self.store.get(LEASE_GVK, self.namespace, self.name)
        except NotFoundError:
            return self._create(now)

        spec, _ = lease.nested_map("spec")
        holder = spec.get("holderIdentity") or ""
        renew_time = spec.get("renewTime")
        expired = (
            not renew_time
            or _parse_time(renew_time) + float(spec.get("leaseDurationSeconds", 0)) <= now
        )
        if holder and holder != self.identity and not expired:
            self._is_leader = False
            return False

        patch_spec = {
            "holderIdentity": self.identity,
            "leaseDurationSeconds": self.lease_duration,
            "renewTime": _format_time(now),
        }
        if holder != self.identity:
            patch_spec["acquireTime"] = _format_time(now)
            patch_spec["leaseTransitions"] = int(spec.get("leaseTransitions", 0)) + 1
        try:
            self.store.patch(
                LEASE_GVK,
                self.namespace,
                self.name,
                {"spec": patch_spec},
                resource_version=lease.resource_version,
            )
        except (ConflictError, NotFoundError):
            self._is_leader = False
            return False
        if holder != self.identity:
            logger.info("Acquired lease %s/%s as %s", self.namespace, self.name, self.identity)
        self._is_leader = True
        return True

    def _create(self, now: float) -> bool:
        lease = Unstructured(
            {
                "apiVersion": LEASE_GVK.api_version,
                "kind": LEASE_GVK.kind,
                "metadata": {"name": self.name, "namespace": self.namespace},
                "spec": {
                    "holderIdentity": self.identity,
                    "leaseDurationSeconds": self.lease_duration,
                    "acquireTime": _format_time(now),
                    "renewTime": _format_time(now),
                    "leaseTransitions": 0,
                },
            }
        )
        try:
            self.store.create(lease)
        except AlreadyExistsError:
            self._is_leader = False
            return False
        logger.info("Acquired new lease %s/%s as %s", self.namespace, self.name, self.identity)
        self._is_leader = True
        return True

    def acquire(self, stop: threading.Event) -> bool:
        """Block until the lease is held or stop is set.

        Returns:
            True if the lease was acquired.
        """
        logger.info("Attempting to acquire leader lease %s/%s", self.namespace, self.name)
        while not stop.is_set():
            if self.try_acquire_or_renew():
                return True
            stop.wait(self.retry_period)
        return False

    def renew_until_lost(self, stop: threading.Event) -> None:
        """Keep renewing until stop is set or renewal fails for a full lease."""
        last_renewed = self._clock()
        while not stop.wait(self.retry_period):
            if self.try_acquire_or_renew():
                last_renewed = self._clock()
                continue
            if self._clock() - last_renewed >= self.lease_duration:
                logger.error("Lost leader lease %s/%s", self.namespace, self.name)
                self._is_leader = False
                return

    def release(self) -> None:
        """Give the lease up if this candidate holds it."""
        if not self._is_leader:
            return
        try:
            lease = self.store.get(LEASE_GVK, self.namespace, self.name)
            holder, _ = lease.nested_string("spec", "holderIdentity")
            if holder == self.identity:
                self.store.patch(
                    LEASE_GVK,
                    self.namespace,
                    self.name,
                    {"spec": {"holderIdentity": None, "renewTime": None}},
                    resource_version=lease.resource_version,
                )
        except (ConflictError, NotFoundError) as e:
            logger.warning("Could not release lease %s/%s: %s", self.namespace, self.name, e)
        self._is_leader = False


__all__ = ["LEASE_GVK", "LeaderElector"]
