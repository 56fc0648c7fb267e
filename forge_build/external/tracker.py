"""Watches on referenced kinds, registered once per kind."""

from __future__ import annotations

import logging
import threading

from forge_build.runtime.controller import Controller, request_for_controller_owner
from forge_build.store.unstructured import GroupVersionKind

logger = logging.getLogger(__name__)


class ObjectTracker:
    """Makes changes to referenced objects re-trigger their owning Build.

    The first ``watch`` for a group/kind subscribes the controller to
    that kind, mapping events to the controlling owner of the given
    type; later calls for the same kind, whatever the version, do
    nothing.

    Args:
        controller: Controller whose queue receives the owner requests.
        owner_group: API group of the owning type.
        owner_kind: Kind of the owning type.
    """

    def __init__(self, controller: Controller, owner_group: str, owner_kind: str) -> None:
        self.controller = controller
        self.owner_group = owner_group
        self.owner_kind = owner_kind
        self._watching: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def watch(self, gvk: GroupVersionKind) -> None:
        key = (gvk.group, gvk.kind)
        with self._lock:
            if key in self._watching:
                return
            self.controller.watch(
                gvk.group,
                gvk.kind,
                mapper=request_for_controller_owner(self.owner_group, self.owner_kind),
            )
            self._watching.add(key)
        logger.info("Watching %s for %s owners", gvk.kind, self.owner_kind)

    def is_watching(self, gvk: GroupVersionKind) -> bool:
        with self._lock:
            return (gvk.group, gvk.kind) in self._watching

    def reset(self) -> None:
        """Forget registrations; the controller's own stop drops the watches."""
        with self._lock:
            self._watching.clear()


__all__ = ["ObjectTracker"]
