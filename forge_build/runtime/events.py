"""Event recording.

Events are written to the store as core ``Event`` objects pointing at
the object they describe, and echoed to the log. Repeats of the same
event (same object, source, type, reason and message) are folded into
one object whose ``count`` and ``lastTimestamp`` are bumped, so there is
one Event object per distinct event. Events are not owned by the object
they describe; the Deleted event of a Build outlives the Build. Failing
to record an event never fails the caller.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Any

from forge_build.store.client import NotFoundError, ObjectStore, StoreError, now_timestamp
from forge_build.store.unstructured import GroupVersionKind, Unstructured
from forge_build.types import EventType

if TYPE_CHECKING:
    from forge_build.builds.schema import Build

logger = logging.getLogger(__name__)

EVENT_GVK = GroupVersionKind("", "v1", "Event")


def _involved_object(obj: Build | Unstructured) -> dict[str, Any]:
    if isinstance(obj, Unstructured):
        return {
            "apiVersion": obj.api_version,
            "kind": obj.kind,
            "name": obj.name,
            "namespace": obj.namespace,
            "uid": obj.uid,
        }
    return {
        "apiVersion": obj.api_version,
        "kind": obj.kind,
        "name": obj.metadata.name,
        "namespace": obj.metadata.namespace or "",
        "uid": obj.metadata.uid or "",
    }


def event_name(
    involved: dict[str, Any], component: str, event_type: EventType, reason: str, message: str
) -> str:
    """Name shared by every repeat of one event."""
    key = "/".join(
        [
            component,
            involved["kind"],
            involved["namespace"],
            involved["name"],
            involved["uid"],
            event_type.value,
            reason,
            message,
        ]
    )
    return f"{involved['name']}.{hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]}"


class EventRecorder:
    """Records events on behalf of one component.

    Args:
        store: Object store the Event objects are written to.
        component: Reported as the event source.
    """

    def __init__(self, store: ObjectStore, component: str) -> None:
        self.store = store
        self.component = component

    def event(
        self,
        obj: Build | Unstructured,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        involved = _involved_object(obj)
        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(
            "%s %s/%s: %s",
            reason,
            involved["namespace"],
            involved["name"],
            message,
            extra={"event_type": event_type.value, "component": self.component},
        )
        name = event_name(involved, self.component, event_type, reason, message)
        try:
            self._record(involved, name, event_type, reason, message)
        except StoreError as e:
            logger.warning("Could not record event %s: %s", reason, e)

    def _record(
        self,
        involved: dict[str, Any],
        name: str,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        namespace = involved["namespace"]
        timestamp = now_timestamp()
        try:
            existing = self.store.get(EVENT_GVK, namespace, name)
        except NotFoundError:
            pass
        else:
            count = existing.object.get("count") or 1
            self.store.patch(
                EVENT_GVK,
                namespace,
                name,
                {"count": count + 1, "lastTimestamp": timestamp},
                resource_version=existing.resource_version,
            )
            return

        event = Unstructured(
            {
                "apiVersion": EVENT_GVK.api_version,
                "kind": EVENT_GVK.kind,
                "metadata": {"name": name, "namespace": namespace},
                "involvedObject": involved,
                "reason": reason,
                "message": message,
                "type": event_type.value,
                "source": {"component": self.component},
                "count": 1,
                "firstTimestamp": timestamp,
                "lastTimestamp": timestamp,
            }
        )
        self.store.create(event)


__all__ = ["EVENT_GVK", "EventRecorder", "event_name"]
