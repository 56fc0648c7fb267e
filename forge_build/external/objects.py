"""Helpers for referenced objects of unknown schema.

Only a few conventional status fields are read from these objects:
``status.ready``, ``status.machineReady``, ``status.failureReason``,
``status.failureMessage``, ``status.failureDomains`` and the Ready
condition.
"""

from __future__ import annotations

from dataclasses import dataclass

from forge_build.builds.schema import ObjectReference
from forge_build.store.client import ObjectStore
from forge_build.store.unstructured import Unstructured
from forge_build.types import PAUSED_ANNOTATION


@dataclass
class ReconcileOutput:
    """Outcome of linking a Build to a referenced object.

    Attributes:
        result: The fetched object, when the caller may go on with it.
        paused: The Build or the object is paused.
        requeue_after: Seconds to wait before trying again; 0 for none.
    """

    result: Unstructured | None = None
    paused: bool = False
    requeue_after: float = 0.0


def get(store: ObjectStore, ref: ObjectReference, namespace: str) -> Unstructured:
    """Fetch the object ref points to.

    Args:
        store: Object store.
        ref: Reference; its namespace wins over the given one when set.
        namespace: Namespace of the referencing object.

    Raises:
        NotFoundError: If the object does not exist.
    """
    return store.get(ref.gvk, ref.namespace or namespace, ref.name)


def is_paused(obj: Unstructured) -> bool:
    return PAUSED_ANNOTATION in obj.annotations


def is_ready(obj: Unstructured) -> bool:
    """Read status.ready; absent means not ready.

    Raises:
        FieldTypeError: If the field is not a bool.
    """
    ready, _ = obj.nested_bool("status", "ready")
    return ready


def is_machine_ready(obj: Unstructured) -> bool:
    """Read status.machineReady, falling back to status.ready.

    Raises:
        FieldTypeError: If the field is not a bool.
    """
    ready, found = obj.nested_bool("status", "machineReady")
    if found:
        return ready
    return is_ready(obj)


def failures_from(obj: Unstructured) -> tuple[str | None, str | None]:
    """Read status.failureReason and status.failureMessage.

    Raises:
        FieldTypeError: If either field is not a string.
    """
    reason, reason_found = obj.nested_string("status", "failureReason")
    message, message_found = obj.nested_string("status", "failureMessage")
    return (reason if reason_found else None, message if message_found else None)


__all__ = [
    "ReconcileOutput",
    "failures_from",
    "get",
    "is_machine_ready",
    "is_paused",
    "is_ready",
]
