"""Object store contract.

Controllers talk to the store through ObjectStore: get/list/create,
JSON merge patch with optional optimistic concurrency, finalizer-gated
delete and per-kind watches. Errors carry a stable ``code`` so callers
branch on expected absence without string matching.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from forge_build.store.patch import merge_diff
from forge_build.store.unstructured import GroupVersionKind, Unstructured

logger = logging.getLogger(__name__)

CRD_GVK = GroupVersionKind("apiextensions.k8s.io", "v1", "CustomResourceDefinition")
SECRET_GVK = GroupVersionKind("", "v1", "Secret")
CONFIG_MAP_GVK = GroupVersionKind("", "v1", "ConfigMap")


def now_timestamp() -> str:
    """Current UTC time in the RFC 3339 form used on resources."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StoreError(Exception):
    """Base error for object store operations."""

    def __init__(self, message: str, code: str = "store_error") -> None:
        super().__init__(message)
        self.code = code


class NotFoundError(StoreError):
    """Raised when an object does not exist."""

    def __init__(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        target = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{gvk.kind} {target!r} not found", code="not_found")
        self.gvk = gvk
        self.namespace = namespace
        self.name = name


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose name is taken."""

    def __init__(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        target = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{gvk.kind} {target!r} already exists", code="already_exists")
        self.gvk = gvk
        self.namespace = namespace
        self.name = name


class ConflictError(StoreError):
    """Raised when a write carries a stale resourceVersion."""

    def __init__(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        super().__init__(
            f"operation cannot be fulfilled on {gvk.kind} {namespace}/{name}: "
            "the object has been modified; please apply your changes to the "
            "latest version and try again",
            code="conflict",
        )
        self.gvk = gvk
        self.namespace = namespace
        self.name = name


class WatchEventType(str, Enum):
    """Kind of change delivered to watch handlers."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """A change to one object."""

    type: WatchEventType
    object: Unstructured


WatchHandler = Callable[[WatchEvent], None]


class OperationResult(str, Enum):
    """Outcome of create_or_patch."""

    CREATED = "created"
    PATCHED = "patched"
    UNCHANGED = "unchanged"


class ObjectStore(ABC):
    """Watchable store of resource documents."""

    @abstractmethod
    def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Unstructured:
        """Fetch one object.

        Raises:
            NotFoundError: If the object does not exist.
        """

    @abstractmethod
    def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[Unstructured]:
        """List objects of a kind, optionally by namespace and label equality."""

    @abstractmethod
    def create(self, obj: Unstructured) -> Unstructured:
        """Create an object and return the stored copy.

        Raises:
            AlreadyExistsError: If the name is taken.
        """

    @abstractmethod
    def patch(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> Unstructured:
        """Apply a JSON merge patch.

        Args:
            gvk: Type of the object.
            namespace: Object namespace.
            name: Object name.
            patch: RFC 7386 merge patch.
            resource_version: If set, the write fails unless the stored
                object still has this resourceVersion.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If resource_version is stale.
        """

    @abstractmethod
    def delete(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        """Request deletion.

        Objects with finalizers only get a deletionTimestamp; they are
        removed once the last finalizer is cleared.

        Raises:
            NotFoundError: If the object does not exist.
        """

    @abstractmethod
    def watch(self, group: str, kind: str, handler: WatchHandler) -> Callable[[], None]:
        """Subscribe to changes of one kind across all versions.

        Returns:
            Callable that removes the subscription.
        """


def create_or_patch(
    store: ObjectStore,
    obj: Unstructured,
    mutate: Callable[[Unstructured], None],
) -> tuple[Unstructured, OperationResult]:
    """Create obj, or bring the existing object in line with mutate.

    Args:
        store: Object store.
        obj: Desired object; used as-is when nothing exists yet.
        mutate: Applied to the desired object before creation, or to the
            existing object otherwise.

    Returns:
        Tuple of (stored object, what happened).
    """
    try:
        existing = store.get(obj.gvk, obj.namespace, obj.name)
    except NotFoundError:
        mutate(obj)
        return store.create(obj), OperationResult.CREATED

    desired = existing.deepcopy()
    mutate(desired)
    diff = merge_diff(existing.object, desired.object)
    if not diff:
        return existing, OperationResult.UNCHANGED
    updated = store.patch(
        existing.gvk,
        existing.namespace,
        existing.name,
        diff,
        resource_version=existing.resource_version,
    )
    return updated, OperationResult.PATCHED


def match_labels(obj: Unstructured, selector: dict[str, str] | None) -> bool:
    """Return True when obj carries every label in selector."""
    if not selector:
        return True
    labels = obj.labels
    return all(labels.get(key) == value for key, value in selector.items())


__all__ = [
    "AlreadyExistsError",
    "CRD_GVK",
    "CONFIG_MAP_GVK",
    "ConflictError",
    "NotFoundError",
    "ObjectStore",
    "OperationResult",
    "SECRET_GVK",
    "StoreError",
    "WatchEvent",
    "WatchEventType",
    "WatchHandler",
    "create_or_patch",
    "match_labels",
    "now_timestamp",
]
