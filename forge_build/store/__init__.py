"""Object store contract and its SQL implementation."""

from forge_build.store.client import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ObjectStore,
    StoreError,
)
from forge_build.store.unstructured import GroupVersionKind, Unstructured

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "GroupVersionKind",
    "NotFoundError",
    "ObjectStore",
    "StoreError",
    "Unstructured",
]
