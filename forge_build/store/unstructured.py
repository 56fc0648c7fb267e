"""Schema-less resource documents.

Referenced infrastructure and provisioner objects are provider-defined,
so they are handled as JSON-compatible dicts addressed by key paths
rather than through static models.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

_MISSING = object()


class FieldTypeError(TypeError):
    """Raised when a nested field exists but has an unexpected type."""

    def __init__(self, path: tuple[str, ...], expected: str, actual: Any) -> None:
        super().__init__(
            f"{'.'.join(path)} accessor error: {actual!r} is of type "
            f"{type(actual).__name__}, expected {expected}"
        )
        self.path = path
        self.code = "field_type_error"


@dataclass(frozen=True)
class GroupVersionKind:
    """Identity of a resource type."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        """Render as an apiVersion string ("group/version" or "version")."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        """Parse an apiVersion string.

        Args:
            api_version: "group/version", or a bare version for the core group.
            kind: Resource kind.

        Returns:
            Parsed GroupVersionKind.
        """
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def with_version(self, version: str) -> GroupVersionKind:
        return GroupVersionKind(self.group, version, self.kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


class Unstructured:
    """A resource document with key-path access.

    The wrapped dict is the document itself; mutations through this
    wrapper are visible to anyone holding the dict.
    """

    def __init__(self, obj: dict[str, Any] | None = None) -> None:
        self.object: dict[str, Any] = obj if obj is not None else {}

    # Identity

    @property
    def api_version(self) -> str:
        return str(self.object.get("apiVersion", ""))

    @api_version.setter
    def api_version(self, value: str) -> None:
        self.object["apiVersion"] = value

    @property
    def kind(self) -> str:
        return str(self.object.get("kind", ""))

    @kind.setter
    def kind(self, value: str) -> None:
        self.object["kind"] = value

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.object.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace", ""))

    @property
    def uid(self) -> str:
        return str(self.metadata.get("uid", ""))

    @property
    def resource_version(self) -> str:
        return str(self.metadata.get("resourceVersion", ""))

    @property
    def deletion_timestamp(self) -> str | None:
        return self.metadata.get("deletionTimestamp")

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.get("labels") or {}

    def set_label(self, key: str, value: str) -> None:
        self.metadata.setdefault("labels", {})[key] = value

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def finalizers(self) -> list[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def owner_references(self) -> list[dict[str, Any]]:
        return list(self.metadata.get("ownerReferences") or [])

    # Key-path access

    def get_nested(self, *path: str) -> tuple[Any, bool]:
        """Look up a nested field.

        Returns:
            Tuple of (value, found). value is None when not found.
        """
        current: Any = self.object
        for key in path:
            if not isinstance(current, dict):
                return None, False
            current = current.get(key, _MISSING)
            if current is _MISSING:
                return None, False
        return current, True

    def set_nested(self, value: Any, *path: str) -> None:
        """Set a nested field, creating intermediate maps."""
        current = self.object
        for key in path[:-1]:
            child = current.get(key)
            if not isinstance(child, dict):
                child = {}
                current[key] = child
            current = child
        current[path[-1]] = value

    def remove_nested(self, *path: str) -> None:
        """Remove a nested field if present."""
        current: Any = self.object
        for key in path[:-1]:
            current = current.get(key) if isinstance(current, dict) else None
            if current is None:
                return
        if isinstance(current, dict):
            current.pop(path[-1], None)

    def nested_bool(self, *path: str) -> tuple[bool, bool]:
        """Read a boolean field.

        Raises:
            FieldTypeError: If the field exists and is not a bool.
        """
        value, found = self.get_nested(*path)
        if not found:
            return False, False
        if not isinstance(value, bool):
            raise FieldTypeError(path, "bool", value)
        return value, True

    def nested_string(self, *path: str) -> tuple[str, bool]:
        """Read a string field.

        Raises:
            FieldTypeError: If the field exists and is not a string.
        """
        value, found = self.get_nested(*path)
        if not found:
            return "", False
        if not isinstance(value, str):
            raise FieldTypeError(path, "string", value)
        return value, True

    def nested_map(self, *path: str) -> tuple[dict[str, Any], bool]:
        """Read a map field.

        Raises:
            FieldTypeError: If the field exists and is not a map.
        """
        value, found = self.get_nested(*path)
        if not found:
            return {}, False
        if not isinstance(value, dict):
            raise FieldTypeError(path, "map", value)
        return value, True

    # Ownership

    def set_controller_reference(
        self,
        owner_api_version: str,
        owner_kind: str,
        owner_name: str,
        owner_uid: str,
    ) -> None:
        """Make the given object the controlling owner of this one.

        An existing reference to the same owner is replaced in place; any
        other reference keeps its position but loses the controller flag.
        """
        ref = {
            "apiVersion": owner_api_version,
            "kind": owner_kind,
            "name": owner_name,
            "uid": owner_uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
        refs = []
        replaced = False
        for existing in self.owner_references:
            if existing.get("uid") == owner_uid:
                refs.append(ref)
                replaced = True
                continue
            if existing.get("controller"):
                existing = {**existing, "controller": False}
            refs.append(existing)
        if not replaced:
            refs.append(ref)
        self.metadata["ownerReferences"] = refs

    def is_owned_by(self, owner_uid: str) -> bool:
        return any(ref.get("uid") == owner_uid for ref in self.owner_references)

    def controller_owner(self) -> dict[str, Any] | None:
        for ref in self.owner_references:
            if ref.get("controller"):
                return ref
        return None

    def deepcopy(self) -> Unstructured:
        return Unstructured(copy.deepcopy(self.object))

    def __repr__(self) -> str:
        return f"Unstructured({self.gvk}, {self.namespace}/{self.name})"


__all__ = ["FieldTypeError", "GroupVersionKind", "Unstructured"]
