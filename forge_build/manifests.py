"""Manifest loading and application.

Manifests are YAML (possibly multi-document) or JSON files holding
resource documents. ``kind: List`` documents are expanded into their
items. Applying a manifest creates the object or merge-patches the
existing one with the manifest's content.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from forge_build.builds.schema import BUILD_GVK, Build
from forge_build.store.client import ObjectStore, OperationResult, create_or_patch
from forge_build.store.patch import apply_merge_patch
from forge_build.store.unstructured import Unstructured

logger = logging.getLogger(__name__)


class ManifestError(ValueError):
    """Raised when a manifest document is not a valid resource."""

    def __init__(self, message: str, source: str = "") -> None:
        super().__init__(f"{source}: {message}" if source else message)
        self.code = "invalid_manifest"


def _expand(document: Any, source: str) -> list[dict[str, Any]]:
    if document is None:
        return []
    if not isinstance(document, dict):
        raise ManifestError(f"expected a mapping, got {type(document).__name__}", source)
    if document.get("kind") == "List":
        expanded = []
        for item in document.get("items") or []:
            expanded.extend(_expand(item, source))
        return expanded
    return [document]


def validate_document(document: dict[str, Any], source: str = "") -> Unstructured:
    """Check a single resource document.

    Build documents are additionally validated against the Build model.

    Raises:
        ManifestError: If required fields are missing or the Build is invalid.
    """
    obj = Unstructured(document)
    if not obj.api_version or not obj.kind:
        raise ManifestError("apiVersion and kind are required", source)
    if not obj.name:
        raise ManifestError(f"{obj.kind} has no metadata.name", source)
    if (obj.gvk.group, obj.gvk.kind) == (BUILD_GVK.group, BUILD_GVK.kind):
        try:
            Build.model_validate(document)
        except ValidationError as e:
            raise ManifestError(f"invalid Build {obj.name!r}: {e}", source) from e
    return obj


def parse_manifests(text: str, source: str = "", is_json: bool = False) -> list[Unstructured]:
    """Parse manifest text into resource documents.

    Raises:
        yaml.YAMLError: If the text is not valid YAML.
        json.JSONDecodeError: If is_json is set and the text is not valid JSON.
        ManifestError: If a document is not a valid resource.
    """
    if is_json:
        documents = [json.loads(text)]
    else:
        documents = list(yaml.safe_load_all(text))
    objects = []
    for document in documents:
        for item in _expand(document, source):
            objects.append(validate_document(item, source))
    return objects


def load_manifests(path: Path) -> list[Unstructured]:
    """Load every resource document from a file.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ManifestError: If a document is not a valid resource.
    """
    with open(path, encoding="utf-8") as f:
        text = f.read()
    return parse_manifests(text, source=str(path), is_json=path.suffix == ".json")


def apply_manifest(store: ObjectStore, obj: Unstructured) -> tuple[Unstructured, OperationResult]:
    """Create obj or merge its content into the existing object.

    Returns:
        Tuple of (stored object, what happened).

    Raises:
        StoreError: If the write fails.
    """
    desired = obj.deepcopy().object

    def mutate(target: Unstructured) -> None:
        merged = apply_merge_patch(target.object, desired)
        target.object.clear()
        target.object.update(merged)

    stored, operation = create_or_patch(store, obj, mutate)
    logger.info("%s %s/%s %s", obj.kind, obj.namespace, obj.name, operation.value)
    return stored, operation


def apply_manifests(
    store: ObjectStore, objects: list[Unstructured]
) -> list[tuple[Unstructured, OperationResult]]:
    """Apply documents in order, stopping at the first failure."""
    return [apply_manifest(store, obj) for obj in objects]


__all__ = [
    "ManifestError",
    "apply_manifest",
    "apply_manifests",
    "load_manifests",
    "parse_manifests",
    "validate_document",
]
