"""API version resolution for referenced resource types.

A provider's CustomResourceDefinition carries a contract label whose
value lists the provider versions compatible with this release,
separated by underscores (e.g. ``v1alpha1_v1beta1``). References are
rewritten to the newest of those versions.
"""

from __future__ import annotations

import functools
import logging
import re

from forge_build.builds.schema import ObjectReference
from forge_build.store.client import CRD_GVK, NotFoundError, ObjectStore
from forge_build.types import CONTRACT_VERSION_LABEL

logger = logging.getLogger(__name__)

_KUBE_VERSION = re.compile(r"^v(\d+)(?:(alpha|beta)(\d+))?$")
_VERSION_TYPE_RANK = {"alpha": 0, "beta": 1, None: 2}
_ES_SUFFIXES = ("s", "x", "z", "ch", "sh")


class ConversionError(Exception):
    """Raised when no compatible version can be determined."""

    def __init__(self, message: str, code: str = "conversion_error") -> None:
        super().__init__(message)
        self.code = code


def _parse_kube_version(version: str) -> tuple[int, int, int] | None:
    match = _KUBE_VERSION.match(version)
    if match is None:
        return None
    major, stability, minor = match.groups()
    return _VERSION_TYPE_RANK[stability], int(major), int(minor or 0)


def compare_kube_aware_versions(v1: str, v2: str) -> int:
    """Order two API version strings.

    GA sorts above beta, beta above alpha; within a stability level the
    major then the minor number decide. Strings that are not API
    versions sort below all API versions and, among themselves, in
    reverse lexical order.

    Returns:
        Negative if v1 < v2, zero if equal, positive if v1 > v2.
    """
    if v1 == v2:
        return 0
    p1 = _parse_kube_version(v1)
    p2 = _parse_kube_version(v2)
    if p1 is None and p2 is None:
        return (v2 > v1) - (v2 < v1)
    if p1 is None:
        return -1
    if p2 is None:
        return 1
    if p1 < p2:
        return -1
    return 1 if p1 > p2 else 0


def latest_version(supported: str) -> str:
    """Pick the newest version from an underscore-separated list.

    Raises:
        ConversionError: If the list is empty.
    """
    versions = [v for v in supported.split("_") if v]
    if not versions:
        raise ConversionError("no versions listed")
    versions.sort(key=functools.cmp_to_key(compare_kube_aware_versions))
    return versions[-1]


def pluralize(word: str) -> str:
    """English plural of a lower-case resource kind."""
    if word.endswith(_ES_SUFFIXES):
        return word + "es"
    if len(word) > 1 and word.endswith("y") and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    return word + "s"


def crd_name(group: str, kind: str) -> str:
    """Name of the CustomResourceDefinition serving group/kind."""
    return f"{pluralize(kind.lower())}.{group}"


def update_reference_api_contract(store: ObjectStore, ref: ObjectReference) -> None:
    """Rewrite ref's version to the newest one compatible with this release.

    Raises:
        ConversionError: If the type is not registered or its contract
            label is missing or empty.
    """
    gvk = ref.gvk
    name = crd_name(gvk.group, gvk.kind)
    try:
        crd = store.get(CRD_GVK, "", name)
    except NotFoundError as e:
        raise ConversionError(
            f"failed to update apiVersion in ref: CustomResourceDefinition {name!r} not found"
        ) from e

    supported = crd.labels.get(CONTRACT_VERSION_LABEL, "")
    if not supported:
        raise ConversionError(
            f"cannot find any versions matching contract {CONTRACT_VERSION_LABEL!r} "
            f"for CRD {name!r} as contract version label(s) are either missing or empty"
        )
    chosen = latest_version(supported)
    if chosen != gvk.version:
        logger.debug("Resolved %s %s to version %s", gvk.kind, ref.name, chosen)
        ref.set_version(chosen)


__all__ = [
    "ConversionError",
    "compare_kube_aware_versions",
    "crd_name",
    "latest_version",
    "pluralize",
    "update_reference_api_contract",
]
