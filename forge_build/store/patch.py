"""JSON merge patch (RFC 7386) computation and application."""

from __future__ import annotations

import copy
from typing import Any


def merge_diff(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Compute the merge patch turning before into after.

    Maps are diffed recursively; lists and scalars are replaced whole;
    removed keys map to None.

    Returns:
        The patch; empty when both documents are equal.
    """
    patch: dict[str, Any] = {}
    for key, new in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(new)
            continue
        old = before[key]
        if isinstance(old, dict) and isinstance(new, dict):
            nested = merge_diff(old, new)
            if nested:
                patch[key] = nested
        elif old != new:
            patch[key] = copy.deepcopy(new)
    for key in before:
        if key not in after:
            patch[key] = None
    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a merge patch and return the result.

    The inputs are not modified.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


__all__ = ["apply_merge_patch", "merge_diff"]
