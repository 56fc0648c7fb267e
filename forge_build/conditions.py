"""Status conditions.

Conditions are typed readiness entries kept in ``status.conditions``.
This module provides the model plus the helpers controllers use to set,
mirror and summarise them:

- set() keeps an unchanged condition untouched, including its
  lastTransitionTime, so repeated passes write nothing
- Ready is always listed first, the rest sorted by type
- set_mirror() copies another object's Ready condition under a new type
- set_summary() derives Ready from a fixed set of input conditions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from forge_build.store.client import now_timestamp
from forge_build.store.unstructured import Unstructured
from forge_build.types import ConditionSeverity, ConditionStatus, ConditionType

logger = logging.getLogger(__name__)

READY = ConditionType.READY.value

_SEVERITY_RANK = {
    ConditionSeverity.ERROR: 3,
    ConditionSeverity.WARNING: 2,
    ConditionSeverity.INFO: 1,
    ConditionSeverity.NONE: 0,
    None: 0,
}


class Condition(BaseModel):
    """A single status condition."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    status: ConditionStatus
    severity: ConditionSeverity | None = None
    reason: str | None = None
    message: str | None = None
    last_transition_time: str | None = Field(default=None, alias="lastTransitionTime")

    def same_state(self, other: Condition) -> bool:
        """Compare everything but lastTransitionTime."""
        return (
            self.type == other.type
            and self.status == other.status
            and (self.severity or None) == (other.severity or None)
            and (self.reason or None) == (other.reason or None)
            and (self.message or None) == (other.message or None)
        )


class Getter(Protocol):
    def get_conditions(self) -> list[Condition]: ...


class Setter(Getter, Protocol):
    def set_conditions(self, conditions: list[Condition]) -> None: ...


class UnstructuredGetter:
    """Read conditions from a schema-less document."""

    def __init__(self, obj: Unstructured) -> None:
        self._obj = obj

    def get_conditions(self) -> list[Condition]:
        raw, found = self._obj.get_nested("status", "conditions")
        if not found or not isinstance(raw, list):
            return []
        conditions = []
        for item in raw:
            try:
                conditions.append(Condition.model_validate(item))
            except ValidationError:
                logger.debug("Ignoring malformed condition on %r: %r", self._obj, item)
        return conditions


@dataclass
class Fallback:
    """Condition to use when a mirrored source has no Ready condition."""

    value: bool
    reason: str
    severity: ConditionSeverity
    message: str = ""


def true_condition(condition_type: str) -> Condition:
    return Condition(type=condition_type, status=ConditionStatus.TRUE)


def false_condition(
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> Condition:
    return Condition(
        type=condition_type,
        status=ConditionStatus.FALSE,
        reason=reason,
        severity=severity,
        message=message or None,
    )


def unknown_condition(condition_type: str, reason: str, message: str = "") -> Condition:
    return Condition(
        type=condition_type,
        status=ConditionStatus.UNKNOWN,
        reason=reason,
        message=message or None,
    )


def get(obj: Getter, condition_type: str) -> Condition | None:
    """Return the condition of the given type, if any."""
    for condition in obj.get_conditions():
        if condition.type == condition_type:
            return condition
    return None


def has(obj: Getter, condition_type: str) -> bool:
    return get(obj, condition_type) is not None


def is_true(obj: Getter, condition_type: str) -> bool:
    condition = get(obj, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def is_false(obj: Getter, condition_type: str) -> bool:
    condition = get(obj, condition_type)
    return condition is not None and condition.status == ConditionStatus.FALSE


def set(to: Setter, condition: Condition | None) -> None:  # noqa: A001
    """Add or replace a condition.

    The lastTransitionTime is refreshed only when the condition changes;
    an identical condition leaves the list untouched.
    """
    if condition is None:
        return
    conditions = list(to.get_conditions())
    for index, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if existing.same_state(condition):
            return
        conditions[index] = condition.model_copy(
            update={"last_transition_time": now_timestamp()}
        )
        break
    else:
        conditions.append(
            condition.model_copy(update={"last_transition_time": now_timestamp()})
        )
    conditions.sort(key=lambda c: (c.type != READY, c.type))
    to.set_conditions(conditions)


def delete(to: Setter, condition_type: str) -> None:
    to.set_conditions([c for c in to.get_conditions() if c.type != condition_type])


def mark_true(to: Setter, condition_type: str) -> None:
    set(to, true_condition(condition_type))


def mark_false(
    to: Setter,
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> None:
    set(to, false_condition(condition_type, reason, severity, message))


def mark_unknown(to: Setter, condition_type: str, reason: str, message: str = "") -> None:
    set(to, unknown_condition(condition_type, reason, message))


def set_mirror(
    to: Setter,
    target_type: str,
    source: Getter,
    fallback: Fallback | None = None,
) -> None:
    """Copy the source's Ready condition onto ``to`` as target_type.

    Args:
        to: Object receiving the condition.
        target_type: Type the mirrored condition is stored under.
        source: Object whose Ready condition is mirrored.
        fallback: Used when the source has no Ready condition. Without a
            fallback nothing is set in that case.
    """
    mirrored = get(source, READY)
    if mirrored is not None:
        condition = mirrored.model_copy(update={"type": target_type})
    elif fallback is None:
        return
    elif fallback.value:
        condition = true_condition(target_type)
    else:
        condition = false_condition(
            target_type, fallback.reason, fallback.severity, fallback.message
        )
    set(to, condition)


def summary(from_obj: Getter, condition_types: list[str]) -> Condition | None:
    """Merge the listed conditions into a Ready condition.

    Any False input makes Ready False with the reason of the most severe
    False input (ties go to the earliest listed type); otherwise any
    Unknown input makes it Unknown; otherwise it is True.

    Returns:
        The merged condition, or None when none of the inputs is present.
    """
    present: list[Condition] = []
    for condition_type in condition_types:
        condition = get(from_obj, condition_type)
        if condition is not None:
            present.append(condition)
    if not present:
        return None

    false = [c for c in present if c.status == ConditionStatus.FALSE]
    if false:
        worst = max(_SEVERITY_RANK[c.severity] for c in false)
        first = next(c for c in false if _SEVERITY_RANK[c.severity] == worst)
        return Condition(
            type=READY,
            status=ConditionStatus.FALSE,
            reason=first.reason,
            severity=first.severity,
            message=first.message,
        )
    unknown = [c for c in present if c.status == ConditionStatus.UNKNOWN]
    if unknown:
        return Condition(
            type=READY,
            status=ConditionStatus.UNKNOWN,
            reason=unknown[0].reason,
            message=unknown[0].message,
        )
    return true_condition(READY)


def set_summary(to: Setter, condition_types: list[str]) -> None:
    """Recompute Ready on ``to`` from the listed conditions."""
    set(to, summary(to, condition_types))


def keep_transition_times(to: Setter, previous: list[Condition]) -> None:
    """Restore lastTransitionTime on conditions that ended up as they were.

    A condition changed and changed back within one pass (e.g. Ready
    mirrored, then summarised) keeps the time it had in ``previous``.
    """
    by_type = {c.type: c for c in previous}
    restored = []
    changed = False
    for condition in to.get_conditions():
        old = by_type.get(condition.type)
        if (
            old is not None
            and old.same_state(condition)
            and old.last_transition_time != condition.last_transition_time
        ):
            condition = condition.model_copy(
                update={"last_transition_time": old.last_transition_time}
            )
            changed = True
        restored.append(condition)
    if changed:
        to.set_conditions(restored)


def dump_conditions(conditions: list[Condition]) -> list[dict[str, Any]]:
    return [c.model_dump(by_alias=True, exclude_none=True, mode="json") for c in conditions]


__all__ = [
    "Condition",
    "Fallback",
    "Getter",
    "Setter",
    "UnstructuredGetter",
    "delete",
    "dump_conditions",
    "false_condition",
    "get",
    "has",
    "is_false",
    "is_true",
    "keep_transition_times",
    "mark_false",
    "mark_true",
    "mark_unknown",
    "set",
    "set_mirror",
    "set_summary",
    "summary",
    "true_condition",
    "unknown_condition",
]
