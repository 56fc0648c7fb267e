"""Filters for Job events relevant to the shell Job observer."""

from __future__ import annotations

from forge_build.runtime.predicates import Predicate
from forge_build.store.client import WatchEvent
from forge_build.types import (
    BUILD_NAME_LABEL,
    MANAGED_BY_LABEL,
    PROVISIONER_ID_LABEL,
    SHELL_PROVISIONER_NAME,
)


def managed_by_shell_provisioner(event: WatchEvent) -> bool:
    return event.object.labels.get(MANAGED_BY_LABEL) == SHELL_PROVISIONER_NAME


def in_namespace(namespace: str) -> Predicate:
    def predicate(event: WatchEvent) -> bool:
        return event.object.namespace == namespace

    return predicate


def job_has_any_condition(event: WatchEvent) -> bool:
    conditions, _ = event.object.get_nested("status", "conditions")
    return isinstance(conditions, list) and len(conditions) > 0


def has_build_name_label(event: WatchEvent) -> bool:
    return BUILD_NAME_LABEL in event.object.labels


def has_provisioner_id_label(event: WatchEvent) -> bool:
    return PROVISIONER_ID_LABEL in event.object.labels


def shell_job_predicates(namespace: str) -> list[Predicate]:
    """Everything a Job event must pass to reach the observer."""
    return [
        managed_by_shell_provisioner,
        in_namespace(namespace),
        job_has_any_condition,
        has_build_name_label,
        has_provisioner_id_label,
    ]


__all__ = [
    "has_build_name_label",
    "has_provisioner_id_label",
    "in_namespace",
    "job_has_any_condition",
    "managed_by_shell_provisioner",
    "shell_job_predicates",
]
