"""Watch event filters shared by controllers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from forge_build.store.client import WatchEvent
from forge_build.types import PAUSED_ANNOTATION, WATCH_LABEL

logger = logging.getLogger(__name__)

Predicate = Callable[[WatchEvent], bool]


def resource_not_paused(event: WatchEvent) -> bool:
    """Drop events for objects carrying the pause annotation or spec.paused."""
    obj = event.object
    paused, _ = obj.get_nested("spec", "paused")
    if PAUSED_ANNOTATION in obj.annotations or paused is True:
        logger.debug("Resource %s/%s is paused, ignoring event", obj.namespace, obj.name)
        return False
    return True


def resource_has_filter_label(watch_filter_value: str) -> Predicate:
    """Only pass objects labelled for this worker when a value is configured.

    Args:
        watch_filter_value: Expected value of the watch-filter label; an
            empty value lets everything through.
    """

    def predicate(event: WatchEvent) -> bool:
        if not watch_filter_value:
            return True
        return event.object.labels.get(WATCH_LABEL) == watch_filter_value

    return predicate


def resource_not_paused_and_has_filter_label(watch_filter_value: str) -> Predicate:
    has_label = resource_has_filter_label(watch_filter_value)

    def predicate(event: WatchEvent) -> bool:
        return resource_not_paused(event) and has_label(event)

    return predicate


__all__ = [
    "Predicate",
    "resource_has_filter_label",
    "resource_not_paused",
    "resource_not_paused_and_has_filter_label",
]
