"""Linking a Build to a referenced object of unknown schema."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from forge_build.external import objects
from forge_build.external.conversion import update_reference_api_contract
from forge_build.external.objects import ReconcileOutput
from forge_build.store.client import NotFoundError, ObjectStore
from forge_build.store.patch import merge_diff
from forge_build.types import BUILD_NAME_LABEL

if TYPE_CHECKING:
    from forge_build.builds.schema import Build, ObjectReference
    from forge_build.external.tracker import ObjectTracker

logger = logging.getLogger(__name__)

MISSING_REFERENCE_REQUEUE = 30.0


class AlreadyOwnedError(Exception):
    """Raised when a referenced object is controlled by someone else."""

    def __init__(self, kind: str, name: str, owner: str) -> None:
        super().__init__(f"{kind} {name!r} is already controlled by {owner!r}")
        self.code = "already_owned"


def reconcile_external(
    store: ObjectStore,
    tracker: ObjectTracker,
    build: Build,
    ref: ObjectReference,
    record_failures: bool = True,
) -> ReconcileOutput:
    """Take ownership of the object ref points to and surface its failures.

    The reference's version is first resolved to the newest compatible
    one; ref is updated in place. Failure fields found on the object are
    copied onto build.status.

    Args:
        store: Object store.
        tracker: Registers a watch on the referenced kind.
        build: Owning Build; its status may be updated.
        ref: Reference to reconcile.
        record_failures: Copy the object's failure fields onto the Build.
            Callers that interpret failures themselves turn this off.

    Returns:
        The fetched object, or a paused/requeue outcome.

    Raises:
        ConversionError: If the reference's version cannot be resolved.
        AlreadyOwnedError: If another object controls the referenced one.
        StoreError: On any store failure other than the object missing.
    """
    update_reference_api_contract(store, ref)

    try:
        obj = objects.get(store, ref, build.namespace)
    except NotFoundError:
        logger.info(
            "Could not find external object for build, requeuing",
            extra={"ref_gvk": str(ref.gvk), "ref_name": ref.name, "build": build.key},
        )
        return ReconcileOutput(requeue_after=MISSING_REFERENCE_REQUEUE)

    tracker.watch(obj.gvk)

    if build.is_paused() or objects.is_paused(obj):
        logger.debug("External object %s %s is paused", obj.kind, obj.name)
        return ReconcileOutput(paused=True)

    owner = obj.controller_owner()
    if owner is not None and owner.get("uid") != build.metadata.uid:
        raise AlreadyOwnedError(obj.kind, obj.name, str(owner.get("name", "")))

    before = obj.deepcopy()
    obj.set_controller_reference(
        build.api_version, build.kind, build.name, build.metadata.uid or ""
    )
    obj.set_label(BUILD_NAME_LABEL, build.name)
    diff = merge_diff(before.object, obj.object)
    if diff:
        obj = store.patch(
            obj.gvk, obj.namespace, obj.name, diff, resource_version=obj.resource_version
        )

    if not record_failures:
        return ReconcileOutput(result=obj)

    failure_reason, failure_message = objects.failures_from(obj)
    if failure_reason:
        build.status.failure_reason = failure_reason
    if failure_message:
        build.status.failure_message = (
            f"Failure detected from referenced resource {obj.gvk} with name "
            f'"{obj.name}": {failure_message}'
        )

    return ReconcileOutput(result=obj)


__all__ = ["AlreadyOwnedError", "MISSING_REFERENCE_REQUEUE", "reconcile_external"]
