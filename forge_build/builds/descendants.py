"""Objects a Build has to wait for while it is being deleted.

Descendants are the infrastructure objects and external provisioner
objects labelled with the Build's name in its namespace. The set is
listed fresh on every deletion pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from forge_build.builds.schema import Build
from forge_build.runtime.result import aggregate
from forge_build.store.client import NotFoundError, ObjectStore, StoreError
from forge_build.store.unstructured import GroupVersionKind, Unstructured
from forge_build.types import BUILD_NAME_LABEL, ProvisionerType

logger = logging.getLogger(__name__)


@dataclass
class BuildDescendants:
    """Descendants of one Build, grouped by role."""

    infrastructure: list[Unstructured] = field(default_factory=list)
    provisioners: list[Unstructured] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.infrastructure) + len(self.provisioners)

    def owned_by(self, build: Build) -> list[Unstructured]:
        """Descendants with an owner reference to build, provisioners first."""
        uid = build.metadata.uid or ""
        return [obj for obj in self.provisioners + self.infrastructure if obj.is_owned_by(uid)]

    def names(self) -> str:
        parts = []
        if self.infrastructure:
            parts.append("Infrastructure: " + ",".join(o.name for o in self.infrastructure))
        if self.provisioners:
            parts.append("Provisioners: " + ",".join(o.name for o in self.provisioners))
        return ";".join(parts)


def _descendant_kinds(build: Build) -> tuple[list[GroupVersionKind], list[GroupVersionKind]]:
    infrastructure = []
    if build.spec.infrastructure_ref is not None:
        infrastructure.append(build.spec.infrastructure_ref.gvk)
    provisioners: list[GroupVersionKind] = []
    for spec in build.spec.provisioners or []:
        if spec.type != ProvisionerType.EXTERNAL or spec.ref is None:
            continue
        gvk = spec.ref.gvk
        if all((g.group, g.kind) != (gvk.group, gvk.kind) for g in provisioners):
            provisioners.append(gvk)
    return infrastructure, provisioners


def list_descendants(store: ObjectStore, build: Build) -> BuildDescendants:
    """List the Build's descendants.

    Raises:
        StoreError: If a list call fails.
    """
    selector = {BUILD_NAME_LABEL: build.name}
    infrastructure_kinds, provisioner_kinds = _descendant_kinds(build)
    descendants = BuildDescendants()
    for gvk in infrastructure_kinds:
        descendants.infrastructure.extend(store.list(gvk, build.namespace, selector))
    for gvk in provisioner_kinds:
        descendants.provisioners.extend(store.list(gvk, build.namespace, selector))
    return descendants


def delete_owned(store: ObjectStore, build: Build, descendants: BuildDescendants) -> int:
    """Request deletion of the Build's owned descendants.

    Provisioner objects go first. Infrastructure objects are only
    deleted once no provisioner object is left.

    Returns:
        Number of delete calls issued.

    Raises:
        StoreError: If one or more delete calls failed; all are attempted.
    """
    owned = descendants.owned_by(build)
    infrastructure_uids = {o.uid for o in descendants.infrastructure}
    others_remain = len(descendants.provisioners) > 0

    errors: list[BaseException] = []
    issued = 0
    for child in owned:
        if child.deletion_timestamp:
            continue
        if child.uid in infrastructure_uids and others_remain:
            continue
        logger.info(
            "Deleting child object",
            extra={"kind": child.kind, "child": f"{child.namespace}/{child.name}"},
        )
        try:
            store.delete(child.gvk, child.namespace, child.name)
            issued += 1
        except NotFoundError:
            continue
        except StoreError as e:
            logger.error("Error deleting %s %s: %s", child.kind, child.name, e)
            errors.append(
                StoreError(
                    f"error deleting build {build.key}: failed to delete "
                    f"{child.gvk} {child.name}: {e}",
                    code="delete_error",
                )
            )
    error = aggregate(errors)
    if error is not None:
        raise error
    return issued


__all__ = ["BuildDescendants", "delete_owned", "list_descendants"]
