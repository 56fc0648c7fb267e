"""Single-diff patching of a Build.

The helper remembers the Build as it was read. ``patch`` sends the
difference to what it is now as one merge patch, conditional on the
resourceVersion that was read, and sends nothing when there is no
difference.
"""

from __future__ import annotations

import logging

from forge_build.builds.schema import BUILD_GVK, Build
from forge_build.store.client import ObjectStore
from forge_build.store.patch import merge_diff

logger = logging.getLogger(__name__)


class PatchHelper:
    """Patch a Build with the changes made since construction."""

    def __init__(self, store: ObjectStore, build: Build) -> None:
        self.store = store
        self.before = build.to_document()
        self.resource_version = build.metadata.resource_version

    def patch(self, build: Build) -> bool:
        """Write the changes made to build.

        Returns:
            True if a patch was sent.

        Raises:
            ConflictError: If the Build changed in the store meanwhile.
            NotFoundError: If the Build is gone.
        """
        diff = merge_diff(self.before, build.to_document())
        if not diff:
            return False
        logger.debug("Patching Build %s: %s", build.key, diff)
        updated = self.store.patch(
            BUILD_GVK,
            build.namespace,
            build.name,
            diff,
            resource_version=self.resource_version,
        )
        self.before = build.to_document()
        self.resource_version = updated.resource_version
        return True


__all__ = ["PatchHelper"]
