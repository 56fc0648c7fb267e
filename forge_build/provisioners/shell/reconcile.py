"""Driving one built-in shell provisioning step from the Build controller.

A step without a UUID gets one and its Job is created; afterwards the
step's status, which the Job observer updates, decides what happens.

The UUID reaches the store only with the Build patch at the end of the
pass. When that patch fails, the Job already exists but no step names
it; the next pass adopts that Job's UUID instead of starting another.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from forge_build.provisioners.shell.job import (
    DEFAULT_BACKOFF_LIMIT,
    JOB_GVK,
    ShellJob,
    build_job_selector,
)
from forge_build.runtime.result import Result
from forge_build.store.client import create_or_patch
from forge_build.types import (
    PROVISIONER_ID_LABEL,
    BuildStatusError,
    ProvisionerStatus,
    ProvisionerType,
)

if TYPE_CHECKING:
    from forge_build.builds.schema import Build, ProvisionerSpec
    from forge_build.config import Settings
    from forge_build.store.client import ObjectStore

logger = logging.getLogger(__name__)

POLL_REQUEUE = 2.0


def _noop(_obj: object) -> None:
    return None


def awaiting_uuid(build: Build) -> bool:
    """Whether a shell step of build may still claim an unrecorded Job."""
    if build.status.failure_reason or build.is_deleting():
        return False
    return any(
        spec.type == ProvisionerType.BUILTIN_SHELL and spec.uuid is None
        for spec in build.spec.provisioners or []
    )


def unrecorded_job_uuid(store: ObjectStore, build: Build, namespace: str) -> str | None:
    """UUID of the oldest shell Job of build that no step has recorded.

    Raises:
        StoreError: If the Jobs cannot be listed.
    """
    recorded = {spec.uuid for spec in build.spec.provisioners or [] if spec.uuid}
    jobs = store.list(JOB_GVK, namespace, build_job_selector(build.namespace, build.name))
    jobs.sort(
        key=lambda job: (job.get_nested("metadata", "creationTimestamp")[0] or "", job.name)
    )
    for job in jobs:
        provisioner_uuid = job.labels.get(PROVISIONER_ID_LABEL)
        if provisioner_uuid and provisioner_uuid not in recorded and not job.deletion_timestamp:
            return provisioner_uuid
    return None


def reconcile_provisioner(
    store: ObjectStore,
    build: Build,
    spec: ProvisionerSpec,
    settings: Settings,
) -> Result:
    """Start or poll one shell step.

    Mutates spec (UUID, status) and, on terminal failure, build.status.

    Returns:
        A 2s requeue while the step runs, an empty result otherwise.

    Raises:
        StoreError: If the Jobs cannot be listed or the Job cannot be created.
    """
    if spec.uuid is None:
        connector = build.spec.connector
        if connector is None or connector.credentials is None:
            build.status.failure_reason = BuildStatusError.INVALID_CONFIGURATION.value
            build.status.failure_message = (
                "spec.connector.credentials is required to run shell provisioners"
            )
            return Result()

        adopted = unrecorded_job_uuid(store, build, settings.provisioner_namespace)
        if adopted is not None:
            logger.info(
                "Adopting shell provisioner job started by an earlier pass",
                extra={"build": build.key, "provisioner_uuid": adopted},
            )
            spec.uuid = adopted
            spec.status = ProvisionerStatus.RUNNING
            return Result(requeue_after=POLL_REQUEUE)

        provisioner_uuid = str(uuid.uuid4())
        job = ShellJob(
            uuid=provisioner_uuid,
            build_name=build.name,
            build_namespace=build.namespace,
            ssh_credentials_secret_name=connector.credentials.name,
            script=spec.run or "",
            script_ref=spec.run_config_map_ref.name if spec.run_config_map_ref else "",
            namespace=settings.provisioner_namespace,
            image=settings.shell_provisioner_image,
            tag=settings.shell_provisioner_tag,
            backoff_limit=(
                spec.retries if spec.retries is not None else DEFAULT_BACKOFF_LIMIT
            ),
        )
        _, operation = create_or_patch(store, job.to_manifest(), _noop)
        logger.info(
            "Shell provisioner job %s: %s",
            job.name,
            operation.value,
            extra={"build": build.key, "provisioner_uuid": provisioner_uuid},
        )
        spec.uuid = provisioner_uuid
        spec.status = ProvisionerStatus.RUNNING
        return Result(requeue_after=POLL_REQUEUE)

    status = spec.status or ProvisionerStatus.PENDING
    if status in (ProvisionerStatus.PENDING, ProvisionerStatus.RUNNING):
        return Result(requeue_after=POLL_REQUEUE)
    if status == ProvisionerStatus.FAILED and not spec.allow_fail:
        build.status.failure_reason = BuildStatusError.PROVISIONER_FAILED.value
        build.status.failure_message = (
            f"Provisioner {spec.uuid} failed with Reason {spec.failure_reason or ''} "
            f"and Message {spec.failure_message or ''}"
        )
    return Result()


__all__ = [
    "POLL_REQUEUE",
    "awaiting_uuid",
    "reconcile_provisioner",
    "unrecorded_job_uuid",
]
