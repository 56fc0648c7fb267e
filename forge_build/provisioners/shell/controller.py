"""Shell Job observer.

Watches provisioner Jobs and, once one reaches a terminal condition,
records the outcome on the owning Build's provisioner entry and then
deletes the Job. The Job is only deleted after the Build patch has
been written, so a failed patch leaves the Job in place for a retry.
Terminal Jobs that no Build step can claim, including those whose
Build is gone, are deleted without touching any Build.
"""

from __future__ import annotations

import logging
from typing import Any

from forge_build.builds.patch import PatchHelper
from forge_build.builds.schema import BUILD_GVK, Build, ProvisionerSpec
from forge_build.provisioners.shell.job import JOB_GVK, POD_GVK
from forge_build.provisioners.shell.predicates import shell_job_predicates
from forge_build.provisioners.shell.reconcile import POLL_REQUEUE, awaiting_uuid
from forge_build.runtime.controller import Controller
from forge_build.runtime.result import Request, Result
from forge_build.store.client import NotFoundError, ObjectStore
from forge_build.store.unstructured import Unstructured
from forge_build.types import (
    BUILD_NAME_LABEL,
    BUILD_NAMESPACE_LABEL,
    PROVISIONER_ID_LABEL,
    ProvisionerStatus,
)

logger = logging.getLogger(__name__)

JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"

POD_NOT_FOUND_REASON = "PodNotFound"

_CONTROLLER_UID_LABELS = ("controller-uid", "batch.kubernetes.io/controller-uid")
_JOB_NAME_LABELS = ("batch.kubernetes.io/job-name", "job-name")


class PodNotFoundError(Exception):
    """Raised when the Pod of a Job no longer exists."""

    def __init__(self, job_name: str) -> None:
        super().__init__(f"pod for job {job_name!r} not found")
        self.code = "pod_not_found"


def terminal_condition(job: Unstructured) -> str | None:
    """Return "Complete" or "Failed" if the Job has that condition set True.

    Other condition types are logged and ignored.
    """
    conditions, _ = job.get_nested("status", "conditions")
    for condition in conditions or []:
        condition_type = condition.get("type")
        if condition.get("status") != "True":
            continue
        if condition_type in (JOB_COMPLETE, JOB_FAILED):
            return str(condition_type)
        logger.info(
            "Ignoring unrecognized job condition %s on %s/%s",
            condition_type,
            job.namespace,
            job.name,
        )
    return None


def terminated_container_states(pod: Unstructured) -> list[tuple[str, dict[str, Any]]]:
    """Terminated states of a Pod's containers, init containers first."""
    states = []
    for field in ("initContainerStatuses", "containerStatuses"):
        statuses, _ = pod.get_nested("status", field)
        for status in statuses or []:
            terminated = (status.get("state") or {}).get("terminated")
            if terminated is not None:
                states.append((str(status.get("name", "")), terminated))
    return states


class ShellJobController:
    """Reports shell Job outcomes back onto Builds.

    Args:
        store: Object store.
        namespace: Namespace provisioner Jobs run in.
    """

    def __init__(self, store: ObjectStore, namespace: str) -> None:
        self.store = store
        self.namespace = namespace

    def setup(self, controller: Controller) -> None:
        controller.watch(
            JOB_GVK.group, JOB_GVK.kind, predicates=shell_job_predicates(self.namespace)
        )

    def reconcile(self, request: Request) -> Result:
        try:
            job = self.store.get(JOB_GVK, request.namespace, request.name)
        except NotFoundError:
            logger.info("Ignoring cached job that must have been deleted: %s", request)
            return Result()

        outcome = terminal_condition(job)
        if outcome is None:
            return Result()

        labels = job.labels
        try:
            build_obj = self.store.get(
                BUILD_GVK,
                labels.get(BUILD_NAMESPACE_LABEL, ""),
                labels.get(BUILD_NAME_LABEL, ""),
            )
        except NotFoundError:
            logger.info("Deleting job %s whose build is gone", request)
            self._delete_job(job)
            return Result()

        build = Build.from_unstructured(build_obj)
        provisioner_id = labels.get(PROVISIONER_ID_LABEL, "")
        provisioner = build.provisioner(provisioner_id)
        if provisioner is None:
            if awaiting_uuid(build):
                # The Build controller may still adopt this Job for a step.
                logger.info(
                    "Job %s is not recorded on build %s yet, requeuing",
                    request,
                    build.key,
                )
                return Result(requeue_after=POLL_REQUEUE)
            logger.error(
                "Unable to find provisioner with id %s in the build %s, deleting job",
                provisioner_id,
                build.key,
            )
            self._delete_job(job)
            return Result()

        helper = PatchHelper(self.store, build)
        if outcome == JOB_COMPLETE:
            logger.info(
                "Job complete",
                extra={"build": build.key, "provisioner_uuid": provisioner_id},
            )
            provisioner.status = ProvisionerStatus.COMPLETED
        else:
            self._record_failure(job, build, provisioner)

        helper.patch(build)
        self._delete_job(job)
        return Result()

    def _record_failure(
        self, job: Unstructured, build: Build, provisioner: ProvisionerSpec
    ) -> None:
        logger.info(
            "Job failed",
            extra={"build": build.key, "provisioner_uuid": provisioner.uuid},
        )
        provisioner.status = ProvisionerStatus.FAILED
        try:
            pod = self._pod_for_job(job)
        except PodNotFoundError as e:
            logger.info("Pod must have been deleted: %s", e)
            provisioner.failure_reason = POD_NOT_FOUND_REASON
            provisioner.failure_message = str(e)
            return

        for container, terminated in terminated_container_states(pod):
            if terminated.get("exitCode", 0) == 0:
                continue
            provisioner.failure_reason = terminated.get("reason")
            provisioner.failure_message = terminated.get("message")
            logger.error(
                "shelljob failed with reason: %s and message: %s",
                provisioner.failure_reason,
                provisioner.failure_message,
                extra={"build": build.key, "container": container},
            )
            return

    def _pod_for_job(self, job: Unstructured) -> Unstructured:
        match_labels, _ = job.get_nested("spec", "selector", "matchLabels")
        match_labels = match_labels or {}
        selector = None
        for key in _CONTROLLER_UID_LABELS:
            if match_labels.get(key):
                selector = {key: match_labels[key]}
                break

        pods: list[Unstructured] = []
        if selector is not None:
            pods = self.store.list(POD_GVK, job.namespace, selector)
        else:
            for key in _JOB_NAME_LABELS:
                pods = self.store.list(POD_GVK, job.namespace, {key: job.name})
                if pods:
                    break
        if not pods:
            raise PodNotFoundError(job.name)
        return pods[0]

    def _delete_job(self, job: Unstructured) -> None:
        logger.info("Deleting shell job %s/%s", job.namespace, job.name)
        try:
            self.store.delete(JOB_GVK, job.namespace, job.name)
        except NotFoundError:
            return


__all__ = [
    "JOB_COMPLETE",
    "JOB_FAILED",
    "POD_NOT_FOUND_REASON",
    "PodNotFoundError",
    "ShellJobController",
    "terminal_condition",
    "terminated_container_states",
]
