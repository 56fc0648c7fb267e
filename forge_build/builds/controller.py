"""Build reconciliation.

One pass over a Build either adds the finalizer, runs the deletion
workflow, or runs the forward pipeline:

1. infrastructure: link the referenced infrastructure object and copy
   its readiness and failure domains
2. connection: wait for the machine's credentials Secret
3. provisioners: run the ordered provisioning steps one at a time
4. image export: mark the Build initialized once every step is done

Whatever happened, the pass ends with the phase projection, the Ready
summary and a single merge patch of the Build.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from forge_build import conditions
from forge_build.builds.descendants import delete_owned, list_descendants
from forge_build.builds.patch import PatchHelper
from forge_build.builds.phase import reconcile_phase
from forge_build.builds.schema import (
    BUILD_GVK,
    Build,
    FailureDomainSpec,
    ProvisionerSpec,
)
from forge_build.config import Settings
from forge_build.external import objects
from forge_build.external.reconciler import reconcile_external
from forge_build.external.tracker import ObjectTracker
from forge_build.provisioners.shell.reconcile import reconcile_provisioner
from forge_build.runtime.controller import Controller
from forge_build.runtime.events import EventRecorder
from forge_build.runtime.predicates import resource_not_paused_and_has_filter_label
from forge_build.runtime.result import AggregateError, Request, Result, lowest_non_zero
from forge_build.store.client import SECRET_GVK, NotFoundError, ObjectStore, StoreError
from forge_build.types import (
    BuildStatusError,
    ConditionReason,
    ConditionSeverity,
    ConditionType,
    EventType,
    ProvisionerStatus,
    ProvisionerType,
)

logger = logging.getLogger(__name__)

DELETE_REQUEUE = 5.0

SUMMARY_CONDITIONS = [
    ConditionType.PROVISIONERS_READY.value,
    ConditionType.INFRASTRUCTURE_READY.value,
]

Phase = Callable[[Build], Result]


def _step_done(spec: ProvisionerSpec) -> bool:
    if spec.status == ProvisionerStatus.COMPLETED:
        return True
    return spec.status == ProvisionerStatus.FAILED and spec.allow_fail


class BuildReconciler:
    """Reconciles Build resources.

    Args:
        store: Object store.
        recorder: Event recorder.
        settings: Controller settings.
        tracker: Watch registry for referenced kinds; created by ``setup``
            when not given.
    """

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        settings: Settings,
        tracker: ObjectTracker | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.settings = settings
        self.tracker = tracker

    def setup(self, controller: Controller) -> None:
        """Watch Builds and prepare watches on referenced kinds."""
        controller.watch(
            BUILD_GVK.group,
            BUILD_GVK.kind,
            predicates=[resource_not_paused_and_has_filter_label(self.settings.worker_name)],
        )
        if self.tracker is None:
            self.tracker = ObjectTracker(controller, BUILD_GVK.group, BUILD_GVK.kind)

    def _require_tracker(self) -> ObjectTracker:
        if self.tracker is None:
            raise RuntimeError("BuildReconciler.setup must be called before reconciling")
        return self.tracker

    def reconcile(self, request: Request) -> Result:
        """Run one reconcile pass for the Build named by request.

        Raises:
            AggregateError: If one or more phases failed.
            StoreError: If the Build could not be read or patched.
        """
        try:
            obj = self.store.get(BUILD_GVK, request.namespace, request.name)
        except NotFoundError:
            return Result()
        build = Build.from_unstructured(obj)

        if build.is_paused():
            logger.info("Reconciliation is paused for this object", extra={"build": build.key})
            return Result()

        helper = PatchHelper(self.store, build)

        if build.is_deleting():
            if not build.has_finalizer():
                return Result()
            return self._run_and_patch(helper, build, self.reconcile_delete)

        if not build.has_finalizer():
            build.add_finalizer()
            helper.patch(build)
            return Result()

        return self._run_and_patch(helper, build, self.reconcile_forward)

    def _run_and_patch(self, helper: PatchHelper, build: Build, run: Phase) -> Result:
        previous = list(build.status.conditions)
        try:
            result = run(build)
        except Exception as e:
            self._project_and_patch(helper, build, previous, error=e)
            raise
        self._project_and_patch(helper, build, previous)
        return result

    def _project_and_patch(
        self,
        helper: PatchHelper,
        build: Build,
        previous: list[conditions.Condition],
        error: Exception | None = None,
    ) -> None:
        reconcile_phase(build, self.recorder)
        conditions.set_summary(build, SUMMARY_CONDITIONS)
        conditions.keep_transition_times(build, previous)
        if error is None:
            build.status.observed_generation = build.metadata.generation
        try:
            helper.patch(build)
        except StoreError as patch_error:
            if error is None:
                raise
            raise AggregateError([error, patch_error]) from error

    # Forward pipeline

    def reconcile_forward(self, build: Build) -> Result:
        """Run every phase, keeping the earliest requeue before the first error.

        Raises:
            AggregateError: Wrapping every error raised by a phase.
        """
        phases: list[Phase] = [
            self.reconcile_infrastructure,
            self.reconcile_connection,
            self.reconcile_provisioners,
            self.reconcile_image_export,
        ]
        result = Result()
        errors: list[BaseException] = []
        for phase in phases:
            try:
                phase_result = phase(build)
            except Exception as e:
                logger.error(
                    "Phase %s failed: %s",
                    phase.__name__,
                    e,
                    extra={"build": build.key},
                )
                errors.append(e)
                continue
            if errors:
                continue
            result = lowest_non_zero(result, phase_result)
        if errors:
            raise AggregateError(errors)
        return result

    def reconcile_infrastructure(self, build: Build) -> Result:
        ref = build.spec.infrastructure_ref
        if ref is None:
            return Result()

        output = reconcile_external(self.store, self._require_tracker(), build, ref)
        if output.requeue_after > 0:
            return Result(requeue_after=output.requeue_after)
        if output.paused or output.result is None:
            return Result()
        infra = output.result

        if infra.deletion_timestamp:
            return Result()

        previous = build.status.infrastructure_ready
        infra_ready = objects.is_machine_ready(infra)
        build.status.infrastructure_ready = infra_ready
        if previous != infra_ready:
            self.recorder.event(
                build,
                EventType.NORMAL,
                "InfrastructureReady",
                f"Build {build.name} InfrastructureReady is now {str(infra_ready).lower()}",
            )
        conditions.set_mirror(
            build,
            ConditionType.INFRASTRUCTURE_READY.value,
            conditions.UnstructuredGetter(infra),
            conditions.Fallback(
                infra_ready,
                ConditionReason.WAITING_FOR_INFRASTRUCTURE.value,
                ConditionSeverity.INFO,
            ),
        )
        if not infra_ready:
            logger.debug("Infrastructure provider is not ready yet", extra={"build": build.key})
            return Result()

        previous = build.status.ready
        ready = objects.is_ready(infra)
        build.status.ready = ready
        if previous != ready:
            self.recorder.event(
                build,
                EventType.NORMAL,
                "Ready",
                f"Build {build.name} Ready is now {str(ready).lower()}",
            )
        conditions.set_mirror(
            build,
            ConditionType.READY.value,
            conditions.UnstructuredGetter(infra),
            conditions.Fallback(
                ready,
                ConditionReason.WAITING_FOR_INFRASTRUCTURE.value,
                ConditionSeverity.INFO,
            ),
        )
        if not ready:
            logger.debug("Build is not ready yet", extra={"build": build.key})
            return Result()

        domains, _ = infra.nested_map("status", "failureDomains")
        build.status.failure_domains = {
            key: FailureDomainSpec.model_validate(value) for key, value in domains.items()
        }
        return Result()

    def reconcile_connection(self, build: Build) -> Result:
        """Mark the Build connected once its credentials Secret exists."""
        if not build.status.infrastructure_ready:
            logger.debug("Skipping connection, infrastructure not ready", extra={"build": build.key})
            return Result()
        if build.status.connected:
            return Result()

        connector = build.spec.connector
        if connector is not None and connector.credentials is not None:
            try:
                self.store.get(SECRET_GVK, build.namespace, connector.credentials.name)
            except NotFoundError:
                logger.debug(
                    "Credentials secret %s not found yet",
                    connector.credentials.name,
                    extra={"build": build.key},
                )
            else:
                build.status.connected = True
                self.recorder.event(
                    build,
                    EventType.NORMAL,
                    "Connected",
                    f"Build {build.name} is connected to its machine",
                )
                return Result()

        conditions.mark_false(
            build,
            ConditionType.BUILD_INITIALIZED.value,
            ConditionReason.WAITING_FOR_CONNECTION.value,
            ConditionSeverity.INFO,
        )
        return Result()

    def reconcile_provisioners(self, build: Build) -> Result:
        """Drive the first unfinished provisioning step."""
        status = build.status
        if not status.connected:
            logger.debug("Skipping provisioners, machine not connected", extra={"build": build.key})
            return Result()
        if status.provisioners_ready or status.failure_reason:
            return Result()

        conditions.mark_false(
            build,
            ConditionType.PROVISIONERS_READY.value,
            ConditionReason.WAITING_FOR_PROVISIONERS.value,
            ConditionSeverity.INFO,
        )
        for spec in build.spec.provisioners or []:
            if _step_done(spec):
                continue
            if spec.type == ProvisionerType.BUILTIN_SHELL:
                result = reconcile_provisioner(self.store, build, spec, self.settings)
            else:
                result = self._reconcile_external_provisioner(build, spec)
            if build.status.failure_reason or not _step_done(spec):
                return result

        status.provisioners_ready = True
        conditions.mark_true(build, ConditionType.PROVISIONERS_READY.value)
        return Result()

    def _reconcile_external_provisioner(self, build: Build, spec: ProvisionerSpec) -> Result:
        if spec.ref is None:
            build.status.failure_reason = BuildStatusError.INVALID_CONFIGURATION.value
            build.status.failure_message = "external provisioner requires ref to be set"
            return Result()

        output = reconcile_external(
            self.store, self._require_tracker(), build, spec.ref, record_failures=False
        )
        if output.requeue_after > 0:
            return Result(requeue_after=output.requeue_after)
        if output.paused or output.result is None:
            return Result()
        provisioner = output.result

        failure_reason, failure_message = objects.failures_from(provisioner)
        if failure_reason or failure_message:
            spec.status = ProvisionerStatus.FAILED
            spec.failure_reason = failure_reason
            spec.failure_message = failure_message
            if not spec.allow_fail:
                build.status.failure_reason = BuildStatusError.PROVISIONER_FAILED.value
                build.status.failure_message = (
                    f"Provisioner {provisioner.kind} {provisioner.name} failed with Reason "
                    f"{failure_reason or ''} and Message {failure_message or ''}"
                )
            return Result()

        if objects.is_ready(provisioner):
            spec.status = ProvisionerStatus.COMPLETED
        else:
            spec.status = ProvisionerStatus.RUNNING
        return Result()

    def reconcile_image_export(self, build: Build) -> Result:
        status = build.status
        if not status.provisioners_ready or status.failure_reason:
            return Result()
        if status.ready and conditions.is_true(build, ConditionType.READY.value):
            return Result()
        conditions.mark_true(build, ConditionType.BUILD_INITIALIZED.value)
        return Result()

    # Deletion

    def reconcile_delete(self, build: Build) -> Result:
        """Delete descendants, then the infrastructure object, then let go.

        Raises:
            StoreError: If listing or deleting descendants fails.
        """
        descendants = list_descendants(self.store, build)
        owned = descendants.owned_by(build)
        if owned:
            logger.info(
                "Build still has children, deleting them first",
                extra={"build": build.key, "count": len(owned)},
            )
            delete_owned(self.store, build, descendants)

        if len(descendants) > 0:
            logger.info(
                "Build still has descendants, requeuing",
                extra={"build": build.key, "descendants": descendants.names()},
            )
            return Result(requeue_after=DELETE_REQUEUE)

        ref = build.spec.infrastructure_ref
        if ref is not None:
            try:
                infra = objects.get(self.store, ref, build.namespace)
            except NotFoundError:
                conditions.mark_false(
                    build,
                    ConditionType.INFRASTRUCTURE_READY.value,
                    ConditionReason.DELETED.value,
                    ConditionSeverity.INFO,
                )
            else:
                conditions.set_mirror(
                    build,
                    ConditionType.INFRASTRUCTURE_READY.value,
                    conditions.UnstructuredGetter(infra),
                    conditions.Fallback(
                        False, ConditionReason.DELETING.value, ConditionSeverity.INFO
                    ),
                )
                # The watch on the infrastructure kind brings the Build back once it is gone.
                self._require_tracker().watch(infra.gvk)
                if not infra.deletion_timestamp:
                    self.store.delete(infra.gvk, infra.namespace, infra.name)
                logger.info(
                    "Build still has its infrastructure object, waiting for it to go",
                    extra={"build": build.key, "infrastructure": ref.name},
                )
                return Result()

        build.remove_finalizer()
        self.recorder.event(
            build, EventType.NORMAL, "Deleted", f"Build {build.name} has been deleted"
        )
        return Result()


__all__ = ["BuildReconciler", "DELETE_REQUEUE", "SUMMARY_CONDITIONS"]
