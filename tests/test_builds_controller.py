"""End-to-end tests for Build reconciliation against an in-memory store."""

import pytest

from forge_build import conditions
from forge_build.builds.controller import DELETE_REQUEUE, BuildReconciler
from forge_build.builds.schema import BUILD_GVK, Build
from forge_build.config import Settings
from forge_build.db import create_all_tables, get_engine, get_session_factory
from forge_build.external.conversion import crd_name
from forge_build.provisioners.shell.controller import ShellJobController
from forge_build.provisioners.shell.job import JOB_GVK, POD_GVK, ShellJob
from forge_build.runtime.controller import Controller
from forge_build.runtime.events import EVENT_GVK, EventRecorder
from forge_build.runtime.result import AggregateError, Request, Result
from forge_build.store.client import CRD_GVK, SECRET_GVK, ConflictError, NotFoundError
from forge_build.store.sql import SQLObjectStore
from forge_build.store.unstructured import GroupVersionKind, Unstructured
from forge_build.types import (
    BUILD_FINALIZER,
    BUILD_NAME_LABEL,
    BUILD_NAMESPACE_LABEL,
    CONTRACT_VERSION_LABEL,
    MANAGED_BY_LABEL,
    PAUSED_ANNOTATION,
    PROVISIONER_ID_LABEL,
    SHELL_PROVISIONER_NAME,
    ConditionStatus,
    ProvisionerStatus,
)

INFRA_GROUP = "infra.example.com"
INFRA_GVK = GroupVersionKind(INFRA_GROUP, "v1alpha1", "TestInfra")
PROVISIONER_GVK = GroupVersionKind(INFRA_GROUP, "v1alpha1", "TestProvisioner")
REQUEST = Request("default", "b1")
SECRET_NAME = "b1-ssh-credentials"


@pytest.fixture
def store():
    """Create an in-memory store with the test provider types registered."""
    engine = get_engine("sqlite:///:memory:")
    create_all_tables(engine)
    store = SQLObjectStore(get_session_factory(engine))
    for gvk in (INFRA_GVK, PROVISIONER_GVK):
        store.create(
            Unstructured(
                {
                    "apiVersion": CRD_GVK.api_version,
                    "kind": CRD_GVK.kind,
                    "metadata": {
                        "name": crd_name(gvk.group, gvk.kind),
                        "labels": {CONTRACT_VERSION_LABEL: gvk.version},
                    },
                }
            )
        )
    return store


@pytest.fixture
def reconciler(store):
    """Create a Build reconciler wired to a controller."""
    reconciler = BuildReconciler(store, EventRecorder(store, "build-controller"), Settings())
    reconciler.setup(Controller("build-controller", reconciler.reconcile, store))
    return reconciler


@pytest.fixture
def observer(store):
    """Create the shell Job observer."""
    return ShellJobController(store, "forge-core")


def create_build(store, **spec):
    return store.create(
        Unstructured(
            {
                "apiVersion": BUILD_GVK.api_version,
                "kind": BUILD_GVK.kind,
                "metadata": {"name": "b1", "namespace": "default"},
                "spec": spec,
            }
        )
    )


def infra_ref(name="infra1"):
    return {"apiVersion": INFRA_GVK.api_version, "kind": INFRA_GVK.kind, "name": name}


def create_infra(store, status=None, name="infra1", **metadata):
    obj = Unstructured(
        {
            "apiVersion": INFRA_GVK.api_version,
            "kind": INFRA_GVK.kind,
            "metadata": {"name": name, "namespace": "default", **metadata},
        }
    )
    if status is not None:
        obj.object["status"] = status
    return store.create(obj)


def create_secret(store):
    return store.create(
        Unstructured(
            {
                "apiVersion": SECRET_GVK.api_version,
                "kind": SECRET_GVK.kind,
                "metadata": {"name": SECRET_NAME, "namespace": "default"},
                "stringData": {"host": "10.0.0.5", "username": "builder", "password": "pw"},
            }
        )
    )


def get_build(store):
    return Build.from_unstructured(store.get(BUILD_GVK, "default", "b1"))


def event_reasons(store):
    return [e.object["reason"] for e in store.list(EVENT_GVK, "default")]


def shell_jobs(store):
    return store.list(JOB_GVK, "forge-core")


def machine_ready_infra(store):
    """Infrastructure whose machine is up but whose image is not ready."""
    return create_infra(store, status={"machineReady": True, "ready": False})


class TestReconcileBasics:
    """Test the top of the reconcile pass."""

    def test_missing_build(self, reconciler):
        """A Build that does not exist is a no-op."""
        assert reconciler.reconcile(REQUEST).is_zero

    def test_first_pass_only_adds_finalizer(self, store, reconciler):
        """The first pass adds the finalizer and writes no status."""
        create_build(store, infrastructureRef=infra_ref())
        result = reconciler.reconcile(REQUEST)

        assert result.is_zero
        stored = store.get(BUILD_GVK, "default", "b1")
        assert BUILD_FINALIZER in stored.finalizers
        assert "status" not in stored.object

    def test_paused_build_untouched(self, store, reconciler):
        """Paused Builds are not modified."""
        create_build(store, paused=True)
        reconciler.reconcile(REQUEST)
        stored = store.get(BUILD_GVK, "default", "b1")
        assert stored.finalizers == []
        assert stored.resource_version == "1"

    def test_pause_annotation(self, store, reconciler):
        """The pause annotation pauses a Build too."""
        build = Unstructured(
            {
                "apiVersion": BUILD_GVK.api_version,
                "kind": BUILD_GVK.kind,
                "metadata": {
                    "name": "b1",
                    "namespace": "default",
                    "annotations": {PAUSED_ANNOTATION: ""},
                },
            }
        )
        store.create(build)
        reconciler.reconcile(REQUEST)
        assert store.get(BUILD_GVK, "default", "b1").resource_version == "1"

    def test_reconcile_requires_setup(self, store):
        """Referenced objects cannot be tracked before setup."""
        reconciler = BuildReconciler(store, EventRecorder(store, "test"), Settings())
        create_build(store, infrastructureRef=infra_ref())
        reconciler.reconcile(REQUEST)
        with pytest.raises(AggregateError) as exc_info:
            reconciler.reconcile(REQUEST)
        assert isinstance(exc_info.value.errors[0], RuntimeError)


class TestInfrastructure:
    """Test the infrastructure phase."""

    def test_missing_infrastructure_requeues(self, store, reconciler):
        """A missing infrastructure object requeues after 30s and the Build is Pending."""
        create_build(store, infrastructureRef=infra_ref())
        reconciler.reconcile(REQUEST)
        result = reconciler.reconcile(REQUEST)

        assert result.requeue_after == 30.0
        build = get_build(store)
        assert build.status.phase == "Pending"
        assert build.status.observed_generation == 1

    def test_infrastructure_not_ready(self, store, reconciler):
        """A linked but unready object makes the Build Building."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(store, status={"ready": False})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.status.phase == "Building"
        assert build.status.infrastructure_ready is False
        infra_condition = conditions.get(build, "InfrastructureReady")
        assert infra_condition.status == ConditionStatus.FALSE
        assert infra_condition.reason == "WaitingForInfrastructure"
        assert conditions.is_false(build, "Ready")

        infra = store.get(INFRA_GVK, "default", "infra1")
        assert infra.controller_owner()["uid"] == build.metadata.uid
        assert infra.labels[BUILD_NAME_LABEL] == "b1"

    def test_ready_infrastructure_completes_build(self, store, reconciler):
        """A ready infrastructure object makes the Build ready and Completed."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(
            store,
            status={"ready": True, "failureDomains": {"zone-a": {"controlPlane": True}}},
        )
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.status.infrastructure_ready is True
        assert build.status.ready is True
        assert build.status.phase == "Completed"
        assert conditions.is_true(build, "InfrastructureReady")
        assert conditions.is_true(build, "Ready")
        assert build.status.failure_domains["zone-a"].control_plane is True
        reasons = event_reasons(store)
        assert "InfrastructureReady" in reasons
        assert "Ready" in reasons
        assert "Completed" in reasons

    def test_infrastructure_ready_condition_mirrored(self, store, reconciler):
        """The object's own Ready condition is mirrored when present."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(
            store,
            status={
                "ready": False,
                "conditions": [
                    {"type": "Ready", "status": "False", "reason": "Booting", "severity": "Info"}
                ],
            },
        )
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        assert conditions.get(get_build(store), "InfrastructureReady").reason == "Booting"

    def test_repeated_pass_writes_nothing(self, store, reconciler):
        """Once converged, another pass writes neither the Build nor the object."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(store, status={"ready": True})
        for _ in range(3):
            reconciler.reconcile(REQUEST)
        build_version = store.get(BUILD_GVK, "default", "b1").resource_version
        infra_version = store.get(INFRA_GVK, "default", "infra1").resource_version
        event_count = len(event_reasons(store))

        reconciler.reconcile(REQUEST)
        assert store.get(BUILD_GVK, "default", "b1").resource_version == build_version
        assert store.get(INFRA_GVK, "default", "infra1").resource_version == infra_version
        assert len(event_reasons(store)) == event_count

    def test_infrastructure_failure_fails_build(self, store, reconciler):
        """Failure fields on the object fail the Build."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(store, status={"failureReason": "CreateError", "failureMessage": "no quota"})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.status.failure_reason == "CreateError"
        assert build.status.phase == "Failed"
        assert "Failed" in event_reasons(store)

    def test_phase_error_still_patches_status(self, store, reconciler):
        """A failing phase raises, status is still written without observedGeneration."""
        create_build(
            store,
            infrastructureRef={
                "apiVersion": "unknown.example.com/v1",
                "kind": "Unregistered",
                "name": "x",
            },
        )
        reconciler.reconcile(REQUEST)
        with pytest.raises(AggregateError):
            reconciler.reconcile(REQUEST)

        stored = store.get(BUILD_GVK, "default", "b1")
        assert stored.object["status"]["phase"] == "Pending"
        assert "observedGeneration" not in stored.object["status"]


def failing_phase(message):
    def phase(build):
        raise RuntimeError(message)

    return phase


def recording_phase(calls, name, requeue_after=0.0, mutate=None):
    def phase(build):
        calls.append(name)
        if mutate is not None:
            mutate(build)
        return Result(requeue_after=requeue_after)

    return phase


class TestForwardPipeline:
    """Test how the forward phases are combined."""

    def replace_phases(self, monkeypatch, reconciler, **phases):
        for name, phase in phases.items():
            monkeypatch.setattr(reconciler, f"reconcile_{name}", phase)

    def test_later_phases_run_after_error(self, store, reconciler, monkeypatch):
        """Phases after a failing one still run and their changes are written."""
        create_build(store)
        reconciler.reconcile(REQUEST)
        calls = []

        def connect(build):
            build.status.connected = True

        self.replace_phases(
            monkeypatch,
            reconciler,
            infrastructure=failing_phase("no infrastructure"),
            connection=recording_phase(calls, "connection", mutate=connect),
            provisioners=recording_phase(calls, "provisioners"),
            image_export=recording_phase(calls, "image_export"),
        )
        with pytest.raises(AggregateError) as exc_info:
            reconciler.reconcile(REQUEST)

        assert calls == ["connection", "provisioners", "image_export"]
        assert [str(e) for e in exc_info.value.errors] == ["no infrastructure"]
        build = get_build(store)
        assert build.status.connected is True
        assert build.status.observed_generation is None

    def test_errors_are_aggregated(self, store, reconciler, monkeypatch):
        """Every phase error is raised together, in phase order."""
        create_build(store)
        reconciler.reconcile(REQUEST)
        calls = []
        self.replace_phases(
            monkeypatch,
            reconciler,
            infrastructure=recording_phase(calls, "infrastructure", requeue_after=30.0),
            connection=failing_phase("connection refused"),
            provisioners=failing_phase("job create failed"),
            image_export=recording_phase(calls, "image_export", requeue_after=5.0),
        )
        with pytest.raises(AggregateError) as exc_info:
            reconciler.reconcile(REQUEST)

        assert calls == ["infrastructure", "image_export"]
        errors = exc_info.value.errors
        assert [str(e) for e in errors] == ["connection refused", "job create failed"]
        assert all(isinstance(e, RuntimeError) for e in errors)

    def test_lowest_requeue_wins(self, store, reconciler, monkeypatch):
        """Without errors the earliest non-zero requeue is returned."""
        create_build(store)
        reconciler.reconcile(REQUEST)
        calls = []
        self.replace_phases(
            monkeypatch,
            reconciler,
            infrastructure=recording_phase(calls, "infrastructure", requeue_after=30.0),
            connection=recording_phase(calls, "connection"),
            provisioners=recording_phase(calls, "provisioners", requeue_after=2.0),
            image_export=recording_phase(calls, "image_export", requeue_after=5.0),
        )
        assert reconciler.reconcile(REQUEST).requeue_after == 2.0
        assert len(calls) == 4
        assert get_build(store).status.observed_generation == 1


class TestConnection:
    """Test the connection phase."""

    def test_waits_for_credentials(self, store, reconciler):
        """Without the credentials Secret the Build waits for a connection."""
        create_build(
            store,
            infrastructureRef=infra_ref(),
            connector={"credentials": {"name": SECRET_NAME}},
        )
        machine_ready_infra(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.status.connected is False
        initialized = conditions.get(build, "BuildInitialized")
        assert initialized.reason == "WaitingForConnection"

    def test_connected_once_secret_exists(self, store, reconciler):
        """The Build is connected once its credentials Secret exists."""
        create_build(
            store,
            infrastructureRef=infra_ref(),
            connector={"credentials": {"name": SECRET_NAME}},
        )
        machine_ready_infra(store)
        create_secret(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        assert get_build(store).status.connected is True
        assert "Connected" in event_reasons(store)

    def test_no_connection_before_infrastructure(self, store, reconciler):
        """Connection waits for the infrastructure."""
        create_build(
            store,
            infrastructureRef=infra_ref(),
            connector={"credentials": {"name": SECRET_NAME}},
        )
        create_secret(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        assert get_build(store).status.connected is False


def shell_build(store, allow_fail=False):
    provisioner = {"type": "built-in/shell", "run": "echo hello"}
    if allow_fail:
        provisioner["allowFail"] = True
    create_build(
        store,
        infrastructureRef=infra_ref(),
        connector={"credentials": {"name": SECRET_NAME}},
        provisioners=[provisioner],
    )
    machine_ready_infra(store)
    create_secret(store)


def set_job_condition(store, job, condition_type):
    store.patch(
        JOB_GVK,
        job.namespace,
        job.name,
        {"status": {"conditions": [{"type": condition_type, "status": "True"}]}},
    )


def create_failed_pod(store, job, exit_code=1, reason="Error", message="boom"):
    store.create(
        Unstructured(
            {
                "apiVersion": POD_GVK.api_version,
                "kind": POD_GVK.kind,
                "metadata": {
                    "name": f"{job.name}-abcde",
                    "namespace": job.namespace,
                    "labels": {"batch.kubernetes.io/job-name": job.name},
                },
                "status": {
                    "containerStatuses": [
                        {
                            "name": "shell-provisioner",
                            "state": {
                                "terminated": {
                                    "exitCode": exit_code,
                                    "reason": reason,
                                    "message": message,
                                }
                            },
                        }
                    ]
                },
            }
        )
    )


class TestShellProvisioners:
    """Test built-in shell provisioning steps end to end."""

    def test_job_created_once(self, store, reconciler):
        """The first provisioner gets a UUID and exactly one Job."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        result = reconciler.reconcile(REQUEST)

        assert result.requeue_after == 2.0
        build = get_build(store)
        provisioner = build.spec.provisioners[0]
        assert provisioner.uuid
        assert provisioner.status == ProvisionerStatus.RUNNING
        assert conditions.get(build, "ProvisionersReady").reason == "WaitingForProvisioners"

        jobs = shell_jobs(store)
        assert len(jobs) == 1
        labels = jobs[0].labels
        assert labels[MANAGED_BY_LABEL] == SHELL_PROVISIONER_NAME
        assert labels[BUILD_NAME_LABEL] == "b1"
        assert labels[BUILD_NAMESPACE_LABEL] == "default"
        assert labels[PROVISIONER_ID_LABEL] == provisioner.uuid
        args = jobs[0].object["spec"]["template"]["spec"]["containers"][0]["args"]
        assert args == [
            "--namespace",
            "default",
            "--run-script",
            "echo hello",
            "--ssh-credentials-secret-name",
            SECRET_NAME,
        ]

        assert reconciler.reconcile(REQUEST).requeue_after == 2.0
        assert len(shell_jobs(store)) == 1
        assert get_build(store).spec.provisioners[0].uuid == provisioner.uuid

    def test_conflicting_patch_does_not_start_second_job(
        self, store, reconciler, observer, monkeypatch
    ):
        """A Job whose UUID was lost to a patch conflict is adopted, not duplicated."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        create = store.create

        def create_then_touch_build(obj):
            created = create(obj)
            if obj.kind == JOB_GVK.kind:
                store.patch(BUILD_GVK, "default", "b1", {"metadata": {"labels": {"team": "a"}}})
            return created

        monkeypatch.setattr(store, "create", create_then_touch_build)
        with pytest.raises(ConflictError):
            reconciler.reconcile(REQUEST)
        monkeypatch.undo()

        assert get_build(store).spec.provisioners[0].uuid is None
        job = shell_jobs(store)[0]

        assert reconciler.reconcile(REQUEST).requeue_after == 2.0
        assert [j.name for j in shell_jobs(store)] == [job.name]
        provisioner = get_build(store).spec.provisioners[0]
        assert provisioner.uuid == job.labels[PROVISIONER_ID_LABEL]
        assert provisioner.status == ProvisionerStatus.RUNNING

        set_job_condition(store, job, "Complete")
        observer.reconcile(Request(job.namespace, job.name))
        assert shell_jobs(store) == []
        assert get_build(store).spec.provisioners[0].status == ProvisionerStatus.COMPLETED

    def test_completed_job_finishes_provisioners(self, store, reconciler, observer):
        """A completed Job marks the step Completed and provisioners ready."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]

        set_job_condition(store, job, "Complete")
        observer.reconcile(Request(job.namespace, job.name))
        assert get_build(store).spec.provisioners[0].status == ProvisionerStatus.COMPLETED
        assert shell_jobs(store) == []

        reconciler.reconcile(REQUEST)
        build = get_build(store)
        assert build.status.provisioners_ready is True
        assert conditions.is_true(build, "ProvisionersReady")
        assert conditions.is_true(build, "BuildInitialized")
        assert build.status.failure_reason is None

    def test_failed_job_fails_build(self, store, reconciler, observer):
        """A failed Job records the container's reason and fails the Build."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]

        set_job_condition(store, job, "Failed")
        create_failed_pod(store, job)
        observer.reconcile(Request(job.namespace, job.name))

        provisioner = get_build(store).spec.provisioners[0]
        assert provisioner.status == ProvisionerStatus.FAILED
        assert provisioner.failure_reason == "Error"
        assert provisioner.failure_message == "boom"
        assert shell_jobs(store) == []

        reconciler.reconcile(REQUEST)
        build = get_build(store)
        assert build.status.failure_reason == "ProvisionerFailed"
        assert build.status.failure_message == (
            f"Provisioner {provisioner.uuid} failed with Reason Error and Message boom"
        )
        assert build.status.phase == "Failed"
        assert build.status.provisioners_ready is False

    def test_allow_fail_never_fails_build(self, store, reconciler, observer):
        """A failed step with allowFail does not fail the Build."""
        shell_build(store, allow_fail=True)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]

        set_job_condition(store, job, "Failed")
        create_failed_pod(store, job)
        observer.reconcile(Request(job.namespace, job.name))
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.status.failure_reason is None
        assert build.status.failure_message is None
        assert build.status.provisioners_ready is True

    def test_steps_run_in_order(self, store, reconciler, observer):
        """The second step only starts once the first one is done."""
        create_build(
            store,
            infrastructureRef=infra_ref(),
            connector={"credentials": {"name": SECRET_NAME}},
            provisioners=[
                {"type": "built-in/shell", "run": "echo one"},
                {"type": "built-in/shell", "runConfigMapRef": {"name": "step-two"}},
            ],
        )
        machine_ready_infra(store)
        create_secret(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        assert len(shell_jobs(store)) == 1
        assert get_build(store).spec.provisioners[1].uuid is None

        job = shell_jobs(store)[0]
        set_job_condition(store, job, "Complete")
        observer.reconcile(Request(job.namespace, job.name))
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.spec.provisioners[1].uuid
        second_job = shell_jobs(store)[0]
        args = second_job.object["spec"]["template"]["spec"]["containers"][0]["args"]
        assert "--run-script-ref" in args
        assert "step-two" in args

    def test_shell_step_requires_credentials(self, store, reconciler):
        """A shell step without credentials is an invalid configuration."""
        build = Build.model_validate(
            {
                "metadata": {"name": "b1", "namespace": "default"},
                "spec": {"provisioners": [{"type": "built-in/shell", "run": "true"}]},
                "status": {"connected": True},
            }
        )
        reconciler.reconcile_provisioners(build)
        assert build.status.failure_reason == "InvalidConfiguration"
        assert shell_jobs(store) == []


class TestShellJobObserver:
    """Test the Job observer on its own."""

    def test_pod_gone(self, store, reconciler, observer):
        """A failed Job without a Pod records PodNotFound."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]

        set_job_condition(store, job, "Failed")
        observer.reconcile(Request(job.namespace, job.name))

        provisioner = get_build(store).spec.provisioners[0]
        assert provisioner.status == ProvisionerStatus.FAILED
        assert provisioner.failure_reason == "PodNotFound"
        assert shell_jobs(store) == []

    def test_unrecognized_condition_ignored(self, store, reconciler, observer):
        """Non-terminal conditions leave everything in place."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]

        set_job_condition(store, job, "Suspended")
        observer.reconcile(Request(job.namespace, job.name))
        assert len(shell_jobs(store)) == 1
        assert get_build(store).spec.provisioners[0].status == ProvisionerStatus.RUNNING

    def test_unclaimed_job_deleted(self, store, reconciler, observer):
        """A finished Job no step can claim is deleted and the Build left alone."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)
        job = shell_jobs(store)[0]
        store.patch(
            JOB_GVK,
            job.namespace,
            job.name,
            {
                "metadata": {"labels": {PROVISIONER_ID_LABEL: "not-a-step"}},
                "status": {"conditions": [{"type": "Complete", "status": "True"}]},
            },
        )
        before = store.get(BUILD_GVK, "default", "b1").resource_version

        assert observer.reconcile(Request(job.namespace, job.name)).is_zero
        assert shell_jobs(store) == []
        assert store.get(BUILD_GVK, "default", "b1").resource_version == before

    def test_unrecorded_job_waits_for_adoption(self, store, reconciler, observer):
        """A finished Job is kept while a step may still adopt it, then reported."""
        shell_build(store)
        reconciler.reconcile(REQUEST)
        job = store.create(
            ShellJob(
                uuid="u-early",
                build_name="b1",
                build_namespace="default",
                ssh_credentials_secret_name=SECRET_NAME,
                script="echo hello",
            ).to_manifest()
        )
        set_job_condition(store, job, "Complete")

        assert observer.reconcile(Request(job.namespace, job.name)).requeue_after == 2.0
        assert len(shell_jobs(store)) == 1

        reconciler.reconcile(REQUEST)
        assert get_build(store).spec.provisioners[0].uuid == "u-early"
        assert len(shell_jobs(store)) == 1

        assert observer.reconcile(Request(job.namespace, job.name)).is_zero
        assert get_build(store).spec.provisioners[0].status == ProvisionerStatus.COMPLETED
        assert shell_jobs(store) == []

    def test_job_of_deleted_build_deleted(self, store, observer):
        """A finished Job whose Build is gone is deleted."""
        job = store.create(
            ShellJob(
                uuid="u1",
                build_name="b1",
                build_namespace="default",
                ssh_credentials_secret_name=SECRET_NAME,
                script="echo hello",
            ).to_manifest()
        )
        set_job_condition(store, job, "Failed")

        assert observer.reconcile(Request(job.namespace, job.name)).is_zero
        assert shell_jobs(store) == []

    def test_missing_job(self, observer):
        """A Job that is already gone is ignored."""
        assert observer.reconcile(Request("forge-core", "gone")).is_zero


def external_build(store, allow_fail=False, provisioner_status=None):
    provisioner = {
        "type": "external",
        "ref": {
            "apiVersion": PROVISIONER_GVK.api_version,
            "kind": PROVISIONER_GVK.kind,
            "name": "p1",
        },
    }
    if allow_fail:
        provisioner["allowFail"] = True
    create_build(
        store,
        infrastructureRef=infra_ref(),
        connector={"credentials": {"name": SECRET_NAME}},
        provisioners=[provisioner],
    )
    machine_ready_infra(store)
    create_secret(store)
    obj = Unstructured(
        {
            "apiVersion": PROVISIONER_GVK.api_version,
            "kind": PROVISIONER_GVK.kind,
            "metadata": {"name": "p1", "namespace": "default"},
        }
    )
    if provisioner_status is not None:
        obj.object["status"] = provisioner_status
    store.create(obj)


class TestExternalProvisioners:
    """Test external provisioning steps."""

    def test_running_until_ready(self, store, reconciler):
        """An unready provisioner object keeps the step Running."""
        external_build(store, provisioner_status={"ready": False})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.spec.provisioners[0].status == ProvisionerStatus.RUNNING
        assert build.status.provisioners_ready is False
        owner = store.get(PROVISIONER_GVK, "default", "p1").controller_owner()
        assert owner["uid"] == build.metadata.uid

    def test_ready_completes(self, store, reconciler):
        """A ready provisioner object completes the step."""
        external_build(store, provisioner_status={"ready": True})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.spec.provisioners[0].status == ProvisionerStatus.COMPLETED
        assert build.status.provisioners_ready is True

    def test_failure_fails_build(self, store, reconciler):
        """A failed provisioner object fails the Build."""
        external_build(store, provisioner_status={"failureReason": "Timeout"})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.spec.provisioners[0].status == ProvisionerStatus.FAILED
        assert build.status.failure_reason == "ProvisionerFailed"
        assert "TestProvisioner p1" in build.status.failure_message

    def test_allow_fail_never_fails_build(self, store, reconciler):
        """A failed provisioner object with allowFail does not fail the Build."""
        external_build(
            store,
            allow_fail=True,
            provisioner_status={"failureReason": "Timeout", "failureMessage": "too slow"},
        )
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        build = get_build(store)
        assert build.spec.provisioners[0].status == ProvisionerStatus.FAILED
        assert build.status.failure_reason is None
        assert build.status.failure_message is None
        assert build.status.provisioners_ready is True

    def test_missing_ref(self, store, reconciler):
        """An external step without ref is an invalid configuration."""
        build = Build.model_validate(
            {
                "metadata": {"name": "b1", "namespace": "default"},
                "spec": {"provisioners": [{"type": "external"}]},
                "status": {"connected": True},
            }
        )
        reconciler.reconcile_provisioners(build)
        assert build.status.failure_reason == "InvalidConfiguration"


class TestDeletion:
    """Test the deletion workflow."""

    def test_finalizer_held_until_infrastructure_gone(self, store, reconciler):
        """Owned infrastructure is deleted first, then the finalizer goes."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(store, status={"ready": False})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        store.delete(BUILD_GVK, "default", "b1")
        result = reconciler.reconcile(REQUEST)
        assert result.requeue_after == DELETE_REQUEUE
        with pytest.raises(NotFoundError):
            store.get(INFRA_GVK, "default", "infra1")
        build = get_build(store)
        assert build.has_finalizer()
        assert build.status.phase == "Terminating"

        reconciler.reconcile(REQUEST)
        with pytest.raises(NotFoundError):
            store.get(BUILD_GVK, "default", "b1")
        assert "Deleted" in event_reasons(store)

    def test_unowned_infrastructure_deleted_by_reference(self, store, reconciler):
        """Infrastructure not found as a descendant is deleted through the reference."""
        create_build(store, infrastructureRef=infra_ref())
        create_infra(store, annotations={PAUSED_ANNOTATION: ""})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        store.delete(BUILD_GVK, "default", "b1")
        assert reconciler.reconcile(REQUEST).is_zero
        with pytest.raises(NotFoundError):
            store.get(INFRA_GVK, "default", "infra1")
        build = get_build(store)
        assert build.has_finalizer()
        assert conditions.get(build, "InfrastructureReady").reason == "Deleting"
        assert reconciler.tracker.is_watching(INFRA_GVK)

        reconciler.reconcile(REQUEST)
        with pytest.raises(NotFoundError):
            store.get(BUILD_GVK, "default", "b1")

    def test_provisioners_deleted_before_infrastructure(self, store, reconciler):
        """Provisioner objects go first; infrastructure waits for them."""
        external_build(store, provisioner_status={"ready": False})
        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        store.delete(BUILD_GVK, "default", "b1")
        assert reconciler.reconcile(REQUEST).requeue_after == DELETE_REQUEUE
        with pytest.raises(NotFoundError):
            store.get(PROVISIONER_GVK, "default", "p1")
        assert store.get(INFRA_GVK, "default", "infra1").name == "infra1"

        assert reconciler.reconcile(REQUEST).requeue_after == DELETE_REQUEUE
        with pytest.raises(NotFoundError):
            store.get(INFRA_GVK, "default", "infra1")
        assert get_build(store).has_finalizer()

        reconciler.reconcile(REQUEST)
        with pytest.raises(NotFoundError):
            store.get(BUILD_GVK, "default", "b1")

    def test_deleting_without_finalizer(self, store, reconciler):
        """A Build being deleted without the finalizer is left alone."""
        build = Unstructured(
            {
                "apiVersion": BUILD_GVK.api_version,
                "kind": BUILD_GVK.kind,
                "metadata": {
                    "name": "b1",
                    "namespace": "default",
                    "finalizers": ["other.example.com/hold"],
                },
            }
        )
        store.create(build)
        store.delete(BUILD_GVK, "default", "b1")
        version = store.get(BUILD_GVK, "default", "b1").resource_version

        assert reconciler.reconcile(REQUEST).is_zero
        assert store.get(BUILD_GVK, "default", "b1").resource_version == version
