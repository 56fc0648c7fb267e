"""Pydantic models for the Build resource.

Field names follow Python conventions; documents use the camelCase
aliases. ``to_document`` renders a Build the way it is stored: unset,
default and empty values are left out, so two renderings of the same
state are always byte-for-byte comparable.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from forge_build.conditions import Condition, dump_conditions
from forge_build.store.unstructured import GroupVersionKind, Unstructured
from forge_build.types import (
    API_GROUP,
    API_VERSION,
    BUILD_FINALIZER,
    BUILD_KIND,
    PAUSED_ANNOTATION,
    BuildPhase,
    ProvisionerStatus,
    ProvisionerType,
)

BUILD_GVK = GroupVersionKind(API_GROUP, API_VERSION, BUILD_KIND)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ObjectMeta(BaseModel):
    """Resource metadata. Unknown keys are kept as-is."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = Field(default=None, alias="resourceVersion")
    generation: int | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    finalizers: list[str] | None = None
    owner_references: list[dict[str, Any]] | None = Field(
        default=None, alias="ownerReferences"
    )
    creation_timestamp: str | None = Field(default=None, alias="creationTimestamp")
    deletion_timestamp: str | None = Field(default=None, alias="deletionTimestamp")


class ObjectReference(_Model):
    """Pointer to a resource of any type."""

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    namespace: str | None = None
    uid: str | None = None

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    def set_version(self, version: str) -> None:
        self.api_version = self.gvk.with_version(version).api_version


class LocalObjectReference(_Model):
    """Pointer to a resource in the same namespace."""

    name: str


class ConnectorSpec(_Model):
    """How the build machine is reached."""

    type: str | None = None
    credentials: LocalObjectReference | None = None


class ProvisionerSpec(_Model):
    """One ordered provisioning step.

    Attributes:
        uuid: Assigned on first execution; identifies the step's Job.
        type: Built-in shell step or an external provisioner object.
        allow_fail: A failed step does not fail the Build.
        run: Inline script for the shell step.
        run_config_map_ref: ConfigMap holding the script for the shell step.
        ref: External provisioner object.
        retries: Job backoff limit for the shell step.
        status: Runtime status.
        failure_reason: Reason captured from the failed run.
        failure_message: Message captured from the failed run.
    """

    uuid: str | None = None
    type: ProvisionerType
    allow_fail: bool = Field(default=False, alias="allowFail")
    run: str | None = None
    run_config_map_ref: LocalObjectReference | None = Field(
        default=None, alias="runConfigMapRef"
    )
    ref: ObjectReference | None = None
    retries: int | None = Field(default=None, ge=0)
    status: ProvisionerStatus | None = None
    failure_reason: str | None = Field(default=None, alias="failureReason")
    failure_message: str | None = Field(default=None, alias="failureMessage")


class BuildSpec(_Model):
    """Desired state of a Build."""

    paused: bool = False
    connector: ConnectorSpec | None = None
    infrastructure_ref: ObjectReference | None = Field(
        default=None, alias="infrastructureRef"
    )
    provisioners: list[ProvisionerSpec] | None = None
    delete_cascade: bool = Field(default=False, alias="deleteCascade")


class FailureDomainSpec(_Model):
    """A failure domain reported by the infrastructure provider."""

    control_plane: bool = Field(default=False, alias="controlPlane")
    attributes: dict[str, str] | None = None


class BuildStatus(_Model):
    """Observed state of a Build, owned by the controller."""

    phase: str | None = None
    ready: bool = False
    infrastructure_ready: bool = Field(default=False, alias="infrastructureReady")
    connected: bool = False
    provisioners_ready: bool = Field(default=False, alias="provisionersReady")
    conditions: list[Condition] = Field(default_factory=list)
    failure_reason: str | None = Field(default=None, alias="failureReason")
    failure_message: str | None = Field(default=None, alias="failureMessage")
    failure_domains: dict[str, FailureDomainSpec] | None = Field(
        default=None, alias="failureDomains"
    )
    observed_generation: int | None = Field(default=None, alias="observedGeneration")

    @field_serializer("failure_domains")
    def _dump_failure_domains(
        self, domains: dict[str, FailureDomainSpec] | None
    ) -> dict[str, Any] | None:
        # Domains are keyed by id; keep every entry even when all fields are default.
        if domains is None:
            return None
        return {
            key: domain.model_dump(by_alias=True, exclude_none=True, mode="json")
            for key, domain in domains.items()
        }

    @property
    def typed_phase(self) -> BuildPhase:
        try:
            return BuildPhase(self.phase)
        except ValueError:
            return BuildPhase.UNKNOWN

    def set_typed_phase(self, phase: BuildPhase) -> None:
        self.phase = phase.value


class Build(_Model):
    """The Build resource."""

    api_version: str = Field(default=BUILD_GVK.api_version, alias="apiVersion")
    kind: str = BUILD_KIND
    metadata: ObjectMeta
    spec: BuildSpec = Field(default_factory=BuildSpec)
    status: BuildStatus = Field(default_factory=BuildStatus)

    # Condition getter/setter

    def get_conditions(self) -> list[Condition]:
        return self.status.conditions

    def set_conditions(self, conditions: list[Condition]) -> None:
        self.status.conditions = conditions

    # Helpers

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def is_paused(self) -> bool:
        """Paused by spec flag or by the pause annotation."""
        annotations = self.metadata.annotations or {}
        return self.spec.paused or PAUSED_ANNOTATION in annotations

    def is_deleting(self) -> bool:
        return bool(self.metadata.deletion_timestamp)

    def has_finalizer(self) -> bool:
        return BUILD_FINALIZER in (self.metadata.finalizers or [])

    def add_finalizer(self) -> None:
        if not self.has_finalizer():
            self.metadata.finalizers = [*(self.metadata.finalizers or []), BUILD_FINALIZER]

    def remove_finalizer(self) -> None:
        remaining = [f for f in self.metadata.finalizers or [] if f != BUILD_FINALIZER]
        self.metadata.finalizers = remaining or None

    def provisioner(self, provisioner_uuid: str) -> ProvisionerSpec | None:
        for spec in self.spec.provisioners or []:
            if spec.uuid == provisioner_uuid:
                return spec
        return None

    # Serialization

    def summary(self) -> dict[str, Any]:
        """Flat view of the Build used by listings."""
        status = self.status
        return {
            "namespace": self.namespace,
            "name": self.name,
            "phase": status.phase or "",
            "ready": status.ready,
            "infrastructure_ready": status.infrastructure_ready,
            "connected": status.connected,
            "provisioners_ready": status.provisioners_ready,
            "failure_reason": status.failure_reason,
            "failure_message": status.failure_message,
            "provisioners": [
                {
                    "uuid": p.uuid,
                    "type": p.type.value,
                    "status": p.status.value if p.status else None,
                }
                for p in self.spec.provisioners or []
            ],
            "conditions": dump_conditions(status.conditions),
        }

    def to_document(self) -> dict[str, Any]:
        """Render the Build as a store document."""
        data = self.model_dump(
            by_alias=True, exclude_none=True, exclude_defaults=True, mode="json"
        )
        document = _prune_empty(data)
        document["apiVersion"] = self.api_version
        document["kind"] = self.kind
        document.setdefault("metadata", {})["name"] = self.metadata.name
        return document

    @classmethod
    def from_unstructured(cls, obj: Unstructured) -> Build:
        return cls.model_validate(obj.object)


def _prune_empty(value: Any) -> Any:
    if isinstance(value, dict):
        pruned = {}
        for key, item in value.items():
            item = _prune_empty(item)
            if item in ({}, []):
                continue
            pruned[key] = item
        return pruned
    if isinstance(value, list):
        return [_prune_empty(item) for item in value]
    return value


__all__ = [
    "BUILD_GVK",
    "Build",
    "BuildSpec",
    "BuildStatus",
    "ConnectorSpec",
    "FailureDomainSpec",
    "LocalObjectReference",
    "ObjectMeta",
    "ObjectReference",
    "ProvisionerSpec",
]
