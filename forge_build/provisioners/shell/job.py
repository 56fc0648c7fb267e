"""Job manifests for the built-in shell provisioner.

Each shell provisioning step runs as one Job whose single container
connects to the build machine over SSH and runs the step's script.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

from forge_build.store.unstructured import GroupVersionKind, Unstructured
from forge_build.types import (
    BUILD_NAME_LABEL,
    BUILD_NAMESPACE_LABEL,
    FORGE_CORE_NAMESPACE,
    MANAGED_BY_LABEL,
    PROVISIONER_ID_LABEL,
    SHELL_PROVISIONER_CONTAINER,
    SHELL_PROVISIONER_NAME,
)

JOB_GVK = GroupVersionKind("batch", "v1", "Job")
POD_GVK = GroupVersionKind("", "v1", "Pod")

DEFAULT_BACKOFF_LIMIT = 1


def compute_hash(value: str) -> str:
    """Short stable hash usable in resource names."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]


def shell_job_name(build_namespace: str, build_name: str, provisioner_uuid: str) -> str:
    return f"{SHELL_PROVISIONER_NAME}-" + compute_hash(
        f"{build_namespace}/{build_name}/{provisioner_uuid}"
    )


def build_job_selector(build_namespace: str, build_name: str) -> dict[str, str]:
    """Labels shared by every shell Job of one Build."""
    return {
        MANAGED_BY_LABEL: SHELL_PROVISIONER_NAME,
        BUILD_NAME_LABEL: build_name,
        BUILD_NAMESPACE_LABEL: build_namespace,
    }


def linux_node_affinity() -> dict[str, Any]:
    return {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {
                                "key": "kubernetes.io/os",
                                "operator": "In",
                                "values": ["linux"],
                            }
                        ]
                    }
                ]
            }
        }
    }


@dataclass
class ShellJob:
    """Parameters of one shell provisioner Job.

    Attributes:
        uuid: Provisioner UUID the Job runs for.
        build_name: Name of the owning Build.
        build_namespace: Namespace of the owning Build.
        ssh_credentials_secret_name: Secret with the SSH credentials.
        script: Inline script, used when no script_ref is given.
        script_ref: ConfigMap holding the script.
        namespace: Namespace the Job is created in.
        image: Provisioner image repository.
        tag: Provisioner image tag.
        backoff_limit: Pod retries before the Job fails.
        timeout: Active deadline in seconds; 0 for none.
        ttl: Seconds to keep the finished Job; 0 for the cluster default.
        annotations: Pod template annotations.
    """

    uuid: str
    build_name: str
    build_namespace: str
    ssh_credentials_secret_name: str
    script: str = ""
    script_ref: str = ""
    namespace: str = FORGE_CORE_NAMESPACE
    image: str = "ghcr.io/forge-build/forge-provisioner-shell"
    tag: str = "dev"
    backoff_limit: int = DEFAULT_BACKOFF_LIMIT
    timeout: int = 0
    ttl: int = 0
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return shell_job_name(self.build_namespace, self.build_name, self.uuid)

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.tag}"

    @property
    def labels(self) -> dict[str, str]:
        labels = build_job_selector(self.build_namespace, self.build_name)
        labels[PROVISIONER_ID_LABEL] = self.uuid
        return labels

    def args(self) -> list[str]:
        if self.script_ref:
            script_args = ["--run-script-ref", self.script_ref]
        else:
            script_args = ["--run-script", self.script]
        return [
            "--namespace",
            self.build_namespace,
            *script_args,
            "--ssh-credentials-secret-name",
            self.ssh_credentials_secret_name,
        ]

    def to_manifest(self) -> Unstructured:
        """Render the Job."""
        container = {
            "name": SHELL_PROVISIONER_CONTAINER,
            "image": self.image_ref,
            "imagePullPolicy": "IfNotPresent",
            "terminationMessagePolicy": "FallbackToLogsOnError",
            "env": [
                {
                    "name": "POD_NAMESPACE",
                    "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
                }
            ],
            "args": self.args(),
        }
        job_spec: dict[str, Any] = {
            "backoffLimit": self.backoff_limit,
            "completions": 1,
            "template": {
                "metadata": {"labels": dict(self.labels)},
                "spec": {
                    "serviceAccountName": SHELL_PROVISIONER_NAME,
                    "affinity": linux_node_affinity(),
                    "restartPolicy": "Never",
                    "containers": [container],
                },
            },
        }
        if self.annotations:
            job_spec["template"]["metadata"]["annotations"] = dict(self.annotations)
        if self.timeout > 0:
            job_spec["activeDeadlineSeconds"] = self.timeout
        if self.ttl > 0:
            job_spec["ttlSecondsAfterFinished"] = self.ttl

        return Unstructured(
            {
                "apiVersion": JOB_GVK.api_version,
                "kind": JOB_GVK.kind,
                "metadata": {
                    "name": self.name,
                    "namespace": self.namespace,
                    "labels": dict(self.labels),
                },
                "spec": job_spec,
            }
        )


__all__ = [
    "DEFAULT_BACKOFF_LIMIT",
    "JOB_GVK",
    "POD_GVK",
    "ShellJob",
    "build_job_selector",
    "compute_hash",
    "linux_node_affinity",
    "shell_job_name",
]
