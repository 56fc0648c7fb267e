"""SSH credentials Secret of a Build.

Infrastructure providers hand the machine's SSH credentials to the Build
through a Secret named ``<build>-ssh-credentials``; the shell provisioner
reads it from inside its Job.

Nothing in the controllers calls ``ensure_credentials_secret``: it is the
entry point for infrastructure providers written against this package,
exported from ``forge_build.builds``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from forge_build.builds.patch import PatchHelper
from forge_build.builds.schema import Build, ConnectorSpec, LocalObjectReference
from forge_build.runtime.events import EventRecorder
from forge_build.store.client import (
    SECRET_GVK,
    ObjectStore,
    OperationResult,
    create_or_patch,
)
from forge_build.store.unstructured import Unstructured
from forge_build.types import (
    BUILD_NAME_LABEL,
    BUILD_SECRET_TYPE,
    MANAGED_BY_ANNOTATION,
    PROVIDER_NAME_LABEL,
    EventType,
)

logger = logging.getLogger(__name__)


@dataclass
class SSHCredentials:
    host: str
    username: str
    password: str = ""
    private_key: str = ""
    public_key: str = ""

    def string_data(self) -> dict[str, str]:
        data = {"host": self.host, "username": self.username}
        if self.password:
            data["password"] = self.password
        if self.private_key:
            data["privateKey"] = self.private_key
        if self.public_key:
            data["publicKey"] = self.public_key
        return data


def credentials_secret_name(build_name: str) -> str:
    return f"{build_name}-ssh-credentials"


def ensure_credentials_secret(
    store: ObjectStore,
    recorder: EventRecorder,
    build: Build,
    creds: SSHCredentials,
    provider: str,
) -> Unstructured:
    """Create or update the Build's credentials Secret and reference it.

    Args:
        store: Object store.
        recorder: Records an event when the Secret was created or changed.
        build: Owning Build; its ``spec.connector.credentials`` is patched.
        creds: Credentials to store.
        provider: Name of the infrastructure provider.

    Returns:
        The stored Secret.

    Raises:
        StoreError: If the Secret or the Build cannot be written.
    """
    helper = PatchHelper(store, build)
    name = credentials_secret_name(build.name)
    secret = Unstructured(
        {
            "apiVersion": SECRET_GVK.api_version,
            "kind": SECRET_GVK.kind,
            "type": BUILD_SECRET_TYPE,
            "metadata": {
                "name": name,
                "namespace": build.namespace,
                "labels": {
                    BUILD_NAME_LABEL: build.name,
                    PROVIDER_NAME_LABEL: provider,
                },
                "annotations": {MANAGED_BY_ANNOTATION: "forge"},
            },
        }
    )
    string_data = creds.string_data()

    def mutate(obj: Unstructured) -> None:
        obj.set_nested(string_data, "stringData")
        obj.set_controller_reference(
            build.api_version, build.kind, build.name, build.metadata.uid or ""
        )

    stored, operation = create_or_patch(store, secret, mutate)
    if operation != OperationResult.UNCHANGED:
        logger.info("SSH credentials secret %s/%s %s", build.namespace, name, operation.value)
        recorder.event(
            build,
            EventType.NORMAL,
            "SSHCredentials",
            f"Build Got SSH Credentials Secret {name}",
        )

    if build.spec.connector is None:
        build.spec.connector = ConnectorSpec()
    build.spec.connector.credentials = LocalObjectReference(name=name)
    helper.patch(build)
    return stored


__all__ = ["SSHCredentials", "credentials_secret_name", "ensure_credentials_secret"]
