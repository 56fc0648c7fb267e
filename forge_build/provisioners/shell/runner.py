"""Process that runs inside a shell provisioner Job.

Reads the Build's SSH credentials Secret, resolves the script (inline or
from a ConfigMap), waits for the machine's SSH endpoint and runs the
script there. Any failure is raised so the Job's container exits
non-zero and the Job observer records the step as Failed.
"""

from __future__ import annotations

import logging

from forge_build.ssh.client import CommandOutput, SSHClient
from forge_build.store.client import CONFIG_MAP_GVK, SECRET_GVK, ObjectStore

logger = logging.getLogger(__name__)


class ShellRunError(Exception):
    """Raised when the shell provisioner cannot run its script."""

    def __init__(self, message: str, code: str = "shell_run_error") -> None:
        super().__init__(message)
        self.code = code


def resolve_script(
    store: ObjectStore, namespace: str, script: str = "", script_ref: str = ""
) -> str:
    """Return the script to run.

    A ConfigMap reference wins over an inline script. The value under the
    lexically first key of the ConfigMap's data is used.

    Raises:
        NotFoundError: If the ConfigMap does not exist.
        ShellRunError: If the resulting script is empty.
    """
    if script_ref:
        logger.info("Fetching the script to run from ConfigMap %s/%s", namespace, script_ref)
        config_map = store.get(CONFIG_MAP_GVK, namespace, script_ref)
        data, _ = config_map.nested_map("data")
        script = str(data[sorted(data)[0]]) if data else ""
    if not script:
        raise ShellRunError("script to run is empty", "empty_script")
    return script


def run_shell_provisioner(
    store: ObjectStore,
    namespace: str,
    ssh_credentials_secret_name: str,
    script: str = "",
    script_ref: str = "",
    ssh_timeout: float = 120.0,
    client_factory: type[SSHClient] = SSHClient,
) -> CommandOutput:
    """Run one shell provisioning step against the build machine.

    Args:
        store: Object store holding the Secret and ConfigMap.
        namespace: Namespace of the Build.
        ssh_credentials_secret_name: Secret with the SSH credentials.
        script: Inline script.
        script_ref: ConfigMap holding the script.
        ssh_timeout: Seconds to wait for the SSH endpoint.
        client_factory: SSH client class, replaceable in tests.

    Returns:
        Output of the script.

    Raises:
        NotFoundError: If the Secret or ConfigMap does not exist.
        ShellRunError: If the script is empty.
        SSHError: If the machine is unreachable or the script fails.
    """
    logger.info("Fetching the ssh-credentials secret %s/%s", namespace, ssh_credentials_secret_name)
    secret = store.get(SECRET_GVK, namespace, ssh_credentials_secret_name)
    body = resolve_script(store, namespace, script, script_ref)

    client = client_factory.from_secret(secret)
    logger.info("Connecting to the machine via ssh")
    client.wait_for_ssh(ssh_timeout)
    try:
        logger.info("SSH connection established, running the script")
        output = client.run_script(body)
    finally:
        client.disconnect()
    logger.info("Script executed", extra={"output": output.stdout})
    return output


__all__ = ["ShellRunError", "resolve_script", "run_shell_provisioner"]
