"""SSH client used by the shell provisioner.

Wraps paramiko with the connection data carried in a Build's SSH
credentials Secret. A private key takes precedence over a password
when both are present.
"""

from __future__ import annotations

import base64
import io
import logging
import shlex
import time
from dataclasses import dataclass
from typing import IO

import paramiko

from forge_build.store.unstructured import Unstructured

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
WAIT_INTERVAL = 2.0


class SSHError(Exception):
    """Base error for SSH operations."""

    def __init__(self, message: str, code: str = "ssh_error") -> None:
        super().__init__(message)
        self.code = code


class SSHTimeoutError(SSHError):
    """Raised when the host does not accept SSH in time."""

    def __init__(self, host: str, timeout: float) -> None:
        super().__init__(f"timed out after {timeout}s waiting for ssh on {host}", "timeout")


class CommandError(SSHError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, command: str, exit_status: int, stderr: str) -> None:
        super().__init__(
            f"command {command!r} exited with status {exit_status}: {stderr.strip()}",
            "command_failed",
        )
        self.exit_status = exit_status
        self.stderr = stderr


@dataclass
class CommandOutput:
    stdout: str
    stderr: str
    exit_status: int


def _secret_value(secret: Unstructured, key: str) -> str:
    string_data, _ = secret.nested_map("stringData")
    if string_data.get(key):
        return str(string_data[key])
    data, _ = secret.nested_map("data")
    if data.get(key):
        try:
            return base64.b64decode(data[key]).decode("utf-8")
        except ValueError as e:
            raise SSHError(f"secret key {key!r} is not valid base64", "invalid_secret") from e
    return ""


class SSHClient:
    """A connection to one SSH host.

    Args:
        host: Host name or address.
        username: Login user.
        password: Password, used when no private key is set.
        private_key: PEM private key.
        port: SSH port.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str = "",
        private_key: str = "",
        port: int = DEFAULT_PORT,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.private_key = private_key
        self.port = port
        self._client: paramiko.SSHClient | None = None

    @classmethod
    def from_secret(cls, secret: Unstructured) -> SSHClient:
        """Build a client from a credentials Secret.

        Reads ``host``, ``port``, ``username``, ``password`` and
        ``privateKey`` from ``stringData`` or base64 ``data``.

        Raises:
            SSHError: If a value cannot be decoded or the port is invalid.
        """
        port_value = _secret_value(secret, "port")
        try:
            port = int(port_value) if port_value else DEFAULT_PORT
        except ValueError as e:
            raise SSHError(f"invalid ssh port {port_value!r}", "invalid_secret") from e
        return cls(
            host=_secret_value(secret, "host"),
            username=_secret_value(secret, "username"),
            password=_secret_value(secret, "password"),
            private_key=_secret_value(secret, "privateKey"),
            port=port,
        )

    def validate(self) -> None:
        """Check that the client has what it needs to authenticate.

        Raises:
            SSHError: If the host, username or both credentials are missing.
        """
        if not self.host:
            raise SSHError("no host given", "invalid_host")
        if not self.username:
            raise SSHError("no username given", "invalid_username")
        if not self.private_key and not self.password:
            raise SSHError("no password or private key given", "invalid_auth")

    def _auth_kwargs(self) -> dict[str, object]:
        if self.private_key:
            try:
                pkey = paramiko.RSAKey.from_private_key(io.StringIO(self.private_key))
            except paramiko.SSHException as e:
                raise SSHError(f"unable to parse private key: {e}", "invalid_auth") from e
            return {"pkey": pkey, "look_for_keys": False, "allow_agent": False}
        return {"password": self.password, "look_for_keys": False, "allow_agent": False}

    def connect(self, timeout: float = 10.0) -> None:
        """Open the connection.

        Raises:
            SSHError: If validation or the connection fails.
        """
        self.validate()
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                timeout=timeout,
                **self._auth_kwargs(),
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHError(f"unable to connect to {self.host}:{self.port}: {e}", "connect_failed") from e
        self._client = client
        logger.debug("Connected to %s:%d as %s", self.host, self.port, self.username)

    def wait_for_ssh(self, timeout: float, interval: float = WAIT_INTERVAL) -> None:
        """Connect, retrying until timeout expires.

        Raises:
            SSHTimeoutError: If no connection succeeded in time.
            SSHError: If the credentials are incomplete.
        """
        self.validate()
        deadline = time.monotonic() + timeout
        while True:
            try:
                self.connect(timeout=min(interval * 5, max(timeout, 1.0)))
                return
            except SSHError as e:
                if e.code != "connect_failed":
                    raise
                logger.debug("SSH not ready on %s: %s", self.host, e)
            if time.monotonic() >= deadline:
                raise SSHTimeoutError(self.host, timeout)
            time.sleep(interval)

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise SSHError("not connected", "not_connected")
        return self._client

    def run(self, command: str, check: bool = True) -> CommandOutput:
        """Run a command on the host.

        Raises:
            CommandError: If check is set and the command exits non-zero.
            SSHError: If not connected.
        """
        client = self._require_client()
        logger.info("Running remote command on %s", self.host)
        try:
            _, stdout, stderr = client.exec_command(command)
            exit_status = stdout.channel.recv_exit_status()
            output = CommandOutput(
                stdout=stdout.read().decode("utf-8", errors="replace"),
                stderr=stderr.read().decode("utf-8", errors="replace"),
                exit_status=exit_status,
            )
        except (paramiko.SSHException, OSError) as e:
            raise SSHError(f"failed to run command: {e}", "run_failed") from e
        if check and output.exit_status != 0:
            raise CommandError(command, output.exit_status, output.stderr)
        return output

    def run_script(self, script: str, shell: str = "/bin/sh") -> CommandOutput:
        """Run a script body through the remote shell."""
        return self.run(f"{shell} -c {shlex.quote(script)}")

    def upload(self, src: IO[bytes], dst: str, mode: int = 0o644) -> None:
        """Copy a file object to dst over SFTP."""
        client = self._require_client()
        with client.open_sftp() as sftp:
            sftp.putfo(src, dst)
            sftp.chmod(dst, mode)

    def download(self, src: str, dst: IO[bytes]) -> None:
        """Copy the remote file src into a file object."""
        client = self._require_client()
        with client.open_sftp() as sftp:
            sftp.getfo(src, dst)

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> SSHClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.disconnect()


__all__ = [
    "DEFAULT_PORT",
    "CommandError",
    "CommandOutput",
    "SSHClient",
    "SSHError",
    "SSHTimeoutError",
]
