"""SSH key handling and remote command execution."""

from forge_build.ssh.client import CommandOutput, SSHClient, SSHError
from forge_build.ssh.keys import KeyPair

__all__ = ["CommandOutput", "KeyPair", "SSHClient", "SSHError"]
