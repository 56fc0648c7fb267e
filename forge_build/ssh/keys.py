"""SSH key pair generation and handling."""

from __future__ import annotations

import base64
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

KEY_BITS = 2048
PUBLIC_EXPONENT = 65537


class SSHKeyError(Exception):
    """Base error for key handling."""

    def __init__(self, message: str, code: str = "ssh_key_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class KeyPair:
    """An RSA key pair.

    Attributes:
        private_key: PEM-encoded PKCS#1 private key.
        public_key: Public key in authorized_keys format.
    """

    private_key: bytes = b""
    public_key: bytes = b""

    @classmethod
    def generate(cls) -> KeyPair:
        """Generate a new 2048-bit RSA key pair."""
        key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_BITS)
        private_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_ssh = key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        return cls(private_key=private_pem, public_key=public_ssh + b"\n")

    @classmethod
    def read_from_files(cls, private_key_path: Path, public_key_path: Path) -> KeyPair:
        return cls(
            private_key=private_key_path.read_bytes(),
            public_key=public_key_path.read_bytes(),
        )

    def write_to_files(self, private_key_path: Path, public_key_path: Path) -> None:
        """Write both keys, readable by the owner only.

        Raises:
            OSError: If a file cannot be written.
        """
        for path, value in ((private_key_path, self.private_key), (public_key_path, self.public_key)):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(value)
            os.chmod(path, 0o600)

    def fingerprint(self) -> str:
        """MD5 fingerprint of the public key blob, as hex.

        Raises:
            SSHKeyError: If the public key is not in authorized_keys format.
        """
        return public_key_fingerprint(self.public_key.decode("ascii"))


def public_key_fingerprint(authorized_key: str) -> str:
    """MD5 fingerprint of an authorized_keys line, as hex.

    Raises:
        SSHKeyError: If the line has no valid base64 key blob.
    """
    parts = authorized_key.strip().split()
    if len(parts) < 2:
        raise SSHKeyError("public key is not in authorized_keys format")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except ValueError as e:
        raise SSHKeyError(f"invalid public key encoding: {e}") from e
    return hashlib.md5(blob).hexdigest()


def public_key_from_private_key(private_key_pem: str | bytes) -> str:
    """Derive the authorized_keys public key from a PEM private key.

    Raises:
        SSHKeyError: If the key cannot be parsed or is not RSA.
    """
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode("utf-8")
    try:
        key = serialization.load_pem_private_key(private_key_pem, password=None)
    except ValueError as e:
        raise SSHKeyError("failed to decode PEM block containing private key") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SSHKeyError("private key is not an RSA key")
    public_ssh = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return public_ssh.decode("ascii") + "\n"


__all__ = [
    "KEY_BITS",
    "SSHKeyError",
    "KeyPair",
    "public_key_fingerprint",
    "public_key_from_private_key",
]
