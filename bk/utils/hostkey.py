"""
Machine identity derived from the SSH host key.

The ed25519 host key gives every machine a stable fingerprint (used in the
lineage head tag) and a signing key (used to authenticate telemetry events).
"""

import base64
import socket

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from bk.errors import FatalError


class HostKeyError(FatalError):
    """Raised when the host key cannot be read or used."""
    kind = 'host_key'
    description = 'host key unavailable'


class HostIdentity:
    """Hostname plus host key fingerprint/signature for the running machine."""

    def __init__(self, public_key_path: str, private_key_path: str = None, hostname: str = None):
        """
        Args:
            public_key_path: OpenSSH public host key (ssh_host_ed25519_key.pub)
            private_key_path: Matching private key, only needed for signing
            hostname: Override for the machine hostname
        """
        self.public_key_path = public_key_path
        self.private_key_path = private_key_path
        self._hostname = hostname
        self._fingerprint = None

    @classmethod
    def from_settings(cls, settings) -> 'HostIdentity':
        return cls(settings.HOST_KEY_PATH, settings.HOST_PRIVATE_KEY_PATH)

    @property
    def hostname(self) -> str:
        if self._hostname is None:
            self._hostname = socket.gethostname().strip()
        return self._hostname

    @property
    def fingerprint(self) -> str:
        """
        SHA256 fingerprint of the public host key.

        Same value `ssh-keygen -lf` prints, without the `SHA256:` prefix.

        Raises:
            HostKeyError: If the key file is missing or not an OpenSSH public key
        """
        if self._fingerprint is None:
            self._fingerprint = self._compute_fingerprint()
        return self._fingerprint

    def _compute_fingerprint(self) -> str:
        try:
            with open(self.public_key_path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise HostKeyError(f"Cannot read {self.public_key_path}: {e}")

        try:
            key = serialization.load_ssh_public_key(data)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise HostKeyError(f"Invalid public key {self.public_key_path}: {e}")

        openssh = key.public_bytes(
            serialization.Encoding.OpenSSH,
            serialization.PublicFormat.OpenSSH
        )
        wire_blob = base64.b64decode(openssh.split()[1])

        digest = hashes.Hash(hashes.SHA256())
        digest.update(wire_blob)
        return base64.b64encode(digest.finalize()).decode().rstrip('=')

    def sign(self, payload: bytes) -> str:
        """
        Sign a payload with the private host key.

        Args:
            payload: Bytes to sign

        Returns:
            Base64-encoded ed25519 signature

        Raises:
            HostKeyError: If the private key is unavailable or not ed25519
        """
        if not self.private_key_path:
            raise HostKeyError("No private host key configured")

        try:
            with open(self.private_key_path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise HostKeyError(f"Cannot read {self.private_key_path}: {e}")

        try:
            key = serialization.load_ssh_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise HostKeyError(f"Invalid private key {self.private_key_path}: {e}")

        if not isinstance(key, Ed25519PrivateKey):
            raise HostKeyError(f"Host key {self.private_key_path} is not ed25519")

        return base64.b64encode(key.sign(payload)).decode()
