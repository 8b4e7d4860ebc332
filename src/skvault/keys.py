"""
Machine keypair: the vault identity of this host.

One Ed25519 keypair per machine, stored in OpenSSH format so the same
key can double as a git deploy key:

    <home>/keys/               0700
    ├── vault_ed25519          0600  private key, never leaves the host
    ├── vault_ed25519.pub      0644  register this with the vault service
    └── archived/              previous keypairs after rotation

Ed25519 signatures are deterministic: the same payload signed with the
same key always yields the same bytes.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import shutil
import stat
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .config import KEYS_DIR, short_hostname
from .errors import ConfigurationError, ConfirmationRequired, ValidationError
from .fsutil import atomic_write_bytes
from .models import KeyHealth

logger = logging.getLogger("skvault.keys")

KEY_NAME = "vault_ed25519"
PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644
DIR_MODE = 0o700
SELF_TEST_PAYLOAD = b"skvault-verify-test"


class Signer(ABC):
    """Anything that can sign request payloads for this machine."""

    @property
    @abstractmethod
    def key_id(self) -> str:
        """Fingerprint of the signing key."""

    @abstractmethod
    def sign(self, payload: bytes) -> bytes:
        """Return a signature over ``payload``."""


def public_key_blob(public_line: str) -> bytes:
    """Decode the wire blob from an OpenSSH public key line.

    Raises:
        ValidationError: If the line is not ``<type> <base64> [comment]``.
    """
    parts = public_line.strip().split()
    if len(parts) < 2:
        raise ValidationError("Malformed public key line")
    try:
        return base64.b64decode(parts[1], validate=True)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Malformed public key data: {exc}") from exc


def fingerprint_of(public_line: str) -> str:
    """OpenSSH-style SHA-256 fingerprint, independent of the comment."""
    digest = hashlib.sha256(public_key_blob(public_line)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def load_public_key(public_line: str) -> Ed25519PublicKey:
    """Parse an OpenSSH Ed25519 public key line.

    Raises:
        ValidationError: If the key cannot be parsed or is not Ed25519.
    """
    try:
        key = serialization.load_ssh_public_key(public_line.strip().encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValidationError(f"Unreadable public key: {exc}") from exc
    if not isinstance(key, Ed25519PublicKey):
        raise ValidationError("Only Ed25519 public keys are supported")
    return key


def verify_signature(public_line: str, payload: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against an OpenSSH public key line."""
    try:
        load_public_key(public_line).verify(signature, payload)
        return True
    except (InvalidSignature, ValidationError):
        return False


def _openssh_public(private_key: Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode("ascii")


class KeyManager(Signer):
    """Owns this machine's signing keypair.

    Args:
        home: Vault home directory.
    """

    def __init__(self, home: Path) -> None:
        self.home = home
        self.keys_dir = home / KEYS_DIR
        self.private_path = self.keys_dir / KEY_NAME
        self.public_path = self.keys_dir / f"{KEY_NAME}.pub"
        self.archive_dir = self.keys_dir / "archived"
        self.permission_issues: list[str] = []
        self._private: Optional[Ed25519PrivateKey] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        """True when a private key is present."""
        return self.private_path.exists()

    def generate(self) -> Optional[str]:
        """Create the keypair if none exists.

        Returns:
            The new fingerprint, or None when a keypair already existed.
        """
        if self.exists():
            logger.warning(
                "Keypair already exists at %s; use rotate to replace it",
                self.private_path,
            )
            return None

        self.keys_dir.mkdir(parents=True, exist_ok=True)
        private_key = Ed25519PrivateKey.generate()
        comment = f"skvault@{short_hostname()}-{int(time.time())}"

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_line = f"{_openssh_public(private_key)} {comment}\n"

        atomic_write_bytes(self.private_path, private_pem, mode=PRIVATE_MODE)
        atomic_write_bytes(self.public_path, public_line.encode("ascii"), mode=PUBLIC_MODE)
        self._lock_down()

        self._private = private_key
        fp = self.fingerprint()
        logger.info("Keypair generated: %s", fp)
        return fp

    def rotate(self, confirm: bool = False) -> str:
        """Archive the current keypair and generate a new one.

        Every remote registration must be redone afterwards; nothing here
        does that automatically.

        Args:
            confirm: Must be True; rotation invalidates all registrations.

        Returns:
            Fingerprint of the new key.

        Raises:
            ConfirmationRequired: If ``confirm`` is not set.
        """
        if not confirm:
            raise ConfirmationRequired(
                "Key rotation archives the current keypair and requires "
                "re-registering with every vault provider."
            )

        if self.exists():
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            shutil.move(str(self.private_path), str(self.archive_dir / f"{KEY_NAME}.{ts}"))
            if self.public_path.exists():
                shutil.move(str(self.public_path), str(self.archive_dir / f"{KEY_NAME}.{ts}.pub"))
            logger.info("Old keypair archived to %s", self.archive_dir)

        self._private = None
        fp = self.generate()
        logger.warning(
            "Key rotated to %s; re-register the new public key with every vault provider", fp
        )
        return fp or self.fingerprint()

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    @property
    def key_id(self) -> str:
        return self.fingerprint()

    def sign(self, payload: bytes) -> bytes:
        """Sign an arbitrary byte string (deterministic Ed25519)."""
        return self._load_private().sign(payload)

    def sign_b64(self, payload: bytes) -> str:
        """Base64 form of :meth:`sign`, as sent in request headers."""
        return base64.b64encode(self.sign(payload)).decode("ascii")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def public_key(self) -> str:
        """The stored public key line (with comment).

        Raises:
            ConfigurationError: If no keypair exists.
        """
        if not self.public_path.exists():
            raise ConfigurationError("No keypair found. Run 'skvault init' first.")
        return self.public_path.read_text(encoding="ascii").strip()

    def show_public(self) -> str:
        """Public key line as it should be pasted into a provider."""
        return self.public_key()

    def fingerprint(self) -> str:
        """Stable SHA-256 fingerprint of the public key."""
        return fingerprint_of(self.public_key())

    def publish_public(self, hostname: Optional[str] = None) -> Path:
        """Copy the public key into the shared tree for other machines."""
        host = hostname or short_hostname()
        dest = self.home / "identity" / "public-keys" / f"{host}.pub"
        atomic_write_bytes(dest, (self.public_key() + "\n").encode("ascii"))
        logger.info("Public key published as %s", dest.relative_to(self.home))
        return dest

    def verify_self(self) -> KeyHealth:
        """Check the keypair for corruption and unsafe permissions."""
        health = KeyHealth()
        if not self.private_path.exists() or not self.public_path.exists():
            health.issues.append("Keypair not found")
            return health

        priv_mode = stat.S_IMODE(self.private_path.stat().st_mode)
        if priv_mode != PRIVATE_MODE:
            health.issues.append(
                f"Private key permissions are {priv_mode:o} (should be 600)"
            )
        dir_mode = stat.S_IMODE(self.keys_dir.stat().st_mode)
        if dir_mode != DIR_MODE:
            health.issues.append(f"Keys directory permissions are {dir_mode:o} (should be 700)")

        try:
            private_key = self._load_private(reload=True)
        except (ValueError, TypeError, ConfigurationError) as exc:
            health.issues.append(f"Private key unreadable: {exc}")
            return health

        stored = self.public_key()
        derived = _openssh_public(private_key)
        if stored.split()[:2] != derived.split()[:2]:
            health.issues.append("Public key doesn't match private key")
        else:
            health.fingerprint = fingerprint_of(stored)

        signature = private_key.sign(SELF_TEST_PAYLOAD)
        if not verify_signature(derived, SELF_TEST_PAYLOAD, signature):
            health.issues.append("Signing self-test failed")

        return health

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_private(self, reload: bool = False) -> Ed25519PrivateKey:
        if self._private is not None and not reload:
            return self._private
        if not self.private_path.exists():
            raise ConfigurationError("No keypair found. Run 'skvault init' first.")
        key = serialization.load_ssh_private_key(self.private_path.read_bytes(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ConfigurationError("Vault key is not an Ed25519 key")
        self._private = key
        return key

    def _lock_down(self) -> None:
        """Apply key file modes; failures are recorded, not hidden."""
        for path, mode in (
            (self.keys_dir, DIR_MODE),
            (self.private_path, PRIVATE_MODE),
            (self.public_path, PUBLIC_MODE),
        ):
            try:
                os.chmod(path, mode)
            except OSError as exc:
                issue = f"Could not set mode {mode:o} on {path}: {exc}"
                self.permission_issues.append(issue)
                logger.warning(issue)
