"""Shared test fixtures for skvault."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from skvault.config import LocalProviderConfig, VaultConfig, save_config
from skvault.keys import Signer, fingerprint_of
from skvault.server.api import VaultApi
from skvault.server.store import VaultDatabase
from skvault.transport import Transport

NOW = 1_760_000_000


class FixedSigner(Signer):
    """Ed25519 signer built from a fixed seed; no key files involved."""

    def __init__(self, seed: bytes = b"\x01" * 32) -> None:
        self._key = Ed25519PrivateKey.from_private_bytes(seed)
        self.public_line = self._key.public_key().public_bytes(
            serialization.Encoding.OpenSSH,
            serialization.PublicFormat.OpenSSH,
        ).decode("ascii") + " test@fixed"

    @property
    def key_id(self) -> str:
        return fingerprint_of(self.public_line)

    def sign(self, payload: bytes) -> bytes:
        return self._key.sign(payload)


class FrozenClock:
    """Unix clock that only moves when told to."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ApiTransport(Transport):
    """Routes client requests straight into VaultApi.dispatch."""

    def __init__(self, api: VaultApi) -> None:
        self.api = api
        self.calls: list[tuple[str, str]] = []

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: Optional[dict[str, Any]] = None,
        timeout: float = 10.0,
    ) -> tuple[int, dict[str, Any]]:
        path = urlsplit(url).path
        self.calls.append((method, path))
        return self.api.dispatch(method, path, headers, payload)


def write_files(root: Path, files: dict[str, str]) -> None:
    """Create text files under ``root``."""
    for rel, text in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")


@pytest.fixture
def vault_home(tmp_path: Path) -> Path:
    """Provide a temporary vault home directory."""
    home = tmp_path / "vault"
    home.mkdir()
    return home


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    """Directory standing in for a USB drive or NAS mount."""
    target = tmp_path / "store"
    target.mkdir()
    return target


@pytest.fixture
def config(vault_home: Path, store_dir: Path) -> VaultConfig:
    """Saved configuration for a machine called 'laptop'."""
    cfg = VaultConfig(
        instance_id="laptop-0001",
        hostname="laptop",
        profile="laptop",
        provider=LocalProviderConfig(path=store_dir),
    )
    save_config(vault_home, cfg)
    return cfg


@pytest.fixture
def signer() -> FixedSigner:
    return FixedSigner()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db() -> VaultDatabase:
    database = VaultDatabase(":memory:").connect()
    yield database
    database.close()


@pytest.fixture
def api(db: VaultDatabase, clock: FrozenClock) -> VaultApi:
    """Vault service with a frozen clock on both auth paths."""
    service = VaultApi(db)
    service.verifier.clock = clock
    service.sessions.clock = clock
    return service


@pytest.fixture
def registered(api: VaultApi, signer: FixedSigner) -> str:
    """Register the fixed signer and return its vault id."""
    vault_id, _key = api.keys.register_key("owner@example.com", signer.public_line, "laptop")
    return vault_id
