"""
Vault configuration: loaded once per process, passed everywhere.

The config file is YAML at ``<home>/config.yaml``. It is validated in
one go at load time; components receive the resulting ``VaultConfig``
instead of reading the file themselves.
"""

from __future__ import annotations

import hashlib
import logging
import re
import socket
import time
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from . import __version__
from .errors import ConfigurationError, ValidationError
from .fsutil import atomic_write_text

logger = logging.getLogger("skvault.config")

CONFIG_FILE = "config.yaml"
HISTORY_DIR = ".history"
STAGING_DIR = ".staging"
KEYS_DIR = "keys"
LOCAL_DIR = "local"
LOCK_FILE = ".sync.lock"
WATCHER_PID_FILE = ".watcher.pid"

# Never part of a commit or a transfer set, on any machine.
MACHINE_LOCAL_PATHS = (
    CONFIG_FILE,
    HISTORY_DIR,
    STAGING_DIR,
    KEYS_DIR,
    LOCAL_DIR,
    LOCK_FILE,
    WATCHER_PID_FILE,
)

SHARED_DIRS = ("identity", "knowledge", "knowledge/projects")

# One path segment: profiles name directories on every backend.
PROFILE_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,63}")


def short_hostname() -> str:
    """Hostname without the domain part."""
    return socket.gethostname().split(".")[0] or "unknown"


def validate_profile(name: str) -> str:
    """Return ``name`` if it is a usable profile name.

    Raises:
        ValidationError: If it could name anything but a single
            directory (empty, dot-leading, slashes, over 64 chars).
    """
    if not isinstance(name, str) or not PROFILE_NAME.fullmatch(name):
        raise ValidationError(
            f"Invalid profile name '{name}' (letters, digits, '.', '_', '-'; max 64)"
        )
    return name


class LocalProviderConfig(BaseModel):
    """A plain directory: USB drive, NAS mount, shared folder."""

    type: Literal["local"] = "local"
    path: Path


class GitProviderConfig(BaseModel):
    """Any git remote reachable with the vault key."""

    type: Literal["git"] = "git"
    remote_url: str
    branch: str = "main"


ProviderConfig = Annotated[
    Union[LocalProviderConfig, GitProviderConfig],
    Field(discriminator="type"),
]


class ApiConfig(BaseModel):
    """Managed vault service (sync rules, key registry)."""

    base_url: str
    timeout_seconds: float = 10.0


class SyncSettings(BaseModel):
    """Watcher and auto-sync behaviour."""

    interval_minutes: int = Field(default=5, ge=1)
    poll_seconds: float = Field(default=2.0, gt=0)
    quiescence_seconds: float = Field(default=5.0, ge=0)
    auto_push: bool = True


class AuthSettings(BaseModel):
    """Request signing tolerances."""

    clock_tolerance_seconds: int = Field(default=300, ge=1)


class VaultConfig(BaseModel):
    """Complete per-machine vault configuration."""

    version: str = __version__
    vault_id: Optional[str] = None
    owner: Optional[str] = None
    instance_id: str
    hostname: str
    profile: str
    provider: Optional[ProviderConfig] = None
    api: Optional[ApiConfig] = None
    sync: SyncSettings = Field(default_factory=SyncSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    timeout_seconds: float = Field(default=30.0, gt=0)
    local_only: list[str] = Field(default_factory=list)

    @field_validator("profile")
    @classmethod
    def _check_profile(cls, value: str) -> str:
        try:
            return validate_profile(value)
        except ValidationError as exc:
            raise ValueError(str(exc)) from exc

    @property
    def vault_ref(self) -> str:
        """Vault identifier used in signed requests."""
        return self.vault_id or self.instance_id

    def require_provider(self) -> Union[LocalProviderConfig, GitProviderConfig]:
        """Return the provider config or fail with a setup hint.

        Raises:
            ConfigurationError: If no storage provider is configured.
        """
        if self.provider is None:
            raise ConfigurationError(
                "No storage provider configured. "
                "Run 'skvault provider local <path>' or 'skvault provider git <url>'."
            )
        return self.provider


def default_config(
    profile: Optional[str] = None,
    owner: Optional[str] = None,
) -> VaultConfig:
    """Build a fresh configuration for this machine."""
    host = short_hostname()
    if profile is not None:
        validate_profile(profile)
    fallback = re.sub(r"[^A-Za-z0-9._-]", "-", host).lstrip("._-")[:64] or "default"
    digest = hashlib.sha256(str(time.time()).encode()).hexdigest()[:8]
    return VaultConfig(
        owner=owner,
        instance_id=f"{host}-{digest}",
        hostname=host,
        profile=profile or fallback,
    )


def config_path(home: Path) -> Path:
    """Location of the config file for a vault home."""
    return home / CONFIG_FILE


def load_config(home: Path) -> VaultConfig:
    """Load and validate the vault configuration.

    Args:
        home: Vault home directory.

    Returns:
        The validated VaultConfig.

    Raises:
        ConfigurationError: If the vault is not initialized or the file
            does not validate.
    """
    path = config_path(home)
    if not path.exists():
        raise ConfigurationError(
            f"Vault not initialized at {home}. Run 'skvault init'."
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return VaultConfig(**data)
    except (yaml.YAMLError, PydanticValidationError, TypeError) as exc:
        raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc


def save_config(home: Path, config: VaultConfig) -> Path:
    """Persist the configuration atomically.

    Args:
        home: Vault home directory.
        config: Configuration to write.

    Returns:
        Path to the written file.
    """
    path = config_path(home)
    data = config.model_dump(mode="json", exclude_none=True)
    header = f"# SKVault configuration v{config.version}\n"
    atomic_write_text(path, header + yaml.dump(data, default_flow_style=False, sort_keys=False))
    logger.debug("Configuration written to %s", path)
    return path
