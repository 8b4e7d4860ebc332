"""Setup command: init."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.panel import Panel

from ._common import VAULT_HOME, console, fail
from ..audit import AuditEvent, audit_event
from ..config import (
    HISTORY_DIR,
    KEYS_DIR,
    LOCAL_DIR,
    SHARED_DIRS,
    LocalProviderConfig,
    VaultConfig,
    config_path,
    default_config,
    save_config,
)
from ..errors import VaultError
from ..fsutil import atomic_write_text
from ..history import ChangeTracker
from ..keys import KeyManager

INSTANCES_FILE = Path("identity") / "instances.yaml"


def register_instance(home_path: Path, config: VaultConfig) -> Path:
    """Add this machine to the shared instance registry."""
    path = home_path / INSTANCES_FILE
    data = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    instances = data.setdefault("instances", [])
    if not any(i.get("instance_id") == config.instance_id for i in instances):
        instances.append(
            {
                "instance_id": config.instance_id,
                "hostname": config.hostname,
                "profile": config.profile,
                "registered_at": datetime.now(timezone.utc).isoformat(),
            }
        )
    atomic_write_text(path, yaml.dump(data, default_flow_style=False, sort_keys=False))
    return path


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--profile", default=None, help="Profile name (default: hostname).")
    @click.option("--owner", default=None, help="Owner email used with the vault service.")
    @click.option(
        "--local-path",
        default=None,
        type=click.Path(file_okay=False),
        help="Use a plain directory (USB, NAS) as the storage provider.",
    )
    def init(home: str, profile: Optional[str], owner: Optional[str], local_path: Optional[str]):
        """Create a vault on this machine.

        Lays out the vault tree, writes the configuration, generates
        the machine keypair, and records the first snapshot.
        """
        home_path = Path(home).expanduser()
        if config_path(home_path).exists():
            console.print(f"[yellow]Vault already initialized at {home_path}.[/]")
            return

        try:
            for sub in (HISTORY_DIR, KEYS_DIR, LOCAL_DIR, *SHARED_DIRS):
                (home_path / sub).mkdir(parents=True, exist_ok=True)

            config = default_config(profile=profile, owner=owner)
            if local_path:
                config.provider = LocalProviderConfig(path=Path(local_path).expanduser())
            save_config(home_path, config)
            register_instance(home_path, config)
            audit_event(home_path, AuditEvent.INIT, f"Vault initialized for profile {config.profile}")

            keys = KeyManager(home_path)
            fingerprint = keys.generate() or keys.fingerprint()
            keys.publish_public(config.hostname)
            audit_event(home_path, AuditEvent.KEY_GENERATE, f"Keypair generated: {fingerprint}")

            ChangeTracker(home_path, config).commit(message="initial snapshot")
        except (VaultError, OSError) as exc:
            fail(exc)

        issues = "\n".join(f"[yellow]! {i}[/]" for i in keys.permission_issues)
        console.print()
        console.print(
            Panel(
                f"Home: [cyan]{home_path}[/]\n"
                f"Profile: [bold]{config.profile}[/]\n"
                f"Instance: {config.instance_id}\n"
                f"Key: [green]{fingerprint}[/]\n"
                f"Provider: {config.provider.type if config.provider else '[yellow]none[/]'}"
                + (f"\n{issues}" if issues else ""),
                title="Vault initialized",
                border_style="green",
            )
        )
        console.print(
            "  [dim]Register the public key with your provider: skvault key show[/]\n"
        )
