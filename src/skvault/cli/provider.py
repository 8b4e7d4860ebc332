"""Provider commands: show, local, git, api, test."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ._common import VAULT_HOME, console, fail, open_vault
from ..backends import create_backend
from ..config import ApiConfig, GitProviderConfig, LocalProviderConfig, save_config
from ..errors import VaultError


def register_provider_commands(main: click.Group) -> None:
    """Register the provider command group."""

    @main.group()
    def provider():
        """Where pushed snapshots are stored."""

    @provider.command("show")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def provider_show(home: str):
        """Show the configured provider and vault service."""
        home_path, config = open_vault(home)
        if config.provider is None:
            console.print("[yellow]No storage provider configured.[/]")
        else:
            backend = create_backend(config, home_path)
            console.print(f"Provider: [cyan]{backend.name}[/]")
            console.print(f"  {backend.info()}")
        if config.api is not None:
            console.print(f"Vault service: [cyan]{config.api.base_url}[/] (vault {config.vault_ref})")

    @provider.command("local")
    @click.argument("path", type=click.Path(file_okay=False))
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def provider_local(path: str, home: str):
        """Store snapshots in a directory (USB drive, NAS mount)."""
        home_path, config = open_vault(home)
        target = Path(path).expanduser()
        config.provider = LocalProviderConfig(path=target)
        save_config(home_path, config)
        console.print(f"[green]Provider set:[/] local -> {target}")
        if not target.is_dir():
            console.print("  [yellow]Directory does not exist yet (is it mounted?)[/]")

    @provider.command("git")
    @click.argument("remote_url")
    @click.option("--branch", default="main", help="Branch holding the snapshots.")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def provider_git(remote_url: str, branch: str, home: str):
        """Store snapshots in a git remote, using the vault key."""
        home_path, config = open_vault(home)
        config.provider = GitProviderConfig(remote_url=remote_url, branch=branch)
        save_config(home_path, config)
        console.print(f"[green]Provider set:[/] git -> {remote_url} ({branch})")
        console.print("  [dim]Add the output of 'skvault key show' as a deploy key.[/]")

    @provider.command("api")
    @click.argument("base_url")
    @click.option("--vault-id", default=None, help="Vault id returned at key registration.")
    @click.option("--timeout", default=10.0, help="Request timeout in seconds.")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def provider_api(base_url: str, vault_id: Optional[str], timeout: float, home: str):
        """Use a vault service for sync rules."""
        home_path, config = open_vault(home)
        config.api = ApiConfig(base_url=base_url, timeout_seconds=timeout)
        if vault_id:
            config.vault_id = vault_id
        save_config(home_path, config)
        console.print(f"[green]Vault service set:[/] {base_url} (vault {config.vault_ref})")

    @provider.command("test")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def provider_test(home: str):
        """Check that the provider is reachable."""
        home_path, config = open_vault(home)
        try:
            backend = create_backend(config, home_path)
        except VaultError as exc:
            fail(exc)
        if backend.test():
            console.print(f"[green]{backend.name} provider reachable[/]  {backend.info()}")
        else:
            fail(f"{backend.name} provider unreachable ({backend.info()})")
