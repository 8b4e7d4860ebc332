"""Profile commands: show, list, rename, pull."""

from __future__ import annotations

import click

from ._common import VAULT_HOME, build_coordinator, console, fail, open_vault
from .sync_cmd import print_pull, run_pull
from ..backends import create_backend
from ..config import save_config, validate_profile
from ..errors import VaultError


def register_profile_commands(main: click.Group) -> None:
    """Register the profile command group."""

    @main.group()
    def profile():
        """Machine profiles: one per machine, never auto-merged."""

    @profile.command("show")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def profile_show(home: str):
        """Print this machine's profile name."""
        _home_path, config = open_vault(home)
        click.echo(config.profile)

    @profile.command("list")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def profile_list(home: str):
        """List profiles stored on the provider."""
        home_path, config = open_vault(home)
        try:
            names = create_backend(config, home_path).list_profiles()
        except VaultError as exc:
            fail(exc)
        if not names:
            console.print("[dim]No profiles stored yet.[/]")
            return
        for name in names:
            marker = " [bold green](this machine)[/]" if name == config.profile else ""
            console.print(f"  [cyan]{name}[/]{marker}")

    @profile.command("rename")
    @click.argument("new_name")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def profile_rename(new_name: str, home: str):
        """Change this machine's profile name.

        Snapshots pushed under the old name stay where they are.
        """
        home_path, config = open_vault(home)
        try:
            validate_profile(new_name)
        except VaultError as exc:
            fail(exc)
        old = config.profile
        config.profile = new_name
        save_config(home_path, config)
        console.print(f"[green]Profile renamed[/] {old} -> [bold]{new_name}[/]")
        console.print(f"  [dim]Snapshots under '{old}' are left untouched.[/]")

    @profile.command("pull")
    @click.argument("name")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--yes", "-y", is_flag=True, help="Overwrite conflicting local edits.")
    def profile_pull(name: str, home: str, yes: bool):
        """Copy another machine's latest content into this vault."""
        home_path, config = open_vault(home)
        coordinator = build_coordinator(home_path, config)
        print_pull(run_pull(coordinator, name, overwrite=yes))
