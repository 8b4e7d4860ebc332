"""Sync rule commands: show, set."""

from __future__ import annotations

from typing import Optional

import click

from ._common import VAULT_HOME, console, fail, open_vault
from ..audit import AuditEvent, audit_event
from ..auth import RequestSigner
from ..errors import ConfigurationError, VaultError
from ..keys import KeyManager
from ..rules import RulesClient


def register_rules_commands(main: click.Group) -> None:
    """Register the rules command group."""

    @main.group()
    def rules():
        """Per-profile exclusions: paths that never leave this machine."""

    def _client(home: str):
        home_path, config = open_vault(home)
        if config.api is None:
            fail(ConfigurationError("No vault service configured. Run 'skvault provider api <url>'."))
        client = RulesClient(config.api, config.vault_ref, RequestSigner(KeyManager(home_path)))
        return home_path, config, client

    @rules.command("show")
    @click.option("--profile", default=None, help="Profile (default: this machine's).")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def rules_show(profile: Optional[str], home: str):
        """List excluded paths."""
        _home_path, config, client = _client(home)
        name = profile or config.profile
        try:
            excluded = sorted(client.get(name))
        except VaultError as exc:
            fail(exc)
        if not excluded:
            console.print(f"[dim]Profile {name} shares everything.[/]")
            return
        for path in excluded:
            console.print(f"  [yellow]{path}[/]")

    @rules.command("set")
    @click.argument("paths", nargs=-1)
    @click.option("--profile", default=None, help="Profile (default: this machine's).")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def rules_set(paths: tuple[str, ...], profile: Optional[str], home: str):
        """Replace the excluded set with PATHS (none clears it)."""
        home_path, config, client = _client(home)
        name = profile or config.profile
        try:
            count = client.put(name, list(paths))
        except VaultError as exc:
            fail(exc)
        audit_event(home_path, AuditEvent.RULES_UPDATE, f"{count} exclusion(s) stored for {name}")
        console.print(f"[green]Stored {count} exclusion(s)[/] for profile [bold]{name}[/]")
