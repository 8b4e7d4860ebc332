"""Key commands: show, fingerprint, rotate, verify, sign."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

from ._common import VAULT_HOME, console, fail, open_vault
from ..audit import AuditEvent, audit_event
from ..errors import VaultError
from ..keys import KeyManager


def register_key_commands(main: click.Group) -> None:
    """Register the key command group."""

    @main.group()
    def key():
        """The machine signing key (Ed25519, OpenSSH format)."""

    @key.command("show")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def key_show(home: str):
        """Print the public key for provider registration."""
        try:
            click.echo(KeyManager(Path(home).expanduser()).show_public())
        except VaultError as exc:
            fail(exc)

    @key.command("fingerprint")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def key_fingerprint(home: str):
        """Print the key fingerprint."""
        try:
            click.echo(KeyManager(Path(home).expanduser()).fingerprint())
        except VaultError as exc:
            fail(exc)

    @key.command("rotate")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
    def key_rotate(home: str, yes: bool):
        """Archive the current keypair and generate a new one."""
        home_path, config = open_vault(home)
        keys = KeyManager(home_path)
        if not yes:
            console.print(
                "[yellow]Rotation invalidates every provider registration of the current key.[/]"
            )
            if not click.confirm("Rotate the vault key?", default=False):
                console.print("[dim]Rotation cancelled.[/]")
                return
        try:
            old = keys.fingerprint() if keys.public_path.exists() else None
            new = keys.rotate(confirm=True)
            keys.publish_public(config.hostname)
        except VaultError as exc:
            fail(exc)
        audit_event(home_path, AuditEvent.KEY_ROTATE, f"Key rotated from {old} to {new}")
        console.print(f"[green]New key:[/] {new}")
        console.print(f"  [dim]Old keypair archived under {keys.archive_dir}[/]")
        console.print("  [bold yellow]Re-register the new public key with every provider.[/]")

    @key.command("verify")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def key_verify(home: str):
        """Check the keypair for corruption and unsafe permissions."""
        health = KeyManager(Path(home).expanduser()).verify_self()
        if health.healthy:
            console.print(f"[green]Keypair OK[/] {health.fingerprint}")
            return
        for issue in health.issues:
            console.print(f"[red]x[/] {issue}")
        sys.exit(1)

    @key.command("sign")
    @click.argument("payload", required=False)
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option(
        "--file", "file_path", type=click.Path(exists=True, dir_okay=False), help="Sign a file's bytes."
    )
    def key_sign(payload: Optional[str], home: str, file_path: Optional[str]):
        """Sign PAYLOAD (or --file) and print the base64 signature."""
        if payload is None and file_path is None:
            fail("Give a payload or --file")
        data = Path(file_path).read_bytes() if file_path else payload.encode("utf-8")
        try:
            click.echo(KeyManager(Path(home).expanduser()).sign_b64(data))
        except VaultError as exc:
            fail(exc)
