"""Vault service commands: serve, register-key, revoke-key, login-code."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import console, fail
from ..errors import VaultError
from ..server.api import DEFAULT_PORT, VaultApi, serve
from ..server.store import VaultDatabase

DEFAULT_DB = "~/.skvault-server/vault.db"


def register_server_commands(main: click.Group) -> None:
    """Register the server command group."""

    @main.group()
    def server():
        """Run and administer a vault service."""

    @server.command("serve")
    @click.option("--db", default=DEFAULT_DB, type=click.Path(), help="SQLite database path.")
    @click.option("--host", default="127.0.0.1", help="Bind address.")
    @click.option("--port", default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT}).")
    @click.option("--tolerance", default=300, help="Accepted clock skew in seconds.")
    def server_serve(db: str, host: str, port: int, tolerance: int):
        """Serve the sync-rules and versions API."""
        api = VaultApi(VaultDatabase(db).connect(), tolerance_seconds=tolerance)
        console.print(f"\n  [green]Vault service[/] on http://{host}:{port}")
        console.print(f"  DB: {Path(db).expanduser()}")
        console.print("  [dim]Ctrl+C to stop[/]\n")
        serve(api, host=host, port=port)

    @server.command("register-key")
    @click.option("--db", default=DEFAULT_DB, type=click.Path(), help="SQLite database path.")
    @click.option("--owner", required=True, help="Owner email.")
    @click.option("--key-file", required=True, type=click.Path(exists=True, dir_okay=False))
    @click.option("--hostname", default="", help="Machine the key belongs to.")
    @click.option("--instance-id", default="", help="Vault instance id of that machine.")
    def server_register_key(db: str, owner: str, key_file: str, hostname: str, instance_id: str):
        """Authorize a machine's public key for the owner's vault."""
        api = VaultApi(VaultDatabase(db).connect())
        try:
            vault_id, key = api.keys.register_key(
                owner, Path(key_file).read_text(encoding="ascii"), hostname, instance_id
            )
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Key registered[/] {key.fingerprint}")
        console.print(f"  Vault: [bold]{vault_id}[/]  Key id: {key.key_id}")

    @server.command("revoke-key")
    @click.argument("key_id")
    @click.option("--db", default=DEFAULT_DB, type=click.Path(), help="SQLite database path.")
    def server_revoke_key(key_id: str, db: str):
        """Revoke a registered key; it can no longer sign requests."""
        api = VaultApi(VaultDatabase(db).connect())
        try:
            key = api.keys.revoke_key(key_id)
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Revoked[/] {key.fingerprint} ({key.hostname or 'unknown host'})")

    @server.command("login-code")
    @click.option("--db", default=DEFAULT_DB, type=click.Path(), help="SQLite database path.")
    @click.option("--owner", required=True, help="Owner email.")
    def server_login_code(db: str, owner: str):
        """Issue a one-time dashboard login code for the owner."""
        api = VaultApi(VaultDatabase(db).connect())
        try:
            code = api.sessions.request_login_code(owner)
        except VaultError as exc:
            fail(exc)
        console.print(f"Login code for {owner}: [bold]{code}[/] (valid 10 minutes)")
