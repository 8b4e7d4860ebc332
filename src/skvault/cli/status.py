"""History and overview commands: status, log, diff, rollback."""

from __future__ import annotations

import click
from rich.panel import Panel
from rich.table import Table

from ._common import VAULT_HOME, console, fail, fmt_time, open_vault
from ..errors import VaultError
from ..history import ChangeTracker, load_sync_state
from ..keys import KeyManager
from ..lock import SyncLock
from ..models import ChangeKind
from ..watcher import watcher_pid

CHANGE_STYLE = {
    ChangeKind.ADDED: "[green]added[/]",
    ChangeKind.MODIFIED: "[yellow]modified[/]",
    ChangeKind.DELETED: "[red]deleted[/]",
}


def register_status_commands(main: click.Group) -> None:
    """Register status, log, diff and rollback on the main group."""

    @main.command()
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def status(home: str):
        """Show vault, history, and sync state."""
        home_path, config = open_vault(home)
        tracker = ChangeTracker(home_path, config)
        try:
            st = tracker.status(watcher_pid=watcher_pid(home_path))
        except VaultError as exc:
            fail(exc)
        state = load_sync_state(home_path)

        keys = KeyManager(home_path)
        fingerprint = keys.fingerprint() if keys.public_path.exists() else "[red]missing[/]"
        watcher = f"[green]running[/] (PID {st.watcher_pid})" if st.watcher_running else "[dim]stopped[/]"
        provider = config.provider.type if config.provider else "[yellow]none[/]"

        console.print()
        console.print(
            Panel(
                f"Profile: [bold]{config.profile}[/]  Host: {config.hostname}\n"
                f"Provider: [cyan]{provider}[/]\n"
                f"Key: {fingerprint}\n"
                f"Watcher: {watcher}\n"
                f"HEAD: {st.head or '[dim]none[/]'} ({st.commits} commit(s))\n"
                f"Pending changes: [bold]{st.pending_changes}[/]\n"
                f"Last commit: {fmt_time(st.last_commit)}\n"
                f"Last push: {fmt_time(st.last_push)}\n"
                f"Last pull: {fmt_time(st.last_pull)}"
                + (f"\n[red]Last error: {state.last_error}[/]" if state.last_error else ""),
                title="SKVault",
                border_style="bright_blue",
            )
        )
        console.print()

    @main.command()
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--limit", "-n", default=20, help="Number of entries to show.")
    def log(home: str, limit: int):
        """Show local history, newest first."""
        home_path, config = open_vault(home)
        entries = list(ChangeTracker(home_path, config).log(limit=limit))
        if not entries:
            console.print("[dim]No history yet.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Commit", style="cyan")
        table.add_column("When")
        table.add_column("Host")
        table.add_column("Changed", justify="right")
        table.add_column("Message", style="dim")
        for entry in entries:
            marker = " [bold green]HEAD[/]" if entry.is_head else ""
            table.add_row(
                entry.commit_id + marker,
                fmt_time(entry.created_at),
                entry.hostname,
                str(entry.changed_count),
                entry.message,
            )
        console.print(table)

    @main.command()
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def diff(home: str):
        """List uncommitted changes to shared paths."""
        home_path, config = open_vault(home)
        changes = sorted(ChangeTracker(home_path, config).diff(), key=lambda c: c.path)
        if not changes:
            console.print("[green]No uncommitted changes.[/]")
            return
        for change in changes:
            console.print(f"  {CHANGE_STYLE[change.kind]}  {change.path}")
        console.print(f"\n  [bold]{len(changes)}[/] changed path(s)")

    @main.command()
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
    def rollback(home: str, yes: bool):
        """Restore the snapshot before HEAD.

        Uncommitted edits to shared paths are lost.
        """
        home_path, config = open_vault(home)
        tracker = ChangeTracker(home_path, config)
        if not yes:
            pending = len(tracker.diff())
            if not click.confirm(
                f"Rollback overwrites the working tree ({pending} uncommitted change(s) would be lost). Continue?",
                default=False,
            ):
                console.print("[yellow]Rollback cancelled.[/]")
                return
        try:
            with SyncLock(home_path):
                target = tracker.rollback(confirm=True)
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Rolled back to[/] [cyan]{target.commit_id}[/] ({target.message})")
