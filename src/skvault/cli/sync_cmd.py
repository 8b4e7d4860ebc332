"""Sync commands: start, stop, push, pull, status, watch."""

from __future__ import annotations

import subprocess
import sys
import warnings
from typing import Optional

import click
from rich.panel import Panel

from ._common import VAULT_HOME, build_coordinator, console, fail, fmt_time, open_vault
from ..config import LOCAL_DIR
from ..coordinator import SyncCoordinator, VersionLedger
from ..errors import ConflictWarning, VaultError
from ..history import ChangeTracker, load_sync_state
from ..models import PullResult
from ..watcher import LOG_FILE, VaultWatcher, stop_watcher, watcher_pid


def _pull(coordinator: SyncCoordinator, profile: Optional[str], overwrite: bool) -> PullResult:
    if profile and profile != coordinator.config.profile:
        return coordinator.restore_profile(profile, overwrite=overwrite)
    return coordinator.pull(profile, overwrite=overwrite)


def run_pull(
    coordinator: SyncCoordinator,
    profile: Optional[str],
    overwrite: bool,
) -> PullResult:
    """Pull, asking before overwriting uncommitted local edits.

    Exits 1 on failure. Returns the result even when the operator
    declined the overwrite (``applied`` is then False).
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConflictWarning)
            result = _pull(coordinator, profile, overwrite)
        if result.conflicts and not result.applied:
            console.print(
                f"[yellow]{len(result.conflicts)} path(s) have uncommitted local edits "
                "that the pull would overwrite:[/]"
            )
            for rel in result.conflicts:
                console.print(f"    [yellow]{rel}[/]")
            console.print("  [dim]Run 'skvault diff' to review them.[/]")
            if click.confirm("Overwrite them with the remote content?", default=False):
                result = _pull(coordinator, profile, True)
    except VaultError as exc:
        fail(exc)
    return result


def print_pull(result: PullResult) -> None:
    if result.applied:
        console.print(
            f"[green]Pulled profile[/] [bold]{result.profile}[/]: "
            f"{len(result.written)} file(s) written"
        )
    elif result.conflicts:
        console.print("[yellow]Pull not applied; local edits kept.[/]")
    else:
        console.print(f"[dim]No snapshot stored for profile {result.profile}.[/]")


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Push and pull vault snapshots.

        Each machine pushes its own profile; pulls are verified
        against their manifest before anything is written.
        """

    @sync.command("push")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def sync_push(home: str):
        """Commit local changes and push this machine's profile."""
        home_path, config = open_vault(home)
        coordinator = build_coordinator(home_path, config)
        try:
            result = coordinator.push()
        except VaultError as exc:
            fail(exc)

        report = result.report
        console.print(
            f"[green]Pushed[/] {len(result.transferred)} file(s) "
            f"to [cyan]{coordinator.backend.name}[/] as [bold]{result.profile}[/]"
        )
        if result.excluded:
            console.print(f"  [dim]{len(result.excluded)} excluded by sync rules[/]")
        if report is not None:
            console.print(f"  [dim]Content: {report.content_hash[:16]}  ({report.size_bytes} bytes)[/]")
        if not result.new_version:
            console.print("  [dim]Unchanged since the last push.[/]")

    @sync.command("pull")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    @click.option("--profile", default=None, help="Profile to pull (default: this machine's).")
    @click.option("--yes", "-y", is_flag=True, help="Overwrite conflicting local edits.")
    def sync_pull(home: str, profile: Optional[str], yes: bool):
        """Pull the latest snapshot and apply it locally."""
        home_path, config = open_vault(home)
        coordinator = build_coordinator(home_path, config)
        print_pull(run_pull(coordinator, profile, overwrite=yes))

    @sync.command("status")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def sync_status(home: str):
        """Show sync counters, watcher, and recent versions."""
        home_path, config = open_vault(home)
        state = load_sync_state(home_path)
        pid = watcher_pid(home_path)
        pending = len(ChangeTracker(home_path, config).diff())
        versions = VersionLedger(home_path).for_profile(config.profile)

        console.print()
        console.print(
            Panel(
                f"Profile: [bold]{config.profile}[/]\n"
                f"Watcher: {f'[green]running[/] (PID {pid})' if pid else '[dim]stopped[/]'}\n"
                f"Pending changes: [bold]{pending}[/]\n"
                f"Pushes: {state.push_count}  Last: {fmt_time(state.last_push)}\n"
                f"Pulls: {state.pull_count}  Last: {fmt_time(state.last_pull)}\n"
                f"Versions: {len(versions)}"
                + (f"  Latest: {versions[0].content_hash[:16]}" if versions else "")
                + (f"\n[red]Last error: {state.last_error}[/]" if state.last_error else ""),
                title="Sync",
                border_style="magenta",
            )
        )
        console.print()

    @sync.command("start")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def sync_start(home: str):
        """Launch the background watcher."""
        home_path, _config = open_vault(home)
        running = watcher_pid(home_path)
        if running is not None:
            console.print(f"[yellow]Watcher already running (PID {running}).[/]")
            return
        proc = subprocess.Popen(
            [sys.executable, "-m", "skvault", "sync", "watch", "--home", str(home_path)],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        console.print(f"[green]Watcher started[/] (PID {proc.pid})")
        console.print(f"  [dim]Log: {home_path / LOCAL_DIR / LOG_FILE}[/]")

    @sync.command("stop")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def sync_stop(home: str):
        """Stop the background watcher."""
        home_path, _config = open_vault(home)
        try:
            pid = stop_watcher(home_path)
        except OSError as exc:
            fail(exc)
        if pid is None:
            console.print("[dim]Watcher is not running.[/]")
        else:
            console.print(f"[green]Sent stop signal to watcher[/] (PID {pid})")

    @sync.command("watch")
    @click.option("--home", default=VAULT_HOME, help="Vault home directory.", type=click.Path())
    def sync_watch(home: str):
        """Run the watcher in the foreground (Ctrl+C to stop)."""
        home_path, config = open_vault(home)
        coordinator = build_coordinator(home_path, config) if config.provider else None
        watcher = VaultWatcher(home_path, config, coordinator=coordinator)
        try:
            watcher.run_forever()
        except VaultError as exc:
            fail(exc)
