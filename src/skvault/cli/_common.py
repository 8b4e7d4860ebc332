"""Shared utilities for all CLI command modules.

Provides the Rich console, vault loading with friendly failures,
and small formatting helpers used across every command group.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn, Optional, Union

from rich.console import Console

from .. import VAULT_HOME
from ..config import VaultConfig, load_config
from ..coordinator import SyncCoordinator
from ..errors import VaultError

console = Console()
logger = logging.getLogger("skvault.cli")


def fail(error: Union[str, BaseException]) -> NoReturn:
    """Print a red error line and exit with status 1."""
    console.print(f"[bold red]Error:[/] {error}")
    sys.exit(1)


def open_vault(home: str) -> tuple[Path, VaultConfig]:
    """Resolve ``--home`` and load its configuration, or exit 1."""
    home_path = Path(home).expanduser()
    try:
        return home_path, load_config(home_path)
    except VaultError as exc:
        fail(exc)


def build_coordinator(home_path: Path, config: VaultConfig) -> SyncCoordinator:
    """Production coordinator for a loaded vault, or exit 1."""
    try:
        return SyncCoordinator.from_config(home_path, config)
    except VaultError as exc:
        fail(exc)


def fmt_time(value: Optional[datetime]) -> str:
    """Rich-formatted timestamp, or a dim 'never'."""
    if value is None:
        return "[dim]never[/]"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


__all__ = ["VAULT_HOME", "build_coordinator", "console", "fail", "fmt_time", "logger", "open_vault"]
