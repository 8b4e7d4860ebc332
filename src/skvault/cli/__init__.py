"""
SKVault CLI: keep one vault in sync across every machine you own.

Each command group lives in its own module; the main Click group is
defined here and the groups are attached through register functions.

Entry point: skvault.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="skvault")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to the console.")
def main(verbose: bool):
    """SKVault: signed, per-machine vault sync.

    Local history, opt-out sync rules, pluggable storage.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .status import register_status_commands
from .sync_cmd import register_sync_commands
from .key import register_key_commands
from .profile import register_profile_commands
from .provider import register_provider_commands
from .rules import register_rules_commands
from .server import register_server_commands

register_setup_commands(main)
register_status_commands(main)
register_sync_commands(main)
register_key_commands(main)
register_profile_commands(main)
register_provider_commands(main)
register_rules_commands(main)
register_server_commands(main)
