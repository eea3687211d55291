"""
licensevault CLI -- administer the license store and its encrypted sync.

Each command group lives in its own module and is attached to the main
Click group through a register function.

Entry point: licensevault.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="licensevault")
def main():
    """licensevault -- license records, encrypted and mirrored to git."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .license_cmd import register_license_commands
from .sync_cmd import register_sync_commands
from .backup_cmd import register_backup_commands
from .daemon_cmd import register_daemon_commands

register_license_commands(main)
register_sync_commands(main)
register_backup_commands(main)
register_daemon_commands(main)
