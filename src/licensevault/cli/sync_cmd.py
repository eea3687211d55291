"""Sync commands: push, pull, status."""

from __future__ import annotations

import json

import click
from rich.panel import Panel

from ._common import console, home_option, print_outcome, require_engine


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted git sync of the license store.

        Files are encrypted before every push and decrypted after every
        pull. The remote only ever holds ciphertext.
        """

    @sync.command("push")
    @click.option("--message", "-m", default=None, help="Commit message.")
    @home_option
    def sync_push(message, home):
        """Encrypt the store and push it to the remote."""
        engine = require_engine(home)
        console.print(f"\n  Pushing to [cyan]{engine.remote.name if engine.remote else '-'}[/]...")
        print_outcome(engine.push(message=message))
        console.print()

    @sync.command("pull")
    @home_option
    def sync_pull(home):
        """Pull from the remote, replacing local content."""
        engine = require_engine(home)
        console.print(f"\n  Pulling from [cyan]{engine.remote.name if engine.remote else '-'}[/]...")
        print_outcome(engine.pull())
        console.print()

    @sync.command("status")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    def sync_status(json_out, home):
        """Show the sync configuration and local file count."""
        engine = require_engine(home)
        status = engine.status()
        if json_out:
            click.echo(json.dumps(status, indent=2))
            return

        cloned = engine.remote.is_cloned() if engine.remote else False
        console.print()
        console.print(
            Panel(
                f"Remote: [cyan]{status['remote'] or '[dim]none[/]'}[/]\n"
                f"Branch: {status['branch']}\n"
                f"Working copy: {'[green]cloned[/]' if cloned else '[yellow]not cloned[/]'}\n"
                f"Backup: {status['backup'] or '[dim]none[/]'}\n"
                f"License files: [bold]{status['files']}[/]",
                title="licensevault sync",
                border_style="magenta",
            )
        )
        console.print()
