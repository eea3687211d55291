"""Backup commands: upload, download."""

from __future__ import annotations

import sys

import click

from ._common import console, home_option, print_outcome, require_engine


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Whole-file encrypted backups (Dropbox or a local directory)."""

    @backup.command("upload")
    @home_option
    def backup_upload(home):
        """Encrypt and upload every license file."""
        engine = require_engine(home)
        if engine.backup is None:
            console.print("[red]No backup channel configured.[/] Set LICENSEVAULT_BACKUP.")
            sys.exit(1)
        console.print(f"\n  Uploading to [cyan]{engine.backup.name}[/]...")
        print_outcome(engine.backup_upload())
        console.print()

    @backup.command("download")
    @click.confirmation_option(prompt="Overwrite local license files from the backup?")
    @home_option
    def backup_download(home):
        """Download every backed-up file over the local copy."""
        engine = require_engine(home)
        if engine.backup is None:
            console.print("[red]No backup channel configured.[/] Set LICENSEVAULT_BACKUP.")
            sys.exit(1)
        console.print(f"\n  Downloading from [cyan]{engine.backup.name}[/]...")
        print_outcome(engine.backup_download())
        console.print()
