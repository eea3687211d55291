"""Daemon and deploy commands: daemon start, daemon status, preflight."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.table import Table

from ._common import console, home_option, load_settings


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon group and the preflight command."""

    @main.group()
    def daemon():
        """Background sync scheduler."""

    @daemon.command("start")
    @click.option("--sync-interval", "sync_int", default=None, type=int,
                  help="Seconds between sync passes (default: from config).")
    @home_option
    def daemon_start(sync_int, home):
        """Run the sync daemon in the foreground.

        Pulls on startup, then pushes and pulls every interval until
        SIGTERM or Ctrl+C. Use systemd or similar to background it.
        """
        from ..daemon import DaemonConfig, DaemonService, is_running

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        settings = load_settings(home)
        config = DaemonConfig(home=home_path, sync_interval=sync_int)
        svc = DaemonService(config, settings)

        console.print(f"\n  [green]Starting daemon[/] for [cyan]{home_path}[/]")
        console.print(f"  Sync: {config.sync_interval}s")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")
        svc.start()
        svc.run_forever()

    @daemon.command("status")
    @home_option
    def daemon_status(home):
        """Show whether the daemon is running."""
        from ..daemon import read_pid

        pid = read_pid(Path(home).expanduser())
        if pid is None:
            console.print("\n  [yellow]Daemon is not running.[/]\n")
            return
        console.print(f"\n  [green]Daemon running[/] (PID {pid})\n")

    @main.command("preflight")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @click.option("--offline", is_flag=True, help="Skip contacting the remote.")
    @home_option
    def preflight(json_out, offline, home):
        """Check this deployment can sync, installing the SSH key if set."""
        from ..preflight import run_preflight

        result = run_preflight(load_settings(home), check_connection=not offline)
        if json_out:
            click.echo(json.dumps(
                {
                    "ok": result.all_ok,
                    "checks": [
                        {"name": c.name, "status": c.status.value, "detail": c.detail}
                        for c in result.checks
                    ],
                },
                indent=2,
            ))
        else:
            table = Table(title="Preflight")
            table.add_column("Check")
            table.add_column("Status")
            table.add_column("Detail", style="dim")
            colors = {"ok": "green", "missing": "red", "skipped": "dim"}
            for check in result.checks:
                color = colors[check.status.value]
                table.add_row(check.name, f"[{color}]{check.status.value}[/]", check.detail)
            console.print(table)
        if not result.all_ok:
            sys.exit(1)
