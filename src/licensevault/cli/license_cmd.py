"""License commands: add, show, list, activate, deactivate, clear."""

from __future__ import annotations

import json
import sys
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import LocalIOError
from ..models import LicenseRecord
from ._common import console, home_option, open_service, print_outcome


def _record_panel(record: LicenseRecord, collection_id: str) -> Panel:
    state = "[green]activated[/]" if record.activated else "[dim]not activated[/]"
    return Panel(
        f"Product: [cyan]{record.product_name or '-'}[/]\n"
        f"Buyer: {record.buyer_email or '[dim]unknown[/]'}\n"
        f"Issued: {record.issued_at.isoformat()}\n"
        f"Status: {state}\n"
        f"Activated at: {record.activated_at.isoformat() if record.activated_at else '[dim]never[/]'}",
        title=f"{record.license_key} [dim]({collection_id})[/]",
        border_style="cyan",
    )


def _push_after(service, push: bool) -> None:
    if push and service.engine is not None:
        print_outcome(service.engine.push())


def register_license_commands(main: click.Group) -> None:
    """Register the license command group."""

    @main.group("license")
    def license_group():
        """Issued licenses in the local store."""

    @license_group.command("add")
    @click.argument("collection_id")
    @click.argument("license_key")
    @click.option("--product", "product_name", default="", help="Product display name.")
    @click.option("--email", "buyer_email", default=None, help="Buyer email.")
    @click.option("--push/--no-push", default=False, help="Push to the remote afterwards.")
    @home_option
    def license_add(
        collection_id: str,
        license_key: str,
        product_name: str,
        buyer_email: Optional[str],
        push: bool,
        home: str,
    ):
        """Record a new license in COLLECTION_ID."""
        service = open_service(home, with_sync=push)
        try:
            added = service.record_license(
                collection_id,
                {
                    "license_key": license_key,
                    "product_name": product_name,
                    "buyer_email": buyer_email,
                },
            )
        except (LocalIOError, ValueError) as exc:
            console.print(f"[bold red]Could not record license:[/] {exc}")
            sys.exit(1)

        if added:
            console.print(f"\n  [green]Recorded[/] [cyan]{license_key}[/] in {collection_id}\n")
        else:
            console.print(f"\n  [yellow]{license_key} already recorded[/] in {collection_id}\n")
        _push_after(service, push)

    @license_group.command("show")
    @click.argument("collection_id")
    @click.argument("license_key")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    def license_show(collection_id: str, license_key: str, json_out: bool, home: str):
        """Show one license."""
        service = open_service(home)
        record = service.lookup_license(collection_id, license_key)
        if record is None:
            console.print(f"[red]No license {license_key} in {collection_id}.[/]")
            sys.exit(1)
        if json_out:
            click.echo(record.model_dump_json(indent=2))
            return
        console.print()
        console.print(_record_panel(record, collection_id))

    @license_group.command("list")
    @click.argument("collection_id")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    @home_option
    def license_list(collection_id: str, json_out: bool, home: str):
        """List every license in COLLECTION_ID."""
        service = open_service(home)
        collection = service.list_all(collection_id)
        if json_out:
            click.echo(json.dumps([r.model_dump(mode="json") for r in collection.records], indent=2))
            return
        if not collection.records:
            console.print(f"\n  [dim]No licenses in {collection_id}.[/]\n")
            return

        table = Table(title=f"{collection_id} ({len(collection)} license(s))")
        table.add_column("Key", style="cyan")
        table.add_column("Product")
        table.add_column("Buyer")
        table.add_column("Activated")
        for record in collection.records:
            table.add_row(
                record.license_key,
                record.product_name,
                record.buyer_email or "",
                "[green]yes[/]" if record.activated else "no",
            )
        console.print(table)

    @license_group.command("activate")
    @click.argument("collection_id")
    @click.argument("license_key")
    @click.option("--push/--no-push", default=False, help="Push to the remote afterwards.")
    @home_option
    def license_activate(collection_id: str, license_key: str, push: bool, home: str):
        """Mark a license activated."""
        service = open_service(home, with_sync=push)
        record = service.activate_license(collection_id, license_key)
        if record is None:
            console.print(f"[red]No license {license_key} in {collection_id}.[/]")
            sys.exit(1)
        console.print(f"\n  [green]Activated[/] [cyan]{license_key}[/]\n")
        _push_after(service, push)

    @license_group.command("deactivate")
    @click.argument("collection_id")
    @click.argument("license_key")
    @click.confirmation_option(prompt="Reset activation for this license?")
    @home_option
    def license_deactivate(collection_id: str, license_key: str, home: str):
        """Admin reset: mark a license not activated."""
        service = open_service(home)
        record = service.deactivate_license(collection_id, license_key)
        if record is None:
            console.print(f"[red]No license {license_key} in {collection_id}.[/]")
            sys.exit(1)
        console.print(f"\n  [yellow]Deactivated[/] [cyan]{license_key}[/]\n")

    @license_group.command("clear")
    @click.argument("collection_id")
    @click.confirmation_option(prompt="Delete every license in this collection?")
    @click.option("--push/--no-push", default=False, help="Push to the remote afterwards.")
    @home_option
    def license_clear(collection_id: str, push: bool, home: str):
        """Remove every license in COLLECTION_ID."""
        service = open_service(home, with_sync=push)
        removed = service.clear_all(collection_id)
        console.print(f"\n  [yellow]Removed {removed} license(s)[/] from {collection_id}\n")
        _push_after(service, push)
