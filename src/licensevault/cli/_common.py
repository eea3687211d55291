"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the ``--home`` option, and helpers
for loading configuration and rendering sync outcomes.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import LICENSE_HOME
from ..config import LicenseVaultConfig, load_config
from ..errors import ConfigError
from ..models import SyncOutcome
from ..runtime import build_engine, build_store
from ..service import LicenseService
from ..sync.engine import SyncEngine

console = Console()
logger = logging.getLogger("licensevault.cli")

home_option = click.option(
    "--home",
    default=LICENSE_HOME,
    envvar="LICENSEVAULT_HOME",
    type=click.Path(),
    help="licensevault home directory.",
)


def load_settings(home: str) -> LicenseVaultConfig:
    """Load configuration, exiting with a message when it is invalid."""
    try:
        return load_config(Path(home).expanduser())
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(2)


def open_service(home: str, with_sync: bool = False) -> LicenseService:
    """Build a service for ``home``.

    CLI writes push in the foreground afterwards instead of on a
    background thread, so ``push_on_write`` is off here.
    """
    settings = load_settings(home)
    store = build_store(settings)
    engine = None
    if with_sync:
        try:
            engine = build_engine(settings, store)
        except ConfigError as exc:
            console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(2)
    return LicenseService(store, engine, push_on_write=False)


def require_engine(home: str) -> SyncEngine:
    """Sync engine for ``home``, or exit when sync is not configured."""
    settings = load_settings(home)
    try:
        engine = build_engine(settings)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(2)
    if engine is None:
        console.print(
            "[bold red]Sync is not configured.[/] "
            "Set LICENSEVAULT_ENCRYPTION_KEY and LICENSEVAULT_REPO_URL "
            "(or a backup channel)."
        )
        sys.exit(1)
    return engine


def print_outcome(outcome: Optional[SyncOutcome]) -> None:
    """Print one sync outcome and exit non-zero on failure."""
    if outcome is None:
        return
    label = outcome.direction.value
    if outcome.skipped:
        console.print(f"  [yellow]{label} skipped[/] [dim]{outcome.detail}[/]")
        return
    if outcome.success:
        detail = outcome.detail or f"{outcome.files} file(s)"
        console.print(f"  [green]{label} ok[/] [dim]{detail}[/]")
        return
    console.print(f"  [red]{label} failed[/] after {outcome.attempts} attempt(s): {outcome.detail}")
    sys.exit(1)
