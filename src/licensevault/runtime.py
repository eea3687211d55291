"""
Runtime wiring -- build the store, engine and service from configuration.

One home directory, one store, one engine. Every entry point (CLI,
daemon, an embedding web app) gets its objects from here so they all
agree on where the working copy lives and how it is secured.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import LicenseVaultConfig, load_config
from .service import LicenseService
from .store import RecordStore
from .sync.backup import BackupChannel, create_backup_channel
from .sync.cipher import Cipher
from .sync.credentials import credential_from_settings
from .sync.engine import SyncEngine
from .sync.git_remote import GitRemote

logger = logging.getLogger("licensevault.runtime")


def build_store(config: LicenseVaultConfig) -> RecordStore:
    return RecordStore(config.licenses_dir, layout=config.layout)


def build_remote(config: LicenseVaultConfig) -> Optional[GitRemote]:
    """Git client for the configured remote, or None when sync is off."""
    if not config.sync_enabled:
        return None
    credential = credential_from_settings(
        token=config.secret("git_token"),
        ssh_key=config.secret("git_ssh_key"),
        key_dir=config.key_dir,
    )
    return GitRemote(
        config.repo_url,
        config.licenses_dir,
        credential=credential,
        commit_name=config.commit_name,
        commit_email=config.commit_email,
        timeout=config.git_timeout,
    )


def build_engine(
    config: LicenseVaultConfig, store: Optional[RecordStore] = None
) -> Optional[SyncEngine]:
    """Sync engine for the configuration.

    Returns:
        None when neither a remote nor a backup channel can be used,
        which always includes the case of a missing encryption key.
    """
    passphrase = config.secret("encryption_key")
    if not passphrase:
        if config.repo_url or config.backup.kind.value != "none":
            logger.warning("No encryption key configured, sync and backup disabled")
        return None

    cipher = Cipher.from_passphrase(passphrase)
    remote = build_remote(config)
    backup: Optional[BackupChannel] = create_backup_channel(config.backup, cipher)
    if remote is None and backup is None:
        return None

    return SyncEngine(
        store or build_store(config),
        cipher,
        remote=remote,
        branch=config.branch,
        retry=config.retry,
        backup=backup,
    )


def get_service(home: Optional[Path] = None) -> LicenseService:
    """Load configuration for ``home`` and wire up a service.

    Raises:
        ConfigError: Configuration is invalid.
    """
    config = load_config(home)
    store = build_store(config)
    engine = build_engine(config, store)
    if engine is None:
        logger.info("Running without remote sync (store at %s)", store.root)
    return LicenseService(store, engine, push_on_write=config.push_on_write)
