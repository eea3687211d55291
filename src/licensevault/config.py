"""
Configuration -- config.yaml in the home directory, overridden by env.

    ~/.licensevault/
    ├── config.yaml     # non-secret settings
    ├── licenses/       # runtime store == git working copy
    ├── keys/           # SSH key material (0700)
    └── logs/           # daemon log

Secrets (git token, SSH key, encryption passphrase, Dropbox token) are
normally supplied through the environment and are never written back
to config.yaml.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError

from . import LICENSE_HOME
from .errors import ConfigError
from .models import StoreLayout
from .sync.retry import RetryPolicy

logger = logging.getLogger("licensevault.config")

CONFIG_FILENAME = "config.yaml"

SECRET_FIELDS = {"git_token", "git_ssh_key", "encryption_key"}


class BackupKind(str, Enum):
    """Secondary backup transports."""

    NONE = "none"
    DROPBOX = "dropbox"
    LOCAL = "local"


class BackupConfig(BaseModel):
    """Settings for the optional backup channel."""

    kind: BackupKind = BackupKind.NONE
    dropbox_token: Optional[SecretStr] = None
    dropbox_folder: str = "/licensevault_backup"
    local_path: Optional[Path] = None


class LicenseVaultConfig(BaseModel):
    """Complete process configuration."""

    home: Path = Field(default_factory=lambda: Path(LICENSE_HOME).expanduser())
    layout: StoreLayout = StoreLayout.PER_PRODUCT

    repo_url: Optional[str] = None
    branch: str = "main"
    git_token: Optional[SecretStr] = None
    git_ssh_key: Optional[SecretStr] = None
    encryption_key: Optional[SecretStr] = None
    commit_name: str = "licensevault"
    commit_email: str = "licensevault@localhost"
    git_timeout: float = 120.0

    sync_interval: int = Field(default=300, ge=1)
    sync_on_startup: bool = True
    push_on_write: bool = True
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    backup: BackupConfig = Field(default_factory=BackupConfig)

    @property
    def licenses_dir(self) -> Path:
        return self.home / "licenses"

    @property
    def key_dir(self) -> Path:
        return self.home / "keys"

    @property
    def log_dir(self) -> Path:
        return self.home / "logs"

    @property
    def sync_enabled(self) -> bool:
        """Remote sync needs both a remote and a passphrase."""
        return bool(self.repo_url and self.encryption_key)

    def secret(self, name: str) -> Optional[str]:
        """Plain value of a secret field, or None."""
        value = getattr(self, name)
        return value.get_secret_value() if value is not None else None


# (env var names, dotted config path), first set env var wins
ENV_OVERRIDES: list[tuple[tuple[str, ...], str]] = [
    (("LICENSEVAULT_REPO_URL", "GITHUB_REPO"), "repo_url"),
    (("LICENSEVAULT_BRANCH",), "branch"),
    (("LICENSEVAULT_GIT_TOKEN", "GITHUB_TOKEN"), "git_token"),
    (("LICENSEVAULT_GIT_SSH_KEY", "GIT_SSH_KEY"), "git_ssh_key"),
    (("LICENSEVAULT_ENCRYPTION_KEY", "ENCRYPTION_KEY"), "encryption_key"),
    (("LICENSEVAULT_SYNC_INTERVAL",), "sync_interval"),
    (("LICENSEVAULT_LAYOUT",), "layout"),
    (("LICENSEVAULT_BACKUP",), "backup.kind"),
    (("DROPBOX_ACCESS_TOKEN",), "backup.dropbox_token"),
    (("DROPBOX_FOLDER_PATH",), "backup.dropbox_folder"),
    (("LICENSEVAULT_BACKUP_PATH",), "backup.local_path"),
]


def _apply_env(data: dict, environ: dict[str, str]) -> dict:
    for names, dotted in ENV_OVERRIDES:
        value = next((environ[n] for n in names if environ.get(n)), None)
        if value is None:
            continue
        target = data
        *parents, leaf = dotted.split(".")
        for part in parents:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[leaf] = value
    return data


def load_config(
    home: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> LicenseVaultConfig:
    """Load configuration for a home directory.

    Args:
        home: Home directory. Defaults to LICENSEVAULT_HOME or ~/.licensevault.
        environ: Environment mapping, defaults to ``os.environ``.

    Raises:
        ConfigError: config.yaml or an env override holds invalid values.
    """
    env = dict(os.environ if environ is None else environ)
    home_path = Path(home or env.get("LICENSEVAULT_HOME") or LICENSE_HOME).expanduser()

    data: dict = {}
    config_file = home_path / CONFIG_FILENAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must hold a mapping")

    data = _apply_env(data, env)
    data["home"] = home_path

    try:
        return LicenseVaultConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def save_config(config: LicenseVaultConfig) -> Path:
    """Write non-secret settings to ``<home>/config.yaml``."""
    data = config.model_dump(
        mode="json",
        exclude={
            "home": True,
            **{name: True for name in SECRET_FIELDS},
            "backup": {"dropbox_token": True},
        },
    )
    config.home.mkdir(parents=True, exist_ok=True)
    config_file = config.home / CONFIG_FILENAME
    config_file.write_text(
        yaml.dump(data, default_flow_style=False), encoding="utf-8"
    )
    logger.info("Saved configuration to %s", config_file)
    return config_file
