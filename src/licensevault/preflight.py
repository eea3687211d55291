"""
Preflight checks -- verify a deployment can sync before it serves traffic.

Checks for:
  - Encryption passphrase (required for any remote traffic)
  - Remote repository URL
  - A git credential (token or SSH deploy key)
  - The git binary
  - Backup channel settings, when one is selected
  - That the credential actually reaches the remote (git ls-remote)

When an SSH key is configured it is installed under ``<home>/keys``
with 0600 permissions as part of the run, so the first sync does not
have to.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum

from .config import BackupKind, LicenseVaultConfig
from .errors import ConfigError, LocalIOError, RemoteAuthError, RemoteError
from .sync.credentials import GitCredential, SshKeyCredential, credential_from_settings
from .sync.git_remote import GitRemote

logger = logging.getLogger("licensevault.preflight")


class CheckStatus(str, Enum):
    """Outcome of one check."""
    OK = "ok"
    MISSING = "missing"
    SKIPPED = "skipped"


@dataclass
class Check:
    """Result of a single preflight check."""

    name: str
    status: CheckStatus
    required: bool = True
    detail: str = ""

    @property
    def ok(self) -> bool:
        """Whether this check passes (satisfied, or optional and missing)."""
        return self.status != CheckStatus.MISSING or not self.required


@dataclass
class PreflightResult:
    """Combined result of all preflight checks."""

    checks: list[Check] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return all(c.ok for c in self.checks)

    @property
    def required_missing(self) -> list[Check]:
        """Required checks that failed."""
        return [c for c in self.checks if c.required and c.status == CheckStatus.MISSING]


def _setting(name: str, present: bool, hint: str) -> Check:
    if present:
        return Check(name=name, status=CheckStatus.OK)
    return Check(name=name, status=CheckStatus.MISSING, detail=hint)


def check_git(git_binary: str = "git") -> Check:
    """Check the git binary is on PATH and report its version."""
    if not shutil.which(git_binary):
        return Check(
            name="git",
            status=CheckStatus.MISSING,
            detail="Install git; remote sync shells out to it.",
        )
    version = ""
    try:
        result = subprocess.run(
            [git_binary, "--version"],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode == 0:
            version = result.stdout.strip().split("\n")[0][:60]
    except (OSError, subprocess.TimeoutExpired):
        pass
    return Check(name="git", status=CheckStatus.OK, detail=version)


def check_backup(config: LicenseVaultConfig) -> Check:
    """Check the selected backup channel is fully configured."""
    kind = config.backup.kind
    if kind == BackupKind.NONE:
        return Check(name="backup", status=CheckStatus.SKIPPED, required=False)
    if kind == BackupKind.DROPBOX and not config.backup.dropbox_token:
        return Check(name="backup", status=CheckStatus.MISSING, detail="Set DROPBOX_ACCESS_TOKEN.")
    if kind == BackupKind.LOCAL and not config.backup.local_path:
        return Check(name="backup", status=CheckStatus.MISSING, detail="Set LICENSEVAULT_BACKUP_PATH.")
    return Check(name="backup", status=CheckStatus.OK, detail=kind.value)


def _credential(config: LicenseVaultConfig) -> GitCredential:
    return credential_from_settings(
        token=config.secret("git_token"),
        ssh_key=config.secret("git_ssh_key"),
        key_dir=config.key_dir,
    )


def install_ssh_key(config: LicenseVaultConfig) -> Check:
    """Write the configured SSH deploy key to disk (0600)."""
    credential = _credential(config)
    if not isinstance(credential, SshKeyCredential):
        return Check(name="ssh key", status=CheckStatus.SKIPPED, required=False)
    try:
        credential.prepare()
    except LocalIOError as exc:
        return Check(name="ssh key", status=CheckStatus.MISSING, detail=f"Cannot install key: {exc}")
    return Check(name="ssh key", status=CheckStatus.OK, detail=str(credential.key_path))


def check_remote(config: LicenseVaultConfig) -> Check:
    """Authenticate against the remote with the configured credential."""
    if not config.repo_url:
        return Check(name="remote access", status=CheckStatus.SKIPPED, required=False)
    remote = GitRemote(
        config.repo_url,
        config.licenses_dir,
        credential=_credential(config),
        timeout=config.git_timeout,
    )
    try:
        heads = remote.list_heads()
    except RemoteAuthError as exc:
        return Check(
            name="remote access",
            status=CheckStatus.MISSING,
            detail=f"Credential rejected: {exc.stderr or exc}",
        )
    except (RemoteError, LocalIOError, ValueError) as exc:
        return Check(name="remote access", status=CheckStatus.MISSING, detail=str(exc))

    if config.branch in heads:
        detail = f"{remote.name} ({config.branch})"
    else:
        detail = f"{remote.name} (no {config.branch} branch yet)"
    return Check(name="remote access", status=CheckStatus.OK, detail=detail)


def run_preflight(
    config: LicenseVaultConfig, check_connection: bool = True
) -> PreflightResult:
    """Run all preflight checks for a configuration.

    Args:
        config: Configuration to check.
        check_connection: Also contact the remote with the credential.
            Only attempted once the repository and git are in place.

    Returns:
        PreflightResult with every check, failed ones included.
    """
    has_credential = bool(config.git_token or config.git_ssh_key)
    result = PreflightResult(
        checks=[
            _setting(
                "encryption key", bool(config.encryption_key),
                "Set LICENSEVAULT_ENCRYPTION_KEY (or ENCRYPTION_KEY).",
            ),
            _setting(
                "repository", bool(config.repo_url),
                "Set LICENSEVAULT_REPO_URL (or GITHUB_REPO).",
            ),
            _setting(
                "git credential", has_credential,
                "Set LICENSEVAULT_GIT_TOKEN or LICENSEVAULT_GIT_SSH_KEY.",
            ),
            check_git(),
            check_backup(config),
        ]
    )
    if config.git_ssh_key:
        result.checks.append(install_ssh_key(config))
    if check_connection:
        ready = {c.name: c.ok for c in result.checks}
        if ready["repository"] and ready["git"] and ready.get("ssh key", True):
            result.checks.append(check_remote(config))

    for check in result.required_missing:
        logger.warning("Preflight: %s missing. %s", check.name, check.detail)
    return result


def require_preflight(
    config: LicenseVaultConfig, check_connection: bool = True
) -> PreflightResult:
    """Run preflight and fail hard on any missing requirement.

    Raises:
        ConfigError: A required check failed.
    """
    result = run_preflight(config, check_connection)
    missing = result.required_missing
    if missing:
        names = ", ".join(c.name for c in missing)
        raise ConfigError(f"Preflight failed, missing: {names}")
    return result
