"""
Error taxonomy for licensevault.

Cipher errors are never fatal: callers treat undecodable content as
plaintext. Remote errors are retried by the sync engine. Local IO
errors surface to the caller and leave the previous file intact.
"""

from __future__ import annotations

from typing import Optional


class LicenseVaultError(Exception):
    """Base class for every licensevault error."""


class ConfigError(LicenseVaultError):
    """Configuration is missing or invalid."""


class CipherError(LicenseVaultError):
    """Base class for encrypted-blob failures."""


class DecodeError(CipherError):
    """Blob syntax is malformed (separator, base64, IV length)."""


class DecryptError(CipherError):
    """Blob decoded but did not authenticate under the key."""


class LocalIOError(LicenseVaultError):
    """Reading or writing the local store failed."""


class RemoteError(LicenseVaultError):
    """A git operation against the remote failed.

    Args:
        message: What went wrong.
        command: The git command, with credentials masked.
        stderr: Masked stderr of the failed command.
    """

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr or ""


class RemoteAuthError(RemoteError):
    """The remote rejected the configured credential."""


class RemoteConflictError(RemoteError):
    """The remote rejected a push because it has advanced."""


class SyncError(LicenseVaultError):
    """A sync cycle failed after exhausting its retries."""


class BackupError(LicenseVaultError):
    """The backup channel failed to upload or download."""


class DuplicateLicenseError(LicenseVaultError):
    """A license key is already held by another collection."""
