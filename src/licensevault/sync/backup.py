"""
Backup channels -- a second, history-free place for the license files.

Each channel copies whole files: upload overwrites every remote copy
with the local one, download overwrites every local file with the
remote one. Files are always encrypted before they leave the machine
and decrypted (or passed through, if still plaintext) on the way back.

Dropbox: HTTP API v2 through ``requests``.
Local: Plain filesystem copy. For USB drives, NAS, etc.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import requests

from ..errors import BackupError, ConfigError, LocalIOError
from ..store import LICENSE_FILE_PATTERN, RecordStore, atomic_write
from .cipher import Cipher

logger = logging.getLogger("licensevault.sync.backup")

DROPBOX_API = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_API = "https://content.dropboxapi.com/2"


class BackupChannel(ABC):
    """Abstract whole-file backup transport.

    Args:
        cipher: Applied to every file crossing the channel.
    """

    def __init__(self, cipher: Cipher) -> None:
        self.cipher = cipher

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable channel name."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this channel is currently usable."""

    @abstractmethod
    def _put(self, filename: str, data: bytes) -> None:
        """Write one file to the remote, overwriting."""

    @abstractmethod
    def _list(self) -> list[str]:
        """Names of the license files on the remote."""

    @abstractmethod
    def _get(self, filename: str) -> bytes:
        """Read one file from the remote."""

    def upload_all(self, store: RecordStore) -> int:
        """Encrypt and upload every local license file.

        Returns:
            Number of files uploaded.

        Raises:
            BackupError: Any file failed to upload.
        """
        snapshot = store.snapshot()
        if not snapshot:
            logger.info("No local license files, skipping %s upload", self.name)
            return 0

        for path, data in snapshot.items():
            payload = data if self.cipher.looks_encrypted(data) else self.cipher.encrypt_bytes(data)
            self._put(path.name, payload)
            logger.info("Uploaded %s to %s", path.name, self.name)
        return len(snapshot)

    def download_all(self, store: RecordStore) -> int:
        """Download every remote license file over its local counterpart.

        Returns:
            Number of files written locally.

        Raises:
            BackupError: Listing or downloading failed.
            LocalIOError: A local write failed.
        """
        names = self._list()
        if not names:
            logger.info("No license files in %s yet, starting fresh", self.name)
            return 0

        store.root.mkdir(parents=True, exist_ok=True)
        for filename in names:
            content, _ = self.cipher.decrypt_or_passthrough(self._get(filename))
            store.write_bytes(store.root / filename, content)
            logger.info("Downloaded %s from %s", filename, self.name)
        return len(names)


class DropboxBackupChannel(BackupChannel):
    """Dropbox folder backup.

    Args:
        cipher: File cipher.
        access_token: Dropbox OAuth access token.
        folder: Remote folder, e.g. ``/licensevault_backup``.
        timeout: Seconds per HTTP request.
        session: Optional ``requests.Session`` (tests inject one).
    """

    def __init__(
        self,
        cipher: Cipher,
        access_token: str,
        folder: str = "/licensevault_backup",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(cipher)
        if not access_token:
            raise ConfigError("Dropbox backup needs DROPBOX_ACCESS_TOKEN")
        self._token = access_token
        self.folder = "/" + folder.strip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "dropbox"

    def available(self) -> bool:
        return bool(self._token)

    def _headers(self, api_arg: Optional[dict] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._token}"}
        if api_arg is not None:
            headers["Dropbox-API-Arg"] = json.dumps(api_arg)
        return headers

    def _post(self, url: str, **kwargs) -> requests.Response:
        try:
            return self._session.post(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise BackupError(f"Dropbox request failed: {exc}") from exc

    def _put(self, filename: str, data: bytes) -> None:
        headers = self._headers(
            {"path": f"{self.folder}/{filename}", "mode": "overwrite", "mute": True}
        )
        headers["Content-Type"] = "application/octet-stream"
        resp = self._post(f"{DROPBOX_CONTENT_API}/files/upload", headers=headers, data=data)
        if resp.status_code >= 400:
            raise BackupError(
                f"Dropbox upload of {filename}: {resp.status_code} {resp.text}"
            )

    def _list(self) -> list[str]:
        resp = self._post(
            f"{DROPBOX_API}/files/list_folder",
            headers=self._headers(),
            json={"path": self.folder},
        )
        if resp.status_code == 409:
            logger.info("Dropbox folder %s not found yet", self.folder)
            return []
        names: list[str] = []
        while True:
            if resp.status_code >= 400:
                raise BackupError(
                    f"Dropbox list of {self.folder}: {resp.status_code} {resp.text}"
                )
            body = resp.json()
            names.extend(
                entry["name"]
                for entry in body.get("entries", [])
                if entry.get(".tag") == "file"
                and Path(entry["name"]).match(LICENSE_FILE_PATTERN)
            )
            if not body.get("has_more"):
                break
            resp = self._post(
                f"{DROPBOX_API}/files/list_folder/continue",
                headers=self._headers(),
                json={"cursor": body["cursor"]},
            )
        return sorted(names)

    def _get(self, filename: str) -> bytes:
        resp = self._post(
            f"{DROPBOX_CONTENT_API}/files/download",
            headers=self._headers({"path": f"{self.folder}/{filename}"}),
        )
        if resp.status_code >= 400:
            raise BackupError(
                f"Dropbox download of {filename}: {resp.status_code} {resp.text}"
            )
        return resp.content


class LocalBackupChannel(BackupChannel):
    """Local filesystem channel for USB, NAS, or mounted drives."""

    def __init__(self, cipher: Cipher, target: Path) -> None:
        super().__init__(cipher)
        self.target = Path(target).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def available(self) -> bool:
        return self.target.exists()

    def _put(self, filename: str, data: bytes) -> None:
        try:
            atomic_write(self.target / filename, data)
        except LocalIOError as exc:
            raise BackupError(f"Local backup of {filename} failed: {exc}") from exc

    def _list(self) -> list[str]:
        if not self.target.exists():
            return []
        return sorted(
            p.name for p in self.target.glob(LICENSE_FILE_PATTERN)
            if p.is_file() and not p.name.startswith(".")
        )

    def _get(self, filename: str) -> bytes:
        try:
            return (self.target / filename).read_bytes()
        except OSError as exc:
            raise BackupError(f"Local restore of {filename} failed: {exc}") from exc


def create_backup_channel(config, cipher: Cipher) -> Optional[BackupChannel]:
    """Factory for the configured backup channel.

    Args:
        config: ``BackupConfig`` section.
        cipher: File cipher.

    Returns:
        The channel, or None when backups are disabled.

    Raises:
        ConfigError: The channel is selected but incompletely configured.
    """
    kind = getattr(config.kind, "value", config.kind)
    if kind == "none":
        return None
    if kind == "dropbox":
        token = config.dropbox_token.get_secret_value() if config.dropbox_token else ""
        return DropboxBackupChannel(cipher, token, folder=config.dropbox_folder)
    if kind == "local":
        if not config.local_path:
            raise ConfigError("Local backup needs LICENSEVAULT_BACKUP_PATH")
        return LocalBackupChannel(cipher, config.local_path)
    raise ConfigError(f"Unsupported backup channel: {kind}")
