"""
Record store -- license collections as JSON files on local disk.

Two layouts, picked by configuration:

    per_product:  <root>/<collection_id>.json   -> [record, record, ...]
    combined:     <root>/licenses.json          -> {"count": N, "licenses": {key: record}}

Saves are whole-file replaces: the new content goes to a temp file in
the same directory, is fsynced, then renamed over the old file. A crash
mid-write leaves the previous version in place.

The store's lock guards every read and write. The sync engine takes the
same lock while the directory briefly holds ciphertext.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import DuplicateLicenseError, LocalIOError
from .models import LicenseCollection, LicenseRecord, StoreLayout

logger = logging.getLogger("licensevault.store")

LICENSE_FILE_PATTERN = "*.json"
COMBINED_FILENAME = "licenses.json"
_COLLECTION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_collection_id(collection_id: str) -> str:
    if not collection_id or not _COLLECTION_ID_RE.match(collection_id):
        raise ValueError(f"Invalid collection id: {collection_id!r}")
    return collection_id


def atomic_write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` without a torn intermediate state.

    Raises:
        LocalIOError: The write or rename failed. The old file is intact.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
    except OSError as exc:
        raise LocalIOError(f"Cannot write {path}: {exc}") from exc

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise LocalIOError(f"Cannot write {path}: {exc}") from exc


def _owned(record: LicenseRecord, collection_id: str) -> LicenseRecord:
    """Copy of ``record`` tagged with its collection."""
    if record.product_id is not None:
        return record.model_copy(deep=True)
    return record.model_copy(update={"product_id": collection_id}, deep=True)


class RecordStore:
    """License collections persisted under one directory.

    Args:
        root: Directory holding the license files.
        layout: On-disk layout.
    """

    def __init__(
        self, root: Path, layout: StoreLayout = StoreLayout.PER_PRODUCT
    ) -> None:
        self.root = Path(root).expanduser()
        self.layout = StoreLayout(layout)
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"RecordStore({str(self.root)!r}, layout={self.layout.value})"

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def path_for(self, collection_id: str) -> Path:
        """File holding the given collection."""
        _check_collection_id(collection_id)
        if self.layout == StoreLayout.COMBINED:
            return self.root / COMBINED_FILENAME
        return self.root / f"{collection_id}.json"

    def files(self) -> list[Path]:
        """Every license file currently on disk, sorted by name."""
        if not self.root.exists():
            return []
        return sorted(
            p for p in self.root.glob(LICENSE_FILE_PATTERN)
            if p.is_file() and not p.name.startswith(".")
        )

    def collection_ids(self) -> list[str]:
        """Collections that have data on disk."""
        if self.layout == StoreLayout.PER_PRODUCT:
            return [p.stem for p in self.files()]
        ids = {
            record.product_id
            for record in self._load_file(self.root / COMBINED_FILENAME).records
            if record.product_id
        }
        return sorted(ids)

    # ------------------------------------------------------------------
    # Codec
    # ------------------------------------------------------------------

    def decode(self, data: bytes) -> LicenseCollection:
        """Parse one file's bytes into every record it holds.

        Accepts either layout's shape regardless of the configured one,
        so a file written by an older deployment still loads.

        Raises:
            ValueError: The bytes are not a license file.
        """
        payload = json.loads(data.decode("utf-8"))

        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict) and isinstance(payload.get("licenses"), dict):
            items = []
            for key, entry in payload["licenses"].items():
                if not isinstance(entry, dict):
                    raise ValueError(f"License entry {key!r} is not an object")
                items.append({"license_key": key, **entry})
        else:
            raise ValueError("Unrecognized license file shape")

        collection = LicenseCollection()
        for item in items:
            if not collection.add(LicenseRecord.model_validate(item)):
                logger.warning(
                    "Duplicate license key %s in file, keeping first",
                    item.get("license_key"),
                )
        return collection

    def encode(self, collection: LicenseCollection) -> bytes:
        """Serialize a whole file's worth of records in this layout."""
        if self.layout == StoreLayout.COMBINED:
            payload: object = {
                "count": len(collection.records),
                "licenses": {
                    r.license_key: r.model_dump(mode="json", exclude={"license_key"})
                    for r in collection.records
                },
            }
        else:
            payload = [r.model_dump(mode="json") for r in collection.records]
        return (json.dumps(payload, indent=2) + "\n").encode("utf-8")

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def _load_file(self, path: Path) -> LicenseCollection:
        if not path.exists():
            return LicenseCollection()
        try:
            return self.decode(path.read_bytes())
        except (ValueError, UnicodeDecodeError, ValidationError) as exc:
            logger.warning("Could not parse %s, treating as empty: %s", path.name, exc)
        except OSError as exc:
            logger.warning("Could not read %s, treating as empty: %s", path.name, exc)
        return LicenseCollection()

    def load(self, collection_id: str) -> LicenseCollection:
        """Load a collection. Missing or unparsable files load as empty."""
        path = self.path_for(collection_id)
        with self.lock:
            collection = self._load_file(path)
        if self.layout == StoreLayout.COMBINED:
            collection = LicenseCollection(
                records=[
                    r for r in collection.records
                    if r.product_id in (None, collection_id)
                ]
            )
        return collection

    def save(self, collection_id: str, collection: LicenseCollection) -> None:
        """Write a collection back, replacing what was there.

        The caller's records are not modified. In the combined layout,
        records without a ``product_id`` (files from older deployments)
        are shared by every collection: saving never assigns them an
        owner, and leaving them out of one collection does not remove
        them from the file.

        Raises:
            DuplicateLicenseError: Combined layout only; a key is already
                held by a different collection. Nothing is written.
            LocalIOError: Disk full, permissions, ... The previous file
                is left untouched.
        """
        path = self.path_for(collection_id)

        with self.lock:
            if self.layout == StoreLayout.COMBINED:
                collection = self._merge_combined(path, collection_id, collection)
            else:
                collection = LicenseCollection(
                    records=[_owned(r, collection_id) for r in collection.records]
                )
            atomic_write(path, self.encode(collection))
        logger.debug("Saved %d record(s) to %s", len(collection.records), path.name)

    def _merge_combined(
        self, path: Path, collection_id: str, collection: LicenseCollection
    ) -> LicenseCollection:
        on_disk = self._load_file(path).records
        saving = {r.license_key for r in collection.records}
        unowned = {r.license_key for r in on_disk if r.product_id is None}
        others = [
            r for r in on_disk
            if r.product_id not in (None, collection_id)
            or (r.product_id is None and r.license_key not in saving)
        ]
        taken = {r.license_key: r.product_id for r in others if r.product_id is not None}

        records = []
        for record in collection.records:
            owner = taken.get(record.license_key)
            if owner is not None:
                raise DuplicateLicenseError(
                    f"License {record.license_key} already belongs to {owner}"
                )
            if record.license_key in unowned and record.product_id is None:
                records.append(record.model_copy(deep=True))
            else:
                records.append(_owned(record, collection_id))
        return LicenseCollection(records=others + records)

    # ------------------------------------------------------------------
    # Raw file access for the sync engine
    # ------------------------------------------------------------------

    def read_bytes(self, path: Path) -> Optional[bytes]:
        with self.lock:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise LocalIOError(f"Cannot read {path}: {exc}") from exc

    def write_bytes(self, path: Path, data: bytes) -> None:
        with self.lock:
            atomic_write(path, data)

    def snapshot(self) -> dict[Path, bytes]:
        """Current bytes of every license file."""
        with self.lock:
            return {p: p.read_bytes() for p in self.files()}
