"""
License service -- the operations request handlers call.

Every write goes to the local store first and returns as soon as the
file is on disk; publishing to the remote happens on a background push.
A remote that is down never fails a write.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union

from .errors import DuplicateLicenseError
from .models import LicenseCollection, LicenseRecord, SyncOutcome
from .store import RecordStore
from .sync.engine import SyncEngine

logger = logging.getLogger("licensevault.service")


class LicenseService:
    """Record, look up, activate and clear licenses.

    Args:
        store: The local record store.
        engine: Sync engine, or None to run purely local.
        push_on_write: Schedule a background push after each mutation.
    """

    def __init__(
        self,
        store: RecordStore,
        engine: Optional[SyncEngine] = None,
        push_on_write: bool = True,
    ) -> None:
        self.store = store
        self.engine = engine
        self.push_on_write = push_on_write

    def _after_write(self) -> Optional[threading.Thread]:
        if self.engine is None or not self.push_on_write:
            return None
        return self.engine.push_in_background()

    def record_license(
        self, collection_id: str, record: Union[LicenseRecord, dict[str, Any]]
    ) -> bool:
        """Persist a newly issued license.

        Recording a key that already exists is a no-op, so a retried
        webhook delivery never duplicates a license. In a combined file
        a key held by another product is refused the same way.

        Returns:
            True if the record was added.

        Raises:
            LocalIOError: The store could not be written.
        """
        if not isinstance(record, LicenseRecord):
            record = LicenseRecord.model_validate(record)

        with self.store.lock:
            collection = self.store.load(collection_id)
            if not collection.add(record):
                logger.info("License %s already recorded in %s", record.license_key, collection_id)
                return False
            try:
                self.store.save(collection_id, collection)
            except DuplicateLicenseError as exc:
                logger.warning("Not recording %s in %s: %s", record.license_key, collection_id, exc)
                return False

        logger.info("Recorded license %s in %s", record.license_key, collection_id)
        self._after_write()
        return True

    def lookup_license(self, collection_id: str, license_key: str) -> Optional[LicenseRecord]:
        """Find one license, or None."""
        return self.store.load(collection_id).get(license_key)

    def list_all(self, collection_id: str) -> LicenseCollection:
        return self.store.load(collection_id)

    def activate_license(self, collection_id: str, license_key: str) -> Optional[LicenseRecord]:
        """Mark a license activated.

        Activation is idempotent; an already-activated license is
        returned unchanged and nothing is written.

        Returns:
            The record, or None if the key is unknown.
        """
        with self.store.lock:
            collection = self.store.load(collection_id)
            record = collection.get(license_key)
            if record is None:
                return None
            if not record.activate():
                return record
            self.store.save(collection_id, collection)

        logger.info("Activated license %s in %s", license_key, collection_id)
        self._after_write()
        return record

    def deactivate_license(self, collection_id: str, license_key: str) -> Optional[LicenseRecord]:
        """Admin reset of a license's activation.

        The only path that moves ``activated`` back to False. Note that a
        peer that still holds the activated copy will re-activate it on
        the next reconcile.
        """
        with self.store.lock:
            collection = self.store.load(collection_id)
            record = collection.get(license_key)
            if record is None or not record.activated:
                return record
            record.activated = False
            record.activated_at = None
            self.store.save(collection_id, collection)

        logger.warning("Deactivated license %s in %s (admin)", license_key, collection_id)
        self._after_write()
        return record

    def clear_all(self, collection_id: str) -> int:
        """Remove every license in a collection.

        Records shared by all collections (combined files without a
        product tag) are left in place.

        Returns:
            Number of records removed.
        """
        with self.store.lock:
            collection = self.store.load(collection_id)
            before = collection.remove_all()
            self.store.save(collection_id, collection)
            removed = before - len(self.store.load(collection_id))

        logger.warning("Cleared %d license(s) from %s", removed, collection_id)
        self._after_write()
        return removed

    def backup_now(self) -> Optional[SyncOutcome]:
        """Upload to the backup channel, blocking until done."""
        if self.engine is None:
            return None
        return self.engine.backup_upload()
