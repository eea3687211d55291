"""
Data models -- license records, collections, and sync state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreLayout(str, Enum):
    """How collections are laid out on disk."""

    PER_PRODUCT = "per_product"
    COMBINED = "combined"


class LicenseRecord(BaseModel):
    """A single issued license.

    ``activated`` only ever moves from False to True outside of an
    explicit admin reset.
    """

    license_key: str
    product_name: str = ""
    product_id: Optional[str] = None
    buyer_email: Optional[str] = None
    activated: bool = False
    issued_at: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("issued_at", "createdAt"),
    )
    activated_at: Optional[datetime] = None

    def activate(self) -> bool:
        """Mark the license activated.

        Returns:
            True if this call changed the record.
        """
        if self.activated:
            return False
        self.activated = True
        self.activated_at = _utcnow()
        return True


class LicenseCollection(BaseModel):
    """Ordered license records of one product namespace."""

    records: list[LicenseRecord] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, license_key: object) -> bool:
        return self.get(str(license_key)) is not None

    def get(self, license_key: str) -> Optional[LicenseRecord]:
        """Find a record by key."""
        for record in self.records:
            if record.license_key == license_key:
                return record
        return None

    def add(self, record: LicenseRecord) -> bool:
        """Append a record unless its key is already present.

        Returns:
            False when the key was a duplicate and nothing was added.
        """
        if self.get(record.license_key) is not None:
            return False
        self.records.append(record)
        return True

    def remove_all(self) -> int:
        """Drop every record, returning how many were removed."""
        count = len(self.records)
        self.records = []
        return count

    def merge(self, other: "LicenseCollection") -> int:
        """Fold another collection's records into this one.

        Unknown keys are appended in the other collection's order. For
        keys present on both sides the local record wins, except that
        activation is carried over if either side is activated.

        Returns:
            Number of records added or changed.
        """
        changed = 0
        for incoming in other.records:
            existing = self.get(incoming.license_key)
            if existing is None:
                self.records.append(incoming.model_copy(deep=True))
                changed += 1
            elif incoming.activated and not existing.activated:
                existing.activated = True
                existing.activated_at = incoming.activated_at or _utcnow()
                changed += 1
        return changed


class SyncDirection(str, Enum):
    """Sync operation direction."""

    PUSH = "push"
    PULL = "pull"
    BACKUP = "backup"


class SyncPhase(str, Enum):
    """Where the sync engine currently is in its cycle."""

    IDLE = "idle"
    PULLING = "pulling"
    DECRYPTING = "decrypting"
    ENCRYPTING = "encrypting"
    PUSHING = "pushing"
    RESTORING = "restoring"


class SyncOutcome(BaseModel):
    """Result of one sync cycle."""

    direction: SyncDirection
    success: bool
    skipped: bool = False
    attempts: int = 0
    files: int = 0
    detail: str = ""
    finished_at: datetime = Field(default_factory=_utcnow)


class SyncState(BaseModel):
    """Process-wide sync observability. Never persisted."""

    phase: SyncPhase = SyncPhase.IDLE
    in_flight: bool = False
    last_push: Optional[SyncOutcome] = None
    last_pull: Optional[SyncOutcome] = None
    last_backup: Optional[SyncOutcome] = None
    push_count: int = 0
    pull_count: int = 0
    failure_count: int = 0
    skip_count: int = 0
    last_error: Optional[str] = None
