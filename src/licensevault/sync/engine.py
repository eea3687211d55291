"""
Sync Engine -- keeps the licenses dir and its encrypted git mirror in step.

The licenses directory is both the runtime store and the clone's
working copy. On disk it is plaintext; in the remote it is ciphertext.

    pull  ->  clone-if-absent -> fetch -> reset to remote tip -> decrypt in place
    push  ->  snapshot plaintext -> encrypt in place -> commit -> restore plaintext -> push

Only one pull or push runs at a time; a trigger that arrives while one
is in flight is skipped, and the next scheduled pass reconciles. The
store lock is held only for the local steps (reset/decrypt and
encrypt/commit/restore), so readers never see ciphertext and never wait
on the network.

A rejected push is never forced: the engine fetches the remote tip,
folds its records into the local plaintext, rebases onto it, and tries
again within the retry budget.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from ..errors import (
    CipherError,
    LicenseVaultError,
    LocalIOError,
    RemoteConflictError,
    RemoteError,
    SyncError,
)
from ..models import SyncDirection, SyncOutcome, SyncPhase, SyncState
from ..store import RecordStore
from .backup import BackupChannel
from .cipher import Cipher
from .git_remote import GitRemote
from .retry import RetryPolicy, run_with_retry

logger = logging.getLogger("licensevault.sync.engine")

OutcomeCallback = Callable[[SyncOutcome], None]


def commit_message() -> str:
    """Timestamped message for one push cycle."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    return f"licenses: sync {stamp}"


class SyncEngine:
    """Orchestrates encrypted license sync against a git remote.

    Args:
        store: Runtime record store. Its root must be the remote's
            working copy.
        cipher: File cipher.
        remote: Git remote client, or None when only backups are used.
        branch: Remote branch.
        retry: Backoff policy for remote operations.
        backup: Optional secondary backup channel.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        cipher: Cipher,
        remote: Optional[GitRemote] = None,
        branch: str = "main",
        retry: Optional[RetryPolicy] = None,
        backup: Optional[BackupChannel] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if remote is not None and Path(remote.work_dir).resolve() != store.root.resolve():
            raise ValueError(
                "The remote working copy must be the store directory"
            )
        self.store = store
        self.cipher = cipher
        self.remote = remote
        self.branch = branch
        self.retry = retry or RetryPolicy()
        self.backup = backup
        self._sleep = sleep

        self._guard = threading.Lock()
        self._backup_guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SyncState()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        """A copy of the current sync state."""
        with self._state_lock:
            return self._state.model_copy(deep=True)

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._state_lock:
            self._state.phase = phase
            self._state.in_flight = phase != SyncPhase.IDLE

    def _record(self, outcome: SyncOutcome) -> SyncOutcome:
        with self._state_lock:
            if outcome.skipped:
                self._state.skip_count += 1
                return outcome
            if outcome.direction == SyncDirection.PUSH:
                self._state.last_push = outcome
                self._state.push_count += int(outcome.success)
            elif outcome.direction == SyncDirection.PULL:
                self._state.last_pull = outcome
                self._state.pull_count += int(outcome.success)
            else:
                self._state.last_backup = outcome
            if not outcome.success:
                self._state.failure_count += 1
                self._state.last_error = outcome.detail
        return outcome

    def _skipped(self, direction: SyncDirection, detail: str) -> SyncOutcome:
        logger.info("Skipping %s: %s", direction.value, detail)
        return self._record(
            SyncOutcome(direction=direction, success=False, skipped=True, detail=detail)
        )

    def _failed(
        self,
        direction: SyncDirection,
        exc: Exception,
        attempts: int,
        raise_on_failure: bool,
    ) -> SyncOutcome:
        detail = f"{type(exc).__name__}: {exc}"
        logger.error("Sync %s failed after %d attempt(s): %s", direction.value, attempts, detail)
        outcome = self._record(
            SyncOutcome(direction=direction, success=False, attempts=attempts, detail=detail)
        )
        if raise_on_failure:
            raise SyncError(detail) from exc
        return outcome

    # ------------------------------------------------------------------
    # Working copy helpers
    # ------------------------------------------------------------------

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.store.root).as_posix()

    def _decrypt_working_copy(self) -> int:
        """Replace every ciphertext license file with its plaintext.

        Files that are already plaintext (or not ours) stay as they are.
        Caller holds the store lock.
        """
        self._set_phase(SyncPhase.DECRYPTING)
        decrypted = 0
        for path in self.store.files():
            data = self.store.read_bytes(path)
            if data is None:
                continue
            content, was_encrypted = self.cipher.decrypt_or_passthrough(data)
            if was_encrypted:
                self.store.write_bytes(path, content)
                decrypted += 1
            else:
                logger.debug("%s is not encrypted, using as-is", path.name)
        return decrypted

    def _ciphertext_for(self, path: Path, plaintext: bytes) -> bytes:
        """Bytes to stage for one file.

        Reuses the committed blob when it already decrypts to the same
        plaintext, so an unchanged file produces no diff.
        """
        if self.cipher.looks_encrypted(plaintext):
            return plaintext
        committed = self.remote.show(self._relative(path), "HEAD") if self.remote else None
        if committed is not None:
            try:
                if self.cipher.decrypt_bytes(committed) == plaintext:
                    return committed
            except CipherError:
                pass
        return self.cipher.encrypt_bytes(plaintext)

    @contextmanager
    def encrypted_working_copy(self, snapshot: dict[Path, bytes]) -> Iterator[None]:
        """Hold the working copy encrypted for the duration of the block.

        The captured plaintext is always written back on exit, whether
        the block succeeded or raised. Caller holds the store lock.
        """
        self._set_phase(SyncPhase.ENCRYPTING)
        try:
            for path, plaintext in snapshot.items():
                self.store.write_bytes(path, self._ciphertext_for(path, plaintext))
            yield
        finally:
            self._set_phase(SyncPhase.RESTORING)
            failures = []
            for path, plaintext in snapshot.items():
                try:
                    self.store.write_bytes(path, plaintext)
                except LocalIOError as exc:
                    failures.append(f"{path.name}: {exc}")
            if failures:
                raise LocalIOError("Failed to restore plaintext: " + "; ".join(failures))

    def _prepare_clone(self) -> bool:
        """Make sure the store directory is a clone.

        When an existing plaintext directory is adopted, its records are
        folded back in after the remote content is checked out.

        Returns:
            True if the clone was made by this call. The working copy is
            then already at the remote tip and decrypted.
        """
        if self.remote.is_cloned():
            self.remote.ensure_cloned(self.branch)
            return False

        with self.store.lock:
            local = self.store.snapshot()
            self._set_phase(SyncPhase.PULLING)
            self.remote.ensure_cloned(self.branch)
            self._decrypt_working_copy()
            for path, data in local.items():
                content, _ = self.cipher.decrypt_or_passthrough(data)
                self._fold_into(path, content)
        return True

    def _fold_into(self, path: Path, incoming: bytes) -> bool:
        """Merge the records in ``incoming`` into the plaintext at ``path``.

        Returns:
            True if the file on disk changed.
        """
        try:
            incoming_records = self.store.decode(incoming)
        except ValueError as exc:
            logger.warning("Cannot merge %s, content unparsable: %s", path.name, exc)
            return False

        current = self.store.read_bytes(path)
        if current is None:
            self.store.write_bytes(path, incoming)
            return True
        try:
            records = self.store.decode(current)
        except ValueError:
            logger.warning("Local %s unparsable, replacing with merged copy", path.name)
            self.store.write_bytes(path, incoming)
            return True

        if records.merge(incoming_records):
            self.store.write_bytes(path, self.store.encode(records))
            return True
        return False

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(self, raise_on_failure: bool = False) -> SyncOutcome:
        """Bring the local store up to the remote's latest snapshot.

        The remote is authoritative: local edits that were never pushed
        are replaced by the decrypted remote content.
        """
        if self.remote is None:
            return self._skipped(SyncDirection.PULL, "remote sync not configured")
        if not self._guard.acquire(blocking=False):
            return self._skipped(SyncDirection.PULL, "another sync is in flight")
        try:
            return self._pull_locked(raise_on_failure)
        finally:
            self._set_phase(SyncPhase.IDLE)
            self._guard.release()

    def _pull_locked(self, raise_on_failure: bool) -> SyncOutcome:
        attempts = 0

        def attempt() -> int:
            nonlocal attempts
            attempts += 1
            if self._prepare_clone():
                return len(self.store.files())
            self._set_phase(SyncPhase.PULLING)
            has_branch = self.remote.fetch(self.branch)
            with self.store.lock:
                if has_branch:
                    self.remote.reset_to_remote(self.branch, hard=True)
                return self._decrypt_working_copy()

        try:
            decrypted = run_with_retry(
                attempt, self.retry, retry_on=(RemoteError,),
                sleep=self._sleep, label="pull",
            )
        except (RemoteError, LocalIOError) as exc:
            return self._failed(SyncDirection.PULL, exc, attempts, raise_on_failure)

        logger.info("Pulled from %s (%d file(s) decrypted)", self.remote.name, decrypted)
        return self._record(
            SyncOutcome(
                direction=SyncDirection.PULL, success=True,
                attempts=attempts, files=decrypted,
            )
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self, message: Optional[str] = None, raise_on_failure: bool = False
    ) -> SyncOutcome:
        """Publish an encrypted snapshot of the store to the remote.

        Plaintext on disk is restored before this returns, success or
        not. Failure never touches local records.
        """
        if self.remote is None:
            return self._skipped(SyncDirection.PUSH, "remote sync not configured")
        if not self._guard.acquire(blocking=False):
            return self._skipped(SyncDirection.PUSH, "another sync is in flight")
        try:
            return self._push_locked(message, raise_on_failure)
        finally:
            self._set_phase(SyncPhase.IDLE)
            self._guard.release()

    def _push_locked(self, message: Optional[str], raise_on_failure: bool) -> SyncOutcome:
        if not self.store.files():
            logger.info("No license files to push")
            return self._record(
                SyncOutcome(direction=SyncDirection.PUSH, success=True, detail="nothing to sync")
            )

        attempts = 0

        def attempt() -> int:
            nonlocal attempts
            attempts += 1
            self._prepare_clone()
            with self.store.lock:
                snapshot = self.store.snapshot()
                with self.encrypted_working_copy(snapshot):
                    self.remote.commit_all(
                        message or commit_message(),
                        paths=[self._relative(p) for p in snapshot],
                    )
            self._set_phase(SyncPhase.PUSHING)
            self.remote.push(self.branch)
            return len(snapshot)

        def between_attempts(attempt_no: int, exc: BaseException) -> None:
            if isinstance(exc, RemoteConflictError):
                try:
                    self.reconcile_with_remote()
                except (RemoteError, LocalIOError) as reconcile_exc:
                    logger.warning("Reconcile after rejected push failed: %s", reconcile_exc)

        try:
            files = run_with_retry(
                attempt, self.retry, retry_on=(RemoteError,),
                sleep=self._sleep, on_failure=between_attempts, label="push",
            )
        except (RemoteError, LocalIOError) as exc:
            return self._failed(SyncDirection.PUSH, exc, attempts, raise_on_failure)

        logger.info("Pushed %d file(s) to %s", files, self.remote.name)
        return self._record(
            SyncOutcome(
                direction=SyncDirection.PUSH, success=True,
                attempts=attempts, files=files,
            )
        )

    def reconcile_with_remote(self) -> int:
        """Fold the remote tip's records into local plaintext and rebase.

        Used after a rejected push. Records only present remotely are
        added; activation carries over from either side. The local
        branch then moves onto the remote tip with the merged plaintext
        left in the working copy, ready to be committed again.

        Returns:
            Number of local files changed.
        """
        self._set_phase(SyncPhase.PULLING)
        if not self.remote.fetch(self.branch):
            return 0

        changed = 0
        remote_ref = f"origin/{self.branch}"
        with self.store.lock:
            for name in self.remote.remote_files(self.branch):
                path = self.store.root / name
                if not path.match("*.json"):
                    continue
                blob = self.remote.show(name, remote_ref)
                if blob is None:
                    continue
                content, _ = self.cipher.decrypt_or_passthrough(blob)
                if self._fold_into(path, content):
                    changed += 1
            self.remote.reset_to_remote(self.branch, hard=False)

        logger.info("Reconciled with %s: %d file(s) merged", self.remote.name, changed)
        return changed

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def sync_pass(self) -> list[SyncOutcome]:
        """One scheduled pass: push local changes, then pull.

        The pull only runs when the push succeeded, so a failed push
        never lets the remote overwrite unpublished local records.
        """
        outcomes: list[SyncOutcome] = []
        if self.remote is not None:
            if not self._guard.acquire(blocking=False):
                return [self._skipped(SyncDirection.PUSH, "another sync is in flight")]
            try:
                pushed = self._push_locked(None, False)
                outcomes.append(pushed)
                if pushed.success:
                    outcomes.append(self._pull_locked(False))
            finally:
                self._set_phase(SyncPhase.IDLE)
                self._guard.release()

        if self.backup is not None:
            self.backup_in_background()
        return outcomes

    def startup(self) -> SyncOutcome:
        """Initial restore when the process starts.

        Pulls from the remote. With no remote, or when the pull fails
        and there is nothing local, falls back to the backup channel.
        """
        outcome = self.pull()
        if outcome.success or self.backup is None or self.store.files():
            return outcome
        logger.info("Restoring from %s backup", self.backup.name)
        return self.backup_download()

    # ------------------------------------------------------------------
    # Backup channel
    # ------------------------------------------------------------------

    def _backup(self, upload: bool) -> SyncOutcome:
        if self.backup is None:
            return self._skipped(SyncDirection.BACKUP, "backup channel not configured")
        if not self._backup_guard.acquire(blocking=False):
            return self._skipped(SyncDirection.BACKUP, "another backup is in flight")
        try:
            if upload:
                files = self.backup.upload_all(self.store)
            else:
                with self.store.lock:
                    files = self.backup.download_all(self.store)
        except LicenseVaultError as exc:
            return self._failed(SyncDirection.BACKUP, exc, 1, False)
        finally:
            self._backup_guard.release()
        verb = "Uploaded" if upload else "Downloaded"
        return self._record(
            SyncOutcome(
                direction=SyncDirection.BACKUP, success=True, attempts=1,
                files=files, detail=f"{verb} {files} file(s) via {self.backup.name}",
            )
        )

    def backup_upload(self) -> SyncOutcome:
        return self._backup(upload=True)

    def backup_download(self) -> SyncOutcome:
        return self._backup(upload=False)

    # ------------------------------------------------------------------
    # Background
    # ------------------------------------------------------------------

    def _spawn(
        self,
        name: str,
        direction: SyncDirection,
        target: Callable[[], SyncOutcome],
        on_complete: Optional[OutcomeCallback],
    ) -> threading.Thread:
        """Run ``target`` on a detached thread, reporting exactly once."""

        def runner() -> None:
            try:
                outcome = target()
            except Exception as exc:
                logger.exception("Background %s crashed", name)
                outcome = self._record(
                    SyncOutcome(
                        direction=direction, success=False,
                        detail=f"{type(exc).__name__}: {exc}",
                    )
                )
            if on_complete is not None:
                try:
                    on_complete(outcome)
                except Exception:
                    logger.exception("on_complete callback for %s failed", name)

        thread = threading.Thread(target=runner, name=f"licensevault-{name}", daemon=True)
        with self._state_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def push_in_background(self, on_complete: Optional[OutcomeCallback] = None) -> threading.Thread:
        """Fire-and-forget push, e.g. right after a webhook write."""
        return self._spawn("push", SyncDirection.PUSH, self.push, on_complete)

    def pull_in_background(self, on_complete: Optional[OutcomeCallback] = None) -> threading.Thread:
        return self._spawn("pull", SyncDirection.PULL, self.pull, on_complete)

    def backup_in_background(self, on_complete: Optional[OutcomeCallback] = None) -> threading.Thread:
        return self._spawn("backup", SyncDirection.BACKUP, self.backup_upload, on_complete)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join outstanding background threads.

        Returns:
            True if every thread finished within the timeout.
        """
        with self._state_lock:
            threads = list(self._threads)
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)

    def status(self) -> dict:
        """Serializable snapshot for the CLI and daemon."""
        return {
            "remote": self.remote.name if self.remote else None,
            "branch": self.branch,
            "backup": self.backup.name if self.backup else None,
            "files": len(self.store.files()),
            "state": self.state.model_dump(mode="json"),
        }
