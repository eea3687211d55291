"""Tests for the sync engine against a local bare repository."""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import git, remote_file, remote_files, requires_git
from licensevault.errors import RemoteError, SyncError
from licensevault.models import LicenseRecord, SyncDirection, SyncPhase
from licensevault.service import LicenseService
from licensevault.store import RecordStore
from licensevault.sync.backup import LocalBackupChannel
from licensevault.sync.cipher import Cipher
from licensevault.sync.engine import SyncEngine, commit_message
from licensevault.sync.git_remote import GitRemote


def make_engine(root: Path, bare_remote: Path, cipher: Cipher, retry, backup=None) -> SyncEngine:
    store = RecordStore(root)
    remote = GitRemote(str(bare_remote), root)
    return SyncEngine(store, cipher, remote=remote, retry=retry, backup=backup, sleep=lambda s: None)


def add(engine: SyncEngine, key: str, collection: str = "demo") -> None:
    LicenseService(engine.store).record_license(
        collection, LicenseRecord(license_key=key, product_name="Demo")
    )


def keys(engine: SyncEngine, collection: str = "demo") -> list[str]:
    return [r.license_key for r in engine.store.load(collection).records]


def commit_count(bare_remote: Path) -> int:
    return int(git(bare_remote, "rev-list", "--count", "main").stdout.strip())


class TestConstruction:
    """Tests for engine wiring."""

    def test_remote_must_use_store_dir(self, tmp_path, cipher):
        store = RecordStore(tmp_path / "licenses")
        remote = GitRemote("https://example.com/r.git", tmp_path / "elsewhere")
        with pytest.raises(ValueError):
            SyncEngine(store, cipher, remote=remote)

    def test_commit_message(self):
        assert commit_message().startswith("licenses: sync ")

    def test_without_remote_skips(self, store, cipher):
        engine = SyncEngine(store, cipher)
        assert engine.pull().skipped
        assert engine.push().skipped
        assert engine.state.skip_count == 2


@requires_git
class TestPush:
    """Tests for publishing the store."""

    def test_empty_store_is_noop(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        outcome = engine.push()
        assert outcome.success
        assert outcome.detail == "nothing to sync"

    def test_remote_never_holds_plaintext(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        plaintext = (engine.store.root / "demo.json").read_bytes()

        outcome = engine.push()

        assert outcome.success
        assert outcome.files == 1
        assert remote_files(bare_remote) == ["demo.json"]
        stored = remote_file(bare_remote, "demo.json")
        assert b"ABC-123" not in stored
        assert cipher.looks_encrypted(stored)
        assert cipher.decrypt_bytes(stored) == plaintext

    def test_stray_files_never_published(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        plaintext = (engine.store.root / "demo.json").read_bytes()
        (engine.store.root / ".demo.json.x1y2.tmp").write_bytes(plaintext)
        (engine.store.root / "notes.txt").write_bytes(plaintext)

        assert engine.push().success
        add(engine, "DEF-456")
        (engine.store.root / ".demo.json.z9.tmp").write_bytes(plaintext)
        assert engine.push().success

        assert remote_files(bare_remote) == ["demo.json"]
        assert b"ABC-123" not in remote_file(bare_remote, "demo.json")
        assert (engine.store.root / "notes.txt").exists()

    def test_plaintext_restored_after_push(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        add(engine, "ZZZ-999", collection="other")
        before = engine.store.snapshot()

        engine.push()

        assert engine.store.snapshot() == before
        assert engine.state.phase == SyncPhase.IDLE

    def test_plaintext_restored_after_failed_push(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        before = engine.store.snapshot()

        with patch.object(engine.remote, "push", side_effect=RemoteError("network down")) as push:
            outcome = engine.push()

        assert not outcome.success
        assert outcome.attempts == 3
        assert push.call_count == 3
        assert engine.store.snapshot() == before
        assert engine.state.failure_count == 1

    def test_failed_push_can_raise(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        with patch.object(engine.remote, "push", side_effect=RemoteError("network down")):
            with pytest.raises(SyncError):
                engine.push(raise_on_failure=True)

    def test_unchanged_store_makes_no_new_commit(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        engine.push()
        engine.push()
        assert commit_count(bare_remote) == 1

    def test_change_makes_new_commit(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        engine.push()
        add(engine, "DEF-456")
        engine.push()
        assert commit_count(bare_remote) == 2

    def test_skipped_while_in_flight(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        engine._guard.acquire()
        try:
            outcome = engine.push()
        finally:
            engine._guard.release()
        assert outcome.skipped
        assert not engine.remote.is_cloned()


@requires_git
class TestPull:
    """Tests for restoring from the remote."""

    def test_pull_empty_remote_keeps_local(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        outcome = engine.pull()
        assert outcome.success
        assert keys(engine) == ["ABC-123"]

    def test_pull_decrypts_remote(self, tmp_path, bare_remote, cipher, fast_retry):
        a = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(a, "ABC-123")
        a.push()

        b = make_engine(tmp_path / "b", bare_remote, cipher, fast_retry)
        assert b.pull().success
        assert (b.store.root / "demo.json").read_bytes() == (a.store.root / "demo.json").read_bytes()

    def test_pull_overwrites_local_changes(self, tmp_path, bare_remote, cipher, fast_retry):
        a = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        b = make_engine(tmp_path / "b", bare_remote, cipher, fast_retry)
        add(a, "ABC-123")
        a.push()
        b.pull()

        add(b, "LOCAL-ONLY")
        add(a, "DEF-456")
        a.push()

        assert b.pull().success
        assert keys(b) == ["ABC-123", "DEF-456"]
        assert b.store.snapshot()[b.store.root / "demo.json"] == a.store.snapshot()[a.store.root / "demo.json"]

    def test_first_clone_adopts_local_records(self, tmp_path, bare_remote, cipher, fast_retry):
        a = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(a, "ABC-123")
        a.push()

        b = make_engine(tmp_path / "b", bare_remote, cipher, fast_retry)
        add(b, "PRE-EXISTING")
        assert b.pull().success
        assert sorted(keys(b)) == ["ABC-123", "PRE-EXISTING"]

    def test_plaintext_remote_file_is_used_as_is(self, tmp_path, bare_remote, cipher, fast_retry):
        seed = tmp_path / "seed"
        git(tmp_path, "clone", "-q", str(bare_remote), str(seed))
        (seed / "demo.json").write_text('[{"license_key": "PLAIN-1"}]\n')
        git(seed, "add", "-A")
        git(seed, "commit", "-q", "-m", "plaintext")
        git(seed, "push", "-q", "origin", "HEAD:refs/heads/main")

        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        assert engine.pull().success
        assert keys(engine) == ["PLAIN-1"]

    def test_always_failing_pull_is_bounded(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        engine.pull()
        with patch.object(engine.remote, "fetch", side_effect=RemoteError("down")) as fetch:
            outcome = engine.pull()
        assert not outcome.success
        assert fetch.call_count == 3
        assert engine.state.last_pull == outcome


@requires_git
class TestConflicts:
    """Tests for rejected pushes."""

    def test_concurrent_writers_both_survive(self, tmp_path, bare_remote, cipher, fast_retry):
        a = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        b = make_engine(tmp_path / "b", bare_remote, cipher, fast_retry)
        add(a, "ABC-123")
        a.push()
        b.pull()

        add(a, "FROM-A")
        a.push()
        add(b, "FROM-B")
        outcome = b.push()

        assert outcome.success
        assert outcome.attempts == 2
        assert keys(b) == ["ABC-123", "FROM-B", "FROM-A"]

        published = b.store.decode(cipher.decrypt_bytes(remote_file(bare_remote, "demo.json")))
        assert sorted(r.license_key for r in published.records) == ["ABC-123", "FROM-A", "FROM-B"]

        a.pull()
        assert sorted(keys(a)) == ["ABC-123", "FROM-A", "FROM-B"]

    def test_activation_survives_reconcile(self, tmp_path, bare_remote, cipher, fast_retry):
        a = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        b = make_engine(tmp_path / "b", bare_remote, cipher, fast_retry)
        add(a, "ABC-123")
        a.push()
        b.pull()

        LicenseService(a.store).activate_license("demo", "ABC-123")
        a.push()
        add(b, "FROM-B")
        assert b.push().success

        assert b.store.load("demo").get("ABC-123").activated is True


@requires_git
class TestPasses:
    """Tests for scheduled passes and background work."""

    def test_sync_pass_pushes_then_pulls(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        outcomes = engine.sync_pass()
        assert [o.direction for o in outcomes] == [SyncDirection.PUSH, SyncDirection.PULL]
        assert all(o.success for o in outcomes)
        assert keys(engine) == ["ABC-123"]

    def test_failed_push_skips_pull(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        with patch.object(engine.remote, "push", side_effect=RemoteError("down")):
            outcomes = engine.sync_pass()
        assert [o.direction for o in outcomes] == [SyncDirection.PUSH]
        assert keys(engine) == ["ABC-123"]

    def test_background_push_reports_once(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        seen = []
        done = threading.Event()

        def on_complete(outcome):
            seen.append(outcome)
            done.set()

        thread = engine.push_in_background(on_complete=on_complete)
        assert thread.name == "licensevault-push"
        assert done.wait(30)
        assert engine.wait(30)
        assert len(seen) == 1
        assert seen[0].success

    def test_status(self, tmp_path, bare_remote, cipher, fast_retry):
        engine = make_engine(tmp_path / "a", bare_remote, cipher, fast_retry)
        add(engine, "ABC-123")
        engine.push()
        status = engine.status()
        assert status["files"] == 1
        assert status["state"]["push_count"] == 1
        assert status["state"]["last_push"]["success"] is True


class TestBackupPaths:
    """Tests for engine-driven backups without a git remote."""

    def test_sync_pass_uploads_backup(self, store, cipher, tmp_path):
        backup = LocalBackupChannel(cipher, tmp_path / "backup")
        engine = SyncEngine(store, cipher, backup=backup)
        LicenseService(store).record_license("demo", {"license_key": "ABC-123"})

        assert engine.sync_pass() == []
        assert engine.wait(10)
        uploaded = (tmp_path / "backup" / "demo.json").read_bytes()
        assert cipher.looks_encrypted(uploaded)
        assert engine.state.last_backup.success

    def test_startup_restores_from_backup(self, store, cipher, tmp_path):
        target = tmp_path / "backup"
        target.mkdir()
        (target / "demo.json").write_bytes(cipher.encrypt_bytes(b'[{"license_key": "ABC-123"}]\n'))
        engine = SyncEngine(store, cipher, backup=LocalBackupChannel(cipher, target))

        outcome = engine.startup()

        assert outcome.direction == SyncDirection.BACKUP
        assert outcome.success
        assert store.load("demo").get("ABC-123") is not None

    def test_startup_keeps_existing_store(self, store, cipher, tmp_path):
        LicenseService(store).record_license("demo", {"license_key": "LOCAL"})
        engine = SyncEngine(store, cipher, backup=LocalBackupChannel(cipher, tmp_path / "backup"))
        outcome = engine.startup()
        assert outcome.skipped
        assert store.load("demo").get("LOCAL") is not None
