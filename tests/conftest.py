"""Shared test fixtures for licensevault."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from licensevault.models import StoreLayout
from licensevault.store import RecordStore
from licensevault.sync.cipher import Cipher
from licensevault.sync.retry import RetryPolicy

PASSPHRASE = "correct horse battery staple"

ENV_VARS = (
    "LICENSEVAULT_HOME",
    "LICENSEVAULT_REPO_URL",
    "GITHUB_REPO",
    "LICENSEVAULT_BRANCH",
    "LICENSEVAULT_GIT_TOKEN",
    "GITHUB_TOKEN",
    "LICENSEVAULT_GIT_SSH_KEY",
    "GIT_SSH_KEY",
    "LICENSEVAULT_ENCRYPTION_KEY",
    "ENCRYPTION_KEY",
    "LICENSEVAULT_SYNC_INTERVAL",
    "LICENSEVAULT_LAYOUT",
    "LICENSEVAULT_BACKUP",
    "DROPBOX_ACCESS_TOKEN",
    "DROPBOX_FOLDER_PATH",
    "LICENSEVAULT_BACKUP_PATH",
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's own licensevault settings out of every test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary licensevault home directory."""
    home = tmp_path / ".licensevault"
    home.mkdir()
    return home


@pytest.fixture
def cipher() -> Cipher:
    return Cipher.from_passphrase(PASSPHRASE)


@pytest.fixture
def store(tmp_home: Path) -> RecordStore:
    return RecordStore(tmp_home / "licenses")


@pytest.fixture
def combined_store(tmp_home: Path) -> RecordStore:
    return RecordStore(tmp_home / "licenses", layout=StoreLayout.COMBINED)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts, no waiting."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0)


def git(cwd: Path, *args: str) -> subprocess.CompletedProcess:
    """Run a git command for test setup, failing loudly."""
    return subprocess.run(
        [
            "git",
            "-c", "user.name=test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=str(cwd),
        capture_output=True,
        check=True,
    )


@pytest.fixture
def bare_remote(tmp_path: Path) -> Path:
    """An empty bare repository whose default branch is main."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    remote = tmp_path / "remote.git"
    remote.mkdir()
    git(remote, "init", "--bare", "-q")
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    return remote


def remote_file(remote: Path, name: str, branch: str = "main") -> bytes:
    """Content of ``name`` at the tip of ``branch`` in a bare repository."""
    return git(remote, "show", f"{branch}:{name}").stdout


def remote_files(remote: Path, branch: str = "main") -> list[str]:
    out = git(remote, "ls-tree", "--name-only", branch).stdout.decode()
    return [line for line in out.splitlines() if line]
