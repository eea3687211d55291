"""
Remote repository client -- the git working copy behind the licenses dir.

The licenses directory is itself a clone of the remote. This client
knows how to get it there, bring it up to date, and publish whatever is
on disk as one commit. It never encrypts anything and never force-pushes;
the sync engine decides what content is on disk while it runs.

All git calls go through ``subprocess`` with an explicit argv and an
environment carrying the credential's transport settings. Anything that
reaches a log line or an exception is masked first.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import RemoteAuthError, RemoteConflictError, RemoteError
from .credentials import GitCredential, NoCredential, mask_text, mask_url

logger = logging.getLogger("licensevault.sync.git_remote")

AUTH_MARKERS = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "host key verification failed",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)

CONFLICT_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "updates were rejected",
)

_MISSING_REF_MARKERS = (
    "couldn't find remote ref",
    "could not find remote ref",
)

# Written to .git/info/exclude: only top-level license files are trackable.
EXCLUDE_RULES = "*\n!*.json\n.*\n"


class GitRemote:
    """Client for one remote git repository mirrored into ``work_dir``.

    Args:
        repo_url: Remote URL, without credentials.
        work_dir: Local working copy (the licenses directory).
        credential: How to authenticate. Defaults to none.
        commit_name: Author/committer name for sync commits.
        commit_email: Author/committer email for sync commits.
        timeout: Seconds allowed per git command.
        git_binary: Name or path of the git executable.
    """

    def __init__(
        self,
        repo_url: str,
        work_dir: Path,
        credential: Optional[GitCredential] = None,
        commit_name: str = "licensevault",
        commit_email: str = "licensevault@localhost",
        timeout: float = 120.0,
        git_binary: str = "git",
    ) -> None:
        if not repo_url:
            raise ValueError("GitRemote requires a repo_url")
        self.repo_url = repo_url
        self.work_dir = Path(work_dir)
        self.credential = credential or NoCredential()
        self.commit_name = commit_name
        self.commit_email = commit_email
        self.timeout = timeout
        self.git_binary = git_binary

    def __repr__(self) -> str:
        return f"GitRemote({self.name!r}, work_dir={str(self.work_dir)!r})"

    @property
    def name(self) -> str:
        """Masked remote URL, safe for logs."""
        return mask_url(self.repo_url)

    def available(self) -> bool:
        return shutil.which(self.git_binary) is not None

    def is_cloned(self) -> bool:
        return (self.work_dir / ".git").exists()

    # ------------------------------------------------------------------
    # Clone / pull
    # ------------------------------------------------------------------

    def ensure_cloned(self, branch: str = "main") -> bool:
        """Clone the remote into ``work_dir`` unless a clone already exists.

        An existing clone only gets its ``origin`` URL refreshed so a
        rotated credential takes effect. A ``work_dir`` that already
        holds files (but no clone) is adopted: the clone happens in a
        temporary sibling and its ``.git`` is moved in.

        Returns:
            True if a clone was made by this call.
        """
        self.credential.prepare()
        url = self.credential.transport_url(self.repo_url)

        if self.is_cloned():
            self._run(["remote", "set-url", "origin", url])
            self._write_excludes()
            return False

        self.work_dir.parent.mkdir(parents=True, exist_ok=True)
        populated = self.work_dir.exists() and any(self.work_dir.iterdir())

        if populated:
            staging = Path(
                tempfile.mkdtemp(prefix=".clone-", dir=str(self.work_dir.parent))
            )
            try:
                self._run(
                    ["clone", "--no-checkout", url, str(staging / "repo")],
                    cwd=self.work_dir.parent,
                )
                shutil.move(str(staging / "repo" / ".git"), str(self.work_dir / ".git"))
            finally:
                shutil.rmtree(staging, ignore_errors=True)
        else:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._run(["clone", url, str(self.work_dir)], cwd=self.work_dir.parent)

        self._write_excludes()
        self._align_branch(branch)
        logger.info("Cloned %s into %s", self.name, self.work_dir)
        return True

    def _write_excludes(self) -> None:
        """Keep temp files and anything that is not a license file untracked."""
        exclude = self.work_dir / ".git" / "info" / "exclude"
        try:
            if exclude.exists() and exclude.read_text() == EXCLUDE_RULES:
                return
            exclude.parent.mkdir(parents=True, exist_ok=True)
            exclude.write_text(EXCLUDE_RULES)
        except OSError as exc:
            raise RemoteError(f"Cannot write {exclude}: {exc}") from exc

    def _align_branch(self, branch: str) -> None:
        """Point the local branch at the remote one, or at an unborn ref."""
        if self._ref_exists(f"refs/remotes/origin/{branch}"):
            self._run(["checkout", "-f", "-B", branch, f"origin/{branch}"])
        else:
            self._run(["symbolic-ref", "HEAD", f"refs/heads/{branch}"])

    def fetch(self, branch: str = "main") -> bool:
        """Fetch one branch from origin.

        Returns:
            False if the remote does not have the branch yet.
        """
        result = self._run(["fetch", "origin", branch], check=False)
        if result.returncode == 0:
            return True
        output = (result.stderr or "").lower()
        if any(marker in output for marker in _MISSING_REF_MARKERS):
            logger.info("Remote %s has no branch %s yet", self.name, branch)
            return False
        raise self._error(["fetch", "origin", branch], result)

    def pull(self, branch: str = "main") -> bool:
        """Fetch and merge ``origin/<branch>``.

        A failed merge is abandoned and the branch is hard-reset to the
        remote tip. Local uncommitted state in the clone is always
        re-derivable from the plaintext store, so dropping it is safe.

        Returns:
            False if there was nothing on the remote to pull.
        """
        if not self.fetch(branch):
            return False
        self.integrate(branch)
        return True

    def integrate(self, branch: str = "main") -> None:
        """Merge the already-fetched ``origin/<branch>``, resetting on failure.

        Local only: no network access.
        """
        merge = self._run(
            ["merge", "--no-edit", f"origin/{branch}"], check=False
        )
        if merge.returncode != 0:
            logger.warning(
                "Merge of origin/%s failed, resetting to remote tip: %s",
                branch,
                self._mask((merge.stderr or merge.stdout or "").strip()),
            )
            self._run(["merge", "--abort"], check=False)
            self.reset_to_remote(branch, hard=True)

    def reset_to_remote(self, branch: str = "main", hard: bool = False) -> None:
        """Move the local branch onto ``origin/<branch>``.

        A soft (mixed) reset keeps the working copy as it is.
        """
        mode = "--hard" if hard else "--mixed"
        self._run(["reset", "-q", mode, f"origin/{branch}"])

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def commit_all(self, message: str, paths: Optional[list[str]] = None) -> bool:
        """Stage the working copy and commit it.

        With ``paths`` only those files are staged; anything else in the
        directory stays out of the commit. Without, every file the
        exclude rules allow is staged. "Nothing to commit" is not an
        error. Local only.

        Returns:
            True if a new commit was created.
        """
        if paths is None:
            self._run(["add", "-A"])
        elif paths:
            self._run(["add", "-A", "--", *paths])

        staged = self._run(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            logger.debug("Nothing to commit in %s", self.work_dir)
            return False

        self._run(["commit", "-q", "-m", message])
        return True

    def push(self, branch: str = "main") -> bool:
        """Push the local branch to ``origin/<branch>``. Never forces.

        Raises:
            RemoteConflictError: The remote has advanced.

        Returns:
            False when there are no commits to push yet.
        """
        if not self.has_head():
            logger.info("No commits yet in %s, nothing to push", self.work_dir)
            return False
        self._run(["push", "origin", f"HEAD:refs/heads/{branch}"])
        logger.info("Pushed %s to %s", branch, self.name)
        return True

    def push_all(
        self, branch: str, message: str, paths: Optional[list[str]] = None
    ) -> bool:
        """Stage, commit, and push to ``origin/<branch>``.

        A rejected push raises ``RemoteConflictError``; the caller
        reconciles and retries rather than forcing.

        Returns:
            True if a new commit was created.
        """
        committed = self.commit_all(message, paths)
        self.push(branch)
        return committed

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list_heads(self) -> list[str]:
        """Check the remote is reachable with the configured credential.

        Runs ``git ls-remote --heads``; needs no working copy.

        Returns:
            Branch names the remote advertises.

        Raises:
            RemoteAuthError: The credential was rejected.
            RemoteError: The remote could not be reached.
        """
        self.credential.prepare()
        url = self.credential.transport_url(self.repo_url)
        cwd = self.work_dir if self.work_dir.is_dir() else Path(tempfile.gettempdir())
        result = self._run(["ls-remote", "--heads", url], cwd=cwd)
        heads = []
        for line in (result.stdout or "").splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/heads/"):
                heads.append(ref[len("refs/heads/"):])
        return heads

    def has_head(self) -> bool:
        result = self._run(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        return result.returncode == 0

    def remote_files(self, branch: str = "main") -> list[str]:
        """Paths tracked at ``origin/<branch>`` (top level only)."""
        if not self._ref_exists(f"refs/remotes/origin/{branch}"):
            return []
        result = self._run(["ls-tree", "--name-only", f"origin/{branch}"])
        return [line for line in result.stdout.splitlines() if line]

    def show(self, path: str, rev: str = "HEAD") -> Optional[bytes]:
        """Content of ``path`` at ``rev``, or None if absent."""
        result = self._run(["show", f"{rev}:{path}"], check=False, text=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def _ref_exists(self, ref: str) -> bool:
        result = self._run(["rev-parse", "--verify", "-q", ref], check=False)
        return result.returncode == 0

    # ------------------------------------------------------------------
    # Subprocess plumbing
    # ------------------------------------------------------------------

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.credential.environment())
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
        return env

    def _mask(self, text: str) -> str:
        return mask_text(text, self.credential.secrets())

    def _run(
        self,
        args: list[str],
        check: bool = True,
        cwd: Optional[Path] = None,
        text: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = [
            self.git_binary,
            "-c", f"user.name={self.commit_name}",
            "-c", f"user.email={self.commit_email}",
            "-c", "commit.gpgsign=false",
            *args,
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=text,
                check=False,
                cwd=str(cwd or self.work_dir),
                env=self._env(),
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteError(
                f"git {args[0]} timed out after {self.timeout:.0f}s",
                command=self._mask(" ".join(args)),
            ) from exc
        except OSError as exc:
            raise RemoteError(
                f"git {args[0]} could not run: {exc}",
                command=self._mask(" ".join(args)),
            ) from exc

        if check and result.returncode != 0:
            raise self._error(args, result)
        return result

    def _error(
        self, args: list[str], result: subprocess.CompletedProcess
    ) -> RemoteError:
        stderr = result.stderr
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        stderr = self._mask((stderr or "").strip())
        command = self._mask("git " + " ".join(args))
        lowered = stderr.lower()

        if any(marker in lowered for marker in AUTH_MARKERS):
            cls: type[RemoteError] = RemoteAuthError
        elif any(marker in lowered for marker in CONFLICT_MARKERS):
            cls = RemoteConflictError
        else:
            cls = RemoteError

        logger.error("Git command failed: %s -> %s", command, stderr)
        return cls(f"{command} failed: {stderr}", command=command, stderr=stderr)
