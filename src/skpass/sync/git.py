"""
Git collaborator -- every git invocation the engine makes goes through here.

GitRunner is the swappable seam (tests may substitute a fake);
SubprocessGitRunner drives the real binary with cancellation and
timeouts; GitRepository wraps the handful of porcelain and plumbing
commands the store and the sync engine need.

Network steps never prompt: GIT_TERMINAL_PROMPT=0 and SSH BatchMode
turn missing credentials into a quick failure instead of a hang.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import (
    ErrorKind,
    GitCommandError,
    StoreError,
    SyncCancelled,
    SyncUnavailable,
)
from ..locks import CancelToken

logger = logging.getLogger("skpass.sync.git")

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
NULL_SHA = "0" * 40

_REJECTED = ("[rejected]", "non-fast-forward", "fetch first", "stale info", "[remote rejected]")
_LITERAL = {"GIT_LITERAL_PATHSPECS": "1"}


class PushRejected(StoreError):
    """The remote moved on since our fetch; a refetch is needed."""

    kind = ErrorKind.SYNC_STALE


@dataclass
class GitResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="surrogateescape")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class TreeItem:
    """A file version inside a git tree."""

    mode: str
    blob: str


class GitRunner(ABC):
    """Runs one git command. Swappable for tests."""

    @abstractmethod
    def run(
        self,
        args: list[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> GitResult:
        """Run ``git <args>`` in ``cwd``.

        Raises:
            SyncCancelled: ``cancel`` fired while the command ran.
            SyncUnavailable: Timed out, or git is not installed.
        """

    def available(self) -> bool:
        return True


class SubprocessGitRunner(GitRunner):
    """GitRunner backed by the git binary.

    Args:
        binary: git executable name or path.
        poll_interval: Seconds between cancellation checks.
    """

    def __init__(self, binary: str = "git", poll_interval: float = 0.1):
        self.binary = binary
        self.poll_interval = poll_interval

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def run(self, args, cwd, env=None, input=None, timeout=None, cancel=None) -> GitResult:
        full_env = os.environ.copy()
        full_env.setdefault("GIT_TERMINAL_PROMPT", "0")
        full_env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        full_env["LC_ALL"] = "C"
        if env:
            full_env.update(env)

        try:
            proc = subprocess.Popen(
                [self.binary, *args],
                cwd=str(cwd),
                env=full_env,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise SyncUnavailable(f"git binary not found: {self.binary}") from exc

        deadline = time.monotonic() + timeout if timeout else None
        pending_input = input
        while True:
            try:
                out, err = proc.communicate(input=pending_input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if cancel is not None and cancel.cancelled:
                    _kill(proc)
                    logger.info("git %s cancelled", args[0])
                    raise SyncCancelled(f"git {args[0]} cancelled")
                if deadline is not None and time.monotonic() > deadline:
                    _kill(proc)
                    raise SyncUnavailable(f"git {args[0]} timed out after {timeout:.0f}s")

        return GitResult(proc.returncode, out or b"", err or b"")


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("git process %s did not exit after kill", proc.pid)


class GitRepository:
    """The store's Git working tree.

    Args:
        root: Store root (the working tree top level).
        runner: Command runner.
        remote: Remote name to sync with.
        branch: Branch to sync; the current branch when None.
        network_timeout: Seconds allowed for fetch, push and clone.
        author_name: Commit author/committer name override.
        author_email: Commit author/committer email override.
    """

    def __init__(
        self,
        root: Path,
        runner: Optional[GitRunner] = None,
        remote: str = "origin",
        branch: Optional[str] = None,
        network_timeout: float = 120.0,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
    ):
        self.root = Path(root)
        self.runner = runner or SubprocessGitRunner()
        self.remote = remote
        self._branch = branch
        self.network_timeout = network_timeout
        self._identity: dict[str, str] = {}
        if author_name:
            self._identity["GIT_AUTHOR_NAME"] = author_name
            self._identity["GIT_COMMITTER_NAME"] = author_name
        if author_email:
            self._identity["GIT_AUTHOR_EMAIL"] = author_email
            self._identity["GIT_COMMITTER_EMAIL"] = author_email
        self._index_lock = threading.Lock()
        self._is_repo: Optional[bool] = None

    # -------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------

    def git(
        self,
        *args: str,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> GitResult:
        merged_env = dict(self._identity)
        if env:
            merged_env.update(env)
        result = self.runner.run(
            list(args), self.root, env=merged_env or None,
            input=input, timeout=timeout, cancel=cancel,
        )
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.error_text)
        return result

    # -------------------------------------------------------------------
    # Repository setup
    # -------------------------------------------------------------------

    def is_repository(self) -> bool:
        """True when the store root is itself a git working tree top level."""
        if self._is_repo:
            return True
        if not self.root.is_dir() or not self.runner.available():
            return False
        result = self.git("rev-parse", "--show-toplevel", check=False)
        if result.returncode != 0:
            return False
        self._is_repo = Path(result.text.strip()).resolve() == self.root.resolve()
        return self._is_repo

    def init(self, branch: str = "main") -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.git("init", "--quiet")
        self.git("symbolic-ref", "HEAD", f"refs/heads/{branch}")
        self._is_repo = None
        logger.info("Initialized git repository in %s", self.root)

    @classmethod
    def clone(
        cls,
        url: str,
        dest: Path,
        runner: Optional[GitRunner] = None,
        timeout: float = 120.0,
        cancel: Optional[CancelToken] = None,
        **kwargs,
    ) -> "GitRepository":
        """Clone a remote store into ``dest``.

        Raises:
            SyncUnavailable: Remote unreachable or credentials rejected.
        """
        runner = runner or SubprocessGitRunner()
        dest = Path(dest).expanduser()
        dest.parent.mkdir(parents=True, exist_ok=True)
        result = runner.run(
            ["clone", "--quiet", url, str(dest)], dest.parent,
            timeout=timeout, cancel=cancel,
        )
        if result.returncode != 0:
            raise SyncUnavailable(f"clone of {url} failed: {_last_line(result.error_text)}")
        logger.info("Cloned %s into %s", url, dest)
        return cls(dest, runner=runner, **kwargs)

    def add_remote(self, url: str) -> None:
        self.git("remote", "add", self.remote, url)

    def has_remote(self) -> bool:
        result = self.git("remote", check=False)
        return self.remote in result.text.split()

    # -------------------------------------------------------------------
    # Refs
    # -------------------------------------------------------------------

    @property
    def branch(self) -> str:
        if self._branch:
            return self._branch
        result = self.git("symbolic-ref", "--short", "-q", "HEAD", check=False)
        name = result.text.strip()
        if result.returncode != 0 or not name:
            raise StoreError("HEAD is detached; configure a branch to sync")
        return name

    def rev_parse(self, ref: str) -> Optional[str]:
        result = self.git("rev-parse", "--verify", "-q", f"{ref}^{{commit}}", check=False)
        sha = result.text.strip()
        return sha if result.returncode == 0 and sha else None

    def head(self) -> Optional[str]:
        return self.rev_parse("HEAD")

    def remote_head(self) -> Optional[str]:
        return self.rev_parse(f"refs/remotes/{self.remote}/{self.branch}")

    def merge_base(self, a: str, b: str) -> Optional[str]:
        result = self.git("merge-base", a, b, check=False)
        sha = result.text.strip()
        return sha if result.returncode == 0 and sha else None

    # -------------------------------------------------------------------
    # Working tree
    # -------------------------------------------------------------------

    def dirty_paths(self, pathspecs: Optional[list[str]] = None) -> list[str]:
        """Files with uncommitted changes, including untracked ones.

        ``pathspecs`` limits the check to those literal paths.
        """
        args = ["status", "--porcelain", "-z", "--untracked-files=all"]
        if pathspecs:
            args += ["--", *pathspecs]
        result = self.git(*args, env=_LITERAL)
        paths: list[str] = []
        records = result.text.split("\0")
        i = 0
        while i < len(records):
            record = records[i]
            i += 1
            if len(record) < 4:
                continue
            status, path = record[:2], record[3:]
            paths.append(path)
            if ("R" in status or "C" in status) and i < len(records):
                # rename source follows
                if records[i]:
                    paths.append(records[i])
                i += 1
        return paths

    def is_dirty(self) -> bool:
        return bool(self.dirty_paths())

    def commit_all(self, message: str, paths: Optional[list[str]] = None) -> Optional[str]:
        """Stage and commit; None when there was nothing to commit.

        With ``paths`` only changes at or below those repository paths
        are recorded, whatever else is pending in the working tree.
        Without, everything is.
        """
        with self._index_lock:
            if paths is None:
                self.git("add", "--all")
                staged = self.git("diff", "--cached", "--quiet", check=False)
                if staged.returncode == 0:
                    return None
                self.git("commit", "--quiet", "--no-verify", "-m", message)
            else:
                changed = self.dirty_paths(paths)
                if not changed:
                    return None
                self.git("add", "--all", "--", *changed, env=_LITERAL)
                self.git(
                    "commit", "--quiet", "--no-verify", "-m", message, "--", *changed,
                    env=_LITERAL,
                )
        sha = self.head()
        logger.info("Committed %s: %s", (sha or "")[:7], message)
        return sha

    def fast_forward(self, commit: str) -> None:
        with self._index_lock:
            self.git("merge", "--ff-only", "--quiet", commit)

    def reset_soft(self, commit: Optional[str]) -> None:
        """Move HEAD back without touching files; None means unborn."""
        with self._index_lock:
            if commit is None:
                self.git("update-ref", "-d", "HEAD")
            else:
                self.git("reset", "--soft", "--quiet", commit)

    # -------------------------------------------------------------------
    # Trees and objects
    # -------------------------------------------------------------------

    def diff_tree(self, a: Optional[str], b: str) -> dict[str, Optional[TreeItem]]:
        """Files that differ between two commits; None marks a deletion in ``b``."""
        result = self.git("diff-tree", "-r", "-z", "--no-renames", "--raw", a or EMPTY_TREE, b)
        changes: dict[str, Optional[TreeItem]] = {}
        fields = result.text.split("\0")
        for i in range(0, len(fields) - 1, 2):
            meta, path = fields[i], fields[i + 1]
            if not meta.startswith(":"):
                continue
            _, new_mode, _, new_sha, _ = meta[1:].split(" ", 4)
            changes[path] = None if new_sha == NULL_SHA else TreeItem(new_mode, new_sha)
        return changes

    def list_files(self, commit: str) -> set[str]:
        result = self.git("ls-tree", "-r", "-z", "--name-only", commit)
        return {p for p in result.text.split("\0") if p}

    def tree_items(self, commit: str) -> dict[str, TreeItem]:
        """Every file in ``commit`` with its mode and blob."""
        result = self.git("ls-tree", "-r", "-z", commit)
        items: dict[str, TreeItem] = {}
        for record in result.text.split("\0"):
            if not record:
                continue
            meta, path = record.split("\t", 1)
            mode, _, blob = meta.split(" ", 2)
            items[path] = TreeItem(mode, blob)
        return items

    def cat_blob(self, blob: str) -> bytes:
        return self.git("cat-file", "blob", blob).stdout

    def build_tree(self, base: str, updates: dict[str, Optional[TreeItem]]) -> str:
        """Write a tree equal to ``base`` with ``updates`` applied.

        Uses a throwaway index file so neither the real index nor the
        working tree is touched.
        """
        scratch = Path(tempfile.mkdtemp(prefix="skpass-index-"))
        env = {"GIT_INDEX_FILE": str(scratch / "index")}
        try:
            self.git("read-tree", base, env=env)
            if updates:
                lines = []
                for path, item in sorted(updates.items()):
                    if item is None:
                        lines.append(f"0 {NULL_SHA}\t{path}")
                    else:
                        lines.append(f"{item.mode} {item.blob}\t{path}")
                payload = ("\n".join(lines) + "\n").encode("utf-8", errors="surrogateescape")
                self.git("update-index", "--index-info", env=env, input=payload)
            return self.git("write-tree", env=env).text.strip()
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def commit_tree(self, tree: str, parents: list[str], message: str) -> str:
        args = ["commit-tree", tree]
        for parent in parents:
            args += ["-p", parent]
        args += ["-m", message]
        return self.git(*args).text.strip()

    # -------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------

    def fetch(self, cancel: Optional[CancelToken] = None) -> None:
        """Update remote-tracking refs. Never touches the working tree.

        Raises:
            SyncUnavailable: Network or authentication failure.
            SyncCancelled: Cancelled mid-fetch.
        """
        result = self.git(
            "fetch", "--quiet", "--prune", self.remote,
            check=False, timeout=self.network_timeout, cancel=cancel,
        )
        if result.returncode != 0:
            raise SyncUnavailable(f"fetch from {self.remote} failed: {_last_line(result.error_text)}")

    def push(self, cancel: Optional[CancelToken] = None) -> None:
        """Push HEAD to the remote branch.

        Raises:
            PushRejected: The remote advanced since our fetch.
            SyncUnavailable: Network or authentication failure.
        """
        result = self.git(
            "push", "--porcelain", self.remote, f"HEAD:refs/heads/{self.branch}",
            check=False, timeout=self.network_timeout, cancel=cancel,
        )
        if result.returncode == 0:
            return
        combined = (result.text + "\n" + result.error_text).lower()
        if any(marker in combined for marker in _REJECTED):
            raise PushRejected("remote advanced during sync")
        raise SyncUnavailable(f"push to {self.remote} failed: {_last_line(result.error_text)}")


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "unknown error"
