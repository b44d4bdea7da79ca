"""
Store tree -- the on-disk pass hierarchy seen as folders and entries.

Layout:
    ~/.password-store/
    ├── .gpg-id                # recipients for the whole store
    ├── .git/                  # sync history (optional)
    ├── email/
    │   ├── .gpg-id            # optional per-folder recipients
    │   └── work.gpg           # entry "email/work"
    └── bank.gpg               # entry "bank"

Logical paths use ``/`` and drop the ``.gpg`` suffix. Every mutation is
atomic at the filesystem level: entries are written to a temp file in
the target folder and moved into place, renames are a single rename
call, so a concurrent reader sees the old bytes or the new ones, never
a mixture.

Listings are cached per folder and invalidated on every mutation that
touches the folder, or wholesale after a sync.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import (
    AlreadyExists,
    InvalidPath,
    NotEmpty,
    NotFound,
    StoreError,
    UnsupportedEntryType,
)
from .models import EntryRecord, NodeInfo, NodeKind

logger = logging.getLogger("skpass.tree")

ENTRY_SUFFIX = ".gpg"
MAX_NAME_BYTES = 255


def normalize_path(path: str, allow_root: bool = False) -> str:
    """Validate and normalize a logical store path.

    Backslashes become ``/``, a trailing ``/`` or ``.gpg`` is dropped.

    Args:
        path: Logical path such as ``email/work``.
        allow_root: Accept ``""`` (or ``/``) as the store root.

    Returns:
        Normalized path, ``""`` for the root.

    Raises:
        InvalidPath: Absolute, empty, hidden, overlong or parent-escaping
            segments.
    """
    if path is None:
        raise InvalidPath("path is required")
    raw = path.replace("\\", "/")
    if raw in ("", "/"):
        if allow_root:
            return ""
        raise InvalidPath("path is empty", path=path)
    if raw.startswith("/"):
        raise InvalidPath(f"absolute path not allowed: '{path}'", path=path)
    if raw.endswith("/"):
        raw = raw[:-1]
    if raw.endswith(ENTRY_SUFFIX) and len(raw) > len(ENTRY_SUFFIX):
        raw = raw[: -len(ENTRY_SUFFIX)]

    segments = raw.split("/")
    for segment in segments:
        if not segment:
            raise InvalidPath(f"empty segment in '{path}'", path=path)
        if segment in (".", ".."):
            raise InvalidPath(f"relative segment in '{path}'", path=path)
        if segment.startswith("."):
            raise InvalidPath(f"hidden segment '{segment}' in '{path}'", path=path)
        if "\x00" in segment:
            raise InvalidPath("NUL byte in path", path=path)
        if len((segment + ENTRY_SUFFIX).encode("utf-8", "surrogateescape")) > MAX_NAME_BYTES:
            raise InvalidPath(f"name too long: '{segment[:32]}...'", path=path)
    return "/".join(segments)


def parent_of(path: str) -> str:
    """Logical parent folder, ``""`` for top-level names."""
    return path.rsplit("/", 1)[0] if "/" in path else ""


def ancestors(path: str) -> list[str]:
    """Every ancestor folder of ``path``, nearest first, root excluded."""
    result = []
    current = parent_of(path)
    while current:
        result.append(current)
        current = parent_of(current)
    return result


class StoreTree:
    """Maps the store directory to logical folders and entries.

    Args:
        root: Store root directory (e.g. ~/.password-store).
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self._cache: dict[str, list[NodeInfo]] = {}
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------

    def exists(self) -> bool:
        return self.root.is_dir()

    def folder_dir(self, path: str) -> Path:
        return self.root.joinpath(*path.split("/")) if path else self.root

    def entry_file(self, path: str) -> Path:
        segments = path.split("/")
        return self.root.joinpath(*segments[:-1]) / (segments[-1] + ENTRY_SUFFIX)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def resolve(self, path: str) -> NodeInfo:
        """Find what a logical path refers to.

        Raises:
            InvalidPath: Malformed path.
            NotFound: Nothing at that path.
            UnsupportedEntryType: A symlink or special file, or a name
                that is both a folder and an entry on disk.
        """
        norm = normalize_path(path, allow_root=True)
        if not norm:
            if not self.exists():
                raise NotFound(f"store not found at {self.root}")
            return NodeInfo(name="", kind=NodeKind.FOLDER, path="")

        self._check_lineage(norm)
        name = norm.rsplit("/", 1)[-1]
        file_st = _lstat(self.entry_file(norm))
        dir_st = _lstat(self.folder_dir(norm))

        if file_st is not None and dir_st is not None and stat.S_ISDIR(dir_st.st_mode):
            raise UnsupportedEntryType(
                f"'{norm}' is both a folder and an entry", path=norm
            )
        if dir_st is not None:
            if stat.S_ISDIR(dir_st.st_mode):
                return NodeInfo(name=name, kind=NodeKind.FOLDER, path=norm)
            if not stat.S_ISREG(dir_st.st_mode):
                raise UnsupportedEntryType(f"'{norm}' is not a regular folder", path=norm)
        if file_st is not None:
            if stat.S_ISREG(file_st.st_mode):
                return NodeInfo(
                    name=name,
                    kind=NodeKind.ENTRY,
                    path=norm,
                    modified=_mtime(file_st),
                )
            raise UnsupportedEntryType(f"'{norm}' is not a regular file", path=norm)
        raise NotFound(f"'{norm}' not found", path=norm)

    def list(self, folder_path: str = "") -> list[NodeInfo]:
        """Children of a folder: folders first, then case-insensitive by name.

        Symlinks and special files are included with kind ``unsupported``
        so callers can warn about them.
        """
        node = self.resolve(folder_path)
        if node.kind != NodeKind.FOLDER:
            raise NotFound(f"'{node.path}' is not a folder", path=node.path)

        with self._cache_lock:
            cached = self._cache.get(node.path)
        if cached is not None:
            return list(cached)

        items = self._scan(node.path)
        with self._cache_lock:
            self._cache[node.path] = items
        return list(items)

    def entries(self, folder_path: str = "") -> list[str]:
        """Every entry path under a folder, flat and sorted. Metadata only."""
        return [n.path for n in self.walk(folder_path) if n.kind == NodeKind.ENTRY]

    def walk(self, folder_path: str = "") -> list[NodeInfo]:
        """Every entry under a folder, flat, plus what cannot be an entry.

        Symlinked files and folders and special files are not followed;
        they come back with kind ``unsupported`` so callers can warn.
        """
        node = self.resolve(folder_path)
        if node.kind != NodeKind.FOLDER:
            raise NotFound(f"'{node.path}' is not a folder", path=node.path)
        base = self.folder_dir(node.path)

        found: list[NodeInfo] = []
        for dirpath, dirnames, filenames in os.walk(base):
            rel_dir = Path(dirpath).relative_to(self.root)
            kept = []
            for dname in dirnames:
                if dname.startswith("."):
                    continue
                if os.path.islink(os.path.join(dirpath, dname)):
                    found.append(_walk_node(rel_dir, dname, NodeKind.UNSUPPORTED))
                else:
                    kept.append(dname)
            dirnames[:] = kept

            for fname in filenames:
                if fname.startswith("."):
                    continue
                st = _lstat(Path(dirpath) / fname)
                if st is None:
                    continue
                name = fname
                if fname.endswith(ENTRY_SUFFIX) and fname != ENTRY_SUFFIX:
                    name = fname[: -len(ENTRY_SUFFIX)]
                if stat.S_ISREG(st.st_mode):
                    if name == fname:
                        continue
                    found.append(_walk_node(rel_dir, name, NodeKind.ENTRY, st))
                else:
                    found.append(_walk_node(rel_dir, name, NodeKind.UNSUPPORTED, st))

        for item in found:
            if item.kind == NodeKind.UNSUPPORTED:
                logger.debug("Not an entry (symlink or special file): %s", item.path)
        return sorted(found, key=lambda n: (n.path.casefold(), n.path))

    def read(self, path: str) -> EntryRecord:
        """Load an entry's ciphertext.

        Raises:
            NotFound: Missing, or the path is a folder.
        """
        node = self.resolve(path)
        if node.kind != NodeKind.ENTRY:
            raise NotFound(f"'{node.path}' is a folder, not an entry", path=node.path)
        target = self.entry_file(node.path)
        try:
            data = target.read_bytes()
            modified = _mtime(target.stat())
        except FileNotFoundError as exc:
            raise NotFound(f"'{node.path}' vanished while reading", path=node.path) from exc
        except OSError as exc:
            raise StoreError(f"cannot read '{node.path}': {exc}", path=node.path) from exc
        return EntryRecord(path=node.path, ciphertext=data, modified=modified)

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def create_entry(self, path: str, ciphertext: bytes) -> str:
        """Create a new entry, making intermediate folders as needed.

        Returns:
            The normalized path.

        Raises:
            AlreadyExists: The path (or a parent name) is already taken.
        """
        norm = normalize_path(path)
        try:
            self.resolve(norm)
        except NotFound:
            pass
        else:
            raise AlreadyExists(f"'{norm}' already exists", path=norm)

        with _io_errors("create", norm):
            self._make_parents(norm)
            target = self.entry_file(norm)
            tmp = self._write_temp(target.parent, ciphertext)
            try:
                os.link(tmp, target)
            except FileExistsError as exc:
                raise AlreadyExists(f"'{norm}' already exists", path=norm) from exc
            except OSError:
                # no hard links on this filesystem
                if target.exists():
                    raise AlreadyExists(f"'{norm}' already exists", path=norm)
                os.replace(tmp, target)
            finally:
                tmp.unlink(missing_ok=True)

        self.invalidate(norm)
        logger.debug("Created entry %s", norm)
        return norm

    def replace_entry(self, path: str, ciphertext: bytes) -> str:
        """Atomically overwrite an existing entry's ciphertext.

        Raises:
            NotFound: No entry at that path.
        """
        node = self.resolve(path)
        if node.kind != NodeKind.ENTRY:
            raise NotFound(f"'{node.path}' is a folder, not an entry", path=node.path)
        target = self.entry_file(node.path)
        with _io_errors("write", node.path):
            tmp = self._write_temp(target.parent, ciphertext)
            try:
                os.replace(tmp, target)
            finally:
                tmp.unlink(missing_ok=True)

        self.invalidate(node.path)
        logger.debug("Replaced entry %s", node.path)
        return node.path

    def rename(self, old_path: str, new_path: str) -> tuple[NodeInfo, str]:
        """Move an entry or a whole folder in one rename call.

        Returns:
            (source node, normalized destination path).

        Raises:
            NotFound: Source missing.
            AlreadyExists: Destination occupied.
            InvalidPath: Root source, same path, or folder into itself.
        """
        src = self.resolve(old_path)
        if not src.path:
            raise InvalidPath("cannot rename the store root")
        dst = normalize_path(new_path)
        if dst == src.path:
            raise InvalidPath("source and destination are the same", path=dst)
        if src.kind == NodeKind.FOLDER and dst.startswith(src.path + "/"):
            raise InvalidPath(f"cannot move '{src.path}' into itself", path=dst)

        try:
            self.resolve(dst)
        except NotFound:
            pass
        else:
            raise AlreadyExists(f"'{dst}' already exists", path=dst)

        with _io_errors("move", src.path):
            self._make_parents(dst)
            if src.kind == NodeKind.ENTRY:
                os.rename(self.entry_file(src.path), self.entry_file(dst))
            else:
                os.rename(self.folder_dir(src.path), self.folder_dir(dst))

        self._prune_empty(parent_of(src.path))
        self.invalidate(src.path)
        self.invalidate(dst)
        logger.debug("Renamed %s -> %s", src.path, dst)
        return src, dst

    def delete(self, path: str, recursive: bool = False) -> tuple[NodeInfo, list[str]]:
        """Remove an entry, or a folder.

        A folder with any content (entries, subfolders, a .gpg-id) is only
        removed when ``recursive`` is set.

        Returns:
            (deleted node, entry paths that were removed).

        Raises:
            NotEmpty: Non-empty folder without ``recursive``.
        """
        node = self.resolve(path)
        if not node.path:
            raise InvalidPath("refusing to delete the store root")

        with _io_errors("delete", node.path):
            if node.kind == NodeKind.ENTRY:
                self.entry_file(node.path).unlink()
                removed = [node.path]
            else:
                folder = self.folder_dir(node.path)
                with os.scandir(folder) as it:
                    has_content = any(True for _ in it)
                if has_content and not recursive:
                    raise NotEmpty(f"folder '{node.path}' is not empty", path=node.path)
                removed = self.entries(node.path)
                shutil.rmtree(folder)

        self._prune_empty(parent_of(node.path))
        self.invalidate(node.path)
        logger.debug("Deleted %s (%d entries)", node.path, len(removed))
        return node, removed

    def invalidate(self, path: Optional[str] = None) -> None:
        """Drop cached listings for a path's lineage and subtree, or all."""
        with self._cache_lock:
            if path is None:
                self._cache.clear()
                return
            stale = {"", path, *ancestors(path)}
            prefix = path + "/"
            for key in list(self._cache):
                if key in stale or key.startswith(prefix):
                    del self._cache[key]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _scan(self, folder: str) -> list[NodeInfo]:
        base = self.folder_dir(folder)
        by_name: dict[str, NodeInfo] = {}
        try:
            with os.scandir(base) as it:
                children = list(it)
        except OSError as exc:
            raise StoreError(f"cannot list '{folder or '/'}': {exc}", path=folder) from exc

        for child in children:
            if child.name.startswith("."):
                continue
            st = child.stat(follow_symlinks=False)
            if stat.S_ISDIR(st.st_mode):
                name, kind = child.name, NodeKind.FOLDER
            elif stat.S_ISREG(st.st_mode):
                if not child.name.endswith(ENTRY_SUFFIX) or child.name == ENTRY_SUFFIX:
                    continue
                name, kind = child.name[: -len(ENTRY_SUFFIX)], NodeKind.ENTRY
            else:
                name = child.name
                if name.endswith(ENTRY_SUFFIX) and name != ENTRY_SUFFIX:
                    name = name[: -len(ENTRY_SUFFIX)]
                kind = NodeKind.UNSUPPORTED

            if name in by_name:
                # folder and entry sharing one name breaks the unified namespace
                kind = NodeKind.UNSUPPORTED
            by_name[name] = NodeInfo(
                name=name,
                kind=kind,
                path=f"{folder}/{name}" if folder else name,
                modified=_mtime(st),
            )

        return sorted(by_name.values(), key=_sort_key)

    def _check_lineage(self, path: str) -> None:
        """Reject paths that pass through a symlinked or non-folder parent."""
        for parent in reversed(ancestors(path)):
            st = _lstat(self.folder_dir(parent))
            if st is None:
                raise NotFound(f"'{path}' not found", path=path)
            if stat.S_ISLNK(st.st_mode):
                raise UnsupportedEntryType(f"'{parent}' is a symbolic link", path=parent)
            if not stat.S_ISDIR(st.st_mode):
                raise NotFound(f"'{path}' not found", path=path)

    def _make_parents(self, path: str) -> None:
        for parent in reversed(ancestors(path)):
            if _lstat(self.entry_file(parent)) is not None:
                raise AlreadyExists(
                    f"'{parent}' is an entry and cannot hold '{path}'", path=parent
                )
            st = _lstat(self.folder_dir(parent))
            if st is None:
                self.folder_dir(parent).mkdir(mode=0o700)
            elif stat.S_ISLNK(st.st_mode) or not stat.S_ISDIR(st.st_mode):
                raise UnsupportedEntryType(f"'{parent}' is not a regular folder", path=parent)

    def _write_temp(self, folder: Path, data: bytes) -> Path:
        fd, name = tempfile.mkstemp(dir=folder, prefix=".skpass-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            Path(name).unlink(missing_ok=True)
            raise
        return Path(name)

    def _prune_empty(self, folder: str) -> None:
        """Remove now-empty folders upward, like pass does after rm and mv."""
        current = folder
        while current:
            try:
                self.folder_dir(current).rmdir()
            except OSError:
                return
            logger.debug("Pruned empty folder %s", current)
            current = parent_of(current)


def _lstat(path: Path) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as exc:
        raise StoreError(f"cannot inspect {path.name}: {exc.strerror or exc}") from exc


@contextmanager
def _io_errors(action: str, path: str):
    """Turn a filesystem failure into a StoreError for ``path``."""
    try:
        yield
    except OSError as exc:
        logger.warning("Cannot %s '%s': %s", action, path, exc)
        raise StoreError(f"cannot {action} '{path}': {exc.strerror or exc}", path=path) from exc


def _walk_node(rel_dir: Path, name: str, kind: NodeKind, st: Optional[os.stat_result] = None) -> NodeInfo:
    return NodeInfo(
        name=name,
        kind=kind,
        path=(rel_dir / name).as_posix(),
        modified=_mtime(st) if st is not None else None,
    )


def _mtime(st: os.stat_result) -> datetime:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)


def _sort_key(node: NodeInfo) -> tuple[int, str, str]:
    rank = 0 if node.kind == NodeKind.FOLDER else 1
    return (rank, node.name.casefold(), node.name)
