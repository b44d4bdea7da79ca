"""
Store service -- the façade every front-end talks to.

Ties StoreTree, EntryCodec and SyncEngine together, serializes
mutations through path-scoped locks and hands back result values
instead of exceptions:

    service = StoreService()
    result = service.write("email/work", "hunter2\\nlogin: alice\\n")
    if result.ok:
        with service.get("email/work").secret as secret:
            print(secret.password)

Every applied mutation is committed to Git (when the store is a
repository), appended to the audit log and published on the change
bus so subscribers can patch their view instead of re-listing.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from .audit import audit_event
from .codec import EntryCodec, GpgCodec
from .config import StoreConfig, load_config, skpass_home
from .errors import AlreadyExists, InvalidPath, NotFound, StoreError
from .events import ChangeBus, ChangeEvent, Subscription
from .locks import LockManager
from .models import (
    Change,
    ChangeKind,
    ConflictRecord,
    ListResult,
    NodeInfo,
    NodeKind,
    OperationResult,
    ReadResult,
)
from .recipients import GPG_ID_FILE, recipients_for, write_gpg_id
from .secret import SecretView
from .sync import GitRepository, GitRunner, Resolution, SubprocessGitRunner, SyncEngine, SyncState
from .sync.models import SyncPhase
from .tree import ENTRY_SUFFIX, StoreTree, normalize_path

logger = logging.getLogger("skpass.service")

Content = Union[str, bytes, bytearray, SecretView]


class StoreService:
    """Race-free access to one password store.

    Args:
        config: Engine configuration. Loaded from ``home`` when None.
        codec: Encryption collaborator. GpgCodec from config when None.
        git_runner: Git collaborator. The git binary when None.
        bus: Change bus to publish on. A private one when None.
        home: Engine home (config and audit log).
        store_dir: Store root override.
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        codec: Optional[EntryCodec] = None,
        git_runner: Optional[GitRunner] = None,
        bus: Optional[ChangeBus] = None,
        home: Optional[Path] = None,
        store_dir: Optional[Path] = None,
    ):
        self.home = skpass_home(home)
        self.config = config or load_config(self.home)
        self.root = Path(store_dir or self.config.store_dir).expanduser()

        self.tree = StoreTree(self.root)
        self.codec = codec or GpgCodec(
            gpg_binary=self.config.gpg_binary,
            armor=self.config.armor,
            passphrase_method=self.config.passphrase_method,
            default_timeout=self.config.decrypt_timeout,
        )
        self.locks = LockManager()
        self.bus = bus or ChangeBus()
        self.repo = GitRepository(
            self.root,
            runner=git_runner or SubprocessGitRunner(self.config.git_binary),
            remote=self.config.remote,
            branch=self.config.branch,
            network_timeout=self.config.network_timeout,
            author_name=self.config.git_author_name,
            author_email=self.config.git_author_email,
        )
        self.sync_engine = SyncEngine(
            self.repo,
            self.tree,
            self.locks,
            push_retries=self.config.push_retries,
            on_applied=self._on_sync_applied,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="skpass-decrypt"
        )
        self._pending_conflicts: list[ConflictRecord] = []

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "StoreService":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, path: str, timeout: Optional[float] = None) -> ReadResult:
        """Decrypt one entry.

        Blocks only while a sync is rewriting this very path, then for as
        long as the key agent takes (bounded by ``timeout``). The caller
        owns the returned SecretView and should wipe it when done.
        """
        try:
            norm = normalize_path(path)
            self.locks.wait_readable(norm)
            record = self.tree.read(norm)
            secret = self.codec.decrypt(record.ciphertext, timeout=self._timeout(timeout))
        except OSError as exc:
            return ReadResult.failed(path, _io_failure(path, exc))
        except StoreError as exc:
            logger.debug("get %s failed: %s", path, exc.message)
            return ReadResult.failed(path, exc)
        return ReadResult.found(norm, secret, record.modified)

    def submit_get(self, path: str, timeout: Optional[float] = None) -> Future:
        """Run get() on the decrypt pool; the Future resolves to a ReadResult."""
        return self._pool.submit(self.get, path, timeout)

    def list(self, folder_path: str = "") -> ListResult:
        """Children of a folder, folders first. Never decrypts."""
        try:
            norm = normalize_path(folder_path, allow_root=True)
            self.locks.wait_readable(norm)
            items = self.tree.list(norm)
        except StoreError as exc:
            return ListResult.failed(folder_path, exc)
        return ListResult.listed(norm, items)

    def entries(self, folder_path: str = "") -> ListResult:
        """Every entry below a folder, flat. Metadata only.

        Symlinks and special files are included with kind ``unsupported``.
        """
        try:
            norm = normalize_path(folder_path, allow_root=True)
            items = self.tree.walk(norm)
        except StoreError as exc:
            return ListResult.failed(folder_path, exc)
        return ListResult.listed(norm, items)

    def search(self, *terms: str) -> ListResult:
        """Entries whose path contains every term, case-insensitively.

        This is what a desktop search provider calls: names only, no
        decryption, no passphrase prompt.
        """
        result = self.entries()
        if not result.ok:
            return result
        needles = [t.casefold() for t in terms if t]
        result.items = [
            item for item in result.items
            if all(n in item.path.casefold() for n in needles)
        ]
        return result

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def write(self, path: str, content: Content) -> OperationResult:
        """Create or overwrite an entry."""
        return self._write(path, content, create_only=False)

    def insert(self, path: str, content: Content) -> OperationResult:
        """Create an entry; fails with already_exists when the path is taken."""
        return self._write(path, content, create_only=True)

    def _write(self, path: str, content: Content, create_only: bool) -> OperationResult:
        plaintext = bytearray()
        try:
            norm = normalize_path(path)
            plaintext = _plaintext(content)
            with self.locks.mutation(norm):
                recipients = recipients_for(self.root, norm)
                ciphertext = self.codec.encrypt(bytes(plaintext), recipients)
                change = self._store(norm, ciphertext, create_only)
                verb = "Add" if change.kind == ChangeKind.ADDED else "Update"
                committed = self._commit(f"{verb} {norm}", [_entry_file(norm)])
        except StoreError as exc:
            return self._failed("WRITE", path, exc)
        except OSError as exc:
            return self._failed("WRITE", path, _io_failure(path, exc))
        finally:
            for i in range(len(plaintext)):
                plaintext[i] = 0

        self._announce("WRITE", f"{verb} {norm}", [change])
        past = "added" if change.kind == ChangeKind.ADDED else "updated"
        return OperationResult.applied([change], f"{past} {norm}", committed=committed)

    def rename(self, old_path: str, new_path: str) -> OperationResult:
        """Move an entry or a whole folder."""
        try:
            src = normalize_path(old_path)
            dst = normalize_path(new_path)
            with self.locks.mutation(src, dst):
                node, dst = self.tree.rename(src, dst)
                committed = self._commit(f"Rename {src} to {dst}", _node_files(node, src, dst))
        except StoreError as exc:
            return self._failed("RENAME", old_path, exc)
        except OSError as exc:
            return self._failed("RENAME", old_path, _io_failure(old_path, exc))

        change = Change(
            path=dst,
            kind=ChangeKind.RENAMED,
            old_path=src,
            is_folder=node.kind == NodeKind.FOLDER,
        )
        self._announce("RENAME", f"Rename {src} to {dst}", [change])
        return OperationResult.applied([change], f"renamed {src} to {dst}", committed=committed)

    def delete(self, path: str, recursive: bool = False) -> OperationResult:
        """Remove an entry, or a folder (non-empty ones need ``recursive``)."""
        try:
            norm = normalize_path(path)
            with self.locks.mutation(norm):
                node, removed = self.tree.delete(norm, recursive=recursive)
                committed = self._commit(f"Remove {norm}", _node_files(node, norm))
        except StoreError as exc:
            return self._failed("DELETE", path, exc)
        except OSError as exc:
            return self._failed("DELETE", path, _io_failure(path, exc))

        if node.kind == NodeKind.FOLDER:
            changes = [Change(path=norm, kind=ChangeKind.REMOVED, is_folder=True)]
            changes += [Change(path=p, kind=ChangeKind.REMOVED) for p in removed]
        else:
            changes = [Change(path=norm, kind=ChangeKind.REMOVED)]
        self._announce("DELETE", f"Remove {norm}", changes)
        return OperationResult.applied(changes, f"removed {norm}", committed=committed)

    def init_store(self, recipients: list[str], path: str = "", git: bool = False) -> OperationResult:
        """Set the recipients for the store or a subfolder.

        Existing entries below ``path`` are re-encrypted for the new
        recipients, as ``pass init`` does. An empty list removes a
        subfolder's .gpg-id so it inherits from its parent again.

        Args:
            recipients: GPG key ids, fingerprints or emails.
            path: Subfolder, ``""`` for the whole store.
            git: Also initialize a git repository at the store root.
        """
        try:
            norm = normalize_path(path, allow_root=True)
            if not recipients and not norm:
                raise InvalidPath("the store root needs at least one recipient")

            with self.locks.tree():
                folder = self.tree.folder_dir(norm)
                if recipients:
                    write_gpg_id(folder, recipients)
                else:
                    (folder / GPG_ID_FILE).unlink(missing_ok=True)
                    logger.info("Removed %s from %s", GPG_ID_FILE, folder)
                self.tree.invalidate()
                changes = self._reencrypt(norm)
                if git and not self.repo.is_repository():
                    self.repo.init()
                subject = f"Set recipients for {norm or 'store'}"
                gpg_id = f"{norm}/{GPG_ID_FILE}" if norm else GPG_ID_FILE
                committed = self._commit(subject, [gpg_id, *(_entry_file(c.path) for c in changes)])
        except StoreError as exc:
            return self._failed("INIT", path, exc)
        except OSError as exc:
            return self._failed("INIT", path, StoreError(f"cannot initialize store: {exc}"))

        self._announce("INIT", subject, changes, recipients=list(recipients))
        return OperationResult.applied(
            changes, subject, committed=committed, reencrypted=len(changes)
        )

    def clone_store(self, url: str) -> OperationResult:
        """Clone a remote store into the (empty or missing) store root."""
        try:
            if self.root.exists() and any(self.root.iterdir()):
                raise AlreadyExists(f"{self.root} is not empty")
            GitRepository.clone(
                url, self.root, runner=self.repo.runner, timeout=self.config.network_timeout
            )
            self.tree.invalidate()
        except StoreError as exc:
            return self._failed("INIT", url, exc)

        changes = [Change(path=p, kind=ChangeKind.ADDED) for p in self.tree.entries()]
        self._announce("INIT", f"Clone {url}", changes)
        return OperationResult.applied(changes, f"cloned {url}")

    # -------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------

    def synchronize(
        self, resolutions: Optional[Mapping[str, Union[str, Resolution]]] = None
    ) -> OperationResult:
        """Fetch, merge, commit and push.

        Returns:
            applied with the remote changes, conflict with the queue
            (nothing applied), or failed with the error kind.
        """
        try:
            decisions = {
                _resolution_key(path): Resolution(choice)
                for path, choice in (resolutions or {}).items()
            }
        except ValueError as exc:
            return self._failed("SYNC", "", StoreError(f"unknown resolution: {exc}"))

        try:
            report = self.sync_engine.synchronize(decisions)
        except StoreError as exc:
            return self._failed("SYNC", "", exc)

        if report.has_conflicts:
            self._pending_conflicts = list(report.conflicts)
            self._audit(
                "CONFLICT",
                f"{len(report.conflicts)} conflicting entries",
                paths=[c.path for c in report.conflicts],
            )
            return OperationResult.conflict(report.conflicts)

        self._pending_conflicts = []
        self._audit(
            "SYNC",
            f"Synchronized at {(report.revision or 'empty')[:7]}",
            changes=len(report.changes),
            pushed=report.pushed,
        )
        return OperationResult.applied(
            report.changes,
            f"synchronized ({len(report.changes)} incoming change(s))",
            revision=report.revision,
            pushed=report.pushed,
            attempts=report.attempts,
        )

    def cancel_sync(self) -> bool:
        """Cancel the running sync. False once it has started committing."""
        return self.sync_engine.cancel()

    def sync_state(self) -> SyncState:
        try:
            return self.sync_engine.state()
        except StoreError as exc:
            logger.warning("Cannot read sync state: %s", exc.message)
            return SyncState(phase=SyncPhase.ERROR, last_error=exc.message)

    def get_conflict_version(
        self, path: str, side: str, timeout: Optional[float] = None
    ) -> ReadResult:
        """Decrypt one side (``local`` or ``remote``) of a queued conflict."""
        try:
            key = _resolution_key(path)
            if side not in ("local", "remote"):
                raise InvalidPath(f"side must be 'local' or 'remote', not '{side}'")
            queue = self._pending_conflicts or self.sync_engine.state().conflicts
            record = next((c for c in queue if c.path == key), None)
            if record is None:
                raise NotFound(f"no pending conflict for '{key}'", path=key)
            blob = record.local_blob if side == "local" else record.remote_blob
            if blob is None:
                state = "a folder" if record.folder_side == side else "deleted"
                raise NotFound(f"'{key}' is {state} on the {side} side", path=key)
            secret = self.codec.decrypt(self.repo.cat_blob(blob), timeout=self._timeout(timeout))
        except StoreError as exc:
            return ReadResult.failed(path, exc)
        return ReadResult.found(key, secret, None)

    # -------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------

    def subscribe(
        self, callback: Callable[[ChangeEvent], None], pattern: str = "*"
    ) -> Subscription:
        return self.bus.subscribe(callback, pattern)

    def unsubscribe(self, subscription: Union[Subscription, str]) -> bool:
        return self.bus.unsubscribe(subscription)

    def invalidate(self, path: Optional[str] = None) -> None:
        """Drop cached listings after an external change to the store."""
        self.tree.invalidate(path)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _store(self, norm: str, ciphertext: bytes, create_only: bool) -> Change:
        for attempt in (1, 2):
            try:
                node = self.tree.resolve(norm)
            except NotFound:
                node = None
            if node is not None:
                if node.kind != NodeKind.ENTRY or create_only:
                    raise AlreadyExists(f"'{norm}' already exists", path=norm)
                self.tree.replace_entry(norm, ciphertext)
                return Change(path=norm, kind=ChangeKind.MODIFIED)
            try:
                self.tree.create_entry(norm, ciphertext)
                return Change(path=norm, kind=ChangeKind.ADDED)
            except AlreadyExists:
                if attempt == 2:
                    raise
                logger.debug("'%s' appeared while creating it; reloading", norm)
                self.tree.invalidate(norm)
        raise AlreadyExists(f"'{norm}' already exists", path=norm)

    def _reencrypt(self, folder: str) -> list[Change]:
        changes = []
        for path in self.tree.entries(folder):
            recipients = recipients_for(self.root, path)
            record = self.tree.read(path)
            with self.codec.decrypt(record.ciphertext, timeout=self.config.decrypt_timeout) as secret:
                ciphertext = self.codec.encrypt(secret.to_bytes(), recipients)
            self.tree.replace_entry(path, ciphertext)
            changes.append(Change(path=path, kind=ChangeKind.MODIFIED))
        if changes:
            logger.info("Re-encrypted %d entr(ies) under %s", len(changes), folder or "/")
        return changes

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.config.decrypt_timeout

    def _commit(self, message: str, paths: list[str]) -> bool:
        """Record the mutation's files in git. Failure leaves it applied."""
        if not self.config.auto_commit or not self.repo.is_repository():
            return False
        try:
            return self.repo.commit_all(message, paths) is not None
        except StoreError as exc:
            logger.warning("Applied but not committed (%s): %s", message, exc.message)
            return False

    def _announce(self, event_type: str, detail: str, changes: list[Change], **metadata) -> None:
        self._audit(event_type, detail, **metadata)
        self.bus.publish(changes, origin="local")

    def _on_sync_applied(self, changes: list[Change]) -> None:
        self.bus.publish(changes, origin="sync")

    def _audit(self, event_type: str, detail: str, **metadata) -> None:
        if not self.config.audit:
            return
        try:
            audit_event(self.home, event_type, detail, store=str(self.root), metadata=metadata or None)
        except OSError as exc:
            logger.warning("Failed to write audit entry: %s", exc)

    def _failed(self, event_type: str, path: str, exc: StoreError) -> OperationResult:
        logger.info("%s %s failed: %s", event_type.lower(), path, exc.message)
        return OperationResult.failed(exc)


def _plaintext(content: Content) -> bytearray:
    if isinstance(content, SecretView):
        if content.wiped:
            raise StoreError("cannot write a secret that has been wiped")
        return bytearray(content.to_bytes())
    if isinstance(content, str):
        return bytearray(content.encode("utf-8"))
    return bytearray(content)


def _entry_file(path: str) -> str:
    return path + ENTRY_SUFFIX


def _node_files(node: NodeInfo, *paths: str) -> list[str]:
    """Repository paths a mutation of ``node`` touched."""
    if node.kind == NodeKind.ENTRY:
        return [_entry_file(p) for p in paths]
    return list(paths)


def _io_failure(path: str, exc: OSError) -> StoreError:
    return StoreError(f"cannot access '{path}': {exc.strerror or exc}", path=path)


def _resolution_key(path: str) -> str:
    return path[:-4] if path.endswith(".gpg") else path
