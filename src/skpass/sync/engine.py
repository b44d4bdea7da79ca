"""
Sync engine -- one fetch/merge/commit/push cycle against the Git remote.

    Idle -> Fetching -> Merging -> Conflict
                                -> Committing -> Pushing -> Idle
    (any step) -> Error

Fetching runs without the tree lock. Merging, Committing and Pushing
hold it. Everything up to Committing happens on refs and a scratch
index only, so an abort there leaves the working tree untouched; the
working tree moves in a single fast-forward once the attempt is sealed
against cancellation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from ..errors import StoreError, SyncCancelled, SyncStale, SyncUnavailable
from ..locks import CancelToken, LockManager
from ..models import Change, ChangeKind, ConflictRecord
from ..tree import StoreTree
from .git import GitRepository, PushRejected
from .merge import is_entry_file, logical_path, plan_merge
from .models import Resolution, SyncPhase, SyncReport, SyncState

logger = logging.getLogger("skpass.sync.engine")

EXTERNAL_COMMIT_MESSAGE = "Record external changes"
MERGE_COMMIT_MESSAGE = "Merge remote changes"


@dataclass
class _MergeOutcome:
    head: Optional[str]
    target: Optional[str]
    remote: Optional[str]
    conflicts: list[ConflictRecord] = field(default_factory=list)


class SyncEngine:
    """Drives sync attempts for one store.

    Args:
        repo: The store's git repository.
        tree: Store tree, invalidated after remote changes land.
        locks: The store's lock manager.
        push_retries: Refetch rounds allowed after a rejected push.
        on_applied: Called with the entry changes a sync brought in.
    """

    def __init__(
        self,
        repo: GitRepository,
        tree: StoreTree,
        locks: LockManager,
        push_retries: int = 3,
        on_applied: Optional[Callable[[list[Change]], None]] = None,
    ):
        self.repo = repo
        self.tree = tree
        self.locks = locks
        self.push_retries = push_retries
        self.on_applied = on_applied

        self._attempt = threading.Lock()
        self._state_lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._token: Optional[CancelToken] = None
        self._last_sync: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._attempts = 0

    @property
    def phase(self) -> SyncPhase:
        with self._state_lock:
            return self._phase

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._state_lock:
            self._phase = phase
        logger.debug("Sync phase -> %s", phase.value)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def synchronize(
        self,
        resolutions: Optional[Mapping[str, Resolution]] = None,
        token: Optional[CancelToken] = None,
    ) -> SyncReport:
        """Run one sync attempt.

        Args:
            resolutions: Decisions for previously reported conflicts,
                keyed by logical path.
            token: Cancellation token; a fresh one when None.

        Returns:
            SyncReport. When it carries conflicts nothing was applied.

        Raises:
            SyncUnavailable: No repository or remote, network failure,
                or another attempt already running.
            SyncStale: Remote kept advancing past ``push_retries``.
            SyncCancelled: Cancelled before Committing.
        """
        if not self._attempt.acquire(blocking=False):
            raise SyncUnavailable("a sync is already running")
        token = token or CancelToken()
        with self._state_lock:
            self._token = token
            self._last_error = None
        try:
            report = self._run(resolutions or {}, token)
        except SyncCancelled as exc:
            self._finish(SyncPhase.IDLE, str(exc.message))
            logger.info("Sync cancelled; working tree untouched")
            raise
        except StoreError as exc:
            self._finish(SyncPhase.ERROR, exc.message)
            logger.warning("Sync failed: %s", exc.message)
            raise
        except Exception as exc:
            self._finish(SyncPhase.ERROR, str(exc))
            raise
        finally:
            with self._state_lock:
                self._token = None
            self._attempt.release()

        if report.has_conflicts:
            self._finish(SyncPhase.CONFLICT, f"{len(report.conflicts)} conflict(s)")
        else:
            with self._state_lock:
                self._last_sync = datetime.now(timezone.utc)
            self._finish(SyncPhase.IDLE, None)
        return report

    def cancel(self) -> bool:
        """Request cancellation of the running attempt.

        Returns:
            False when nothing is running or Committing has begun.
        """
        with self._state_lock:
            token = self._token
        if token is None:
            return False
        accepted = token.cancel()
        logger.info("Sync cancel %s", "requested" if accepted else "refused (committing)")
        return accepted

    def state(self) -> SyncState:
        """Recompute the sync relationship from Git refs.

        The conflict queue is a dry-run merge plan between HEAD and the
        last fetched remote revision.
        """
        with self._state_lock:
            state = SyncState(
                phase=self._phase,
                last_sync=self._last_sync,
                last_error=self._last_error,
                attempts=self._attempts,
            )
        if not self.repo.is_repository():
            return state

        head = self.repo.head()
        remote = self.repo.remote_head() if self.repo.has_remote() else None
        base = self.repo.merge_base(head, remote) if head and remote else None
        state.head = head
        state.remote_revision = remote
        state.last_synced_revision = base

        changed: set[str] = set()
        if head and head != base:
            changed |= {logical_path(p) for p in self.repo.diff_tree(base, head)}
        changed |= {logical_path(p) for p in self.repo.dirty_paths()}
        state.local_changes = sorted(changed)

        if head and remote and base not in (head, remote):
            plan = plan_merge(
                self.repo.diff_tree(base, head),
                self.repo.diff_tree(base, remote),
                head,
                remote,
                local_files=self.repo.tree_items(head),
            )
            state.conflicts = plan.conflicts
        return state

    # -------------------------------------------------------------------
    # Attempt
    # -------------------------------------------------------------------

    def _run(self, resolutions: Mapping[str, Resolution], token: CancelToken) -> SyncReport:
        if not self.repo.is_repository():
            raise SyncUnavailable(f"{self.repo.root} is not a git repository")
        if not self.repo.has_remote():
            raise SyncUnavailable(f"no remote named '{self.repo.remote}'")

        changes: list[Change] = []
        attempts = 0
        while True:
            attempts += 1
            with self._state_lock:
                self._attempts = attempts

            self._set_phase(SyncPhase.FETCHING)
            logger.info("Fetching from %s (attempt %d)", self.repo.remote, attempts)
            self.repo.fetch(cancel=None if token.sealed else token)
            if not token.sealed:
                token.check()

            with self.locks.tree():
                self._set_phase(SyncPhase.MERGING)
                outcome = self._merge(resolutions, token)
                if outcome.conflicts:
                    self._set_phase(SyncPhase.CONFLICT)
                    return SyncReport(
                        conflicts=outcome.conflicts,
                        revision=outcome.head,
                        attempts=attempts,
                    )

                if not token.sealed:
                    token.seal()
                self._set_phase(SyncPhase.COMMITTING)
                if outcome.target and outcome.target != outcome.head:
                    changes.extend(self._apply(outcome.head, outcome.target))

                self._set_phase(SyncPhase.PUSHING)
                head = self.repo.head()
                if head is None or head == outcome.remote:
                    return SyncReport(changes=changes, revision=head, attempts=attempts)
                try:
                    self.repo.push()
                except PushRejected:
                    if attempts > self.push_retries:
                        raise SyncStale(
                            f"remote kept advancing; gave up after {attempts} attempts"
                        )
                    logger.info("Push rejected, refetching")
                    continue
                logger.info("Pushed %s to %s", head[:7], self.repo.remote)
                return SyncReport(changes=changes, revision=head, pushed=True, attempts=attempts)

    def _merge(self, resolutions: Mapping[str, Resolution], token: CancelToken) -> _MergeOutcome:
        """Work out the commit the working tree should move to.

        Only refs and a scratch index change here; on any failure or
        conflict HEAD is put back where it was.
        """
        repo = self.repo
        pre_head = repo.head()
        try:
            if repo.is_dirty():
                repo.commit_all(EXTERNAL_COMMIT_MESSAGE)
            head = repo.head()
            remote = repo.remote_head()

            if remote is None or head == remote:
                target = head
            elif head is None:
                target = remote
            else:
                base = repo.merge_base(head, remote)
                if base == remote:
                    target = head
                elif base == head:
                    target = remote
                else:
                    head_files = repo.tree_items(head)
                    plan = plan_merge(
                        repo.diff_tree(base, head),
                        repo.diff_tree(base, remote),
                        head,
                        remote,
                        resolutions=resolutions,
                        taken=set(head_files) | repo.list_files(remote),
                        local_files=head_files,
                    )
                    if not plan.clean:
                        self._rollback(pre_head)
                        return _MergeOutcome(head, None, remote, plan.conflicts)
                    tree = repo.build_tree(head, plan.updates)
                    target = repo.commit_tree(tree, [head, remote], MERGE_COMMIT_MESSAGE)
                    logger.info("Merged %s and %s as %s", head[:7], remote[:7], target[:7])
            if not token.sealed:
                token.check()
        except BaseException:
            self._rollback(pre_head)
            raise
        return _MergeOutcome(head, target, remote)

    def _apply(self, head: Optional[str], target: str) -> list[Change]:
        """Move the working tree to ``target`` in one fast-forward."""
        changes = self._entry_changes(head, target)
        with self.locks.applying(c.path for c in changes):
            self.repo.fast_forward(target)
            self.tree.invalidate()
        logger.info("Applied %d remote change(s)", len(changes))
        if changes and self.on_applied is not None:
            self.on_applied(changes)
        return changes

    def _entry_changes(self, head: Optional[str], target: str) -> list[Change]:
        before = self.repo.list_files(head) if head else set()
        changes = []
        for path, item in sorted(self.repo.diff_tree(head, target).items()):
            if not is_entry_file(path):
                continue
            if item is None:
                kind = ChangeKind.REMOVED
            elif path in before:
                kind = ChangeKind.MODIFIED
            else:
                kind = ChangeKind.ADDED
            changes.append(Change(path=logical_path(path), kind=kind))
        return changes

    def _rollback(self, pre_head: Optional[str]) -> None:
        try:
            if self.repo.head() != pre_head:
                self.repo.reset_soft(pre_head)
                logger.info("Restored HEAD to %s", (pre_head or "unborn")[:7])
        except StoreError as exc:
            logger.error("Failed to restore HEAD to %s: %s", pre_head, exc.message)

    def _finish(self, phase: SyncPhase, error: Optional[str]) -> None:
        with self._state_lock:
            self._phase = phase
            self._last_error = error
