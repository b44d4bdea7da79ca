"""
Concurrency gatekeeping for the store.

Three rules, all enforced here:

    mutation on P   -> exclusive lock on P and every ancestor folder
    sync apply      -> tree-wide exclusive lock (waits for mutations to
                       drain; new mutations queue behind it)
    read of P       -> no lock, but waits while a sync is rewriting P

All state sits behind one Condition, so a set of path locks is taken
atomically: no lock ordering, no deadlock between two renames.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from .errors import SyncCancelled
from .tree import ancestors

logger = logging.getLogger("skpass.locks")


def lock_keys(path: str) -> set[str]:
    """The path itself plus its ancestor folders."""
    return {path, *ancestors(path)} if path else set()


class LockManager:
    """Path-scoped and tree-wide locks for one store."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._held: set[str] = set()
        self._active_mutations = 0
        self._tree_exclusive = False
        self._tree_waiting = 0
        self._syncing: frozenset[str] = frozenset()

    @contextmanager
    def mutation(self, *paths: str) -> Iterator[None]:
        """Hold exclusive locks on ``paths`` and their ancestors."""
        keys: set[str] = set()
        for path in paths:
            keys |= lock_keys(path)

        with self._cond:
            self._cond.wait_for(
                lambda: not self._tree_exclusive
                and not self._tree_waiting
                and not (keys & self._held)
            )
            self._held |= keys
            self._active_mutations += 1
        try:
            yield
        finally:
            with self._cond:
                self._held -= keys
                self._active_mutations -= 1
                self._cond.notify_all()

    @contextmanager
    def tree(self) -> Iterator[None]:
        """Hold the whole tree; in-flight mutations finish first."""
        with self._cond:
            self._tree_waiting += 1
            try:
                self._cond.wait_for(
                    lambda: not self._tree_exclusive and self._active_mutations == 0
                )
            finally:
                self._tree_waiting -= 1
            self._tree_exclusive = True
        logger.debug("Tree lock acquired")
        try:
            yield
        finally:
            with self._cond:
                self._tree_exclusive = False
                self._cond.notify_all()
            logger.debug("Tree lock released")

    @contextmanager
    def applying(self, paths: Iterable[str]) -> Iterator[None]:
        """Mark paths as being rewritten by a sync so readers wait."""
        with self._cond:
            self._syncing = frozenset(paths)
        try:
            yield
        finally:
            with self._cond:
                self._syncing = frozenset()
                self._cond.notify_all()

    def wait_readable(self, path: str, timeout: Optional[float] = None) -> bool:
        """Block while ``path`` is part of an in-progress sync apply.

        Returns:
            False if the timeout elapsed first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: path not in self._syncing, timeout=timeout)

    def is_locked(self, path: str) -> bool:
        with self._cond:
            return self._tree_exclusive or path in self._held


class CancelToken:
    """Cooperative cancellation for a sync attempt.

    Cancellation is honoured until the attempt seals itself at the
    start of Committing; after that ``cancel()`` is refused.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._sealed = False
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Request cancellation. Returns False once the attempt is sealed."""
        with self._lock:
            if self._sealed:
                return False
            self._event.set()
            return True

    def seal(self) -> None:
        """Stop accepting cancellation; raises if it already arrived."""
        with self._lock:
            if self._event.is_set():
                raise SyncCancelled("sync cancelled")
            self._sealed = True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def sealed(self) -> bool:
        return self._sealed

    def check(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("sync cancelled")

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)
