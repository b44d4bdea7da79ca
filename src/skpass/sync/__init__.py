"""
Git synchronization for the password store.

    engine = SyncEngine(GitRepository(store_dir), tree, locks)
    report = engine.synchronize()
    if report.has_conflicts:
        engine.synchronize({c.path: Resolution.KEEP_BOTH for c in report.conflicts})
"""

from .engine import SyncEngine
from .git import GitRepository, GitRunner, SubprocessGitRunner
from .models import Resolution, SyncPhase, SyncReport, SyncState

__all__ = [
    "GitRepository",
    "GitRunner",
    "Resolution",
    "SubprocessGitRunner",
    "SyncEngine",
    "SyncPhase",
    "SyncReport",
    "SyncState",
]
