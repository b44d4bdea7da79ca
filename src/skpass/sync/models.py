"""
Sync data models -- phases, resolutions and the state of an attempt.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..models import Change, ConflictRecord


class SyncPhase(str, Enum):
    """Where a sync attempt currently is."""

    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    CONFLICT = "conflict"
    COMMITTING = "committing"
    PUSHING = "pushing"
    ERROR = "error"


class Resolution(str, Enum):
    """Caller decision for one conflicting entry."""

    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    KEEP_BOTH = "keep-both"


class SyncState(BaseModel):
    """Relationship between local history and the remote.

    Recomputed from Git (HEAD, the remote-tracking ref, their merge
    base); the engine keeps no file of its own.
    """

    phase: SyncPhase = SyncPhase.IDLE
    head: Optional[str] = None
    remote_revision: Optional[str] = None
    last_synced_revision: Optional[str] = None
    local_changes: list[str] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    attempts: int = 0


class SyncReport(BaseModel):
    """Outcome of one synchronize() call."""

    changes: list[Change] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    revision: Optional[str] = None
    pushed: bool = False
    attempts: int = 1

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)
