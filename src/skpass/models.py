"""
Pydantic models shared by the store engine and its collaborators.

Nodes describe the tree, changes describe what a mutation did, and the
result models are the discriminated values every StoreService call
returns: applied, conflict or failed, never a bare exception.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind, StoreError
from .secret import SecretView


class NodeKind(str, Enum):
    """What a name in the store tree refers to."""

    FOLDER = "folder"
    ENTRY = "entry"
    UNSUPPORTED = "unsupported"


class NodeInfo(BaseModel):
    """One child in a folder listing. Metadata only, never content."""

    name: str
    kind: NodeKind
    path: str
    modified: Optional[datetime] = None


class EntryRecord(BaseModel):
    """An entry as it lives on disk: logical path plus ciphertext."""

    path: str
    ciphertext: bytes = Field(repr=False)
    modified: datetime

    @property
    def segments(self) -> list[str]:
        return self.path.split("/")


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class Change(BaseModel):
    """A path-level diff item published to subscribers."""

    path: str
    kind: ChangeKind
    old_path: Optional[str] = None
    is_folder: bool = False


class ConflictRecord(BaseModel):
    """One entry changed divergently on both sides of a sync.

    A missing blob means that side deleted the entry. When
    ``folder_side`` is set, the name is an entry on one side and a folder
    on the named side (``local`` or ``remote``).
    """

    path: str
    local_blob: Optional[str] = None
    remote_blob: Optional[str] = None
    local_revision: str = ""
    remote_revision: str = ""
    folder_side: Optional[str] = None

    @property
    def deleted_locally(self) -> bool:
        return self.local_blob is None and self.folder_side is None

    @property
    def deleted_remotely(self) -> bool:
        return self.remote_blob is None and self.folder_side is None


class ResultStatus(str, Enum):
    APPLIED = "applied"
    CONFLICT = "conflict"
    FAILED = "failed"


class OperationResult(BaseModel):
    """Outcome of a mutating operation (write, rename, delete, synchronize)."""

    status: ResultStatus
    changes: list[Change] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    error: Optional[ErrorKind] = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.APPLIED

    @classmethod
    def applied(cls, changes: list[Change], message: str = "", **details: Any) -> "OperationResult":
        return cls(status=ResultStatus.APPLIED, changes=changes, message=message, details=details)

    @classmethod
    def conflict(cls, conflicts: list[ConflictRecord], message: str = "") -> "OperationResult":
        return cls(
            status=ResultStatus.CONFLICT,
            conflicts=conflicts,
            error=ErrorKind.CONFLICT,
            message=message or f"{len(conflicts)} conflicting entr{'y' if len(conflicts) == 1 else 'ies'}",
        )

    @classmethod
    def failed(cls, exc: StoreError) -> "OperationResult":
        return cls(status=ResultStatus.FAILED, error=exc.kind, message=exc.message)


class ReadResult(BaseModel):
    """Outcome of get(): an owned, wipeable secret or a typed failure.

    The caller owns ``secret`` and must wipe it (or use it as a context
    manager) once the value has been shown or copied.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: ResultStatus
    path: str
    secret: Optional[SecretView] = None
    modified: Optional[datetime] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.APPLIED

    @classmethod
    def found(cls, path: str, secret: SecretView, modified: Optional[datetime]) -> "ReadResult":
        return cls(status=ResultStatus.APPLIED, path=path, secret=secret, modified=modified)

    @classmethod
    def failed(cls, path: str, exc: StoreError) -> "ReadResult":
        return cls(status=ResultStatus.FAILED, path=path, error=exc.kind, message=exc.message)


class ListResult(BaseModel):
    """Outcome of list(): ordered children or a typed failure."""

    status: ResultStatus
    path: str
    items: list[NodeInfo] = Field(default_factory=list)
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.APPLIED

    def pairs(self) -> list[tuple[str, NodeKind]]:
        """Return the listing as (name, kind) tuples."""
        return [(item.name, item.kind) for item in self.items]

    @classmethod
    def listed(cls, path: str, items: list[NodeInfo]) -> "ListResult":
        return cls(status=ResultStatus.APPLIED, path=path, items=items)

    @classmethod
    def failed(cls, path: str, exc: StoreError) -> "ListResult":
        return cls(status=ResultStatus.FAILED, path=path, error=exc.kind, message=exc.message)
