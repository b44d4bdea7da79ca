"""
Error taxonomy for the password-store engine.

Components raise the StoreError subclasses below. The StoreService
façade catches them and hands callers a result value carrying the
matching ErrorKind, so front-ends never see a traceback for an
ordinary failure.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Typed failure categories exposed to collaborators."""

    INVALID_PATH = "invalid_path"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    NOT_EMPTY = "not_empty"
    UNSUPPORTED_ENTRY_TYPE = "unsupported_entry_type"
    RECIPIENT_UNAVAILABLE = "recipient_unavailable"
    KEY_UNAVAILABLE = "key_unavailable"
    CORRUPT_CIPHERTEXT = "corrupt_ciphertext"
    SYNC_UNAVAILABLE = "sync_unavailable"
    SYNC_STALE = "sync_stale"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    STORE_ERROR = "store_error"


class StoreError(Exception):
    """Base class for every engine failure."""

    kind: ErrorKind = ErrorKind.STORE_ERROR

    def __init__(self, message: str = "", path: str | None = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.path = path


class InvalidPath(StoreError):
    """Raised when a logical path escapes the store or is malformed."""

    kind = ErrorKind.INVALID_PATH


class NotFound(StoreError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExists(StoreError):
    kind = ErrorKind.ALREADY_EXISTS


class NotEmpty(StoreError):
    """Raised when deleting a non-empty folder without the recursive flag."""

    kind = ErrorKind.NOT_EMPTY


class UnsupportedEntryType(StoreError):
    """Raised for symlinks, FIFOs, devices and other non-regular nodes."""

    kind = ErrorKind.UNSUPPORTED_ENTRY_TYPE


class RecipientUnavailable(StoreError):
    kind = ErrorKind.RECIPIENT_UNAVAILABLE


class KeyUnavailable(StoreError):
    """Raised when the private key or passphrase cannot be obtained in time."""

    kind = ErrorKind.KEY_UNAVAILABLE


class CorruptCiphertext(StoreError):
    kind = ErrorKind.CORRUPT_CIPHERTEXT


class SyncUnavailable(StoreError):
    """Raised when the remote is unreachable or rejects our credentials."""

    kind = ErrorKind.SYNC_UNAVAILABLE


class SyncStale(StoreError):
    """Raised when the remote kept advancing past the push retry budget."""

    kind = ErrorKind.SYNC_STALE


class SyncCancelled(StoreError):
    kind = ErrorKind.CANCELLED


class GitCommandError(StoreError):
    """Raised when a local git command fails for a non-network reason."""

    kind = ErrorKind.STORE_ERROR

    def __init__(self, args: list[str], returncode: int, stderr: str):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {detail}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
