"""
Audit trail -- an append-only record of what happened to the store.

Format is JSONL (one JSON object per line): machine-parseable and safe
to append from several threads. Entries name paths and event types
only; secret material never reaches this file.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("skpass.audit")

AUDIT_LOG_NAME = "audit.log"

_write_lock = threading.Lock()


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    store: Optional[str] = None
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    store: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: Engine home directory.
        event_type: Event category (INIT, WRITE, RENAME, DELETE, SYNC, CONFLICT).
        detail: Human-readable event description.
        store: Store root the event belongs to.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    home.mkdir(parents=True, exist_ok=True)
    audit_log = home / AUDIT_LOG_NAME

    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        store=store,
        metadata=metadata,
    )

    with _write_lock, audit_log.open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")

    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read entries back, oldest first.

    Args:
        home: Engine home directory.
        limit: Return only the last N entries (0 = all).

    Returns:
        Parsed entries; malformed lines are skipped with a warning.
    """
    audit_log = home / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Skipping malformed audit line: %s", exc)

    if limit > 0:
        return entries[-limit:]
    return entries
