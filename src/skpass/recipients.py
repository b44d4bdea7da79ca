"""
Recipient lookup -- which GPG identities a path is encrypted for.

pass keeps the identities in a ``.gpg-id`` file, one per line. A
subfolder without its own file inherits the nearest ancestor's. The
set is read fresh for every encryption so a key rotation takes effect
immediately.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import RecipientUnavailable, StoreError

logger = logging.getLogger("skpass.recipients")

GPG_ID_FILE = ".gpg-id"


@dataclass(frozen=True)
class RecipientSet:
    """GPG key identities for one encrypt operation.

    Attributes:
        identities: Key ids, fingerprints or emails, in file order.
        source: The .gpg-id file they came from (None for env overrides).
    """

    identities: tuple[str, ...]
    source: Optional[Path] = field(default=None, compare=False)

    def __bool__(self) -> bool:
        return bool(self.identities)

    def __iter__(self):
        return iter(self.identities)


def parse_gpg_id(text: str) -> tuple[str, ...]:
    """Parse .gpg-id content, dropping blanks and # comments."""
    ids: list[str] = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line and line not in ids:
            ids.append(line)
    return tuple(ids)


def find_gpg_id(root: Path, folder: Path) -> Optional[Path]:
    """Walk from ``folder`` up to ``root`` looking for a .gpg-id file."""
    current = folder
    while True:
        candidate = current / GPG_ID_FILE
        if candidate.is_file():
            return candidate
        if current == root or root not in current.parents:
            return None
        current = current.parent


def recipients_for(root: Path, logical_path: str) -> RecipientSet:
    """Resolve the recipients for an entry or folder path.

    Args:
        root: Store root directory.
        logical_path: Entry path such as ``email/work``.

    Returns:
        Non-empty RecipientSet.

    Raises:
        RecipientUnavailable: No .gpg-id applies or it lists nobody.
        StoreError: The .gpg-id file exists but cannot be read.
    """
    override = os.environ.get("PASSWORD_STORE_KEY")
    if override:
        ids = tuple(override.split())
        logger.debug("Using PASSWORD_STORE_KEY recipients (%d)", len(ids))
        return RecipientSet(ids)

    parent = root.joinpath(*logical_path.split("/")[:-1]) if logical_path else root
    gpg_id = find_gpg_id(root, parent)
    if gpg_id is None:
        raise RecipientUnavailable(
            f"no {GPG_ID_FILE} found for '{logical_path}'", path=logical_path
        )

    try:
        ids = parse_gpg_id(gpg_id.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise StoreError(f"cannot read {gpg_id}: {exc}", path=logical_path) from exc

    if not ids:
        raise RecipientUnavailable(f"{gpg_id} lists no recipients", path=logical_path)
    return RecipientSet(ids, source=gpg_id)


def write_gpg_id(folder: Path, identities: list[str]) -> Path:
    """Write a .gpg-id file for ``folder``."""
    folder.mkdir(parents=True, exist_ok=True)
    target = folder / GPG_ID_FILE
    target.write_text("\n".join(identities) + "\n", encoding="utf-8")
    logger.info("Wrote %s (%d recipients)", target, len(identities))
    return target
