"""
Merge planner -- three-way merge at whole-entry granularity.

Ciphertext cannot be diffed line by line, so every file is one unit:

    changed on one side only        -> take that side
    changed on both, same result    -> nothing to do
    changed on both, different      -> conflict (delete vs. modify too)
    entry on one side, folder on the other -> conflict

A conflict is only settled by an explicit Resolution from the caller.
The planner is pure: it works on the ``diff_tree`` maps of both sides
and never touches the repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from ..models import ConflictRecord
from ..tree import ENTRY_SUFFIX
from .git import TreeItem
from .models import Resolution

logger = logging.getLogger("skpass.sync.merge")

FileChanges = Mapping[str, Optional[TreeItem]]


def logical_path(file_path: str) -> str:
    """Entry path for a ``.gpg`` file; other files keep their repository path."""
    if file_path.endswith(ENTRY_SUFFIX) and not file_path.rsplit("/", 1)[-1].startswith("."):
        return file_path[: -len(ENTRY_SUFFIX)]
    return file_path


def is_entry_file(file_path: str) -> bool:
    return logical_path(file_path) != file_path


def keep_both_name(file_path: str, revision: str, taken: set[str], side: str = "remote") -> str:
    """Free sibling name for a kept copy: ``work.gpg`` -> ``work-remote-1a2b3c4.gpg``."""
    if is_entry_file(file_path):
        stem, suffix = file_path[: -len(ENTRY_SUFFIX)], ENTRY_SUFFIX
    else:
        stem, suffix = file_path, ""
    base = f"{stem}-{side}-{revision[:7]}"
    candidate = base + suffix
    n = 2
    while candidate in taken:
        candidate = f"{base}-{n}{suffix}"
        n += 1
    return candidate


@dataclass
class MergePlan:
    """What it takes to turn the local tree into the merged one."""

    updates: dict[str, Optional[TreeItem]] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    kept_both: dict[str, str] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not self.conflicts


def plan_merge(
    local: FileChanges,
    remote: FileChanges,
    local_revision: str,
    remote_revision: str,
    resolutions: Optional[Mapping[str, Resolution]] = None,
    taken: Optional[set[str]] = None,
    local_files: Optional[FileChanges] = None,
) -> MergePlan:
    """Plan the merge of two change sets against their common base.

    Args:
        local: Files changed base..HEAD (None = deleted locally).
        remote: Files changed base..remote (None = deleted remotely).
        local_revision: HEAD commit.
        remote_revision: Remote-tracking commit.
        resolutions: Caller decisions keyed by logical path.
        taken: File names present on either side, for keep-both naming.
        local_files: Every file in HEAD with its blob. When given, a name that would end
            up both an entry and a folder is reported as a conflict.

    Returns:
        MergePlan with index updates relative to HEAD's tree, plus any
        conflicts that still lack a resolution.
    """
    resolutions = resolutions or {}
    taken = set(taken or ())
    plan = MergePlan()

    for path in sorted(set(local) | set(remote)):
        if path not in local:
            plan.updates[path] = remote[path]
            continue
        if path not in remote:
            continue

        mine, theirs = local[path], remote[path]
        if mine == theirs:
            continue

        name = logical_path(path)
        decision = resolutions.get(name)
        if decision is None:
            plan.conflicts.append(ConflictRecord(
                path=name,
                local_blob=mine.blob if mine else None,
                remote_blob=theirs.blob if theirs else None,
                local_revision=local_revision,
                remote_revision=remote_revision,
            ))
            continue

        decision = Resolution(decision)
        if decision == Resolution.KEEP_LOCAL:
            continue
        if decision == Resolution.KEEP_REMOTE:
            plan.updates[path] = theirs
        elif mine is None:
            # keep-both against a local delete: the remote version survives
            plan.updates[path] = theirs
        elif theirs is not None:
            copy = keep_both_name(path, remote_revision, taken)
            taken.add(copy)
            plan.updates[copy] = theirs
            plan.kept_both[name] = logical_path(copy)
        logger.debug("Resolved %s with %s", name, decision.value)

    if local_files is not None:
        _plan_structure(plan, local_files, local_revision, remote_revision, resolutions, taken)

    if plan.conflicts:
        logger.info("Merge plan has %d conflict(s)", len(plan.conflicts))
    return plan


def _clashes(files: set[str], changed: set[str]) -> list[str]:
    """Names that are an entry and a folder at once, touched by ``changed``."""
    folders = set()
    for path in files:
        parts = path.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            folders.add("/".join(parts[:depth]))
    clashes = []
    for path in sorted(files):
        if not is_entry_file(path):
            continue
        name = logical_path(path)
        if name not in folders:
            continue
        prefix = name + "/"
        if path in changed or any(c.startswith(prefix) for c in changed):
            clashes.append(name)
    return clashes


def _plan_structure(
    plan: MergePlan,
    local_files: FileChanges,
    local_revision: str,
    remote_revision: str,
    resolutions: Mapping[str, Resolution],
    taken: set[str],
) -> None:
    merged = {p for p in local_files if plan.updates.get(p, local_files[p]) is not None}
    merged |= {p for p, item in plan.updates.items() if item is not None}
    conflicted = {c.path for c in plan.conflicts}

    for name in _clashes(merged, set(plan.updates)):
        if name in conflicted:
            continue
        entry, prefix = name + ENTRY_SUFFIX, name + "/"
        remote_item = plan.updates.get(entry)
        folder_side = "local" if remote_item is not None else "remote"
        local_item = local_files.get(entry) if folder_side == "remote" else None

        decision = resolutions.get(name)
        if decision is None:
            plan.conflicts.append(ConflictRecord(
                path=name,
                local_blob=local_item.blob if local_item else None,
                remote_blob=remote_item.blob if remote_item else None,
                local_revision=local_revision,
                remote_revision=remote_revision,
                folder_side=folder_side,
            ))
            continue

        decision = Resolution(decision)
        if decision == Resolution.KEEP_LOCAL:
            if folder_side == "local":
                plan.updates.pop(entry, None)
            else:
                for path in [p for p, item in plan.updates.items() if p.startswith(prefix) and item]:
                    del plan.updates[path]
        elif decision == Resolution.KEEP_REMOTE:
            if folder_side == "remote":
                plan.updates[entry] = None
            else:
                for path in local_files:
                    if path.startswith(prefix):
                        plan.updates[path] = None
        elif folder_side == "local":
            copy = keep_both_name(entry, remote_revision, taken)
            plan.updates[copy] = plan.updates.pop(entry)
            taken.add(copy)
            plan.kept_both[name] = logical_path(copy)
        elif local_item is not None:
            copy = keep_both_name(entry, local_revision, taken, side="local")
            plan.updates[copy] = local_item
            plan.updates[entry] = None
            taken.add(copy)
            plan.kept_both[name] = logical_path(copy)
        logger.debug("Resolved %s (entry/folder clash) with %s", name, decision.value)
