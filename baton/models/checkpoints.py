"""Checkpoint models — per-task file snapshots.

Every task that writes files gets two checkpoints:

1. ``before`` — entries are appended the instant the task claims a file
   (its first write). An entry, once captured, is never overwritten.
2. ``after``  — captured when the task finishes, success or failure.

File contents live in the content-addressed BlobStore; entries only carry
the sha256 of the content (``None`` when the file did not exist).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from baton.utils.clock import now_utc


class FileEntry(BaseModel):
    """State of one file at capture time."""

    file_id: str
    content_hash: str | None = None
    """sha256 of the content; None means the file did not exist."""
    size: int = 0
    sequence: int = 0
    """Session-global capture order — used to tell which task touched a file later."""


class Checkpoint(BaseModel):
    """Snapshot of the files affected by one task at a point in time."""

    checkpoint_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    task_id: str
    kind: str = "before"
    """'before' | 'after'."""
    entries: list[FileEntry] = Field(default_factory=list)
    sequence: int = 0
    created_at: datetime = Field(default_factory=now_utc)
    name: str = ""

    @property
    def file_ids(self) -> list[str]:
        return [e.file_id for e in self.entries]

    def entry_for(self, file_id: str) -> FileEntry | None:
        for entry in self.entries:
            if entry.file_id == file_id:
                return entry
        return None


class FileDiff(BaseModel):
    """File-level difference between two checkpoints."""

    file_id: str
    change: str
    """'added' | 'removed' | 'modified'."""
    old_hash: str | None = None
    new_hash: str | None = None
    unified_diff: str = ""
    binary: bool = False


class RevertResult(BaseModel):
    """Outcome of reverting one task."""

    task_id: str
    success: bool = True
    files_restored: list[str] = Field(default_factory=list)
    already_reverted: bool = False
    forced: bool = False
    overwritten_task_ids: list[str] = Field(default_factory=list)

    @property
    def files_changed(self) -> int:
        return len(self.files_restored)
