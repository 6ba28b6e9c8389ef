"""Checkpoint Manager — per-task file snapshots and multi-file undo.

Usage pattern in the ExecutionEngine:
    before_id = await checkpoints.capture_before(task.task_id, task.target_files)
    ...provider streams...
    await checkpoints.apply_edits(task.task_id, completion.edits)
    after_id = await checkpoints.capture_after(task.task_id)

and later, from a session:
    result = await checkpoints.revert(task_id)          # or a checkpoint id
    results = await checkpoints.revert_trailing(3)      # newest first

Content lives in a content-addressed BlobStore; checkpoints hold hashes.
Every file has its own asyncio.Lock so unrelated files are captured and
restored concurrently. Blocking file I/O runs in worker threads.
"""

from __future__ import annotations

import asyncio
import difflib
import hashlib
import itertools
from contextlib import AsyncExitStack

import structlog

from baton.errors import (
    CheckpointCaptureFailed,
    CheckpointNotFound,
    ConflictingLaterEdit,
    RevertFailed,
)
from baton.models.checkpoints import Checkpoint, FileDiff, FileEntry, RevertResult
from baton.models.providers import FileEdit
from baton.models.records import RecordWriter
from baton.tools.workspace import Workspace, WorkspaceError

logger = structlog.get_logger().bind(component="core.checkpoints")


class BlobStore:
    """sha256 → bytes. Identical content is stored once."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        digest = hashlib.sha256(data).hexdigest()
        self._blobs.setdefault(digest, data)
        return digest

    def get(self, digest: str) -> bytes:
        return self._blobs[digest]

    def __contains__(self, digest: str) -> bool:
        return digest in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    def clear(self) -> None:
        self._blobs.clear()


def _hash_of(data: bytes | None) -> str | None:
    return None if data is None else hashlib.sha256(data).hexdigest()


class CheckpointManager:
    """Captures, diffs and reverts the file effects of tasks in one session.

    A task's before checkpoint grows as the task claims files; an entry is
    never overwritten, so it always holds the state immediately prior to the
    task's first write of that file.
    """

    def __init__(self, workspace: Workspace, records: RecordWriter | None = None) -> None:
        self.workspace = workspace
        self.blobs = BlobStore()
        self._records = records
        self._seq = itertools.count(1)
        self._checkpoints: dict[str, Checkpoint] = {}
        self._before: dict[str, Checkpoint] = {}
        self._after: dict[str, Checkpoint] = {}
        self._graph_of: dict[str, str] = {}
        # (task_id, file_id) → sequence of the task's last content-changing write
        self._writes: dict[tuple[str, str], int] = {}
        self._reverted: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, file_id: str) -> asyncio.Lock:
        lock = self._locks.get(file_id)
        if lock is None:
            lock = self._locks[file_id] = asyncio.Lock()
        return lock

    def _emit(self, record_type: str, task_id: str, **payload) -> None:
        if self._records is not None:
            self._records.emit(record_type, self._graph_of.get(task_id, ""), task_id, **payload)

    async def _read_entry(self, task_id: str, file_id: str) -> FileEntry:
        try:
            data = await asyncio.to_thread(self.workspace.read_bytes, file_id)
        except (OSError, WorkspaceError) as exc:
            raise CheckpointCaptureFailed(task_id, file_id, str(exc)) from exc
        digest = None if data is None else self.blobs.put(data)
        return FileEntry(
            file_id=file_id,
            content_hash=digest,
            size=0 if data is None else len(data),
            sequence=next(self._seq),
        )

    def _normalize(self, task_id: str, file_id: str) -> str:
        try:
            return self.workspace.normalize(file_id)
        except WorkspaceError as exc:
            raise CheckpointCaptureFailed(task_id, str(file_id), str(exc)) from exc

    # ── Capture ──────────────────────────────────────────────────────

    async def capture_before(self, task_id: str, files: list[str], graph_id: str = "") -> str:
        """Claim ``files`` for ``task_id``; returns the before checkpoint id.

        Files already claimed by this task keep their original entry.

        Raises:
            CheckpointCaptureFailed: a file could not be read or is outside
                the workspace. The task must not run.
        """
        if graph_id:
            self._graph_of.setdefault(task_id, graph_id)

        checkpoint = self._before.get(task_id)
        created = checkpoint is None
        if checkpoint is None:
            checkpoint = Checkpoint(task_id=task_id, kind="before", sequence=next(self._seq))

        claimed = set(checkpoint.file_ids)
        for file_id in dict.fromkeys(self._normalize(task_id, f) for f in files):
            if file_id in claimed:
                continue
            async with self._lock_for(file_id):
                entry = await self._read_entry(task_id, file_id)
            checkpoint.entries.append(entry)
            claimed.add(file_id)

        if created:
            self._before[task_id] = checkpoint
            self._checkpoints[checkpoint.checkpoint_id] = checkpoint
            logger.debug(
                "checkpoint_created",
                task_id=task_id,
                checkpoint_id=checkpoint.checkpoint_id,
                kind="before",
                files=len(checkpoint.entries),
            )
            self._emit(
                "checkpoint_created",
                task_id,
                checkpoint_id=checkpoint.checkpoint_id,
                kind="before",
                files=checkpoint.file_ids,
            )
        return checkpoint.checkpoint_id

    async def apply_edits(self, task_id: str, edits: list[FileEdit]) -> list[str]:
        """Claim then write each edited file. Returns the normalized file ids.

        Raises:
            CheckpointCaptureFailed: claiming a file failed; nothing was written
                for that file.
            OSError: a write failed after its file was claimed.
        """
        by_file: dict[str, FileEdit] = {}
        for edit in edits:
            by_file[self._normalize(task_id, edit.file_id)] = edit

        await self.capture_before(task_id, list(by_file))
        written: list[str] = []
        for file_id in sorted(by_file):
            content = by_file[file_id].content
            new_data = None if content is None else content.encode("utf-8")
            async with self._lock_for(file_id):
                current = await asyncio.to_thread(self.workspace.read_bytes, file_id)
                if _hash_of(current) == _hash_of(new_data):
                    continue
                if new_data is None:
                    await asyncio.to_thread(self.workspace.delete, file_id)
                else:
                    await asyncio.to_thread(self.workspace.write_bytes, file_id, new_data)
                self._writes[(task_id, file_id)] = next(self._seq)
            written.append(file_id)

        if written:
            logger.info("edits_applied", task_id=task_id, files=written)
        return written

    async def capture_after(self, task_id: str) -> str:
        """Snapshot every file the task claimed, as it is now."""
        before = self._before.get(task_id)
        if before is None:
            raise CheckpointNotFound(f"Task {task_id} has no before checkpoint")

        checkpoint = Checkpoint(task_id=task_id, kind="after", sequence=next(self._seq))
        for file_id in before.file_ids:
            async with self._lock_for(file_id):
                entry = await self._read_entry(task_id, file_id)
            write_seq = self._writes.get((task_id, file_id))
            if write_seq is not None:
                entry.sequence = write_seq
            checkpoint.entries.append(entry)

        previous = self._after.get(task_id)
        if previous is not None:
            self._checkpoints.pop(previous.checkpoint_id, None)
        self._after[task_id] = checkpoint
        self._checkpoints[checkpoint.checkpoint_id] = checkpoint

        logger.debug(
            "checkpoint_created",
            task_id=task_id,
            checkpoint_id=checkpoint.checkpoint_id,
            kind="after",
            touched=len(self.touched_files(task_id)),
        )
        self._emit(
            "checkpoint_created",
            task_id,
            checkpoint_id=checkpoint.checkpoint_id,
            kind="after",
            files=self.touched_files(task_id),
        )
        return checkpoint.checkpoint_id

    # ── Queries ──────────────────────────────────────────────────────

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        try:
            return self._checkpoints[checkpoint_id]
        except KeyError:
            raise CheckpointNotFound(f"Unknown checkpoint: {checkpoint_id}") from None

    def list_checkpoints(self, task_id: str | None = None) -> list[Checkpoint]:
        """All checkpoints in capture order, optionally for one task."""
        cps = sorted(self._checkpoints.values(), key=lambda c: c.sequence)
        if task_id is not None:
            cps = [c for c in cps if c.task_id == task_id]
        return cps

    def name_checkpoint(self, checkpoint_id: str, name: str) -> Checkpoint:
        checkpoint = self.get_checkpoint(checkpoint_id)
        checkpoint.name = name
        return checkpoint

    def is_reverted(self, task_id: str) -> bool:
        return task_id in self._reverted

    def touched_files(self, task_id: str) -> list[str]:
        """Files this task wrote, minus writes that net out to no change.

        A claimed file that only another task wrote is not touched by this one.
        """
        before = self._before.get(task_id)
        if before is None:
            return []
        written = [f for f in before.file_ids if (task_id, f) in self._writes]
        after = self._after.get(task_id)
        if after is None:
            return written
        touched = []
        for file_id in written:
            now = after.entry_for(file_id)
            if now is not None and now.content_hash != before.entry_for(file_id).content_hash:
                touched.append(file_id)
        return touched

    def diff(self, checkpoint_a: str, checkpoint_b: str) -> list[FileDiff]:
        """File-level differences between two checkpoints (a → b)."""
        a = self.get_checkpoint(checkpoint_a)
        b = self.get_checkpoint(checkpoint_b)
        diffs: list[FileDiff] = []
        for file_id in dict.fromkeys(a.file_ids + b.file_ids):
            old = a.entry_for(file_id)
            new = b.entry_for(file_id)
            old_hash = old.content_hash if old else None
            new_hash = new.content_hash if new else None
            if old_hash == new_hash:
                continue
            if old_hash is None:
                change = "added"
            elif new_hash is None:
                change = "removed"
            else:
                change = "modified"

            old_bytes = self.blobs.get(old_hash) if old_hash else b""
            new_bytes = self.blobs.get(new_hash) if new_hash else b""
            try:
                old_text = old_bytes.decode("utf-8")
                new_text = new_bytes.decode("utf-8")
            except UnicodeDecodeError:
                diffs.append(FileDiff(
                    file_id=file_id, change=change,
                    old_hash=old_hash, new_hash=new_hash, binary=True,
                ))
                continue

            unified = "".join(difflib.unified_diff(
                old_text.splitlines(keepends=True),
                new_text.splitlines(keepends=True),
                fromfile=f"a/{file_id}",
                tofile=f"b/{file_id}",
            ))
            diffs.append(FileDiff(
                file_id=file_id, change=change,
                old_hash=old_hash, new_hash=new_hash, unified_diff=unified,
            ))
        return diffs

    # ── Revert ───────────────────────────────────────────────────────

    def _resolve_task(self, target: str) -> str:
        if target in self._before:
            return target
        if target in self._checkpoints:
            return self._checkpoints[target].task_id
        raise CheckpointNotFound(f"No checkpoint for task or checkpoint id {target!r}")

    def _conflicts(self, task_id: str, files: list[str]) -> tuple[list[str], list[str]]:
        """Later surviving tasks that also changed any of ``files``."""
        before = self._before[task_id]
        task_ids: set[str] = set()
        conflict_files: set[str] = set()
        for file_id in files:
            claimed_at = before.entry_for(file_id).sequence
            for (other, other_file), seq in self._writes.items():
                if other == task_id or other_file != file_id or other in self._reverted:
                    continue
                if seq > claimed_at:
                    task_ids.add(other)
                    conflict_files.add(file_id)
        return sorted(task_ids), sorted(conflict_files)

    async def revert(self, target: str, force: bool = False) -> RevertResult:
        """Restore every file a task changed to its before snapshot.

        ``target`` is a task id or any checkpoint id owned by the task.
        Reverting an already-reverted task is a successful no-op.

        Raises:
            CheckpointNotFound: unknown task/checkpoint id.
            ConflictingLaterEdit: a later surviving task changed one of the
                files and ``force`` is False. No file is touched.
            RevertFailed: a restore failed; files already restored were put
                back to their pre-revert content.
        """
        task_id = self._resolve_task(target)
        if task_id in self._reverted:
            logger.info("revert_noop_already_reverted", task_id=task_id)
            return RevertResult(task_id=task_id, already_reverted=True)

        files = self.touched_files(task_id)
        conflicting, conflict_files = self._conflicts(task_id, files)
        if conflicting and not force:
            logger.warning(
                "revert_conflict",
                task_id=task_id,
                conflicting_task_ids=conflicting,
                files=conflict_files,
            )
            raise ConflictingLaterEdit(task_id, conflicting, conflict_files)

        before = self._before[task_id]
        async with AsyncExitStack() as stack:
            # Sorted acquisition keeps concurrent reverts deadlock-free.
            for file_id in sorted(files):
                await stack.enter_async_context(self._lock_for(file_id))

            originals: dict[str, bytes | None] = {}
            for file_id in files:
                try:
                    originals[file_id] = await asyncio.to_thread(self.workspace.read_bytes, file_id)
                except OSError as exc:
                    raise RevertFailed(task_id, file_id, f"could not snapshot: {exc}") from exc

            restored: list[str] = []
            for file_id in files:
                entry = before.entry_for(file_id)
                try:
                    if entry.content_hash is None:
                        await asyncio.to_thread(self.workspace.delete, file_id)
                    else:
                        data = self.blobs.get(entry.content_hash)
                        await asyncio.to_thread(self.workspace.write_bytes, file_id, data)
                except OSError as exc:
                    await self._rollback(restored, originals)
                    logger.error("revert_failed", task_id=task_id, file_id=file_id, error=str(exc))
                    raise RevertFailed(task_id, file_id, str(exc)) from exc
                restored.append(file_id)

        self._reverted.add(task_id)
        logger.info(
            "task_reverted",
            task_id=task_id,
            files=restored,
            forced=bool(conflicting),
            overwritten=conflicting,
        )
        self._emit(
            "checkpoint_reverted",
            task_id,
            checkpoint_id=before.checkpoint_id,
            files=restored,
            forced=bool(conflicting),
            overwritten_task_ids=conflicting,
        )
        return RevertResult(
            task_id=task_id,
            files_restored=restored,
            forced=bool(conflicting),
            overwritten_task_ids=conflicting,
        )

    async def _rollback(self, restored: list[str], originals: dict[str, bytes | None]) -> None:
        for file_id in reversed(restored):
            data = originals[file_id]
            try:
                if data is None:
                    await asyncio.to_thread(self.workspace.delete, file_id)
                else:
                    await asyncio.to_thread(self.workspace.write_bytes, file_id, data)
            except OSError as exc:
                logger.error("revert_rollback_failed", file_id=file_id, error=str(exc))

    async def revert_trailing(self, count: int, force: bool = False) -> list[RevertResult]:
        """Revert the ``count`` most recent non-reverted tasks, newest first.

        Stops at the first failure, which propagates; tasks reverted before
        it stay reverted.
        """
        if count <= 0:
            return []
        candidates = [
            cp.task_id
            for cp in sorted(self._before.values(), key=lambda c: c.sequence, reverse=True)
            if cp.task_id not in self._reverted
        ]
        results = []
        for task_id in candidates[:count]:
            results.append(await self.revert(task_id, force=force))
        return results

    def clear(self) -> None:
        """Drop every checkpoint and blob (end of session)."""
        self._checkpoints.clear()
        self._before.clear()
        self._after.clear()
        self._writes.clear()
        self._reverted.clear()
        self._graph_of.clear()
        self.blobs.clear()
        logger.debug("checkpoints_cleared")
