"""Workspace — rooted file access for checkpoints and edit application.

File identities are workspace-relative POSIX paths. Anything resolving
outside the root is rejected. All methods are blocking; async callers run
them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path, PurePosixPath


class WorkspaceError(ValueError):
    """Invalid file identity (absolute, escaping the root, or empty)."""


class Workspace:
    """Filesystem root the session's tasks read and write."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def normalize(self, file_id: str) -> str:
        """Return the canonical relative POSIX identity of ``file_id``."""
        raw = str(file_id).strip().replace("\\", "/")
        if not raw:
            raise WorkspaceError("empty file id")
        candidate = Path(raw)
        path = candidate.resolve() if candidate.is_absolute() else (self.root / raw).resolve()
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            raise WorkspaceError(f"{file_id!r} is outside the workspace {self.root}") from None
        if not relative.parts:
            raise WorkspaceError(f"{file_id!r} names the workspace root itself")
        return PurePosixPath(*relative.parts).as_posix()

    def path_for(self, file_id: str) -> Path:
        return self.root / self.normalize(file_id)

    def read_bytes(self, file_id: str) -> bytes | None:
        """Current content, or None when the file does not exist."""
        path = self.path_for(file_id)
        if not path.exists():
            return None
        if not path.is_file():
            raise IsADirectoryError(f"{file_id!r} is not a regular file")
        return path.read_bytes()

    def write_bytes(self, file_id: str, data: bytes) -> None:
        """Atomically replace ``file_id`` with ``data`` (parents created)."""
        path = self.path_for(file_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, file_id: str) -> None:
        """Remove ``file_id``; a missing file is not an error."""
        self.path_for(file_id).unlink(missing_ok=True)
