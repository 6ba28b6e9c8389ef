"""Persistence records — the append-only side channel for history stores.

Every observable orchestration fact becomes a PersistenceRecord handed to a
RecordSink. The sink owns durability; Baton never reads records back to make
decisions, so orchestration works identically with no sink at all.

Record types:
    task_created, task_status_changed, output_chunk (batched),
    checkpoint_created, checkpoint_reverted
"""

from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from baton.utils.clock import now_utc

logger = structlog.get_logger().bind(component="records")

RECORD_TYPES = frozenset({
    "task_created",
    "task_status_changed",
    "output_chunk",
    "checkpoint_created",
    "checkpoint_reverted",
})


class PersistenceRecord(BaseModel):
    """One append-only history record."""

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    record_type: str = Field(description="One of RECORD_TYPES")
    graph_id: str = ""
    task_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=now_utc)


class RecordSink:
    """Interface of the persistence collaborator."""

    def append(self, record: PersistenceRecord) -> None:
        raise NotImplementedError


class MemoryRecordSink(RecordSink):
    """Keeps records in a list — tests and in-process inspection."""

    def __init__(self) -> None:
        self.records: list[PersistenceRecord] = []

    def append(self, record: PersistenceRecord) -> None:
        self.records.append(record)

    def of_type(self, record_type: str) -> list[PersistenceRecord]:
        return [r for r in self.records if r.record_type == record_type]


class JsonlRecordSink(RecordSink):
    """Appends records to ``<trace_dir>/<session_id>.jsonl``."""

    def __init__(self, trace_dir: Path) -> None:
        self._trace_dir = trace_dir

    def append(self, record: PersistenceRecord) -> None:
        self._trace_dir.mkdir(parents=True, exist_ok=True)
        trace_file = self._trace_dir / f"{record.session_id}.jsonl"
        with trace_file.open("a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

    def load(self, session_id: str) -> list[PersistenceRecord]:
        """Load records from a persisted JSONL file."""
        trace_file = self._trace_dir / f"{session_id}.jsonl"
        if not trace_file.exists():
            return []
        records = []
        with trace_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(PersistenceRecord.model_validate_json(line))
        return records

    def list_sessions(self, limit: int = 20) -> list[str]:
        """List recent session IDs from persisted record files (newest first)."""
        if not self._trace_dir.exists():
            return []
        files = sorted(
            self._trace_dir.glob("*.jsonl"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        return [f.stem for f in files[:limit]]


class RecordWriter:
    """Session-scoped front end of a RecordSink.

    Batches output chunks per task (flushed every ``chunk_batch_size`` chunks
    and whenever the task reaches a terminal status) and isolates the
    orchestration core from sink failures.
    """

    def __init__(
        self,
        session_id: str,
        sink: RecordSink | None = None,
        chunk_batch_size: int = 16,
    ) -> None:
        self.session_id = session_id
        self._sink = sink
        self._batch_size = chunk_batch_size
        self._pending_chunks: dict[tuple[str, str], list[str]] = {}

    def emit(self, record_type: str, graph_id: str = "", task_id: str = "", **payload: Any) -> None:
        if record_type not in RECORD_TYPES:
            raise ValueError(f"Unknown record type: {record_type}")
        if self._sink is None:
            return
        record = PersistenceRecord(
            session_id=self.session_id,
            record_type=record_type,
            graph_id=graph_id,
            task_id=task_id,
            payload=payload,
        )
        try:
            self._sink.append(record)
        except Exception as exc:
            # History is a side observer; losing a record must not stop a task.
            logger.warning(
                "record_sink_failed",
                record_type=record_type,
                task_id=task_id,
                error=str(exc),
            )

    def output_chunk(self, graph_id: str, task_id: str, text: str) -> None:
        if self._sink is None:
            return
        key = (graph_id, task_id)
        pending = self._pending_chunks.setdefault(key, [])
        pending.append(text)
        if len(pending) >= self._batch_size:
            self.flush(graph_id, task_id)

    def flush(self, graph_id: str, task_id: str) -> None:
        pending = self._pending_chunks.pop((graph_id, task_id), None)
        if pending:
            self.emit("output_chunk", graph_id, task_id, chunks=pending, count=len(pending))

    def flush_all(self) -> None:
        for graph_id, task_id in list(self._pending_chunks):
            self.flush(graph_id, task_id)
