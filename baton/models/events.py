"""TaskEvent — the typed stream every graph execution produces.

Four variants, all tagged with the originating graph and task so callers can
demultiplex one shared stream across concurrently running tasks:

    StatusChanged — a task moved through its state machine
    OutputChunk   — a fragment of streamed provider output
    Completed     — a task succeeded (carries usage and checkpoints)
    Failed        — a task failed (carries the final error)
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from baton.models.task import TaskStatus, Usage
from baton.utils.clock import now_utc


class _EventBase(BaseModel):
    graph_id: str
    task_id: str
    seq: int = Field(default=0, description="Monotonic per-graph sequence number")
    timestamp: datetime = Field(default_factory=now_utc)


class StatusChanged(_EventBase):
    event_type: Literal["status_changed"] = "status_changed"
    old_status: TaskStatus
    new_status: TaskStatus
    reason: str = ""
    progress: int = 0


class OutputChunk(_EventBase):
    event_type: Literal["output_chunk"] = "output_chunk"
    provider_id: str
    text: str
    attempt: int = Field(default=1, description="Provider attempt this chunk belongs to")


class Completed(_EventBase):
    event_type: Literal["completed"] = "completed"
    provider_id: str
    usage: Usage = Field(default_factory=Usage)
    before_checkpoint_id: str | None = None
    after_checkpoint_id: str | None = None
    files_changed: list[str] = Field(default_factory=list)


class Failed(_EventBase):
    event_type: Literal["failed"] = "failed"
    provider_id: str = ""
    error: str
    error_kind: str = ""
    attempts: int = 0


TaskEvent = Annotated[
    Union[StatusChanged, OutputChunk, Completed, Failed],
    Field(discriminator="event_type"),
]
