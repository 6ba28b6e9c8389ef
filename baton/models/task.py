"""TaskGraph — the output of the TaskPlanner.

A user request gets broken into a directed acyclic graph of tasks.
Each task carries a capability tag and a complexity score that the
ProviderRouter uses to pick a provider. Dependencies between tasks define
execution order.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from baton.errors import GraphSealed, PlanningFailed
from baton.utils.clock import now_utc


class Capability(str, enum.Enum):
    """Closed set of work kinds a task can need and a provider can do."""

    UI_GENERATION = "ui-generation"
    CODE_EDIT = "code-edit"
    LARGE_CONTEXT_ANALYSIS = "large-context-analysis"
    GENERAL = "general"

    @classmethod
    def coerce(cls, value: Any) -> Capability:
        """Map planner output onto the closed set; unknown values become GENERAL."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
        for member in cls:
            if member.value == text:
                return member
        return cls.GENERAL


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


# Allowed status transitions. Running → Cancelled covers user cancellation.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.CANCELLED}),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class Usage(BaseModel):
    """Actual usage reported by a provider after an invocation."""

    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0


class ProviderAttempt(BaseModel):
    """One provider invocation made on behalf of a task."""

    provider_id: str
    success: bool = False
    error: str = ""
    error_kind: str = ""
    duration_ms: float = 0.0


class RequestContext(BaseModel):
    """Ambient state handed to the planner alongside the request text."""

    workspace: str = "."
    active_file: str | None = None
    selection: str | None = None
    open_files: list[str] = Field(default_factory=list)
    recent_files: list[str] = Field(default_factory=list)
    conversation_history: list[dict[str, str]] = Field(default_factory=list)
    memory_summary: str = ""


class Task(BaseModel):
    """A single unit of delegated work with one responsible provider."""

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    request_id: str = ""
    description: str = Field(description="Human-readable summary of the task")
    instructions: str = Field(description="Free-text instructions for the assigned provider")
    capability: Capability = Capability.GENERAL
    complexity: int = Field(default=5, ge=1, le=10)
    depends_on: list[str] = Field(
        default_factory=list,
        description="Task IDs this task depends on (must succeed first)",
    )
    priority: int = Field(default=1, description="1=highest priority")
    target_files: list[str] = Field(
        default_factory=list,
        description="File identities the task is expected to touch",
    )
    proceed_on_failure: bool = Field(
        default=False,
        description="Run even when a dependency failed or was cancelled",
    )

    # ── Execution state (mutated only by the ExecutionEngine) ───────────
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    output_log: list[str] = Field(default_factory=list)
    before_checkpoint_id: str | None = None
    after_checkpoint_id: str | None = None
    provider_id: str = ""
    attempts: list[ProviderAttempt] = Field(default_factory=list)
    usage: Usage | None = None
    error: str = ""
    error_kind: str = ""

    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)
    completed_at: datetime | None = None

    @property
    def output(self) -> str:
        return "".join(self.output_log)


class TaskGraph(BaseModel):
    """Directed acyclic graph of tasks produced by the TaskPlanner.

    The graph is structurally immutable once ``seal()`` is called (the
    ExecutionEngine seals it before dispatching the first task). After that
    only per-task execution fields change, and only the engine changes them.
    """

    graph_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    analysis: str = Field(default="", description="Planner's rationale for this decomposition")
    tasks: list[Task] = Field(default_factory=list)
    estimated_duration_minutes: float = 0.0
    original_request: str = ""

    _sealed: bool = PrivateAttr(default=False)

    # ── Structure ─────────────────────────────────────────────────────

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def add_task(self, task: Task) -> None:
        if self._sealed:
            raise GraphSealed(f"Graph {self.graph_id} is executing; tasks cannot be added")
        self.tasks.append(task)

    def get_task(self, task_id: str) -> Task | None:
        """Get a task by its task_id."""
        for t in self.tasks:
            if t.task_id == task_id:
                return t
        return None

    def get_root_tasks(self) -> list[Task]:
        """Return tasks with no dependencies (can execute immediately)."""
        return [t for t in self.tasks if not t.depends_on]

    def get_dependents(self, task_id: str) -> list[Task]:
        """Return tasks that depend directly on the given task_id."""
        return [t for t in self.tasks if task_id in t.depends_on]

    def transitive_dependents(self, task_id: str) -> list[Task]:
        """All direct and indirect dependents, in graph order."""
        seen: set[str] = set()
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.get_dependents(current):
                if dependent.task_id not in seen:
                    seen.add(dependent.task_id)
                    frontier.append(dependent.task_id)
        return [t for t in self.tasks if t.task_id in seen]

    # ── Validation & ordering ────────────────────────────────────────

    def validate_structure(self) -> None:
        """Raise PlanningFailed unless the graph is a well-formed DAG."""
        if not self.tasks:
            raise PlanningFailed("Task graph has no tasks")

        ids = [t.task_id for t in self.tasks]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise PlanningFailed(f"Duplicate task ids: {', '.join(duplicates)}")

        known = set(ids)
        for task in self.tasks:
            if task.task_id in task.depends_on:
                raise PlanningFailed(f"Task {task.task_id} depends on itself")
            missing = [d for d in task.depends_on if d not in known]
            if missing:
                raise PlanningFailed(
                    f"Task {task.task_id} depends on unknown task(s): {', '.join(missing)}"
                )

        self.topological_order()

    def topological_order(self) -> list[Task]:
        """Kahn's algorithm, stable by order of first appearance.

        Raises:
            PlanningFailed: if the dependencies contain a cycle.
        """
        position = {t.task_id: i for i, t in enumerate(self.tasks)}
        remaining = {t.task_id: len(set(t.depends_on)) for t in self.tasks}
        ordered: list[Task] = []
        ready = [t for t in self.tasks if remaining[t.task_id] == 0]

        while ready:
            ready.sort(key=lambda t: position[t.task_id])
            current = ready.pop(0)
            ordered.append(current)
            for dependent in self.get_dependents(current.task_id):
                remaining[dependent.task_id] -= 1
                if remaining[dependent.task_id] == 0:
                    ready.append(dependent)

        if len(ordered) != len(self.tasks):
            done = {t.task_id for t in ordered}
            stuck = [t.task_id for t in self.tasks if t.task_id not in done]
            raise PlanningFailed(f"Task graph contains a cycle through: {', '.join(stuck)}")
        return ordered

    def execution_waves(self) -> list[list[Task]]:
        """Return tasks grouped by execution wave (parallel groups).

        Wave 0: root tasks (no dependencies)
        Wave N: tasks whose dependencies are all in waves < N
        """
        completed: set[str] = set()
        waves: list[list[Task]] = []
        remaining = list(self.tasks)

        while remaining:
            wave = [t for t in remaining if all(d in completed for d in t.depends_on)]
            if not wave:
                raise PlanningFailed("Task graph contains a cycle")
            waves.append(wave)
            completed.update(t.task_id for t in wave)
            remaining = [t for t in remaining if t.task_id not in completed]

        return waves

    # ── Observation ──────────────────────────────────────────────────

    def snapshot(self) -> list[dict[str, Any]]:
        """Read-only copy of every task's state for external observers."""
        return [
            t.model_dump(
                include={
                    "task_id", "description", "capability", "complexity",
                    "depends_on", "status", "progress", "provider_id",
                    "error", "error_kind", "before_checkpoint_id",
                    "after_checkpoint_id",
                },
                mode="json",
            )
            for t in self.tasks
        ]

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {s.value: 0 for s in TaskStatus}
        for t in self.tasks:
            counts[t.status.value] += 1
        return counts

    @property
    def is_finished(self) -> bool:
        return all(t.status.is_terminal for t in self.tasks)
