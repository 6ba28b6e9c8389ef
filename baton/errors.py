"""Baton error taxonomy.

Only PlanningFailed and the revert errors ever reach a caller as raised
exceptions. Provider and checkpoint-capture errors are converted by the
ExecutionEngine into task status (Failed / Cancelled) and streamed as events.
"""

from __future__ import annotations


class BatonError(Exception):
    """Base class for every Baton error."""


class PlanningFailed(BatonError):
    """The planner produced no usable task graph (empty or malformed)."""


class NoCapableProvider(BatonError):
    """No available provider can serve the task's capability."""

    def __init__(self, task_id: str, capability: str, reason: str = "") -> None:
        self.task_id = task_id
        self.capability = capability
        self.reason = reason
        message = f"No provider available for capability {capability!r} (task {task_id})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProviderError(BatonError):
    """A provider invocation failed and should not be retried elsewhere."""

    recoverable: bool = False

    def __init__(self, message: str, *, provider_id: str = "", kind: str = "provider_error") -> None:
        self.provider_id = provider_id
        self.kind = kind
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Timeout, rate limit, or transient network failure.

    Recovered by the engine by moving on to the next provider in the
    router's fallback list.
    """

    recoverable = True

    def __init__(self, message: str, *, provider_id: str = "", kind: str = "transient") -> None:
        super().__init__(message, provider_id=provider_id, kind=kind)


class CheckpointCaptureFailed(BatonError):
    """A file could not be snapshotted; the owning task must not run."""

    def __init__(self, task_id: str, file_id: str, reason: str) -> None:
        self.task_id = task_id
        self.file_id = file_id
        super().__init__(f"Checkpoint capture failed for {file_id!r} (task {task_id}): {reason}")


class CheckpointNotFound(BatonError, KeyError):
    """Unknown checkpoint or task has no checkpoint of the requested kind."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "checkpoint not found"


class ConflictingLaterEdit(BatonError):
    """A later, surviving task modified a file this revert would restore."""

    def __init__(self, task_id: str, conflicting_task_ids: list[str], files: list[str]) -> None:
        self.task_id = task_id
        self.conflicting_task_ids = conflicting_task_ids
        self.files = files
        super().__init__(
            f"Cannot revert task {task_id}: later task(s) {', '.join(conflicting_task_ids)} "
            f"also modified {', '.join(files)}. Revert them first or force the overwrite."
        )


class RevertFailed(BatonError):
    """Restoring a file failed; every already-restored file was rolled back."""

    def __init__(self, task_id: str, file_id: str, reason: str) -> None:
        self.task_id = task_id
        self.file_id = file_id
        super().__init__(f"Revert of task {task_id} failed on {file_id!r}: {reason}")


class SessionNotFound(BatonError, KeyError):
    """Unknown session handle."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "session not found"


class TaskNotFound(BatonError, KeyError):
    """Unknown task id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "task not found"


class GraphSealed(BatonError):
    """Structural change attempted on a graph whose execution already started."""


class InvalidTransition(BatonError):
    """A task status change that the task state machine does not allow."""
