"""Execution Engine — runs a TaskGraph concurrently and streams TaskEvents.

Pipeline per task:
    wait for dependencies → Ready → (semaphore) → Running
    → router fallback list → capture before checkpoint
    → provider stream (chunk by chunk, per-invocation deadline)
    → claim + write edits → capture after checkpoint
    → Succeeded (usage recorded in the budget) | Failed | Cancelled

Recoverable provider errors (timeout, rate limit, network, transient) move
on to the next provider in the router's list; anything else fails the task.
A task whose dependency failed or was cancelled is Cancelled without ever
invoking a provider, unless it opted into ``proceed_on_failure``.

Task status is written only here. Observers read it through the event
stream (bounded queue) and ``TaskGraph.snapshot()``.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import AsyncIterator
from typing import Any

import structlog

from baton.core.budget import BudgetTracker
from baton.core.checkpoint_manager import CheckpointManager
from baton.core.router import ProviderRouter
from baton.errors import (
    CheckpointCaptureFailed,
    InvalidTransition,
    NoCapableProvider,
    ProviderError,
    ProviderTransientError,
    TaskNotFound,
)
from baton.models.events import Completed, Failed, OutputChunk, StatusChanged, TaskEvent
from baton.models.providers import CompletionRecord, ProviderChunk
from baton.models.records import RecordWriter
from baton.models.task import (
    ALLOWED_TRANSITIONS,
    ProviderAttempt,
    RequestContext,
    Task,
    TaskGraph,
    TaskStatus,
)
from baton.providers.registry import ProviderRegistry
from baton.utils.clock import now_utc

logger = structlog.get_logger().bind(component="core.engine")

_PROGRESS_CAP = 95
_PROGRESS_STEP = 5
_UPSTREAM_CHARS = 800


def _inject_upstream_data(task: Task, graph: TaskGraph) -> str:
    """Build the prompt for a task, appending outputs of succeeded dependencies."""
    if not task.depends_on:
        return task.instructions

    upstream_parts: list[str] = []
    for dep_id in task.depends_on:
        dep = graph.get_task(dep_id)
        if dep and dep.status == TaskStatus.SUCCEEDED and dep.output.strip():
            output = dep.output.strip()
            if len(output) > _UPSTREAM_CHARS:
                output = output[:_UPSTREAM_CHARS] + "\n... [truncated]"
            upstream_parts.append(f"[Result of task {dep.task_id}: {dep.description}]\n{output}")

    if not upstream_parts:
        return task.instructions

    context_block = "\n\n".join(upstream_parts)
    return (
        f"{task.instructions}\n\n"
        f"Results from the tasks this one depends on:\n\n"
        f"{context_block}"
    )


class _GraphRun:
    """Mutable bookkeeping for one executing graph."""

    def __init__(self, graph: TaskGraph, queue_size: int, context: RequestContext) -> None:
        self.graph = graph
        self.context = context
        self.queue: asyncio.Queue[TaskEvent | None] = asyncio.Queue(maxsize=queue_size)
        self.seq = itertools.count(1)
        self.done: dict[str, asyncio.Event] = {t.task_id: asyncio.Event() for t in graph.tasks}
        self.workers: dict[str, asyncio.Task] = {}
        self.cancel_requested: set[str] = set()
        self.driver: asyncio.Task | None = None
        self.emit_lock = asyncio.Lock()
        self.closed = False


class ExecutionEngine:
    """Dependency-ordered, concurrency-bounded executor for TaskGraphs."""

    def __init__(
        self,
        registry: ProviderRegistry,
        router: ProviderRouter,
        budget: BudgetTracker,
        checkpoints: CheckpointManager,
        records: RecordWriter | None = None,
        max_concurrency: int = 4,
        provider_deadline: float = 120.0,
        cancel_grace: float = 5.0,
        queue_size: int = 256,
    ) -> None:
        self.registry = registry
        self.router = router
        self.budget = budget
        self.checkpoints = checkpoints
        self.records = records or RecordWriter(session_id="")
        self.max_concurrency = max_concurrency
        self.provider_deadline = provider_deadline
        self.cancel_grace = cancel_grace
        self.queue_size = queue_size
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._runs: dict[str, _GraphRun] = {}

    # ── Public API ───────────────────────────────────────────────────

    async def execute(
        self,
        graph: TaskGraph,
        context: RequestContext | None = None,
    ) -> AsyncIterator[TaskEvent]:
        """Run ``graph`` to completion, yielding every TaskEvent in order.

        The graph is validated and sealed first. Closing the iterator early
        cancels whatever is still running.
        """
        graph.validate_structure()
        graph.seal()
        run = _GraphRun(graph, self.queue_size, context or RequestContext())
        self._runs[graph.graph_id] = run

        for task in graph.tasks:
            self.records.emit(
                "task_created",
                graph.graph_id,
                task.task_id,
                description=task.description,
                capability=task.capability.value,
                complexity=task.complexity,
                depends_on=task.depends_on,
            )

        logger.info("graph_execution_started", graph_id=graph.graph_id, tasks=len(graph.tasks))
        start = time.perf_counter()
        run.driver = asyncio.create_task(self._drive(run), name=f"baton-graph-{graph.graph_id}")

        try:
            while True:
                event = await run.queue.get()
                if event is None:
                    break
                yield event
            await run.driver
        finally:
            if not run.driver.done():
                await self._abort(run)
            self.records.flush_all()
            logger.info(
                "graph_execution_finished",
                graph_id=graph.graph_id,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                **graph.status_counts(),
            )

    async def cancel(self, graph_id: str, task_id: str | None = None) -> list[str]:
        """Cancel one task (and, through it, its dependents) or the whole graph.

        Running tasks have their provider call cancelled. Whole-graph cancel
        waits ``cancel_grace`` seconds for acknowledgement, then force-marks
        any remaining task Cancelled. Returns the ids targeted.
        """
        run = self._runs.get(graph_id)
        if run is None:
            raise TaskNotFound(f"No executing graph {graph_id}")

        if task_id is not None:
            task = run.graph.get_task(task_id)
            if task is None:
                raise TaskNotFound(f"Task {task_id} not in graph {graph_id}")
            targets = [task] if not task.status.is_terminal else []
        else:
            targets = [t for t in run.graph.tasks if not t.status.is_terminal]

        for task in targets:
            run.cancel_requested.add(task.task_id)
            worker = run.workers.get(task.task_id)
            if worker is not None and not worker.done():
                worker.cancel()

        logger.info(
            "cancel_requested",
            graph_id=graph_id,
            task_id=task_id,
            targets=[t.task_id for t in targets],
        )

        if task_id is None and targets:
            pending = [run.done[t.task_id].wait() for t in targets]
            try:
                await asyncio.wait_for(asyncio.gather(*pending), timeout=self.cancel_grace)
            except asyncio.TimeoutError:
                for task in targets:
                    if not task.status.is_terminal:
                        logger.warning("cancel_forced", graph_id=graph_id, task_id=task.task_id)
                        await self._transition(run, task, TaskStatus.CANCELLED, "force-cancelled after grace period")
                        run.done[task.task_id].set()
        return [t.task_id for t in targets]

    # ── Scheduling ───────────────────────────────────────────────────

    async def _drive(self, run: _GraphRun) -> None:
        for task in run.graph.topological_order():
            run.workers[task.task_id] = asyncio.create_task(
                self._run_task(run, task), name=f"baton-task-{task.task_id}"
            )
        try:
            await asyncio.gather(*(event.wait() for event in run.done.values()))
        finally:
            for worker in run.workers.values():
                if not worker.done():
                    worker.cancel()
            if not run.closed:
                await run.queue.put(None)

    async def _abort(self, run: _GraphRun) -> None:
        # Nobody is consuming any more; stop producing events.
        run.closed = True
        for task_id, worker in run.workers.items():
            run.cancel_requested.add(task_id)
            worker.cancel()
        if run.driver is not None:
            run.driver.cancel()
            await asyncio.gather(run.driver, *run.workers.values(), return_exceptions=True)

    async def _run_task(self, run: _GraphRun, task: Task) -> None:
        try:
            for dep_id in task.depends_on:
                await run.done[dep_id].wait()

            blocking = [
                d for d in task.depends_on
                if run.graph.get_task(d).status != TaskStatus.SUCCEEDED
            ]
            if task.task_id in run.cancel_requested:
                await self._transition(run, task, TaskStatus.CANCELLED, "cancelled before start")
                return
            if blocking and not task.proceed_on_failure:
                await self._transition(
                    run, task, TaskStatus.CANCELLED,
                    f"dependency {', '.join(blocking)} did not succeed",
                )
                return

            await self._transition(run, task, TaskStatus.READY, "dependencies satisfied")
            async with self._semaphore:
                if task.task_id in run.cancel_requested:
                    await self._transition(run, task, TaskStatus.CANCELLED, "cancelled before start")
                    return
                await self._transition(run, task, TaskStatus.RUNNING, "dispatched")
                await self._execute_task(run, task)
        except asyncio.CancelledError:
            if not task.status.is_terminal:
                await self._finish_after(run, task)
                await self._transition(run, task, TaskStatus.CANCELLED, "cancelled")
            if task.task_id not in run.cancel_requested:
                raise
        except Exception as exc:
            logger.error(
                "task_crashed",
                graph_id=run.graph.graph_id,
                task_id=task.task_id,
                error=str(exc),
                exc_info=True,
            )
            if task.status == TaskStatus.RUNNING:
                await self._fail(run, task, f"Internal error: {exc}", "internal", attempts=len(task.attempts))
            elif not task.status.is_terminal:
                await self._transition(run, task, TaskStatus.CANCELLED, f"internal error: {exc}")
        finally:
            # A worker never leaves its task unsettled.
            run.done[task.task_id].set()

    # ── Task execution ───────────────────────────────────────────────

    def _context_payload(self, run: _GraphRun, task: Task) -> dict[str, Any]:
        ctx = run.context
        return {
            "graph_id": run.graph.graph_id,
            "task_id": task.task_id,
            "description": task.description,
            "instructions": task.instructions,
            "capability": task.capability.value,
            "complexity": task.complexity,
            "target_files": task.target_files,
            "upstream": {
                d: run.graph.get_task(d).output
                for d in task.depends_on
                if run.graph.get_task(d).status == TaskStatus.SUCCEEDED
            },
            "workspace": ctx.workspace,
            "active_file": ctx.active_file,
            "open_files": ctx.open_files,
            "conversation_history": ctx.conversation_history,
            "memory_summary": ctx.memory_summary,
        }

    async def _execute_task(self, run: _GraphRun, task: Task) -> None:
        graph_id = run.graph.graph_id
        log = logger.bind(graph_id=graph_id, task_id=task.task_id)

        try:
            candidates = self.router.select_providers(task, self.budget.state())
        except NoCapableProvider as exc:
            await self._fail(run, task, str(exc), "no_capable_provider", attempts=0)
            return

        try:
            task.before_checkpoint_id = await self.checkpoints.capture_before(
                task.task_id, task.target_files, graph_id=graph_id
            )
        except CheckpointCaptureFailed as exc:
            log.error("checkpoint_capture_failed", file_id=exc.file_id, error=str(exc))
            await self._fail(run, task, str(exc), "checkpoint_capture_failed", attempts=0)
            return

        prompt = _inject_upstream_data(task, run.graph)
        payload = self._context_payload(run, task)
        completion: CompletionRecord | None = None
        last_error: ProviderError | None = None

        for attempt_no, descriptor in enumerate(candidates, start=1):
            provider = self.registry.get(descriptor.provider_id)
            task.provider_id = descriptor.provider_id
            task.output_log = []
            attempt_start = time.perf_counter()
            log.info("provider_attempt", provider_id=descriptor.provider_id, attempt=attempt_no)

            try:
                async for item in provider.invoke(prompt, payload, deadline=self.provider_deadline):
                    if isinstance(item, ProviderChunk):
                        task.output_log.append(item.text)
                        task.progress = min(_PROGRESS_CAP, task.progress + _PROGRESS_STEP)
                        task.updated_at = now_utc()
                        await self._emit(run, OutputChunk(
                            graph_id=graph_id,
                            task_id=task.task_id,
                            provider_id=descriptor.provider_id,
                            text=item.text,
                            attempt=attempt_no,
                        ))
                        self.records.output_chunk(graph_id, task.task_id, item.text)
                    else:
                        completion = item
            except ProviderError as exc:
                last_error = exc
                task.attempts.append(ProviderAttempt(
                    provider_id=descriptor.provider_id,
                    error=str(exc),
                    error_kind=exc.kind,
                    duration_ms=round((time.perf_counter() - attempt_start) * 1000, 2),
                ))
                if exc.kind == "auth":
                    self.registry.mark_unavailable(descriptor.provider_id, f"auth failure: {exc}")
                if isinstance(exc, ProviderTransientError):
                    log.warning(
                        "provider_failed_trying_next",
                        provider_id=descriptor.provider_id,
                        kind=exc.kind,
                        error=str(exc),
                    )
                    continue
                log.warning("provider_failed_fatal", provider_id=descriptor.provider_id, kind=exc.kind)
                break

            task.attempts.append(ProviderAttempt(
                provider_id=descriptor.provider_id,
                success=True,
                duration_ms=round((time.perf_counter() - attempt_start) * 1000, 2),
            ))
            break

        if completion is None:
            await self._finish_after(run, task)
            error = last_error or ProviderError("No provider produced a result")
            await self._fail(run, task, str(error), error.kind, attempts=len(task.attempts))
            return

        if task.status.is_terminal:
            # Force-cancelled while the provider was still finishing.
            log.info("late_completion_discarded", provider_id=task.provider_id)
            return

        task.usage = completion.usage
        try:
            await self.checkpoints.apply_edits(task.task_id, completion.edits)
        except CheckpointCaptureFailed as exc:
            log.error("edit_claim_failed", file_id=exc.file_id, error=str(exc))
            await self._finish_after(run, task)
            await self._fail(run, task, str(exc), "checkpoint_capture_failed", attempts=len(task.attempts))
            return
        except OSError as exc:
            log.error("edit_write_failed", error=str(exc))
            await self._finish_after(run, task)
            await self._fail(run, task, f"Applying edits failed: {exc}", "edit_failed", attempts=len(task.attempts))
            return

        await self._finish_after(run, task)
        task.progress = 100
        if not await self._transition(run, task, TaskStatus.SUCCEEDED, "completed"):
            return
        self.budget.record(completion.usage, provider_id=task.provider_id, task_id=task.task_id)
        await self._emit(run, Completed(
            graph_id=graph_id,
            task_id=task.task_id,
            provider_id=task.provider_id,
            usage=completion.usage,
            before_checkpoint_id=task.before_checkpoint_id,
            after_checkpoint_id=task.after_checkpoint_id,
            files_changed=self.checkpoints.touched_files(task.task_id),
        ))

    async def _finish_after(self, run: _GraphRun, task: Task) -> None:
        if task.before_checkpoint_id is None or task.after_checkpoint_id is not None:
            return
        try:
            task.after_checkpoint_id = await self.checkpoints.capture_after(task.task_id)
        except CheckpointCaptureFailed as exc:
            logger.error(
                "after_checkpoint_failed",
                graph_id=run.graph.graph_id,
                task_id=task.task_id,
                error=str(exc),
            )

    async def _fail(self, run: _GraphRun, task: Task, error: str, kind: str, attempts: int) -> None:
        if task.status.is_terminal:
            return
        task.error = error
        task.error_kind = kind
        await self._transition(run, task, TaskStatus.FAILED, error[:200])
        await self._emit(run, Failed(
            graph_id=run.graph.graph_id,
            task_id=task.task_id,
            provider_id=task.provider_id,
            error=error,
            error_kind=kind,
            attempts=attempts,
        ))

    # ── State machine & events ───────────────────────────────────────

    async def _transition(self, run: _GraphRun, task: Task, new: TaskStatus, reason: str = "") -> bool:
        old = task.status
        if old.is_terminal:
            # Already settled (e.g. force-cancelled while the worker was stuck).
            return False
        if new not in ALLOWED_TRANSITIONS[old]:
            raise InvalidTransition(f"Task {task.task_id}: {old.value} → {new.value} is not allowed")

        task.status = new
        task.updated_at = now_utc()
        if new == TaskStatus.RUNNING:
            task.progress = 0
        if new.is_terminal:
            task.completed_at = task.updated_at

        logger.debug(
            "task_status_changed",
            graph_id=run.graph.graph_id,
            task_id=task.task_id,
            old=old.value,
            new=new.value,
            reason=reason,
        )
        self.records.emit(
            "task_status_changed",
            run.graph.graph_id,
            task.task_id,
            old_status=old.value,
            new_status=new.value,
            reason=reason,
            progress=task.progress,
        )
        await self._emit(run, StatusChanged(
            graph_id=run.graph.graph_id,
            task_id=task.task_id,
            old_status=old,
            new_status=new,
            reason=reason,
            progress=task.progress,
        ))
        if new.is_terminal:
            self.records.flush(run.graph.graph_id, task.task_id)
        return True

    async def _emit(self, run: _GraphRun, event: TaskEvent) -> None:
        if run.closed:
            return
        async with run.emit_lock:
            event.seq = next(run.seq)
            await run.queue.put(event)
