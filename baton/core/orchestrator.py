"""Orchestrator — the inbound surface of Baton.

Flow for one request:
    submit_request → Session (one per workspace) → TaskPlanner → TaskGraph
    → ExecutionEngine in the background → events through subscribe()

Callers hold a SessionHandle and pass it explicitly to every other call.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import structlog

from baton.config import BatonSettings, settings as default_settings
from baton.core.budget import BudgetTracker
from baton.core.planner import TaskPlanner
from baton.core.router import ProviderRouter
from baton.core.session import Session, SessionHandle
from baton.errors import SessionNotFound
from baton.models.checkpoints import RevertResult
from baton.models.events import TaskEvent
from baton.models.records import JsonlRecordSink, RecordSink, RecordWriter
from baton.models.task import RequestContext, TaskGraph
from baton.providers.registry import ProviderRegistry
from baton.tools.workspace import Workspace

logger = structlog.get_logger().bind(component="core.orchestrator")


class Orchestrator:
    """Creates sessions and routes every inbound call to the right one."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: BatonSettings | None = None,
        sink: RecordSink | None = None,
        planner: TaskPlanner | None = None,
    ) -> None:
        self.config = config or default_settings
        self.registry = registry
        self.router = ProviderRouter.from_settings(registry, self.config)
        if sink is None and self.config.persist_records:
            sink = JsonlRecordSink(self.config.trace_dir)
        self.sink = sink

        if planner is None:
            planner_provider = None
            if self.config.planner_provider:
                planner_provider = registry.get(self.config.planner_provider)
            planner = TaskPlanner(planner_provider, deadline=self.config.provider_deadline_seconds)
        self.planner = planner
        self._sessions: dict[str, Session] = {}

    @classmethod
    def from_settings(cls, config: BatonSettings | None = None, sink: RecordSink | None = None) -> Orchestrator:
        config = config or default_settings
        if config.providers_file is not None:
            registry = ProviderRegistry.from_file(config.providers_file)
        else:
            logger.warning("no_providers_file_using_echo")
            registry = ProviderRegistry.echo_defaults()
        return cls(registry, config=config, sink=sink)

    # ── Sessions ─────────────────────────────────────────────────────

    def open_session(self, workspace: str | Path = ".") -> Session:
        """Return the session for ``workspace``, creating it on first use."""
        root = Path(workspace).resolve()
        for session in self._sessions.values():
            if session.workspace.root == root:
                return session

        budget = BudgetTracker(
            ceiling=self.config.budget_ceiling,
            window_seconds=self.config.budget_window_seconds,
            warn_percent=self.config.budget_warn_percent,
        )
        session_id = str(uuid.uuid4())[:12]
        session = Session(
            Workspace(root),
            self.registry,
            self.router,
            self.planner,
            budget,
            records=RecordWriter(session_id, self.sink, self.config.chunk_batch_size),
            max_concurrency=self.config.max_concurrency,
            provider_deadline=self.config.provider_deadline_seconds,
            cancel_grace=self.config.cancel_grace_seconds,
            queue_size=self.config.event_queue_size,
            session_id=session_id,
        )
        self._sessions[session.session_id] = session
        logger.info("session_opened", session_id=session.session_id, workspace=str(root))
        return session

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return session

    async def close_session(self, session_id: str) -> None:
        session = self.get_session(session_id)
        await session.close()
        del self._sessions[session_id]

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        await self.registry.close()

    # ── Requests ─────────────────────────────────────────────────────

    async def submit_request(self, text: str, context: RequestContext | None = None) -> SessionHandle:
        """Plan ``text`` and start executing it.

        Raises:
            PlanningFailed: the planner produced no usable graph. Nothing ran.
        """
        context = context or RequestContext()
        session = self.open_session(context.workspace)
        graph = await session.plan(text, context)
        session.start(graph, context)
        logger.info(
            "request_submitted",
            session_id=session.session_id,
            graph_id=graph.graph_id,
            tasks=len(graph.tasks),
        )
        return SessionHandle(
            session_id=session.session_id,
            graph_id=graph.graph_id,
            request_id=graph.request_id,
        )

    async def subscribe(self, handle: SessionHandle) -> AsyncIterator[TaskEvent]:
        """Every event of the handle's graph: history first, then live."""
        session = self.get_session(handle.session_id)
        async for event in session.subscribe(handle.graph_id):
            yield event

    async def cancel(self, handle: SessionHandle, task_id: str | None = None) -> list[str]:
        session = self.get_session(handle.session_id)
        return await session.cancel(handle.graph_id, task_id)

    async def revert_task(self, handle: SessionHandle, task_id: str, force: bool = False) -> RevertResult:
        """Undo every file edit ``task_id`` made.

        Raises:
            TaskNotFound: the task is not part of this session.
            ConflictingLaterEdit: a later surviving task changed the same files.
            RevertFailed: restoring failed and was rolled back.
        """
        session = self.get_session(handle.session_id)
        session.graph_of_task(task_id)
        return await session.checkpoints.revert(task_id, force=force)

    async def revert_trailing(self, session_id: str, count: int, force: bool = False) -> list[RevertResult]:
        session = self.get_session(session_id)
        return await session.checkpoints.revert_trailing(count, force=force)

    def snapshot(self, handle: SessionHandle) -> dict[str, Any]:
        """Read-only view of the graph's tasks and the session budget."""
        session = self.get_session(handle.session_id)
        graph = session.get_graph(handle.graph_id)
        return {
            "session_id": session.session_id,
            "graph_id": graph.graph_id,
            "analysis": graph.analysis,
            "finished": graph.is_finished,
            "counts": graph.status_counts(),
            "tasks": graph.snapshot(),
            "budget": session.budget.get_status(),
        }

    async def wait(self, handle: SessionHandle) -> TaskGraph:
        session = self.get_session(handle.session_id)
        return await session.wait(handle.graph_id)
