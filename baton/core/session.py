"""Session — the unit of undo scope.

One session per workspace. It owns every graph submitted against that
workspace, the checkpoint history, the cumulative budget and the event
history. Nothing here is global: every operation is reached through an
explicit Session object.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from datetime import datetime

import structlog
from pydantic import BaseModel, ConfigDict

from baton.core.budget import BudgetTracker
from baton.core.checkpoint_manager import CheckpointManager
from baton.core.engine import ExecutionEngine
from baton.core.planner import TaskPlanner
from baton.core.router import ProviderRouter
from baton.errors import TaskNotFound
from baton.models.events import TaskEvent
from baton.models.records import RecordWriter
from baton.models.task import RequestContext, TaskGraph
from baton.providers.registry import ProviderRegistry
from baton.tools.workspace import Workspace
from baton.utils.clock import now_utc

logger = structlog.get_logger().bind(component="core.session")


class SessionHandle(BaseModel):
    """Returned by ``submit_request``; names one graph inside one session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    graph_id: str
    request_id: str


class _GraphStream:
    """Event history and live subscribers for one graph."""

    def __init__(self, graph: TaskGraph) -> None:
        self.graph = graph
        self.history: list[TaskEvent] = []
        self.subscribers: list[asyncio.Queue[TaskEvent | None]] = []
        self.finished = asyncio.Event()
        self.pump: asyncio.Task | None = None


class Session:
    """Everything Baton knows about one workspace."""

    def __init__(
        self,
        workspace: Workspace,
        registry: ProviderRegistry,
        router: ProviderRouter,
        planner: TaskPlanner,
        budget: BudgetTracker,
        records: RecordWriter | None = None,
        max_concurrency: int = 4,
        provider_deadline: float = 120.0,
        cancel_grace: float = 5.0,
        queue_size: int = 256,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())[:12]
        self.workspace = workspace
        self.registry = registry
        self.planner = planner
        self.budget = budget
        self.records = records or RecordWriter(self.session_id)
        self.checkpoints = CheckpointManager(workspace, self.records)
        self.engine = ExecutionEngine(
            registry,
            router,
            budget,
            self.checkpoints,
            records=self.records,
            max_concurrency=max_concurrency,
            provider_deadline=provider_deadline,
            cancel_grace=cancel_grace,
            queue_size=queue_size,
        )
        self.queue_size = queue_size
        self.created_at: datetime = now_utc()
        self._streams: dict[str, _GraphStream] = {}

    # ── Graphs ───────────────────────────────────────────────────────

    @property
    def graphs(self) -> list[TaskGraph]:
        return [s.graph for s in self._streams.values()]

    def get_graph(self, graph_id: str) -> TaskGraph:
        return self._stream(graph_id).graph

    def graph_of_task(self, task_id: str) -> TaskGraph:
        for stream in self._streams.values():
            if stream.graph.get_task(task_id) is not None:
                return stream.graph
        raise TaskNotFound(f"Task {task_id} not in session {self.session_id}")

    async def plan(self, request: str, context: RequestContext | None = None) -> TaskGraph:
        return await self.planner.plan(request, context)

    def start(self, graph: TaskGraph, context: RequestContext | None = None) -> None:
        """Begin executing ``graph`` in the background."""
        stream = _GraphStream(graph)
        self._streams[graph.graph_id] = stream
        stream.pump = asyncio.create_task(
            self._pump(stream, context), name=f"baton-session-{graph.graph_id}"
        )

    async def _pump(self, stream: _GraphStream, context: RequestContext | None) -> None:
        try:
            async for event in self.engine.execute(stream.graph, context):
                stream.history.append(event)
                for queue in list(stream.subscribers):
                    await queue.put(event)
        finally:
            stream.finished.set()
            for queue in list(stream.subscribers):
                await queue.put(None)

    async def subscribe(self, graph_id: str) -> AsyncIterator[TaskEvent]:
        """Replay the graph's events so far, then follow it live until it ends."""
        stream = self._stream(graph_id)

        replay = list(stream.history)
        if stream.finished.is_set():
            for event in replay:
                yield event
            return

        queue: asyncio.Queue[TaskEvent | None] = asyncio.Queue(maxsize=self.queue_size)
        stream.subscribers.append(queue)
        try:
            for event in replay:
                yield event
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            stream.subscribers.remove(queue)

    async def cancel(self, graph_id: str, task_id: str | None = None) -> list[str]:
        stream = self._stream(graph_id)
        if stream.finished.is_set():
            return []
        return await self.engine.cancel(graph_id, task_id)

    async def wait(self, graph_id: str) -> TaskGraph:
        stream = self._stream(graph_id)
        await stream.finished.wait()
        return stream.graph

    def history(self, graph_id: str | None = None) -> list[TaskEvent]:
        if graph_id is not None:
            return list(self._stream(graph_id).history)
        return [e for s in self._streams.values() for e in s.history]

    def _stream(self, graph_id: str) -> _GraphStream:
        stream = self._streams.get(graph_id)
        if stream is None:
            raise TaskNotFound(f"Graph {graph_id} not in session {self.session_id}")
        return stream

    # ── Lifecycle ────────────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel running graphs, then discard checkpoints and history."""
        for graph_id, stream in list(self._streams.items()):
            if not stream.finished.is_set():
                await self.engine.cancel(graph_id)
                if stream.pump is not None:
                    stream.pump.cancel()
                    await asyncio.gather(stream.pump, return_exceptions=True)
            for queue in stream.subscribers:
                if not queue.full():
                    queue.put_nowait(None)
        self.records.flush_all()
        self.checkpoints.clear()
        self._streams.clear()
        logger.info("session_closed", session_id=self.session_id)
