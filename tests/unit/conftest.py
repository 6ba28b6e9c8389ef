"""Unit-test conftest — MockProvider, shared fixtures, and async helpers.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from baton.core.budget import BudgetTracker
from baton.core.checkpoint_manager import CheckpointManager
from baton.core.engine import ExecutionEngine
from baton.core.router import ProviderRouter
from baton.models.providers import (
    CompletionRecord,
    FileEdit,
    ProviderChunk,
    ProviderDescriptor,
    ProviderTier,
)
from baton.models.records import MemoryRecordSink, RecordWriter
from baton.models.task import Capability, Task, TaskGraph, Usage
from baton.providers.base import BaseProvider
from baton.providers.registry import ProviderRegistry
from baton.tools.workspace import Workspace


# ─────────────────────────────────────────────────────────────────────────────
# MockProvider: drop-in BaseProvider for engine and router tests
# ─────────────────────────────────────────────────────────────────────────────

class MockProvider(BaseProvider):
    """Configurable fake provider.

    Args:
        provider_id:   Registry id.
        capabilities:  Declared capabilities (default: general only).
        tier:          ProviderTier.
        chunks:        Strings streamed before completion (default: ["mock chunk"]).
        delay:         Seconds to sleep before the first chunk.
        chunk_delay:   Seconds to sleep before EACH chunk.
        raises:        If set, raised after the chunks instead of completing.
        hang:          Never yield anything (sleeps forever).
        edits:         FileEdits carried by the CompletionRecord.
        usage:         Usage reported on completion (default: 10 in / 5 out, cost 0.01).
        input_cost_per_1m / output_cost_per_1m / cost_per_call: routing costs.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        capabilities: tuple[Capability, ...] = (Capability.GENERAL,),
        tier: ProviderTier = ProviderTier.MEDIUM,
        chunks: list[str] | None = None,
        delay: float = 0.0,
        chunk_delay: float = 0.0,
        raises: Exception | None = None,
        hang: bool = False,
        edits: list[FileEdit] | None = None,
        usage: Usage | None = None,
        input_cost_per_1m: float = 1.0,
        output_cost_per_1m: float = 1.0,
        cost_per_call: float = 0.0,
        max_context_units: int = 128_000,
    ) -> None:
        super().__init__(ProviderDescriptor(
            provider_id=provider_id,
            capabilities=frozenset(capabilities),
            tier=tier,
            model=f"mock-{provider_id}",
            input_cost_per_1m=input_cost_per_1m,
            output_cost_per_1m=output_cost_per_1m,
            cost_per_call=cost_per_call,
            max_context_units=max_context_units,
        ))
        self.chunks = ["mock chunk"] if chunks is None else chunks
        self.delay = delay
        self.chunk_delay = chunk_delay
        self.raises = raises
        self.hang = hang
        self.edits = edits or []
        self.usage = usage or Usage(input_units=10, output_units=5, cost=0.01)
        # Call tracking for assertions
        self.calls: int = 0
        self.prompts: list[str] = []
        self.payloads: list[dict[str, Any]] = []
        self.active: int = 0
        self.max_active: int = 0
        self.started = asyncio.Event()
        self.closed_streams: int = 0

    async def stream(
        self,
        prompt: str,
        context_payload: dict[str, Any],
    ) -> AsyncIterator[ProviderChunk | CompletionRecord]:
        self.calls += 1
        self.prompts.append(prompt)
        self.payloads.append(context_payload)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.hang:
                await asyncio.sleep(9999)
            if self.delay > 0:
                await asyncio.sleep(self.delay)
            for chunk in self.chunks:
                if self.chunk_delay > 0:
                    await asyncio.sleep(self.chunk_delay)
                yield ProviderChunk(text=chunk)
            if self.raises is not None:
                raise self.raises
            yield CompletionRecord(success=True, usage=self.usage, edits=self.edits)
        finally:
            self.active -= 1
            self.closed_streams += 1


class SharedGauge:
    """Counts how many providers sharing it are streaming at once."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0


class GaugedProvider(MockProvider):
    """MockProvider that reports into a SharedGauge while streaming."""

    def __init__(self, provider_id: str, gauge: SharedGauge, **kwargs) -> None:
        super().__init__(provider_id, **kwargs)
        self.gauge = gauge

    async def stream(self, prompt, context_payload):
        self.gauge.active += 1
        self.gauge.max_active = max(self.gauge.max_active, self.gauge.active)
        try:
            async for item in super().stream(prompt, context_payload):
                yield item
        finally:
            self.gauge.active -= 1


# ─────────────────────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────────────────────

def make_registry(*providers: BaseProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    return registry


def make_task(
    task_id: str,
    *,
    depends_on: list[str] | None = None,
    capability: Capability = Capability.GENERAL,
    complexity: int = 5,
    instructions: str | None = None,
    target_files: list[str] | None = None,
    proceed_on_failure: bool = False,
) -> Task:
    return Task(
        task_id=task_id,
        description=f"task {task_id}",
        instructions=instructions or f"do {task_id}",
        capability=capability,
        complexity=complexity,
        depends_on=depends_on or [],
        target_files=target_files or [],
        proceed_on_failure=proceed_on_failure,
    )


def make_graph(*tasks: Task) -> TaskGraph:
    return TaskGraph(tasks=list(tasks), original_request="test request")


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def workspace(tmp_path) -> Workspace:
    return Workspace(tmp_path)


@pytest.fixture
def record_sink() -> MemoryRecordSink:
    return MemoryRecordSink()


@pytest.fixture
def build_engine(workspace, record_sink):
    """Factory: build_engine(*providers, **engine_kwargs) → ExecutionEngine."""

    def _build(
        *providers: BaseProvider,
        budget: BudgetTracker | None = None,
        router_kwargs: dict | None = None,
        **kwargs,
    ) -> ExecutionEngine:
        registry = make_registry(*providers)
        records = RecordWriter("test-session", record_sink, chunk_batch_size=2)
        kwargs.setdefault("cancel_grace", 0.5)
        return ExecutionEngine(
            registry,
            ProviderRouter(registry, **(router_kwargs or {})),
            budget or BudgetTracker(),
            CheckpointManager(workspace, records),
            records=records,
            **kwargs,
        )

    return _build


@pytest.fixture
def mock_provider():
    """Factory for MockProvider: mock_provider("p1", tier=..., raises=...)."""
    return MockProvider


@pytest.fixture
def gauged_provider():
    """Factory for GaugedProvider: gauged_provider("p1", gauge, **kwargs)."""
    return GaugedProvider


@pytest.fixture
def gauge() -> SharedGauge:
    return SharedGauge()


@pytest.fixture
def task_factory():
    """Factory for Task: task_factory("a", depends_on=[...], complexity=...)."""
    return make_task


@pytest.fixture
def graph_factory():
    """Factory for TaskGraph: graph_factory(task_a, task_b, ...)."""
    return make_graph


@pytest.fixture
def registry_factory():
    """Factory for ProviderRegistry: registry_factory(provider_a, provider_b, ...)."""
    return make_registry
