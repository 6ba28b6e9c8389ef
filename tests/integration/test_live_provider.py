"""Live round trip against a real OpenAI-compatible endpoint."""

from __future__ import annotations

import pytest

from baton.config import BatonSettings
from baton.core.orchestrator import Orchestrator
from baton.models.providers import CompletionRecord, ProviderChunk
from baton.models.task import RequestContext, TaskStatus
from baton.providers.registry import ProviderRegistry

pytestmark = [pytest.mark.integration, pytest.mark.slow]


@pytest.mark.asyncio
async def test_live_stream_reports_usage(live_provider):
    items = [
        item async for item in live_provider.invoke("Reply with the single word: pong", deadline=60)
    ]

    text = "".join(i.text for i in items if isinstance(i, ProviderChunk))
    completion = items[-1]
    assert isinstance(completion, CompletionRecord)
    assert "pong" in text.lower()
    assert completion.usage.output_units > 0


@pytest.mark.asyncio
async def test_live_request_writes_file(live_provider, tmp_path):
    registry = ProviderRegistry()
    registry.register(live_provider)
    config = BatonSettings(persist_records=False, provider_deadline_seconds=90)
    orchestrator = Orchestrator(registry, config=config)

    handle = await orchestrator.submit_request(
        "Create the file greeting.txt containing exactly the line: hello baton",
        RequestContext(workspace=str(tmp_path)),
    )
    graph = await orchestrator.wait(handle)
    await orchestrator.close()

    assert graph.tasks[0].status == TaskStatus.SUCCEEDED
    assert "hello baton" in (tmp_path / "greeting.txt").read_text()
