"""Tests for Orchestrator and Session — submission, observation and undo."""

from __future__ import annotations

import asyncio

import pytest

from baton.config import BatonSettings
from baton.core.orchestrator import Orchestrator
from baton.core.session import SessionHandle
from baton.errors import PlanningFailed, SessionNotFound, TaskNotFound
from baton.models.events import Completed
from baton.models.providers import FileEdit
from baton.models.task import RequestContext, TaskStatus


@pytest.fixture
def config(tmp_path) -> BatonSettings:
    return BatonSettings(
        max_concurrency=2,
        cancel_grace_seconds=0.5,
        provider_deadline_seconds=5.0,
        persist_records=False,
        trace_dir=tmp_path / "records",
        chunk_batch_size=4,
    )


@pytest.fixture
def make_orchestrator(config, registry_factory, record_sink):
    def _make(*providers) -> Orchestrator:
        return Orchestrator(registry_factory(*providers), config=config, sink=record_sink)
    return _make


@pytest.fixture
def context(workspace) -> RequestContext:
    return RequestContext(workspace=str(workspace.root))


async def collect(events):
    return [event async for event in events]


class TestSubmission:

    @pytest.mark.asyncio
    async def test_submit_and_wait(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1", chunks=["ok"]))

        handle = await orch.submit_request("write a haiku", context)
        graph = await orch.wait(handle)

        assert isinstance(handle, SessionHandle)
        assert graph.graph_id == handle.graph_id
        assert graph.request_id == handle.request_id
        assert all(t.status == TaskStatus.SUCCEEDED for t in graph.tasks)
        await orch.close()

    @pytest.mark.asyncio
    async def test_empty_request_raises_and_runs_nothing(self, make_orchestrator, mock_provider, context):
        provider = mock_provider("p1")
        orch = make_orchestrator(provider)

        with pytest.raises(PlanningFailed):
            await orch.submit_request("  ", context)

        assert provider.calls == 0
        await orch.close()

    @pytest.mark.asyncio
    async def test_one_session_per_workspace(self, make_orchestrator, mock_provider, context, tmp_path):
        orch = make_orchestrator(mock_provider("p1"))

        first = await orch.submit_request("task one", context)
        second = await orch.submit_request("task two", context)
        elsewhere = tmp_path / "other"
        elsewhere.mkdir()
        third = await orch.submit_request("task three", RequestContext(workspace=str(elsewhere)))

        assert first.session_id == second.session_id
        assert third.session_id != first.session_id
        assert len(orch.get_session(first.session_id).graphs) == 2
        await orch.close()

    @pytest.mark.asyncio
    async def test_planner_provider_from_config(self, config, registry_factory, mock_provider, context):
        planner = mock_provider("planner", chunks=['{"tasks": [{"description": "a"}, {"description": "b"}]}'])
        worker = mock_provider("worker")
        config = config.model_copy(update={"planner_provider": "planner"})
        orch = Orchestrator(registry_factory(planner, worker), config=config)

        handle = await orch.submit_request("two things", context)
        graph = await orch.wait(handle)

        assert len(graph.tasks) == 2
        await orch.close()


class TestObservation:

    @pytest.mark.asyncio
    async def test_subscribe_after_finish_replays_history(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1", chunks=["a", "b"]))
        handle = await orch.submit_request("do it", context)
        await orch.wait(handle)

        events = await collect(orch.subscribe(handle))

        session = orch.get_session(handle.session_id)
        assert [e.seq for e in events] == [e.seq for e in session.history(handle.graph_id)]
        assert isinstance(events[-1], Completed)
        await orch.close()

    @pytest.mark.asyncio
    async def test_live_subscribers_see_every_event(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1", chunks=["a", "b", "c"], chunk_delay=0.02))
        handle = await orch.submit_request("do it", context)

        early, late = await asyncio.gather(
            collect(orch.subscribe(handle)),
            collect(orch.subscribe(handle)),
        )
        await orch.wait(handle)

        expected = [e.seq for e in orch.get_session(handle.session_id).history(handle.graph_id)]
        assert [e.seq for e in early] == expected
        assert [e.seq for e in late] == expected
        await orch.close()

    @pytest.mark.asyncio
    async def test_snapshot(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1"))
        handle = await orch.submit_request("do it", context)
        await orch.wait(handle)

        snap = orch.snapshot(handle)

        assert snap["finished"] is True
        assert snap["counts"]["succeeded"] == 1
        assert snap["tasks"][0]["status"] == "succeeded"
        assert snap["budget"]["invocations"] == 1
        await orch.close()

    @pytest.mark.asyncio
    async def test_records_carry_session_id(self, make_orchestrator, mock_provider, context, record_sink):
        orch = make_orchestrator(mock_provider("p1"))
        handle = await orch.submit_request("do it", context)
        await orch.wait(handle)

        assert record_sink.records
        assert {r.session_id for r in record_sink.records} == {handle.session_id}
        await orch.close()


class TestControl:

    @pytest.mark.asyncio
    async def test_cancel_running_graph(self, make_orchestrator, mock_provider, context):
        provider = mock_provider("p1", hang=True)
        orch = make_orchestrator(provider)
        handle = await orch.submit_request("never ends", context)
        await asyncio.wait_for(provider.started.wait(), timeout=2)

        cancelled = await orch.cancel(handle)
        graph = await asyncio.wait_for(orch.wait(handle), timeout=2)

        assert cancelled == [t.task_id for t in graph.tasks]
        assert graph.tasks[0].status == TaskStatus.CANCELLED
        assert await orch.cancel(handle) == []
        await orch.close()

    @pytest.mark.asyncio
    async def test_revert_task_restores_files(self, make_orchestrator, mock_provider, context, workspace):
        workspace.write_bytes("app.py", b"old\n")
        orch = make_orchestrator(mock_provider("p1", edits=[FileEdit(file_id="app.py", content="new\n")]))
        handle = await orch.submit_request("change app", context)
        graph = await orch.wait(handle)
        assert workspace.read_bytes("app.py") == b"new\n"

        result = await orch.revert_task(handle, graph.tasks[0].task_id)

        assert result.files_restored == ["app.py"]
        assert workspace.read_bytes("app.py") == b"old\n"
        await orch.close()

    @pytest.mark.asyncio
    async def test_revert_unknown_task(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1"))
        handle = await orch.submit_request("do it", context)
        await orch.wait(handle)

        with pytest.raises(TaskNotFound):
            await orch.revert_task(handle, "not-a-task")
        await orch.close()

    @pytest.mark.asyncio
    async def test_revert_trailing_across_graphs(self, make_orchestrator, mock_provider, context, workspace):
        orch = make_orchestrator(mock_provider("p1", edits=[FileEdit(file_id="log.txt", content="x")]))
        first = await orch.submit_request("first", context)
        await orch.wait(first)
        second = await orch.submit_request("second", context)
        await orch.wait(second)

        results = await orch.revert_trailing(first.session_id, 2)

        assert len(results) == 2
        assert workspace.read_bytes("log.txt") is None
        await orch.close()

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_orchestrator, mock_provider):
        orch = make_orchestrator(mock_provider("p1"))
        bogus = SessionHandle(session_id="nope", graph_id="g", request_id="r")

        with pytest.raises(SessionNotFound):
            orch.snapshot(bogus)
        with pytest.raises(SessionNotFound):
            await orch.revert_trailing("nope", 1)

    @pytest.mark.asyncio
    async def test_close_session_discards_state(self, make_orchestrator, mock_provider, context):
        orch = make_orchestrator(mock_provider("p1"))
        handle = await orch.submit_request("do it", context)
        await orch.wait(handle)
        session = orch.get_session(handle.session_id)

        await orch.close_session(handle.session_id)

        assert session.checkpoints.list_checkpoints() == []
        assert session.graphs == []
        with pytest.raises(SessionNotFound):
            orch.get_session(handle.session_id)

    @pytest.mark.asyncio
    async def test_close_cancels_running_work(self, make_orchestrator, mock_provider, context):
        provider = mock_provider("p1", hang=True)
        orch = make_orchestrator(provider)
        handle = await orch.submit_request("never ends", context)
        await asyncio.wait_for(provider.started.wait(), timeout=2)
        graph = orch.get_session(handle.session_id).get_graph(handle.graph_id)

        await asyncio.wait_for(orch.close(), timeout=3)

        assert graph.tasks[0].status == TaskStatus.CANCELLED
