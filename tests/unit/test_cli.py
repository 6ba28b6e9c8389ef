"""Tests for the baton CLI (offline, echo providers)."""

from __future__ import annotations

from typer.testing import CliRunner

from baton.config import settings
from baton.main import app
from baton.models.records import JsonlRecordSink, PersistenceRecord

runner = CliRunner()


def test_providers_dry_run_lists_echo_registry():
    result = runner.invoke(app, ["providers", "--dry-run"])
    assert result.exit_code == 0, result.output
    for provider_id in ("echo-low", "echo-medium", "echo-high"):
        assert provider_id in result.output


def test_plan_dry_run_prints_graph_and_routes(tmp_path):
    result = runner.invoke(app, ["plan", "fix the bug in the parser", "--dry-run", "-w", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "Task graph" in result.output
    assert "echo-low" in result.output


def test_plan_empty_request_exits_nonzero(tmp_path):
    result = runner.invoke(app, ["plan", "   ", "--dry-run", "-w", str(tmp_path)])
    assert result.exit_code == 1
    assert "Planning failed" in result.output


def test_run_dry_run_applies_file_blocks(tmp_path):
    request = "```file:hello.txt\nhi there\n```\n"
    result = runner.invoke(app, ["run", request, "--dry-run", "--no-persist", "-w", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "hello.txt").read_text() == "hi there\n"
    assert "Summary" in result.output


def test_trace_lists_and_shows_sessions(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "trace_dir", tmp_path)
    sink = JsonlRecordSink(tmp_path)
    sink.append(PersistenceRecord(
        session_id="sess-1",
        record_type="task_status_changed",
        graph_id="graph-1",
        task_id="t1",
        payload={"old_status": "running", "new_status": "succeeded", "reason": "completed"},
    ))

    listing = runner.invoke(app, ["trace"])
    assert listing.exit_code == 0, listing.output
    assert "sess-1" in listing.output

    by_graph = runner.invoke(app, ["trace", "graph-1"])
    assert by_graph.exit_code == 0, by_graph.output
    assert "succeeded" in by_graph.output


def test_trace_with_no_records(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "trace_dir", tmp_path / "empty")
    result = runner.invoke(app, ["trace"])
    assert result.exit_code == 0
    assert "No records found" in result.output
