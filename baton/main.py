"""Baton CLI — the user interface.

Commands:
    baton providers  — Registered providers and their availability
    baton plan       — Plan a request and show the task graph (nothing runs)
    baton run        — Plan and execute a request with live output
    baton trace      — View persisted orchestration records
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from baton.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="baton",
    help="Baton — route coding requests across multiple AI providers, with undo",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATUS_STYLE = {
    "pending": "dim",
    "ready": "cyan",
    "running": "yellow",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "magenta",
}


def _build_orchestrator(dry_run: bool = False, persist: bool | None = None):
    from baton.config import settings
    from baton.core.orchestrator import Orchestrator
    from baton.providers.registry import ProviderRegistry

    config = settings
    if persist is not None:
        config = settings.model_copy(update={"persist_records": persist})
    if dry_run:
        config = config.model_copy(update={"planner_provider": "", "routing_mode": "auto"})
        return Orchestrator(ProviderRegistry.echo_defaults(), config=config)
    return Orchestrator.from_settings(config)


def _graph_table(graph, title: str) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("#", style="dim", width=3)
    table.add_column("Task", style="cyan")
    table.add_column("Capability", style="magenta")
    table.add_column("Cx", justify="right")
    table.add_column("Depends on", style="dim")
    table.add_column("Status")
    table.add_column("Provider", style="green")
    for i, task in enumerate(graph.tasks, 1):
        style = _STATUS_STYLE.get(task.status.value, "white")
        table.add_row(
            str(i),
            f"{task.task_id}  {task.description[:60]}",
            task.capability.value,
            str(task.complexity),
            ", ".join(task.depends_on) or "—",
            f"[{style}]{task.status.value}[/]",
            task.provider_id or "—",
        )
    return table


# ── baton providers ──────────────────────────────────────────


@app.command()
def providers(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the offline echo registry"),
):
    """List registered providers, tiers, costs and availability."""
    orchestrator = _build_orchestrator(dry_run=dry_run)
    registry = orchestrator.registry

    table = Table(title="Providers (registration order)")
    table.add_column("Provider", style="cyan")
    table.add_column("Tier")
    table.add_column("Capabilities", style="magenta")
    table.add_column("$/1M in", justify="right")
    table.add_column("$/1M out", justify="right")
    table.add_column("Context", justify="right")
    table.add_column("Available", justify="center")

    for d in registry.descriptors():
        available = registry.is_available(d.provider_id)
        table.add_row(
            d.provider_id,
            d.tier.value,
            ", ".join(sorted(c.value for c in d.capabilities)),
            f"{d.input_cost_per_1m:.2f}",
            f"{d.output_cost_per_1m:.2f}",
            str(d.max_context_units),
            "✅" if available else f"[red]❌ {registry.unavailable_reason(d.provider_id)}[/]",
        )
    console.print(table)


# ── baton plan ───────────────────────────────────────────────


@app.command()
def plan(
    request: str = typer.Argument(..., help="What you want done"),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Workspace root"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Use the keyword planner and echo providers"),
):
    """Plan a request and print its task graph without executing it."""
    asyncio.run(_plan(request, workspace, dry_run))


async def _plan(request: str, workspace: Path, dry_run: bool) -> None:
    from baton.core.budget import BudgetTracker
    from baton.errors import NoCapableProvider, PlanningFailed
    from baton.models.task import RequestContext

    orchestrator = _build_orchestrator(dry_run=dry_run)
    try:
        graph = await orchestrator.planner.plan(request, RequestContext(workspace=str(workspace)))
    except PlanningFailed as exc:
        console.print(f"[red]Planning failed: {exc}[/]")
        raise typer.Exit(code=1)
    finally:
        await orchestrator.close()

    if graph.analysis:
        console.print(Panel(graph.analysis, title="[bold blue]Analysis[/]", border_style="blue"))
    console.print(_graph_table(graph, f"Task graph {graph.graph_id}"))

    budget = BudgetTracker(ceiling=orchestrator.config.budget_ceiling).state()
    for task in graph.topological_order():
        try:
            chain = orchestrator.router.select_providers(task, budget)
            route = " → ".join(d.provider_id for d in chain)
        except NoCapableProvider as exc:
            route = f"[red]{exc.reason}[/]"
        console.print(f"[dim]{task.task_id}:[/] {route}")
    console.print(f"[dim]Waves: {len(graph.execution_waves())} | "
                  f"Estimated: {graph.estimated_duration_minutes:.0f} min[/]")


# ── baton run ────────────────────────────────────────────────


@app.command()
def run(
    request: str = typer.Argument(..., help="What you want done"),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Workspace root"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Execute with offline echo providers"),
    persist: Optional[bool] = typer.Option(None, "--persist/--no-persist", help="Write JSONL records"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show status transitions"),
):
    """Plan and execute a request, streaming every task's output."""
    asyncio.run(_run(request, workspace, dry_run, persist, verbose))


async def _run(request: str, workspace: Path, dry_run: bool, persist: bool | None, verbose: bool) -> None:
    from baton.errors import PlanningFailed
    from baton.models.events import Completed, Failed, OutputChunk, StatusChanged
    from baton.models.task import RequestContext

    orchestrator = _build_orchestrator(dry_run=dry_run, persist=persist)
    try:
        try:
            handle = await orchestrator.submit_request(
                request, RequestContext(workspace=str(workspace.resolve()))
            )
        except PlanningFailed as exc:
            console.print(f"[red]Planning failed: {exc}[/]")
            raise typer.Exit(code=1)

        console.print(f"[dim]Session {handle.session_id} | graph {handle.graph_id}[/]\n")
        current = None
        async for event in orchestrator.subscribe(handle):
            if isinstance(event, OutputChunk):
                if current != event.task_id:
                    console.print(f"\n[bold cyan]▶ {event.task_id}[/] [dim]({event.provider_id})[/]")
                    current = event.task_id
                console.print(event.text, end="", markup=False, highlight=False)
            elif isinstance(event, StatusChanged) and verbose:
                console.print(
                    f"\n[dim]{event.task_id}: {event.old_status.value} → "
                    f"{event.new_status.value} {event.reason}[/]"
                )
            elif isinstance(event, Completed):
                files = ", ".join(event.files_changed) or "no files"
                console.print(f"\n[green]✓ {event.task_id}[/] [dim]{files} | ${event.usage.cost:.4f}[/]")
            elif isinstance(event, Failed):
                console.print(f"\n[red]✗ {event.task_id}: {event.error_kind} — {event.error[:160]}[/]")

        graph = await orchestrator.wait(handle)
        console.print()
        console.print(_graph_table(graph, "Summary"))
        budget = orchestrator.snapshot(handle)["budget"]
        console.print(
            f"[dim]Spent ${budget['window_spent']:.4f} this window | "
            f"{budget['invocations']} invocation(s) | "
            f"{budget['lifetime_input_units']}→{budget['lifetime_output_units']} units[/]"
        )
    finally:
        await orchestrator.close()


# ── baton trace ──────────────────────────────────────────────


@app.command()
def trace(
    record_id: str = typer.Argument(
        None,
        help="Session or graph id. If omitted, lists recent sessions on disk.",
    ),
):
    """View persisted orchestration records."""
    from baton.config import settings
    from baton.models.records import JsonlRecordSink

    sink = JsonlRecordSink(settings.trace_dir)

    if not record_id:
        session_ids = sink.list_sessions(limit=15)
        if not session_ids:
            console.print("[yellow]No records found. Run 'baton run --persist' first.[/]")
            return
        table = Table(title=f"Recent sessions  (from {settings.trace_dir})")
        table.add_column("Session ID", style="cyan")
        table.add_column("Records", justify="right")
        table.add_column("Graphs", justify="right")
        for sid in session_ids:
            records = sink.load(sid)
            table.add_row(sid, str(len(records)), str(len({r.graph_id for r in records if r.graph_id})))
        console.print(table)
        console.print("[dim]Run: baton trace <session_id|graph_id>  for the full record log[/]")
        return

    records = sink.load(record_id)
    if not records:
        for sid in sink.list_sessions(limit=1000):
            records = [r for r in sink.load(sid) if r.graph_id == record_id]
            if records:
                break
    if not records:
        console.print(f"[yellow]No records found for: {record_id}[/]")
        return

    table = Table(title=f"Records for {record_id}", show_lines=True)
    table.add_column("#", style="dim", width=4)
    table.add_column("Offset", style="dim", width=10)
    table.add_column("Type", style="cyan")
    table.add_column("Task", style="green")
    table.add_column("Info", style="white")

    t0 = records[0].timestamp
    for i, record in enumerate(records, 1):
        offset_ms = (record.timestamp - t0).total_seconds() * 1000
        payload = record.payload
        if record.record_type == "task_status_changed":
            info = f"{payload.get('old_status')} → {payload.get('new_status')} {payload.get('reason', '')}"
        elif record.record_type == "output_chunk":
            info = "".join(payload.get("chunks", []))[:80]
        elif record.record_type in ("checkpoint_created", "checkpoint_reverted"):
            info = f"{payload.get('kind', 'revert')}: {', '.join(payload.get('files', [])) or '—'}"
        else:
            info = str(payload.get("description", ""))[:80]
        table.add_row(str(i), f"+{offset_ms:.0f}ms", record.record_type, record.task_id or "—", info)

    console.print(table)


if __name__ == "__main__":
    app()
