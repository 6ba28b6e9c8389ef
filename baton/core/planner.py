"""Task Planner — decomposes a user request into a TaskGraph.

Resolution order:
  1. Planner provider configured → prompt it for a JSON plan
       - unparseable output → single ``general`` task carrying the request
       - valid JSON with zero tasks → PlanningFailed
       - provider error → keyword plan (step 2)
  2. No planner provider → keyword classifier, single-task plan

LLM output format:
    {
      "analysis": "...",
      "tasks": [
        {"id": "ui", "description": "...", "instructions": "...",
         "capability": "ui-generation", "complexity": 4,
         "dependencies": [], "target_files": ["src/App.tsx"], "priority": 1}
      ],
      "estimated_duration": 15
    }

``dependencies`` may reference 1-based step numbers or step ``id`` values.
Planning never touches files.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from baton.errors import PlanningFailed, ProviderError
from baton.models.providers import CompletionRecord, ProviderChunk
from baton.models.task import Capability, RequestContext, Task, TaskGraph
from baton.providers.base import BaseProvider

logger = structlog.get_logger().bind(component="core.planner")

_PLANNER_SYSTEM = """\
You are the planner of a multi-provider coding assistant. Break the user's
request into 1-6 subtasks, each handled by one specialist provider.

Capabilities:
  ui-generation           — UI components, layouts, styling
  code-edit               — writing, refactoring or fixing code
  large-context-analysis  — reading and reasoning over many files
  general                 — anything else

Output ONLY one JSON object:
{
  "analysis": "Brief analysis of what needs to be done",
  "tasks": [
    {
      "id": "short-step-id",
      "description": "What this task does",
      "instructions": "Detailed instructions for the provider",
      "capability": "ui-generation" | "code-edit" | "large-context-analysis" | "general",
      "complexity": 1-10,
      "dependencies": [1-based step numbers or step ids this task needs],
      "target_files": ["relative/path"],
      "priority": 1
    }
  ],
  "estimated_duration": 15
}"""

# Provider names older plans used in place of a capability.
_AGENT_HINTS: dict[str, Capability] = {
    "v0": Capability.UI_GENERATION,
    "claude": Capability.CODE_EDIT,
    "gemini": Capability.LARGE_CONTEXT_ANALYSIS,
    "gpt": Capability.GENERAL,
}

_UI_SIGNALS = re.compile(
    r"\b(ui|component|button|page|layout|css|tailwind|react|style|styling|form|modal|navbar|landing)\b",
    re.IGNORECASE,
)
_ANALYSIS_SIGNALS = re.compile(
    r"\b(analy[sz]e|summari[sz]e|explain|review|audit|understand|codebase|architecture|"
    r"whole project|all files)\b",
    re.IGNORECASE,
)
_CODE_SIGNALS = re.compile(
    r"\b(fix|bug|refactor|implement|function|class|method|test|rename|endpoint|"
    r"migrate|optimi[sz]e|code|script)\b",
    re.IGNORECASE,
)

_HARD_SIGNALS = re.compile(
    r"\b(architecture|redesign|migrate|migration|concurren\w*|security|distributed|"
    r"across|entire|whole|performance|refactor)\b",
    re.IGNORECASE,
)
_EASY_SIGNALS = re.compile(
    r"\b(typo|rename|comment|format|docstring|spelling|bump)\b",
    re.IGNORECASE,
)


def classify_capability(text: str) -> Capability:
    """Keyword classifier used when no planner provider is configured."""
    if _UI_SIGNALS.search(text):
        return Capability.UI_GENERATION
    if _ANALYSIS_SIGNALS.search(text):
        return Capability.LARGE_CONTEXT_ANALYSIS
    if _CODE_SIGNALS.search(text):
        return Capability.CODE_EDIT
    return Capability.GENERAL


class ComplexityScorer:
    """Assigns a 1–10 complexity to each planned task.

    Planner-supplied scores are clamped; missing or non-numeric scores fall
    back to a heuristic over the instruction text. Subclass and pass to
    TaskPlanner to plug in a different policy.
    """

    def score(self, instructions: str, raw: Any = None, target_files: list[str] | None = None) -> int:
        if raw is not None and not isinstance(raw, bool):
            try:
                return max(1, min(10, round(float(raw))))
            except (TypeError, ValueError):
                pass
        return self.heuristic(instructions, target_files or [])

    def heuristic(self, instructions: str, target_files: list[str]) -> int:
        score = 3
        if len(instructions) > 400:
            score += 2
        if len(instructions) > 1200:
            score += 2
        score += 2 * min(2, len(_HARD_SIGNALS.findall(instructions)))
        score -= len(_EASY_SIGNALS.findall(instructions))
        if len(target_files) > 3:
            score += 1
        return max(1, min(10, score))


def _extract_json_object(text: str) -> dict[str, Any] | None:
    """First top-level JSON object embedded in ``text``, or None."""
    cleaned = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", cleaned):
        try:
            obj, _ = decoder.raw_decode(cleaned, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


class TaskPlanner:
    """Builds validated TaskGraphs from free-form requests."""

    def __init__(
        self,
        provider: BaseProvider | None = None,
        scorer: ComplexityScorer | None = None,
        deadline: float = 60.0,
    ) -> None:
        self._provider = provider
        self._scorer = scorer or ComplexityScorer()
        self._deadline = deadline

    async def plan(self, request: str, context: RequestContext | None = None) -> TaskGraph:
        """Plan ``request`` into a validated, not-yet-sealed TaskGraph.

        Raises:
            PlanningFailed: empty request, empty plan, or malformed graph.
        """
        if not request or not request.strip():
            raise PlanningFailed("Request is empty")
        context = context or RequestContext()

        graph: TaskGraph | None = None
        if self._provider is not None:
            try:
                raw = await self._ask_provider(request, context)
            except ProviderError as exc:
                logger.warning(
                    "planner_provider_failed",
                    provider_id=self._provider.provider_id,
                    error=str(exc),
                )
            else:
                graph = self._parse_plan(raw, request, context)

        if graph is None:
            graph = self._keyword_plan(request, context)

        graph.validate_structure()
        logger.info(
            "plan_created",
            graph_id=graph.graph_id,
            tasks=len(graph.tasks),
            waves=len(graph.execution_waves()),
            request=request[:80],
        )
        return graph

    # ── Provider planning ────────────────────────────────────────────

    def _build_prompt(self, request: str, context: RequestContext) -> str:
        lines = [f"Current workspace: {context.workspace}"]
        if context.open_files:
            lines.append(f"Open files: {', '.join(context.open_files)}")
        if context.recent_files:
            lines.append(f"Recently edited: {', '.join(context.recent_files)}")
        if context.active_file:
            lines.append(f"Active file: {context.active_file}")
        if context.selection:
            lines.append(f"Selection: {context.selection[:100]}...")
        if context.memory_summary:
            lines.append(f"Project memory: {context.memory_summary}")
        for turn in context.conversation_history[-6:]:
            lines.append(f"{turn.get('role', 'user')}: {turn.get('content', '')[:200]}")
        return f"{_PLANNER_SYSTEM}\n\n" + "\n".join(lines) + f"\n\nUser request: {request}\n\nCreate a task plan:"

    async def _ask_provider(self, request: str, context: RequestContext) -> str:
        chunks: list[str] = []
        prompt = self._build_prompt(request, context)
        async for item in self._provider.invoke(
            prompt,
            {"purpose": "planning", "conversation_history": context.conversation_history},
            deadline=self._deadline,
        ):
            if isinstance(item, ProviderChunk):
                chunks.append(item.text)
            elif isinstance(item, CompletionRecord):
                break
        return "".join(chunks)

    def _parse_plan(self, raw: str, request: str, context: RequestContext) -> TaskGraph:
        parsed = _extract_json_object(raw)
        if parsed is None or not isinstance(parsed.get("tasks"), list):
            logger.warning("plan_unparseable_single_task_fallback", raw=raw[:120])
            graph = TaskGraph(
                analysis="Failed to parse plan, created a single task",
                original_request=request,
                estimated_duration_minutes=5,
            )
            graph.add_task(self._single_task(request, context, Capability.GENERAL, graph))
            return graph

        entries = [e for e in parsed["tasks"] if isinstance(e, dict)]
        if not entries:
            raise PlanningFailed("Planner returned a plan with no tasks")

        graph = TaskGraph(
            analysis=str(parsed.get("analysis", "")),
            original_request=request,
            estimated_duration_minutes=_as_float(
                parsed.get("estimated_duration", parsed.get("estimatedDuration")), 10.0
            ),
        )

        tasks: list[Task] = []
        refs: dict[str, str] = {}
        step_ids: set[str] = set()
        for index, entry in enumerate(entries, start=1):
            instructions = str(entry.get("instructions") or entry.get("description") or request)
            target_files = [str(f) for f in entry.get("target_files", entry.get("targetFiles", [])) or []]
            if "capability" in entry:
                capability = Capability.coerce(entry["capability"])
            else:
                capability = _AGENT_HINTS.get(str(entry.get("agent", "")).lower(), Capability.GENERAL)
            task = Task(
                request_id=graph.request_id,
                description=str(entry.get("description") or instructions[:80]),
                instructions=instructions,
                capability=capability,
                complexity=self._scorer.score(instructions, entry.get("complexity"), target_files),
                priority=_as_int(entry.get("priority"), index),
                target_files=target_files,
                proceed_on_failure=bool(entry.get("proceed_on_failure", False)),
            )
            tasks.append(task)
            refs[str(index)] = task.task_id
            if entry.get("id") not in (None, ""):
                step_id = str(entry["id"])
                if step_id in step_ids:
                    raise PlanningFailed(f"Duplicate step id in plan: {step_id}")
                step_ids.add(step_id)
                refs.setdefault(step_id, task.task_id)

        for task, entry in zip(tasks, entries):
            deps = entry.get("dependencies", entry.get("depends_on", [])) or []
            if not isinstance(deps, list):
                deps = [deps]
            # Unresolvable references are kept verbatim so validation names them.
            task.depends_on = list(dict.fromkeys(refs.get(str(d), str(d)) for d in deps))
            graph.add_task(task)

        return graph

    # ── Keyword planning ─────────────────────────────────────────────

    def _single_task(
        self,
        request: str,
        context: RequestContext,
        capability: Capability,
        graph: TaskGraph,
    ) -> Task:
        target_files = [context.active_file] if context.active_file else []
        return Task(
            request_id=graph.request_id,
            description=request.strip().splitlines()[0][:80],
            instructions=request,
            capability=capability,
            complexity=self._scorer.score(request, None, target_files),
            target_files=target_files,
        )

    def _keyword_plan(self, request: str, context: RequestContext) -> TaskGraph:
        capability = classify_capability(request)
        graph = TaskGraph(
            analysis=f"Keyword classification: {capability.value}",
            original_request=request,
            estimated_duration_minutes=5,
        )
        graph.add_task(self._single_task(request, context, capability, graph))
        logger.debug("keyword_plan", capability=capability.value)
        return graph


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
