"""ProviderRouter — Task → ordered provider fallback list.

Deterministic routing. Given the same registry contents, task and budget
state, ``select_providers`` always returns the same list. No I/O, no awaits.

Routing modes are presets feeding the same policy:
    auto    — every available provider is a candidate
    pinned  — a capability with a pin is served only by its pinned provider
    unified — every task is served by one configured provider
"""

from __future__ import annotations

import structlog

from baton.core.budget import BudgetState
from baton.errors import NoCapableProvider
from baton.models.providers import ProviderDescriptor, ProviderTier, estimate_units
from baton.models.task import Capability, Task
from baton.providers.registry import ProviderRegistry

logger = structlog.get_logger().bind(component="core.router")

ROUTING_MODES = ("auto", "pinned", "unified")


class ProviderRouter:
    """Ranks the registry's available providers for one task."""

    def __init__(
        self,
        registry: ProviderRegistry,
        mode: str = "auto",
        unified_provider: str = "",
        pinned_providers: dict[str, str] | None = None,
        high_complexity_threshold: int = 8,
        allow_general_fallback: bool = True,
    ) -> None:
        if mode not in ROUTING_MODES:
            raise ValueError(f"Unknown routing mode {mode!r}; expected one of {ROUTING_MODES}")
        if mode == "unified" and not unified_provider:
            raise ValueError("routing_mode=unified requires unified_provider")
        self.registry = registry
        self.mode = mode
        self.unified_provider = unified_provider
        self.pinned = {
            Capability.coerce(cap): pid for cap, pid in (pinned_providers or {}).items()
        }
        self.high_complexity_threshold = high_complexity_threshold
        self.allow_general_fallback = allow_general_fallback

    @classmethod
    def from_settings(cls, registry: ProviderRegistry, settings) -> ProviderRouter:
        return cls(
            registry,
            mode=settings.routing_mode,
            unified_provider=settings.unified_provider,
            pinned_providers=settings.pinned_providers,
            high_complexity_threshold=settings.high_complexity_threshold,
            allow_general_fallback=settings.allow_general_fallback,
        )

    def prompt_units(self, task: Task) -> int:
        return estimate_units(task.description) + estimate_units(task.instructions)

    def _candidates(self, task: Task, units: int) -> tuple[list[ProviderDescriptor], str]:
        available = self.registry.available_descriptors()

        forced = ""
        if self.mode == "unified":
            forced = self.unified_provider
        elif self.mode == "pinned":
            forced = self.pinned.get(task.capability, "")

        if forced:
            pool = [d for d in available if d.provider_id == forced]
            if not pool:
                reason = self.registry.unavailable_reason(forced) or "not registered"
                return [], f"{self.mode} provider {forced!r} unavailable ({reason})"
        else:
            pool = [
                d for d in available
                if d.declares(task.capability)
                or (self.allow_general_fallback and d.is_general_purpose)
            ]
            if not pool:
                return [], "no available provider declares this capability"

        fitting = [d for d in pool if d.max_context_units >= units]
        if not fitting:
            return [], f"prompt of ~{units} units exceeds every candidate's context window"
        return fitting, ""

    def select_providers(self, task: Task, budget: BudgetState | None = None) -> list[ProviderDescriptor]:
        """Return the ordered fallback list for ``task`` (never empty).

        Raises:
            NoCapableProvider: if no available provider can take the task.
        """
        units = self.prompt_units(task)
        candidates, reason = self._candidates(task, units)
        if not candidates:
            logger.warning(
                "no_capable_provider",
                task_id=task.task_id,
                capability=task.capability.value,
                reason=reason,
            )
            raise NoCapableProvider(task.task_id, task.capability.value, reason)

        order = {d.provider_id: self.registry.registration_index(d.provider_id) for d in candidates}

        if budget is not None and budget.exceeded:
            pool = (
                [d for d in candidates if d.declares(task.capability)]
                or [d for d in candidates if d.is_general_purpose]
            )
            if not pool:
                reason = f"budget exceeded and the {self.mode} provider does not declare this capability"
                logger.warning(
                    "no_capable_provider",
                    task_id=task.task_id,
                    capability=task.capability.value,
                    reason=reason,
                )
                raise NoCapableProvider(task.task_id, task.capability.value, reason)
            cheapest = min(
                pool,
                key=lambda d: (d.estimate_cost(units), order[d.provider_id]),
            )
            logger.info(
                "budget_exceeded_cheapest_only",
                task_id=task.task_id,
                provider_id=cheapest.provider_id,
                window_spent=budget.window_spent,
                ceiling=budget.ceiling,
            )
            return [cheapest]

        wants_high = task.complexity >= self.high_complexity_threshold

        def rank(d: ProviderDescriptor) -> tuple:
            exact = 0 if d.declares(task.capability) else 1
            if wants_high:
                tier_fit = 0 if d.tier == ProviderTier.HIGH else 1
            else:
                tier_fit = 0 if d.tier in (ProviderTier.LOW, ProviderTier.MEDIUM) else 1
            return (exact, tier_fit, d.estimate_cost(units), order[d.provider_id])

        ranked = sorted(candidates, key=rank)
        logger.debug(
            "providers_selected",
            task_id=task.task_id,
            complexity=task.complexity,
            providers=[d.provider_id for d in ranked],
        )
        return ranked
