"""Tests for ProviderRouter — deterministic fallback-list construction."""

from __future__ import annotations

import pytest

from baton.core.budget import BudgetTracker
from baton.core.router import ProviderRouter
from baton.errors import NoCapableProvider
from baton.models.providers import ProviderTier
from baton.models.task import Capability, Usage


@pytest.fixture
def tiered(mock_provider):
    cheap = mock_provider(
        "cheap", capabilities=(Capability.CODE_EDIT,), tier=ProviderTier.LOW,
        input_cost_per_1m=0.1, output_cost_per_1m=0.4,
    )
    premium = mock_provider(
        "premium", capabilities=(Capability.CODE_EDIT,), tier=ProviderTier.HIGH,
        input_cost_per_1m=5.0, output_cost_per_1m=15.0,
    )
    generalist = mock_provider(
        "generalist", capabilities=(Capability.GENERAL,), tier=ProviderTier.MEDIUM,
        input_cost_per_1m=0.01, output_cost_per_1m=0.01,
    )
    return cheap, premium, generalist


def _ids(descriptors):
    return [d.provider_id for d in descriptors]


class TestRanking:

    def test_low_complexity_prefers_cheap_tier(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("a", capability=Capability.CODE_EDIT, complexity=2)
        ranked = _ids(router.select_providers(task, BudgetTracker().state()))
        assert ranked[0] == "cheap"

    def test_high_complexity_prefers_high_tier(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("b", capability=Capability.CODE_EDIT, complexity=9)
        ranked = _ids(router.select_providers(task, BudgetTracker().state()))
        assert ranked[0] == "premium"

    def test_exact_match_beats_cheaper_general_provider(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("a", capability=Capability.CODE_EDIT, complexity=2)
        assert _ids(router.select_providers(task)) == ["cheap", "premium", "generalist"]

    def test_threshold_is_configurable(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered), high_complexity_threshold=5)
        task = task_factory("a", capability=Capability.CODE_EDIT, complexity=6)
        assert _ids(router.select_providers(task))[0] == "premium"

    def test_registration_order_breaks_ties(self, mock_provider, registry_factory, task_factory):
        first = mock_provider("first")
        second = mock_provider("second")
        router = ProviderRouter(registry_factory(second, first))
        assert _ids(router.select_providers(task_factory("a"))) == ["second", "first"]

    def test_same_inputs_same_output(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("a", capability=Capability.CODE_EDIT, complexity=7)
        assert _ids(router.select_providers(task)) == _ids(router.select_providers(task))


class TestCandidates:

    def test_no_capable_provider_raises(self, mock_provider, registry_factory, task_factory):
        ui_only = mock_provider("ui", capabilities=(Capability.UI_GENERATION,))
        router = ProviderRouter(registry_factory(ui_only))
        with pytest.raises(NoCapableProvider) as exc_info:
            router.select_providers(task_factory("a", capability=Capability.CODE_EDIT))
        assert exc_info.value.capability == "code-edit"

    def test_general_fallback_can_be_disabled(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered), allow_general_fallback=False)
        task = task_factory("a", capability=Capability.CODE_EDIT)
        assert "generalist" not in _ids(router.select_providers(task))

    def test_unavailable_provider_skipped(self, tiered, registry_factory, task_factory):
        registry = registry_factory(*tiered)
        registry.mark_unavailable("cheap", "missing credential")
        router = ProviderRouter(registry)
        task = task_factory("a", capability=Capability.CODE_EDIT, complexity=2)
        assert "cheap" not in _ids(router.select_providers(task))

    def test_context_window_filter(self, mock_provider, registry_factory, task_factory):
        small = mock_provider("small", max_context_units=10)
        big = mock_provider("big", max_context_units=100_000)
        router = ProviderRouter(registry_factory(small, big))
        task = task_factory("a", instructions="x" * 400)
        assert _ids(router.select_providers(task)) == ["big"]


class TestBudget:

    def test_exceeded_budget_returns_cheapest_declaring_provider(self, tiered, registry_factory, task_factory):
        budget = BudgetTracker(ceiling=0.01)
        budget.record(Usage(input_units=1, output_units=1, cost=0.02))
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("b", capability=Capability.CODE_EDIT, complexity=9)
        assert _ids(router.select_providers(task, budget.state())) == ["cheap"]

    def test_exceeded_budget_skips_cheaper_general_provider(self, mock_provider, registry_factory, task_factory):
        coder = mock_provider(
            "coder", capabilities=(Capability.CODE_EDIT,),
            input_cost_per_1m=10.0, output_cost_per_1m=30.0,
        )
        gen = mock_provider(
            "gen", capabilities=(Capability.GENERAL,),
            input_cost_per_1m=0.01, output_cost_per_1m=0.01,
        )
        router = ProviderRouter(registry_factory(coder, gen))
        task = task_factory("a", capability=Capability.CODE_EDIT)
        assert _ids(router.select_providers(task, BudgetTracker(ceiling=0.0).state())) == ["coder"]

    def test_exceeded_budget_falls_back_to_general_when_none_declare(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("ui", capability=Capability.UI_GENERATION)
        assert _ids(router.select_providers(task, BudgetTracker(ceiling=0.0).state())) == ["generalist"]

    def test_exceeded_budget_unified_provider_must_declare(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered), mode="unified", unified_provider="premium")
        task = task_factory("ui", capability=Capability.UI_GENERATION)
        with pytest.raises(NoCapableProvider, match="budget exceeded"):
            router.select_providers(task, BudgetTracker(ceiling=0.0).state())

    def test_under_budget_returns_full_list(self, tiered, registry_factory, task_factory):
        budget = BudgetTracker(ceiling=100.0)
        router = ProviderRouter(registry_factory(*tiered))
        task = task_factory("b", capability=Capability.CODE_EDIT, complexity=9)
        assert len(router.select_providers(task, budget.state())) == 3


class TestModes:

    def test_unified_mode_uses_one_provider(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(registry_factory(*tiered), mode="unified", unified_provider="premium")
        task = task_factory("a", capability=Capability.UI_GENERATION, complexity=1)
        assert _ids(router.select_providers(task)) == ["premium"]

    def test_pinned_mode_restricts_pinned_capability_only(self, tiered, registry_factory, task_factory):
        router = ProviderRouter(
            registry_factory(*tiered), mode="pinned", pinned_providers={"code-edit": "premium"},
        )
        pinned = task_factory("a", capability=Capability.CODE_EDIT, complexity=1)
        assert _ids(router.select_providers(pinned)) == ["premium"]
        free = task_factory("b", capability=Capability.GENERAL)
        assert _ids(router.select_providers(free)) == ["generalist"]

    def test_unified_provider_unavailable_raises(self, tiered, registry_factory, task_factory):
        registry = registry_factory(*tiered)
        registry.mark_unavailable("premium", "disabled")
        router = ProviderRouter(registry, mode="unified", unified_provider="premium")
        with pytest.raises(NoCapableProvider, match="disabled"):
            router.select_providers(task_factory("a"))

    def test_unknown_mode_rejected(self, registry_factory):
        with pytest.raises(ValueError):
            ProviderRouter(registry_factory(), mode="random")
