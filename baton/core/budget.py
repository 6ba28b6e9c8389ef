"""Budget tracking for provider invocations.

Tracks spend inside a rolling window (default 30 days) plus lifetime totals.
Spend is recorded only after a successful invocation, from the usage the
provider actually reported. The router reads an immutable BudgetState
snapshot; an exceeded ceiling degrades routing to the cheapest candidate
rather than raising.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from baton.models.task import Usage
from baton.utils.clock import now_utc

logger = structlog.get_logger().bind(component="core.budget")


class BudgetState(BaseModel):
    """Read-only snapshot of the tracker."""

    model_config = ConfigDict(frozen=True)

    window_spent: float = 0.0
    ceiling: float | None = None
    window_started_at: datetime
    window_seconds: float
    lifetime_cost: float = 0.0
    lifetime_input_units: int = 0
    lifetime_output_units: int = 0
    invocations: int = 0
    warn_percent: float = 80.0

    @property
    def exceeded(self) -> bool:
        return self.ceiling is not None and self.window_spent >= self.ceiling

    @property
    def warn(self) -> bool:
        if self.ceiling is None or self.ceiling <= 0:
            return self.exceeded
        return self.window_spent >= self.ceiling * self.warn_percent / 100

    @property
    def remaining(self) -> float | None:
        if self.ceiling is None:
            return None
        return max(0.0, self.ceiling - self.window_spent)


class BudgetTracker:
    """Accumulates actual usage; one tracker per session.

    ``record()`` never awaits, so under asyncio each call is a single atomic
    accumulate with respect to every other task.
    """

    def __init__(
        self,
        ceiling: float | None = None,
        window_seconds: float = 30 * 24 * 3600,
        warn_percent: float = 80.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.ceiling = ceiling
        self.window_seconds = window_seconds
        self.warn_percent = warn_percent
        self._clock = clock

        self._window_started_at = clock()
        self._window_spent = 0.0
        self._lifetime_cost = 0.0
        self._lifetime_input = 0
        self._lifetime_output = 0
        self._invocations = 0
        self._warned = False
        self._by_task: dict[str, Usage] = {}
        self._by_provider: dict[str, float] = {}

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self._window_started_at >= timedelta(seconds=self.window_seconds):
            logger.info(
                "budget_window_rolled",
                previous_spent=round(self._window_spent, 6),
                started_at=self._window_started_at.isoformat(),
            )
            self._window_started_at = now
            self._window_spent = 0.0
            self._warned = False

    def record(self, usage: Usage, provider_id: str = "", task_id: str = "") -> BudgetState:
        """Add one successful invocation's usage. Returns the new snapshot."""
        self._roll_window()

        self._window_spent += usage.cost
        self._lifetime_cost += usage.cost
        self._lifetime_input += usage.input_units
        self._lifetime_output += usage.output_units
        self._invocations += 1

        if provider_id:
            self._by_provider[provider_id] = self._by_provider.get(provider_id, 0.0) + usage.cost
        if task_id:
            prev = self._by_task.get(task_id, Usage())
            self._by_task[task_id] = Usage(
                input_units=prev.input_units + usage.input_units,
                output_units=prev.output_units + usage.output_units,
                cost=prev.cost + usage.cost,
            )

        state = self._snapshot()
        logger.debug(
            "budget_recorded",
            task_id=task_id,
            provider_id=provider_id,
            cost=usage.cost,
            window_spent=round(state.window_spent, 6),
        )
        if state.warn and not self._warned:
            self._warned = True
            logger.warning(
                "budget_threshold_reached",
                window_spent=round(state.window_spent, 6),
                ceiling=self.ceiling,
                exceeded=state.exceeded,
            )
        return state

    def state(self) -> BudgetState:
        self._roll_window()
        return self._snapshot()

    def _snapshot(self) -> BudgetState:
        return BudgetState(
            window_spent=self._window_spent,
            ceiling=self.ceiling,
            window_started_at=self._window_started_at,
            window_seconds=self.window_seconds,
            lifetime_cost=self._lifetime_cost,
            lifetime_input_units=self._lifetime_input,
            lifetime_output_units=self._lifetime_output,
            invocations=self._invocations,
            warn_percent=self.warn_percent,
        )

    def usage_for_task(self, task_id: str) -> Usage:
        return self._by_task.get(task_id, Usage())

    def get_status(self) -> dict[str, Any]:
        """Full budget status for display."""
        state = self.state()
        return {
            "ceiling": state.ceiling,
            "window_spent": round(state.window_spent, 6),
            "remaining": state.remaining,
            "window_started_at": state.window_started_at.isoformat(),
            "lifetime_cost": round(state.lifetime_cost, 6),
            "lifetime_input_units": state.lifetime_input_units,
            "lifetime_output_units": state.lifetime_output_units,
            "invocations": state.invocations,
            "by_provider": {k: round(v, 6) for k, v in self._by_provider.items()},
            "exceeded": state.exceeded,
        }
