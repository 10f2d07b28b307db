"""
scheduler/budget_guard.py — Per-run resource ceilings

One BudgetGuard per task run. The runner creates it from the resolved
budget (task, then skill, then config default per field) and hands it to
the agent turn through the ExecutionContext.

Counters:
  tokens        estimated from characters (ceil(chars / 3)) or exact usage
  cost          from PricingLookup when exact usage is reported
  tool calls    incremented by before_tool_call()
  memory writes incremented by before_memory_write()
  wall clock    monotonic, from guard creation

Token and cost ceilings of 0 mean unlimited. Tool-call and memory-write
ceilings of 0 forbid the action. A single ``budget.warning`` is logged the
first time tokens or cost cross ``warn_threshold`` of their ceiling.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Optional

from taskgate.exceptions import BudgetExceededError
from taskgate.observability.logger import get_logger
from taskgate.scheduler.pricing import PricingLookup, TokenUsage
from taskgate.scheduler.types import BudgetSnapshot, TaskBudget

log = get_logger(__name__)

CHARS_PER_TOKEN = 3

_BUDGET_FIELDS = (
    "max_tokens",
    "max_cost_usd",
    "max_wall_clock_ms",
    "max_tool_calls",
    "max_memory_writes",
)


def resolve_budget(
    task_budget: Optional[TaskBudget],
    skill_budget: Optional[TaskBudget],
    defaults: TaskBudget,
) -> TaskBudget:
    """Per field: the task's value, else the skill's, else the default."""
    resolved: dict[str, object] = {}
    for name in _BUDGET_FIELDS:
        for layer in (task_budget, skill_budget, defaults):
            value = getattr(layer, name, None) if layer is not None else None
            if value is not None:
                resolved[name] = value
                break
    return TaskBudget(**resolved)


def check_snapshot(budget: TaskBudget, snapshot: BudgetSnapshot) -> None:
    """Raise BudgetExceededError for the first ceiling ``snapshot`` has passed."""
    if budget.max_tokens and snapshot.tokens_used > budget.max_tokens:
        raise BudgetExceededError("tokens", snapshot.tokens_used, budget.max_tokens)
    if budget.max_cost_usd and snapshot.estimated_cost_usd > budget.max_cost_usd:
        raise BudgetExceededError(
            "cost", round(snapshot.estimated_cost_usd, 6), budget.max_cost_usd
        )
    if budget.max_wall_clock_ms and snapshot.wall_clock_ms > budget.max_wall_clock_ms:
        raise BudgetExceededError("wall_clock", snapshot.wall_clock_ms, budget.max_wall_clock_ms)
    if budget.max_tool_calls is not None and snapshot.tool_calls_made > budget.max_tool_calls:
        raise BudgetExceededError("tool_calls", snapshot.tool_calls_made, budget.max_tool_calls)
    if (
        budget.max_memory_writes is not None
        and snapshot.memory_writes_made > budget.max_memory_writes
    ):
        raise BudgetExceededError(
            "memory_writes", snapshot.memory_writes_made, budget.max_memory_writes
        )


def default_budget_from_settings(settings) -> TaskBudget:
    cfg = settings.budget
    return TaskBudget(
        max_tokens=cfg.max_tokens,
        max_cost_usd=cfg.max_cost_usd,
        max_wall_clock_ms=cfg.max_wall_clock_ms,
        max_tool_calls=cfg.max_tool_calls,
        max_memory_writes=cfg.max_memory_writes,
    )


class BudgetGuard:
    """Tracks one run's consumption against its ceilings."""

    def __init__(
        self,
        budget: TaskBudget,
        task_id: str,
        pricing: Optional[PricingLookup] = None,
        warn_threshold: float = 0.8,
        on_warning: Optional[Callable[[str, float], None]] = None,
    ) -> None:
        self.budget = budget
        self.task_id = task_id
        self._pricing = pricing or PricingLookup()
        self._warn_threshold = warn_threshold
        self._on_warning = on_warning

        self._tokens = 0
        self._cost = 0.0
        self._tool_calls = 0
        self._memory_writes = 0
        self._started = time.monotonic()
        self._warned = False

    # ── Tracking ──────────────────────────────────────────────────────────────

    def track_chars(self, chars: int) -> None:
        """Estimate tokens from a character count."""
        if chars > 0:
            self._tokens += math.ceil(chars / CHARS_PER_TOKEN)
            self._maybe_warn()

    def track_text(self, text: str) -> None:
        self.track_chars(len(text or ""))

    def track_exact_tokens(self, tokens: int) -> None:
        if tokens > 0:
            self._tokens += tokens
            self._maybe_warn()

    def track_cost(self, usd: float) -> None:
        if usd > 0:
            self._cost += usd
            self._maybe_warn()

    def record_usage(self, model: str, usage: TokenUsage) -> float:
        """Add exact provider usage and its estimated cost. Returns the call's cost."""
        cost = self._pricing.estimate(model, usage)
        self._tokens += usage.total_tokens
        self._cost += cost
        self._maybe_warn()
        return cost

    # ── Gates ─────────────────────────────────────────────────────────────────

    def before_tool_call(self) -> None:
        limit = self.budget.max_tool_calls
        if limit is not None and self._tool_calls >= limit:
            raise BudgetExceededError("tool_calls", self._tool_calls, limit)
        self._tool_calls += 1

    def before_memory_write(self) -> None:
        limit = self.budget.max_memory_writes
        if limit is not None and self._memory_writes >= limit:
            raise BudgetExceededError("memory_writes", self._memory_writes, limit)
        self._memory_writes += 1

    def check(self) -> None:
        """Raise BudgetExceededError if any ceiling has been passed."""
        check_snapshot(self.budget, self.snapshot)

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    @property
    def tokens_used(self) -> int:
        return self._tokens

    @property
    def cost_usd(self) -> float:
        return self._cost

    @property
    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            tokens_used=self._tokens,
            estimated_cost_usd=self._cost,
            wall_clock_ms=self.elapsed_ms,
            tool_calls_made=self._tool_calls,
            memory_writes_made=self._memory_writes,
        )

    def _maybe_warn(self) -> None:
        if self._warned:
            return
        b = self.budget
        token_pct = self._tokens / b.max_tokens if b.max_tokens else 0.0
        cost_pct = self._cost / b.max_cost_usd if b.max_cost_usd else 0.0
        pct = max(token_pct, cost_pct)
        if pct < self._warn_threshold:
            return

        self._warned = True
        resource = "tokens" if token_pct >= cost_pct else "cost"
        log.warning(
            "budget.warning",
            task_id=self.task_id,
            resource=resource,
            percent=round(pct * 100, 1),
            tokens_used=self._tokens,
            cost_usd=round(self._cost, 6),
        )
        if self._on_warning is not None:
            self._on_warning(resource, pct)
