"""
scheduler/global_budget.py — Daily / monthly spend limits across all runs

Checked by the scheduler loop after every finished run. Spend is the sum of
``estimated_cost_usd`` over run records completed since local start of day
or month (TaskStore.sum_spend).

Alert thresholds (fractions of a limit) are logged once per threshold per
day or month; a new period re-arms them, as does reset_thresholds(). When a
limit is reached under pause_all or pause_non_critical, the scheduler is
paused and check_and_enforce() returns False; alert_only just logs.

A limit <= 0 disables that period's check.
"""

from __future__ import annotations

import time
from typing import Optional, Protocol

from taskgate.config.settings import OnLimitReached
from taskgate.observability.logger import get_logger
from taskgate.scheduler.task_store import TaskStore, period_start
from taskgate.scheduler.types import BudgetSnapshot, SpendPeriod, Task

log = get_logger(__name__)


class SchedulerControl(Protocol):
    def pause(self) -> None: ...
    def resume(self) -> None: ...

    @property
    def is_paused(self) -> bool: ...


class GlobalBudgetGuard:
    def __init__(
        self,
        store: TaskStore,
        daily_limit_usd: float,
        monthly_limit_usd: float,
        alert_thresholds: Optional[list[float]] = None,
        on_limit_reached: OnLimitReached = OnLimitReached.PAUSE_ALL,
        control: Optional[SchedulerControl] = None,
    ) -> None:
        self._store = store
        self.daily_limit_usd = daily_limit_usd
        self.monthly_limit_usd = monthly_limit_usd
        self._thresholds = sorted(alert_thresholds or [])
        self._on_limit = OnLimitReached(on_limit_reached)
        self._control = control
        # period -> (period start, thresholds already logged in it)
        self._emitted: dict[str, tuple[float, set[float]]] = {}

    @classmethod
    def from_settings(cls, settings, store: TaskStore) -> "GlobalBudgetGuard":
        cfg = settings.budget
        return cls(
            store=store,
            daily_limit_usd=cfg.daily_limit_usd,
            monthly_limit_usd=cfg.monthly_limit_usd,
            alert_thresholds=list(cfg.alert_thresholds),
            on_limit_reached=cfg.on_limit_reached,
        )

    def bind_control(self, control: SchedulerControl) -> None:
        """Attach the scheduler once it exists; the guard is built before it."""
        self._control = control

    async def check_and_enforce(
        self,
        task: Task,
        snapshot: BudgetSnapshot,
        now: Optional[float] = None,
    ) -> bool:
        """Returns True if execution may continue, False if the scheduler was paused."""
        now = time.time() if now is None else now
        day = await self._store.sum_spend(SpendPeriod.DAY, now=now)
        month = await self._store.sum_spend(SpendPeriod.MONTH, now=now)
        if not day.success or not month.success:
            log.warning("global_budget.spend_query_failed", task_id=task.id)
            return True

        day_spend, month_spend = day.value, month.value
        self._check_thresholds(
            day_spend, "daily", period_start(SpendPeriod.DAY, now), self.daily_limit_usd, task,
        )
        self._check_thresholds(
            month_spend, "monthly", period_start(SpendPeriod.MONTH, now), self.monthly_limit_usd, task,
        )

        daily_hit = self.daily_limit_usd > 0 and day_spend >= self.daily_limit_usd
        monthly_hit = self.monthly_limit_usd > 0 and month_spend >= self.monthly_limit_usd
        if not (daily_hit or monthly_hit):
            return True

        log.warning(
            "global_budget.limit_reached",
            limit="global_daily" if daily_hit else "global_monthly",
            task_id=task.id,
            run_cost_usd=round(snapshot.estimated_cost_usd, 6),
            day_spend=round(day_spend, 4),
            month_spend=round(month_spend, 4),
            daily_limit=self.daily_limit_usd,
            monthly_limit=self.monthly_limit_usd,
            action=self._on_limit.value,
        )

        if self._on_limit is OnLimitReached.ALERT_ONLY:
            return True
        if self._control is not None:
            self._control.pause()
        return False

    def reset_thresholds(self) -> None:
        """Forget emitted alerts for every period."""
        self._emitted.clear()

    def _check_thresholds(
        self,
        spend: float,
        period: str,
        started_at: float,
        limit: float,
        task: Task,
    ) -> None:
        if limit <= 0:
            return
        seen_start, emitted = self._emitted.get(period, (None, set()))
        if seen_start != started_at:
            emitted = set()
            self._emitted[period] = (started_at, emitted)
        pct = spend / limit
        for threshold in self._thresholds:
            if pct >= threshold and threshold not in emitted:
                emitted.add(threshold)
                log.info(
                    "global_budget.threshold_reached",
                    period=period,
                    threshold=f"{round(threshold * 100)}%",
                    spend=round(spend, 4),
                    limit=limit,
                    task_id=task.id,
                )
