"""
tests/unit/test_global_budget.py — Daily / monthly spend limits

Covers:
  - below limit: continue, no pause
  - limit reached: pause_all pauses and returns False, alert_only continues
  - thresholds log once per day / month; a new period or reset re-arms them
  - limit <= 0 disables a period; spend query failure continues
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from taskgate.config.settings import OnLimitReached, Settings
from taskgate.exceptions import TaskError
from taskgate.result import Result
from taskgate.scheduler.global_budget import GlobalBudgetGuard
from taskgate.scheduler.types import BudgetSnapshot, SpendPeriod


def _make_store(day: float, month: float) -> MagicMock:
    store = MagicMock()

    async def sum_spend(period, now=None):
        return Result.ok(day if period is SpendPeriod.DAY else month)

    store.sum_spend = AsyncMock(side_effect=sum_spend)
    return store


def _make_task(task_id: str = "t1") -> MagicMock:
    task = MagicMock()
    task.id = task_id
    return task


SNAP = BudgetSnapshot(estimated_cost_usd=0.01)
JUNE_15 = 1_750_000_000.0


class TestEnforce:

    async def test_below_limits(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(_make_store(1.0, 10.0), 5.0, 50.0, control=control)
        assert await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_not_called()

    async def test_daily_limit_pauses(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(_make_store(5.0, 10.0), 5.0, 50.0, control=control)
        assert not await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_called_once()

    async def test_monthly_limit_pauses(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(_make_store(0.5, 60.0), 5.0, 50.0, control=control)
        assert not await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_called_once()

    async def test_alert_only_continues(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(
            _make_store(9.0, 10.0), 5.0, 50.0,
            on_limit_reached=OnLimitReached.ALERT_ONLY, control=control,
        )
        assert await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_not_called()

    async def test_pause_without_control_still_reports(self):
        guard = GlobalBudgetGuard(_make_store(5.0, 10.0), 5.0, 50.0)
        assert not await guard.check_and_enforce(_make_task(), SNAP)

    async def test_bind_control(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(_make_store(5.0, 10.0), 5.0, 50.0)
        guard.bind_control(control)
        await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_called_once()

    async def test_zero_limit_disables(self):
        control = MagicMock()
        guard = GlobalBudgetGuard(_make_store(1000.0, 1000.0), 0, 0, control=control)
        assert await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_not_called()

    async def test_spend_query_failure_continues(self):
        store = MagicMock()
        store.sum_spend = AsyncMock(return_value=Result.fail(TaskError("bad row")))
        control = MagicMock()
        guard = GlobalBudgetGuard(store, 5.0, 50.0, control=control)
        assert await guard.check_and_enforce(_make_task(), SNAP)
        control.pause.assert_not_called()


class TestThresholds:

    def _threshold_calls(self, log) -> list[dict]:
        return [
            c.kwargs for c in log.info.call_args_list
            if c.args and c.args[0] == "global_budget.threshold_reached"
        ]

    async def test_each_threshold_logged_once(self):
        guard = GlobalBudgetGuard(_make_store(4.6, 10.0), 5.0, 50.0, alert_thresholds=[0.9, 0.5, 0.8])
        with patch("taskgate.scheduler.global_budget.log") as log:
            await guard.check_and_enforce(_make_task(), SNAP)
            await guard.check_and_enforce(_make_task(), SNAP)
        calls = self._threshold_calls(log)
        assert [(c["period"], c["threshold"]) for c in calls] == [
            ("daily", "50%"), ("daily", "80%"), ("daily", "90%"),
        ]

    async def test_reset_allows_relog(self):
        guard = GlobalBudgetGuard(_make_store(2.6, 0.0), 5.0, 50.0, alert_thresholds=[0.5])
        with patch("taskgate.scheduler.global_budget.log") as log:
            await guard.check_and_enforce(_make_task(), SNAP)
            guard.reset_thresholds()
            await guard.check_and_enforce(_make_task(), SNAP)
        assert len(self._threshold_calls(log)) == 2

    async def test_new_day_rearms_daily_alerts(self):
        store = _make_store(2.6, 30.0)
        guard = GlobalBudgetGuard(store, 5.0, 50.0, alert_thresholds=[0.5])
        with patch("taskgate.scheduler.global_budget.log") as log:
            await guard.check_and_enforce(_make_task(), SNAP, now=JUNE_15)
            await guard.check_and_enforce(_make_task(), SNAP, now=JUNE_15 + 60)
            await guard.check_and_enforce(_make_task(), SNAP, now=JUNE_15 + 86_400)
        calls = [(c["period"], c["threshold"]) for c in self._threshold_calls(log)]
        assert calls == [("daily", "50%"), ("monthly", "50%"), ("daily", "50%")]
        store.sum_spend.assert_any_await(SpendPeriod.DAY, now=JUNE_15 + 86_400)

    async def test_new_month_rearms_monthly_alerts(self):
        guard = GlobalBudgetGuard(_make_store(0.0, 30.0), 5.0, 50.0, alert_thresholds=[0.5])
        with patch("taskgate.scheduler.global_budget.log") as log:
            await guard.check_and_enforce(_make_task(), SNAP, now=JUNE_15)
            await guard.check_and_enforce(_make_task(), SNAP, now=JUNE_15 + 31 * 86_400)
        calls = [(c["period"], c["threshold"]) for c in self._threshold_calls(log)]
        assert calls == [("monthly", "50%"), ("monthly", "50%")]


class TestFromSettings:

    def test_reads_budget_section(self):
        settings = Settings(budget={
            "daily_limit_usd": 2.0,
            "monthly_limit_usd": 20.0,
            "alert_thresholds": [0.75],
            "on_limit_reached": "alert_only",
        })
        guard = GlobalBudgetGuard.from_settings(settings, _make_store(0, 0))
        assert guard.daily_limit_usd == 2.0
        assert guard.monthly_limit_usd == 20.0
        assert guard._on_limit is OnLimitReached.ALERT_ONLY
