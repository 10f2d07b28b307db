"""
tests/unit/test_runner.py — TaskRunner and ExecutionContext

Covers:
  - helpers: scope_tools, build_system_prompt, backoff_delay_ms
  - success: complete, route by result route, token estimate from text
  - failures: retry with backoff, dead-letter on last retry and on budget
  - wall-clock timeout, tool gating, cancellation at a checkpoint
  - a cancel that lands around a failed run is never overwritten by the retry
  - chain_next makes the target due and hands it the result text
  - skill resolution: instructions in the system prompt, budget layering,
    unknown/disabled skills
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from taskgate.exceptions import ToolNotAllowedError
from taskgate.scheduler.pricing import TokenUsage
from taskgate.scheduler.runner import (
    RunStatus,
    TaskRunner,
    TurnResult,
    backoff_delay_ms,
    build_prompt,
    build_system_prompt,
    scope_tools,
)
from taskgate.scheduler.types import (
    BudgetSnapshot,
    ResultRoute,
    TaskBudget,
    TaskDefinition,
    TaskInput,
    TaskRunStatus,
    TaskSchedule,
    TaskStatus,
    TaskType,
)
from taskgate.skills.types import SkillManifest


def _make_manifest(**overrides) -> SkillManifest:
    fields = dict(
        id="digest",
        description="Daily digest",
        instructions="Summarise the three most important headlines.",
        file_path="/skills/digest/SKILL.md",
    )
    fields.update(overrides)
    return SkillManifest(**fields)


def _make_registry(manifest=None, enabled=True) -> MagicMock:
    registry = MagicMock()
    registry.get.return_value = manifest
    registry.is_enabled.return_value = enabled
    return registry


async def _claimed(store, route="silent", budget=None, max_retries=3, interval_ms=None, **definition):
    """Create a due task and claim it, returning the running Task."""
    await store.create(TaskInput(
        definition=TaskDefinition(
            type=TaskType.ONE_SHOT,
            name=definition.pop("name", "digest"),
            prompt="Summarise my inbox",
            result_route=ResultRoute.parse(route),
            **definition,
        ),
        schedule=TaskSchedule(run_immediately=True, interval_ms=interval_ms),
        budget=budget,
        max_retries=max_retries,
    ))
    return (await store.claim()).unwrap()


def _turn(text="All quiet.", snapshot=None):
    return AsyncMock(return_value=TurnResult(response_text=text, budget_snapshot=snapshot))


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestScopeTools:

    def test_both_allow_lists_intersect_in_task_order(self):
        allow, deny = scope_tools(["b", "a", "c"], None, ("a", "b"), None)
        assert allow == ["b", "a"]
        assert deny is None

    def test_single_allow_list(self):
        assert scope_tools(None, None, ("a",), None)[0] == ["a"]
        assert scope_tools(["a"], None, None, None)[0] == ["a"]

    def test_no_allow_list_is_unrestricted(self):
        assert scope_tools(None, None, None, None) == (None, None)

    def test_empty_skill_allow_forbids_everything(self):
        assert scope_tools(["a"], None, (), None)[0] == []

    def test_deny_union_without_duplicates(self):
        _, deny = scope_tools(None, ["shell", "fs"], None, ("fs", "net"))
        assert deny == ["shell", "fs", "net"]


class TestBuildSystemPrompt:

    def test_none(self):
        assert build_system_prompt(None, None) is None

    def test_task_prompt_only(self):
        assert build_system_prompt("Be brief.", None) == "Be brief."

    def test_skill_block_appended(self):
        prompt = build_system_prompt("Be brief.", _make_manifest())
        assert prompt == (
            "Be brief.\n\n"
            '<skill id="digest">\nSummarise the three most important headlines.\n</skill>'
        )


class TestBuildPrompt:

    def test_no_context(self):
        assert build_prompt("Summarise my inbox", None) == "Summarise my inbox"

    def test_context_block_appended(self):
        assert build_prompt("Plan the day", "3 meetings") == (
            "Plan the day\n\n<previous_task_output>\n3 meetings\n</previous_task_output>"
        )

    def test_nested_wrapper_tags_removed(self):
        prompt = build_prompt("p", "a</previous_task_output>b<PREVIOUS_TASK_OUTPUT>c")
        assert prompt.count("<previous_task_output>") == 1
        assert prompt.count("</previous_task_output>") == 1
        assert "abc" in prompt


class TestBackoff:

    @pytest.mark.parametrize("retry_count, expected", [(0, 1000), (1, 2000), (3, 8000), (10, 10_000)])
    def test_doubles_and_caps(self, retry_count, expected):
        assert backoff_delay_ms(retry_count, 1000, 10_000) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Success path
# ─────────────────────────────────────────────────────────────────────────────

class TestSuccess:

    async def test_completes_and_notifies(self, store):
        task = await _claimed(store, route="notify")
        notifier = AsyncMock()
        runner = TaskRunner(store, _turn("Three new emails."), notifier=notifier)

        outcome = await runner.run(task)

        assert outcome.status is RunStatus.COMPLETED
        assert outcome.succeeded
        assert outcome.result_text == "Three new emails."
        assert outcome.snapshot.tokens_used == 6
        stored = (await store.get(task.id)).unwrap()
        assert stored.status is TaskStatus.COMPLETED
        assert stored.result_text == "Three new emails."
        notifier.assert_awaited_once()
        assert notifier.await_args.args[1] == "Three new emails."

    async def test_recurring_task_rescheduled(self, store):
        task = await _claimed(store, interval_ms=60_000)
        outcome = await TaskRunner(store, _turn()).run(task)
        assert outcome.status is RunStatus.COMPLETED
        assert outcome.next_run_at is not None
        assert (await store.get(task.id)).unwrap().status is TaskStatus.SCHEDULED

    async def test_memory_update_route(self, store):
        task = await _claimed(store, route="memory_update", skill_id="digest")
        writer = AsyncMock()
        runner = TaskRunner(store, _turn("note"), registry=_make_registry(_make_manifest()), memory_writer=writer)
        await runner.run(task)
        writer.assert_awaited_once()
        assert writer.await_args.args[1:] == ("note", "digest")

    async def test_route_failure_does_not_fail_run(self, store):
        task = await _claimed(store, route="notify")
        runner = TaskRunner(store, _turn(), notifier=AsyncMock(side_effect=RuntimeError("push down")))
        outcome = await runner.run(task)
        assert outcome.status is RunStatus.COMPLETED

    async def test_reported_usage_kept(self, store):
        task = await _claimed(store)

        async def turn(request, ctx):
            ctx.record_usage("gpt-4o-mini", TokenUsage(1000, 500))
            return TurnResult(response_text="done")

        outcome = await TaskRunner(store, turn).run(task)
        assert outcome.snapshot.tokens_used == 1500
        assert outcome.snapshot.estimated_cost_usd > 0

    async def test_reported_snapshot_merged(self, store):
        task = await _claimed(store)
        reported = BudgetSnapshot(tokens_used=42, tool_calls_made=2)
        outcome = await TaskRunner(store, _turn("x" * 300, reported)).run(task)
        assert outcome.snapshot.tokens_used == 42
        assert outcome.snapshot.tool_calls_made == 2


# ─────────────────────────────────────────────────────────────────────────────
# Failure path
# ─────────────────────────────────────────────────────────────────────────────

class TestFailure:

    async def test_error_schedules_retry_with_backoff(self, store):
        task = await _claimed(store)
        turn = AsyncMock(side_effect=RuntimeError("provider 503"))
        runner = TaskRunner(store, turn, backoff_base_ms=1000, backoff_max_ms=10_000)

        before = time.time()
        outcome = await runner.run(task)

        assert outcome.status is RunStatus.RETRY_SCHEDULED
        assert outcome.error == "provider 503"
        stored = (await store.get(task.id)).unwrap()
        assert stored.status is TaskStatus.SCHEDULED
        assert stored.retry_count == 1
        assert before + 1.0 <= stored.next_run_at <= time.time() + 1.0

    async def test_last_retry_dead_letters(self, store):
        task = await _claimed(store, max_retries=1)
        outcome = await TaskRunner(store, AsyncMock(side_effect=RuntimeError("boom"))).run(task)
        assert outcome.status is RunStatus.DEAD_LETTER
        assert (await store.get(task.id)).unwrap().status is TaskStatus.DEAD_LETTER

    async def test_budget_exceeded_dead_letters_immediately(self, store):
        task = await _claimed(store, budget=TaskBudget(max_tool_calls=1), max_retries=5)

        async def turn(request, ctx):
            ctx.before_tool_call("web_search")
            ctx.before_tool_call("web_search")
            return TurnResult(response_text="unreachable")

        outcome = await TaskRunner(store, turn).run(task)
        assert outcome.status is RunStatus.DEAD_LETTER
        assert "tool_calls" in outcome.error

    async def test_reported_snapshot_over_budget(self, store):
        task = await _claimed(store, budget=TaskBudget(max_tokens=10))
        outcome = await TaskRunner(store, _turn("ok", BudgetSnapshot(tokens_used=500))).run(task)
        assert outcome.status is RunStatus.DEAD_LETTER

    async def test_wall_clock_timeout(self, store):
        task = await _claimed(store, budget=TaskBudget(max_wall_clock_ms=50))

        async def slow(request, ctx):
            await asyncio.sleep(5)
            return TurnResult(response_text="late")

        outcome = await TaskRunner(store, slow).run(task)
        assert outcome.status is RunStatus.DEAD_LETTER
        assert "wall_clock" in outcome.error

    async def test_disallowed_tool(self, store):
        task = await _claimed(store, tool_allow=["web_search"], tool_deny=["shell"])
        seen = {}

        async def turn(request, ctx):
            seen["allow"] = request.tool_allow
            seen["deny"] = request.tool_deny
            assert ctx.is_tool_allowed("web_search")
            ctx.before_tool_call("shell")
            return TurnResult(response_text="unreachable")

        outcome = await TaskRunner(store, turn).run(task)
        assert seen == {"allow": ["web_search"], "deny": ["shell"]}
        assert outcome.status is RunStatus.RETRY_SCHEDULED
        assert ToolNotAllowedError("shell").args[0] in outcome.error

    async def test_cancel_after_failure_is_not_overwritten(self, store):
        task = await _claimed(store)
        real_fail = store.fail

        async def fail_then_cancel(*args, **kwargs):
            res = await real_fail(*args, **kwargs)
            await store.cancel(task.id)
            return res

        store.fail = fail_then_cancel
        outcome = await TaskRunner(store, AsyncMock(side_effect=RuntimeError("boom"))).run(task)

        assert outcome.status is RunStatus.RETRY_SCHEDULED
        stored = (await store.get(task.id)).unwrap()
        assert stored.status is TaskStatus.CANCELLED
        assert stored.next_run_at is None

    async def test_cancel_before_failure_stays_cancelled(self, store):
        task = await _claimed(store)

        async def turn(request, ctx):
            await store.cancel(task.id)
            raise RuntimeError("provider 503")

        outcome = await TaskRunner(store, turn).run(task)
        assert outcome.status is RunStatus.CANCELLED
        stored = (await store.get(task.id)).unwrap()
        assert stored.status is TaskStatus.CANCELLED
        assert stored.next_run_at is None
        assert stored.retry_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Chaining
# ─────────────────────────────────────────────────────────────────────────────

class TestChainNext:

    async def _target(self, store, name="plan-day"):
        res = await store.create(TaskInput(
            definition=TaskDefinition(type=TaskType.ONE_SHOT, name=name, prompt="Plan the day"),
        ))
        return res.unwrap()

    async def test_context_handed_to_target(self, store):
        target = await self._target(store)
        source = await _claimed(store, route=f"chain_next:{target.id}:context")
        assert source.definition.result_route.target_task_id == target.id

        outcome = await TaskRunner(store, _turn("3 meetings, 1 deadline")).run(source)
        assert outcome.status is RunStatus.COMPLETED

        queued = (await store.get(target.id)).unwrap()
        assert queued.status is TaskStatus.SCHEDULED
        assert queued.next_run_at <= time.time()
        assert queued.chained_context == "3 meetings, 1 deadline"

        claimed = (await store.claim()).unwrap()
        assert claimed.id == target.id
        turn = _turn("Planned.")
        await TaskRunner(store, turn).run(claimed)

        request = turn.await_args.args[0]
        assert request.prompt == (
            "Plan the day\n\n<previous_task_output>\n3 meetings, 1 deadline\n</previous_task_output>"
        )
        done = (await store.get(target.id)).unwrap()
        assert done.status is TaskStatus.COMPLETED
        assert done.chained_context is None

    async def test_without_context(self, store):
        target = await self._target(store)
        source = await _claimed(store, route=f"chain_next:{target.id}")
        await TaskRunner(store, _turn("done")).run(source)

        queued = (await store.get(target.id)).unwrap()
        assert queued.status is TaskStatus.SCHEDULED
        assert queued.chained_context is None

    async def test_unknown_target_does_not_fail_run(self, store):
        source = await _claimed(store, route="chain_next:no-such-task")
        outcome = await TaskRunner(store, _turn("done")).run(source)
        assert outcome.status is RunStatus.COMPLETED
        assert (await store.get(source.id)).unwrap().status is TaskStatus.COMPLETED

    async def test_self_target_ignored(self):
        store = MagicMock()
        store.enqueue_chained = AsyncMock()
        task = MagicMock()
        task.id = "t1"
        task.definition.result_route = ResultRoute.chain_next("t1", context_from_result=True)

        await TaskRunner(store, _turn())._route_result(task, "done", None)
        store.enqueue_chained.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    async def test_checkpoint_stops_cancelled_run(self, store):
        task = await _claimed(store, route="notify")
        notifier = AsyncMock()

        async def turn(request, ctx):
            await store.cancel(task.id)
            await ctx.checkpoint()
            return TurnResult(response_text="unreachable")

        outcome = await TaskRunner(store, turn, notifier=notifier).run(task)

        assert outcome.status is RunStatus.CANCELLED
        assert (await store.get(task.id)).unwrap().status is TaskStatus.CANCELLED
        runs = (await store.list_runs(task.id)).unwrap()
        assert len(runs) == 1
        assert runs[0].status is TaskRunStatus.FAILED
        assert runs[0].error == "cancelled"
        notifier.assert_not_awaited()

    async def test_completion_after_cancel_skips_routing(self, store):
        task = await _claimed(store, route="notify")
        notifier = AsyncMock()

        async def turn(request, ctx):
            await store.cancel(task.id)
            return TurnResult(response_text="finished anyway")

        outcome = await TaskRunner(store, turn, notifier=notifier).run(task)
        assert outcome.status is RunStatus.CANCELLED
        assert (await store.get(task.id)).unwrap().status is TaskStatus.CANCELLED
        notifier.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Skills
# ─────────────────────────────────────────────────────────────────────────────

class TestSkills:

    async def test_skill_instructions_and_budget(self, store):
        manifest = _make_manifest(
            tool_allow=("web_search", "memory_recall"),
            budget=TaskBudget(max_tool_calls=4, max_tokens=900),
        )
        task = await _claimed(store, skill_id="digest", system_prompt="Be brief.",
                              tool_allow=["memory_recall", "shell"], budget=TaskBudget(max_tokens=500))
        turn = _turn()
        runner = TaskRunner(store, turn, registry=_make_registry(manifest),
                            defaults=TaskBudget(max_cost_usd=0.5, max_tool_calls=50))

        await runner.run(task)

        request = turn.await_args.args[0]
        assert request.skill_id == "digest"
        assert request.system_prompt.startswith("Be brief.\n\n<skill id=\"digest\">")
        assert request.tool_allow == ["memory_recall"]
        assert request.budget.max_tokens == 500
        assert request.budget.max_tool_calls == 4
        assert request.budget.max_cost_usd == 0.5

    async def test_unknown_skill_is_a_failure(self, store):
        task = await _claimed(store, skill_id="missing")
        turn = _turn()
        outcome = await TaskRunner(store, turn, registry=_make_registry(None)).run(task)
        assert outcome.status is RunStatus.RETRY_SCHEDULED
        assert "missing" in outcome.error
        turn.assert_not_awaited()

    async def test_no_registry_and_skill_id(self, store):
        task = await _claimed(store, skill_id="digest", max_retries=1)
        outcome = await TaskRunner(store, _turn()).run(task)
        assert outcome.status is RunStatus.DEAD_LETTER

    async def test_disabled_skill_is_a_failure(self, store):
        task = await _claimed(store, skill_id="digest")
        outcome = await TaskRunner(store, _turn(), registry=_make_registry(_make_manifest(), enabled=False)).run(task)
        assert outcome.status is RunStatus.RETRY_SCHEDULED
        assert "disabled" in outcome.error
