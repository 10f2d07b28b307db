"""
scheduler/runner.py — Task Runner

Executes one claimed task: resolves its skill, builds the scoped execution
context, invokes the agent turn under the wall-clock ceiling, then reports
the outcome to the TaskStore and routes the result text.

Outcome policy:
  success                                   -> store.complete()
  budget exceeded                           -> store.dead_letter()
  retry_count + 1 >= max_retries            -> store.dead_letter()
  any other failure                         -> store.fail(retry_at=...), back to
                                               scheduled after exponential backoff
  cancelled while running                   -> run recorded, status untouched

Result routes: silent, notify (notifier callback), memory_update (memory
writer callback) and chain_next, which makes the target task due and can
pass this run's text into the target's next prompt.

Skill problems (unknown or disabled skill) are ordinary run failures and go
through the same policy.

Usage:
    runner = TaskRunner(store, agent_turn, registry=registry)
    outcome = await runner.run(task)
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from taskgate.exceptions import (
    BudgetExceededError,
    SkillDisabledError,
    SkillNotFoundError,
    TaskCancelledError,
    ToolNotAllowedError,
)
from taskgate.observability.logger import bind_task, clear_task, get_logger
from taskgate.scheduler.budget_guard import (
    BudgetGuard,
    check_snapshot,
    default_budget_from_settings,
    resolve_budget,
)
from taskgate.scheduler.pricing import PricingLookup, TokenUsage
from taskgate.scheduler.task_store import TaskStore
from taskgate.scheduler.types import (
    BudgetSnapshot,
    RouteKind,
    Task,
    TaskBudget,
    TaskRunStatus,
    TaskStatus,
)
from taskgate.skills.registry import SkillRegistry
from taskgate.skills.types import SkillManifest

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Agent turn contract
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TurnRequest:
    """Everything the agent turn needs to run one task."""
    task_id: str
    name: str
    prompt: str
    system_prompt: Optional[str]
    conversation_id: Optional[str]
    skill_id: Optional[str]
    tool_allow: Optional[list[str]]
    tool_deny: Optional[list[str]]
    budget: TaskBudget


@dataclass
class TurnResult:
    response_text: str
    budget_snapshot: Optional[BudgetSnapshot] = None


class ExecutionContext:
    """
    Capability and budget gate handed to the agent turn.

    The turn must call ``before_tool_call(name)`` before every tool
    invocation and ``checkpoint()`` at every discrete step; both raise to
    stop the run.
    """

    def __init__(
        self,
        task: Task,
        store: TaskStore,
        guard: BudgetGuard,
        tool_allow: Optional[list[str]] = None,
        tool_deny: Optional[list[str]] = None,
    ) -> None:
        self.task = task
        self.guard = guard
        self._store = store
        self.tool_allow = tool_allow
        self.tool_deny = tool_deny or []

    def is_tool_allowed(self, name: str) -> bool:
        if name in self.tool_deny:
            return False
        return self.tool_allow is None or name in self.tool_allow

    def before_tool_call(self, name: str) -> None:
        if not self.is_tool_allowed(name):
            log.warning("runner.tool_blocked", task_id=self.task.id, tool=name)
            raise ToolNotAllowedError(name)
        self.guard.before_tool_call()

    def before_memory_write(self) -> None:
        self.guard.before_memory_write()

    def record_text(self, text: str) -> None:
        self.guard.track_text(text)

    def record_usage(self, model: str, usage: TokenUsage) -> float:
        return self.guard.record_usage(model, usage)

    async def checkpoint(self) -> None:
        """Stop the run if the task was cancelled or a ceiling was passed."""
        res = await self._store.get(self.task.id)
        if res.success and res.value is not None and res.value.status is TaskStatus.CANCELLED:
            raise TaskCancelledError(self.task.id)
        self.guard.check()


AgentTurn = Callable[[TurnRequest, ExecutionContext], Awaitable[TurnResult]]
Notifier = Callable[[Task, str], Awaitable[Any]]
MemoryWriter = Callable[[Task, str, Optional[str]], Awaitable[Any]]


# ─────────────────────────────────────────────────────────────────────────────
# Outcome
# ─────────────────────────────────────────────────────────────────────────────

class RunStatus(str, Enum):
    COMPLETED       = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED          = "failed"
    DEAD_LETTER     = "dead_letter"
    CANCELLED       = "cancelled"


@dataclass
class RunOutcome:
    task_id: str
    status: RunStatus
    snapshot: BudgetSnapshot = field(default_factory=BudgetSnapshot)
    error: Optional[str] = None
    result_text: Optional[str] = None
    next_run_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "snapshot": self.snapshot.to_dict(),
            "error": self.error,
            "result_text": self.result_text,
            "next_run_at": self.next_run_at,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def scope_tools(
    task_allow: Optional[list[str]],
    task_deny: Optional[list[str]],
    skill_allow: Optional[tuple[str, ...] | list[str]],
    skill_deny: Optional[tuple[str, ...] | list[str]],
) -> tuple[Optional[list[str]], Optional[list[str]]]:
    """
    Combine task and skill tool lists.

    Allow lists intersect when both exist (task order kept), else whichever
    exists; None means unrestricted. Deny lists always union.
    """
    if task_allow is not None and skill_allow is not None:
        skill_set = set(skill_allow)
        allow: Optional[list[str]] = [t for t in task_allow if t in skill_set]
    elif task_allow is not None:
        allow = list(task_allow)
    elif skill_allow is not None:
        allow = list(skill_allow)
    else:
        allow = None

    deny = list(dict.fromkeys([*(task_deny or []), *(skill_deny or [])]))
    return allow, (deny or None)


def build_system_prompt(task_prompt: Optional[str], manifest: Optional[SkillManifest]) -> Optional[str]:
    parts: list[str] = []
    if task_prompt:
        parts.append(task_prompt)
    if manifest is not None:
        parts.append(f'<skill id="{manifest.id}">\n{manifest.instructions}\n</skill>')
    return "\n\n".join(parts) or None


_CHAIN_TAG = re.compile(r"</?previous_task_output>", re.IGNORECASE)


def build_prompt(prompt: str, chained_context: Optional[str]) -> str:
    """Append the previous link's output, with any copy of its wrapper tag removed."""
    if not chained_context:
        return prompt
    context = _CHAIN_TAG.sub("", chained_context)
    return f"{prompt}\n\n<previous_task_output>\n{context}\n</previous_task_output>"


def backoff_delay_ms(retry_count: int, base_ms: int, max_ms: int) -> int:
    return min(base_ms * (2 ** retry_count), max_ms)


def _merge_snapshot(guard: BudgetSnapshot, reported: Optional[BudgetSnapshot]) -> BudgetSnapshot:
    """Take the larger of guard-tracked and turn-reported counters."""
    if reported is None:
        return guard
    return BudgetSnapshot(
        tokens_used=max(guard.tokens_used, reported.tokens_used),
        estimated_cost_usd=max(guard.estimated_cost_usd, reported.estimated_cost_usd),
        wall_clock_ms=max(guard.wall_clock_ms, reported.wall_clock_ms),
        tool_calls_made=max(guard.tool_calls_made, reported.tool_calls_made),
        memory_writes_made=max(guard.memory_writes_made, reported.memory_writes_made),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────────────────────

class TaskRunner:
    def __init__(
        self,
        store: TaskStore,
        agent_turn: AgentTurn,
        registry: Optional[SkillRegistry] = None,
        defaults: Optional[TaskBudget] = None,
        pricing: Optional[PricingLookup] = None,
        backoff_base_ms: int = 30_000,
        backoff_max_ms: int = 3_600_000,
        notifier: Optional[Notifier] = None,
        memory_writer: Optional[MemoryWriter] = None,
    ) -> None:
        self._store = store
        self._agent_turn = agent_turn
        self._registry = registry
        self._defaults = defaults or TaskBudget()
        self._pricing = pricing or PricingLookup()
        self._backoff_base_ms = backoff_base_ms
        self._backoff_max_ms = backoff_max_ms
        self._notifier = notifier
        self._memory_writer = memory_writer

    @classmethod
    def from_settings(
        cls,
        settings,
        store: TaskStore,
        agent_turn: AgentTurn,
        registry: Optional[SkillRegistry] = None,
        notifier: Optional[Notifier] = None,
        memory_writer: Optional[MemoryWriter] = None,
    ) -> "TaskRunner":
        return cls(
            store=store,
            agent_turn=agent_turn,
            registry=registry,
            defaults=default_budget_from_settings(settings),
            pricing=PricingLookup.from_settings(settings),
            backoff_base_ms=settings.scheduler.backoff_base_ms,
            backoff_max_ms=settings.scheduler.backoff_max_ms,
            notifier=notifier,
            memory_writer=memory_writer,
        )

    # ── Public API ────────────────────────────────────────────────────────────

    async def run(self, task: Task) -> RunOutcome:
        """Execute one claimed task and record its outcome. Never raises for task errors."""
        bind_task(task.id, task.definition.name)
        try:
            return await self._run(task)
        finally:
            clear_task()

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _run(self, task: Task) -> RunOutcome:
        try:
            manifest = self._resolve_skill(task)
        except (SkillNotFoundError, SkillDisabledError) as e:
            guard = BudgetGuard(resolve_budget(task.budget, None, self._defaults), task.id, self._pricing)
            log.warning("runner.skill_unavailable", skill=task.skill_id, error=str(e))
            return await self._handle_failure(task, e, guard.snapshot)

        budget = resolve_budget(task.budget, manifest.budget if manifest else None, self._defaults)
        guard = BudgetGuard(budget, task.id, self._pricing)
        allow, deny = scope_tools(
            task.definition.tool_allow,
            task.definition.tool_deny,
            manifest.tool_allow if manifest else None,
            manifest.tool_deny if manifest else None,
        )
        request = TurnRequest(
            task_id=task.id,
            name=task.definition.name,
            prompt=build_prompt(task.definition.prompt, task.chained_context),
            system_prompt=build_system_prompt(task.definition.system_prompt, manifest),
            conversation_id=task.definition.conversation_id,
            skill_id=manifest.id if manifest else None,
            tool_allow=allow,
            tool_deny=deny,
            budget=budget,
        )
        ctx = ExecutionContext(task, self._store, guard, allow, deny)
        timeout = budget.max_wall_clock_ms / 1000.0 if budget.max_wall_clock_ms else None

        log.info(
            "runner.started",
            skill=request.skill_id,
            tool_allow=allow,
            budget=budget.to_dict(),
        )

        try:
            result = await asyncio.wait_for(self._agent_turn(request, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            error = BudgetExceededError("wall_clock", guard.elapsed_ms, budget.max_wall_clock_ms or 0)
            return await self._handle_failure(task, error, guard.snapshot)
        except TaskCancelledError:
            return await self._handle_cancel(task, guard.snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_failure(task, e, guard.snapshot)

        text = result.response_text or ""
        if guard.tokens_used == 0 and result.budget_snapshot is None:
            guard.track_text(text)
        snapshot = _merge_snapshot(guard.snapshot, result.budget_snapshot)

        try:
            check_snapshot(budget, snapshot)
        except BudgetExceededError as e:
            return await self._handle_failure(task, e, snapshot)

        res = await self._store.complete(task.id, snapshot, result_text=text)
        if not res.success:
            log.error("runner.complete_failed", error=str(res.error))
            return RunOutcome(task.id, RunStatus.FAILED, snapshot, error=str(res.error), result_text=text)

        updated = res.value
        if updated.status is TaskStatus.CANCELLED:
            log.info("runner.completed_after_cancel")
            return RunOutcome(task.id, RunStatus.CANCELLED, snapshot, result_text=text)

        await self._route_result(updated, text, manifest.id if manifest else None)
        log.info(
            "runner.completed",
            tokens=snapshot.tokens_used,
            cost_usd=round(snapshot.estimated_cost_usd, 6),
            ms=snapshot.wall_clock_ms,
            next_run_at=updated.next_run_at,
        )
        return RunOutcome(
            task.id, RunStatus.COMPLETED, snapshot,
            result_text=text, next_run_at=updated.next_run_at,
        )

    def _resolve_skill(self, task: Task) -> Optional[SkillManifest]:
        skill_id = task.skill_id
        if not skill_id:
            return None
        manifest = self._registry.get(skill_id) if self._registry is not None else None
        if manifest is None:
            raise SkillNotFoundError(skill_id)
        if not self._registry.is_enabled(skill_id):
            raise SkillDisabledError(skill_id)
        return manifest

    async def _handle_failure(
        self,
        task: Task,
        error: BaseException,
        snapshot: BudgetSnapshot,
    ) -> RunOutcome:
        message = str(error) or type(error).__name__
        now = time.time()

        if isinstance(error, BudgetExceededError) or task.retry_count + 1 >= task.max_retries:
            res = await self._store.dead_letter(task.id, message, snapshot, now=now)
            if not res.success:
                log.error("runner.dead_letter_failed", error=str(res.error))
                return RunOutcome(task.id, RunStatus.FAILED, snapshot, error=message)
            log.warning(
                "runner.dead_letter",
                error=message,
                error_type=type(error).__name__,
                retry_count=task.retry_count,
            )
            status = RunStatus.CANCELLED if res.value.status is TaskStatus.CANCELLED else RunStatus.DEAD_LETTER
            return RunOutcome(task.id, status, snapshot, error=message)

        delay_ms = backoff_delay_ms(task.retry_count, self._backoff_base_ms, self._backoff_max_ms)
        next_run_at = now + delay_ms / 1000.0
        res = await self._store.fail(task.id, message, snapshot, now=now, retry_at=next_run_at)
        if not res.success:
            log.error("runner.fail_failed", error=str(res.error))
            return RunOutcome(task.id, RunStatus.FAILED, snapshot, error=message)
        if res.value.status is TaskStatus.CANCELLED:
            return RunOutcome(task.id, RunStatus.CANCELLED, snapshot, error=message)

        log.warning(
            "runner.retry_scheduled",
            error=message,
            error_type=type(error).__name__,
            retry_count=res.value.retry_count,
            delay_ms=delay_ms,
        )
        return RunOutcome(task.id, RunStatus.RETRY_SCHEDULED, snapshot, error=message, next_run_at=next_run_at)

    async def _handle_cancel(self, task: Task, snapshot: BudgetSnapshot) -> RunOutcome:
        now = time.time()
        await self._store.record_run(
            task.id,
            TaskRunStatus.FAILED,
            started_at=now - snapshot.wall_clock_ms / 1000.0,
            completed_at=now,
            error="cancelled",
            snapshot=snapshot,
        )
        log.info("runner.cancelled", ms=snapshot.wall_clock_ms)
        return RunOutcome(task.id, RunStatus.CANCELLED, snapshot, error="cancelled")

    async def _route_result(self, task: Task, text: str, skill_id: Optional[str]) -> None:
        route = task.definition.result_route
        try:
            if route.kind is RouteKind.SILENT:
                log.debug("runner.route.silent", chars=len(text))
            elif route.kind is RouteKind.NOTIFY:
                if self._notifier is None:
                    log.warning("runner.route.no_notifier")
                    return
                await self._notifier(task, text)
                log.info("runner.route.notified", chars=len(text))
            elif route.kind is RouteKind.MEMORY_UPDATE:
                if self._memory_writer is None:
                    log.warning("runner.route.no_memory_writer")
                    return
                await self._memory_writer(task, text, skill_id)
                log.info("runner.route.memory_written", skill=skill_id, chars=len(text))
            elif route.kind is RouteKind.CHAIN_NEXT:
                await self._chain_next(task, text)
            else:
                log.warning("runner.route.unknown", route=route.raw)
        except Exception as e:
            log.error(
                "runner.route.failed",
                route=route.raw,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _chain_next(self, task: Task, text: str) -> None:
        route = task.definition.result_route
        target = route.target_task_id
        if target == task.id:
            log.warning("runner.route.chain_self", target=target)
            return
        context = text if route.context_from_result else None
        res = await self._store.enqueue_chained(target, context)
        if not res.success:
            log.warning("runner.route.chain_failed", target=target, error=str(res.error))
            return
        log.info("runner.route.chained", target=target, with_context=context is not None)
