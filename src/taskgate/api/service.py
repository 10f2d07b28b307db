"""
api/service.py — Task and skill surfaces

Transport-agnostic operations for a UI or gateway. Every method returns a
Result whose value is JSON-ready (dicts, lists, scalars); payloads coming
in are validated with pydantic before they reach the store.

    service = TaskService(store, scheduler)
    res = await service.create({"name": "digest", "prompt": "...", "cron": "0 8 * * *"})
    if res.success:
        print(res.value["id"])
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from taskgate.exceptions import (
    SkillError,
    SkillNotFoundError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskgate.observability.logger import get_logger
from taskgate.result import Result
from taskgate.scheduler.scheduler import TaskScheduler
from taskgate.scheduler.task_store import TaskStore
from taskgate.scheduler.types import (
    ResultRoute,
    SpendPeriod,
    TaskBudget,
    TaskDefinition,
    TaskInput,
    TaskPatch,
    TaskSchedule,
    TaskStatus,
    TaskType,
)
from taskgate.skills.registry import SkillRegistry

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Request models
# ─────────────────────────────────────────────────────────────────────────────

class BudgetRequest(BaseModel):
    max_tokens: Optional[int] = Field(default=None, ge=0)
    max_cost_usd: Optional[float] = Field(default=None, ge=0)
    max_wall_clock_ms: Optional[int] = Field(default=None, ge=0)
    max_tool_calls: Optional[int] = Field(default=None, ge=0)
    max_memory_writes: Optional[int] = Field(default=None, ge=0)


class TaskCreateRequest(BaseModel):
    """Payload accepted by TaskService.create()."""
    type: TaskType = TaskType.ONE_SHOT
    name: str = Field(..., min_length=1, description="Human-readable task name")
    prompt: str = Field(..., min_length=1, description="Prompt handed to the agent turn")
    system_prompt: Optional[str] = None
    conversation_id: Optional[str] = None
    tool_allow: Optional[list[str]] = None
    tool_deny: Optional[list[str]] = None
    result_route: str = "silent"
    skill_id: Optional[str] = None

    cron: Optional[str] = Field(default=None, description="Five-field cron expression")
    interval_ms: Optional[int] = Field(default=None, gt=0)
    event_trigger: Optional[str] = None
    run_immediately: bool = False

    budget: Optional[BudgetRequest] = None
    priority: Optional[int] = Field(default=None, ge=0, le=9)
    max_retries: Optional[int] = Field(default=None, ge=0)

    def to_input(self, default_priority: int = 5, default_max_retries: int = 3) -> TaskInput:
        return TaskInput(
            definition=TaskDefinition(
                type=self.type,
                name=self.name,
                prompt=self.prompt,
                system_prompt=self.system_prompt,
                conversation_id=self.conversation_id,
                tool_allow=self.tool_allow,
                tool_deny=self.tool_deny,
                result_route=ResultRoute.parse(self.result_route),
                skill_id=self.skill_id,
            ),
            schedule=TaskSchedule(
                cron=self.cron,
                interval_ms=self.interval_ms,
                event_trigger=self.event_trigger,
                run_immediately=self.run_immediately,
            ),
            budget=TaskBudget(**self.budget.model_dump()) if self.budget else None,
            priority=default_priority if self.priority is None else self.priority,
            max_retries=default_max_retries if self.max_retries is None else self.max_retries,
        )


class TaskUpdateRequest(BaseModel):
    """Operator-editable fields. Status changes go through cancel()/retry()."""
    priority: Optional[int] = Field(default=None, ge=0, le=9)
    next_run_at: Optional[float] = None


def _validation_failure(exc: ValidationError) -> Result:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}" for e in exc.errors()
    )
    return Result.fail(TaskValidationError(problems))


# ─────────────────────────────────────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────────────────────────────────────

class TaskService:
    def __init__(
        self,
        store: TaskStore,
        scheduler: Optional[TaskScheduler] = None,
        default_priority: int = 5,
        default_max_retries: int = 3,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._default_priority = default_priority
        self._default_max_retries = default_max_retries

    async def create(self, payload: dict[str, Any]) -> Result[dict]:
        try:
            request = TaskCreateRequest.model_validate(payload)
        except ValidationError as exc:
            return _validation_failure(exc)

        res = await self._store.create(
            request.to_input(self._default_priority, self._default_max_retries)
        )
        if not res.success:
            return Result.fail(res.error)
        log.info("task_service.created", task_id=res.value.id, name=request.name)
        return Result.ok(res.value.to_dict())

    async def get(self, task_id: str) -> Result[dict]:
        res = await self._store.get(task_id)
        if not res.success:
            return Result.fail(res.error)
        if res.value is None:
            return Result.fail(TaskNotFoundError(task_id))
        return Result.ok(res.value.to_dict())

    async def update(self, task_id: str, payload: dict[str, Any]) -> Result[dict]:
        try:
            request = TaskUpdateRequest.model_validate(payload)
        except ValidationError as exc:
            return _validation_failure(exc)

        patch = TaskPatch(**{name: getattr(request, name) for name in request.model_fields_set})
        if not patch.items():
            return await self.get(task_id)
        res = await self._store.update(task_id, patch)
        return Result.ok(res.value.to_dict()) if res.success else Result.fail(res.error)

    async def cancel(self, task_id: str) -> Result[dict]:
        res = await self._store.cancel(task_id)
        return Result.ok(res.value.to_dict()) if res.success else Result.fail(res.error)

    async def retry(self, task_id: str) -> Result[dict]:
        res = await self._store.retry(task_id)
        return Result.ok(res.value.to_dict()) if res.success else Result.fail(res.error)

    async def list(self, status: Optional[str] = None, limit: int = 100) -> Result[list[dict]]:
        if status is None:
            res = await self._store.list_all(limit)
        else:
            try:
                task_status = TaskStatus(status)
            except ValueError:
                return Result.fail(TaskValidationError(f"Unknown task status: '{status}'"))
            res = await self._store.list_by_status(task_status, limit)
        if not res.success:
            return Result.fail(res.error)
        return Result.ok([t.to_dict() for t in res.value])

    async def runs(self, task_id: str, limit: int = 20) -> Result[list[dict]]:
        res = await self._store.list_runs(task_id, limit)
        if not res.success:
            return Result.fail(res.error)
        return Result.ok([r.to_dict() for r in res.value])

    async def trigger(self, event_name: str) -> Result[dict]:
        if self._scheduler is None:
            return Result.fail(TaskValidationError("No scheduler attached; events cannot fire"))
        matched = await self._scheduler.trigger_event(event_name)
        return Result.ok({"event": event_name, "matched": matched})

    async def spend_summary(self) -> Result[dict]:
        day = await self._store.sum_spend(SpendPeriod.DAY)
        if not day.success:
            return Result.fail(day.error)
        month = await self._store.sum_spend(SpendPeriod.MONTH)
        if not month.success:
            return Result.fail(month.error)

        summary: dict[str, Any] = {
            "daily_usd": round(day.value, 6),
            "monthly_usd": round(month.value, 6),
            "scheduler": None,
        }
        if self._scheduler is not None:
            summary["scheduler"] = {
                "running": self._scheduler.is_running,
                "paused": self._scheduler.is_paused,
                "stats": self._scheduler.stats.to_dict(),
            }
        return Result.ok(summary)


# ─────────────────────────────────────────────────────────────────────────────
# Skills
# ─────────────────────────────────────────────────────────────────────────────

class SkillCatalog:
    def __init__(self, registry: SkillRegistry) -> None:
        self._registry = registry

    def _describe(self, skill_id: str) -> dict[str, Any]:
        manifest = self._registry.get(skill_id)
        scan = self._registry.get_scan_result(skill_id)
        return {
            **manifest.to_dict(),
            "enabled": self._registry.is_enabled(skill_id),
            "scan": scan.to_dict() if scan else None,
        }

    def list(self) -> Result[list[dict]]:
        return Result.ok([self._describe(m.id) for m in self._registry.list()])

    def get(self, skill_id: str) -> Result[dict]:
        if skill_id not in self._registry:
            return Result.fail(SkillNotFoundError(skill_id))
        return Result.ok(self._describe(skill_id))

    async def install(self, file_path: str) -> Result[dict]:
        try:
            manifest = await self._registry.admit(file_path)
        except SkillError as e:
            return Result.fail(e)
        return Result.ok(self._describe(manifest.id))

    async def uninstall(self, skill_id: str) -> Result[dict]:
        outcome = await self._registry.uninstall(skill_id)
        if not outcome.removed:
            return Result.fail(SkillNotFoundError(skill_id))
        return Result.ok({
            "id": skill_id,
            "removed": True,
            "memories_purged": outcome.memories_purged,
        })

    def enable(self, skill_id: str) -> Result[dict]:
        if not self._registry.enable(skill_id):
            return Result.fail(SkillNotFoundError(skill_id))
        return Result.ok(self._describe(skill_id))

    def disable(self, skill_id: str) -> Result[dict]:
        if not self._registry.disable(skill_id):
            return Result.fail(SkillNotFoundError(skill_id))
        return Result.ok(self._describe(skill_id))
