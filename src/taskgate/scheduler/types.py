"""
scheduler/types.py — Task System Data Contracts

Dataclasses and enums shared by the task store, runner, scheduler loop and
the exposed task surface. Skills import TaskBudget and ResultRoute from here
so a manifest's suggested ceiling and route use the same types as a task's.

All timestamps are epoch seconds (float, ``time.time()``). Interval and
wall-clock fields keep their millisecond unit in the field name.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class TaskType(str, Enum):
    ONE_SHOT  = "one_shot"
    HEARTBEAT = "heartbeat"
    SCHEDULED = "scheduled"
    EVENT     = "event"


class TaskStatus(str, Enum):
    PENDING     = "pending"
    SCHEDULED   = "scheduled"
    RUNNING     = "running"
    COMPLETED   = "completed"
    FAILED      = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELLED   = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.DEAD_LETTER, TaskStatus.CANCELLED)


class TaskRunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"


class SpendPeriod(str, Enum):
    DAY   = "day"
    MONTH = "month"


# ─────────────────────────────────────────────────────────────────────────────
# ResultRoute: closed variant with an explicit fallback
# ─────────────────────────────────────────────────────────────────────────────

class RouteKind(str, Enum):
    SILENT        = "silent"
    NOTIFY        = "notify"
    MEMORY_UPDATE = "memory_update"
    CHAIN_NEXT    = "chain_next"
    OTHER         = "other"


@dataclass(frozen=True)
class ResultRoute:
    """
    Where a run's final text goes.

    Unknown values never fail parsing; they become kind OTHER with the
    original string kept in ``raw`` so it round-trips through storage.

    ``chain_next:<task id>`` makes the target task due when this one
    completes; ``chain_next:<task id>:context`` also hands it this run's
    final text. A chain_next without a target id is OTHER.
    """
    kind: RouteKind
    raw: str
    target_task_id: Optional[str] = None
    context_from_result: bool = False

    @classmethod
    def parse(cls, value: Any) -> "ResultRoute":
        if isinstance(value, ResultRoute):
            return value
        text = "" if value is None else str(value).strip()
        head, sep, rest = text.partition(":")
        if sep and head.lower() == RouteKind.CHAIN_NEXT.value:
            target, _, flag = rest.partition(":")
            target, flag = target.strip(), flag.strip().lower()
            if target and flag in ("", "context"):
                return cls.chain_next(target, context_from_result=flag == "context")
            return cls(kind=RouteKind.OTHER, raw=text)
        try:
            kind = RouteKind(text.lower())
        except ValueError:
            return cls(kind=RouteKind.OTHER, raw=text)
        if kind in (RouteKind.OTHER, RouteKind.CHAIN_NEXT):
            return cls(kind=RouteKind.OTHER, raw=text)
        return cls(kind=kind, raw=kind.value)

    @classmethod
    def silent(cls) -> "ResultRoute":
        return cls(kind=RouteKind.SILENT, raw=RouteKind.SILENT.value)

    @classmethod
    def chain_next(cls, target_task_id: str, context_from_result: bool = False) -> "ResultRoute":
        raw = f"{RouteKind.CHAIN_NEXT.value}:{target_task_id}"
        if context_from_result:
            raw += ":context"
        return cls(
            kind=RouteKind.CHAIN_NEXT,
            raw=raw,
            target_task_id=target_task_id,
            context_from_result=context_from_result,
        )

    def serialize(self) -> str:
        return self.raw

    def __str__(self) -> str:
        return self.raw


# ─────────────────────────────────────────────────────────────────────────────
# Definition / schedule / budget
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TaskDefinition:
    type: TaskType
    name: str
    prompt: str
    system_prompt: Optional[str] = None
    conversation_id: Optional[str] = None
    tool_allow: Optional[list[str]] = None
    tool_deny: Optional[list[str]] = None
    result_route: ResultRoute = field(default_factory=ResultRoute.silent)
    skill_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "prompt": self.prompt,
            "system_prompt": self.system_prompt,
            "conversation_id": self.conversation_id,
            "tool_allow": self.tool_allow,
            "tool_deny": self.tool_deny,
            "result_route": self.result_route.serialize(),
            "skill_id": self.skill_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskDefinition":
        return cls(
            type=TaskType(data["type"]),
            name=data["name"],
            prompt=data["prompt"],
            system_prompt=data.get("system_prompt"),
            conversation_id=data.get("conversation_id"),
            tool_allow=data.get("tool_allow"),
            tool_deny=data.get("tool_deny"),
            result_route=ResultRoute.parse(data.get("result_route", "silent")),
            skill_id=data.get("skill_id"),
        )


@dataclass
class TaskSchedule:
    cron: Optional[str] = None
    interval_ms: Optional[int] = None
    event_trigger: Optional[str] = None
    run_immediately: bool = False

    @property
    def is_recurring(self) -> bool:
        return bool(self.cron) or bool(self.interval_ms)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskSchedule":
        return cls(
            cron=data.get("cron"),
            interval_ms=data.get("interval_ms"),
            event_trigger=data.get("event_trigger"),
            run_immediately=bool(data.get("run_immediately", False)),
        )


@dataclass
class TaskBudget:
    """Per-run ceilings. A None field inherits from the skill, then the config default."""
    max_tokens: Optional[int] = None
    max_cost_usd: Optional[float] = None
    max_wall_clock_ms: Optional[int] = None
    max_tool_calls: Optional[int] = None
    max_memory_writes: Optional[int] = None

    def is_empty(self) -> bool:
        return all(v is None for v in asdict(self).values())

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TaskBudget":
        data = data or {}
        return cls(
            max_tokens=data.get("max_tokens"),
            max_cost_usd=data.get("max_cost_usd"),
            max_wall_clock_ms=data.get("max_wall_clock_ms"),
            max_tool_calls=data.get("max_tool_calls"),
            max_memory_writes=data.get("max_memory_writes"),
        )


@dataclass
class BudgetSnapshot:
    """Resources consumed by one run."""
    tokens_used: int = 0
    estimated_cost_usd: float = 0.0
    wall_clock_ms: int = 0
    tool_calls_made: int = 0
    memory_writes_made: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BudgetSnapshot":
        return cls(
            tokens_used=int(data.get("tokens_used", 0)),
            estimated_cost_usd=float(data.get("estimated_cost_usd", 0.0)),
            wall_clock_ms=int(data.get("wall_clock_ms", 0)),
            tool_calls_made=int(data.get("tool_calls_made", 0)),
            memory_writes_made=int(data.get("memory_writes_made", 0)),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Task / TaskRun records
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Task:
    id: str
    definition: TaskDefinition
    schedule: TaskSchedule
    budget: TaskBudget
    status: TaskStatus
    priority: int
    next_run_at: Optional[float]
    last_run_at: Optional[float]
    retry_count: int
    max_retries: int
    created_at: float
    updated_at: float
    error: Optional[str] = None
    budget_consumed: Optional[BudgetSnapshot] = None
    result_text: Optional[str] = None
    chained_context: Optional[str] = None

    @property
    def skill_id(self) -> Optional[str]:
        return self.definition.skill_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "definition": self.definition.to_dict(),
            "schedule": self.schedule.to_dict(),
            "budget": self.budget.to_dict(),
            "status": self.status.value,
            "priority": self.priority,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "error": self.error,
            "budget_consumed": self.budget_consumed.to_dict() if self.budget_consumed else None,
            "result_text": self.result_text,
            "chained_context": self.chained_context,
        }


@dataclass
class TaskRun:
    id: str
    task_id: str
    started_at: float
    completed_at: Optional[float]
    status: TaskRunStatus
    error: Optional[str] = None
    budget_consumed: Optional[BudgetSnapshot] = None
    result_text: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status.value,
            "error": self.error,
            "budget_consumed": self.budget_consumed.to_dict() if self.budget_consumed else None,
            "result_text": self.result_text,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Input / patch
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TaskInput:
    definition: TaskDefinition
    schedule: TaskSchedule = field(default_factory=TaskSchedule)
    budget: Optional[TaskBudget] = None
    priority: int = 5
    max_retries: int = 3


class _Unset:
    """Marks a TaskPatch field that should be left untouched."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class TaskPatch:
    """Partial update. Fields left as UNSET are not written; None clears nullable columns."""
    status: Any = UNSET
    next_run_at: Any = UNSET
    last_run_at: Any = UNSET
    retry_count: Any = UNSET
    error: Any = UNSET
    budget_consumed: Any = UNSET
    priority: Any = UNSET

    def items(self) -> list[tuple[str, Any]]:
        return [
            (name, value) for name, value in vars(self).items()
            if value is not UNSET
        ]
