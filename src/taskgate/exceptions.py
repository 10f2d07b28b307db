"""
exceptions.py — taskgate Unified Error Hierarchy

Every layer raises (or returns inside a Result) typed subclasses of
TaskgateError, never bare Exception. Each class carries a stable ``code``
so callers and the exposed surfaces can branch without string matching.

Import from here, not from individual modules:
    from taskgate.exceptions import TaskNotFoundError, StorageError

Hierarchy:
    TaskgateError
    ├── TaskError
    │   ├── TaskNotFoundError
    │   ├── TaskValidationError
    │   ├── InvalidTransitionError
    │   └── TaskCancelledError
    ├── StorageError            (fatal, always raised)
    ├── SkillError
    │   ├── SkillNotFoundError
    │   ├── SkillDisabledError
    │   └── SkillParseError
    ├── BudgetError
    │   └── BudgetExceededError
    ├── SafetyError
    │   └── ToolNotAllowedError
    └── ConfigError
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TaskgateError(Exception):
    """Base class for all taskgate exceptions."""

    code: str = "TASKGATE_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


# ─────────────────────────────────────────────────────────────────────────────
# Task layer
# ─────────────────────────────────────────────────────────────────────────────

class TaskError(TaskgateError):
    """Base for task store and runner errors."""

    code = "TASK_ERROR"


class TaskNotFoundError(TaskError):
    """No task row exists with the given id."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str, message: str = "") -> None:
        self.task_id = task_id
        super().__init__(message or f"Task not found: {task_id}")


class TaskValidationError(TaskError):
    """Task input or patch failed validation (priority range, cron, interval)."""

    code = "TASK_VALIDATION"


class InvalidTransitionError(TaskError):
    """Requested status change is not allowed from the task's current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, task_id: str, current: str, action: str) -> None:
        self.task_id = task_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} task {task_id} in status '{current}'")


class TaskCancelledError(TaskError):
    """Raised inside a run when the task was cancelled while executing."""

    code = "TASK_CANCELLED"

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} was cancelled")


# ─────────────────────────────────────────────────────────────────────────────
# Storage layer
# ─────────────────────────────────────────────────────────────────────────────

class StorageError(TaskgateError):
    """The persistent store failed (I/O, locking, corruption). Always fatal."""

    code = "STORAGE_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Skill layer
# ─────────────────────────────────────────────────────────────────────────────

class SkillError(TaskgateError):
    """Base for all skill-related errors."""

    code = "SKILL_ERROR"


class SkillNotFoundError(SkillError):
    """Requested skill is not installed in the SkillRegistry."""

    code = "SKILL_NOT_FOUND"

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(f"Skill not found: {skill_id}")


class SkillDisabledError(SkillError):
    """Skill is installed but currently disabled."""

    code = "SKILL_DISABLED"

    def __init__(self, skill_id: str) -> None:
        self.skill_id = skill_id
        super().__init__(f"Skill is disabled: {skill_id}")


class SkillParseError(SkillError):
    """A skill definition file could not be parsed."""

    code = "SKILL_PARSE"

    def __init__(self, parse_code: str, message: str, path: Optional[str] = None) -> None:
        self.parse_code = parse_code
        self.path = path
        super().__init__(f"{parse_code}: {message}" + (f" ({path})" if path else ""))


# ─────────────────────────────────────────────────────────────────────────────
# Budget layer
# ─────────────────────────────────────────────────────────────────────────────

class BudgetError(TaskgateError):
    """Base for resource-ceiling errors."""

    code = "BUDGET_ERROR"


class BudgetExceededError(BudgetError):
    """A per-run ceiling (tokens, cost, wall clock, tool calls, memory writes) was hit."""

    code = "BUDGET_EXCEEDED"

    def __init__(self, limit: str, used: float = 0, maximum: float = 0, message: str = "") -> None:
        self.limit = limit
        self.used = used
        self.maximum = maximum
        super().__init__(
            message or f"Budget exceeded: {limit} ({used} / {maximum})"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Safety layer
# ─────────────────────────────────────────────────────────────────────────────

class SafetyError(TaskgateError):
    """Base for capability / permission errors."""

    code = "SAFETY_ERROR"


class ToolNotAllowedError(SafetyError):
    """Tool is outside the run's allow-list or inside its deny-list."""

    code = "TOOL_NOT_ALLOWED"

    def __init__(self, tool: str, message: str = "") -> None:
        self.tool = tool
        super().__init__(message or f"Tool not allowed in this run: '{tool}'")


# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(TaskgateError):
    """Raised by Settings.validate_all() when one or more config problems are found."""

    code = "CONFIG_ERROR"


__all__ = [
    "TaskgateError",
    "TaskError",
    "TaskNotFoundError",
    "TaskValidationError",
    "InvalidTransitionError",
    "TaskCancelledError",
    "StorageError",
    "SkillError",
    "SkillNotFoundError",
    "SkillDisabledError",
    "SkillParseError",
    "BudgetError",
    "BudgetExceededError",
    "SafetyError",
    "ToolNotAllowedError",
    "ConfigError",
]
