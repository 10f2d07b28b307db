"""
result.py — Typed success/failure wrapper

Store and service operations return a Result instead of raising for
expected conditions (not found, invalid input, invalid transition).
Only infrastructure faults (StorageError) are raised.

    res = await store.get(task_id)
    if not res.success:
        log.warning("task.lookup_failed", code=res.error.code)
    task = res.value
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from taskgate.exceptions import TaskgateError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[TaskgateError] = None

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: TaskgateError) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.success:
            raise self.error  # type: ignore[misc]
        return self.value  # type: ignore[return-value]
