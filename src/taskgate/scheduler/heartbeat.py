"""
scheduler/heartbeat.py — Proactive heartbeat task

Keeps exactly one recurring ``heartbeat`` task in the store so the agent
checks in on its own every N minutes. The task is an ordinary cron task:
it is claimed, budgeted and retried like any other.

Usage (bootstrap):
    if settings.scheduler.heartbeat_enabled:
        await ensure_heartbeat_task(store, interval_minutes=30, prompt=...)
"""

from __future__ import annotations

from typing import Optional

from taskgate.observability.logger import get_logger
from taskgate.result import Result
from taskgate.scheduler.task_store import TaskStore
from taskgate.scheduler.types import (
    ResultRoute,
    Task,
    TaskDefinition,
    TaskInput,
    TaskSchedule,
    TaskType,
)

log = get_logger(__name__)

HEARTBEAT_NAME = "heartbeat"

DEFAULT_HEARTBEAT_PROMPT = (
    "You are running a scheduled heartbeat. Check for pending work, overdue "
    "reminders and anything that needs the user's attention. If there is "
    "nothing actionable, reply with an empty message."
)

# Cron expression templates keyed by interval bucket
_CRON_MAP: dict[int, str] = {
    5:  "*/5 * * * *",
    10: "*/10 * * * *",
    15: "*/15 * * * *",
    30: "*/30 * * * *",
    60: "0 * * * *",
}


def _cron_for_interval(minutes: int) -> str:
    """Return the cron expression for the requested interval, hourly if none fits."""
    if minutes in _CRON_MAP:
        return _CRON_MAP[minutes]
    if 0 < minutes < 60 and 60 % minutes == 0:
        return f"*/{minutes} * * * *"
    log.warning(
        "heartbeat.unsupported_interval",
        minutes=minutes,
        fallback="every 60 minutes",
    )
    return "0 * * * *"


async def ensure_heartbeat_task(
    store: TaskStore,
    interval_minutes: int = 30,
    prompt: Optional[str] = None,
    result_route: str = "notify",
    priority: int = 3,
    now: Optional[float] = None,
) -> Result[Task]:
    """
    Create the heartbeat task unless a live one (pending, scheduled or
    running) already exists. Returns the existing or new task.
    """
    existing = await store.find_live_by_type(TaskType.HEARTBEAT)
    if not existing.success:
        return Result.fail(existing.error)
    if existing.value:
        task = existing.value[0]
        log.debug("heartbeat.exists", task_id=task.id, cron=task.schedule.cron)
        return Result.ok(task)

    cron = _cron_for_interval(interval_minutes)
    created = await store.create(
        TaskInput(
            definition=TaskDefinition(
                type=TaskType.HEARTBEAT,
                name=HEARTBEAT_NAME,
                prompt=prompt or DEFAULT_HEARTBEAT_PROMPT,
                result_route=ResultRoute.parse(result_route),
            ),
            schedule=TaskSchedule(cron=cron),
            priority=priority,
        ),
        now=now,
    )
    if created.success:
        log.info(
            "heartbeat.task_created",
            task_id=created.value.id,
            interval_minutes=interval_minutes,
            cron=cron,
            next_run_at=created.value.next_run_at,
        )
    return created
