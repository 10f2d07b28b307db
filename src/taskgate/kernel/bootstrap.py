"""
kernel/bootstrap.py — Core stack factory

Wires the task store, skill registry, runner, scheduler loop, global spend
guard and the exposed surfaces from Settings. Used by the CLI and by any
host process embedding taskgate.

Usage:
    core = await build_core(settings, agent_turn=my_turn, notifier=send_push)
    await core.scheduler.start()
    ...
    await core.close()

Without an ``agent_turn`` only the store, registry and read/write surfaces
are built; nothing can execute tasks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskgate.api.service import SkillCatalog, TaskService
from taskgate.observability.logger import get_logger
from taskgate.safety.injection import load_extra_patterns
from taskgate.scheduler.global_budget import GlobalBudgetGuard
from taskgate.scheduler.heartbeat import ensure_heartbeat_task
from taskgate.scheduler.runner import AgentTurn, MemoryWriter, Notifier, TaskRunner
from taskgate.scheduler.scheduler import TaskScheduler
from taskgate.scheduler.task_store import TaskStore
from taskgate.skills.registry import PurgeHook, SkillRegistry

log = get_logger(__name__)


@dataclass
class CoreStack:
    """All wired components returned by build_core()."""
    store: TaskStore
    registry: SkillRegistry
    tasks: TaskService
    skills: SkillCatalog
    runner: Optional[TaskRunner] = None
    scheduler: Optional[TaskScheduler] = None
    global_budget: Optional[GlobalBudgetGuard] = None

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.store.close()


async def build_core(
    settings,
    agent_turn: Optional[AgentTurn] = None,
    *,
    notifier: Optional[Notifier] = None,
    memory_writer: Optional[MemoryWriter] = None,
    purge_memories_by_skill_id: Optional[PurgeHook] = None,
    load_skills: bool = True,
) -> CoreStack:
    """
    Build the core from settings. The store is initialised (migrations
    applied) and, when ``load_skills`` is set, skills under
    ``settings.skills.paths`` are installed before this returns.
    """
    extra = load_extra_patterns(settings.safety.injection_extra_patterns)
    if extra:
        log.info("bootstrap.injection_patterns_loaded", extra=extra)

    store = TaskStore(settings.scheduler.db_path, timezone=settings.scheduler.timezone)
    await store.init()

    registry = SkillRegistry(
        auto_scan=settings.skills.auto_scan,
        purge_memories_by_skill_id=purge_memories_by_skill_id,
        filename=settings.skills.filename,
    )
    if load_skills:
        await registry.load_from_paths(settings.skills.paths)

    runner: Optional[TaskRunner] = None
    scheduler: Optional[TaskScheduler] = None
    global_budget: Optional[GlobalBudgetGuard] = None
    if agent_turn is not None:
        runner = TaskRunner.from_settings(
            settings, store, agent_turn,
            registry=registry, notifier=notifier, memory_writer=memory_writer,
        )
        global_budget = GlobalBudgetGuard.from_settings(settings, store)
        scheduler = TaskScheduler.from_settings(settings, store, runner, global_budget)

    if settings.scheduler.heartbeat_enabled:
        await ensure_heartbeat_task(
            store,
            interval_minutes=settings.scheduler.heartbeat_interval_minutes,
            prompt=settings.scheduler.heartbeat_prompt,
            priority=settings.scheduler.default_priority,
        )

    log.info(
        "bootstrap.ready",
        db_path=settings.scheduler.db_path,
        skills=registry.size,
        executing=scheduler is not None,
    )
    return CoreStack(
        store=store,
        registry=registry,
        tasks=TaskService(
            store,
            scheduler,
            default_priority=settings.scheduler.default_priority,
            default_max_retries=settings.scheduler.default_max_retries,
        ),
        skills=SkillCatalog(registry),
        runner=runner,
        scheduler=scheduler,
        global_budget=global_budget,
    )
