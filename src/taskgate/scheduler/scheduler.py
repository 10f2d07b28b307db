"""
scheduler/scheduler.py — Task Scheduler poll loop

Wakes every ``tick_interval`` seconds, claims due tasks from the TaskStore
while run slots are free, and hands each to the TaskRunner as its own
asyncio task. A slot freeing up triggers another tick straight away.

Several schedulers (in one process or many) can poll the same store; the
store's claim() guarantees each run is picked up once.

Also:
  - pause()/resume() stop and restart claiming (the global spend guard
    pauses through this)
  - trigger_event(name) makes tasks waiting on ``name`` due now
  - runs sharing a conversation_id go one at a time (a claimed run waits
    for its conversation lane while holding its slot)
  - a run that crashes is logged; the loop keeps going
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Optional

from taskgate.observability.logger import get_logger
from taskgate.scheduler.global_budget import GlobalBudgetGuard
from taskgate.scheduler.runner import RunOutcome, RunStatus, TaskRunner
from taskgate.scheduler.task_store import TaskStore
from taskgate.scheduler.types import Task

log = get_logger(__name__)


@dataclass
class SchedulerStats:
    ticks: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    cancelled: int = 0
    failed: int = 0
    crashed: int = 0
    running: int = 0
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_OUTCOME_COUNTERS = {
    RunStatus.COMPLETED:       "completed",
    RunStatus.RETRY_SCHEDULED: "retried",
    RunStatus.DEAD_LETTER:     "dead_lettered",
    RunStatus.CANCELLED:       "cancelled",
    RunStatus.FAILED:          "failed",
}


class TaskScheduler:
    def __init__(
        self,
        store: TaskStore,
        runner: TaskRunner,
        global_budget: Optional[GlobalBudgetGuard] = None,
        max_concurrent: int = 3,
        tick_interval: float = 30.0,
    ) -> None:
        self._store = store
        self._runner = runner
        self._global_budget = global_budget
        self._max_concurrent = max_concurrent
        self._tick_interval = tick_interval

        self._ticker: Optional[asyncio.Task] = None
        self._running: dict[str, asyncio.Task] = {}
        self._bg: set[asyncio.Task] = set()   # strong refs to kicked ticks
        self._tick_lock = asyncio.Lock()
        self._conversation_locks: dict[str, asyncio.Lock] = {}
        self._lane_users: dict[str, int] = {}
        self._paused = False
        self._stopping = False
        self._stats = SchedulerStats()

        if global_budget is not None:
            global_budget.bind_control(self)

    @classmethod
    def from_settings(
        cls,
        settings,
        store: TaskStore,
        runner: TaskRunner,
        global_budget: Optional[GlobalBudgetGuard] = None,
    ) -> "TaskScheduler":
        return cls(
            store=store,
            runner=runner,
            global_budget=global_budget,
            max_concurrent=settings.scheduler.max_concurrent_tasks,
            tick_interval=settings.scheduler.tick_interval_seconds,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def stats(self) -> SchedulerStats:
        self._stats.running = len(self._running)
        self._stats.paused = self._paused
        return self._stats

    async def start(self) -> None:
        """Start the tick loop. The first tick runs immediately."""
        if self.is_running:
            return
        self._stopping = False
        log.info(
            "scheduler.starting",
            tick_interval=self._tick_interval,
            max_concurrent=self._max_concurrent,
        )
        self._ticker = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        """Stop claiming and wait for in-flight runs to record their outcome."""
        self._stopping = True
        if self._ticker:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        # Let a tick that already passed its stopping check finish launching.
        async with self._tick_lock:
            pass

        if self._running:
            log.info("scheduler.draining", in_flight=len(self._running))
            await asyncio.gather(*self._running.values(), return_exceptions=True)

        log.info("scheduler.stopped")

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        log.warning("scheduler.paused", in_flight=len(self._running))

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        log.info("scheduler.resumed")
        if self.is_running:
            self._kick()

    # ── Polling ───────────────────────────────────────────────────────────────

    async def tick(self) -> int:
        """Claim and launch due tasks while slots are free. Returns the number launched."""
        async with self._tick_lock:
            if self._paused or self._stopping:
                return 0
            self._stats.ticks += 1

            launched = 0
            while (
                len(self._running) < self._max_concurrent
                and not self._paused
                and not self._stopping
            ):
                res = await self._store.claim()
                if not res.success:
                    log.error("scheduler.claim_failed", error=str(res.error))
                    break
                if res.value is None:
                    break
                self._launch(res.value)
                launched += 1

            if launched:
                log.debug("scheduler.tick", launched=launched, in_flight=len(self._running))
            return launched

    async def trigger_event(self, event_name: str) -> int:
        """Make every task waiting on ``event_name`` due now, then tick."""
        if self._paused:
            log.info("scheduler.event_ignored_paused", trigger=event_name)
            return 0

        res = await self._store.fire_event(event_name)
        if not res.success:
            log.error("scheduler.event_lookup_failed", trigger=event_name, error=str(res.error))
            return 0

        matched = len(res.value)
        log.info("scheduler.event_triggered", trigger=event_name, matched=matched)
        if matched:
            await self.tick()
        return matched

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _tick_loop(self) -> None:
        log.info("scheduler.tick_loop.started")
        while True:
            try:
                # shielded so stop() never abandons a claim half way
                await asyncio.shield(self.tick())
                await asyncio.sleep(self._tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.error("scheduler.tick_loop.error", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(self._tick_interval)

    def _launch(self, task: Task) -> None:
        self._stats.claimed += 1
        run = asyncio.create_task(self._run_task(task))
        self._running[task.id] = run
        run.add_done_callback(lambda fut, tid=task.id: self._on_run_done(tid))

    def _on_run_done(self, task_id: str) -> None:
        self._running.pop(task_id, None)
        if self.is_running:
            self._kick()

    def _kick(self) -> None:
        if self._stopping or self._paused:
            return
        kick = asyncio.create_task(self.tick())
        self._bg.add(kick)
        kick.add_done_callback(self._on_kick_done)

    def _on_kick_done(self, kick: asyncio.Task) -> None:
        self._bg.discard(kick)
        if kick.cancelled():
            return
        exc = kick.exception()
        if exc is not None:
            log.error("scheduler.tick.error", error=str(exc), error_type=type(exc).__name__)

    @contextlib.asynccontextmanager
    async def _conversation_lane(self, conversation_id: Optional[str]) -> AsyncIterator[None]:
        if not conversation_id:
            yield
            return
        lock = self._conversation_locks.setdefault(conversation_id, asyncio.Lock())
        self._lane_users[conversation_id] = self._lane_users.get(conversation_id, 0) + 1
        try:
            if lock.locked():
                log.debug("scheduler.lane_wait", conversation_id=conversation_id)
            async with lock:
                yield
        finally:
            self._lane_users[conversation_id] -= 1
            if not self._lane_users[conversation_id]:
                del self._lane_users[conversation_id]
                self._conversation_locks.pop(conversation_id, None)

    async def _run_task(self, task: Task) -> None:
        try:
            async with self._conversation_lane(task.definition.conversation_id):
                outcome: RunOutcome = await self._runner.run(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.crashed += 1
            log.error(
                "scheduler.run_crashed",
                task_id=task.id,
                name=task.definition.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return

        counter = _OUTCOME_COUNTERS[outcome.status]
        setattr(self._stats, counter, getattr(self._stats, counter) + 1)

        if self._global_budget is not None:
            try:
                await self._global_budget.check_and_enforce(task, outcome.snapshot)
            except Exception as e:
                log.error("scheduler.global_budget_error", task_id=task.id, error=str(e))
