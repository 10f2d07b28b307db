"""
scheduler/task_store.py — Persistent Task Store

aiosqlite-backed store for tasks and their run history.

Tables:
  - tasks             : definition, schedule, budget and lifecycle state
  - task_runs         : append-only history, one row per execution
  - scheduler_schema  : applied migration versions

Correctness rules:
  - claim() is a single ``UPDATE ... WHERE id = (SELECT ... LIMIT 1)
    RETURNING *`` inside BEGIN IMMEDIATE. Two pollers (coroutines on one
    store, or separate stores/processes on one file) never claim the same row.
  - Every single-row transition reads the row inside its own transaction.
  - A cancelled task stays cancelled: complete/fail/dead_letter still record
    the run and its budget but leave the status alone.
  - Expected failures (not found, invalid input, invalid transition, corrupt
    JSON) come back as Result.fail. SQLite I/O and locking faults raise
    StorageError.

Usage:
    store = TaskStore("./data/sqlite/tasks.db")
    await store.init()
    created = await store.create(TaskInput(definition=..., schedule=...))
    claimed = await store.claim()
"""

from __future__ import annotations

import asyncio
import functools
import json
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from taskgate.exceptions import (
    InvalidTransitionError,
    StorageError,
    TaskError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskgate.observability.logger import get_logger
from taskgate.result import Result
from taskgate.scheduler.cron import is_valid_cron, next_occurrence
from taskgate.scheduler.types import (
    BudgetSnapshot,
    SpendPeriod,
    Task,
    TaskBudget,
    TaskDefinition,
    TaskInput,
    TaskPatch,
    TaskRun,
    TaskRunStatus,
    TaskSchedule,
    TaskStatus,
    TaskType,
    ResultRoute,
)

log = get_logger(__name__)

# ── Schema migrations ─────────────────────────────────────────────────────────

_MIGRATIONS: list[tuple[int, str]] = [
    (1, """
CREATE TABLE IF NOT EXISTS tasks (
    id                TEXT PRIMARY KEY,
    type              TEXT NOT NULL
                      CHECK(type IN ('one_shot','heartbeat','scheduled','event')),
    name              TEXT NOT NULL,
    prompt            TEXT NOT NULL,
    system_prompt     TEXT,
    conversation_id   TEXT,
    tool_allow        TEXT,           -- JSON list or NULL
    tool_deny         TEXT,           -- JSON list or NULL
    result_route      TEXT NOT NULL,
    cron              TEXT,
    interval_ms       INTEGER,
    event_trigger     TEXT,
    run_immediately   INTEGER NOT NULL DEFAULT 0,
    max_tokens        INTEGER,
    max_cost_usd      REAL,
    max_wall_clock_ms INTEGER,
    max_tool_calls    INTEGER,
    status            TEXT NOT NULL DEFAULT 'pending'
                      CHECK(status IN ('pending','scheduled','running','completed',
                                       'failed','dead_letter','cancelled')),
    priority          INTEGER NOT NULL DEFAULT 5 CHECK(priority >= 0 AND priority <= 9),
    next_run_at       REAL,
    last_run_at       REAL,
    retry_count       INTEGER NOT NULL DEFAULT 0,
    max_retries       INTEGER NOT NULL DEFAULT 3,
    created_at        REAL NOT NULL,
    updated_at        REAL NOT NULL,
    error             TEXT,
    budget_consumed   TEXT            -- JSON BudgetSnapshot
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_due
    ON tasks(priority DESC, next_run_at ASC) WHERE status = 'scheduled';

CREATE TABLE IF NOT EXISTS task_runs (
    id              TEXT PRIMARY KEY,
    task_id         TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    started_at      REAL NOT NULL,
    completed_at    REAL,
    status          TEXT NOT NULL CHECK(status IN ('completed','failed')),
    error           TEXT,
    budget_consumed TEXT
);

CREATE INDEX IF NOT EXISTS idx_task_runs_task ON task_runs(task_id);
CREATE INDEX IF NOT EXISTS idx_task_runs_completed ON task_runs(completed_at);
"""),
    (2, """
ALTER TABLE tasks ADD COLUMN result_text TEXT;
ALTER TABLE task_runs ADD COLUMN result_text TEXT;
"""),
    (3, """
ALTER TABLE tasks ADD COLUMN skill_id TEXT;
ALTER TABLE tasks ADD COLUMN max_memory_writes INTEGER;
"""),
    (4, """
ALTER TABLE tasks ADD COLUMN chained_context TEXT;
"""),
]

_CHAINABLE_STATUSES = ("pending", "scheduled", "completed")

_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS scheduler_schema (
    version     INTEGER PRIMARY KEY,
    applied_at  REAL NOT NULL
);
"""

_LIVE_STATUSES = ("pending", "scheduled", "running")


# ── Row mapping ───────────────────────────────────────────────────────────────

def _json_list(raw: Optional[str]) -> Optional[list[str]]:
    if raw is None:
        return None
    value = json.loads(raw)
    if not isinstance(value, list):
        raise ValueError(f"expected JSON list, got {type(value).__name__}")
    return [str(v) for v in value]


def _row_to_task(row: aiosqlite.Row) -> Task:
    definition = TaskDefinition(
        type=TaskType(row["type"]),
        name=row["name"],
        prompt=row["prompt"],
        system_prompt=row["system_prompt"],
        conversation_id=row["conversation_id"],
        tool_allow=_json_list(row["tool_allow"]),
        tool_deny=_json_list(row["tool_deny"]),
        result_route=ResultRoute.parse(row["result_route"]),
        skill_id=row["skill_id"],
    )
    schedule = TaskSchedule(
        cron=row["cron"],
        interval_ms=row["interval_ms"],
        event_trigger=row["event_trigger"],
        run_immediately=bool(row["run_immediately"]),
    )
    budget = TaskBudget(
        max_tokens=row["max_tokens"],
        max_cost_usd=row["max_cost_usd"],
        max_wall_clock_ms=row["max_wall_clock_ms"],
        max_tool_calls=row["max_tool_calls"],
        max_memory_writes=row["max_memory_writes"],
    )
    consumed = row["budget_consumed"]
    return Task(
        id=row["id"],
        definition=definition,
        schedule=schedule,
        budget=budget,
        status=TaskStatus(row["status"]),
        priority=row["priority"],
        next_run_at=row["next_run_at"],
        last_run_at=row["last_run_at"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        error=row["error"],
        budget_consumed=BudgetSnapshot.from_dict(json.loads(consumed)) if consumed else None,
        result_text=row["result_text"],
        chained_context=row["chained_context"],
    )


def _row_to_run(row: aiosqlite.Row) -> TaskRun:
    consumed = row["budget_consumed"]
    return TaskRun(
        id=row["id"],
        task_id=row["task_id"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        status=TaskRunStatus(row["status"]),
        error=row["error"],
        budget_consumed=BudgetSnapshot.from_dict(json.loads(consumed)) if consumed else None,
        result_text=row["result_text"],
    )


def period_start(period: SpendPeriod, now: float) -> float:
    """Local wall-clock start of the current day or month."""
    local = datetime.fromtimestamp(now)
    if period is SpendPeriod.DAY:
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.timestamp()


# ── Error boundary ────────────────────────────────────────────────────────────

def _storage_op(name: str):
    """
    Map driver errors for one public operation.

    IntegrityError      -> Result.fail(TaskValidationError)
    other sqlite errors -> raise StorageError
    corrupt row JSON    -> Result.fail(TaskError)
    """
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self: "TaskStore", *args: Any, **kwargs: Any) -> Result:
            self._require_db()
            try:
                return await fn(self, *args, **kwargs)
            except aiosqlite.IntegrityError as e:
                log.warning("task_store.constraint_violation", op=name, error=str(e))
                return Result.fail(TaskValidationError(f"{name}: constraint violated: {e}"))
            except aiosqlite.Error as e:
                log.error("task_store.storage_error", op=name, error=str(e), error_type=type(e).__name__)
                raise StorageError(f"Task store {name} failed: {e}") from e
            except (ValueError, KeyError, TypeError) as e:
                log.warning("task_store.corrupt_record", op=name, error=str(e))
                return Result.fail(TaskError(f"{name}: unreadable task record: {e}"))
        return wrapper
    return decorator


# ── Main class ────────────────────────────────────────────────────────────────

class TaskStore:
    """
    Async SQLite task store.

    One connection per store. A per-store asyncio.Lock serialises
    transactions on that connection; SQLite's write lock (taken up front by
    BEGIN IMMEDIATE) serialises writers across connections and processes.
    """

    def __init__(
        self,
        db_path: str = "./data/sqlite/tasks.db",
        timezone: Optional[str] = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.timezone = timezone
        self._busy_timeout_ms = busy_timeout_ms
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and apply pending migrations."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._migrate()
        except aiosqlite.Error as e:
            raise StorageError(f"Could not open task store at {self.db_path}: {e}") from e
        log.info("task_store.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> None:
        if self._db is None:
            raise StorageError(
                "TaskStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )

    async def _migrate(self) -> None:
        assert self._db is not None
        async with self._transaction() as db:
            await db.execute(_VERSION_TABLE)
            cursor = await db.execute("SELECT COALESCE(MAX(version), 0) FROM scheduler_schema")
            current = (await cursor.fetchall())[0][0]
            for version, sql in _MIGRATIONS:
                if version <= current:
                    continue
                log.info("task_store.migration_apply", version=version)
                for statement in (s.strip() for s in sql.split(";")):
                    if statement:
                        await db.execute(statement)
                await db.execute(
                    "INSERT INTO scheduler_schema (version, applied_at) VALUES (?, ?)",
                    (version, time.time()),
                )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any error."""
        db = self._db
        assert db is not None
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")

    def _next_run_at(self, schedule: TaskSchedule, now: float) -> Optional[float]:
        if schedule.cron:
            return next_occurrence(schedule.cron, now, self.timezone)
        if schedule.interval_ms:
            return now + schedule.interval_ms / 1000.0
        return None

    @staticmethod
    async def _fetch_task(db: aiosqlite.Connection, task_id: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        rows = await cursor.fetchall()
        return rows[0] if rows else None

    @staticmethod
    async def _insert_run(
        db: aiosqlite.Connection,
        task_id: str,
        status: TaskRunStatus,
        started_at: float,
        completed_at: Optional[float],
        error: Optional[str] = None,
        snapshot: Optional[BudgetSnapshot] = None,
        result_text: Optional[str] = None,
    ) -> TaskRun:
        run = TaskRun(
            id=uuid.uuid4().hex,
            task_id=task_id,
            started_at=started_at,
            completed_at=completed_at,
            status=status,
            error=error,
            budget_consumed=snapshot,
            result_text=result_text,
        )
        await db.execute(
            """INSERT INTO task_runs
               (id, task_id, started_at, completed_at, status, error, budget_consumed, result_text)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                run.id, run.task_id, run.started_at, run.completed_at, run.status.value,
                run.error,
                json.dumps(snapshot.to_dict()) if snapshot else None,
                run.result_text,
            ),
        )
        return run

    # ── Create / read / update ────────────────────────────────────────────────

    @_storage_op("create")
    async def create(self, input: TaskInput, now: Optional[float] = None) -> Result[Task]:
        """Insert a task and compute its initial status and next_run_at."""
        now = time.time() if now is None else now
        d, s = input.definition, input.schedule
        budget = input.budget or TaskBudget()

        if not (0 <= input.priority <= 9):
            return Result.fail(TaskValidationError(f"priority must be 0-9, got {input.priority}"))
        if input.max_retries < 0:
            return Result.fail(TaskValidationError("max_retries must be >= 0"))
        if s.cron and not is_valid_cron(s.cron):
            return Result.fail(TaskValidationError(f"Invalid cron expression: '{s.cron}'"))
        if s.interval_ms is not None and s.interval_ms <= 0:
            return Result.fail(TaskValidationError("interval_ms must be > 0"))

        if s.run_immediately:
            status, next_run_at = TaskStatus.SCHEDULED, now
        else:
            next_run_at = self._next_run_at(s, now)
            status = TaskStatus.SCHEDULED if next_run_at is not None else TaskStatus.PENDING

        task_id = uuid.uuid4().hex
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO tasks
                   (id, type, name, prompt, system_prompt, conversation_id,
                    tool_allow, tool_deny, result_route, skill_id,
                    cron, interval_ms, event_trigger, run_immediately,
                    max_tokens, max_cost_usd, max_wall_clock_ms, max_tool_calls, max_memory_writes,
                    status, priority, next_run_at, retry_count, max_retries,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
                (
                    task_id, d.type.value, d.name, d.prompt, d.system_prompt, d.conversation_id,
                    json.dumps(d.tool_allow) if d.tool_allow is not None else None,
                    json.dumps(d.tool_deny) if d.tool_deny is not None else None,
                    d.result_route.serialize(), d.skill_id,
                    s.cron, s.interval_ms, s.event_trigger, int(s.run_immediately),
                    budget.max_tokens, budget.max_cost_usd, budget.max_wall_clock_ms,
                    budget.max_tool_calls, budget.max_memory_writes,
                    status.value, input.priority, next_run_at, input.max_retries,
                    now, now,
                ),
            )
            row = await self._fetch_task(db, task_id)

        task = _row_to_task(row)
        log.info(
            "task_store.created",
            task_id=task.id,
            name=d.name,
            status=task.status.value,
            next_run_at=task.next_run_at,
        )
        return Result.ok(task)

    @_storage_op("get")
    async def get(self, task_id: str) -> Result[Optional[Task]]:
        rows = await self._query("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return Result.ok(_row_to_task(rows[0]) if rows else None)

    @_storage_op("update")
    async def update(self, task_id: str, patch: TaskPatch, now: Optional[float] = None) -> Result[Task]:
        """Apply a partial update. Fields left UNSET are not written."""
        now = time.time() if now is None else now
        sets: list[str] = []
        params: list[Any] = []

        for name, value in patch.items():
            if name == "status":
                value = TaskStatus(value).value
            elif name == "priority":
                if not (0 <= int(value) <= 9):
                    return Result.fail(TaskValidationError(f"priority must be 0-9, got {value}"))
            elif name == "budget_consumed":
                value = json.dumps(value.to_dict()) if value is not None else None
            sets.append(f"{name} = ?")
            params.append(value)

        sets.append("updated_at = ?")
        params.extend([now, task_id])

        async with self._transaction() as db:
            cursor = await db.execute(
                f"UPDATE tasks SET {', '.join(sets)} WHERE id = ? RETURNING *",
                params,
            )
            rows = await cursor.fetchall()
            row = rows[0] if rows else None

        if row is None:
            return Result.fail(TaskNotFoundError(task_id))
        return Result.ok(_row_to_task(row))

    # ── Claim ─────────────────────────────────────────────────────────────────

    @_storage_op("claim")
    async def claim(self, now: Optional[float] = None) -> Result[Optional[Task]]:
        """
        Atomically move the most urgent due task from scheduled to running.

        Returns Result.ok(None) when nothing is due.
        """
        now = time.time() if now is None else now
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE tasks
                   SET status = 'running', updated_at = ?
                   WHERE id = (
                       SELECT id FROM tasks
                       WHERE status = 'scheduled' AND next_run_at <= ?
                       ORDER BY priority DESC, next_run_at ASC, created_at ASC, id ASC
                       LIMIT 1
                   ) AND status = 'scheduled'
                   RETURNING *""",
                (now, now),
            )
            rows = await cursor.fetchall()

        if not rows:
            return Result.ok(None)
        task = _row_to_task(rows[0])
        log.info("task_store.claimed", task_id=task.id, name=task.definition.name, priority=task.priority)
        return Result.ok(task)

    # ── Run outcomes ──────────────────────────────────────────────────────────

    @_storage_op("complete")
    async def complete(
        self,
        task_id: str,
        snapshot: BudgetSnapshot,
        result_text: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Result[Task]:
        """Record a successful run; recurring tasks are rescheduled."""
        now = time.time() if now is None else now
        async with self._transaction() as db:
            row = await self._fetch_task(db, task_id)
            if row is None:
                return Result.fail(TaskNotFoundError(task_id))

            if row["status"] == TaskStatus.CANCELLED.value:
                await db.execute(
                    """UPDATE tasks SET last_run_at = ?, budget_consumed = ?, result_text = ?,
                         updated_at = ? WHERE id = ?""",
                    (now, json.dumps(snapshot.to_dict()), result_text, now, task_id),
                )
            else:
                schedule = TaskSchedule(cron=row["cron"], interval_ms=row["interval_ms"])
                next_at = self._next_run_at(schedule, now)
                status = TaskStatus.SCHEDULED if next_at is not None else TaskStatus.COMPLETED
                await db.execute(
                    """UPDATE tasks SET status = ?, next_run_at = ?, last_run_at = ?,
                         budget_consumed = ?, result_text = ?, error = NULL, retry_count = 0,
                         chained_context = NULL, updated_at = ?
                       WHERE id = ?""",
                    (status.value, next_at, now, json.dumps(snapshot.to_dict()),
                     result_text, now, task_id),
                )

            await self._insert_run(
                db, task_id, TaskRunStatus.COMPLETED,
                started_at=now - snapshot.wall_clock_ms / 1000.0,
                completed_at=now,
                snapshot=snapshot,
                result_text=result_text,
            )
            updated = await self._fetch_task(db, task_id)

        task = _row_to_task(updated)
        log.info(
            "task_store.completed",
            task_id=task_id,
            status=task.status.value,
            next_run_at=task.next_run_at,
            cost_usd=round(snapshot.estimated_cost_usd, 6),
        )
        return Result.ok(task)

    @_storage_op("fail")
    async def fail(
        self,
        task_id: str,
        error: str,
        snapshot: BudgetSnapshot,
        now: Optional[float] = None,
        retry_at: Optional[float] = None,
    ) -> Result[Task]:
        """
        Mark a run failed and bump retry_count. Retry policy lives with the caller.

        With ``retry_at`` the task goes straight back to scheduled for that
        time in the same transaction, so a cancel that lands first is kept.
        """
        now = time.time() if now is None else now
        return await self._record_failure(task_id, error, snapshot, now, TaskStatus.FAILED, retry_at)

    @_storage_op("dead_letter")
    async def dead_letter(
        self,
        task_id: str,
        error: str,
        snapshot: BudgetSnapshot,
        now: Optional[float] = None,
    ) -> Result[Task]:
        """Terminal failure: no further recurrence."""
        now = time.time() if now is None else now
        return await self._record_failure(task_id, error, snapshot, now, TaskStatus.DEAD_LETTER)

    async def _record_failure(
        self,
        task_id: str,
        error: str,
        snapshot: BudgetSnapshot,
        now: float,
        status: TaskStatus,
        retry_at: Optional[float] = None,
    ) -> Result[Task]:
        consumed = json.dumps(snapshot.to_dict())
        async with self._transaction() as db:
            row = await self._fetch_task(db, task_id)
            if row is None:
                return Result.fail(TaskNotFoundError(task_id))

            if row["status"] == TaskStatus.CANCELLED.value:
                await db.execute(
                    "UPDATE tasks SET last_run_at = ?, budget_consumed = ?, updated_at = ? WHERE id = ?",
                    (now, consumed, now, task_id),
                )
            elif status is TaskStatus.FAILED and retry_at is not None:
                await db.execute(
                    """UPDATE tasks SET status = 'scheduled', next_run_at = ?, error = ?,
                         last_run_at = ?, budget_consumed = ?, retry_count = retry_count + 1,
                         updated_at = ?
                       WHERE id = ?""",
                    (retry_at, error, now, consumed, now, task_id),
                )
            elif status is TaskStatus.FAILED:
                await db.execute(
                    """UPDATE tasks SET status = 'failed', error = ?, last_run_at = ?,
                         budget_consumed = ?, retry_count = retry_count + 1, updated_at = ?
                       WHERE id = ?""",
                    (error, now, consumed, now, task_id),
                )
            else:
                await db.execute(
                    """UPDATE tasks SET status = 'dead_letter', error = ?, last_run_at = ?,
                         budget_consumed = ?, next_run_at = NULL, chained_context = NULL,
                         updated_at = ?
                       WHERE id = ?""",
                    (error, now, consumed, now, task_id),
                )

            await self._insert_run(
                db, task_id, TaskRunStatus.FAILED,
                started_at=now - snapshot.wall_clock_ms / 1000.0,
                completed_at=now,
                error=error,
                snapshot=snapshot,
            )
            updated = await self._fetch_task(db, task_id)

        task = _row_to_task(updated)
        log.warning(
            "task_store.failed" if status is TaskStatus.FAILED else "task_store.dead_lettered",
            task_id=task_id,
            status=task.status.value,
            retry_count=task.retry_count,
            next_run_at=task.next_run_at,
            error=error[:200],
        )
        return Result.ok(task)

    @_storage_op("cancel")
    async def cancel(self, task_id: str, now: Optional[float] = None) -> Result[Task]:
        """Terminal from any status. In-flight runs notice at their next checkpoint."""
        now = time.time() if now is None else now
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE tasks SET status = 'cancelled', next_run_at = NULL, updated_at = ?
                   WHERE id = ? RETURNING *""",
                (now, task_id),
            )
            rows = await cursor.fetchall()
            row = rows[0] if rows else None
        if row is None:
            return Result.fail(TaskNotFoundError(task_id))
        log.info("task_store.cancelled", task_id=task_id)
        return Result.ok(_row_to_task(row))

    @_storage_op("retry")
    async def retry(self, task_id: str, now: Optional[float] = None) -> Result[Task]:
        """Operator retry: failed / dead_letter -> scheduled now, counters reset."""
        now = time.time() if now is None else now
        async with self._transaction() as db:
            row = await self._fetch_task(db, task_id)
            if row is None:
                return Result.fail(TaskNotFoundError(task_id))
            if row["status"] not in (TaskStatus.FAILED.value, TaskStatus.DEAD_LETTER.value):
                return Result.fail(InvalidTransitionError(task_id, row["status"], "retry"))
            cursor = await db.execute(
                """UPDATE tasks SET status = 'scheduled', next_run_at = ?, retry_count = 0,
                     error = NULL, updated_at = ?
                   WHERE id = ? RETURNING *""",
                (now, now, task_id),
            )
            updated = (await cursor.fetchall())[0]
        log.info("task_store.retried", task_id=task_id)
        return Result.ok(_row_to_task(updated))

    @_storage_op("enqueue_chained")
    async def enqueue_chained(
        self,
        task_id: str,
        context: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Result[Task]:
        """
        Make a task due now as the next link of a chain.

        Allowed from pending, scheduled or completed. ``context`` is kept
        until the task's next run completes or dead-letters.
        """
        now = time.time() if now is None else now
        async with self._transaction() as db:
            row = await self._fetch_task(db, task_id)
            if row is None:
                return Result.fail(TaskNotFoundError(task_id))
            if row["status"] not in _CHAINABLE_STATUSES:
                return Result.fail(InvalidTransitionError(task_id, row["status"], "chain"))
            cursor = await db.execute(
                """UPDATE tasks SET status = 'scheduled', next_run_at = ?, chained_context = ?,
                     updated_at = ?
                   WHERE id = ? RETURNING *""",
                (now, context, now, task_id),
            )
            updated = (await cursor.fetchall())[0]
        log.info("task_store.chained", task_id=task_id, with_context=context is not None)
        return Result.ok(_row_to_task(updated))

    # ── Queries ───────────────────────────────────────────────────────────────

    async def _query(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            cursor = await self._db.execute(sql, params)
            return list(await cursor.fetchall())

    @_storage_op("list_by_status")
    async def list_by_status(self, status: TaskStatus, limit: int = 100) -> Result[list[Task]]:
        rows = await self._query(
            "SELECT * FROM tasks WHERE status = ? ORDER BY priority DESC, created_at DESC LIMIT ?",
            (TaskStatus(status).value, limit),
        )
        return Result.ok([_row_to_task(r) for r in rows])

    @_storage_op("list_all")
    async def list_all(self, limit: int = 100) -> Result[list[Task]]:
        rows = await self._query(
            "SELECT * FROM tasks ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        )
        return Result.ok([_row_to_task(r) for r in rows])

    @_storage_op("list_due")
    async def list_due(self, now: Optional[float] = None) -> Result[list[Task]]:
        now = time.time() if now is None else now
        rows = await self._query(
            """SELECT * FROM tasks
               WHERE status = 'scheduled' AND next_run_at <= ?
               ORDER BY priority DESC, next_run_at ASC""",
            (now,),
        )
        return Result.ok([_row_to_task(r) for r in rows])

    @_storage_op("list_by_event")
    async def list_by_event(self, event_name: str) -> Result[list[Task]]:
        """Tasks waiting on ``event_name`` (pending or scheduled)."""
        rows = await self._query(
            """SELECT * FROM tasks
               WHERE event_trigger = ? AND status IN ('pending', 'scheduled')
               ORDER BY priority DESC, created_at ASC""",
            (event_name,),
        )
        return Result.ok([_row_to_task(r) for r in rows])

    @_storage_op("fire_event")
    async def fire_event(self, event_name: str, now: Optional[float] = None) -> Result[list[str]]:
        """
        Make every task waiting on ``event_name`` due at ``now``.

        One conditional UPDATE: a task that left pending/scheduled after a
        caller listed it (claimed, cancelled, finished) is not touched.
        Returns the ids that were made due.
        """
        now = time.time() if now is None else now
        async with self._transaction() as db:
            cursor = await db.execute(
                """UPDATE tasks SET status = 'scheduled', next_run_at = ?, updated_at = ?
                   WHERE event_trigger = ? AND status IN ('pending', 'scheduled')
                   RETURNING id""",
                (now, now, event_name),
            )
            rows = await cursor.fetchall()
        ids = [r["id"] for r in rows]
        if ids:
            log.info("task_store.event_fired", trigger=event_name, task_ids=ids)
        return Result.ok(ids)

    @_storage_op("find_live_by_type")
    async def find_live_by_type(self, task_type: TaskType) -> Result[list[Task]]:
        """Tasks of ``task_type`` still pending, scheduled or running."""
        placeholders = ", ".join("?" for _ in _LIVE_STATUSES)
        rows = await self._query(
            f"""SELECT * FROM tasks WHERE type = ? AND status IN ({placeholders})
                ORDER BY created_at ASC""",
            (TaskType(task_type).value, *_LIVE_STATUSES),
        )
        return Result.ok([_row_to_task(r) for r in rows])

    @_storage_op("list_runs")
    async def list_runs(self, task_id: str, limit: int = 20) -> Result[list[TaskRun]]:
        rows = await self._query(
            """SELECT * FROM task_runs WHERE task_id = ?
               ORDER BY completed_at DESC, started_at DESC LIMIT ?""",
            (task_id, limit),
        )
        return Result.ok([_row_to_run(r) for r in rows])

    @_storage_op("sum_spend")
    async def sum_spend(self, period: SpendPeriod, now: Optional[float] = None) -> Result[float]:
        """Sum estimated_cost_usd over runs completed this local day or month."""
        now = time.time() if now is None else now
        since = period_start(SpendPeriod(period), now)
        rows = await self._query(
            """SELECT budget_consumed FROM task_runs
               WHERE completed_at >= ? AND budget_consumed IS NOT NULL""",
            (since,),
        )

        total = 0.0
        for row in rows:
            try:
                total += float(json.loads(row["budget_consumed"])["estimated_cost_usd"])
            except (ValueError, KeyError, TypeError):
                continue
        return Result.ok(total)

    @_storage_op("record_run")
    async def record_run(
        self,
        task_id: str,
        status: TaskRunStatus,
        started_at: float,
        completed_at: Optional[float] = None,
        error: Optional[str] = None,
        snapshot: Optional[BudgetSnapshot] = None,
        result_text: Optional[str] = None,
    ) -> Result[TaskRun]:
        """Append one run record. Always a fresh id; existing runs are never updated."""
        async with self._transaction() as db:
            run = await self._insert_run(
                db, task_id, TaskRunStatus(status), started_at, completed_at,
                error=error, snapshot=snapshot, result_text=result_text,
            )
        return Result.ok(run)
