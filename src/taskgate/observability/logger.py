"""
observability/logger.py — taskgate Structured Logger

Sets up structlog with:
  - JSON output to a rotating log file (always)
  - Optional console output: coloured human-readable on a TTY, JSON on a pipe
  - Consistent fields on every line: timestamp, level, logger, event
  - Per-run task context (task_id, task_name) bound through contextvars so
    every line emitted while a task executes carries it automatically

Usage:
    from taskgate.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", console_output=False)
    log = get_logger(__name__)
    log.info("task_store.claimed", task_id="abc123", priority=7)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# aiosqlite logs every statement at DEBUG; keep it out of the console.
_MUTED_LOGGERS = [
    "aiosqlite",
    "asyncio",
]


def _mute_noisy_loggers() -> None:
    for name in _MUTED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,  # None = auto-detect from tty
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at process startup.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating ``taskgate.log`` file.
        json_format:    Console format. True = JSON, False = pretty,
                        None = pretty when stdout is a TTY, JSON otherwise.
        console_output: Whether to emit logs to stderr at all.
        max_bytes:      Max size of each log file before rotation.
        backup_count:   Number of rotated log files to keep.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        json_format = not sys.stderr.isatty()

    # ── Shared structlog processors ───────────────────────────────────────────
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # ── Handlers ──────────────────────────────────────────────────────────────
    handlers: list[logging.Handler] = []

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / "taskgate.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    handlers.append(file_handler)

    # stdout belongs to CLI tables; logs go to stderr
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        handlers.append(console_handler)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    _mute_noisy_loggers()

    # ── Configure structlog ───────────────────────────────────────────────────
    renderer: Any
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    # File always uses JSON regardless of console format
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    for handler in handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setFormatter(file_formatter)
        else:
            handler.setFormatter(console_formatter)


def get_logger(name: str = "taskgate", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a bound logger with optional initial context values.

    Example:
        log = get_logger(__name__, component="runner")
        log.info("runner.started", task_id="abc")
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_task(task_id: str, task_name: str) -> None:
    """
    Bind task context to all subsequent log calls in this async context.

    The runner calls this at the start of each run; child coroutines
    inherit the values through contextvars.
    """
    structlog.contextvars.bind_contextvars(task_id=task_id, task_name=task_name)


def clear_task() -> None:
    """Drop the task context bound by bind_task()."""
    structlog.contextvars.unbind_contextvars("task_id", "task_name")
