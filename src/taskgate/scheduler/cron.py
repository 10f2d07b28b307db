"""
scheduler/cron.py — Cron next-fire evaluation

Thin wrapper over croniter. Five-field expressions only
(minute hour day-of-month month day-of-week).

With ``tz=None`` the expression is evaluated in local wall-clock time; a
naive local datetime goes into croniter and ``datetime.timestamp()`` maps
the result back through the OS zone rules, so DST shifts are respected.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter


def is_valid_cron(expr: str) -> bool:
    if not isinstance(expr, str) or len(expr.split()) != 5:
        return False
    return croniter.is_valid(expr)


def next_occurrence(cron_expression: str, from_ts: float, tz: Optional[str] = None) -> float:
    """
    Return the first fire time strictly after ``from_ts`` as epoch seconds.

    Raises ValueError for an invalid expression.
    """
    if not is_valid_cron(cron_expression):
        raise ValueError(f"Invalid cron expression: '{cron_expression}'")

    if tz:
        start = datetime.fromtimestamp(from_ts, ZoneInfo(tz))
    else:
        start = datetime.fromtimestamp(from_ts)

    it = croniter(cron_expression, start)
    nxt = it.get_next(datetime).timestamp()
    while nxt <= from_ts:
        nxt = it.get_next(datetime).timestamp()
    return nxt
