"""
skills/parser.py — SKILL.md parser

A SKILL.md file is a fenced key/value header followed by free-form
instructions:

    ---
    name: daily-digest
    description: Summarise my day
    version: 1.2.0
    toolAllow: [web_search, memory_recall]
    maxToolCalls: 5
    resultRoute: notify
    ---

    Everything below the closing --- is the instruction body.

The header grammar is deliberately small: one ``key: value`` per line,
quoted strings, flow arrays, booleans, numbers and null. No nesting, no
multi-line scalars, and ``#`` comments only at the start of a line.
Keys outside the known set are kept verbatim in ``manifest.extra``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from taskgate.scheduler.types import ResultRoute, TaskBudget
from taskgate.skills.types import ParseErrorCode, ParseResult, SkillManifest

_HEADER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n?(.*)$", re.DOTALL)
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")

# header key -> TaskBudget field
_BUDGET_KEYS: dict[str, str] = {
    "maxTokens":       "max_tokens",
    "maxCostUsd":      "max_cost_usd",
    "maxWallClockMs":  "max_wall_clock_ms",
    "maxToolCalls":    "max_tool_calls",
    "maxMemoryWrites": "max_memory_writes",
}

KNOWN_KEYS = frozenset({
    "name", "description", "version", "author",
    "toolAllow", "toolDeny", "resultRoute",
    *_BUDGET_KEYS,
})


# ─────────────────────────────────────────────────────────────────────────────
# Header grammar
# ─────────────────────────────────────────────────────────────────────────────

def _is_quoted(s: str) -> bool:
    return len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"')


def _parse_scalar(s: str) -> Any:
    if s == "true":
        return True
    if s == "false":
        return False
    if s in ("null", "~", ""):
        return None
    if _NUMBER_RE.match(s):
        return float(s) if "." in s else int(s)
    if _is_quoted(s):
        return s[1:-1]
    return s


def parse_header(raw: str) -> dict[str, Any]:
    """Parse the flat key/value header block into a dict."""
    result: dict[str, Any] = {}
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        colon = stripped.find(":")
        if colon < 1:
            continue

        key = stripped[:colon].strip()
        value = stripped[colon + 1:].strip()

        if _is_quoted(value):
            result[key] = value[1:-1]
        elif value.startswith("[") and value.endswith("]"):
            items = (_parse_scalar(part.strip()) for part in value[1:-1].split(","))
            result[key] = [item for item in items if item is not None]
        else:
            result[key] = _parse_scalar(value)
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Manifest construction
# ─────────────────────────────────────────────────────────────────────────────

def _string_list(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        return None
    return tuple(str(v) for v in value)


def _extract_budget(header: dict[str, Any]) -> TaskBudget | None:
    fields: dict[str, Any] = {}
    for key, attr in _BUDGET_KEYS.items():
        value = header.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            fields[attr] = value
    return TaskBudget(**fields) if fields else None


def parse_skill_md(raw_text: str, source_path: str | Path) -> ParseResult:
    """
    Parse one SKILL.md document.

    Never raises; every failure is a ParseResult.fail with a stable code.
    Required-field checks run in order: header, name, description, body.
    """
    match = _HEADER_RE.match(raw_text)
    if not match:
        return ParseResult.fail(
            ParseErrorCode.NO_HEADER,
            f"No '---' header block found in {source_path}",
        )

    header = parse_header(match.group(1))
    body = match.group(2).strip()

    name = header.get("name")
    if not isinstance(name, str) or not name:
        return ParseResult.fail(
            ParseErrorCode.MISSING_NAME,
            f"Missing required field 'name' in {source_path}",
        )

    description = header.get("description")
    if not isinstance(description, str) or not description:
        return ParseResult.fail(
            ParseErrorCode.MISSING_DESCRIPTION,
            f"Missing required field 'description' in {source_path}",
        )

    if not body:
        return ParseResult.fail(
            ParseErrorCode.EMPTY_BODY,
            f"Empty instructions body in {source_path}",
        )

    route = header.get("resultRoute")
    version = header.get("version")
    author = header.get("author")

    manifest = SkillManifest(
        id=name,
        description=description,
        instructions=body,
        file_path=str(Path(source_path).resolve()),
        version=version if isinstance(version, str) else None,
        author=author if isinstance(author, str) else None,
        tool_allow=_string_list(header.get("toolAllow")),
        tool_deny=_string_list(header.get("toolDeny")),
        budget=_extract_budget(header),
        result_route=ResultRoute.parse(route) if isinstance(route, str) else None,
        extra={k: v for k, v in header.items() if k not in KNOWN_KEYS},
    )
    return ParseResult.ok(manifest)
