"""
safety/injection.py — Prompt-injection detector

Flags text that tries to smuggle role markers, instruction overrides or
agent-internal tags into the model context. Used by the skill scanner on
skill instructions (strict) and available to memory writers.

Two modes:
  strict=True   any single pattern match flags the text
  strict=False  two or more distinct patterns must match

Extra patterns come from ``safety.injection_extra_patterns`` in config and
are compiled case-insensitive by load_extra_patterns().
"""

from __future__ import annotations

import re
from typing import Iterable

from taskgate.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Baseline patterns
# ─────────────────────────────────────────────────────────────────────────────

BASELINE_PATTERNS: list[re.Pattern] = [
    # Role / system-prompt markers
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"<<SYS>>", re.IGNORECASE),
    re.compile(r"</?system>", re.IGNORECASE),
    re.compile(r"^(assistant|user|system)\s*:", re.IGNORECASE | re.MULTILINE),

    # Instruction override
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"disregard\s+(all\s+)?(prior|previous|above)", re.IGNORECASE),
    re.compile(r"new\s+instructions?\s*:", re.IGNORECASE),
    re.compile(r"override\s+(system|instructions|prompt)", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all|what)\s+(you|i)\s+(told|said|know)", re.IGNORECASE),

    # Tags that target agent internals
    re.compile(r"</?tool_call>", re.IGNORECASE),
    re.compile(r"</?tool_result>", re.IGNORECASE),
    re.compile(r"</?function>", re.IGNORECASE),
    re.compile(r"</?tool_use>", re.IGNORECASE),
    re.compile(r"</?previous_task_output>", re.IGNORECASE),

    # Prompt framing
    re.compile(r"you\s+are\s+(now\s+)?(a|an|the)\s+", re.IGNORECASE),
    re.compile(r"as\s+an?\s+ai\s+(language\s+)?model", re.IGNORECASE),
    re.compile(r"from\s+now\s+on\s*,?\s*you", re.IGNORECASE),
]

_extra_patterns: list[re.Pattern] = []


def load_extra_patterns(patterns: Iterable[str]) -> int:
    """
    Replace the configured extra patterns. Returns how many were loaded.

    Raises re.error for an invalid pattern; config validation rejects those
    before this is reached.
    """
    global _extra_patterns
    _extra_patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
    if _extra_patterns:
        log.info("injection.extra_patterns_loaded", count=len(_extra_patterns))
    return len(_extra_patterns)


def detect_injection(text: str, strict: bool = False) -> bool:
    """Return True when ``text`` looks like an injection attempt."""
    threshold = 1 if strict else 2
    matches = 0
    for pattern in (*BASELINE_PATTERNS, *_extra_patterns):
        if pattern.search(text):
            matches += 1
            if matches >= threshold:
                return True
    return False
