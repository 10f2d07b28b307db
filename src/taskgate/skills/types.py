"""
skills/types.py — Skill Gate Data Contracts

  - SkillManifest:  immutable, parsed definition of one skill
  - ParseError:     typed parser failure with a stable code
  - ParseResult:    ok(manifest) / fail(error) from parse_skill_md()
  - ScanFinding:    one rule hit from the security scanner
  - ScanResult:     overall verdict; passed == (severity != critical)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from taskgate.scheduler.types import ResultRoute, TaskBudget


# ─────────────────────────────────────────────────────────────────────────────
# SkillManifest
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SkillManifest:
    """
    A named, versioned, capability-scoped behaviour definition.

    Rules:
      - id comes from the header ``name`` and is unique across the registry.
      - instructions is the free-form body injected into the run's system prompt.
      - file_path is the resolved path the manifest was parsed from.
      - extra holds every header key the parser does not recognise, verbatim.
    """
    id: str
    description: str
    instructions: str
    file_path: str
    version: Optional[str] = None
    author: Optional[str] = None
    tool_allow: Optional[tuple[str, ...]] = None
    tool_deny: Optional[tuple[str, ...]] = None
    budget: Optional[TaskBudget] = None
    result_route: Optional[ResultRoute] = None
    extra: dict[str, Any] = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "version": self.version,
            "author": self.author,
            "tool_allow": list(self.tool_allow) if self.tool_allow is not None else None,
            "tool_deny": list(self.tool_deny) if self.tool_deny is not None else None,
            "budget": self.budget.to_dict() if self.budget else None,
            "result_route": self.result_route.serialize() if self.result_route else None,
            "file_path": self.file_path,
            "extra": dict(self.extra),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Parser results
# ─────────────────────────────────────────────────────────────────────────────

class ParseErrorCode(str, Enum):
    NO_HEADER           = "NO_HEADER"
    MISSING_NAME        = "MISSING_NAME"
    MISSING_DESCRIPTION = "MISSING_DESCRIPTION"
    EMPTY_BODY          = "EMPTY_BODY"


@dataclass(frozen=True)
class ParseError:
    code: ParseErrorCode
    message: str


@dataclass(frozen=True)
class ParseResult:
    success: bool
    manifest: Optional[SkillManifest] = None
    error: Optional[ParseError] = None

    @classmethod
    def ok(cls, manifest: SkillManifest) -> "ParseResult":
        return cls(success=True, manifest=manifest)

    @classmethod
    def fail(cls, code: ParseErrorCode, message: str) -> "ParseResult":
        return cls(success=False, error=ParseError(code=code, message=message))


# ─────────────────────────────────────────────────────────────────────────────
# Scanner results
# ─────────────────────────────────────────────────────────────────────────────

class Severity(str, Enum):
    NONE     = "none"
    WARNING  = "warning"
    CRITICAL = "critical"

    def _order(self) -> int:
        return ["none", "warning", "critical"].index(self.value)

    def __lt__(self, other: "Severity") -> bool: return self._order() < other._order()
    def __le__(self, other: "Severity") -> bool: return self._order() <= other._order()
    def __gt__(self, other: "Severity") -> bool: return self._order() > other._order()
    def __ge__(self, other: "Severity") -> bool: return self._order() >= other._order()


@dataclass(frozen=True)
class ScanFinding:
    rule: str
    severity: Severity
    message: str
    matched_text: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
            "matched_text": self.matched_text,
        }


@dataclass(frozen=True)
class ScanResult:
    passed: bool
    severity: Severity
    findings: tuple[ScanFinding, ...] = ()

    @classmethod
    def from_findings(cls, findings: list[ScanFinding]) -> "ScanResult":
        severity = max((f.severity for f in findings), default=Severity.NONE)
        return cls(
            passed=severity is not Severity.CRITICAL,
            severity=severity,
            findings=tuple(findings),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "severity": self.severity.value,
            "findings": [f.to_dict() for f in self.findings],
        }
