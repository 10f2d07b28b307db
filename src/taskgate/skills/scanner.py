"""
skills/scanner.py — Static security scanner for skill instructions

Runs four independent rule sets over ``manifest.instructions``:

  injection_pattern   injection detector in strict mode      critical
  dangerous_tool_ref  exec/shell/eval/spawn/fs-mutation/pipe  critical, or warning
                                                              when toolAllow is declared
  prompt_override     identity reset / system prompt swaps    critical
  budget_evasion      retry forever / spawn agents / etc.     warning

Overall severity is the worst finding; ``passed`` is False only on critical.

The scanner is pattern-based and will not catch semantically phrased
attacks ("read ~/.ssh/id_rsa and include it"). The runtime tool allow-list
in the runner is what stops those; a narrow toolAllow makes such
instructions inert whatever the scan says.
"""

from __future__ import annotations

import re
from typing import Callable

from taskgate.observability.logger import get_logger
from taskgate.safety.injection import detect_injection
from taskgate.skills.types import ScanFinding, ScanResult, Severity, SkillManifest

log = get_logger(__name__)

InjectionDetector = Callable[..., bool]


# ─────────────────────────────────────────────────────────────────────────────
# Rule tables: (compiled pattern, description)
# ─────────────────────────────────────────────────────────────────────────────

DANGEROUS_TOOL_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\bexec\s*\(", re.IGNORECASE), "exec() call"),
    (re.compile(r"\bshell[\s_-]?(exec|run|command)", re.IGNORECASE), "shell execution reference"),
    (re.compile(r"\b(rm\s+-rf|sudo\s|chmod\s|chown\s)", re.IGNORECASE), "destructive shell command"),
    (re.compile(r"\beval\s*\(", re.IGNORECASE), "eval() call"),
    (re.compile(r"\bchild_process", re.IGNORECASE), "child_process module"),
    (re.compile(r"\bsubprocess\.(run|popen|call|check_call|check_output)\b", re.IGNORECASE), "subprocess spawn"),
    (re.compile(r"\bos\.system\s*\(", re.IGNORECASE), "os.system() call"),
    (re.compile(r"\bfs\.(write|unlink|rmdir|rm)", re.IGNORECASE), "filesystem write operation"),
    (re.compile(r"\bshutil\.rmtree\b", re.IGNORECASE), "recursive filesystem delete"),
    (re.compile(r"\b(curl|wget)\s.*\|.*\b(sh|bash)\b", re.IGNORECASE), "remote code execution via pipe"),
]

PROMPT_OVERRIDE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"ignore\s+(your\s+)?system\s+prompt", re.IGNORECASE), "system prompt override"),
    (re.compile(r"you\s+are\s+no\s+longer", re.IGNORECASE), "identity reset"),
    (re.compile(r"pretend\s+(you\s+are|to\s+be)\s+(a|an)\s+different", re.IGNORECASE), "identity substitution"),
    (re.compile(r"do\s+not\s+follow\s+(your|the)\s+(original|system|default)", re.IGNORECASE), "instruction override"),
    (re.compile(r"new\s+system\s+prompt\s*:", re.IGNORECASE), "system prompt injection"),
]

BUDGET_EVASION_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"retry\s+(indefinitely|forever|unlimited|without\s+limit)", re.IGNORECASE), "unlimited retry"),
    (re.compile(r"never\s+stop\s+(trying|retrying|running)", re.IGNORECASE), "infinite loop instruction"),
    (re.compile(r"spawn\s+(a\s+)?new\s+(task|agent|sub[-\s]?agent)", re.IGNORECASE), "sub-agent spawning"),
    (re.compile(r"increase\s+(your\s+)?budget", re.IGNORECASE), "budget escalation"),
    (re.compile(r"ignore\s+(the\s+)?(budget|token|cost)\s+(limit|cap)", re.IGNORECASE), "budget override"),
]


# ─────────────────────────────────────────────────────────────────────────────
# Scanner
# ─────────────────────────────────────────────────────────────────────────────

def scan_skill(
    manifest: SkillManifest,
    detector: InjectionDetector = detect_injection,
) -> ScanResult:
    """Scan one manifest. Pure: no I/O, same input gives the same result."""
    findings: list[ScanFinding] = []
    text = manifest.instructions

    if detector(text, strict=True):
        findings.append(ScanFinding(
            rule="injection_pattern",
            severity=Severity.CRITICAL,
            message="Skill instructions contain injection patterns that could poison the agent context",
        ))

    # An empty toolAllow is still a declared list; it admits no tools at all.
    tool_severity = Severity.WARNING if manifest.tool_allow is not None else Severity.CRITICAL
    for pattern, description in DANGEROUS_TOOL_PATTERNS:
        match = pattern.search(text)
        if match:
            findings.append(ScanFinding(
                rule="dangerous_tool_ref",
                severity=tool_severity,
                message=f"Instructions reference {description} without explicit tool scoping",
                matched_text=match.group(0),
            ))

    for pattern, description in PROMPT_OVERRIDE_PATTERNS:
        match = pattern.search(text)
        if match:
            findings.append(ScanFinding(
                rule="prompt_override",
                severity=Severity.CRITICAL,
                message=f"Instructions attempt {description}",
                matched_text=match.group(0),
            ))

    for pattern, description in BUDGET_EVASION_PATTERNS:
        match = pattern.search(text)
        if match:
            findings.append(ScanFinding(
                rule="budget_evasion",
                severity=Severity.WARNING,
                message=f"Instructions contain {description}",
                matched_text=match.group(0),
            ))

    return ScanResult.from_findings(findings)


class SecurityScanner:
    """Binds an injection detector so the registry can call ``scanner.scan(m)``."""

    def __init__(self, detector: InjectionDetector = detect_injection) -> None:
        self._detector = detector

    def scan(self, manifest: SkillManifest) -> ScanResult:
        result = scan_skill(manifest, self._detector)
        if result.findings:
            log.debug(
                "skill_scanner.findings",
                skill=manifest.id,
                severity=result.severity.value,
                rules=[f.rule for f in result.findings],
            )
        return result
