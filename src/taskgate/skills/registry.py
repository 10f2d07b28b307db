"""
skills/registry.py — Skill Registry

Maps skill IDs to (manifest, enabled, scan result). Admission is decided
once, at install time: a file is parsed, scanned (when auto_scan is on)
and either admitted or skipped. Enabling or disabling never rescans.

``admit`` raises on rejection (SkillParseError for a bad file, SkillError
for an unreadable file, a duplicate ID or a critical scan). ``install`` and
bulk loads report the same rejections as ``None`` so loading keeps going.

Usage:
    registry = SkillRegistry(purge_memories_by_skill_id=memory.purge_skill)
    await registry.load_from_paths(["./skills"])
    manifest = registry.get("daily-digest")

The registry does no locking. Share one instance per event loop and
serialise mutating calls externally if several schedulers use it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from taskgate.exceptions import SkillError, SkillParseError
from taskgate.observability.logger import get_logger
from taskgate.skills.parser import parse_skill_md
from taskgate.skills.scanner import SecurityScanner
from taskgate.skills.types import ScanResult, Severity, SkillManifest

log = get_logger(__name__)

PurgeHook = Callable[[str], Awaitable[int]]

_UNSCANNED = ScanResult(passed=True, severity=Severity.NONE, findings=())


@dataclass
class _SkillEntry:
    manifest: SkillManifest
    scan_result: ScanResult
    enabled: bool = True


@dataclass(frozen=True)
class UninstallResult:
    removed: bool
    memories_purged: Optional[int] = None


def find_skill_files(base: Path, filename: str = "SKILL.md") -> list[Path]:
    """
    Recursively collect files named ``filename`` under ``base``, sorted.
    A ``base`` that is itself a file is returned as the only match.
    """
    if base.is_file():
        return [base]
    if not base.is_dir():
        return []
    return sorted(p for p in base.rglob(filename) if p.is_file())


class SkillRegistry:
    """In-memory store of admitted skills."""

    def __init__(
        self,
        auto_scan: bool = True,
        scanner: Optional[SecurityScanner] = None,
        purge_memories_by_skill_id: Optional[PurgeHook] = None,
        filename: str = "SKILL.md",
    ) -> None:
        self._auto_scan = auto_scan
        self._scanner = scanner or SecurityScanner()
        self._purge = purge_memories_by_skill_id
        self._filename = filename
        self._skills: dict[str, _SkillEntry] = {}

    # ── Loading ───────────────────────────────────────────────────────────────

    async def load_from_paths(self, paths: list[str | Path]) -> list[SkillManifest]:
        """
        Discover and install every skill file under ``paths``.

        Returns the manifests admitted by this call. Missing paths yield
        nothing; duplicates across paths keep the first one seen.
        """
        loaded: list[SkillManifest] = []
        skipped = 0

        for base in paths:
            for file_path in find_skill_files(Path(base).resolve(), self._filename):
                manifest = await self.install(file_path)
                if manifest is None:
                    skipped += 1
                else:
                    loaded.append(manifest)

        log.info(
            "skill_registry.loaded",
            paths=[str(p) for p in paths],
            loaded=len(loaded),
            skipped=skipped,
            total=self.size,
        )
        return loaded

    async def install(self, file_path: str | Path) -> Optional[SkillManifest]:
        """Parse, scan and admit one skill file. Returns None when not admitted."""
        try:
            return await self.admit(file_path)
        except SkillError:
            return None

    async def admit(self, file_path: str | Path) -> SkillManifest:
        """
        Parse, scan and admit one skill file.

        Raises SkillParseError when the file does not parse, and SkillError
        when it cannot be read, its ID is already installed or the scan
        rejects it. Every rejection is logged before it is raised.
        """
        path = Path(file_path)
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, lambda: path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            log.warning("skill_registry.read_failed", file=str(path), error=str(e))
            raise SkillError(f"Cannot read skill file {path}: {e}") from e

        parsed = parse_skill_md(raw, path)
        if not parsed.success:
            log.warning(
                "skill_registry.parse_failed",
                file=str(path),
                code=parsed.error.code.value,
                message=parsed.error.message,
            )
            raise SkillParseError(parsed.error.code.value, parsed.error.message, str(path))

        manifest = parsed.manifest
        existing = self._skills.get(manifest.id)
        if existing is not None:
            log.warning(
                "skill_registry.duplicate",
                skill=manifest.id,
                file=str(path),
                existing_file=existing.manifest.file_path,
            )
            raise SkillError(
                f"Skill '{manifest.id}' is already installed from {existing.manifest.file_path}"
            )

        scan_result = _UNSCANNED
        if self._auto_scan:
            scan_result = self._scanner.scan(manifest)
            if not scan_result.passed:
                log.warning(
                    "skill_registry.rejected",
                    skill=manifest.id,
                    file=str(path),
                    severity=scan_result.severity.value,
                    findings=[f.message for f in scan_result.findings],
                )
                raise SkillError(
                    f"Skill '{manifest.id}' failed the security scan "
                    f"(severity {scan_result.severity.value})"
                )
            if scan_result.findings:
                log.warning(
                    "skill_registry.admitted_with_warnings",
                    skill=manifest.id,
                    findings=[f.message for f in scan_result.findings],
                )

        self._skills[manifest.id] = _SkillEntry(manifest=manifest, scan_result=scan_result)
        log.debug(
            "skill_registry.installed",
            skill=manifest.id,
            file=manifest.file_path,
            tool_allow=list(manifest.tool_allow) if manifest.tool_allow is not None else None,
        )
        return manifest

    async def uninstall(self, skill_id: str) -> UninstallResult:
        """
        Remove a skill, then purge the memories it wrote.

        The entry stays removed even when the purge hook fails; the failure
        is logged and reported as ``memories_purged=None``.
        """
        entry = self._skills.pop(skill_id, None)
        if entry is None:
            return UninstallResult(removed=False)

        purged: Optional[int] = None
        if self._purge is not None:
            try:
                purged = await self._purge(skill_id)
                log.info("skill_registry.memories_purged", skill=skill_id, count=purged)
            except Exception as e:
                log.error(
                    "skill_registry.purge_failed",
                    skill=skill_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        log.info("skill_registry.uninstalled", skill=skill_id)
        return UninstallResult(removed=True, memories_purged=purged)

    # ── Enable / disable ──────────────────────────────────────────────────────

    def enable(self, skill_id: str) -> bool:
        entry = self._skills.get(skill_id)
        if entry is None:
            return False
        entry.enabled = True
        return True

    def disable(self, skill_id: str) -> bool:
        entry = self._skills.get(skill_id)
        if entry is None:
            return False
        entry.enabled = False
        return True

    def is_enabled(self, skill_id: str) -> bool:
        entry = self._skills.get(skill_id)
        return entry is not None and entry.enabled

    # ── Read ──────────────────────────────────────────────────────────────────

    def get(self, skill_id: str) -> Optional[SkillManifest]:
        entry = self._skills.get(skill_id)
        return entry.manifest if entry else None

    def list(self) -> list[SkillManifest]:
        return [e.manifest for e in self._skills.values()]

    def list_enabled(self) -> list[SkillManifest]:
        return [e.manifest for e in self._skills.values() if e.enabled]

    def get_scan_result(self, skill_id: str) -> Optional[ScanResult]:
        entry = self._skills.get(skill_id)
        return entry.scan_result if entry else None

    @property
    def size(self) -> int:
        return len(self._skills)

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._skills

    def __repr__(self) -> str:
        return f"<SkillRegistry skills={sorted(self._skills.keys())}>"
