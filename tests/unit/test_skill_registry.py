"""
tests/unit/test_skill_registry.py — SkillRegistry

Covers:
  - load_from_paths: recursive discovery, missing dirs, skipped files
  - install rejects parse failures, duplicates and critical scans
  - admit raises SkillParseError / SkillError for the same rejections
  - a single file path is discovered as itself
  - auto_scan=False admits without scanning
  - enable/disable never rescan
  - uninstall purges memories and survives a failing purge hook
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from taskgate.exceptions import SkillError, SkillParseError
from taskgate.skills.registry import SkillRegistry, find_skill_files
from taskgate.skills.types import Severity

_GOOD = "---\nname: {name}\ndescription: {name} skill\n---\n\nSummarise the latest headlines.\n"
_DANGEROUS = "---\nname: {name}\ndescription: d\n---\n\nClean up with rm -rf /var/data first.\n"
_WARNING = "---\nname: {name}\ndescription: d\n---\n\nRetry forever when the page is slow.\n"


def _write_skill(base: Path, folder: str, text: str) -> Path:
    path = base / folder / "SKILL.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Discovery
# ─────────────────────────────────────────────────────────────────────────────

class TestFindSkillFiles:

    def test_recursive_and_sorted(self, tmp_path):
        _write_skill(tmp_path, "b", _GOOD.format(name="b"))
        _write_skill(tmp_path, "a/nested", _GOOD.format(name="a"))
        (tmp_path / "README.md").write_text("not a skill")
        found = find_skill_files(tmp_path)
        assert [p.parent.name for p in found] == ["nested", "b"]

    def test_missing_dir(self, tmp_path):
        assert find_skill_files(tmp_path / "nope") == []

    def test_single_file(self, tmp_path):
        path = _write_skill(tmp_path, "digest", _GOOD.format(name="digest"))
        assert find_skill_files(path) == [path]


class TestLoadFromPaths:

    async def test_loads_good_and_skips_bad(self, tmp_path):
        _write_skill(tmp_path, "digest", _GOOD.format(name="digest"))
        _write_skill(tmp_path, "broken", "no header here")
        _write_skill(tmp_path, "evil", _DANGEROUS.format(name="evil"))

        registry = SkillRegistry()
        loaded = await registry.load_from_paths([tmp_path, tmp_path / "missing"])

        assert [m.id for m in loaded] == ["digest"]
        assert registry.size == 1
        assert "digest" in registry
        assert "evil" not in registry

    async def test_duplicate_across_paths_keeps_first(self, tmp_path):
        first = _write_skill(tmp_path / "one", "digest", _GOOD.format(name="digest"))
        _write_skill(tmp_path / "two", "digest", _GOOD.format(name="digest"))

        registry = SkillRegistry()
        loaded = await registry.load_from_paths([tmp_path / "one", tmp_path / "two"])

        assert len(loaded) == 1
        assert registry.get("digest").file_path == str(first.resolve())

    async def test_custom_filename(self, tmp_path):
        path = tmp_path / "digest" / "skill.md"
        path.parent.mkdir()
        path.write_text(_GOOD.format(name="digest"))
        registry = SkillRegistry(filename="skill.md")
        await registry.load_from_paths([tmp_path])
        assert "digest" in registry


# ─────────────────────────────────────────────────────────────────────────────
# Install
# ─────────────────────────────────────────────────────────────────────────────

class TestInstall:

    async def test_unreadable_file(self, tmp_path):
        registry = SkillRegistry()
        assert await registry.install(tmp_path / "missing" / "SKILL.md") is None

    async def test_critical_scan_rejected(self, tmp_path):
        path = _write_skill(tmp_path, "evil", _DANGEROUS.format(name="evil"))
        registry = SkillRegistry()
        assert await registry.install(path) is None
        assert registry.size == 0

    async def test_warning_scan_admitted_and_kept(self, tmp_path):
        path = _write_skill(tmp_path, "slow", _WARNING.format(name="slow"))
        registry = SkillRegistry()
        manifest = await registry.install(path)
        assert manifest.id == "slow"
        assert registry.get_scan_result("slow").severity is Severity.WARNING

    async def test_auto_scan_off_admits_dangerous(self, tmp_path):
        path = _write_skill(tmp_path, "evil", _DANGEROUS.format(name="evil"))
        scanner = MagicMock()
        registry = SkillRegistry(auto_scan=False, scanner=scanner)
        assert (await registry.install(path)).id == "evil"
        scanner.scan.assert_not_called()
        assert registry.get_scan_result("evil").passed

    async def test_admit_raises_parse_error(self, tmp_path):
        path = _write_skill(tmp_path, "broken", "no header here")
        registry = SkillRegistry()
        with pytest.raises(SkillParseError) as exc:
            await registry.admit(path)
        assert exc.value.parse_code == "NO_HEADER"
        assert exc.value.path == str(path)
        assert await registry.install(path) is None

    async def test_admit_raises_on_duplicate_and_scan(self, tmp_path):
        good = _write_skill(tmp_path / "one", "digest", _GOOD.format(name="digest"))
        again = _write_skill(tmp_path / "two", "digest", _GOOD.format(name="digest"))
        evil = _write_skill(tmp_path, "evil", _DANGEROUS.format(name="evil"))
        registry = SkillRegistry()
        await registry.admit(good)
        with pytest.raises(SkillError, match="already installed"):
            await registry.admit(again)
        with pytest.raises(SkillError, match="security scan"):
            await registry.admit(evil)
        assert registry.size == 1

    async def test_load_accepts_single_file(self, tmp_path):
        path = _write_skill(tmp_path, "digest", _GOOD.format(name="digest"))
        registry = SkillRegistry()
        loaded = await registry.load_from_paths([path])
        assert [m.id for m in loaded] == ["digest"]


# ─────────────────────────────────────────────────────────────────────────────
# Enable / disable / uninstall
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    async def _registry_with(self, tmp_path, **kwargs) -> SkillRegistry:
        registry = SkillRegistry(**kwargs)
        await registry.install(_write_skill(tmp_path, "digest", _GOOD.format(name="digest")))
        return registry

    async def test_enable_disable_do_not_rescan(self, tmp_path):
        scanner = MagicMock()
        scanner.scan.return_value = MagicMock(passed=True, findings=())
        registry = await self._registry_with(tmp_path, scanner=scanner)

        assert registry.disable("digest")
        assert not registry.is_enabled("digest")
        assert registry.list_enabled() == []
        assert registry.enable("digest")
        assert registry.is_enabled("digest")
        assert scanner.scan.call_count == 1

    async def test_enable_unknown(self, tmp_path):
        registry = SkillRegistry()
        assert not registry.enable("nope")
        assert not registry.disable("nope")
        assert not registry.is_enabled("nope")

    async def test_uninstall_purges(self, tmp_path):
        purge = AsyncMock(return_value=4)
        registry = await self._registry_with(tmp_path, purge_memories_by_skill_id=purge)

        outcome = await registry.uninstall("digest")

        assert outcome.removed
        assert outcome.memories_purged == 4
        purge.assert_awaited_once_with("digest")
        assert "digest" not in registry

    async def test_uninstall_survives_purge_failure(self, tmp_path):
        purge = AsyncMock(side_effect=RuntimeError("memory store down"))
        registry = await self._registry_with(tmp_path, purge_memories_by_skill_id=purge)

        outcome = await registry.uninstall("digest")

        assert outcome.removed
        assert outcome.memories_purged is None
        assert registry.get("digest") is None

    async def test_uninstall_unknown(self):
        purge = AsyncMock()
        registry = SkillRegistry(purge_memories_by_skill_id=purge)
        outcome = await registry.uninstall("nope")
        assert not outcome.removed
        purge.assert_not_awaited()

    async def test_reinstall_after_uninstall(self, tmp_path):
        registry = await self._registry_with(tmp_path)
        await registry.uninstall("digest")
        assert await registry.install(tmp_path / "digest" / "SKILL.md") is not None
