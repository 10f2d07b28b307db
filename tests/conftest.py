"""
Shared fixtures — isolate TASKGATE_* environment variables and the Settings
singleton so config tests never see a developer's real environment, and
hand out a fresh on-disk TaskStore per test.
"""

from __future__ import annotations

import os

import pytest
import pytest_asyncio

from taskgate.scheduler.task_store import TaskStore


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for var in [k for k in os.environ if k.startswith("TASKGATE_")]:
        monkeypatch.delenv(var, raising=False)

    import taskgate.config.settings as settings_module
    monkeypatch.setattr(settings_module, "_singleton", None)


@pytest.fixture(autouse=True)
def _reset_injection_patterns():
    from taskgate.safety.injection import load_extra_patterns
    load_extra_patterns([])
    yield
    load_extra_patterns([])


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TaskStore(str(tmp_path / "tasks.db"))
    await s.init()
    yield s
    await s.close()
