"""
config/settings.py — taskgate Runtime Settings

Merges config.yaml (structure/defaults) with environment variables.
Pydantic-powered: every field is validated and typed.

  - Sub-models validate their own ranges at parse time (priority 0-9,
    thresholds in (0, 1], compilable injection patterns, known log levels)
  - validate_all() performs cross-field startup validation and raises
    ConfigError listing every problem found
  - load_settings() respects the TASKGATE_CONFIG env var when no explicit
    config_path argument is given
"""

from __future__ import annotations

import os
import re
import threading as _threading
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskgate.exceptions import ConfigError

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerConfig(BaseModel):
    db_path: str = "./data/sqlite/tasks.db"
    timezone: Optional[str] = None          # None = local wall-clock time
    tick_interval_seconds: float = 30.0
    max_concurrent_tasks: int = 3
    default_priority: int = 5
    default_max_retries: int = 3
    backoff_base_ms: int = 30_000
    backoff_max_ms: int = 3_600_000
    heartbeat_enabled: bool = False
    heartbeat_interval_minutes: int = 30
    heartbeat_prompt: str = (
        "Review pending reminders and open tasks. Report anything that needs "
        "the user's attention; otherwise reply with a short all-clear."
    )

    @field_validator("max_concurrent_tasks")
    @classmethod
    def _positive_tasks(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler.max_concurrent_tasks must be >= 1")
        return v

    @field_validator("tick_interval_seconds")
    @classmethod
    def _positive_tick(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("scheduler.tick_interval_seconds must be > 0")
        return v

    @field_validator("default_priority")
    @classmethod
    def _valid_priority(cls, v: int) -> int:
        if not (0 <= v <= 9):
            raise ValueError("scheduler.default_priority must be between 0 and 9")
        return v

    @field_validator("default_max_retries", "backoff_base_ms", "backoff_max_ms")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("scheduler retry settings must be >= 0")
        return v

    @field_validator("heartbeat_interval_minutes")
    @classmethod
    def _positive_heartbeat(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler.heartbeat_interval_minutes must be >= 1")
        return v


class ModelPricingConfig(BaseModel):
    input_per_1m_tokens: float
    output_per_1m_tokens: float
    cache_read_discount: Optional[float] = None
    cache_write_multiplier: Optional[float] = None


class OnLimitReached(str, Enum):
    PAUSE_ALL          = "pause_all"
    PAUSE_NON_CRITICAL = "pause_non_critical"
    ALERT_ONLY         = "alert_only"


class BudgetConfig(BaseModel):
    # Per-run defaults, used when neither the task nor its skill sets a field.
    # 0 disables the token / cost / wall-clock ceilings.
    max_tokens: int = 50_000
    max_cost_usd: float = 0.50
    max_wall_clock_ms: int = 300_000
    max_tool_calls: int = 50
    max_memory_writes: int = 20

    # Global spend across all runs. 0 disables the check.
    daily_limit_usd: float = 5.0
    monthly_limit_usd: float = 50.0
    alert_thresholds: list[float] = Field(default_factory=lambda: [0.5, 0.8, 0.9])
    on_limit_reached: OnLimitReached = OnLimitReached.PAUSE_ALL

    pricing: dict[str, ModelPricingConfig] = Field(default_factory=dict)

    @field_validator("alert_thresholds")
    @classmethod
    def _valid_thresholds(cls, v: list[float]) -> list[float]:
        bad = [t for t in v if not (0.0 < t <= 1.0)]
        if bad:
            raise ValueError(
                f"budget.alert_thresholds values must be in (0, 1], got {bad}"
            )
        return sorted(v)

    @field_validator(
        "max_tokens", "max_cost_usd", "max_wall_clock_ms",
        "max_tool_calls", "max_memory_writes",
        "daily_limit_usd", "monthly_limit_usd",
    )
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("budget limits must be >= 0")
        return v


class SkillsConfig(BaseModel):
    paths: list[str] = Field(default_factory=lambda: ["./skills"])
    auto_scan: bool = True
    filename: str = "SKILL.md"


class SafetyConfig(BaseModel):
    injection_extra_patterns: list[str] = Field(default_factory=list)

    @field_validator("injection_extra_patterns")
    @classmethod
    def _compilable(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(
                    f"safety.injection_extra_patterns contains an invalid "
                    f"regex '{pattern}': {exc}"
                ) from exc
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    taskgate runtime settings.

    Priority (highest to lowest):
      1. config.yaml sections passed to load_settings()
      2. Environment variables (TASKGATE_SCHEDULER__MAX_CONCURRENT_TASKS=5)
      3. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKGATE_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    skills: SkillsConfig = Field(default_factory=SkillsConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Field validators catch type/range errors at parse time; this catches
        cross-field problems they cannot see.
        """
        errors: list[str] = []

        # ── Backoff window ───────────────────────────────────────────────────
        if self.scheduler.backoff_max_ms < self.scheduler.backoff_base_ms:
            errors.append(
                "scheduler.backoff_max_ms must be >= scheduler.backoff_base_ms."
            )

        # ── Timezone resolves ────────────────────────────────────────────────
        tz = self.scheduler.timezone
        if tz is not None:
            if not tz.strip():
                errors.append(
                    "scheduler.timezone must not be empty. Omit it for local "
                    "time or use an IANA name such as 'UTC'."
                )
            else:
                try:
                    from zoneinfo import ZoneInfo
                    ZoneInfo(tz)
                except (KeyError, ValueError):
                    errors.append(f"scheduler.timezone '{tz}' is not a known time zone.")

        # ── Global limits ordering ───────────────────────────────────────────
        b = self.budget
        if b.daily_limit_usd > 0 and b.monthly_limit_usd > 0 and b.daily_limit_usd > b.monthly_limit_usd:
            errors.append(
                f"budget.daily_limit_usd ({b.daily_limit_usd}) exceeds "
                f"budget.monthly_limit_usd ({b.monthly_limit_usd})."
            )

        # ── Skill file name ──────────────────────────────────────────────────
        if not self.skills.filename.strip() or "/" in self.skills.filename:
            errors.append(
                f"skills.filename '{self.skills.filename}' must be a bare file name."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\ntaskgate startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or the "
                f"TASKGATE_* environment and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"scheduler", "budget", "skills", "safety", "logging"}


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. TASKGATE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TASKGATE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the global Settings singleton, loading defaults on first use."""
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _KNOWN_SECTIONS
            })
        return _singleton
