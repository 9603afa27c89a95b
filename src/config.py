"""
Pydantic-based configuration system for interaction-trimmer.

Loads configuration from YAML files with a default file merged underneath.
Usage:
    from src.config import load_config
    config = load_config("config/production.yaml")
"""

from pathlib import Path
from typing import Any, Dict

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

# ── Sub-configs ─────────────────────────────────────────────────────────────

_THRESHOLD_FIELDS = (
    "cap",
    "target",
    "batch_size",
    "max_runtime_seconds",
    "lock_margin_seconds",
    "schedule_offset_minutes",
    "continuation_spacing_seconds",
)


class TrimConfig(BaseModel):
    """Retention trimming thresholds — tune with care on large tables."""

    cap: int = Field(default=150_000, description="Anonymous count that starts a cycle")
    target: int = Field(default=100_000, description="Anonymous count that ends a cycle")
    batch_size: int = Field(default=1_000, description="Rows deleted per activation")
    max_runtime_seconds: int = Field(default=45, description="Soft budget per activation")
    lock_margin_seconds: int = Field(
        default=120, description="Extra lease lifetime beyond max_runtime_seconds"
    )
    schedule_offset_minutes: int = Field(
        default=50, description="Minutes after cron_hour for the daily trigger"
    )
    continuation_spacing_seconds: int = Field(
        default=60, description="Gap between pre-scheduled continuations"
    )
    default_trigger_hour: int = Field(default=3, description="Used when cron_hour is unset")
    daily_hook: str = "interaction_trim_daily"
    continuation_hook: str = "interaction_trim_continue"
    lock_key: str = "interaction_trim_lock"

    @model_validator(mode="after")
    def _degrade_to_defaults(self) -> "TrimConfig":
        """Replace an inconsistent threshold set with the defaults."""
        broken = (
            self.batch_size < 1
            or self.cap < 0
            or self.target < 0
            or self.target > self.cap
            or self.max_runtime_seconds < 1
            or self.lock_margin_seconds < 0
            or self.schedule_offset_minutes < 0
            or self.continuation_spacing_seconds < 1
        )
        if broken:
            logger.warning(
                "TrimConfig: inconsistent thresholds (cap={}, target={}, batch_size={}) — "
                "falling back to defaults",
                self.cap,
                self.target,
                self.batch_size,
            )
            for name in _THRESHOLD_FIELDS:
                setattr(self, name, TrimConfig.model_fields[name].default)
        return self

    @property
    def lock_ttl_seconds(self) -> int:
        """Lease lifetime: one activation plus safety margin."""
        return self.max_runtime_seconds + self.lock_margin_seconds


class StorageConfig(BaseModel):
    """SQLite persistence for interactions, run state, leases and jobs."""

    db_path: str = "data/interactions.db"


class SchedulerConfig(BaseModel):
    """Job dispatcher cadence."""

    poll_interval_seconds: int = 30
    claim_ttl_seconds: int = 300
    max_jobs_per_poll: int = 10


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = "logs/interaction_trimmer.log"
    rotation: str = "10 MB"
    retention: str = "30 days"


# ── Root Config ─────────────────────────────────────────────────────────────


class AppConfig(BaseModel):
    """Root configuration for interaction-trimmer."""

    trim: TrimConfig = TrimConfig()
    storage: StorageConfig = StorageConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()


# ── Config Loading ──────────────────────────────────────────────────────────


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_config(data: Dict[str, Any]) -> AppConfig:
    """Validate merged data, dropping any section that fails validation."""
    try:
        return AppConfig(**data)
    except ValidationError as e:
        bad_sections = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
        logger.warning("Config: invalid sections {} — using defaults for them", sorted(bad_sections))
        cleaned = {k: v for k, v in data.items() if k not in bad_sections}
        return AppConfig(**cleaned)


def load_config(
    config_path: str | Path,
    default_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML, merging with defaults.

    Args:
        config_path: Path to environment-specific config (e.g. production.yaml).
        default_path: Path to default config. Auto-detected if None.

    Returns:
        Fully resolved AppConfig instance. Malformed values degrade to defaults.
    """
    config_path = Path(config_path)

    # Auto-detect default config location
    if default_path is None:
        default_path = config_path.parent / "default.yaml"

    base_data: Dict[str, Any] = {}
    if Path(default_path).exists():
        with open(default_path, "r", encoding="utf-8") as f:
            base_data = yaml.safe_load(f) or {}

    override_data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            override_data = yaml.safe_load(f) or {}

    merged = _deep_merge(base_data, override_data)
    return _build_config(merged)
