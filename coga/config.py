from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coga.models.stress import Sensitivity, StressLevel

_ENV_PREFIX = "COGA_"


class DetectionConfig(BaseModel):
    sensitivity: Sensitivity = Sensitivity.medium
    tick_interval_s: float = Field(default=1.0, gt=0)
    metric_ttl_s: float = Field(default=15.0, gt=0)
    # Lowest stress level that may trigger an intervention.
    min_level: StressLevel = StressLevel.moderate
    # Post-scoring stabilisers: EMA on the combined score, level hysteresis
    # and decay of the score history while no source reports.
    smoothing_enabled: bool = False
    smoothing_alpha: float = Field(default=0.3, gt=0, le=1)
    hysteresis_readings: int = Field(default=3, ge=1)
    inactivity_decay_s: float = Field(default=30.0, gt=0)

    @field_validator("min_level")
    @classmethod
    def _reject_normal(cls, value: StressLevel) -> StressLevel:
        if value is StressLevel.normal:
            raise ValueError("min_level cannot be 'normal'")
        return value


class CalibrationConfig(BaseModel):
    duration_seconds: float = Field(default=180.0, ge=1)
    adaptive_baseline: bool = False
    blend_alpha: float = Field(default=0.02, gt=0, le=0.2)
    blend_interval_s: float = Field(default=60.0, gt=0)
    history_limit: int = Field(default=30, ge=1)


class AnnoyanceConfig(BaseModel):
    """Intervention rate limiting."""

    cooldown_minutes: float = Field(default=8.0, ge=0)
    max_per_hour: int = Field(default=2, ge=1)
    max_per_day: int = Field(default=6, ge=1)
    auto_snooze_after_dismissals: int = Field(default=2, ge=1)
    snooze_minutes: float = Field(default=3.0, gt=0)


class StorageConfig(BaseModel):
    db_path: Path = Path("./data/coga.db")
    key_prefix: str = "coga_"
    sync_interval_s: float = Field(default=5.0, gt=0)


class ObservabilityConfig(BaseModel):
    """Logging and Prometheus metrics wiring."""

    log_level: str = "INFO"
    json_logs: bool = False
    metrics_enabled: bool = True
    metrics_host: str = "127.0.0.1"
    metrics_port: int = Field(default=9464, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper()


class CogaSettings(BaseSettings):
    enabled: bool = True
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    annoyance: AnnoyanceConfig = Field(default_factory=AnnoyanceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = SettingsConfigDict(
        env_prefix=_ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )


def _coerce_env_value(value: str) -> object:
    parsed = yaml.safe_load(value)
    return value if parsed is None else parsed


def _set_nested(mapping: dict[str, object], path: list[str], value: object) -> None:
    current = mapping
    for key in path[:-1]:
        existing = current.get(key)
        if not isinstance(existing, dict):
            existing = {}
        else:
            existing = dict(existing)
        current[key] = existing
        current = existing
    current[path[-1]] = value


def _apply_env_overrides(data: dict[str, object]) -> dict[str, object]:
    merged = dict(data)
    for key, raw_value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        path = key[len(_ENV_PREFIX) :].lower().split("__")
        _set_nested(merged, path, _coerce_env_value(raw_value))
    return merged


def load_config(path: str | Path = "config/coga.yaml") -> CogaSettings:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"config file not found: {config_path}")

    loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError("config file must contain a top-level mapping")

    raw = loaded.get("coga", loaded)
    if not isinstance(raw, dict):
        raise ValueError("coga config section must be a mapping")

    return CogaSettings.model_validate(_apply_env_overrides(raw))


__all__ = [
    "AnnoyanceConfig",
    "CalibrationConfig",
    "CogaSettings",
    "DetectionConfig",
    "ObservabilityConfig",
    "StorageConfig",
    "load_config",
]
