from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coga.models.metrics import MetricSnapshot


class Sensitivity(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


class StressLevel(StrEnum):
    normal = "normal"
    moderate = "moderate"
    high = "high"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {StressLevel.normal: 0, StressLevel.moderate: 1, StressLevel.high: 2}


class StressSeverity(StrEnum):
    mild = "mild"
    moderate = "moderate"
    severe = "severe"


class StressTrend(StrEnum):
    increasing = "increasing"
    decreasing = "decreasing"
    stable = "stable"


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("timestamp must be timezone-aware")
    return value


class StressScore(BaseModel):
    """One tick's scoring result. Derived, never persisted as truth."""

    model_config = ConfigDict(frozen=True)

    mouse_score: float = Field(ge=0.0)
    keyboard_score: float = Field(ge=0.0)
    combined: float = Field(ge=0.0)
    level: StressLevel
    severity: StressSeverity | None = None
    percentage: float = Field(ge=0.0, le=100.0)
    timestamp: datetime
    metrics: MetricSnapshot | None = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_timestamp_timezone_aware(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def summary(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "mouse_score": round(self.mouse_score, 4),
            "keyboard_score": round(self.keyboard_score, 4),
            "combined": round(self.combined, 4),
            "level": self.level.value,
            "severity": self.severity.value if self.severity else None,
            "percentage": round(self.percentage, 2),
        }


class InterventionSignal(BaseModel):
    """Emitted to the presenter when an intervention may be shown."""

    model_config = ConfigDict(frozen=True)

    level: StressLevel
    severity: StressSeverity
    combined: float
    percentage: float = Field(ge=0.0, le=100.0)
    timestamp: datetime
    intervention: str
    intervention_id: str
    intervention_name: str
    duration_seconds: int = Field(gt=0)
    # corner, modal or fullscreen
    display_mode: str

    @field_validator("timestamp")
    @classmethod
    def _ensure_timestamp_timezone_aware(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


__all__ = [
    "InterventionSignal",
    "Sensitivity",
    "StressLevel",
    "StressScore",
    "StressSeverity",
    "StressTrend",
]
