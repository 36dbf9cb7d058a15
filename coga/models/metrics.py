"""Behavioral metric snapshots produced by metric sources.

Sources are loosely typed (browser tabs, desktop hooks, replay files), so every
numeric field is sanitized on the way in: non-finite or negative values become
0.0 and path efficiency is clamped to [0, 1] with 1.0 as its neutral value.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from statistics import fmean
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

_NEUTRAL_PATH_EFFICIENCY = 1.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _finite_or_none(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def sanitize_metric(value: object, field_name: str = "") -> float:
    """Coerce a raw metric value into a finite, in-range float."""
    number = _finite_or_none(value)
    if field_name == "path_efficiency":
        if number is None:
            return _NEUTRAL_PATH_EFFICIENCY
        return min(1.0, max(0.0, number))
    if number is None:
        return 0.0
    return max(0.0, number)


class _MetricFamily(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @field_validator("*", mode="before")
    @classmethod
    def _sanitize(cls, value: object, info: ValidationInfo) -> float:
        return sanitize_metric(value, info.field_name or "")


class MouseMetrics(_MetricFamily):
    movement_velocity: float = 0.0  # px/s
    movement_acceleration: float = 0.0  # px/s^2
    mouse_jitter: float = 0.0  # mean absolute jerk, px/s^3
    click_frequency_per_min: float = 0.0
    multi_click_rate_per_min: float = 0.0
    path_efficiency: float = _NEUTRAL_PATH_EFFICIENCY
    pause_ratio: float = 0.0
    scroll_velocity: float = 0.0  # px/s


class KeyboardMetrics(_MetricFamily):
    typing_error_rate: float = 0.0  # errors per 10 keystrokes
    typing_speed_per_min: float = 0.0
    pause_regularity: float = 0.0  # coefficient of variation of inter-key pauses
    avg_pause_duration: float = 0.0  # seconds


class ScrollMetrics(_MetricFamily):
    velocity: float = 0.0  # px/s


METRIC_FAMILIES: dict[str, type[_MetricFamily]] = {
    "mouse": MouseMetrics,
    "keyboard": KeyboardMetrics,
    "scroll": ScrollMetrics,
}


def family_fields(family: str) -> tuple[str, ...]:
    return tuple(METRIC_FAMILIES[family].model_fields)


class MetricSnapshot(BaseModel):
    """One immutable reading of every behavioral metric."""

    model_config = ConfigDict(frozen=True)

    mouse: MouseMetrics = Field(default_factory=MouseMetrics)
    keyboard: KeyboardMetrics = Field(default_factory=KeyboardMetrics)
    scroll: ScrollMetrics = Field(default_factory=ScrollMetrics)
    timestamp: datetime = Field(default_factory=_utc_now)

    @field_validator("mouse", "keyboard", "scroll", mode="before")
    @classmethod
    def _missing_family_is_empty(cls, value: object) -> object:
        return {} if value is None else value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: object) -> object:
        if value is None:
            return _utc_now()
        # Browser sources send epoch milliseconds.
        if isinstance(value, int | float) and not isinstance(value, bool):
            if not math.isfinite(value):
                return _utc_now()
            return datetime.fromtimestamp(value / 1000.0, UTC)
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_timestamp_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @classmethod
    def coerce(cls, value: MetricSnapshot | Mapping[str, Any]) -> MetricSnapshot:
        """Accept an existing snapshot or a raw camelCase/snake_case mapping."""
        if isinstance(value, MetricSnapshot):
            return value
        return cls.model_validate(dict(value))

    def value(self, family: str, field: str) -> float:
        return float(getattr(getattr(self, family), field))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def mean_snapshot(snapshots: Sequence[MetricSnapshot], *, timestamp: datetime) -> MetricSnapshot:
    """Per-field arithmetic mean of ``snapshots``."""
    if not snapshots:
        raise ValueError("mean_snapshot requires at least one snapshot")

    families: dict[str, dict[str, float]] = {}
    for family in METRIC_FAMILIES:
        families[family] = {
            field: fmean(snapshot.value(family, field) for snapshot in snapshots)
            for field in family_fields(family)
        }
    return MetricSnapshot(
        mouse=MouseMetrics(**families["mouse"]),
        keyboard=KeyboardMetrics(**families["keyboard"]),
        scroll=ScrollMetrics(**families["scroll"]),
        timestamp=timestamp,
    )


__all__ = [
    "KeyboardMetrics",
    "METRIC_FAMILIES",
    "MetricSnapshot",
    "MouseMetrics",
    "ScrollMetrics",
    "family_fields",
    "mean_snapshot",
    "sanitize_metric",
]
