from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from coga.errors import InvalidBaselineStructure
from coga.models.metrics import METRIC_FAMILIES, family_fields

_SCALE_FLOOR_RATIO = 0.25
_SCALE_FLOOR_MIN = 0.1


def _utc_now() -> datetime:
    return datetime.now(UTC)


def scale_floor(center: float) -> float:
    """Smallest usable spread for a metric centered at ``center``."""
    return max(_SCALE_FLOOR_RATIO * abs(center), _SCALE_FLOOR_MIN)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MetricBaseline(_CamelModel):
    center: float = Field(allow_inf_nan=False)
    scale: float = Field(allow_inf_nan=False)

    @classmethod
    def floored(cls, center: float, spread: float) -> MetricBaseline:
        return cls(center=center, scale=max(spread, scale_floor(center)))

    def effective_scale(self) -> float:
        """Scale to divide by; a non-positive stored scale falls back to the floor."""
        if self.scale > 0:
            return self.scale
        return scale_floor(self.center)


class TimeOfDay(StrEnum):
    morning = "morning"
    afternoon = "afternoon"
    evening = "evening"
    night = "night"

    @classmethod
    def for_hour(cls, hour: int) -> TimeOfDay:
        if 6 <= hour < 12:
            return cls.morning
        if 12 <= hour < 18:
            return cls.afternoon
        if 18 <= hour < 22:
            return cls.evening
        return cls.night


class BaselineContext(_CamelModel):
    time_of_day: TimeOfDay
    day_of_week: int = Field(ge=0, le=6)  # Monday == 0
    hour: int = Field(ge=0, le=23)

    @classmethod
    def at(cls, when: datetime) -> BaselineContext:
        local = when.astimezone()
        return cls(
            time_of_day=TimeOfDay.for_hour(local.hour),
            day_of_week=local.weekday(),
            hour=local.hour,
        )


type FamilyBaseline = dict[str, MetricBaseline]


class Baseline(_CamelModel):
    """Per-metric robust center/scale pairs for one person."""

    mouse: FamilyBaseline
    keyboard: FamilyBaseline
    scroll: FamilyBaseline
    timestamp: datetime = Field(default_factory=_utc_now)
    context: BaselineContext | None = None

    @field_validator("mouse", "keyboard", "scroll")
    @classmethod
    def _known_fields_only(cls, value: FamilyBaseline, info: ValidationInfo) -> FamilyBaseline:
        known = set(family_fields(info.field_name))
        return {name: metric for name, metric in value.items() if name in known}

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: object) -> object:
        if isinstance(value, int | float) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000.0, UTC)
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_timestamp_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def metric(self, family: str, field: str) -> MetricBaseline | None:
        return getattr(self, family).get(field)

    def to_persisted(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def parse_persisted(cls, raw: object) -> Baseline:
        """Parse a stored baseline, accepting snake_case or camelCase field names.

        Raises:
            InvalidBaselineStructure: when a metric family is missing or the
                payload does not validate.
        """
        if not isinstance(raw, Mapping):
            raise InvalidBaselineStructure(f"baseline must be an object, got {type(raw).__name__}")
        missing = [family for family in METRIC_FAMILIES if not isinstance(raw.get(family), Mapping)]
        if missing:
            raise InvalidBaselineStructure(f"baseline missing families: {', '.join(missing)}")

        payload = dict(raw)
        for family in METRIC_FAMILIES:
            payload[family] = {
                _snake_field(family, name): metric for name, metric in raw[family].items()
            }
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise InvalidBaselineStructure(str(exc)) from exc


def _snake_field(family: str, name: str) -> str:
    for field in family_fields(family):
        if name in (field, to_camel(field)):
            return field
    return name


class BaselineHistoryEntry(_CamelModel):
    calendar_date: date = Field(alias="date")
    baseline: Baseline
    timestamp: datetime = Field(default_factory=_utc_now)


class CalibrationState(_CamelModel):
    is_calibrating: bool = False
    calibration_start_time: datetime | None = None
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    session_id: str | None = None


def _preset(values: Mapping[str, tuple[float, float]]) -> FamilyBaseline:
    return {name: MetricBaseline(center=center, scale=scale) for name, (center, scale) in values.items()}


# Population defaults shipped with the product, used until a personal
# calibration completes.
DEFAULT_BASELINE_PRESET = Baseline(
    mouse=_preset(
        {
            "movement_velocity": (1428.10, 435.91),
            "movement_acceleration": (780.0, 250.0),
            "mouse_jitter": (40.0, 18.0),
            "click_frequency_per_min": (9.0, 3.0),
            "multi_click_rate_per_min": (1.2, 0.6),
            "path_efficiency": (0.68, 0.18),
            "pause_ratio": (0.22, 0.12),
            "scroll_velocity": (1756.02, 439.01),
        }
    ),
    keyboard=_preset(
        {
            "typing_error_rate": (0.10, 0.10),
            "typing_speed_per_min": (50.0, 50.0),
            "pause_regularity": (0.35, 0.15),
            "avg_pause_duration": (0.148, 0.148),
        }
    ),
    scroll=_preset({"velocity": (1756.02, 439.01)}),
    timestamp=datetime(2024, 1, 1, tzinfo=UTC),
)


__all__ = [
    "Baseline",
    "BaselineContext",
    "BaselineHistoryEntry",
    "CalibrationState",
    "DEFAULT_BASELINE_PRESET",
    "MetricBaseline",
    "TimeOfDay",
    "scale_floor",
]
