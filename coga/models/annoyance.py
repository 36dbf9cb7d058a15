from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _to_utc(value: object) -> object:
    # Persisted logs from browser contexts carry epoch milliseconds.
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, UTC)
    return value


class InterventionLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: object) -> object:
        return _to_utc(value)

    @field_validator("timestamp")
    @classmethod
    def _ensure_timestamp_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            raise ValueError("timestamp must be timezone-aware")
        return value


class AnnoyanceState(BaseModel):
    """Immutable scheduler state; every transition builds a new instance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    intervention_log: tuple[InterventionLogEntry, ...] = ()
    consecutive_dismissals: int = Field(default=0, ge=0)
    snoozed_until: datetime | None = None

    @field_validator("snoozed_until", mode="before")
    @classmethod
    def _coerce_snoozed_until(cls, value: object) -> object:
        return _to_utc(value)

    def to_persisted(self) -> tuple[list[dict[str, Any]], dict[str, Any]]:
        """Split into the ``annoyance_log`` and ``annoyance_state`` payloads."""
        log = [entry.model_dump(mode="json") for entry in self.intervention_log]
        state = {
            "consecutiveDismissals": self.consecutive_dismissals,
            "snoozedUntil": self.snoozed_until.isoformat() if self.snoozed_until else None,
        }
        return log, state

    @classmethod
    def from_persisted(
        cls,
        log: object,
        state: Mapping[str, Any] | None,
    ) -> AnnoyanceState:
        entries = log if isinstance(log, list) else []
        payload: dict[str, Any] = dict(state or {})
        payload["intervention_log"] = [
            entry if isinstance(entry, Mapping) else {"timestamp": entry} for entry in entries
        ]
        return cls.model_validate(payload)


class SchedulerState(StrEnum):
    available = "available"
    cooling_down = "cooling_down"
    capped = "capped"
    snoozed = "snoozed"


class SchedulerStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: SchedulerState
    can_show: bool
    shown_last_hour: int
    shown_last_day: int
    consecutive_dismissals: int
    next_available_at: datetime | None = None
    snooze_remaining_seconds: float = 0.0


__all__ = [
    "AnnoyanceState",
    "InterventionLogEntry",
    "SchedulerState",
    "SchedulerStatus",
]
