"""Rate limiting for interventions: cooldown, hourly/daily caps and auto-snooze.

The scheduler holds a single immutable :class:`AnnoyanceState`. Every event
builds the next state in full and swaps it in, so a persisted or observed
state is never half-updated. ``can_show`` and ``status`` never mutate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from coga.config import AnnoyanceConfig
from coga.models.annoyance import (
    AnnoyanceState,
    InterventionLogEntry,
    SchedulerState,
    SchedulerStatus,
)

logger = logging.getLogger(__name__)

_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)


def _require_timezone_aware(value: datetime, field_name: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{field_name} must be timezone-aware")


class AnnoyanceScheduler:
    def __init__(
        self,
        *,
        cooldown_minutes: float = 8.0,
        max_per_hour: int = 2,
        max_per_day: int = 6,
        auto_snooze_after_dismissals: int = 2,
        snooze_minutes: float = 3.0,
        state: AnnoyanceState | None = None,
    ) -> None:
        if max_per_hour < 1 or max_per_day < 1:
            raise ValueError("max_per_hour and max_per_day must be >= 1")
        if auto_snooze_after_dismissals < 1:
            raise ValueError("auto_snooze_after_dismissals must be >= 1")
        self._cooldown = timedelta(minutes=cooldown_minutes)
        self._max_per_hour = max_per_hour
        self._max_per_day = max_per_day
        self._auto_snooze_after = auto_snooze_after_dismissals
        self._snooze = timedelta(minutes=snooze_minutes)
        self._state = state or AnnoyanceState()

    @classmethod
    def from_config(cls, config: AnnoyanceConfig, state: AnnoyanceState | None = None) -> AnnoyanceScheduler:
        return cls(
            cooldown_minutes=config.cooldown_minutes,
            max_per_hour=config.max_per_hour,
            max_per_day=config.max_per_day,
            auto_snooze_after_dismissals=config.auto_snooze_after_dismissals,
            snooze_minutes=config.snooze_minutes,
            state=state,
        )

    @property
    def state(self) -> AnnoyanceState:
        return self._state

    def restore(self, state: AnnoyanceState) -> None:
        self._state = state

    def reset(self) -> None:
        self._state = AnnoyanceState()

    def shown_within(self, window: timedelta, now: datetime) -> int:
        cutoff = now - window
        return sum(1 for entry in self._state.intervention_log if entry.timestamp > cutoff)

    def status(self, now: datetime) -> SchedulerStatus:
        _require_timezone_aware(now, "now")
        hourly = self.shown_within(_HOUR, now)
        daily = self.shown_within(_DAY, now)
        state, next_at = self._evaluate(now, hourly, daily)
        return SchedulerStatus(
            state=state,
            can_show=state is SchedulerState.available,
            shown_last_hour=hourly,
            shown_last_day=daily,
            consecutive_dismissals=self._state.consecutive_dismissals,
            next_available_at=next_at,
            snooze_remaining_seconds=self.snooze_remaining(now).total_seconds(),
        )

    def can_show(self, now: datetime) -> bool:
        return self.status(now).can_show

    def _evaluate(
        self, now: datetime, hourly: int, daily: int
    ) -> tuple[SchedulerState, datetime | None]:
        snoozed_until = self._state.snoozed_until
        if snoozed_until is not None and now < snoozed_until:
            return SchedulerState.snoozed, snoozed_until

        if hourly >= self._max_per_hour or daily >= self._max_per_day:
            return SchedulerState.capped, self._cap_release(now, hourly, daily)

        last = self._last_shown()
        if last is not None and now < last + self._cooldown:
            return SchedulerState.cooling_down, last + self._cooldown

        return SchedulerState.available, None

    def _cap_release(self, now: datetime, hourly: int, daily: int) -> datetime | None:
        releases: list[datetime] = []
        for window, count, limit in ((_HOUR, hourly, self._max_per_hour), (_DAY, daily, self._max_per_day)):
            if count < limit:
                continue
            inside = sorted(
                entry.timestamp for entry in self._state.intervention_log if entry.timestamp > now - window
            )
            # Capacity returns once enough of the oldest entries age out.
            releases.append(inside[count - limit] + window)
        return max(releases) if releases else None

    def _last_shown(self) -> datetime | None:
        if not self._state.intervention_log:
            return None
        return max(entry.timestamp for entry in self._state.intervention_log)

    def record_shown(self, now: datetime) -> AnnoyanceState:
        _require_timezone_aware(now, "now")
        cutoff = now - _DAY
        log = tuple(entry for entry in self._state.intervention_log if entry.timestamp > cutoff)
        self._state = self._state.model_copy(
            update={"intervention_log": (*log, InterventionLogEntry(timestamp=now))}
        )
        logger.debug("Intervention shown; %d in the last 24h", len(self._state.intervention_log))
        return self._state

    def record_completed(self, now: datetime) -> AnnoyanceState:
        _require_timezone_aware(now, "now")
        self._state = self._state.model_copy(update={"consecutive_dismissals": 0, "snoozed_until": None})
        return self._state

    def record_dismissed(self, now: datetime) -> AnnoyanceState:
        _require_timezone_aware(now, "now")
        dismissals = self._state.consecutive_dismissals + 1
        if dismissals >= self._auto_snooze_after:
            self._state = self._state.model_copy(
                update={"consecutive_dismissals": 0, "snoozed_until": now + self._snooze}
            )
            logger.info(
                "Auto-snoozed interventions for %d min after %d dismissals",
                int(self._snooze.total_seconds() // 60),
                dismissals,
            )
        else:
            self._state = self._state.model_copy(update={"consecutive_dismissals": dismissals})
        return self._state

    def snooze(self, now: datetime, minutes: float | None = None) -> AnnoyanceState:
        _require_timezone_aware(now, "now")
        duration = self._snooze if minutes is None else timedelta(minutes=minutes)
        if duration <= timedelta(0):
            raise ValueError("snooze duration must be > 0")
        self._state = self._state.model_copy(update={"snoozed_until": now + duration})
        return self._state

    def unsnooze(self) -> AnnoyanceState:
        self._state = self._state.model_copy(update={"snoozed_until": None})
        return self._state

    def snooze_remaining(self, now: datetime) -> timedelta:
        snoozed_until = self._state.snoozed_until
        if snoozed_until is None or now >= snoozed_until:
            return timedelta(0)
        return snoozed_until - now


__all__ = ["AnnoyanceScheduler"]
