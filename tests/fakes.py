from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from coga.errors import PersistenceWriteFailure
from coga.models.baseline import DEFAULT_BASELINE_PRESET, Baseline
from coga.models.metrics import KeyboardMetrics, MetricSnapshot, MouseMetrics, ScrollMetrics
from coga.models.stress import InterventionSignal
from coga.persistence.state_store import InMemoryStateStore

T0 = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


def make_snapshot(
    *,
    timestamp: datetime = T0,
    mouse: Mapping[str, float] | None = None,
    keyboard: Mapping[str, float] | None = None,
    scroll: Mapping[str, float] | None = None,
) -> MetricSnapshot:
    return MetricSnapshot(
        mouse=MouseMetrics(**(mouse or {})),
        keyboard=KeyboardMetrics(**(keyboard or {})),
        scroll=ScrollMetrics(**(scroll or {})),
        timestamp=timestamp,
    )


def snapshot_at_baseline(
    baseline: Baseline = DEFAULT_BASELINE_PRESET,
    *,
    timestamp: datetime = T0,
    mouse: Mapping[str, float] | None = None,
    keyboard: Mapping[str, float] | None = None,
    scroll: Mapping[str, float] | None = None,
) -> MetricSnapshot:
    """Snapshot sitting exactly on every baseline center, with overrides."""
    return make_snapshot(
        timestamp=timestamp,
        mouse={**{k: v.center for k, v in baseline.mouse.items()}, **(mouse or {})},
        keyboard={**{k: v.center for k, v in baseline.keyboard.items()}, **(keyboard or {})},
        scroll={**{k: v.center for k, v in baseline.scroll.items()}, **(scroll or {})},
    )


def stressed_snapshot(*, timestamp: datetime = T0) -> MetricSnapshot:
    """Every signal far past the preset baseline: level high, severity severe."""
    return make_snapshot(
        timestamp=timestamp,
        mouse={
            "movement_velocity": 10_000.0,
            "movement_acceleration": 10_000.0,
            "mouse_jitter": 1_000.0,
            "click_frequency_per_min": 100.0,
            "multi_click_rate_per_min": 50.0,
            "path_efficiency": 0.0,
            "pause_ratio": 0.9,
            "scroll_velocity": 10_000.0,
        },
        keyboard={
            "typing_error_rate": 5.0,
            "typing_speed_per_min": 500.0,
            "pause_regularity": 5.0,
            "avg_pause_duration": 5.0,
        },
        scroll={"velocity": 10_000.0},
    )


def moderate_snapshot(*, timestamp: datetime = T0) -> MetricSnapshot:
    """Clicks and typing errors capped, everything else on baseline: combined 1.71."""
    return snapshot_at_baseline(
        timestamp=timestamp,
        mouse={"click_frequency_per_min": 100.0, "multi_click_rate_per_min": 50.0},
        keyboard={"typing_error_rate": 5.0},
    )


class RecordingPresenter:
    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.signals: list[InterventionSignal] = []

    async def present(self, signal: InterventionSignal) -> bool:
        self.signals.append(signal)
        return self.accept


class ExplodingPresenter:
    def __init__(self) -> None:
        self.calls = 0

    async def present(self, signal: InterventionSignal) -> bool:
        self.calls += 1
        raise RuntimeError("presenter crashed")


class FlakyStateStore(InMemoryStateStore):
    """In-memory store whose writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.write_attempts = 0

    async def set_many(self, values: Mapping[str, Any]) -> None:
        self.write_attempts += 1
        if self.fail_writes:
            raise PersistenceWriteFailure("disk full")
        await super().set_many(values)

    async def remove(self, keys: list[str]) -> None:
        self.write_attempts += 1
        if self.fail_writes:
            raise PersistenceWriteFailure("disk full")
        await super().remove(keys)
