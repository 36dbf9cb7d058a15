"""Direction-aware statistical stress scoring.

Every signal only counts when it moves in the stressed direction: faster,
jerkier pointer movement, more clicks, more typing errors, longer pauses.
Each field becomes a capped, thresholded z-score against the personal
baseline; the fields are combined with fixed weights into a mouse score and a
keyboard score, then a single composite that is discretized into a level and
mapped onto a bounded 0-100 percentage.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from statistics import fmean

from coga.models.baseline import Baseline, MetricBaseline
from coga.models.metrics import MetricSnapshot
from coga.models.stress import (
    Sensitivity,
    StressLevel,
    StressScore,
    StressSeverity,
    StressTrend,
)

logger = logging.getLogger(__name__)

Z_SCORE_CAP = 4.0
MOUSE_WEIGHT = 0.7
KEYBOARD_WEIGHT = 0.3

# Raw composite at which the level turns "high", per sensitivity.
SENSITIVITY_THRESHOLDS: dict[Sensitivity, float] = {
    Sensitivity.low: 3.3,
    Sensitivity.medium: 2.6,
    Sensitivity.high: 2.2,
}

SEVERITY_PERCENT_THRESHOLDS: tuple[tuple[float, StressSeverity], ...] = (
    (75.0, StressSeverity.severe),
    (55.0, StressSeverity.moderate),
    (35.0, StressSeverity.mild),
)


@dataclass(frozen=True, slots=True)
class SignalWeight:
    family: str
    field: str
    weight: float
    min_z: float


MOUSE_SIGNALS: tuple[SignalWeight, ...] = (
    SignalWeight("mouse", "click_frequency_per_min", 0.15, 0.2),
    SignalWeight("mouse", "multi_click_rate_per_min", 0.15, 0.2),
    SignalWeight("mouse", "movement_velocity", 0.10, 0.1),
    SignalWeight("mouse", "movement_acceleration", 0.10, 0.1),
    SignalWeight("mouse", "mouse_jitter", 0.10, 0.15),
    SignalWeight("mouse", "scroll_velocity", 0.10, 0.1),
)

KEYBOARD_SIGNALS: tuple[SignalWeight, ...] = (
    SignalWeight("keyboard", "typing_error_rate", 0.50, 0.2),
    SignalWeight("keyboard", "typing_speed_per_min", 0.25, 0.15),
    SignalWeight("keyboard", "pause_regularity", 0.15, 0.1),
    SignalWeight("keyboard", "avg_pause_duration", 0.10, 0.1),
)

PATH_PENALTY_WEIGHT = 0.1
PAUSE_PENALTY_CAP = 0.5

DECAY_STEP = timedelta(seconds=5)
DECAY_MAX_WINDOW = timedelta(seconds=30)


def directional_z(value: float, baseline: MetricBaseline | None, min_z: float = 0.0) -> float:
    """Upward-only z-score, capped at 4, with ``min_z`` subtracted and floored at 0."""
    if baseline is None or not math.isfinite(value):
        return 0.0
    diff = value - baseline.center
    if diff <= 0:
        return 0.0
    z = min(diff / baseline.effective_scale(), Z_SCORE_CAP)
    if z <= min_z:
        return 0.0
    return z - min_z


def _weighted_mean(signals: tuple[SignalWeight, ...], metrics: MetricSnapshot, baseline: Baseline) -> float:
    # Quiet signals keep their weight in the denominator.
    total_weight = sum(signal.weight for signal in signals)
    weighted = sum(
        signal.weight
        * directional_z(
            metrics.value(signal.family, signal.field),
            baseline.metric(signal.family, signal.field),
            signal.min_z,
        )
        for signal in signals
    )
    return weighted / total_weight


@dataclass(frozen=True, slots=True)
class Thresholds:
    moderate: float
    high: float

    @classmethod
    def for_sensitivity(cls, sensitivity: Sensitivity | str) -> Thresholds:
        high = SENSITIVITY_THRESHOLDS[Sensitivity(sensitivity)]
        return cls(moderate=max(0.8, 0.5 * high), high=high)


def classify_level(combined: float, thresholds: Thresholds) -> StressLevel:
    if combined >= thresholds.high:
        return StressLevel.high
    if combined >= thresholds.moderate:
        return StressLevel.moderate
    return StressLevel.normal


def stress_percentage(combined: float, thresholds: Thresholds) -> float:
    """Piecewise-linear map: [0, moderate] -> [0, 50], [moderate, high] -> [50, 80],
    [high, 1.5 * high] -> [80, 100]; capped at 100."""
    combined = max(0.0, combined)
    if combined <= thresholds.moderate:
        return combined / thresholds.moderate * 50.0
    if combined >= thresholds.high:
        ceiling = 1.5 * thresholds.high
        above = (min(ceiling, combined) - thresholds.high) / max(0.001, 0.5 * thresholds.high)
        return min(100.0, 80.0 + above * 20.0)
    ratio = (combined - thresholds.moderate) / (thresholds.high - thresholds.moderate)
    return 50.0 + ratio * 30.0


def derive_severity(percentage: float, level: StressLevel) -> StressSeverity | None:
    for floor, severity in SEVERITY_PERCENT_THRESHOLDS:
        if percentage >= floor:
            return severity
    if level is StressLevel.high:
        return StressSeverity.severe
    if level is StressLevel.moderate:
        return StressSeverity.moderate
    return None


def neutral_score(now: datetime, metrics: MetricSnapshot | None = None) -> StressScore:
    return StressScore(
        mouse_score=0.0,
        keyboard_score=0.0,
        combined=0.0,
        level=StressLevel.normal,
        severity=None,
        percentage=0.0,
        timestamp=now,
        metrics=metrics,
    )


class StressScorer:
    def __init__(self, sensitivity: Sensitivity | str = Sensitivity.medium) -> None:
        self._sensitivity = Sensitivity(sensitivity)
        self._thresholds = Thresholds.for_sensitivity(self._sensitivity)

    @property
    def sensitivity(self) -> Sensitivity:
        return self._sensitivity

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def set_sensitivity(self, sensitivity: Sensitivity | str) -> None:
        self._sensitivity = Sensitivity(sensitivity)
        self._thresholds = Thresholds.for_sensitivity(self._sensitivity)

    def mouse_score(self, metrics: MetricSnapshot, baseline: Baseline) -> float:
        score = _weighted_mean(MOUSE_SIGNALS, metrics, baseline)

        path = baseline.metric("mouse", "path_efficiency")
        if path is not None and metrics.mouse.path_efficiency < path.center:
            drop = path.center - metrics.mouse.path_efficiency
            score += min(1.0, drop * 2.0) * PATH_PENALTY_WEIGHT

        pause = baseline.metric("mouse", "pause_ratio")
        if pause is not None and metrics.mouse.pause_ratio > pause.center:
            rise = metrics.mouse.pause_ratio - pause.center
            score += min(PAUSE_PENALTY_CAP, rise * 2.0)

        return score

    def keyboard_score(self, metrics: MetricSnapshot, baseline: Baseline) -> float:
        return _weighted_mean(KEYBOARD_SIGNALS, metrics, baseline)

    def score(self, aggregate: MetricSnapshot, baseline: Baseline, now: datetime) -> StressScore:
        """Score ``aggregate`` against ``baseline``. Never raises on bad numbers."""
        mouse = self.mouse_score(aggregate, baseline)
        keyboard = self.keyboard_score(aggregate, baseline)
        combined = MOUSE_WEIGHT * mouse + KEYBOARD_WEIGHT * keyboard

        if not all(math.isfinite(value) for value in (mouse, keyboard, combined)):
            logger.warning("Discarding non-finite stress score (mouse=%s keyboard=%s)", mouse, keyboard)
            return neutral_score(now, aggregate)

        level = classify_level(combined, self._thresholds)
        percentage = stress_percentage(combined, self._thresholds)
        return StressScore(
            mouse_score=mouse,
            keyboard_score=keyboard,
            combined=combined,
            level=level,
            severity=derive_severity(percentage, level),
            percentage=percentage,
            timestamp=now,
            metrics=aggregate,
        )


class LevelSmoother:
    """Exponential smoothing of the combined score with level hysteresis.

    A raw level above normal must repeat ``hysteresis`` times before the
    reported level follows it, and the same holds for the return to normal.
    Percentage and severity are recomputed from the smoothed value.
    """

    def __init__(self, *, alpha: float = 0.3, hysteresis: int = 3) -> None:
        if not 0 < alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self._alpha = alpha
        self._hysteresis = max(1, hysteresis)
        self.reset()

    @property
    def smoothed(self) -> float:
        return self._smoothed

    @property
    def level(self) -> StressLevel:
        return self._level

    def reset(self) -> None:
        self._smoothed = 0.0
        self._level = StressLevel.normal
        self._elevated_run = 0
        self._normal_run = 0

    def apply(self, score: StressScore, thresholds: Thresholds) -> StressScore:
        self._smoothed = self._alpha * score.combined + (1 - self._alpha) * self._smoothed
        raw_level = classify_level(self._smoothed, thresholds)

        if raw_level is StressLevel.normal:
            self._normal_run += 1
            self._elevated_run = 0
            if self._normal_run >= self._hysteresis:
                self._level = StressLevel.normal
        else:
            self._elevated_run += 1
            self._normal_run = 0
            if self._elevated_run >= self._hysteresis:
                self._level = raw_level

        percentage = stress_percentage(self._smoothed, thresholds)
        return score.model_copy(
            update={
                "combined": self._smoothed,
                "level": self._level,
                "percentage": percentage,
                "severity": derive_severity(percentage, self._level),
            }
        )


def _slope(values: list[float]) -> float:
    n = len(values)
    mean_x = (n - 1) / 2.0
    mean_y = fmean(values)
    numerator = sum((index - mean_x) * (value - mean_y) for index, value in enumerate(values))
    denominator = sum((index - mean_x) ** 2 for index in range(n))
    return numerator / denominator


class StressHistory:
    """Bounded record of recent scores for trend inspection."""

    def __init__(self, *, max_entries: int = 100) -> None:
        self._scores: deque[StressScore] = deque(maxlen=max(1, max_entries))

    def __len__(self) -> int:
        return len(self._scores)

    def append(self, score: StressScore) -> None:
        self._scores.append(score)

    def latest(self) -> StressScore | None:
        return self._scores[-1] if self._scores else None

    def trend(self, window: int = 10) -> StressTrend:
        """Least-squares slope over the last ``window`` scores.

        Stable until a full window of scores exists.
        """
        if window < 2 or len(self._scores) < window:
            return StressTrend.stable
        slope = _slope([score.combined for score in list(self._scores)[-window:]])
        if slope > 0.1:
            return StressTrend.increasing
        if slope < -0.1:
            return StressTrend.decreasing
        return StressTrend.stable

    def average(self, window_seconds: float = 300.0, now: datetime | None = None) -> float:
        if not self._scores:
            return 0.0
        reference = now or self._scores[-1].timestamp
        cutoff = reference - timedelta(seconds=window_seconds)
        recent = [score.combined for score in self._scores if score.timestamp >= cutoff]
        if not recent:
            return 0.0
        return fmean(recent)

    def decay(self, now: datetime, *, inactive_after: timedelta) -> int:
        """Drop aged scores once nothing was scored for ``inactive_after``.

        The retained window grows by 5 s per ``inactive_after`` of further
        inactivity, capped at 30 s. Returns the number of scores removed.
        """
        latest = self.latest()
        if latest is None:
            return 0
        idle = now - latest.timestamp
        if idle < inactive_after:
            return 0
        keep = min(DECAY_MAX_WINDOW, (idle - inactive_after) / inactive_after * DECAY_STEP)
        cutoff = now - keep
        before = len(self._scores)
        self._scores = deque(
            (score for score in self._scores if score.timestamp >= cutoff),
            maxlen=self._scores.maxlen,
        )
        removed = before - len(self._scores)
        if removed:
            logger.debug("Decayed %d stress history entries after %.0fs idle", removed, idle.total_seconds())
        return removed

    def clear(self) -> None:
        self._scores.clear()


__all__ = [
    "KEYBOARD_SIGNALS",
    "LevelSmoother",
    "MOUSE_SIGNALS",
    "SENSITIVITY_THRESHOLDS",
    "SignalWeight",
    "StressHistory",
    "StressScorer",
    "Thresholds",
    "Z_SCORE_CAP",
    "classify_level",
    "derive_severity",
    "directional_z",
    "neutral_score",
    "stress_percentage",
]
