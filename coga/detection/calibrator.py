"""Personal baseline calibration.

A calibration session collects metric snapshots for a fixed wall-clock window
and then commits one robust baseline: the per-field median as center and the
median absolute deviation (floored) as scale.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import median

from coga.errors import CalibrationFinalizing, InsufficientCalibrationData
from coga.models.baseline import (
    Baseline,
    BaselineContext,
    BaselineHistoryEntry,
    MetricBaseline,
    scale_floor,
)
from coga.models.metrics import METRIC_FAMILIES, MetricSnapshot, family_fields

logger = logging.getLogger(__name__)

DEFAULT_CALIBRATION_SECONDS = 180.0
DEFAULT_HISTORY_LIMIT = 30
MAX_BLEND_ALPHA = 0.2


def _require_timezone_aware(value: datetime, field_name: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{field_name} must be timezone-aware")


@dataclass(slots=True)
class CalibrationSession:
    session_id: str
    started_at: datetime
    samples: list[MetricSnapshot] = field(default_factory=list)


def robust_baseline(samples: Sequence[MetricSnapshot], now: datetime) -> Baseline:
    """Median/MAD baseline over ``samples``; the scale floor applies per field."""
    if not samples:
        raise InsufficientCalibrationData("no samples collected during calibration")

    families: dict[str, dict[str, MetricBaseline]] = {}
    for family in METRIC_FAMILIES:
        metrics: dict[str, MetricBaseline] = {}
        for name in family_fields(family):
            values = [sample.value(family, name) for sample in samples]
            center = float(median(values))
            mad = float(median(abs(value - center) for value in values))
            metrics[name] = MetricBaseline.floored(center, mad)
        families[family] = metrics

    return Baseline(
        mouse=families["mouse"],
        keyboard=families["keyboard"],
        scroll=families["scroll"],
        timestamp=now,
        context=BaselineContext.at(now),
    )


class BaselineCalibrator:
    def __init__(
        self,
        *,
        duration_seconds: float = DEFAULT_CALIBRATION_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        self._duration = timedelta(seconds=duration_seconds)
        self._history_limit = max(1, history_limit)
        self._baseline: Baseline | None = None
        self._history: list[BaselineHistoryEntry] = []
        self._session: CalibrationSession | None = None
        self._finalizing = False

    @property
    def duration(self) -> timedelta:
        return self._duration

    @property
    def session(self) -> CalibrationSession | None:
        return self._session

    @property
    def is_calibrating(self) -> bool:
        return self._session is not None

    @property
    def history(self) -> tuple[BaselineHistoryEntry, ...]:
        return tuple(self._history)

    def get_baseline(self) -> Baseline | None:
        return self._baseline

    def start(self, now: datetime) -> CalibrationSession:
        _require_timezone_aware(now, "now")
        self._session = CalibrationSession(
            session_id=f"cal-{uuid.uuid4().hex[:12]}",
            started_at=now,
        )
        logger.info(
            "Calibration started: %s (%ds window)",
            self._session.session_id,
            int(self._duration.total_seconds()),
        )
        return self._session

    def is_elapsed(self, now: datetime) -> bool:
        if self._session is None:
            return False
        return now - self._session.started_at >= self._duration

    def progress(self, now: datetime) -> float:
        """Time-based completion in percent; 100 once the window has elapsed."""
        if self._session is None:
            return 100.0 if self._baseline is not None else 0.0
        elapsed = (now - self._session.started_at) / self._duration
        return min(100.0, max(0.0, elapsed * 100.0))

    def add_sample(self, snapshot: MetricSnapshot, now: datetime) -> bool:
        """Collect one sample; returns True once this call completed calibration.

        A window that elapsed with no samples stays open and takes the
        arriving sample, so the first real reading completes it.
        """
        if self._session is None:
            return False

        if not self.is_elapsed(now):
            self._session.samples.append(snapshot)
            return False

        if not self._session.samples:
            self._session.samples.append(snapshot)
        self.finalize(now)
        return True

    def finalize(self, now: datetime) -> Baseline:
        """Compute and commit the baseline for the open session.

        Raises:
            CalibrationFinalizing: a finalize is already in progress.
            InsufficientCalibrationData: the session holds no samples; it stays
                open so later samples can still complete it.
        """
        if self._finalizing:
            raise CalibrationFinalizing("calibration is already being finalized")
        if self._session is None:
            raise InsufficientCalibrationData("no calibration session is open")
        if not self._session.samples:
            raise InsufficientCalibrationData(
                f"calibration {self._session.session_id} collected no samples"
            )

        self._finalizing = True
        try:
            session = self._session
            baseline = self._compute_baseline(session.samples, now)
            self._commit(baseline, now)
            self._session = None
        finally:
            self._finalizing = False

        logger.info(
            "Calibration %s complete with %d samples",
            session.session_id,
            len(session.samples),
        )
        return baseline

    def _compute_baseline(self, samples: Sequence[MetricSnapshot], now: datetime) -> Baseline:
        return robust_baseline(samples, now)

    def apply_preset(self, preset: Baseline) -> Baseline:
        """Adopt a built-in baseline without calibrating; history is untouched."""
        self._baseline = preset
        self._session = None
        return preset

    def adopt(self, baseline: Baseline) -> None:
        """Replace the active baseline with one committed elsewhere."""
        self._baseline = baseline

    def restore(
        self,
        *,
        baseline: Baseline | None,
        history: Iterable[BaselineHistoryEntry] = (),
        session: CalibrationSession | None = None,
    ) -> None:
        self._baseline = baseline
        self._history = sorted(history, key=lambda entry: entry.calendar_date)[-self._history_limit :]
        self._session = session

    def blend(self, aggregate: MetricSnapshot, alpha: float, now: datetime) -> Baseline | None:
        """Move the baseline a small step toward ``aggregate``.

        ``center <- (1 - alpha) * center + alpha * value`` and the scale follows
        the absolute deviation the same way, never dropping below its floor.
        """
        if not 0.0 < alpha <= MAX_BLEND_ALPHA:
            raise ValueError(f"alpha must be in (0, {MAX_BLEND_ALPHA}]")
        if self._baseline is None:
            return None

        families: dict[str, dict[str, MetricBaseline]] = {}
        for family in METRIC_FAMILIES:
            blended: dict[str, MetricBaseline] = {}
            for name, metric in getattr(self._baseline, family).items():
                value = aggregate.value(family, name)
                center = (1.0 - alpha) * metric.center + alpha * value
                spread = (1.0 - alpha) * metric.effective_scale() + alpha * abs(value - metric.center)
                blended[name] = MetricBaseline(center=center, scale=max(scale_floor(center), spread))
            families[family] = blended

        self._baseline = self._baseline.model_copy(update={**families, "timestamp": now})
        return self._baseline

    def reset(self) -> None:
        self._baseline = None
        self._history = []
        self._session = None
        self._finalizing = False

    def _commit(self, baseline: Baseline, now: datetime) -> None:
        self._baseline = baseline
        today = now.astimezone().date()
        entries = [entry for entry in self._history if entry.calendar_date != today]
        entries.append(BaselineHistoryEntry(calendar_date=today, baseline=baseline, timestamp=now))
        entries.sort(key=lambda entry: entry.calendar_date)
        self._history = entries[-self._history_limit :]


__all__ = [
    "BaselineCalibrator",
    "CalibrationSession",
    "DEFAULT_CALIBRATION_SECONDS",
    "MAX_BLEND_ALPHA",
    "robust_baseline",
]
