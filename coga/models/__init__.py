from __future__ import annotations

from coga.models.annoyance import (
    AnnoyanceState,
    InterventionLogEntry,
    SchedulerState,
    SchedulerStatus,
)
from coga.models.baseline import (
    DEFAULT_BASELINE_PRESET,
    Baseline,
    BaselineContext,
    BaselineHistoryEntry,
    CalibrationState,
    MetricBaseline,
    TimeOfDay,
    scale_floor,
)
from coga.models.metrics import (
    KeyboardMetrics,
    MetricSnapshot,
    MouseMetrics,
    ScrollMetrics,
    mean_snapshot,
)
from coga.models.stress import (
    InterventionSignal,
    Sensitivity,
    StressLevel,
    StressScore,
    StressSeverity,
    StressTrend,
)

__all__ = [
    "DEFAULT_BASELINE_PRESET",
    "AnnoyanceState",
    "Baseline",
    "BaselineContext",
    "BaselineHistoryEntry",
    "CalibrationState",
    "InterventionLogEntry",
    "InterventionSignal",
    "KeyboardMetrics",
    "MetricBaseline",
    "MetricSnapshot",
    "MouseMetrics",
    "SchedulerState",
    "SchedulerStatus",
    "ScrollMetrics",
    "Sensitivity",
    "StressLevel",
    "StressScore",
    "StressSeverity",
    "StressTrend",
    "TimeOfDay",
    "mean_snapshot",
    "scale_floor",
]
