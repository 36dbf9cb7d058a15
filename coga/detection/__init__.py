"""Detection: calibration, multi-source aggregation and stress scoring."""

from coga.detection.aggregator import AggregateWindowEntry, MetricAggregator
from coga.detection.calibrator import BaselineCalibrator, CalibrationSession
from coga.detection.scorer import LevelSmoother, StressHistory, StressScorer, Thresholds

__all__ = [
    "AggregateWindowEntry",
    "BaselineCalibrator",
    "CalibrationSession",
    "LevelSmoother",
    "MetricAggregator",
    "StressHistory",
    "StressScorer",
    "Thresholds",
]
