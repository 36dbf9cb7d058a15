"""Failure taxonomy for the stress engine.

None of these are fatal to the tick loop: the engine catches each one and
degrades to "no intervention this tick".
"""

from __future__ import annotations


class CogaError(Exception):
    """Base class for engine errors."""


class InsufficientCalibrationData(CogaError):
    """The calibration window elapsed without a single collected sample."""


# Name used by callers that think in terms of the calibration session.
NoSamplesCollected = InsufficientCalibrationData


class CalibrationFinalizing(CogaError):
    """A finalize call arrived while another finalize was still running."""


class InvalidBaselineStructure(CogaError):
    """A persisted baseline could not be parsed into a usable Baseline."""


class StaleAggregate(CogaError):
    """No metric source reported within the aggregation TTL."""


class PersistenceWriteFailure(CogaError):
    """The state store rejected a write; in-memory state stays authoritative."""


__all__ = [
    "CalibrationFinalizing",
    "CogaError",
    "InsufficientCalibrationData",
    "InvalidBaselineStructure",
    "NoSamplesCollected",
    "PersistenceWriteFailure",
    "StaleAggregate",
]
