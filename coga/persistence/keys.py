"""Logical state keys. Stores prepend the configured prefix (``coga_`` by default)."""

from __future__ import annotations

BASELINE = "baseline"
BASELINE_HISTORY = "baseline_history"
CALIBRATION_STATE = "calibration_state"
CALIBRATION_DATA = "calibration_data"
ANNOYANCE_LOG = "annoyance_log"
ANNOYANCE_STATE = "annoyance_state"

BASELINE_KEYS = (BASELINE, BASELINE_HISTORY, CALIBRATION_STATE, CALIBRATION_DATA)
ANNOYANCE_KEYS = (ANNOYANCE_LOG, ANNOYANCE_STATE)
ALL_KEYS = (*BASELINE_KEYS, *ANNOYANCE_KEYS)

__all__ = [
    "ALL_KEYS",
    "ANNOYANCE_KEYS",
    "ANNOYANCE_LOG",
    "ANNOYANCE_STATE",
    "BASELINE",
    "BASELINE_HISTORY",
    "BASELINE_KEYS",
    "CALIBRATION_DATA",
    "CALIBRATION_STATE",
]
