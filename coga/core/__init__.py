"""Core module: lightweight re-exports only."""

from coga.core.engine import EngineStatus, StressEngine
from coga.core.logging import correlation_scope, setup_logging

__all__ = [
    "EngineStatus",
    "StressEngine",
    "correlation_scope",
    "setup_logging",
]
