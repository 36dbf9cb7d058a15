"""Prometheus metrics for the stress engine.

All metric objects are module-level singletons registered on the default
registry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

STRESS_COMBINED = Gauge("coga_stress_combined", "Latest combined stress score")
STRESS_PERCENTAGE = Gauge("coga_stress_percentage", "Latest stress percentage (0-100)")
STRESS_LEVEL_TOTAL = Counter("coga_stress_level_total", "Scored ticks by stress level", ["level"])
TICK_DURATION_SECONDS = Histogram("coga_tick_duration_seconds", "Engine tick duration in seconds")
INTERVENTIONS_TOTAL = Counter(
    "coga_interventions_total",
    "Intervention lifecycle events",
    ["outcome"],
)
LIVE_SOURCES = Gauge("coga_live_sources", "Metric sources reporting within the TTL")
CALIBRATIONS_TOTAL = Counter("coga_calibrations_total", "Calibration sessions by result", ["result"])
PERSISTENCE_FAILURES_TOTAL = Counter(
    "coga_persistence_failures_total", "State store writes that failed", ["key"]
)


@contextmanager
def observe_tick_duration() -> Iterator[None]:
    start = time.monotonic()
    try:
        yield
    finally:
        TICK_DURATION_SECONDS.observe(time.monotonic() - start)


def serve_metrics(*, enabled: bool, host: str, port: int) -> bool:
    """Expose the default registry over HTTP for scraping; False when disabled."""
    if not enabled:
        logger.debug("Prometheus exporter disabled")
        return False
    start_http_server(port, addr=host)
    logger.info("Prometheus metrics on http://%s:%d/metrics", host, port)
    return True


__all__ = [
    "CALIBRATIONS_TOTAL",
    "INTERVENTIONS_TOTAL",
    "LIVE_SOURCES",
    "PERSISTENCE_FAILURES_TOTAL",
    "STRESS_COMBINED",
    "STRESS_LEVEL_TOTAL",
    "STRESS_PERCENTAGE",
    "TICK_DURATION_SECONDS",
    "observe_tick_duration",
    "serve_metrics",
]
