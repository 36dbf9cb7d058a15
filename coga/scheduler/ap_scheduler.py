"""CogaScheduler: thin wrapper around APScheduler's AsyncIOScheduler.

The engine needs fixed-period heartbeats only: the evaluation tick (which
also drives adaptive blending) and the periodic re-read of shared state. Jobs
run on the existing asyncio loop with no extra threads.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Coroutine[Any, Any, Any]]


class CogaScheduler:
    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._jobs: dict[str, str] = {}  # our_id -> apscheduler_job_id
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def job_ids(self) -> list[str]:
        return list(self._jobs.keys())

    def add_heartbeat(
        self,
        name: str,
        interval_seconds: float,
        callback: AsyncCallback,
    ) -> str:
        """Register a periodic heartbeat and return its schedule ID.

        Raises:
            ValueError: If name is already registered or interval is not positive.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        schedule_id = f"heartbeat:{name}"
        if schedule_id in self._jobs:
            raise ValueError(f"schedule '{schedule_id}' already registered")

        job = self._scheduler.add_job(
            self._safe_invoke(callback, schedule_id),
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=schedule_id,
            name=f"heartbeat-{name}",
            replace_existing=False,
            # A slow tick must not pile up behind itself.
            max_instances=1,
            coalesce=True,
        )
        self._jobs[schedule_id] = job.id
        logger.info("Registered heartbeat: %s (every %gs)", schedule_id, interval_seconds)
        return schedule_id

    def remove_schedule(self, schedule_id: str) -> None:
        if schedule_id not in self._jobs:
            raise KeyError(f"unknown schedule: {schedule_id}")

        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            logger.debug("Job %s already removed from APScheduler", schedule_id)

        del self._jobs[schedule_id]
        logger.info("Removed schedule: %s", schedule_id)

    def start(self) -> None:
        """Start the scheduler. Idempotent."""
        if self._running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    def stop(self) -> None:
        """Stop the scheduler and clear all jobs. Idempotent."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._jobs.clear()
        self._running = False
        logger.info("Scheduler stopped")

    def _safe_invoke(
        self,
        callback: AsyncCallback,
        schedule_id: str,
    ) -> AsyncCallback:
        """Wrap a callback so a failing heartbeat is logged and the next one still runs."""

        async def _wrapper() -> None:
            try:
                await callback()
            except Exception:
                logger.exception("Schedule %s callback failed", schedule_id)

        return _wrapper


__all__ = ["CogaScheduler"]
