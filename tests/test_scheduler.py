"""Tests for CogaScheduler, the APScheduler heartbeat wrapper."""

from __future__ import annotations

import pytest
from coga.scheduler.ap_scheduler import CogaScheduler

from tests.helpers import wait_until


async def noop() -> None:
    pass


@pytest.fixture
def scheduler() -> CogaScheduler:
    return CogaScheduler()


class TestSchedulerLifecycle:
    def test_initial_state(self, scheduler: CogaScheduler) -> None:
        assert not scheduler.running
        assert scheduler.job_ids == []

    @pytest.mark.asyncio
    async def test_start_stop(self, scheduler: CogaScheduler) -> None:
        scheduler.start()
        assert scheduler.running
        scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler: CogaScheduler) -> None:
        scheduler.start()
        scheduler.start()
        assert scheduler.running
        scheduler.stop()

    def test_stop_when_not_running(self, scheduler: CogaScheduler) -> None:
        scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_clears_jobs(self, scheduler: CogaScheduler) -> None:
        scheduler.add_heartbeat("tick", 1, noop)
        scheduler.add_heartbeat("sync", 5, noop)
        scheduler.start()
        scheduler.stop()
        assert scheduler.job_ids == []


class TestHeartbeat:
    def test_add_heartbeat(self, scheduler: CogaScheduler) -> None:
        assert scheduler.add_heartbeat("tick", 1, noop) == "heartbeat:tick"
        assert scheduler.job_ids == ["heartbeat:tick"]

    def test_duplicate_heartbeat_raises(self, scheduler: CogaScheduler) -> None:
        scheduler.add_heartbeat("tick", 1, noop)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.add_heartbeat("tick", 2, noop)

    @pytest.mark.parametrize("interval", [0, -1.5])
    def test_non_positive_interval_raises(self, scheduler: CogaScheduler, interval: float) -> None:
        with pytest.raises(ValueError, match="must be > 0"):
            scheduler.add_heartbeat("tick", interval, noop)

    def test_remove_schedule(self, scheduler: CogaScheduler) -> None:
        scheduler.add_heartbeat("sync", 5, noop)
        scheduler.remove_schedule("heartbeat:sync")
        assert scheduler.job_ids == []

    def test_remove_unknown_raises(self, scheduler: CogaScheduler) -> None:
        with pytest.raises(KeyError, match="unknown schedule"):
            scheduler.remove_schedule("heartbeat:missing")


class TestCallbackExecution:
    @pytest.mark.asyncio
    async def test_heartbeat_fires(self, scheduler: CogaScheduler) -> None:
        calls = 0

        async def tick() -> None:
            nonlocal calls
            calls += 1

        scheduler.add_heartbeat("tick", 0.1, tick)
        scheduler.start()
        try:
            await wait_until(lambda: calls >= 1, timeout=2.0)
        finally:
            scheduler.stop()
        assert calls >= 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self, scheduler: CogaScheduler) -> None:
        healthy = 0

        async def failing() -> None:
            raise RuntimeError("boom")

        async def counter() -> None:
            nonlocal healthy
            healthy += 1

        scheduler.add_heartbeat("bad", 0.1, failing)
        scheduler.add_heartbeat("good", 0.1, counter)
        scheduler.start()
        try:
            await wait_until(lambda: healthy >= 2, timeout=2.0)
        finally:
            scheduler.stop()
        assert healthy >= 2
