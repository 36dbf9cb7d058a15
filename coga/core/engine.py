"""Tick-driven orchestration of calibration, aggregation, scoring and scheduling.

Metric sources push snapshots at any time; the engine evaluates on a fixed
tick. In-memory state is authoritative. Every state change is persisted
through the :class:`StateStore`; a failed write leaves the key dirty and it is
retried with the next write, so a flaky store never blocks scoring.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from coga.config import CogaSettings
from coga.core.logging import correlation_scope
from coga.core.metrics import (
    CALIBRATIONS_TOTAL,
    INTERVENTIONS_TOTAL,
    LIVE_SOURCES,
    PERSISTENCE_FAILURES_TOTAL,
    STRESS_COMBINED,
    STRESS_LEVEL_TOTAL,
    STRESS_PERCENTAGE,
    observe_tick_duration,
)
from coga.detection.aggregator import MetricAggregator
from coga.detection.calibrator import BaselineCalibrator, CalibrationSession
from coga.detection.scorer import LevelSmoother, StressHistory, StressScorer
from coga.errors import (
    CalibrationFinalizing,
    InsufficientCalibrationData,
    InvalidBaselineStructure,
    PersistenceWriteFailure,
    StaleAggregate,
)
from coga.models.annoyance import AnnoyanceState, SchedulerStatus
from coga.models.baseline import (
    DEFAULT_BASELINE_PRESET,
    Baseline,
    BaselineHistoryEntry,
    CalibrationState,
)
from coga.models.metrics import MetricSnapshot
from coga.models.stress import (
    InterventionSignal,
    Sensitivity,
    StressLevel,
    StressScore,
    StressTrend,
)
from coga.persistence import keys
from coga.proactivity.annoyance import AnnoyanceScheduler
from coga.proactivity.interventions import InterventionKey, InterventionPolicy
from coga.protocols.presenter import InterventionPresenter
from coga.protocols.storage import StateStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class EngineStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    calibrating: bool
    calibration_progress: float
    session_id: str | None = None
    has_baseline: bool
    baseline_timestamp: datetime | None = None
    latest_score: StressScore | None = None
    trend: StressTrend
    scheduler: SchedulerStatus
    live_sources: list[str]
    pending_writes: list[str]


class StressEngine:
    def __init__(
        self,
        settings: CogaSettings,
        store: StateStore,
        presenter: InterventionPresenter | None = None,
        policy: InterventionPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._presenter = presenter
        self._policy = policy or InterventionPolicy()
        self._calibrator = BaselineCalibrator(
            duration_seconds=settings.calibration.duration_seconds,
            history_limit=settings.calibration.history_limit,
        )
        self._aggregator = MetricAggregator(ttl_seconds=settings.detection.metric_ttl_s)
        self._scorer = StressScorer(settings.detection.sensitivity)
        self._history = StressHistory()
        detection = settings.detection
        self._smoother = (
            LevelSmoother(alpha=detection.smoothing_alpha, hysteresis=detection.hysteresis_readings)
            if detection.smoothing_enabled
            else None
        )
        self._decay_after = timedelta(seconds=detection.inactivity_decay_s)
        self._scheduler = AnnoyanceScheduler.from_config(settings.annoyance)
        self._enabled = settings.enabled
        self._latest: StressScore | None = None
        self._last_signal: InterventionSignal | None = None
        self._last_blend_at: datetime | None = None
        self._pending: dict[str, Any] = {}
        self._pending_removals: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def latest_score(self) -> StressScore | None:
        return self._latest

    @property
    def last_signal(self) -> InterventionSignal | None:
        return self._last_signal

    @property
    def calibrator(self) -> BaselineCalibrator:
        return self._calibrator

    @property
    def aggregator(self) -> MetricAggregator:
        return self._aggregator

    @property
    def scheduler(self) -> AnnoyanceScheduler:
        return self._scheduler

    @property
    def history(self) -> StressHistory:
        return self._history

    @property
    def pending_writes(self) -> list[str]:
        return sorted({*self._pending, *self._pending_removals})

    # ------------------------------------------------------------------
    # Loading and syncing persisted state
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore baseline, history, open calibration and scheduler state."""
        stored = await self._store.get_many(list(keys.ALL_KEYS))

        baseline = self._parse_baseline(stored.get(keys.BASELINE))
        history = self._parse_history(stored.get(keys.BASELINE_HISTORY))
        session = self._parse_session(
            stored.get(keys.CALIBRATION_STATE),
            stored.get(keys.CALIBRATION_DATA),
        )
        self._calibrator.restore(baseline=baseline, history=history, session=session)
        self._scheduler.restore(
            self._parse_annoyance(stored.get(keys.ANNOYANCE_LOG), stored.get(keys.ANNOYANCE_STATE))
        )
        logger.info(
            "Engine state loaded: baseline=%s history=%d calibrating=%s",
            "yes" if baseline else "no",
            len(history),
            session is not None,
        )

    async def sync_from_store(self) -> bool:
        """Re-read state written by other contexts.

        Local writes are flushed first; when that fails the sync is skipped,
        so unsaved local state is never overwritten by an older stored copy.
        Afterwards the store is authoritative: a baseline, calibration or
        scheduler state removed elsewhere is dropped here too. A stored
        baseline older than the local one is ignored.
        """
        if self._pending or self._pending_removals:
            if not await self._flush():
                return False

        stored = await self._store.get_many(list(keys.ALL_KEYS))
        had_baseline = self._calibrator.get_baseline() is not None

        baseline = self._synced_baseline(stored)
        history = self._parse_history(stored.get(keys.BASELINE_HISTORY))
        session = self._synced_session(stored)
        self._calibrator.restore(baseline=baseline, history=history, session=session)

        if had_baseline and baseline is None:
            logger.info("Baseline removed by another context")
            self._history.clear()
            self._latest = None
            self._last_blend_at = None
            if self._smoother is not None:
                self._smoother.reset()

        if keys.ANNOYANCE_LOG in stored or keys.ANNOYANCE_STATE in stored:
            self._scheduler.restore(
                self._parse_annoyance(stored.get(keys.ANNOYANCE_LOG), stored.get(keys.ANNOYANCE_STATE))
            )
        else:
            self._scheduler.reset()
            self._policy.forget_recent()
        return True

    def _synced_baseline(self, stored: Mapping[str, Any]) -> Baseline | None:
        current = self._calibrator.get_baseline()
        if keys.BASELINE not in stored:
            return None
        baseline = self._parse_baseline(stored[keys.BASELINE])
        if baseline is None:
            return current
        if current is None or baseline.timestamp > current.timestamp:
            logger.info("Adopted newer baseline from store (%s)", baseline.timestamp.isoformat())
            return baseline
        return current

    def _synced_session(self, stored: Mapping[str, Any]) -> CalibrationSession | None:
        local = self._calibrator.session
        session = self._parse_session(stored.get(keys.CALIBRATION_STATE), stored.get(keys.CALIBRATION_DATA))
        if session is None:
            if local is not None:
                logger.info("Calibration %s ended by another context", local.session_id)
            return None
        # Same session: local samples are at least as recent as the stored copy.
        if local is not None and local.session_id == session.session_id:
            return local
        logger.info("Joined calibration %s started by another context", session.session_id)
        return session

    def _parse_baseline(self, raw: object) -> Baseline | None:
        if raw is None:
            return None
        try:
            return Baseline.parse_persisted(raw)
        except InvalidBaselineStructure as exc:
            logger.warning("Ignoring persisted baseline: %s", exc)
            return None

    def _parse_history(self, raw: object) -> list[BaselineHistoryEntry]:
        if not isinstance(raw, list):
            return []
        entries: list[BaselineHistoryEntry] = []
        for item in raw:
            try:
                entries.append(BaselineHistoryEntry.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed baseline history entry")
        return entries

    def _parse_session(self, state_raw: object, data_raw: object) -> CalibrationSession | None:
        if not isinstance(state_raw, Mapping):
            return None
        try:
            state = CalibrationState.model_validate(state_raw)
        except ValidationError:
            logger.warning("Ignoring malformed calibration state")
            return None
        if not state.is_calibrating or state.calibration_start_time is None:
            return None

        samples: list[MetricSnapshot] = []
        for item in data_raw if isinstance(data_raw, list) else []:
            if not isinstance(item, Mapping):
                continue
            try:
                samples.append(MetricSnapshot.coerce(item))
            except ValidationError:
                logger.warning("Skipping malformed calibration sample")
        return CalibrationSession(
            session_id=state.session_id or "cal-restored",
            started_at=state.calibration_start_time,
            samples=samples,
        )

    def _parse_annoyance(self, log_raw: object, state_raw: object) -> AnnoyanceState:
        try:
            return AnnoyanceState.from_persisted(
                log_raw,
                state_raw if isinstance(state_raw, Mapping) else None,
            )
        except ValidationError:
            logger.warning("Ignoring malformed annoyance state")
            return AnnoyanceState()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def push_snapshot(
        self,
        source_id: str,
        snapshot: MetricSnapshot | Mapping[str, Any],
        now: datetime | None = None,
    ) -> bool:
        """Accept one snapshot from a metric source; returns False when rejected."""
        now = now or _utc_now()
        if not self._enabled:
            return False
        if not isinstance(source_id, str) or not source_id:
            logger.warning("Rejected snapshot without a source id")
            return False

        with correlation_scope(source_id=source_id):
            try:
                metrics = MetricSnapshot.coerce(snapshot)
            except ValidationError as exc:
                logger.warning("Rejected malformed snapshot: %s", exc.errors()[:1])
                return False

            self._aggregator.record(source_id, metrics, now)

            session = self._calibrator.session
            if session is None:
                return True

            with correlation_scope(session_id=session.session_id):
                try:
                    completed = self._calibrator.add_sample(metrics, now)
                except CalibrationFinalizing:
                    logger.debug("Sample arrived during finalize; dropped")
                    return True
                if completed:
                    await self._on_calibration_complete(now)
                else:
                    await self._persist(self._calibration_payload(now))
        return True

    def close_source(self, source_id: str) -> bool:
        return self._aggregator.forget(source_id)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> StressScore | None:
        """Run one evaluation step and return the score for this tick, if any.

        When no source is live the previous score is held and nothing is
        emitted.
        """
        now = now or _utc_now()
        if not self._enabled:
            return None

        with observe_tick_duration():
            LIVE_SOURCES.set(len(self._aggregator.live_sources(now)))

            if self._calibrator.is_calibrating:
                await self._advance_calibration(now)
            if self._calibrator.is_calibrating and not (
                self._settings.calibration.adaptive_baseline and self._calibrator.get_baseline() is not None
            ):
                return None

            baseline = self._calibrator.get_baseline()
            if baseline is None:
                return None

            try:
                aggregate = self._aggregator.require_aggregate(now)
            except StaleAggregate as exc:
                logger.debug("Holding previous score: %s", exc)
                if self._smoother is not None:
                    self._decay_history(now)
                return self._latest

            score = self._scorer.score(aggregate, baseline, now)
            if self._smoother is not None:
                score = self._smoother.apply(score, self._scorer.thresholds)
            self._record_score(score)

            if self._settings.calibration.adaptive_baseline and not self._calibrator.is_calibrating:
                await self._maybe_blend(aggregate, score, now)

            await self._maybe_intervene(score, now)
            return score

    async def _advance_calibration(self, now: datetime) -> None:
        session = self._calibrator.session
        if session is None or not self._calibrator.is_elapsed(now):
            return
        with correlation_scope(session_id=session.session_id):
            try:
                self._calibrator.finalize(now)
            except InsufficientCalibrationData:
                logger.debug("Calibration window elapsed without samples; waiting for the first one")
                return
            except CalibrationFinalizing:
                return
            await self._on_calibration_complete(now)

    def _decay_history(self, now: datetime) -> None:
        self._history.decay(now, inactive_after=self._decay_after)
        if self._smoother is not None and not self._history:
            self._smoother.reset()

    def _record_score(self, score: StressScore) -> None:
        self._latest = score
        self._history.append(score)
        STRESS_COMBINED.set(score.combined)
        STRESS_PERCENTAGE.set(score.percentage)
        STRESS_LEVEL_TOTAL.labels(level=score.level.value).inc()

    async def _maybe_blend(self, aggregate: MetricSnapshot, score: StressScore, now: datetime) -> None:
        # Only calm periods may pull the baseline.
        if score.level is not StressLevel.normal:
            return
        interval = self._settings.calibration.blend_interval_s
        if self._last_blend_at is not None and (now - self._last_blend_at).total_seconds() < interval:
            return
        baseline = self._calibrator.blend(aggregate, self._settings.calibration.blend_alpha, now)
        self._last_blend_at = now
        if baseline is not None:
            await self._persist({keys.BASELINE: baseline.to_persisted()})

    async def _maybe_intervene(self, score: StressScore, now: datetime) -> InterventionSignal | None:
        if self._presenter is None or score.severity is None:
            return None
        if score.level.rank < self._settings.detection.min_level.rank:
            return None
        if not self._scheduler.can_show(now):
            return None

        key = self._policy.select(score.severity)
        if key is None:
            return None
        definition = self._policy.definition(key)

        signal = InterventionSignal(
            level=score.level,
            severity=score.severity,
            combined=score.combined,
            percentage=score.percentage,
            timestamp=now,
            intervention=key.value,
            intervention_id=definition.id,
            intervention_name=definition.name,
            duration_seconds=definition.duration_seconds,
            display_mode=definition.display_mode.value,
        )
        try:
            shown = await self._presenter.present(signal)
        except Exception:
            logger.exception("Intervention presenter failed")
            INTERVENTIONS_TOTAL.labels(outcome="error").inc()
            return None
        if not shown:
            INTERVENTIONS_TOTAL.labels(outcome="declined").inc()
            return None

        self._last_signal = signal
        await self.record_shown(now, intervention=key)
        return signal

    # ------------------------------------------------------------------
    # Intervention feedback
    # ------------------------------------------------------------------

    async def record_shown(
        self,
        now: datetime | None = None,
        intervention: InterventionKey | str | None = None,
    ) -> None:
        now = now or _utc_now()
        self._scheduler.record_shown(now)
        if intervention is not None:
            self._policy.remember(intervention)
        INTERVENTIONS_TOTAL.labels(outcome="shown").inc()
        await self._persist(self._annoyance_payload())

    async def record_completed(self, duration_ms: float | None = None, now: datetime | None = None) -> None:
        now = now or _utc_now()
        self._scheduler.record_completed(now)
        INTERVENTIONS_TOTAL.labels(outcome="completed").inc()
        if duration_ms is not None:
            logger.info("Intervention completed after %.1fs", duration_ms / 1000.0)
        await self._persist(self._annoyance_payload())

    async def record_dismissed(self, now: datetime | None = None) -> None:
        now = now or _utc_now()
        self._scheduler.record_dismissed(now)
        INTERVENTIONS_TOTAL.labels(outcome="dismissed").inc()
        await self._persist(self._annoyance_payload())

    async def snooze(self, minutes: float | None = None, now: datetime | None = None) -> None:
        self._scheduler.snooze(now or _utc_now(), minutes)
        await self._persist(self._annoyance_payload())

    async def unsnooze(self) -> None:
        self._scheduler.unsnooze()
        await self._persist(self._annoyance_payload())

    # ------------------------------------------------------------------
    # Baseline lifecycle
    # ------------------------------------------------------------------

    async def start_calibration(self, now: datetime | None = None) -> CalibrationSession:
        now = now or _utc_now()
        session = self._calibrator.start(now)
        CALIBRATIONS_TOTAL.labels(result="started").inc()
        await self._persist(self._calibration_payload(now))
        return session

    async def apply_preset_baseline(self, now: datetime | None = None) -> Baseline:
        """Use the built-in population baseline instead of calibrating."""
        now = now or _utc_now()
        baseline = self._calibrator.apply_preset(DEFAULT_BASELINE_PRESET)
        self._pending_removals.add(keys.CALIBRATION_DATA)
        await self._persist(
            {
                keys.BASELINE: baseline.to_persisted(),
                keys.CALIBRATION_STATE: self._calibration_state(now),
            }
        )
        return baseline

    async def _on_calibration_complete(self, now: datetime) -> None:
        baseline = self._calibrator.get_baseline()
        if baseline is None:
            return
        CALIBRATIONS_TOTAL.labels(result="completed").inc()
        self._last_blend_at = now
        self._pending.pop(keys.CALIBRATION_DATA, None)
        self._pending_removals.add(keys.CALIBRATION_DATA)
        await self._persist(
            {
                keys.BASELINE: baseline.to_persisted(),
                keys.BASELINE_HISTORY: [
                    entry.model_dump(mode="json", by_alias=True) for entry in self._calibrator.history
                ],
                keys.CALIBRATION_STATE: self._calibration_state(now),
            }
        )

    async def reset_baseline(self, now: datetime | None = None, *, recalibrate: bool = True) -> None:
        """Drop baseline, scores and scheduler state, then optionally recalibrate.

        In-memory state is cleared before any store access; clearing the
        store is best effort.
        """
        self._clear_in_memory()
        await self._clear_persisted()
        logger.info("Baseline reset")
        if recalibrate and self._enabled:
            await self.start_calibration(now)

    async def disable(self) -> None:
        self._enabled = False
        self._clear_in_memory()
        await self._clear_persisted()
        logger.info("Engine disabled")

    async def enable(self, now: datetime | None = None) -> None:
        if self._enabled:
            return
        self._enabled = True
        logger.info("Engine enabled")
        if self._calibrator.get_baseline() is None and not self._calibrator.is_calibrating:
            await self.start_calibration(now)

    def set_sensitivity(self, sensitivity: Sensitivity | str) -> None:
        self._scorer.set_sensitivity(sensitivity)
        if self._smoother is not None:
            self._smoother.reset()

    def _clear_in_memory(self) -> None:
        self._calibrator.reset()
        self._history.clear()
        self._scheduler.reset()
        self._policy.forget_recent()
        if self._smoother is not None:
            self._smoother.reset()
        self._aggregator.clear()
        self._latest = None
        self._last_signal = None
        self._last_blend_at = None
        self._pending.clear()

    async def _clear_persisted(self) -> None:
        self._pending_removals.update(keys.ALL_KEYS)
        await self._flush()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, now: datetime | None = None) -> EngineStatus:
        now = now or _utc_now()
        session = self._calibrator.session
        baseline = self._calibrator.get_baseline()
        return EngineStatus(
            enabled=self._enabled,
            calibrating=session is not None,
            calibration_progress=self._calibrator.progress(now),
            session_id=session.session_id if session else None,
            has_baseline=baseline is not None,
            baseline_timestamp=baseline.timestamp if baseline else None,
            latest_score=self._latest,
            trend=self._history.trend(),
            scheduler=self._scheduler.status(now),
            live_sources=self._aggregator.live_sources(now),
            pending_writes=self.pending_writes,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _calibration_state(self, now: datetime) -> dict[str, Any]:
        session = self._calibrator.session
        state = CalibrationState(
            is_calibrating=session is not None,
            calibration_start_time=session.started_at if session else None,
            progress=self._calibrator.progress(now),
            session_id=session.session_id if session else None,
        )
        return state.model_dump(mode="json", by_alias=True)

    def _calibration_payload(self, now: datetime) -> dict[str, Any]:
        session = self._calibrator.session
        samples = session.samples if session else []
        return {
            keys.CALIBRATION_STATE: self._calibration_state(now),
            keys.CALIBRATION_DATA: [sample.to_wire() for sample in samples],
        }

    def _annoyance_payload(self) -> dict[str, Any]:
        log, state = self._scheduler.state.to_persisted()
        return {keys.ANNOYANCE_LOG: log, keys.ANNOYANCE_STATE: state}

    async def _persist(self, values: Mapping[str, Any]) -> bool:
        self._pending.update(values)
        self._pending_removals.difference_update(values)
        return await self._flush()

    async def _flush(self) -> bool:
        if self._pending_removals:
            removals = sorted(self._pending_removals)
            try:
                await self._store.remove(removals)
            except PersistenceWriteFailure as exc:
                self._record_write_failure(removals, exc)
                return False
            self._pending_removals.difference_update(removals)

        if not self._pending:
            return True

        batch = dict(self._pending)
        try:
            await self._store.set_many(batch)
        except PersistenceWriteFailure as exc:
            self._record_write_failure(list(batch), exc)
            return False

        for key, value in batch.items():
            if self._pending.get(key) is value:
                del self._pending[key]
        return True

    def _record_write_failure(self, failed: list[str], exc: PersistenceWriteFailure) -> None:
        for key in failed:
            PERSISTENCE_FAILURES_TOTAL.labels(key=key).inc()
        logger.warning("State write failed, will retry %s: %s", ", ".join(failed), exc)


__all__ = ["EngineStatus", "StressEngine"]
