"""COGA CLI entry point and runtime wiring."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from coga.config import CogaSettings, load_config
from coga.core.engine import StressEngine
from coga.core.logging import setup_logging
from coga.core.metrics import serve_metrics
from coga.models.metrics import MetricSnapshot
from coga.models.stress import InterventionSignal, StressScore
from coga.persistence.migrations import run_migrations
from coga.persistence.state_store import InMemoryStateStore, SQLiteStateStore
from coga.scheduler.ap_scheduler import CogaScheduler

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = "config/coga.yaml"
_DEFAULT_SOURCE = "stdin"


class LoggingPresenter:
    """Presenter for headless runs: logs the signal and echoes it as JSON."""

    async def present(self, signal: InterventionSignal) -> bool:
        logger.info(
            "Intervention %s (%s, %.0f%%)",
            signal.intervention,
            signal.severity.value,
            signal.percentage,
        )
        click.echo(json.dumps({"intervention": signal.model_dump(mode="json")}))
        return True


class RecordingPresenter:
    """Presenter for replays; accepts every signal and keeps it."""

    def __init__(self) -> None:
        self.signals: list[InterventionSignal] = []

    async def present(self, signal: InterventionSignal) -> bool:
        self.signals.append(signal)
        return True


@dataclass(frozen=True, slots=True)
class ReplayRecord:
    source_id: str
    snapshot: MetricSnapshot

    @property
    def timestamp(self) -> datetime:
        return self.snapshot.timestamp


def _load_settings(config_path: str) -> CogaSettings:
    try:
        if Path(config_path).exists():
            return load_config(config_path)
        return CogaSettings()
    except (ValueError, ValidationError) as exc:
        raise click.ClickException(f"invalid config {config_path}: {exc}") from exc


def _setup_logging(settings: CogaSettings) -> None:
    setup_logging(settings.observability.log_level, json_output=settings.observability.json_logs)


def _parse_record(raw: object, line_no: int) -> ReplayRecord:
    if not isinstance(raw, dict):
        raise ValueError(f"line {line_no}: expected a JSON object")
    metrics = raw.get("metrics", raw)
    if not isinstance(metrics, dict):
        raise ValueError(f"line {line_no}: metrics must be an object")
    timestamp = raw.get("timestamp", metrics.get("timestamp"))
    if timestamp is None:
        raise ValueError(f"line {line_no}: missing timestamp")
    snapshot = MetricSnapshot.coerce({**metrics, "timestamp": timestamp})
    source_id = str(raw.get("source") or _DEFAULT_SOURCE)
    return ReplayRecord(source_id=source_id, snapshot=snapshot)


def read_records(path: Path) -> Iterator[ReplayRecord]:
    """Yield replay records from a JSONL file, skipping blank lines."""
    with path.open(encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                yield _parse_record(json.loads(line), line_no)
            except (json.JSONDecodeError, ValidationError) as exc:
                raise ValueError(f"line {line_no}: {exc}") from exc


async def replay(
    settings: CogaSettings,
    records: list[ReplayRecord],
    *,
    calibrate: bool = False,
    db_path: str | None = None,
) -> list[dict[str, Any]]:
    """Feed ``records`` through an engine on a simulated clock.

    Ticks fire every ``detection.tick_interval_s`` of snapshot time, so the
    output depends only on the input file.
    """
    if not records:
        return []
    records = sorted(records, key=lambda record: record.timestamp)

    if db_path is not None:
        await run_migrations(db_path)
        store: SQLiteStateStore | InMemoryStateStore = SQLiteStateStore(db_path, settings.storage.key_prefix)
    else:
        store = InMemoryStateStore()

    presenter = RecordingPresenter()
    engine = StressEngine(settings, store, presenter=presenter)
    await engine.load()

    start = records[0].timestamp
    if calibrate:
        await engine.start_calibration(start)
    elif engine.calibrator.get_baseline() is None:
        await engine.apply_preset_baseline(start)

    interval = timedelta(seconds=settings.detection.tick_interval_s)
    next_tick = start
    results: list[dict[str, Any]] = []
    for record in records:
        await engine.push_snapshot(record.source_id, record.snapshot, now=record.timestamp)
        while next_tick <= record.timestamp:
            score = await engine.tick(next_tick)
            if score is not None and score.timestamp == next_tick:
                results.append(_score_line(score, presenter, next_tick))
            next_tick += interval
    return results


def _score_line(score: StressScore, presenter: RecordingPresenter, tick_at: datetime) -> dict[str, Any]:
    line = score.summary()
    shown = [signal.intervention for signal in presenter.signals if signal.timestamp == tick_at]
    line["intervention"] = shown[0] if shown else None
    return line


async def _pump_stdin(engine: StressEngine) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping non-JSON input line")
            continue
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object input line")
            continue

        event = raw.get("event")
        if event == "completed":
            await engine.record_completed(raw.get("durationMs"))
        elif event == "dismissed":
            await engine.record_dismissed()
        elif event == "closed":
            engine.close_source(str(raw.get("source") or _DEFAULT_SOURCE))
        else:
            source_id = str(raw.get("source") or _DEFAULT_SOURCE)
            metrics = raw.get("metrics", raw)
            if isinstance(metrics, dict):
                await engine.push_snapshot(source_id, metrics)


async def _run_live(settings: CogaSettings, *, calibrate: bool) -> None:
    db = str(settings.storage.db_path)
    await run_migrations(db)
    store = SQLiteStateStore(db, settings.storage.key_prefix)
    engine = StressEngine(settings, store, presenter=LoggingPresenter())
    await engine.load()

    if calibrate or (engine.calibrator.get_baseline() is None and not engine.calibrator.is_calibrating):
        await engine.start_calibration()

    observability = settings.observability
    serve_metrics(
        enabled=observability.metrics_enabled,
        host=observability.metrics_host,
        port=observability.metrics_port,
    )
    scheduler = CogaScheduler()
    scheduler.add_heartbeat("tick", settings.detection.tick_interval_s, engine.tick)
    scheduler.add_heartbeat("sync", settings.storage.sync_interval_s, engine.sync_from_store)
    scheduler.start()
    try:
        await _pump_stdin(engine)
    finally:
        scheduler.stop()


async def _open_engine(settings: CogaSettings) -> StressEngine:
    db = str(settings.storage.db_path)
    await run_migrations(db)
    engine = StressEngine(settings, SQLiteStateStore(db, settings.storage.key_prefix))
    await engine.load()
    return engine


@click.group()
def cli() -> None:
    """COGA behavioral stress engine."""


@cli.command("run")
@click.option("--config", "config_path", default=_DEFAULT_CONFIG, show_default=True)
@click.option("--calibrate", is_flag=True, help="Start a fresh calibration even if a baseline exists.")
def run_command(config_path: str, calibrate: bool) -> None:
    """Score JSONL snapshots read from stdin and log interventions."""
    settings = _load_settings(config_path)
    _setup_logging(settings)
    try:
        asyncio.run(_run_live(settings, calibrate=calibrate))
    except (RuntimeError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        click.echo("Shutting down.", err=True)


@cli.command("replay")
@click.argument("file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--config", "config_path", default=_DEFAULT_CONFIG, show_default=True)
@click.option("--calibrate", is_flag=True, help="Calibrate from the first records instead of the preset.")
@click.option("--db", "db_path", default=None, help="Persist replay state to this SQLite file.")
def replay_command(file: Path, config_path: str, calibrate: bool, db_path: str | None) -> None:
    """Replay a JSONL snapshot file and print one JSON score per tick."""
    settings = _load_settings(config_path)
    _setup_logging(settings)
    try:
        records = list(read_records(file))
    except ValueError as exc:
        raise click.ClickException(f"{file}: {exc}") from exc

    for line in asyncio.run(replay(settings, records, calibrate=calibrate, db_path=db_path)):
        click.echo(json.dumps(line))


@cli.command("status")
@click.option("--config", "config_path", default=_DEFAULT_CONFIG, show_default=True)
def status_command(config_path: str) -> None:
    """Print the persisted engine state."""
    settings = _load_settings(config_path)
    _setup_logging(settings)
    engine = asyncio.run(_open_engine(settings))
    status = engine.status()
    click.echo(json.dumps(status.model_dump(mode="json", exclude={"latest_score"}), indent=2))


@cli.command("reset")
@click.option("--config", "config_path", default=_DEFAULT_CONFIG, show_default=True)
def reset_command(config_path: str) -> None:
    """Clear the baseline, calibration and intervention history."""
    settings = _load_settings(config_path)
    _setup_logging(settings)

    async def _reset() -> list[str]:
        engine = await _open_engine(settings)
        await engine.reset_baseline(recalibrate=False)
        return engine.pending_writes

    pending = asyncio.run(_reset())
    if pending:
        raise click.ClickException(f"could not clear stored state: {', '.join(pending)}")
    click.echo("State cleared.")


def main() -> None:
    cli()


__all__ = ["cli", "main", "read_records", "replay"]


if __name__ == "__main__":
    main()
