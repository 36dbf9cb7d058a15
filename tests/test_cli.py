from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner
from coga.main import cli, read_records

from tests.fakes import T0, snapshot_at_baseline, stressed_snapshot


@pytest.fixture
def runner(restore_root_logging: logging.Logger) -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "coga.yaml"
    path.write_text(
        "coga:\n"
        "  storage:\n"
        f"    db_path: {tmp_path / 'coga.db'}\n"
        "  observability:\n"
        "    log_level: WARNING\n",
        encoding="utf-8",
    )
    return path


def _write_records(path: Path, snapshots) -> Path:
    lines = [json.dumps({"source": "tab-1", "metrics": snapshot.to_wire()}) for snapshot in snapshots]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _stdout_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


class TestReadRecords:
    def test_parses_source_and_timestamp(self, tmp_path: Path) -> None:
        path = _write_records(tmp_path / "in.jsonl", [stressed_snapshot(timestamp=T0)])
        [record] = list(read_records(path))
        assert record.source_id == "tab-1"
        assert record.timestamp == T0

    def test_bad_line_reports_line_number(self, tmp_path: Path) -> None:
        path = tmp_path / "in.jsonl"
        path.write_text("\n{not json\n", encoding="utf-8")
        with pytest.raises(ValueError, match="line 2"):
            list(read_records(path))


class TestReplayCommand:
    def test_prints_one_score_per_tick(self, runner: CliRunner, tmp_path: Path, config_path: Path) -> None:
        snapshots = [stressed_snapshot(timestamp=T0 + timedelta(seconds=offset)) for offset in range(3)]
        records = _write_records(tmp_path / "in.jsonl", snapshots)

        result = runner.invoke(cli, ["replay", str(records), "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        lines = _stdout_lines(result.stdout)
        assert len(lines) == 3
        assert {line["level"] for line in lines} == {"high"}
        assert [line["intervention"] for line in lines] == ["microBreak", None, None]

    def test_calm_replay_has_no_interventions(self, runner: CliRunner, tmp_path: Path, config_path: Path) -> None:
        snapshots = [snapshot_at_baseline(timestamp=T0 + timedelta(seconds=offset)) for offset in range(2)]
        records = _write_records(tmp_path / "in.jsonl", snapshots)

        result = runner.invoke(cli, ["replay", str(records), "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        lines = _stdout_lines(result.stdout)
        assert [line["level"] for line in lines] == ["normal", "normal"]
        assert all(line["intervention"] is None for line in lines)

    def test_invalid_file_fails(self, runner: CliRunner, tmp_path: Path, config_path: Path) -> None:
        records = tmp_path / "in.jsonl"
        records.write_text('{"metrics": {}}\n', encoding="utf-8")

        result = runner.invoke(cli, ["replay", str(records), "--config", str(config_path)])

        assert result.exit_code != 0
        assert "missing timestamp" in result.output


class TestStateCommands:
    def test_status_of_fresh_database(self, runner: CliRunner, config_path: Path) -> None:
        result = runner.invoke(cli, ["status", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        status = json.loads(result.stdout)
        assert status["enabled"] is True
        assert status["has_baseline"] is False
        assert status["scheduler"]["state"] == "available"

    def test_reset_clears_replayed_state(
        self, runner: CliRunner, tmp_path: Path, config_path: Path
    ) -> None:
        db_path = tmp_path / "coga.db"
        records = _write_records(tmp_path / "in.jsonl", [stressed_snapshot(timestamp=T0)])
        replayed = runner.invoke(
            cli, ["replay", str(records), "--config", str(config_path), "--db", str(db_path)]
        )
        assert replayed.exit_code == 0, replayed.output

        before = json.loads(runner.invoke(cli, ["status", "--config", str(config_path)]).stdout)
        assert before["has_baseline"] is True

        result = runner.invoke(cli, ["reset", "--config", str(config_path)])
        assert result.exit_code == 0, result.output
        assert "State cleared." in result.stdout

        after = json.loads(runner.invoke(cli, ["status", "--config", str(config_path)]).stdout)
        assert after["has_baseline"] is False


class TestRunCommand:
    def test_exposes_metrics_from_observability_config(
        self, runner: CliRunner, config_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        exported: list[dict] = []
        monkeypatch.setattr("coga.main.serve_metrics", lambda **kwargs: exported.append(kwargs) or True)

        result = runner.invoke(cli, ["run", "--config", str(config_path)], input="")

        assert result.exit_code == 0, result.output
        assert exported == [{"enabled": True, "host": "127.0.0.1", "port": 9464}]
