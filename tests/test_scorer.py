from __future__ import annotations

import math
from datetime import timedelta

import pytest
from coga.detection.scorer import (
    LevelSmoother,
    StressHistory,
    StressScorer,
    Thresholds,
    classify_level,
    derive_severity,
    directional_z,
    stress_percentage,
)
from coga.models.baseline import DEFAULT_BASELINE_PRESET, MetricBaseline
from coga.models.stress import Sensitivity, StressLevel, StressScore, StressSeverity, StressTrend

from tests.fakes import T0, moderate_snapshot, snapshot_at_baseline, stressed_snapshot

MEDIUM = Thresholds.for_sensitivity(Sensitivity.medium)


class TestDirectionalZ:
    def test_only_upward_deviation_counts(self) -> None:
        baseline = MetricBaseline(center=10.0, scale=2.0)
        assert directional_z(6.0, baseline) == 0.0
        assert directional_z(10.0, baseline) == 0.0
        assert directional_z(13.0, baseline) == pytest.approx(1.5)

    def test_capped_at_four_before_threshold(self) -> None:
        baseline = MetricBaseline(center=0.0, scale=1.0)
        assert directional_z(100.0, baseline, 0.2) == pytest.approx(3.8)

    def test_below_threshold_is_zero(self) -> None:
        baseline = MetricBaseline(center=10.0, scale=10.0)
        assert directional_z(11.5, baseline, 0.2) == 0.0

    def test_non_positive_scale_uses_floor(self) -> None:
        baseline = MetricBaseline(center=8.0, scale=0.0)
        assert directional_z(12.0, baseline, 0.2) == pytest.approx(1.8)

    def test_missing_baseline_or_nan_contributes_zero(self) -> None:
        assert directional_z(5.0, None) == 0.0
        assert directional_z(math.nan, MetricBaseline(center=0.0, scale=1.0)) == 0.0


class TestThresholds:
    def test_per_sensitivity(self) -> None:
        assert Thresholds.for_sensitivity("low") == Thresholds(moderate=1.65, high=3.3)
        assert Thresholds.for_sensitivity("medium") == Thresholds(moderate=1.3, high=2.6)
        assert Thresholds.for_sensitivity("high") == Thresholds(moderate=1.1, high=2.2)

    def test_unknown_sensitivity_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            Thresholds.for_sensitivity("extreme")

    def test_boundary_is_moderate_at_fifty_percent(self) -> None:
        assert classify_level(1.3, MEDIUM) is StressLevel.moderate
        assert classify_level(1.29, MEDIUM) is StressLevel.normal
        assert classify_level(2.6, MEDIUM) is StressLevel.high
        assert stress_percentage(1.3, MEDIUM) == 50.0


class TestPercentage:
    def test_segments(self) -> None:
        assert stress_percentage(0.0, MEDIUM) == 0.0
        assert stress_percentage(0.65, MEDIUM) == pytest.approx(25.0)
        assert stress_percentage(1.95, MEDIUM) == pytest.approx(65.0)
        assert stress_percentage(2.6, MEDIUM) == pytest.approx(80.0)
        assert stress_percentage(3.25, MEDIUM) == pytest.approx(90.0)
        assert stress_percentage(3.9, MEDIUM) == pytest.approx(100.0)
        assert stress_percentage(50.0, MEDIUM) == 100.0

    @pytest.mark.parametrize("sensitivity", list(Sensitivity))
    def test_monotonic_and_continuous(self, sensitivity: Sensitivity) -> None:
        thresholds = Thresholds.for_sensitivity(sensitivity)
        values = [step * 0.005 for step in range(1200)]
        percentages = [stress_percentage(value, thresholds) for value in values]

        assert all(b >= a for a, b in zip(percentages, percentages[1:], strict=False))
        assert max(b - a for a, b in zip(percentages, percentages[1:], strict=False)) < 1.0
        for knee in (thresholds.moderate, thresholds.high):
            below = stress_percentage(knee - 1e-9, thresholds)
            above = stress_percentage(knee + 1e-9, thresholds)
            assert above - below == pytest.approx(0.0, abs=1e-5)


class TestSeverity:
    def test_from_percentage(self) -> None:
        assert derive_severity(80.0, StressLevel.high) is StressSeverity.severe
        assert derive_severity(75.0, StressLevel.moderate) is StressSeverity.severe
        assert derive_severity(60.0, StressLevel.moderate) is StressSeverity.moderate
        assert derive_severity(35.0, StressLevel.normal) is StressSeverity.mild

    def test_level_fallback_below_mild(self) -> None:
        assert derive_severity(10.0, StressLevel.normal) is None
        assert derive_severity(10.0, StressLevel.moderate) is StressSeverity.moderate
        assert derive_severity(10.0, StressLevel.high) is StressSeverity.severe


class TestStressScorer:
    def test_baseline_activity_is_calm(self) -> None:
        score = StressScorer().score(snapshot_at_baseline(), DEFAULT_BASELINE_PRESET, T0)
        assert score.combined == 0.0
        assert score.level is StressLevel.normal
        assert score.severity is None
        assert score.percentage == 0.0

    def test_click_frequency_scenario(self) -> None:
        scorer = StressScorer()
        aggregate = snapshot_at_baseline(mouse={"click_frequency_per_min": 18.0})

        score = scorer.score(aggregate, DEFAULT_BASELINE_PRESET, T0)

        # z = (18 - 9) / 3 = 3.0, minus the 0.2 threshold, weight 0.15 over 0.7.
        assert score.mouse_score == pytest.approx(2.8 * 0.15 / 0.7)
        assert score.keyboard_score == 0.0
        assert score.combined == pytest.approx(0.7 * 0.6)
        assert score.metrics == aggregate

    def test_path_penalty(self) -> None:
        aggregate = snapshot_at_baseline(mouse={"path_efficiency": 0.18})
        score = StressScorer().score(aggregate, DEFAULT_BASELINE_PRESET, T0)
        assert score.mouse_score == pytest.approx(0.1)

    def test_pause_penalty_is_capped(self) -> None:
        small = snapshot_at_baseline(mouse={"pause_ratio": 0.32})
        large = snapshot_at_baseline(mouse={"pause_ratio": 0.95})
        scorer = StressScorer()
        assert scorer.score(small, DEFAULT_BASELINE_PRESET, T0).mouse_score == pytest.approx(0.2)
        assert scorer.score(large, DEFAULT_BASELINE_PRESET, T0).mouse_score == pytest.approx(0.5)

    def test_keyboard_weights(self) -> None:
        aggregate = snapshot_at_baseline(keyboard={"typing_error_rate": 5.0})
        score = StressScorer().score(aggregate, DEFAULT_BASELINE_PRESET, T0)
        assert score.keyboard_score == pytest.approx(3.8 * 0.5)
        assert score.combined == pytest.approx(0.3 * 1.9)

    def test_moderate_stress(self) -> None:
        score = StressScorer().score(moderate_snapshot(), DEFAULT_BASELINE_PRESET, T0)
        assert score.combined == pytest.approx(1.71)
        assert score.level is StressLevel.moderate
        assert score.severity is StressSeverity.moderate

    def test_high_stress(self) -> None:
        score = StressScorer().score(stressed_snapshot(), DEFAULT_BASELINE_PRESET, T0)
        assert score.level is StressLevel.high
        assert score.severity is StressSeverity.severe
        assert score.percentage == 100.0

    def test_sensitivity_changes_level_not_score(self) -> None:
        aggregate = moderate_snapshot()
        low = StressScorer("low").score(aggregate, DEFAULT_BASELINE_PRESET, T0)
        high = StressScorer("high").score(aggregate, DEFAULT_BASELINE_PRESET, T0)
        assert low.combined == pytest.approx(high.combined)
        assert low.level is StressLevel.moderate
        assert high.percentage > low.percentage

    def test_non_finite_result_becomes_neutral(self, monkeypatch: pytest.MonkeyPatch) -> None:
        scorer = StressScorer()
        monkeypatch.setattr(scorer, "mouse_score", lambda metrics, baseline: math.nan)

        score = scorer.score(stressed_snapshot(), DEFAULT_BASELINE_PRESET, T0)

        assert score.combined == 0.0
        assert score.level is StressLevel.normal
        assert score.percentage == 0.0


def _score(combined: float, seconds: float = 0.0) -> StressScore:
    return StressScore(
        mouse_score=combined,
        keyboard_score=0.0,
        combined=combined,
        level=StressLevel.normal,
        percentage=0.0,
        timestamp=T0 + timedelta(seconds=seconds),
    )


class TestStressHistory:
    def test_trend_increasing(self) -> None:
        history = StressHistory()
        for step in range(10):
            history.append(_score(step * 0.5, step))
        assert history.trend() is StressTrend.increasing

    def test_trend_decreasing(self) -> None:
        history = StressHistory()
        for step in range(10):
            history.append(_score(5.0 - step * 0.5, step))
        assert history.trend() is StressTrend.decreasing

    def test_trend_stable_when_flat(self) -> None:
        history = StressHistory()
        for step in range(10):
            history.append(_score(1.0, step))
        assert history.trend() is StressTrend.stable

    def test_trend_waits_for_a_full_window(self) -> None:
        history = StressHistory()
        for step in range(9):
            history.append(_score(step * 0.5, step))
        assert history.trend() is StressTrend.stable
        assert history.trend(window=3) is StressTrend.increasing

        history.append(_score(4.5, 9))
        assert history.trend() is StressTrend.increasing

    def test_decay_waits_for_inactivity(self) -> None:
        history = StressHistory()
        for step in range(6):
            history.append(_score(1.0, step))
        idle_from = T0 + timedelta(seconds=5)

        assert history.decay(idle_from + timedelta(seconds=29), inactive_after=timedelta(seconds=30)) == 0
        assert len(history) == 6

        assert history.decay(idle_from + timedelta(seconds=30), inactive_after=timedelta(seconds=30)) == 6
        assert history.latest() is None

    def test_decay_of_empty_history(self) -> None:
        assert StressHistory().decay(T0, inactive_after=timedelta(seconds=30)) == 0

    def test_bounded(self) -> None:
        history = StressHistory(max_entries=100)
        for step in range(150):
            history.append(_score(0.1, step))
        assert len(history) == 100

    def test_average_over_window(self) -> None:
        history = StressHistory()
        history.append(_score(10.0, 0))
        history.append(_score(1.0, 400))
        history.append(_score(3.0, 500))
        assert history.average(300) == pytest.approx(2.0)
        history.clear()
        assert history.average() == 0.0
        assert history.latest() is None


class TestLevelSmoother:
    def test_exponential_smoothing(self) -> None:
        smoother = LevelSmoother(alpha=0.3, hysteresis=3)

        first = smoother.apply(_score(4.0), MEDIUM)
        assert first.combined == pytest.approx(1.2)
        assert first.percentage == pytest.approx(1.2 / 1.3 * 50.0)
        assert first.severity is StressSeverity.mild
        assert first.mouse_score == 4.0

        second = smoother.apply(_score(4.0, 1), MEDIUM)
        assert second.combined == pytest.approx(2.04)

    def test_level_changes_after_consecutive_readings(self) -> None:
        smoother = LevelSmoother(alpha=1.0, hysteresis=3)

        levels = [smoother.apply(_score(4.0, step), MEDIUM).level for step in range(3)]
        assert levels == [StressLevel.normal, StressLevel.normal, StressLevel.high]

        calm = [smoother.apply(_score(0.0, step), MEDIUM).level for step in range(3, 6)]
        assert calm == [StressLevel.high, StressLevel.high, StressLevel.normal]

    def test_interrupted_run_starts_over(self) -> None:
        smoother = LevelSmoother(alpha=1.0, hysteresis=3)
        for combined in (4.0, 4.0, 0.0, 4.0, 4.0):
            result = smoother.apply(_score(combined), MEDIUM)
        assert result.level is StressLevel.normal
        assert smoother.apply(_score(4.0), MEDIUM).level is StressLevel.high

    def test_elevated_level_follows_latest_raw_level(self) -> None:
        smoother = LevelSmoother(alpha=1.0, hysteresis=1)
        assert smoother.apply(_score(4.0), MEDIUM).level is StressLevel.high
        assert smoother.apply(_score(1.5), MEDIUM).level is StressLevel.moderate

    def test_reset(self) -> None:
        smoother = LevelSmoother(alpha=0.5, hysteresis=1)
        smoother.apply(_score(4.0), MEDIUM)
        smoother.reset()
        assert smoother.smoothed == 0.0
        assert smoother.level is StressLevel.normal

    def test_rejects_bad_alpha(self) -> None:
        with pytest.raises(ValueError):
            LevelSmoother(alpha=0.0)
