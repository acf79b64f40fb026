"""Tests for CPU rate estimation."""

import pytest

from procwatch.rates import CpuRateEstimator, SamplerState, estimate, memory_percent


class TestEstimate:
    def test_first_sample_reports_zero(self):
        """No previous cycle means no rate, whatever the absolute counters."""
        percents, state = estimate(SamplerState.empty(), 987_654, {1: 50_000, 2: 3}, 8)

        assert percents == {1: 0.0, 2: 0.0}
        assert state.total_ticks == 987_654
        assert dict(state.proc_ticks) == {1: 50_000, 2: 3}
        assert not state.is_first

    def test_rate_formula(self):
        """cpu% = (p1 - p0) / (T1 - T0) * cores * 100."""
        state = SamplerState(total_ticks=1000, proc_ticks={10: 100, 20: 0})

        percents, _ = estimate(state, 1400, {10: 150, 20: 40}, 4)

        assert percents[10] == pytest.approx(50 / 400 * 4 * 100)  # 50.0
        assert percents[20] == pytest.approx(40 / 400 * 4 * 100)  # 40.0

    @pytest.mark.parametrize(
        ("t0", "t1", "p0", "p1", "cores"),
        [
            (0, 100, 0, 100, 1),
            (500, 900, 10, 11, 2),
            (1, 10_001, 7, 9_007, 8),
            (123, 124, 5, 5, 16),
        ],
    )
    def test_rate_formula_examples(self, t0, t1, p0, p1, cores):
        state = SamplerState(total_ticks=t0, proc_ticks={1: p0})

        percents, _ = estimate(state, t1, {1: p1}, cores)

        assert percents[1] == pytest.approx((p1 - p0) / (t1 - t0) * cores * 100)

    def test_multicore_process_can_exceed_100(self):
        state = SamplerState(total_ticks=0, proc_ticks={1: 0})

        percents, _ = estimate(state, 400, {1: 300}, 4)

        assert percents[1] == pytest.approx(300.0)

    def test_negative_delta_clamped(self):
        """A pid reused by a fresh process has fewer ticks than before."""
        state = SamplerState(total_ticks=1000, proc_ticks={7: 5000})

        percents, _ = estimate(state, 2000, {7: 10}, 4)

        assert percents[7] == 0.0

    def test_unseen_pid_reports_zero(self):
        state = SamplerState(total_ticks=1000, proc_ticks={1: 10})

        percents, _ = estimate(state, 2000, {1: 20, 99: 500}, 2)

        assert percents[99] == 0.0
        assert percents[1] > 0

    @pytest.mark.parametrize("total", [1000, 999, 0])
    def test_non_positive_total_delta(self, total):
        state = SamplerState(total_ticks=1000, proc_ticks={1: 10})

        percents, _ = estimate(state, total, {1: 50}, 4)

        assert percents == {1: 0.0}

    def test_new_state_drops_exited_pids(self):
        state = SamplerState(total_ticks=100, proc_ticks={1: 10, 2: 20})

        _, new_state = estimate(state, 200, {2: 25}, 1)

        assert dict(new_state.proc_ticks) == {2: 25}

    def test_input_state_not_mutated(self):
        ticks = {1: 10}
        state = SamplerState(total_ticks=100, proc_ticks=ticks)

        estimate(state, 200, {1: 50, 2: 5}, 1)

        assert state.total_ticks == 100
        assert dict(state.proc_ticks) == {1: 10}


class TestMemoryPercent:
    def test_fraction_of_total(self):
        assert memory_percent(2_000, 8_000) == pytest.approx(25.0)

    def test_unknown_total(self):
        assert memory_percent(2_000, 0) == 0.0


class TestCpuRateEstimator:
    def test_first_update_zero_then_rates(self):
        estimator = CpuRateEstimator()

        assert estimator.update(1000, {1: 100}, 2) == {1: 0.0}
        second = estimator.update(1200, {1: 150}, 2)

        assert second[1] == pytest.approx(50 / 200 * 2 * 100)
        assert estimator.state.total_ticks == 1200

    def test_reset_starts_new_session(self):
        estimator = CpuRateEstimator()
        estimator.update(1000, {1: 100}, 1)

        estimator.reset()

        assert estimator.state.is_first
        assert estimator.update(5000, {1: 4000}, 1) == {1: 0.0}
