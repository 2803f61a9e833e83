"""Tests for the 1D stackup analysis engine."""

import math

import numpy as np
import pytest

from tolstack.analysis import (
    AnalysisOutcome,
    analyze_batch,
    analyze_stackup,
    compute_monte_carlo,
    compute_rss,
    compute_worst_case,
    trace_rss_mean,
)
from tolstack.models import (
    Contributor,
    Direction,
    Distribution,
    GdtContribution,
    InvalidStackupError,
    Stackup,
    Target,
)


def _example_stackup(sigma_level: float = 6.0) -> Stackup:
    """Three-part chain: A + C - B against 67.0 [65.5, 68.5]."""
    stackup = Stackup(
        title="Example",
        target=Target(name="Gap", nominal=67.0, upper_limit=68.5, lower_limit=65.5),
        sigma_level=sigma_level,
    )
    stackup.add(Contributor(name="A", nominal=10.0, plus_tol=0.1, minus_tol=0.1))
    stackup.add(Contributor(name="B", nominal=3.0, plus_tol=0.05, minus_tol=0.05,
                            direction=Direction.NEGATIVE))
    stackup.add(Contributor(name="C", nominal=60.0, plus_tol=0.2, minus_tol=0.2))
    return stackup


def _single(nominal: float, tol: float, lsl: float, usl: float, **kwargs) -> Stackup:
    stackup = Stackup(
        title="Single",
        target=Target(name="T", nominal=nominal, upper_limit=usl, lower_limit=lsl),
        **kwargs,
    )
    stackup.add(Contributor(name="P", nominal=nominal, plus_tol=tol, minus_tol=tol))
    return stackup


def _asymmetric_stackup() -> Stackup:
    stackup = Stackup(
        title="Asym",
        target=Target(name="Gap", nominal=7.0, upper_limit=7.5, lower_limit=6.5),
    )
    stackup.add(Contributor(name="Housing", nominal=10.0, plus_tol=0.2, minus_tol=0.1))
    stackup.add(Contributor(name="Shaft", nominal=3.0, plus_tol=0.05, minus_tol=0.02,
                            direction=Direction.NEGATIVE))
    return stackup


class TestWorstCase:
    def test_example_range(self):
        r = compute_worst_case(_example_stackup())
        assert r.nominal == pytest.approx(67.0)
        assert r.min == pytest.approx(66.65)
        assert r.max == pytest.approx(67.35)
        assert r.margin == pytest.approx(1.15)
        assert r.outcome == AnalysisOutcome.PASS

    def test_negative_direction_uses_opposite_limits(self):
        r = compute_worst_case(_asymmetric_stackup())
        # min = 9.9 - 3.05, max = 10.2 - 2.98
        assert r.min == pytest.approx(6.85)
        assert r.max == pytest.approx(7.22)

    def test_marginal_at_threshold(self):
        # margin 1.0 == 0.1 * (10 - 0)
        r = compute_worst_case(_single(5.0, 4.0, lsl=0.0, usl=10.0))
        assert r.margin == pytest.approx(1.0)
        assert r.outcome == AnalysisOutcome.MARGINAL

    def test_pass_above_threshold(self):
        r = compute_worst_case(_single(5.0, 3.5, lsl=0.0, usl=10.0))
        assert r.margin == pytest.approx(1.5)
        assert r.outcome == AnalysisOutcome.PASS

    def test_fail_out_of_spec(self):
        r = compute_worst_case(_single(5.0, 5.5, lsl=0.0, usl=10.0))
        assert r.margin == pytest.approx(-0.5)
        assert r.outcome == AnalysisOutcome.FAIL

    def test_custom_marginal_fraction(self):
        r = compute_worst_case(_single(5.0, 3.5, lsl=0.0, usl=10.0), marginal_fraction=0.2)
        assert r.outcome == AnalysisOutcome.MARGINAL

    def test_gdt_position_widens_range(self):
        stackup = _single(10.0, 0.1, lsl=9.0, usl=11.0)
        stackup.contributors[0].gdt_position = GdtContribution(position_tolerance=0.1)
        plain = compute_worst_case(stackup)
        widened = compute_worst_case(stackup, include_gdt=True)
        assert plain.max == pytest.approx(10.1)
        assert widened.min == pytest.approx(9.85)
        assert widened.max == pytest.approx(10.15)

    def test_empty_rejected(self):
        stackup = Stackup(title="Empty", target=Target("T", 0.0, 1.0, -1.0))
        with pytest.raises(InvalidStackupError):
            compute_worst_case(stackup)

    def test_summary(self):
        s = compute_worst_case(_example_stackup()).summary()
        assert "Worst-Case" in s
        assert "pass" in s


class TestRSS:
    def test_example_sigma_level_4(self):
        r = compute_rss(_example_stackup(sigma_level=4.0))
        expected = math.sqrt(0.05 ** 2 + 0.025 ** 2 + 0.1 ** 2)
        assert r.sigma == pytest.approx(expected)
        assert r.sigma == pytest.approx(0.1146, abs=1e-4)
        assert r.outcome == AnalysisOutcome.PASS

    def test_example_sigma_level_6(self):
        r = compute_rss(_example_stackup())
        expected = math.sqrt((0.2 / 6) ** 2 + (0.1 / 6) ** 2 + (0.4 / 6) ** 2)
        assert r.mean == pytest.approx(67.0)
        assert r.sigma == pytest.approx(expected)
        assert r.half_width == pytest.approx(3.0 * expected)
        assert r.cp == pytest.approx(3.0 / (6.0 * expected))
        assert r.cpk == pytest.approx(1.5 / (3.0 * expected))
        assert r.outcome == AnalysisOutcome.PASS
        assert r.yield_percent == pytest.approx(100.0)

    def test_variance_is_sum_of_squares(self):
        stackup = _example_stackup()
        r = compute_rss(stackup)
        sum_sq = sum((c.tolerance_band / stackup.sigma_level) ** 2 for c in stackup.contributors)
        assert r.sigma ** 2 == pytest.approx(sum_sq)

    def test_asymmetric_process_mean(self):
        r = compute_rss(_asymmetric_stackup())
        # 10.05 - 3.015
        assert r.mean == pytest.approx(7.035)
        assert r.shifted_mean is None

    def test_sensitivity_sums_to_100(self):
        r = compute_rss(_example_stackup())
        assert sum(p for _, p in r.sensitivity) == pytest.approx(100.0, abs=1e-6)
        names = [n for n, _ in r.sensitivity]
        assert names == ["A", "B", "C"]
        # C has the widest band
        assert max(r.sensitivity, key=lambda x: x[1])[0] == "C"

    def test_bender_shift_toward_nearer_limit(self):
        # sigma = 0.6 / 6 = 0.1; USL is nearer so the mean moves up by k * sigma
        stackup = _single(10.0, 0.3, lsl=9.5, usl=10.4)
        centered = compute_rss(stackup)
        shifted = compute_rss(stackup, mean_shift_k=0.5)
        assert centered.cpk == pytest.approx(0.4 / 0.3)
        assert centered.outcome == AnalysisOutcome.PASS
        assert shifted.shifted_mean == pytest.approx(10.05)
        assert shifted.cpk == pytest.approx(0.35 / 0.3)
        assert shifted.outcome == AnalysisOutcome.MARGINAL
        assert shifted.margin == pytest.approx(0.05)
        # Yield is estimated from the unshifted mean
        assert shifted.yield_percent == pytest.approx(centered.yield_percent)

    def test_bender_shift_toward_lower_limit(self):
        stackup = _single(10.0, 0.3, lsl=9.6, usl=10.5)
        r = compute_rss(stackup, mean_shift_k=0.5)
        assert r.shifted_mean == pytest.approx(9.95)

    def test_bender_shift_centered_mean_moves_down(self):
        # sigma = 0.2 / 6; equal distance to both limits
        r = compute_rss(_single(10.0, 0.1, lsl=9.0, usl=11.0), mean_shift_k=1.0)
        assert r.mean == pytest.approx(10.0)
        assert r.shifted_mean == pytest.approx(10.0 - 0.2 / 6.0)
        assert r.shifted_mean < r.mean

    def test_yield_ignores_bender_shift(self):
        stackup = _single(10.0, 0.3, lsl=9.7, usl=10.3)
        centered = compute_rss(stackup)
        shifted = compute_rss(stackup, mean_shift_k=1.5)
        # +/-3 sigma around the unshifted mean
        assert shifted.yield_percent == pytest.approx(99.73, abs=0.01)
        assert shifted.yield_percent == pytest.approx(centered.yield_percent)
        assert shifted.cpk < centered.cpk

    def test_fail_on_low_cpk(self):
        r = compute_rss(_single(10.0, 0.3, lsl=9.8, usl=10.2))
        assert r.cpk == pytest.approx(2.0 / 3.0)
        assert r.outcome == AnalysisOutcome.FAIL

    def test_zero_variance(self):
        r = compute_rss(_single(10.0, 0.0, lsl=9.0, usl=11.0))
        assert r.sigma == 0.0
        assert r.cp is None
        assert r.cpk is None
        assert r.outcome == AnalysisOutcome.PASS
        assert r.sensitivity == [("P", 0.0)]

    def test_include_gdt(self):
        stackup = _single(10.0, 0.1, lsl=9.0, usl=11.0)
        stackup.contributors[0].gdt_position = GdtContribution(position_tolerance=0.1)
        r = compute_rss(stackup, include_gdt=True)
        assert r.sigma == pytest.approx(0.3 / 6.0)

    @pytest.mark.parametrize("sigma_level", [2.0, 3.0, 4.0, 6.0])
    def test_worst_case_contains_rss_band(self, sigma_level):
        for stackup in (_example_stackup(sigma_level), _asymmetric_stackup()):
            stackup.sigma_level = sigma_level
            wc = compute_worst_case(stackup)
            r = compute_rss(stackup)
            assert r.lower >= wc.min - 1e-12
            assert r.upper <= wc.max + 1e-12

    def test_deterministic(self):
        stackup = _example_stackup()
        assert compute_rss(stackup) == compute_rss(stackup)
        assert compute_worst_case(stackup) == compute_worst_case(stackup)

    def test_invalid_sigma_level(self):
        with pytest.raises(InvalidStackupError):
            compute_rss(_example_stackup(), sigma_level=0.0)

    def test_invalid_mean_shift(self):
        with pytest.raises(InvalidStackupError):
            compute_rss(_example_stackup(), mean_shift_k=-1.0)

    def test_summary(self):
        s = compute_rss(_example_stackup()).summary()
        assert "RSS" in s
        assert "Cpk:" in s


class TestRssTrace:
    def test_rows_follow_contributor_order(self):
        stackup = _asymmetric_stackup()
        rows = trace_rss_mean(stackup)
        assert [r.name for r in rows] == ["Housing", "Shaft"]
        assert rows[0].mean_offset == pytest.approx(0.05)
        assert rows[0].running_mean == pytest.approx(10.05)
        assert rows[1].direction == Direction.NEGATIVE
        assert rows[1].signed_contribution == pytest.approx(-3.015)

    def test_last_row_matches_rss_mean(self):
        stackup = _asymmetric_stackup()
        rows = trace_rss_mean(stackup)
        assert rows[-1].running_mean == pytest.approx(compute_rss(stackup).mean)


class TestMonteCarlo:
    def test_converges_to_rss(self):
        stackup = _example_stackup()
        r, samples = compute_monte_carlo(stackup, iterations=20_000, seed=42)
        rss = compute_rss(stackup)
        assert samples is None
        assert r.mean == pytest.approx(rss.mean, abs=0.005)
        assert r.std_dev == pytest.approx(rss.sigma, rel=0.03)

    def test_reproducible_with_seed(self):
        stackup = _example_stackup()
        r1, _ = compute_monte_carlo(stackup, iterations=5_000, seed=7)
        r2, _ = compute_monte_carlo(stackup, iterations=5_000, seed=7)
        assert r1 == r2

    def test_returns_samples(self):
        r, samples = compute_monte_carlo(
            _example_stackup(), iterations=1_000, seed=1, return_samples=True)
        assert samples.shape == (1_000,)
        assert float(np.mean(samples)) == pytest.approx(r.mean)
        assert r.min == pytest.approx(float(samples.min()))
        assert r.max == pytest.approx(float(samples.max()))

    def test_percentiles(self):
        r, _ = compute_monte_carlo(_example_stackup(), iterations=20_000, seed=3)
        assert r.min <= r.percentile_2_5 < r.mean < r.percentile_97_5 <= r.max
        assert r.percentile_97_5 - r.mean == pytest.approx(1.96 * r.std_dev, rel=0.05)

    def test_yield_fraction_in_spec(self):
        # sigma 0.1, spec +/-1 sigma
        r, _ = compute_monte_carlo(_single(10.0, 0.3, lsl=9.9, usl=10.1),
                                   iterations=20_000, seed=11)
        assert r.yield_percent == pytest.approx(68.27, abs=1.5)

    def test_full_yield(self):
        r, _ = compute_monte_carlo(_example_stackup(), iterations=5_000, seed=5)
        assert r.yield_percent == pytest.approx(100.0)

    def test_pp_ppk_from_empirical(self):
        stackup = _example_stackup()
        r, _ = compute_monte_carlo(stackup, iterations=20_000, seed=9)
        rss = compute_rss(stackup)
        assert r.pp == pytest.approx(3.0 / (6.0 * r.std_dev))
        assert r.pp == pytest.approx(rss.cp, rel=0.05)
        assert r.ppk <= r.pp + 1e-12

    def test_uniform_wider_than_normal(self):
        stackup = _single(10.0, 0.3, lsl=9.0, usl=11.0)
        normal, _ = compute_monte_carlo(stackup, iterations=20_000, seed=2)
        stackup.contributors[0].distribution = Distribution.UNIFORM
        uniform, _ = compute_monte_carlo(stackup, iterations=20_000, seed=2)
        # uniform std = 0.3 / sqrt(3)
        assert uniform.std_dev == pytest.approx(0.3 / math.sqrt(3.0), rel=0.03)
        assert uniform.std_dev > normal.std_dev

    def test_zero_variance_pp_absent(self):
        r, _ = compute_monte_carlo(_single(10.0, 0.0, lsl=9.0, usl=11.0),
                                   iterations=100, seed=1)
        assert r.std_dev == 0.0
        assert r.pp is None
        assert r.ppk is None

    def test_invalid_iterations(self):
        with pytest.raises(InvalidStackupError):
            compute_monte_carlo(_example_stackup(), iterations=0)

    def test_summary(self):
        r, _ = compute_monte_carlo(_example_stackup(), iterations=1_000, seed=1)
        assert "Monte Carlo" in r.summary()


class TestAnalyzeStackup:
    def test_stores_all_results(self):
        stackup = analyze_stackup(_example_stackup(), iterations=2_000, seed=1)
        assert stackup.has_analysis
        assert stackup.results.rss is not None
        assert stackup.results.monte_carlo.iterations == 2_000

    def test_selected_methods(self):
        stackup = analyze_stackup(_example_stackup(), methods=["wc"])
        assert stackup.results.worst_case is not None
        assert stackup.results.rss is None
        assert stackup.results.monte_carlo is None

    def test_overrides_are_applied(self):
        stackup = analyze_stackup(_example_stackup(), methods=["rss"],
                                  sigma_level=4.0, mean_shift_k=0.5)
        assert stackup.sigma_level == 4.0
        assert stackup.mean_shift_k == 0.5
        assert stackup.results.rss.sigma_level == 4.0
        assert stackup.results.rss.shifted_mean is not None

    def test_invalid_override_leaves_stackup_unchanged(self):
        stackup = _example_stackup()
        with pytest.raises(InvalidStackupError):
            analyze_stackup(stackup, sigma_level=-1.0)
        assert stackup.sigma_level == 6.0
        assert not stackup.has_analysis

    def test_reanalysis_does_not_bump_revision(self):
        stackup = _example_stackup()
        rev = stackup.revision
        analyze_stackup(stackup, methods=["wc", "rss"])
        analyze_stackup(stackup, methods=["wc", "rss"])
        assert stackup.revision == rev

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown analysis method"):
            analyze_stackup(_example_stackup(), methods=["taguchi"])


class TestAnalyzeBatch:
    def test_counts(self):
        good = _example_stackup()
        empty = Stackup(title="Empty", target=Target("T", 0.0, 1.0, -1.0))
        bad = _example_stackup(sigma_level=0.0)
        summary = analyze_batch([good, empty, bad], iterations=500, seed=1)
        assert summary.analyzed == 1
        assert summary.skipped == 1
        assert summary.failed == 1
        assert summary.total == 3
        assert good.has_analysis
        assert not bad.has_analysis

    def test_failure_does_not_stop_batch(self):
        bad = _example_stackup(sigma_level=-2.0)
        good = _example_stackup()
        summary = analyze_batch([bad, good], methods=["wc"])
        assert summary.failed == 1
        assert summary.analyzed == 1
        assert good.results.worst_case is not None
        failed_ids = [sid for sid, msg in summary.messages if "Sigma level" in msg]
        assert failed_ids == [bad.id]
