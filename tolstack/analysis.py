"""1D tolerance stackup engine supporting WC, RSS, and Monte Carlo."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from tolstack.constants import (
    CPK_CAPABLE,
    CPK_MARGINAL,
    DEFAULT_MC_ITERATIONS,
    MARGINAL_MARGIN_FRACTION,
    PERCENTILE_HIGH,
    PERCENTILE_LOW,
)
from tolstack.models import Direction, Stackup
from tolstack.statistics import (
    capability_indices,
    normal_cdf,
    percent_contribution,
    sample_distribution,
)

logger = logging.getLogger(__name__)


class AnalysisOutcome(Enum):
    """Classification of a stackup result against its target."""
    PASS = "pass"
    MARGINAL = "marginal"
    FAIL = "fail"


@dataclass
class WorstCaseResult:
    """Worst-case (arithmetic) stack result.

    Attributes:
        nominal: Signed sum of contributor nominals.
        min: Smallest achievable stack value.
        max: Largest achievable stack value.
        margin: Distance from the nearer spec limit (negative = out of spec).
        outcome: Pass, Marginal, or Fail.
    """
    nominal: float
    min: float
    max: float
    margin: float
    outcome: AnalysisOutcome

    def summary(self) -> str:
        lines = [
            "=== Worst-Case Analysis ===",
            f"  Nominal:          {self.nominal:+.6f}",
            f"  Range:            [{self.min:+.6f}, {self.max:+.6f}]",
            f"  Margin:           {self.margin:+.6f}",
            f"  Result:           {self.outcome.value}",
        ]
        return "\n".join(lines)


@dataclass
class RssResult:
    """Root-sum-square statistical stack result.

    Attributes:
        mean: Process mean (signed sum of band centers).
        shifted_mean: Mean after the Bender shift, None when k = 0.
        sigma: Standard deviation of the stack.
        half_width: sigma_level / 2 * sigma (+/-3 sigma at sigma level 6).
        margin: Distance from the statistical band to the nearer limit.
        cp: Process capability, None when sigma is 0.
        cpk: Centered process capability, None when sigma is 0.
        yield_percent: Two-sided normal fraction within [LSL, USL] around the
            unshifted mean; the Bender shift does not enter it.
        outcome: Pass, Marginal, or Fail on Cpk.
        sigma_level: Sigma level the result was computed at.
        sensitivity: (contributor name, percent of total variance).
    """
    mean: float
    shifted_mean: Optional[float]
    sigma: float
    half_width: float
    margin: float
    cp: Optional[float]
    cpk: Optional[float]
    yield_percent: float
    outcome: AnalysisOutcome
    sigma_level: float
    sensitivity: list[tuple[str, float]] = field(default_factory=list)

    @property
    def effective_mean(self) -> float:
        return self.shifted_mean if self.shifted_mean is not None else self.mean

    @property
    def lower(self) -> float:
        return self.effective_mean - self.half_width

    @property
    def upper(self) -> float:
        return self.effective_mean + self.half_width

    def summary(self) -> str:
        lines = [
            "=== RSS Analysis ===",
            f"  Mean:             {self.mean:+.6f}",
        ]
        if self.shifted_mean is not None:
            lines.append(f"  Shifted mean:     {self.shifted_mean:+.6f}")
        lines += [
            f"  Std dev:          {self.sigma:.6f}",
            f"  Band:             [{self.lower:+.6f}, {self.upper:+.6f}]",
            f"  Sigma level:      {self.sigma_level:.1f}",
            f"  Margin:           {self.margin:+.6f}",
        ]
        if self.cp is not None:
            lines.append(f"  Cp:               {self.cp:.4f}")
            lines.append(f"  Cpk:              {self.cpk:.4f}")
        lines.append(f"  Est. yield:       {self.yield_percent:.4f}%")
        lines.append(f"  Result:           {self.outcome.value}")
        if self.sensitivity:
            lines.append("  Contribution to variance:")
            for name, pct in self.sensitivity:
                lines.append(f"    {name:30s}  {pct:6.2f}%")
        return "\n".join(lines)


@dataclass
class MonteCarloResult:
    """Monte Carlo simulation result.

    Attributes:
        iterations: Number of simulated assemblies.
        mean: Empirical mean.
        std_dev: Empirical standard deviation (ddof=1).
        min: Smallest simulated value.
        max: Largest simulated value.
        percentile_2_5: Lower bound of the 95% empirical interval.
        percentile_97_5: Upper bound of the 95% empirical interval.
        yield_percent: Percentage of samples within [LSL, USL].
        pp: Process performance from the empirical spread.
        ppk: Process performance with centering, from empirical mean/std.
    """
    iterations: int
    mean: float
    std_dev: float
    min: float
    max: float
    percentile_2_5: float
    percentile_97_5: float
    yield_percent: float
    pp: Optional[float] = None
    ppk: Optional[float] = None

    def summary(self) -> str:
        lines = [
            "=== Monte Carlo Analysis ===",
            f"  Iterations:       {self.iterations}",
            f"  Mean:             {self.mean:+.6f}",
            f"  Std dev:          {self.std_dev:.6f}",
            f"  Range:            [{self.min:+.6f}, {self.max:+.6f}]",
            f"  95% interval:     [{self.percentile_2_5:+.6f}, {self.percentile_97_5:+.6f}]",
            f"  Yield:            {self.yield_percent:.4f}%",
        ]
        if self.pp is not None:
            lines.append(f"  Pp:               {self.pp:.4f}")
            lines.append(f"  Ppk:              {self.ppk:.4f}")
        return "\n".join(lines)


@dataclass
class RssTraceRow:
    """One contributor's step in the RSS mean derivation."""
    name: str
    direction: Direction
    nominal: float
    mean_offset: float
    process_mean: float
    signed_contribution: float
    running_mean: float


# ---------------------------------------------------------------------------
# Worst-Case analysis
# ---------------------------------------------------------------------------

def compute_worst_case(
    stackup: Stackup,
    include_gdt: Optional[bool] = None,
    marginal_fraction: float = MARGINAL_MARGIN_FRACTION,
) -> WorstCaseResult:
    """Perform worst-case (min/max) tolerance stack analysis.

    Every contributor is assumed to be at the limit that worsens the stack.
    With GD&T included, the position zone widens each band symmetrically.
    Pass requires a margin strictly above ``marginal_fraction`` of the spec
    band; a smaller non-negative margin is Marginal.
    """
    stackup.validate()
    if include_gdt is None:
        include_gdt = stackup.include_gdt

    nominal = 0.0
    stack_min = 0.0
    stack_max = 0.0

    for c in stackup.contributors:
        low = c.nominal - c.minus_tol
        high = c.nominal + c.plus_tol
        if include_gdt and c.gdt_position is not None:
            extra = c.gdt_position.effective / 2.0
            low -= extra
            high += extra

        nominal += c.signed_nominal
        if c.direction == Direction.POSITIVE:
            stack_min += low
            stack_max += high
        else:
            stack_min -= high
            stack_max -= low

    target = stackup.target
    margin = min(target.upper_limit - stack_max, stack_min - target.lower_limit)
    threshold = marginal_fraction * target.band

    if margin > threshold:
        outcome = AnalysisOutcome.PASS
    elif margin >= 0.0:
        outcome = AnalysisOutcome.MARGINAL
    else:
        outcome = AnalysisOutcome.FAIL

    return WorstCaseResult(
        nominal=nominal,
        min=stack_min,
        max=stack_max,
        margin=margin,
        outcome=outcome,
    )


# ---------------------------------------------------------------------------
# RSS (Root Sum of Squares) analysis
# ---------------------------------------------------------------------------

def compute_rss(
    stackup: Stackup,
    sigma_level: Optional[float] = None,
    mean_shift_k: Optional[float] = None,
    include_gdt: Optional[bool] = None,
) -> RssResult:
    """Perform RSS statistical tolerance stack analysis.

    Each contributor's band is taken to span ``sigma_level`` standard
    deviations (sigma_i = band / sigma_level) around its band center. With
    a Bender k-factor the mean is moved k * sigma toward the nearer spec
    limit before margin and Cpk are computed. The yield estimate is
    Phi((USL - mean) / sigma) - Phi((LSL - mean) / sigma) at the unshifted
    mean, not 2 * Phi(3 * Cpk) - 1.
    """
    if sigma_level is None:
        sigma_level = stackup.sigma_level
    if mean_shift_k is None:
        mean_shift_k = stackup.mean_shift_k
    if include_gdt is None:
        include_gdt = stackup.include_gdt
    stackup.validate(sigma_level, mean_shift_k)

    mean = 0.0
    variances = []
    for c in stackup.contributors:
        mean += c.sign * c.process_mean
        std_i = c.band(include_gdt) / sigma_level
        variances.append(std_i ** 2)

    sigma = math.sqrt(sum(variances))
    half_width = (sigma_level / 2.0) * sigma

    lsl = stackup.target.lower_limit
    usl = stackup.target.upper_limit

    shifted_mean = None
    if mean_shift_k > 0.0:
        shift = mean_shift_k * sigma
        # Toward the nearer (worse) limit; a centered mean moves down
        if (usl - mean) < (mean - lsl):
            shifted_mean = mean + shift
        else:
            shifted_mean = mean - shift
    effective_mean = shifted_mean if shifted_mean is not None else mean

    margin = min(usl - (effective_mean + half_width), (effective_mean - half_width) - lsl)
    cp, cpk = capability_indices(effective_mean, sigma, lsl, usl, sigma_level)

    if sigma > 0.0:
        yield_percent = (normal_cdf((usl - mean) / sigma)
                         - normal_cdf((lsl - mean) / sigma)) * 100.0
    else:
        yield_percent = 100.0 if lsl <= mean <= usl else 0.0

    if cpk is None:
        in_spec = lsl <= effective_mean <= usl
        outcome = AnalysisOutcome.PASS if in_spec else AnalysisOutcome.FAIL
    elif cpk >= CPK_CAPABLE:
        outcome = AnalysisOutcome.PASS
    elif cpk >= CPK_MARGINAL:
        outcome = AnalysisOutcome.MARGINAL
    else:
        outcome = AnalysisOutcome.FAIL

    pcts = percent_contribution(variances)
    sensitivity = [(c.name, p) for c, p in zip(stackup.contributors, pcts)]

    return RssResult(
        mean=mean,
        shifted_mean=shifted_mean,
        sigma=sigma,
        half_width=half_width,
        margin=margin,
        cp=cp,
        cpk=cpk,
        yield_percent=yield_percent,
        outcome=outcome,
        sigma_level=sigma_level,
        sensitivity=sensitivity,
    )


def trace_rss_mean(stackup: Stackup) -> list[RssTraceRow]:
    """Per-contributor rows showing how the RSS process mean is built up.

    Rows follow contributor order; the last row's running mean equals
    ``compute_rss(stackup).mean``.
    """
    rows = []
    running = 0.0
    for c in stackup.contributors:
        signed = c.sign * c.process_mean
        running += signed
        row = RssTraceRow(
            name=c.name,
            direction=c.direction,
            nominal=c.nominal,
            mean_offset=c.mean_offset,
            process_mean=c.process_mean,
            signed_contribution=signed,
            running_mean=running,
        )
        logger.debug(
            "%s: %s nominal=%.6f offset=%+.6f process_mean=%.6f signed=%+.6f running=%.6f",
            row.name, row.direction.value, row.nominal, row.mean_offset,
            row.process_mean, row.signed_contribution, row.running_mean)
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Monte Carlo analysis
# ---------------------------------------------------------------------------

def compute_monte_carlo(
    stackup: Stackup,
    iterations: int = DEFAULT_MC_ITERATIONS,
    seed: Optional[int] = None,
    sigma_level: Optional[float] = None,
    include_gdt: Optional[bool] = None,
    return_samples: bool = False,
) -> tuple[MonteCarloResult, Optional[np.ndarray]]:
    """Perform Monte Carlo tolerance stack analysis.

    Each contributor is sampled around its band center according to its
    distribution and the signed samples are summed per iteration. Pp/Ppk
    use the empirical mean and standard deviation.

    Returns:
        (result, samples) where samples is the raw stack vector when
        ``return_samples`` is set, else None.
    """
    if sigma_level is None:
        sigma_level = stackup.sigma_level
    if include_gdt is None:
        include_gdt = stackup.include_gdt
    stackup.validate(sigma_level, iterations=iterations)

    rng = np.random.default_rng(seed)
    stack_samples = np.zeros(iterations)

    for c in stackup.contributors:
        half = c.band(include_gdt) / 2.0
        samples = sample_distribution(
            rng, c.distribution, c.process_mean, half, sigma_level / 2.0, iterations)
        stack_samples += c.sign * samples

    mc_mean = float(np.mean(stack_samples))
    mc_std = float(np.std(stack_samples, ddof=1)) if iterations > 1 else 0.0

    ordered = np.sort(stack_samples)
    lo_idx = min(int(iterations * PERCENTILE_LOW), iterations - 1)
    hi_idx = min(int(iterations * PERCENTILE_HIGH), iterations - 1)

    lsl = stackup.target.lower_limit
    usl = stackup.target.upper_limit
    in_spec = int(np.count_nonzero((stack_samples >= lsl) & (stack_samples <= usl)))

    # Pp/Ppk always at +/-3 sigma of the observed spread
    pp, ppk = capability_indices(mc_mean, mc_std, lsl, usl, 6.0)

    result = MonteCarloResult(
        iterations=iterations,
        mean=mc_mean,
        std_dev=mc_std,
        min=float(ordered[0]),
        max=float(ordered[-1]),
        percentile_2_5=float(ordered[lo_idx]),
        percentile_97_5=float(ordered[hi_idx]),
        yield_percent=in_spec / iterations * 100.0,
        pp=pp,
        ppk=ppk,
    )
    return result, (stack_samples if return_samples else None)


# ---------------------------------------------------------------------------
# Convenience dispatcher
# ---------------------------------------------------------------------------

def analyze_stackup(
    stackup: Stackup,
    methods: Optional[list[str]] = None,
    iterations: int = DEFAULT_MC_ITERATIONS,
    seed: Optional[int] = None,
    sigma_level: Optional[float] = None,
    mean_shift_k: Optional[float] = None,
    include_gdt: Optional[bool] = None,
) -> Stackup:
    """Run one or more analysis methods and store the results on the stackup.

    Overrides are validated first and then written to the stackup so that
    the stored results and settings agree. Nothing is changed on the
    stackup if validation fails.

    Args:
        stackup: The stackup to analyze.
        methods: Method names ("wc", "rss", "mc"). Defaults to all.
        iterations: Number of Monte Carlo iterations.
        seed: Random seed for reproducibility.
        sigma_level: Override for the stackup's sigma level.
        mean_shift_k: Override for the Bender k-factor.
        include_gdt: Override for GD&T inclusion.

    Returns:
        The same stackup, with ``results`` updated.
    """
    if methods is None:
        methods = ["wc", "rss", "mc"]
    sl = stackup.sigma_level if sigma_level is None else sigma_level
    k = stackup.mean_shift_k if mean_shift_k is None else mean_shift_k
    stackup.validate(sl, k, iterations)

    keys = []
    for m in methods:
        key = m.lower().strip()
        if key in ("wc", "worst-case", "worst_case"):
            keys.append("wc")
        elif key == "rss":
            keys.append("rss")
        elif key in ("mc", "monte-carlo", "monte_carlo"):
            keys.append("mc")
        else:
            raise ValueError(f"Unknown analysis method: {m!r}")

    stackup.sigma_level = sl
    stackup.mean_shift_k = k
    if include_gdt is not None:
        stackup.include_gdt = include_gdt

    if "wc" in keys:
        stackup.results.worst_case = compute_worst_case(stackup)
    if "rss" in keys:
        if logger.isEnabledFor(logging.DEBUG):
            trace_rss_mean(stackup)
        stackup.results.rss = compute_rss(stackup)
    if "mc" in keys:
        stackup.results.monte_carlo, _ = compute_monte_carlo(
            stackup, iterations=iterations, seed=seed)
    return stackup


@dataclass
class BatchSummary:
    """Per-stackup accounting for a batch run."""
    analyzed: int = 0
    failed: int = 0
    skipped: int = 0
    messages: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.analyzed + self.failed + self.skipped


def analyze_batch(
    stackups: Iterable[Stackup],
    methods: Optional[list[str]] = None,
    iterations: int = DEFAULT_MC_ITERATIONS,
    seed: Optional[int] = None,
    sigma_level: Optional[float] = None,
    mean_shift_k: Optional[float] = None,
    include_gdt: Optional[bool] = None,
) -> BatchSummary:
    """Analyze every stackup in turn; one failure does not stop the batch.

    Stackups without contributors are skipped. Stackups rejected by
    validation are counted as failed with the error message recorded.
    """
    summary = BatchSummary()
    for stackup in stackups:
        if not stackup.contributors:
            summary.skipped += 1
            summary.messages.append((stackup.id, "no contributors"))
            logger.info("Skipping %s (%s): no contributors", stackup.id, stackup.title)
            continue
        try:
            analyze_stackup(
                stackup,
                methods=methods,
                iterations=iterations,
                seed=seed,
                sigma_level=sigma_level,
                mean_shift_k=mean_shift_k,
                include_gdt=include_gdt,
            )
        except ValueError as exc:
            summary.failed += 1
            summary.messages.append((stackup.id, str(exc)))
            logger.warning("Analysis of %s (%s) failed: %s", stackup.id, stackup.title, exc)
            continue
        summary.analyzed += 1
        summary.messages.append((stackup.id, "analyzed"))
        logger.info("Analyzed %s (%s)", stackup.id, stackup.title)
    logger.info("Batch complete: %d analyzed, %d failed, %d skipped",
                summary.analyzed, summary.failed, summary.skipped)
    return summary
