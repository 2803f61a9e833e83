"""Capability indices, variance contribution and distribution sampling.

Shared by the 1D engine, the per-DOF 3D propagation and the functional
projection so that all three report Cp/Cpk and sensitivity the same way.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from tolstack.models import Distribution


def normal_cdf(z: float) -> float:
    """Standard normal cumulative distribution at z."""
    from scipy.stats import norm as _norm  # deferred import
    return float(_norm.cdf(z))


def capability_indices(
    mean: float,
    std: float,
    lsl: float,
    usl: float,
    sigma_level: float,
) -> tuple[Optional[float], Optional[float]]:
    """Compute (Cp, Cpk) for a normal process.

    Cp = (USL - LSL) / (sigma_level * std)
    Cpk = min(USL - mean, mean - LSL) / (sigma_level / 2 * std)

    Both are None when std is zero, the indices being undefined there.
    """
    if std <= 0.0:
        return None, None
    cp = (usl - lsl) / (sigma_level * std)
    half_width = (sigma_level / 2.0) * std
    cpk = min((usl - mean) / half_width, (mean - lsl) / half_width)
    return cp, cpk


def yield_from_cpk(cpk: Optional[float]) -> Optional[float]:
    """Centered-process yield percent at z = 3 * Cpk."""
    if cpk is None:
        return None
    return (2.0 * normal_cdf(3.0 * cpk) - 1.0) * 100.0


def percent_contribution(variances: list[float]) -> list[float]:
    """Variance fraction of each term as a percentage of the total.

    Returns all zeros when the total variance is zero; otherwise the
    percentages sum to 100.
    """
    total_var = float(sum(variances))
    if total_var <= 0.0:
        return [0.0 for _ in variances]
    return [(v / total_var) * 100.0 for v in variances]


def sample_distribution(
    rng: np.random.Generator,
    distribution: Distribution,
    center: float,
    half_tol: float,
    sigma: float,
    n_samples: int,
) -> np.ndarray:
    """Draw ``n_samples`` values of one contributor around its band center.

    Uniform and triangular laws span exactly +/- ``half_tol``. Normal and
    log-normal laws place ``half_tol`` at ``sigma`` standard deviations
    (sigma_level / 2). A zero-width band yields a constant array.
    """
    if half_tol <= 0.0:
        return np.full(n_samples, center, dtype=float)

    if distribution == Distribution.NORMAL:
        std = half_tol / sigma
        return rng.normal(loc=center, scale=std, size=n_samples)

    elif distribution == Distribution.UNIFORM:
        return rng.uniform(low=center - half_tol, high=center + half_tol, size=n_samples)

    elif distribution == Distribution.TRIANGULAR:
        return rng.triangular(
            left=center - half_tol, mode=center,
            right=center + half_tol, size=n_samples,
        )

    elif distribution in (Distribution.WEIBULL_RIGHT, Distribution.WEIBULL_LEFT):
        # Shape 2.5, recentered on the band center; left-skewed is the mirror image
        shape = 2.5
        scale = half_tol / 1.2
        raw = rng.weibull(shape, size=n_samples) * scale
        raw = raw - np.mean(raw)
        if distribution == Distribution.WEIBULL_LEFT:
            raw = -raw
        return np.clip(raw + center, center - half_tol * 2, center + half_tol * 2)

    elif distribution == Distribution.LOGNORMAL:
        # Moderate right skew, rescaled to the normal law's mean and std
        underlying_sigma = 0.3
        raw = rng.lognormal(mean=0.0, sigma=underlying_sigma, size=n_samples)
        raw_mean = np.exp(underlying_sigma ** 2 / 2)
        raw_std = raw_mean * np.sqrt(np.exp(underlying_sigma ** 2) - 1)
        std = half_tol / sigma
        return (raw - raw_mean) / raw_std * std + center

    else:
        raise ValueError(f"Unknown distribution: {distribution}")
