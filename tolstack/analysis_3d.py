"""3D stackup analysis: torsor chains built from 1D contributors and features.

Each contributor that links to a feature becomes a chain link placed at the
feature origin. Its bounds come from the feature's stored torsor bounds,
from its GD&T controls, or are derived from the contributor's +/- tolerance
over the DOFs its datum reference frame resolves to.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from tolstack.analysis import AnalysisOutcome
from tolstack.constants import DEFAULT_MC_ITERATIONS, REFERENCE_LENGTH_MM
from tolstack.features import Feature, GeometryClass, TorsorBounds
from tolstack.gdt import compute_torsor_bounds
from tolstack.models import Stackup
from tolstack.sdt import (
    DOF_LABELS,
    ROTATION_DOFS,
    ChainContributor3D,
    DatumFeature,
    ResultTorsor,
    analyze_chain_3d,
    get_tolerance_dofs,
)
from tolstack.statistics import capability_indices, yield_from_cpk

logger = logging.getLogger(__name__)

BOUNDS_FROM_GDT = "gdt"
BOUNDS_DERIVED = "derived"


@dataclass
class Sensitivity3DEntry:
    """Percentage of result variance per DOF contributed by one link."""
    name: str
    feature_id: Optional[str]
    contribution_pct: list[float]


@dataclass
class ChainSummary:
    """Shape of the analyzed chain.

    Attributes:
        chain_length: Number of links.
        total_constrained_dof: Sum over links of DOFs carrying bounds.
        result_free_dof: Labels of result DOFs no link bounds.
    """
    chain_length: int
    total_constrained_dof: int
    result_free_dof: list[str] = field(default_factory=list)


@dataclass
class FunctionalProjection:
    """Result torsor projected onto the functional direction.

    Values are deviations from the target nominal.

    Attributes:
        direction: Unit direction (translations only).
        wc_range: Worst-case (min, max) deviation.
        rss_mean: Statistical mean deviation.
        rss_std_dev: Statistical standard deviation.
        rss_half_width: sigma_level / 2 * rss_std_dev.
        mc_mean: Monte Carlo mean deviation, if simulated.
        mc_std_dev: Monte Carlo standard deviation, if simulated.
        cp: Capability against the deviation limits, None if std is 0.
        cpk: Centered capability, None if std is 0.
        yield_percent: 2 * Phi(3 * Cpk) - 1 as a percentage.
        wc_result: PASS if the worst-case range lies within the limits.
    """
    direction: tuple[float, float, float]
    wc_range: tuple[float, float]
    rss_mean: float
    rss_std_dev: float
    rss_half_width: float
    mc_mean: Optional[float]
    mc_std_dev: Optional[float]
    cp: Optional[float]
    cpk: Optional[float]
    yield_percent: Optional[float]
    wc_result: AnalysisOutcome


@dataclass
class Analysis3DResults:
    """Everything one 3D analysis run produces.

    ``bound_sources`` maps each contributor name to "gdt" or "derived";
    ``warnings`` lists contributors analyzed at the world origin.
    """
    result_torsor: ResultTorsor
    functional_result: FunctionalProjection
    sensitivity_3d: list[Sensitivity3DEntry]
    chain_summary: ChainSummary
    bound_sources: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        fp = self.functional_result
        lines = [
            self.result_torsor.summary(),
            "=== Functional Projection ===",
            f"  Direction:        ({fp.direction[0]:.4f}, {fp.direction[1]:.4f}, {fp.direction[2]:.4f})",
            f"  WC range:         [{fp.wc_range[0]:+.6f}, {fp.wc_range[1]:+.6f}]  {fp.wc_result.value}",
            f"  RSS:              {fp.rss_mean:+.6f} ±{fp.rss_half_width:.6f}",
        ]
        if fp.cp is not None:
            lines.append(f"  Cp / Cpk:         {fp.cp:.4f} / {fp.cpk:.4f}")
            lines.append(f"  Est. yield:       {fp.yield_percent:.4f}%")
        for w in self.warnings:
            lines.append(f"  Warning: {w}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Chain construction
# ---------------------------------------------------------------------------

def build_datum_catalogue(features: Iterable[Feature]) -> dict[str, DatumFeature]:
    """Collect every feature that declares a datum label."""
    catalogue = {}
    for feat in features:
        if feat.datum_label is None:
            continue
        geo = feat.geometry_3d
        catalogue[feat.datum_label] = DatumFeature(
            label=feat.datum_label,
            geometry_class=feat.geometry_class or GeometryClass.COMPLEX,
            position=geo.origin if geo is not None else (0.0, 0.0, 0.0),
            axis=geo.axis if geo is not None else None,
        )
    return catalogue


def derive_torsor_bounds(
    half_tol: float,
    dofs: Iterable[int],
    reference_length: float = REFERENCE_LENGTH_MM,
) -> TorsorBounds:
    """Apply +/- half_tol to translation DOFs and +/- half_tol / reference_length to rotations."""
    bounds = TorsorBounds()
    angular = half_tol / reference_length
    for dof in dofs:
        value = angular if dof in ROTATION_DOFS else half_tol
        bounds.set(dof, -value, value)
    return bounds


def _datum_refs(feature: Feature) -> list[str]:
    for control in feature.gdt:
        if control.datum_refs:
            return list(control.datum_refs)
    return []


def build_chain_contributors(
    stackup: Stackup,
    features: dict[str, Feature],
    datum_features: dict[str, DatumFeature],
    reference_length: float = REFERENCE_LENGTH_MM,
) -> tuple[list[ChainContributor3D], dict[str, str], list[str]]:
    """Turn feature-linked contributors into chain links.

    Returns:
        (links, bound source per contributor name, warnings)
    """
    links = []
    sources = {}
    warnings = []

    for c in stackup.contributors:
        if c.feature is None:
            continue
        feat = features.get(c.feature.id)
        position = (0.0, 0.0, 0.0)
        geometry_class = GeometryClass.COMPLEX

        if feat is None:
            warnings.append(
                f"{c.name}: feature {c.feature.id} not found, analyzed at origin")
        else:
            geometry_class = feat.geometry_class or GeometryClass.COMPLEX
            if feat.geometry_3d is None:
                warnings.append(f"{c.name}: feature has no 3D geometry, analyzed at origin")
            else:
                position = tuple(float(x) for x in feat.geometry_3d.origin)

        bounds = None
        if feat is not None:
            if feat.torsor_bounds is not None and feat.torsor_bounds.has_any_bounds():
                bounds = feat.torsor_bounds
            elif feat.has_gdt():
                computed = compute_torsor_bounds(feat).bounds
                if computed.has_any_bounds():
                    bounds = computed

        if bounds is not None:
            sources[c.name] = BOUNDS_FROM_GDT
        else:
            refs = _datum_refs(feat) if feat is not None else []
            dofs = get_tolerance_dofs(geometry_class, refs, datum_features)
            bounds = derive_torsor_bounds(c.tolerance_band / 2.0, dofs, reference_length)
            sources[c.name] = BOUNDS_DERIVED

        links.append(ChainContributor3D(
            name=c.name,
            feature_id=c.feature.id,
            geometry_class=geometry_class,
            position=position,
            bounds=bounds,
            distribution=c.distribution,
            sigma_level=stackup.sigma_level,
            sign=c.sign,
        ))

    for w in warnings:
        logger.warning(w)
    gdt_names = [n for n, s in sources.items() if s == BOUNDS_FROM_GDT]
    derived_names = [n for n, s in sources.items() if s == BOUNDS_DERIVED]
    if gdt_names:
        logger.info("Using GD&T torsor bounds: %s", ", ".join(gdt_names))
    if derived_names:
        logger.info("Using derived bounds: %s", ", ".join(derived_names))
    return links, sources, warnings


# ---------------------------------------------------------------------------
# Functional projection
# ---------------------------------------------------------------------------

def compute_functional_projection(
    torsor: ResultTorsor,
    direction,
    nominal: float,
    lsl: float,
    usl: float,
    sigma_level: float,
) -> FunctionalProjection:
    """Project the translational part of a result torsor onto ``direction``.

    Axes are treated as independent, so projected variance is the
    direction-weighted sum of per-axis variances. Capability is computed
    against the limits expressed as deviations from ``nominal``.
    """
    dx, dy, dz = (float(x) for x in direction)
    length = math.sqrt(dx * dx + dy * dy + dz * dz)
    if length < 1e-12:
        raise ValueError("Functional direction must be non-zero")
    d = (dx / length, dy / length, dz / length)
    axes = [torsor.u, torsor.v, torsor.w]

    wc_min = wc_max = 0.0
    for di, s in zip(d, axes):
        a, b = di * s.wc_min, di * s.wc_max
        wc_min += min(a, b)
        wc_max += max(a, b)

    rss_mean = sum(di * s.rss_mean for di, s in zip(d, axes))
    rss_std = math.sqrt(sum((di * s.rss_std_dev) ** 2 for di, s in zip(d, axes)))

    mc_mean = mc_std = None
    if torsor.has_monte_carlo:
        mc_mean = sum(di * s.mc_mean for di, s in zip(d, axes))
        mc_std = math.sqrt(sum((di * s.mc_std_dev) ** 2 for di, s in zip(d, axes)))

    dev_lsl = lsl - nominal
    dev_usl = usl - nominal
    cp, cpk = capability_indices(rss_mean, rss_std, dev_lsl, dev_usl, sigma_level)

    wc_ok = wc_min >= dev_lsl and wc_max <= dev_usl
    return FunctionalProjection(
        direction=d,
        wc_range=(wc_min, wc_max),
        rss_mean=rss_mean,
        rss_std_dev=rss_std,
        rss_half_width=(sigma_level / 2.0) * rss_std,
        mc_mean=mc_mean,
        mc_std_dev=mc_std,
        cp=cp,
        cpk=cpk,
        yield_percent=yield_from_cpk(cpk),
        wc_result=AnalysisOutcome.PASS if wc_ok else AnalysisOutcome.FAIL,
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def compute_3d(
    stackup: Stackup,
    features: dict[str, Feature],
    datum_features: Optional[dict[str, DatumFeature]] = None,
    iterations: Optional[int] = DEFAULT_MC_ITERATIONS,
    seed: Optional[int] = None,
    reference_length: float = REFERENCE_LENGTH_MM,
) -> Optional[Analysis3DResults]:
    """Run 3D torsor analysis of a stackup.

    Args:
        stackup: Stackup whose contributors link to features.
        features: Feature repository keyed by feature id.
        datum_features: Datum catalogue; built from ``features`` if None.
        iterations: Monte Carlo iterations per DOF; None skips Monte Carlo.
        seed: Random seed for reproducibility.
        reference_length: Linear to angular conversion for derived bounds.

    Returns:
        The results, or None if no contributor links to a feature.
    """
    if not stackup.contributors:
        return None
    stackup.validate(iterations=iterations)

    if datum_features is None:
        datum_features = build_datum_catalogue(features.values())

    links, sources, warnings = build_chain_contributors(
        stackup, features, datum_features, reference_length)
    if not links:
        logger.info("No feature-linked contributors in %s, nothing to analyze in 3D",
                    stackup.id)
        return None

    chain = analyze_chain_3d(links, iterations=iterations, seed=seed)

    target = stackup.target
    projection = compute_functional_projection(
        chain.torsor,
        stackup.functional_direction,
        target.nominal,
        target.lower_limit,
        target.upper_limit,
        stackup.sigma_level,
    )

    sensitivity = [
        Sensitivity3DEntry(name=link.name, feature_id=link.feature_id, contribution_pct=pct)
        for link, pct in zip(links, chain.sensitivity)
    ]

    free = [DOF_LABELS[i] for i, s in enumerate(chain.torsor.as_list())
            if s.wc_min == 0.0 and s.wc_max == 0.0]
    summary = ChainSummary(
        chain_length=len(links),
        total_constrained_dof=sum(len(link.bounds.active_dofs()) for link in links),
        result_free_dof=free,
    )

    return Analysis3DResults(
        result_torsor=chain.torsor,
        functional_result=projection,
        sensitivity_3d=sensitivity,
        chain_summary=summary,
        bound_sources=sources,
        warnings=warnings,
    )


def analyze_stackup_3d(
    stackup: Stackup,
    features: dict[str, Feature],
    datum_features: Optional[dict[str, DatumFeature]] = None,
    iterations: Optional[int] = DEFAULT_MC_ITERATIONS,
    seed: Optional[int] = None,
) -> Optional[Analysis3DResults]:
    """``compute_3d`` that also stores the result on ``stackup.results_3d``.

    The 1D results are left untouched; a stackup with nothing to analyze in
    3D keeps its previous 3D results.
    """
    results = compute_3d(stackup, features, datum_features, iterations=iterations, seed=seed)
    if results is not None:
        stackup.results_3d = results
    return results
