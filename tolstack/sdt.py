"""Small displacement torsor (SDT) propagation for 3D tolerance chains.

A torsor is the 6-DOF deviation [u, v, w, alpha, beta, gamma] of a
feature: three translations followed by three small rotations (radians)
about the local x, y and z axes.

Datum reference frames follow the 3-2-1 rule: the primary datum removes
the most DOFs its geometry allows, the secondary removes up to two more,
and the tertiary removes one more.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from tolstack.constants import DEFAULT_SIGMA_LEVEL
from tolstack.features import GeometryClass, TorsorBounds
from tolstack.models import Distribution
from tolstack.statistics import percent_contribution, sample_distribution

logger = logging.getLogger(__name__)

DOF_U = 0
DOF_V = 1
DOF_W = 2
DOF_ALPHA = 3
DOF_BETA = 4
DOF_GAMMA = 5

DOF_LABELS = ("u", "v", "w", "α", "β", "γ")

TRANSLATION_DOFS = (DOF_U, DOF_V, DOF_W)
ROTATION_DOFS = (DOF_ALPHA, DOF_BETA, DOF_GAMMA)


# ---------------------------------------------------------------------------
# Invariance classes
# ---------------------------------------------------------------------------

_DEVIATION_DOFS = {
    GeometryClass.PLANE: [DOF_W, DOF_ALPHA, DOF_BETA],
    GeometryClass.CYLINDER: [DOF_U, DOF_V, DOF_ALPHA, DOF_BETA],
    GeometryClass.SPHERE: [DOF_U, DOF_V, DOF_W],
    GeometryClass.CONE: [DOF_U, DOF_V, DOF_W, DOF_ALPHA, DOF_BETA],
    GeometryClass.POINT: [DOF_U, DOF_V, DOF_W],
    GeometryClass.LINE: [DOF_U, DOF_V],
    GeometryClass.COMPLEX: [DOF_U, DOF_V, DOF_W, DOF_ALPHA, DOF_BETA, DOF_GAMMA],
}

# Rotations that leave the feature unchanged, so no tolerance can limit them
_INVARIANT_ROTATIONS = {
    GeometryClass.PLANE: {DOF_GAMMA},
    GeometryClass.CYLINDER: {DOF_GAMMA},
    GeometryClass.CONE: {DOF_GAMMA},
    GeometryClass.LINE: {DOF_GAMMA},
    GeometryClass.SPHERE: {DOF_ALPHA, DOF_BETA, DOF_GAMMA},
    GeometryClass.POINT: {DOF_ALPHA, DOF_BETA, DOF_GAMMA},
    GeometryClass.COMPLEX: set(),
}


def get_constrained_dof(geometry_class: GeometryClass) -> list[int]:
    """DOFs a feature of this class can deviate in (its invariance class).

    A complex surface has no invariance and deviates in all six DOFs.
    """
    return list(_DEVIATION_DOFS[geometry_class])


def get_free_dof(geometry_class: GeometryClass) -> list[int]:
    constrained = get_constrained_dof(geometry_class)
    return [d for d in range(6) if d not in constrained]


# ---------------------------------------------------------------------------
# Datum Reference Frame
# ---------------------------------------------------------------------------

@dataclass
class DatumFeature:
    """A datum feature as seen by DOF resolution.

    Attributes:
        label: Datum letter (A, B, C, ...).
        geometry_class: Shape of the datum feature.
        position: Origin in assembly coordinates.
        axis: Axis (cylinder, cone, line) or normal (plane), if declared.
    """
    label: str
    geometry_class: GeometryClass
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    axis: Optional[tuple[float, float, float]] = None

    @property
    def axis_index(self) -> int:
        """Local axis (0=x, 1=y, 2=z) the datum axis or normal is closest to."""
        if self.axis is None:
            return 2
        a = np.abs(np.asarray(self.axis, dtype=float))
        if not np.any(a > 0.0):
            return 2
        return int(np.argmax(a))


def _frame_axes(k: int) -> tuple[int, int, int]:
    """Assembly axes playing local (x, y, z) for a frame whose z is axis ``k``."""
    p0, p1 = [i for i in range(3) if i != k]
    return p0, p1, k


def _datum_candidate_dofs(datum: DatumFeature) -> list[int]:
    """DOFs a datum can remove, in the order it removes them."""
    p0, p1, k = _frame_axes(datum.axis_index)
    gc = datum.geometry_class

    if gc in (GeometryClass.PLANE, GeometryClass.COMPLEX):
        # Normal translation, then tilts about the in-plane axes
        return [k, 3 + p0, 3 + p1]
    if gc in (GeometryClass.CYLINDER, GeometryClass.LINE):
        # Centering perpendicular to the axis, then tilts of the axis
        return [p0, p1, 3 + p0, 3 + p1]
    if gc in (GeometryClass.SPHERE, GeometryClass.POINT):
        return [DOF_U, DOF_V, DOF_W]
    if gc == GeometryClass.CONE:
        return [DOF_U, DOF_V, DOF_W, 3 + p0, 3 + p1]
    raise ValueError(f"Unknown geometry class: {gc}")


@dataclass
class DatumReferenceFrame:
    """Up to three datums in precedence order and the DOFs they remove.

    Attributes:
        primary: First datum in the callout.
        secondary: Second datum in the callout.
        tertiary: Third datum in the callout.
        constrained_dofs: DOFs removed so far, in removal order.
    """
    primary: Optional[DatumFeature] = None
    secondary: Optional[DatumFeature] = None
    tertiary: Optional[DatumFeature] = None
    constrained_dofs: list[int] = field(default_factory=list)

    def with_primary(self, datum: DatumFeature) -> DatumReferenceFrame:
        self.constrained_dofs.extend(self._remaining(datum, 6))
        self.primary = datum
        return self

    def with_secondary(self, datum: DatumFeature) -> DatumReferenceFrame:
        self.constrained_dofs.extend(self._remaining(datum, 2))
        self.secondary = datum
        return self

    def with_tertiary(self, datum: DatumFeature) -> DatumReferenceFrame:
        self.constrained_dofs.extend(self._remaining(datum, 1))
        self.tertiary = datum
        return self

    def _remaining(self, datum: DatumFeature, limit: int) -> list[int]:
        free = [d for d in _datum_candidate_dofs(datum)
                if d not in self.constrained_dofs]
        return free[:limit]

    def free_dofs(self) -> list[int]:
        return [d for d in range(6) if d not in self.constrained_dofs]

    def is_constrained(self, dof: int) -> bool:
        return dof in self.constrained_dofs

    @property
    def datum_count(self) -> int:
        return sum(d is not None for d in (self.primary, self.secondary, self.tertiary))

    @property
    def reference_axis(self) -> int:
        """Assembly axis of the highest-precedence datum; z for an empty frame."""
        for datum in (self.primary, self.secondary, self.tertiary):
            if datum is not None:
                return datum.axis_index
        return DOF_W


def build_drf_from_refs(
    datum_refs: list[str],
    datum_features: dict[str, DatumFeature],
) -> DatumReferenceFrame:
    """Build a DRF from the datum labels of a feature control frame.

    The position in ``datum_refs`` sets precedence. Labels missing from
    ``datum_features`` are skipped; anything after the third is ignored.
    """
    drf = DatumReferenceFrame()
    for i, label in enumerate(datum_refs[:3]):
        datum = datum_features.get(label)
        if datum is None:
            logger.debug("Datum '%s' not found in catalogue, skipped", label)
            continue
        if i == 0:
            drf.with_primary(datum)
        elif i == 1:
            drf.with_secondary(datum)
        else:
            drf.with_tertiary(datum)
    return drf


def get_tolerance_dofs(
    geometry_class: GeometryClass,
    datum_refs: Optional[list[str]] = None,
    datum_features: Optional[dict[str, DatumFeature]] = None,
) -> list[int]:
    """Resolve which DOFs a toleranced feature's callout constrains.

    With datums, the result is every DOF the datum reference frame
    constrains except the rotations the feature is invariant under. The
    feature's local z is taken along the highest-precedence datum's axis,
    so its invariant rotations are mapped into the same assembly axes the
    datums were resolved in. With no datums, no catalogue, or a frame that
    constrains nothing, the feature's own deviation DOFs are returned.
    """
    if not datum_refs or not datum_features:
        return get_constrained_dof(geometry_class)

    drf = build_drf_from_refs(datum_refs, datum_features)
    if not drf.constrained_dofs:
        return get_constrained_dof(geometry_class)

    axes = _frame_axes(drf.reference_axis)
    invariant = {3 + axes[d - 3] for d in _INVARIANT_ROTATIONS[geometry_class]}
    return sorted(d for d in drf.constrained_dofs if d not in invariant)


# ---------------------------------------------------------------------------
# Jacobian
# ---------------------------------------------------------------------------

def build_jacobian(position) -> np.ndarray:
    """6x6 Jacobian moving a torsor at ``position`` to the assembly origin.

    J = | I3  [r]x |
        | 0   I3   |

    where [r]x is the cross-product matrix of r = (rx, ry, rz).
    """
    rx, ry, rz = (float(x) for x in position)
    j = np.eye(6)
    j[0, 4] = rz
    j[0, 5] = -ry
    j[1, 3] = -rz
    j[1, 5] = rx
    j[2, 3] = ry
    j[2, 4] = -rx
    return j


# ---------------------------------------------------------------------------
# Chain contributors and results
# ---------------------------------------------------------------------------

@dataclass
class ChainContributor3D:
    """One link in a 3D tolerance chain.

    Attributes:
        name: Contributor name.
        feature_id: Source feature id, if linked.
        geometry_class: Shape class of the feature.
        position: Feature origin in assembly coordinates.
        bounds: Torsor bounds of the feature's deviation.
        distribution: Sampling law for Monte Carlo.
        sigma_level: bound range = sigma_level * sigma.
        sign: +1 or -1 from the 1D contributor's direction.
    """
    name: str
    feature_id: Optional[str]
    geometry_class: GeometryClass
    position: tuple[float, float, float]
    bounds: TorsorBounds
    distribution: Distribution = Distribution.NORMAL
    sigma_level: float = DEFAULT_SIGMA_LEVEL
    sign: int = 1

    def bounds_array(self) -> np.ndarray:
        """(6, 2) array of [min, max]; unconstrained DOFs are [0, 0]."""
        arr = np.zeros((6, 2))
        for dof, iv in enumerate(self.bounds.as_list()):
            if iv is not None:
                arr[dof] = iv
        if self.sign < 0:
            arr = -arr[:, ::-1]
        return arr


@dataclass
class TorsorStats:
    """Statistics for one DOF of the result torsor."""
    wc_min: float = 0.0
    wc_max: float = 0.0
    rss_mean: float = 0.0
    rss_std_dev: float = 0.0
    rss_half_width: float = 0.0
    mc_mean: Optional[float] = None
    mc_std_dev: Optional[float] = None


@dataclass
class ResultTorsor:
    """Per-DOF statistics of the propagated chain at the assembly origin."""
    u: TorsorStats = field(default_factory=TorsorStats)
    v: TorsorStats = field(default_factory=TorsorStats)
    w: TorsorStats = field(default_factory=TorsorStats)
    alpha: TorsorStats = field(default_factory=TorsorStats)
    beta: TorsorStats = field(default_factory=TorsorStats)
    gamma: TorsorStats = field(default_factory=TorsorStats)

    def as_list(self) -> list[TorsorStats]:
        return [self.u, self.v, self.w, self.alpha, self.beta, self.gamma]

    def get(self, dof: int) -> TorsorStats:
        return self.as_list()[dof]

    @property
    def has_monte_carlo(self) -> bool:
        return self.u.mc_mean is not None

    def summary(self) -> str:
        lines = ["=== 3D Result Torsor ==="]
        for label, s in zip(DOF_LABELS, self.as_list()):
            line = (f"  {label}:  WC [{s.wc_min:+.6f}, {s.wc_max:+.6f}]"
                    f"  RSS {s.rss_mean:+.6f} ±{s.rss_half_width:.6f}")
            if s.mc_mean is not None:
                line += f"  MC {s.mc_mean:+.6f} (std {s.mc_std_dev:.6f})"
            lines.append(line)
        return "\n".join(lines)


@dataclass
class Chain3DResult:
    """Propagation output: the result torsor plus per-contributor sensitivity.

    ``sensitivity[i][dof]`` is contributor i's percentage of the result
    variance in that DOF.
    """
    torsor: ResultTorsor
    sensitivity: list[list[float]]


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------

def propagate_worst_case(contributors: list[ChainContributor3D]) -> np.ndarray:
    """Worst-case [min, max] per result DOF, shape (6, 2).

    result_min[j] = sum over k of min(J[j,k] * b_min[k], J[j,k] * b_max[k])
    """
    out = np.zeros((6, 2))
    for c in contributors:
        j = build_jacobian(c.position)
        b = c.bounds_array()
        lo = j * b[:, 0]
        hi = j * b[:, 1]
        out[:, 0] += np.minimum(lo, hi).sum(axis=1)
        out[:, 1] += np.maximum(lo, hi).sum(axis=1)
    return out


def propagate_rss(
    contributors: list[ChainContributor3D],
) -> tuple[np.ndarray, np.ndarray, list[np.ndarray]]:
    """Statistical propagation per result DOF.

    mean[j] = sum J[j,k] * center[k]
    var[j] = sum J[j,k]^2 * (range[k] / sigma_level)^2

    Returns:
        (mean, variance, per-contributor variance), each of length 6.
    """
    mean = np.zeros(6)
    variance = np.zeros(6)
    individual = []
    for c in contributors:
        j = build_jacobian(c.position)
        b = c.bounds_array()
        center = b.mean(axis=1)
        sigma = (b[:, 1] - b[:, 0]) / c.sigma_level
        mean += j @ center
        var_c = (j ** 2) @ (sigma ** 2)
        variance += var_c
        individual.append(var_c)
    return mean, variance, individual


def monte_carlo_3d(
    contributors: list[ChainContributor3D],
    iterations: int,
    seed: Optional[int] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Sample every contributor's torsor and sum them at the assembly origin.

    Returns:
        (mean, std) per result DOF.
    """
    rng = np.random.default_rng(seed)
    result = np.zeros((iterations, 6))
    for c in contributors:
        j = build_jacobian(c.position)
        b = c.bounds_array()
        local = np.empty((iterations, 6))
        for dof in range(6):
            lo, hi = b[dof]
            local[:, dof] = sample_distribution(
                rng, c.distribution, (lo + hi) / 2.0, (hi - lo) / 2.0,
                c.sigma_level / 2.0, iterations)
        result += local @ j.T
    mean = result.mean(axis=0)
    std = result.std(axis=0, ddof=1) if iterations > 1 else np.zeros(6)
    return mean, std


def analyze_chain_3d(
    contributors: list[ChainContributor3D],
    iterations: Optional[int] = None,
    seed: Optional[int] = None,
) -> Chain3DResult:
    """Run worst-case, RSS and (when ``iterations`` is given) Monte Carlo.

    The RSS half-width is reported at each contributor's sigma level
    (sigma_level / 2 standard deviations); all contributors of one chain
    share the stackup's sigma level.
    """
    wc = propagate_worst_case(contributors)
    mean, variance, individual = propagate_rss(contributors)
    std = np.sqrt(variance)
    half_k = (contributors[0].sigma_level if contributors else DEFAULT_SIGMA_LEVEL) / 2.0

    mc_mean = mc_std = None
    if iterations:
        mc_mean, mc_std = monte_carlo_3d(contributors, iterations, seed)

    stats = []
    for dof in range(6):
        stats.append(TorsorStats(
            wc_min=float(wc[dof, 0]),
            wc_max=float(wc[dof, 1]),
            rss_mean=float(mean[dof]),
            rss_std_dev=float(std[dof]),
            rss_half_width=float(half_k * std[dof]),
            mc_mean=float(mc_mean[dof]) if mc_mean is not None else None,
            mc_std_dev=float(mc_std[dof]) if mc_std is not None else None,
        ))
        logger.debug("DOF %s: wc=[%.6g, %.6g] mean=%.6g std=%.6g",
                     DOF_LABELS[dof], wc[dof, 0], wc[dof, 1], mean[dof], std[dof])

    per_dof = [percent_contribution([iv[dof] for iv in individual]) for dof in range(6)]
    sensitivity = [[per_dof[dof][i] for dof in range(6)] for i in range(len(contributors))]

    return Chain3DResult(torsor=ResultTorsor(*stats), sensitivity=sensitivity)
