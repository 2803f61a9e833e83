"""Data models for 1D tolerance stackups."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

import numpy as np

from tolstack.constants import DEFAULT_MEAN_SHIFT_K, DEFAULT_SIGMA_LEVEL

if TYPE_CHECKING:
    from tolstack.analysis import MonteCarloResult, RssResult, WorstCaseResult
    from tolstack.analysis_3d import Analysis3DResults
    from tolstack.features import Feature


class InvalidStackupError(ValueError):
    """Raised when a stackup cannot be analyzed as given."""


class Distribution(Enum):
    """Statistical distribution for a tolerance contributor."""
    NORMAL = "normal"
    UNIFORM = "uniform"
    TRIANGULAR = "triangular"
    LOGNORMAL = "lognormal"
    WEIBULL_RIGHT = "weibull_right"   # right-skewed
    WEIBULL_LEFT = "weibull_left"     # left-skewed


class Direction(Enum):
    """Whether a contributor adds to or subtracts from the stack."""
    POSITIVE = "positive"
    NEGATIVE = "negative"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.POSITIVE else -1


@dataclass
class Target:
    """The derived dimension a stackup is checked against.

    Attributes:
        name: Name of the gap or dimension.
        nominal: Nominal value.
        upper_limit: Upper specification limit (USL).
        lower_limit: Lower specification limit (LSL).
        units: Display units.
        critical: Informational flag for critical dimensions.
    """
    name: str
    nominal: float
    upper_limit: float
    lower_limit: float
    units: str = "mm"
    critical: bool = False

    def __post_init__(self) -> None:
        if self.upper_limit < self.lower_limit:
            raise ValueError(
                f"upper_limit ({self.upper_limit}) must not be below "
                f"lower_limit ({self.lower_limit})")

    @property
    def band(self) -> float:
        """Width of the specification band (USL - LSL)."""
        return self.upper_limit - self.lower_limit


@dataclass
class FeatureRef:
    """Display-only link from a contributor to a feature in the repository."""
    id: str
    name: Optional[str] = None
    component_id: Optional[str] = None
    component_name: Optional[str] = None


@dataclass
class GdtContribution:
    """GD&T position tolerance carried by a 1D contributor.

    The position zone diameter widens the contributor's band when a stackup
    is analyzed with GD&T included.

    Attributes:
        position_tolerance: Position zone diameter.
        actual_size: Measured feature size used for the bonus, if known.
        bonus: Departure from MMC/LMC (computed by ``with_bonus``).
        effective_tolerance: position_tolerance + bonus.
    """
    position_tolerance: float
    actual_size: Optional[float] = None
    bonus: Optional[float] = None
    effective_tolerance: Optional[float] = None

    def __post_init__(self) -> None:
        if self.position_tolerance < 0:
            raise ValueError(
                f"position_tolerance must be >= 0, got {self.position_tolerance}")
        if self.effective_tolerance is None:
            self.effective_tolerance = self.position_tolerance + (self.bonus or 0.0)

    @classmethod
    def with_bonus(cls, position_tolerance: float, actual_size: float,
                   mmc: float) -> GdtContribution:
        """Position tolerance plus the bonus earned by departing from MMC."""
        bonus = abs(actual_size - mmc)
        return cls(
            position_tolerance=position_tolerance,
            actual_size=actual_size,
            bonus=bonus,
            effective_tolerance=position_tolerance + bonus,
        )

    @property
    def effective(self) -> float:
        if self.effective_tolerance is None:
            return self.position_tolerance
        return self.effective_tolerance


@dataclass
class Contributor:
    """A single dimensional contributor in a 1D tolerance chain.

    Attributes:
        name: Descriptive name for this contributor.
        nominal: Nominal dimension value.
        plus_tol: Upper tolerance (non-negative magnitude).
        minus_tol: Lower tolerance (non-negative magnitude, subtracted).
        direction: POSITIVE adds to the stack, NEGATIVE subtracts from it.
        distribution: Sampling law used by Monte Carlo.
        feature: Optional link to the source feature (display only).
        source: Optional drawing/revision reference.
        gdt_position: Optional GD&T position tolerance.
    """
    name: str
    nominal: float
    plus_tol: float
    minus_tol: float
    direction: Direction = Direction.POSITIVE
    distribution: Distribution = Distribution.NORMAL
    feature: Optional[FeatureRef] = None
    source: Optional[str] = None
    gdt_position: Optional[GdtContribution] = None

    def __post_init__(self) -> None:
        if self.plus_tol < 0:
            raise ValueError(f"plus_tol must be >= 0, got {self.plus_tol}")
        if self.minus_tol < 0:
            raise ValueError(f"minus_tol must be >= 0, got {self.minus_tol}")

    @property
    def sign(self) -> int:
        return self.direction.sign

    @property
    def tolerance_band(self) -> float:
        """Dimensional tolerance band (plus_tol + minus_tol)."""
        return self.plus_tol + self.minus_tol

    @property
    def total_tolerance_band(self) -> float:
        """Tolerance band widened by the effective GD&T position zone, if any."""
        if self.gdt_position is None:
            return self.tolerance_band
        return self.tolerance_band + self.gdt_position.effective

    def band(self, include_gdt: bool) -> float:
        return self.total_tolerance_band if include_gdt else self.tolerance_band

    @property
    def mean_offset(self) -> float:
        """Shift of the band center from nominal for asymmetric tolerances."""
        return (self.plus_tol - self.minus_tol) / 2.0

    @property
    def process_mean(self) -> float:
        """Center of the tolerance band."""
        return self.nominal + self.mean_offset

    @property
    def signed_nominal(self) -> float:
        return self.sign * self.nominal

    def sync_from_feature(self, feature: Feature) -> bool:
        """Copy nominal and tolerances from the feature's primary dimension.

        Returns True if any value changed.
        """
        dim = feature.primary_dimension()
        if dim is None or not self.is_out_of_sync(feature):
            return False
        self.nominal = dim.nominal
        self.plus_tol = dim.plus_tol
        self.minus_tol = dim.minus_tol
        return True

    def is_out_of_sync(self, feature: Feature) -> bool:
        dim = feature.primary_dimension()
        if dim is None:
            return False
        eps = np.finfo(float).eps
        return (abs(self.nominal - dim.nominal) > eps
                or abs(self.plus_tol - dim.plus_tol) > eps
                or abs(self.minus_tol - dim.minus_tol) > eps)


@dataclass
class AnalysisResults:
    """Last computed 1D results, one slot per method."""
    worst_case: Optional[WorstCaseResult] = None
    rss: Optional[RssResult] = None
    monte_carlo: Optional[MonteCarloResult] = None


def _new_stackup_id() -> str:
    return f"TOL-{uuid.uuid4().hex.upper()}"


@dataclass
class Stackup:
    """A tolerance chain checked against a target.

    Contributor order is insertion order; it only affects display and the
    RSS mean trace. ``revision`` counts structural edits (adding or removing
    contributors). The result slots are overwritten on every analysis run.

    Attributes:
        title: Stackup title.
        target: Specification envelope for every method.
        contributors: Ordered contributors.
        id: Stackup identity used by the persistence layer.
        description: Optional longer description.
        sigma_level: Tolerance band = sigma_level * sigma (6.0 -> +/-3 sigma).
        mean_shift_k: Bender k-factor; 0 disables the mean shift.
        include_gdt: Widen bands by GD&T position tolerances.
        functional_direction: Unit vector the 3D result is projected onto.
        revision: Structural revision counter.
        results: Last 1D results.
        results_3d: Last 3D results, if 3D analysis was run.
    """
    title: str
    target: Target
    contributors: list[Contributor] = field(default_factory=list)
    id: str = field(default_factory=_new_stackup_id)
    description: str = ""
    sigma_level: float = DEFAULT_SIGMA_LEVEL
    mean_shift_k: float = DEFAULT_MEAN_SHIFT_K
    include_gdt: bool = False
    functional_direction: tuple[float, float, float] = (1.0, 0.0, 0.0)
    revision: int = 1
    results: AnalysisResults = field(default_factory=AnalysisResults)
    results_3d: Optional[Analysis3DResults] = None

    def __post_init__(self) -> None:
        d = np.array(self.functional_direction, dtype=float)
        mag = np.linalg.norm(d)
        if mag < 1e-12:
            raise ValueError("functional_direction must be non-zero")
        self.functional_direction = tuple(float(x) for x in d / mag)

    def add(self, contributor: Contributor) -> None:
        """Append a contributor to the chain."""
        self.contributors.append(contributor)
        self.revision += 1

    def remove(self, name: str) -> Contributor:
        """Remove the first contributor with the given name."""
        for i, c in enumerate(self.contributors):
            if c.name == name:
                self.revision += 1
                return self.contributors.pop(i)
        raise KeyError(f"Contributor '{name}' not in stackup '{self.title}'")

    @property
    def contributor_count(self) -> int:
        return len(self.contributors)

    @property
    def has_analysis(self) -> bool:
        return self.results.worst_case is not None

    def validate(
        self,
        sigma_level: Optional[float] = None,
        mean_shift_k: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Check the stackup can be analyzed; raise InvalidStackupError if not.

        ``sigma_level`` and ``mean_shift_k`` default to the stackup's own
        settings; pass overrides to check them before they are applied.
        """
        if sigma_level is None:
            sigma_level = self.sigma_level
        if mean_shift_k is None:
            mean_shift_k = self.mean_shift_k
        if not self.contributors:
            raise InvalidStackupError(
                f"Stackup '{self.title}' has no contributors. "
                "Add contributors before running analysis.")
        if sigma_level <= 0:
            raise InvalidStackupError(
                f"Sigma level must be positive, got {sigma_level}")
        if mean_shift_k < 0:
            raise InvalidStackupError(
                f"Mean shift k-factor must be non-negative, got {mean_shift_k}")
        if iterations is not None and iterations <= 0:
            raise InvalidStackupError(f"Iterations must be positive, got {iterations}")
