"""Feature entities consumed by the stackup engines.

A feature is a toleranced characteristic on a component (hole, face, pin,
...). The 1D engine only reads its primary dimension when syncing a
contributor; the 3D engine also reads its geometry class, 3D placement,
GD&T controls and stored torsor bounds.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from tolstack.models import Distribution


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class FeatureType(Enum):
    """Material side of a feature of size."""
    INTERNAL = "internal"   # hole, bore, slot: MMC is the smallest size
    EXTERNAL = "external"   # shaft, pin, boss: MMC is the largest size


class GeometryClass(Enum):
    """Geometric shape class; decides which torsor DOFs are meaningful."""
    PLANE = "plane"
    CYLINDER = "cylinder"
    SPHERE = "sphere"
    CONE = "cone"
    POINT = "point"
    LINE = "line"
    COMPLEX = "complex"


class GdtSymbol(Enum):
    """GD&T characteristic symbols per ASME Y14.5."""
    POSITION = "position"
    FLATNESS = "flatness"
    PERPENDICULARITY = "perpendicularity"
    PARALLELISM = "parallelism"
    CONCENTRICITY = "concentricity"
    RUNOUT = "runout"
    TOTAL_RUNOUT = "total_runout"
    PROFILE_SURFACE = "profile_surface"
    PROFILE_LINE = "profile_line"
    CIRCULARITY = "circularity"
    CYLINDRICITY = "cylindricity"
    STRAIGHTNESS = "straightness"
    ANGULARITY = "angularity"
    SYMMETRY = "symmetry"


class MaterialCondition(Enum):
    """Material condition modifiers."""
    MMC = "mmc"     # Maximum Material Condition
    LMC = "lmc"     # Least Material Condition
    RFS = "rfs"     # Regardless of Feature Size (default)


# ---------------------------------------------------------------------------
# Dimensions and GD&T
# ---------------------------------------------------------------------------

@dataclass
class Dimension:
    """A dimensional characteristic with plus/minus tolerances.

    Attributes:
        name: Characteristic name ("diameter", "length", ...).
        nominal: Nominal value.
        plus_tol: Upper tolerance (non-negative magnitude).
        minus_tol: Lower tolerance (non-negative magnitude).
        units: Display units.
        internal: True for internal features (holes), False for external.
        distribution: Sampling law for contributors built from this dimension.
    """
    name: str
    nominal: float
    plus_tol: float
    minus_tol: float
    units: str = "mm"
    internal: bool = True
    distribution: Distribution = Distribution.NORMAL

    def __post_init__(self) -> None:
        if self.plus_tol < 0 or self.minus_tol < 0:
            raise ValueError(
                f"Dimension '{self.name}' tolerances must be non-negative magnitudes")

    def mmc(self) -> float:
        """Size at Maximum Material Condition."""
        if self.internal:
            return self.nominal - self.minus_tol
        return self.nominal + self.plus_tol

    def lmc(self) -> float:
        """Size at Least Material Condition."""
        if self.internal:
            return self.nominal + self.plus_tol
        return self.nominal - self.minus_tol

    @property
    def tolerance_band(self) -> float:
        return self.plus_tol + self.minus_tol


@dataclass
class GdtControl:
    """A single feature control frame on a feature.

    Attributes:
        symbol: GD&T characteristic.
        value: Tolerance zone size.
        datum_refs: Datum labels in precedence order, e.g. ["A", "B", "C"].
        material_condition: Modifier applied to the tolerance value.
        units: Display units.
    """
    symbol: GdtSymbol
    value: float
    datum_refs: list[str] = field(default_factory=list)
    material_condition: MaterialCondition = MaterialCondition.RFS
    units: str = "mm"

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"GD&T tolerance value must be >= 0, got {self.value}")

    @property
    def has_datums(self) -> bool:
        return bool(self.datum_refs)


# ---------------------------------------------------------------------------
# 3D placement and torsor bounds
# ---------------------------------------------------------------------------

@dataclass
class Geometry3D:
    """Placement of a feature's local frame in the assembly frame.

    Attributes:
        origin: Feature origin [x, y, z].
        axis: Feature axis or plane normal.
        length: Feature length, used for angular bounds from linear GD&T.
    """
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    axis: tuple[float, float, float] = (0.0, 0.0, 1.0)
    length: Optional[float] = None


DOF_NAMES = ("u", "v", "w", "alpha", "beta", "gamma")

Interval = tuple[float, float]


@dataclass
class TorsorBounds:
    """Optional [min, max] interval per small-displacement DOF.

    u, v, w are translations along the local x, y, z axes; alpha, beta,
    gamma are rotations (radians) about them. None means the DOF is not
    constrained by this feature.
    """
    u: Optional[Interval] = None
    v: Optional[Interval] = None
    w: Optional[Interval] = None
    alpha: Optional[Interval] = None
    beta: Optional[Interval] = None
    gamma: Optional[Interval] = None

    @classmethod
    def from_list(cls, intervals: list[Optional[Interval]]) -> TorsorBounds:
        if len(intervals) != 6:
            raise ValueError(f"Expected 6 DOF intervals, got {len(intervals)}")
        return cls(**{name: iv for name, iv in zip(DOF_NAMES, intervals)})

    def as_list(self) -> list[Optional[Interval]]:
        return [getattr(self, name) for name in DOF_NAMES]

    def get(self, dof: int) -> Optional[Interval]:
        return getattr(self, DOF_NAMES[dof])

    def set(self, dof: int, low: float, high: float) -> None:
        setattr(self, DOF_NAMES[dof], (low, high))

    def has_any_bounds(self) -> bool:
        return any(iv is not None for iv in self.as_list())

    def active_dofs(self) -> list[int]:
        return [i for i, iv in enumerate(self.as_list()) if iv is not None]

    def merged(self, other: TorsorBounds) -> TorsorBounds:
        """Widest interval per DOF across both bounds."""
        out = []
        for a, b in zip(self.as_list(), other.as_list()):
            if a is None:
                out.append(b)
            elif b is None:
                out.append(a)
            else:
                out.append((min(a[0], b[0]), max(a[1], b[1])))
        return TorsorBounds.from_list(out)


# ---------------------------------------------------------------------------
# Feature
# ---------------------------------------------------------------------------

def _new_feature_id() -> str:
    return f"FEAT-{uuid.uuid4().hex.upper()}"


@dataclass
class Feature:
    """A toleranced feature on a component.

    Attributes:
        title: Feature title.
        component: Owning component id.
        feature_type: Internal or external.
        dimensions: Dimensional characteristics; the first is primary.
        gdt: Feature control frames.
        geometry_class: Shape class, None if not declared.
        geometry_3d: Placement in the assembly frame, None if not declared.
        torsor_bounds: Stored bounds, None if never computed.
        datum_label: Datum letter if this feature is a datum feature.
        id: Feature identity.
    """
    title: str
    component: str = ""
    feature_type: FeatureType = FeatureType.INTERNAL
    dimensions: list[Dimension] = field(default_factory=list)
    gdt: list[GdtControl] = field(default_factory=list)
    geometry_class: Optional[GeometryClass] = None
    geometry_3d: Optional[Geometry3D] = None
    torsor_bounds: Optional[TorsorBounds] = None
    datum_label: Optional[str] = None
    id: str = field(default_factory=_new_feature_id)

    def add_dimension(self, name: str, nominal: float, plus_tol: float,
                      minus_tol: float, internal: Optional[bool] = None) -> Dimension:
        if internal is None:
            internal = self.feature_type == FeatureType.INTERNAL
        dim = Dimension(name=name, nominal=nominal, plus_tol=plus_tol,
                        minus_tol=minus_tol, internal=internal)
        self.dimensions.append(dim)
        return dim

    def primary_dimension(self) -> Optional[Dimension]:
        return self.dimensions[0] if self.dimensions else None

    def has_gdt(self) -> bool:
        return bool(self.gdt)

    def position_control(self) -> Optional[GdtControl]:
        return next((g for g in self.gdt if g.symbol == GdtSymbol.POSITION), None)

    def position_tolerance(self) -> Optional[float]:
        ctrl = self.position_control()
        return ctrl.value if ctrl is not None else None

    def position_with_bonus(self, actual_size: Optional[float]) -> Optional[float]:
        """Position tolerance including MMC/LMC bonus at the given actual size.

        RFS returns the base value regardless of size. MMC and LMC add the
        departure of ``actual_size`` from the MMC or LMC size. Returns None
        if there is no position control or no primary dimension, or if a
        bonus applies but ``actual_size`` is unknown.
        """
        ctrl = self.position_control()
        dim = self.primary_dimension()
        if ctrl is None or dim is None:
            return None
        if ctrl.material_condition == MaterialCondition.RFS:
            return ctrl.value
        if actual_size is None:
            return None
        if ctrl.material_condition == MaterialCondition.MMC:
            bonus = abs(actual_size - dim.mmc())
        else:
            bonus = abs(actual_size - dim.lmc())
        return ctrl.value + bonus
