"""GD&T control to torsor bounds conversion per ASME Y14.5 / ISO 1101.

Each characteristic bounds a fixed set of DOFs depending on the feature's
geometry class. Zone sizes are diameters or full widths, so translational
bounds are +/- half the zone. Orientation and runout controls become
angular bounds of +/- zone / length (small angle). MMC/LMC modifiers add
the departure of the actual size from the MMC/LMC size as bonus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from tolstack.constants import DEFAULT_GDT_LENGTH_MM
from tolstack.features import (
    Dimension,
    Feature,
    GdtControl,
    GdtSymbol,
    Geometry3D,
    GeometryClass,
    MaterialCondition,
    TorsorBounds,
)
from tolstack.sdt import DOF_ALPHA, DOF_BETA, DOF_U, DOF_V, DOF_W

logger = logging.getLogger(__name__)

_ORIENTATION = (GdtSymbol.PERPENDICULARITY, GdtSymbol.PARALLELISM, GdtSymbol.ANGULARITY)


@dataclass
class GdtTorsorResult:
    """Bounds computed from a feature's GD&T.

    Attributes:
        bounds: Merged torsor bounds.
        warnings: Conditions that made the bounds incomplete.
        has_bonus: True if any control earned MMC/LMC bonus.
    """
    bounds: TorsorBounds = field(default_factory=TorsorBounds)
    warnings: list[str] = field(default_factory=list)
    has_bonus: bool = False


def effective_tolerance(
    control: GdtControl,
    dimension: Optional[Dimension],
    actual_size: Optional[float],
) -> tuple[float, bool]:
    """Tolerance value plus MMC/LMC bonus; returns (value, bonus_applied)."""
    if dimension is None or actual_size is None:
        return control.value, False
    if control.material_condition == MaterialCondition.MMC:
        bonus = abs(actual_size - dimension.mmc())
    elif control.material_condition == MaterialCondition.LMC:
        bonus = abs(actual_size - dimension.lmc())
    else:
        return control.value, False
    return control.value + bonus, bonus > 0.0


def _set_sym(bounds: TorsorBounds, dofs, half: float) -> None:
    for dof in dofs:
        bounds.set(dof, -half, half)


def _length(geometry: Geometry3D) -> float:
    return geometry.length if geometry.length is not None else DEFAULT_GDT_LENGTH_MM


def _bounds_for_control(
    control: GdtControl,
    geometry_class: GeometryClass,
    geometry: Optional[Geometry3D],
    tol: float,
) -> tuple[TorsorBounds, list[str]]:
    bounds = TorsorBounds()
    warnings = []
    half = tol / 2.0
    tilt = (DOF_ALPHA, DOF_BETA)
    sym = control.symbol

    if sym == GdtSymbol.POSITION:
        if geometry_class in (GeometryClass.SPHERE, GeometryClass.POINT,
                              GeometryClass.COMPLEX):
            _set_sym(bounds, (DOF_U, DOF_V, DOF_W), half)
        else:
            _set_sym(bounds, (DOF_U, DOF_V), half)

    elif sym in _ORIENTATION:
        if geometry is not None:
            _set_sym(bounds, tilt, tol / _length(geometry))
        else:
            warnings.append(
                f"{sym.value.capitalize()} GD&T requires geometry_3d.length "
                "for angular bound calculation")

    elif sym == GdtSymbol.FLATNESS:
        _set_sym(bounds, (DOF_W,), half)

    elif sym in (GdtSymbol.CONCENTRICITY, GdtSymbol.CIRCULARITY, GdtSymbol.PROFILE_LINE):
        _set_sym(bounds, (DOF_U, DOF_V), half)

    elif sym in (GdtSymbol.RUNOUT, GdtSymbol.CYLINDRICITY):
        _set_sym(bounds, (DOF_U, DOF_V), half)
        if geometry is not None:
            _set_sym(bounds, tilt, tol / _length(geometry))

    elif sym == GdtSymbol.TOTAL_RUNOUT:
        _set_sym(bounds, (DOF_U, DOF_V, DOF_W), half)
        if geometry is not None:
            _set_sym(bounds, tilt, tol / _length(geometry))

    elif sym == GdtSymbol.PROFILE_SURFACE:
        if geometry_class == GeometryClass.PLANE:
            _set_sym(bounds, (DOF_W,), half)
        elif geometry_class in (GeometryClass.CYLINDER, GeometryClass.CONE):
            _set_sym(bounds, (DOF_U, DOF_V), half)
        else:
            _set_sym(bounds, (DOF_U, DOF_V, DOF_W), half)

    elif sym == GdtSymbol.STRAIGHTNESS:
        if geometry_class in (GeometryClass.CYLINDER, GeometryClass.LINE):
            # Straightness of the axis
            if geometry is not None:
                _set_sym(bounds, tilt, tol / _length(geometry))
        else:
            _set_sym(bounds, (DOF_W,), half)

    elif sym == GdtSymbol.SYMMETRY:
        _set_sym(bounds, (DOF_U,), half)

    else:
        raise ValueError(f"Unknown GD&T symbol: {sym}")

    return bounds, warnings


def bounds_from_dimension(
    dimension: Dimension,
    geometry_class: GeometryClass,
    geometry: Optional[Geometry3D] = None,
) -> TorsorBounds:
    """Translational bounds implied by a plain +/- dimension."""
    bounds = TorsorBounds()
    half_band = dimension.tolerance_band / 2.0

    if geometry_class in (GeometryClass.CYLINDER, GeometryClass.CONE, GeometryClass.LINE):
        # Diameter -> radius
        _set_sym(bounds, (DOF_U, DOF_V), half_band / 2.0)
    elif geometry_class in (GeometryClass.SPHERE, GeometryClass.POINT):
        _set_sym(bounds, (DOF_U, DOF_V, DOF_W), half_band / 2.0)
    elif geometry_class == GeometryClass.PLANE:
        _set_sym(bounds, (DOF_W,), half_band)
    elif geometry is not None:
        # Complex with a declared axis: along the axis
        _set_sym(bounds, (DOF_W,), half_band)
    else:
        _set_sym(bounds, (DOF_U, DOF_V, DOF_W), half_band)
    return bounds


def _validate_for_geometry(bounds: TorsorBounds, geometry_class: GeometryClass) -> list[str]:
    warnings = []
    if geometry_class == GeometryClass.CYLINDER:
        if bounds.u is None or bounds.v is None:
            warnings.append("Cylinder feature missing radial (u, v) bounds")
    elif geometry_class == GeometryClass.PLANE:
        if bounds.w is None and bounds.alpha is None and bounds.beta is None:
            warnings.append("Plane feature has no bounds - expected w, alpha, or beta")
    elif geometry_class in (GeometryClass.SPHERE, GeometryClass.POINT):
        if bounds.u is None and bounds.v is None and bounds.w is None:
            warnings.append("Point/Sphere feature missing positional (u, v, w) bounds")
    return warnings


def compute_torsor_bounds(feature: Feature, actual_size: Optional[float] = None) -> GdtTorsorResult:
    """Compute torsor bounds from a feature's GD&T controls and geometry.

    Multiple controls merge to the widest interval per DOF. A feature with
    dimensions but no GD&T gets bounds from its primary dimension. A
    feature without a geometry class is treated as complex.

    Args:
        feature: Feature with GD&T controls and geometry info.
        actual_size: Measured size for MMC/LMC bonus, if known.
    """
    geometry_class = feature.geometry_class or GeometryClass.COMPLEX
    geometry = feature.geometry_3d
    dim = feature.primary_dimension()
    result = GdtTorsorResult()

    for control in feature.gdt:
        tol, bonus = effective_tolerance(control, dim, actual_size)
        ctrl_bounds, warnings = _bounds_for_control(control, geometry_class, geometry, tol)
        result.bounds = result.bounds.merged(ctrl_bounds)
        result.has_bonus = result.has_bonus or bonus
        result.warnings.extend(warnings)

    if not feature.gdt and dim is not None:
        result.bounds = result.bounds.merged(bounds_from_dimension(dim, geometry_class, geometry))
        result.warnings.append("Torsor bounds computed from dimensional tolerance (no GD&T)")

    result.warnings.extend(_validate_for_geometry(result.bounds, geometry_class))
    for w in result.warnings:
        logger.debug("%s: %s", feature.id, w)
    return result


def bounds_approx_equal(a: TorsorBounds, b: TorsorBounds, epsilon: float = 1e-9) -> bool:
    for x, y in zip(a.as_list(), b.as_list()):
        if x is None and y is None:
            continue
        if x is None or y is None:
            return False
        if abs(x[0] - y[0]) >= epsilon or abs(x[1] - y[1]) >= epsilon:
            return False
    return True


def check_stale_bounds(
    stored: Optional[TorsorBounds],
    computed: TorsorBounds,
    epsilon: float = 1e-9,
) -> Optional[str]:
    """Describe how stored bounds disagree with freshly computed ones, or None."""
    if stored is None:
        if computed.has_any_bounds():
            return "torsor_bounds not set but can be computed from GD&T"
        return None
    if not bounds_approx_equal(stored, computed, epsilon):
        return "stored torsor_bounds differs from computed"
    return None
