"""Tolerance stackup analysis engine.

Supports Worst-Case, RSS, and Monte Carlo analysis methods for:
- 1D dimensional chains with asymmetric tolerances and Bender mean shift
- 3D small displacement torsor chains built from feature geometry

Additional capabilities:
- Process capability metrics (Cp/Cpk, Pp/Ppk) and variance sensitivity
- GD&T to torsor bounds with MMC/LMC bonus tolerance
- DOF resolution from datum reference frames (3-2-1 rule)
- Functional projection of a 3D result onto a direction
- Batch analysis of many stackups
"""

from tolstack.models import (
    Contributor, Direction, Distribution, FeatureRef, GdtContribution,
    InvalidStackupError, Stackup, Target,
)
from tolstack.features import (
    Dimension, Feature, FeatureType, GdtControl, GdtSymbol,
    Geometry3D, GeometryClass, MaterialCondition, TorsorBounds,
)
from tolstack.analysis import (
    AnalysisOutcome, BatchSummary, MonteCarloResult, RssResult, WorstCaseResult,
    analyze_batch, analyze_stackup, compute_monte_carlo, compute_rss,
    compute_worst_case, trace_rss_mean,
)
from tolstack.gdt import GdtTorsorResult, compute_torsor_bounds
from tolstack.sdt import (
    ChainContributor3D, DatumFeature, DatumReferenceFrame, ResultTorsor,
    TorsorStats, build_jacobian, get_constrained_dof, get_tolerance_dofs,
)
from tolstack.analysis_3d import (
    Analysis3DResults, FunctionalProjection, analyze_stackup_3d,
    build_datum_catalogue, compute_3d, compute_functional_projection,
)

__all__ = [
    # Core models
    "Contributor", "Direction", "Distribution", "FeatureRef", "GdtContribution",
    "InvalidStackupError", "Stackup", "Target",
    # Features
    "Dimension", "Feature", "FeatureType", "GdtControl", "GdtSymbol",
    "Geometry3D", "GeometryClass", "MaterialCondition", "TorsorBounds",
    # 1D analysis
    "AnalysisOutcome", "BatchSummary", "MonteCarloResult", "RssResult",
    "WorstCaseResult", "analyze_batch", "analyze_stackup",
    "compute_monte_carlo", "compute_rss", "compute_worst_case", "trace_rss_mean",
    # GD&T
    "GdtTorsorResult", "compute_torsor_bounds",
    # SDT
    "ChainContributor3D", "DatumFeature", "DatumReferenceFrame", "ResultTorsor",
    "TorsorStats", "build_jacobian", "get_constrained_dof", "get_tolerance_dofs",
    # 3D analysis
    "Analysis3DResults", "FunctionalProjection", "analyze_stackup_3d",
    "build_datum_catalogue", "compute_3d", "compute_functional_projection",
]
__version__ = "0.1.0"
