"""Named defaults and thresholds used by the stackup engines.

Every value here can be overridden by the keyword argument of the same
meaning on the operation that consumes it.
"""

# Sigma level: tolerance band = DEFAULT_SIGMA_LEVEL * sigma (6.0 -> band spans +/-3 sigma)
DEFAULT_SIGMA_LEVEL = 6.0

# Bender k-factor, 0.0 disables the mean shift
DEFAULT_MEAN_SHIFT_K = 0.0

DEFAULT_MC_ITERATIONS = 10_000

# Worst-case margin below this fraction of the spec band is Marginal
MARGINAL_MARGIN_FRACTION = 0.1

# RSS classification thresholds on Cpk
CPK_CAPABLE = 1.33
CPK_MARGINAL = 1.0

# Linear -> angular conversion for 3D bounds derived from a +/- tolerance.
# Not scaled per feature size.
REFERENCE_LENGTH_MM = 50.0

# Lever length for orientation/runout GD&T when a feature has geometry but no length
DEFAULT_GDT_LENGTH_MM = 10.0

# Empirical Monte Carlo interval (95%)
PERCENTILE_LOW = 0.025
PERCENTILE_HIGH = 0.975
