"""Error taxonomy for scclust.

All fatal conditions derive from ``ScclustError`` so callers can catch the
whole family. Convergence problems are warnings, not errors: the stage
returns a best-effort result annotated with ``converged=False``.
"""


class ScclustError(Exception):
    """Base class for all scclust errors."""


class ConfigurationError(ScclustError, ValueError):
    """Invalid or contradictory parameters, raised before computation starts."""


class InsufficientDataError(ScclustError):
    """Too few cells or genes survive a stage to continue the run."""


class DataIntegrityError(ScclustError):
    """Cell or gene identifiers disagree between stages."""


class StageCancelledError(ScclustError):
    """A stage observed a cancellation request between work units."""


class NumericalConvergenceWarning(RuntimeWarning):
    """An iterative solver stopped at its iteration budget."""
