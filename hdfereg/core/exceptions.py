"""Error and warning taxonomy for fixed-effects estimation.

Fatal conditions raise; advisory conditions are issued through
:mod:`warnings` once per fit and recorded on the result.
"""

# hdfereg/core/exceptions.py
from __future__ import annotations

__all__ = [
    "CollinearityError",
    "EstimationError",
    "InvalidFactorError",
    "NonConvergenceWarning",
]


class InvalidFactorError(ValueError):
    """Degenerate or unidentified fixed-effect specification.

    Raised before any iteration starts, e.g. when a factor has fewer than two
    groups or when the factors carry at least as many parameters as there are
    observations.
    """


class EstimationError(RuntimeError):
    """Fatal failure during estimation (divergence, empty sample, ...)."""


class CollinearityError(UserWarning):
    """Advisory: regressors were dropped because of exact collinearity.

    Never raised. Issued via ``warnings.warn`` and recorded in
    ``FixedEffectsResult.collin_vars``.
    """


class NonConvergenceWarning(RuntimeWarning):
    """Advisory: demeaning or the IRLS loop reached its iteration cap."""
