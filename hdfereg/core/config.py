"""Estimation configuration and process-wide defaults.

The defaults are a single immutable :class:`EstimationConfig` value. Estimators
read it once when a fit starts and thread the resolved value through every
core routine, so changing the defaults never affects a fit in flight.
"""

# hdfereg/core/config.py
from __future__ import annotations

import threading
from dataclasses import dataclass, fields, replace
from typing import Any

__all__ = [
    "EstimationConfig",
    "get_defaults",
    "reset_defaults",
    "resolve_config",
    "set_defaults",
]

_FIXEF_RM = ("none", "perfect", "singleton", "both")


@dataclass(frozen=True, slots=True)
class EstimationConfig:
    """Numerical controls shared by every estimator.

    Attributes
    ----------
    fixef_tol : float
        Relative sum-of-squared-changes tolerance of the demeaning sweeps.
    fixef_iter : int
        Maximum number of demeaning sweeps per column.
    glm_tol : float
        Relative deviance change at which the IRLS loop stops.
    glm_iter : int
        Maximum number of IRLS iterations.
    collin_tol : float
        Relative squared-norm threshold below which a regressor is treated as
        a linear combination of earlier regressors.
    fixef_rm : {"none", "perfect", "singleton", "both"}
        Which observations to remove before estimation: groups with a
        perfectly fitted outcome (count/binary families), singleton groups,
        both, or none.
    accel : bool
        Irons-Tuck extrapolation of the demeaning sweeps.
    n_threads : int
        Worker threads used to demean independent columns.
    max_halving : int
        Maximum number of step halvings per IRLS iteration.
    theta_init : float or None
        Starting dispersion of the negative binomial (moment estimate if None).
    theta_max : float
        Dispersion bound beyond which the negative binomial is deemed divergent.
    nb_iter : int
        Maximum number of outer dispersion updates of the negative binomial.
    demean_warn : bool
        Issue a :class:`NonConvergenceWarning` when a demeaning column hits
        ``fixef_iter``.
    """

    fixef_tol: float = 1e-8
    fixef_iter: int = 10_000
    glm_tol: float = 1e-8
    glm_iter: int = 25
    collin_tol: float = 1e-10
    fixef_rm: str = "perfect"
    accel: bool = True
    n_threads: int = 1
    max_halving: int = 20
    theta_init: float | None = None
    theta_max: float = 1e6
    nb_iter: int = 50
    demean_warn: bool = True

    def __post_init__(self) -> None:
        for name in ("fixef_tol", "glm_tol", "collin_tol", "theta_max"):
            val = getattr(self, name)
            if not (float(val) > 0.0):
                raise ValueError(f"{name} must be strictly positive")
        for name in ("fixef_iter", "glm_iter", "n_threads", "nb_iter"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if int(self.max_halving) < 0:
            raise ValueError("max_halving must be non-negative")
        if self.fixef_rm not in _FIXEF_RM:
            raise ValueError(f"fixef_rm must be one of {_FIXEF_RM}")
        if self.theta_init is not None and not (float(self.theta_init) > 0.0):
            raise ValueError("theta_init must be strictly positive")

    def with_options(self, **updates: Any) -> EstimationConfig:
        """Return a copy with the given fields replaced (validated)."""
        _check_names(updates)
        return replace(self, **updates)


_LOCK = threading.Lock()
_DEFAULTS = EstimationConfig()


def _check_names(updates: dict[str, Any]) -> None:
    valid = {f.name for f in fields(EstimationConfig)}
    unknown = sorted(set(updates) - valid)
    if unknown:
        raise TypeError(f"unknown configuration option(s): {', '.join(unknown)}")


def get_defaults() -> EstimationConfig:
    """Return the current process-wide default configuration."""
    return _DEFAULTS


def set_defaults(**updates: Any) -> EstimationConfig:
    """Replace selected process-wide defaults and return the new value.

    The previous value is not mutated; fits that already resolved their
    configuration keep using it.
    """
    global _DEFAULTS
    _check_names(updates)
    with _LOCK:
        _DEFAULTS = replace(_DEFAULTS, **updates)
        return _DEFAULTS


def reset_defaults() -> EstimationConfig:
    """Restore the built-in defaults."""
    global _DEFAULTS
    with _LOCK:
        _DEFAULTS = EstimationConfig()
        return _DEFAULTS


def resolve_config(
    config: EstimationConfig | None = None, **overrides: Any,
) -> EstimationConfig:
    """Combine an explicit config (or the defaults) with per-call overrides."""
    base = get_defaults() if config is None else config
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if not overrides:
        return base
    return base.with_options(**overrides)
