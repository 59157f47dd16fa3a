"""hdfereg: regression with high-dimensional fixed effects.

This package estimates linear, generalized-linear and maximum-likelihood
models with any number of absorbed fixed-effect factors (with optional
varying slopes), and computes IID, heteroskedasticity-robust and
multi-way clustered covariances with configurable small-sample corrections.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "FEGLM",
    "FELogit",
    "FEMLM",
    "FENegBin",
    "FEOLS",
    "FEPoisson",
    "CollinearityError",
    "CustomMLE",
    "EstimationConfig",
    "EstimationError",
    "FixedEffectsResult",
    "InvalidFactorError",
    "NonConvergenceWarning",
    "build_registry",
    "demean",
    "feglm",
    "femlm",
    "fenegbin",
    "feols",
    "fepois",
    "get_defaults",
    "reset_defaults",
    "set_defaults",
    "ssc",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "FixedEffectsResult": ("hdfereg.estimators.base", "FixedEffectsResult"),
    "FEOLS": ("hdfereg.estimators.feols", "FEOLS"),
    "feols": ("hdfereg.estimators.feols", "feols"),
    "FEGLM": ("hdfereg.estimators.feglm", "FEGLM"),
    "FELogit": ("hdfereg.estimators.feglm", "FELogit"),
    "FEMLM": ("hdfereg.estimators.feglm", "FEMLM"),
    "FENegBin": ("hdfereg.estimators.feglm", "FENegBin"),
    "FEPoisson": ("hdfereg.estimators.feglm", "FEPoisson"),
    "feglm": ("hdfereg.estimators.feglm", "feglm"),
    "femlm": ("hdfereg.estimators.feglm", "femlm"),
    "fenegbin": ("hdfereg.estimators.feglm", "fenegbin"),
    "fepois": ("hdfereg.estimators.feglm", "fepois"),
    "CustomMLE": ("hdfereg.core.families", "CustomMLE"),
    "build_registry": ("hdfereg.core.factors", "build_registry"),
    "demean": ("hdfereg.core.fe", "demean"),
    "ssc": ("hdfereg.core.vcov", "ssc"),
    "EstimationConfig": ("hdfereg.core.config", "EstimationConfig"),
    "get_defaults": ("hdfereg.core.config", "get_defaults"),
    "set_defaults": ("hdfereg.core.config", "set_defaults"),
    "reset_defaults": ("hdfereg.core.config", "reset_defaults"),
    "CollinearityError": ("hdfereg.core.exceptions", "CollinearityError"),
    "EstimationError": ("hdfereg.core.exceptions", "EstimationError"),
    "InvalidFactorError": ("hdfereg.core.exceptions", "InvalidFactorError"),
    "NonConvergenceWarning": ("hdfereg.core.exceptions", "NonConvergenceWarning"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'hdfereg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
