"""Estimator exports with lazy loading.

Public estimator classes, one-call wrappers and the result container. Uses
lazy imports to avoid circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "FEGLM",
    "FELogit",
    "FEMLM",
    "FENegBin",
    "FEOLS",
    "FEPoisson",
    "BaseEstimator",
    "FixedEffectsResult",
    "feglm",
    "femlm",
    "fenegbin",
    "feols",
    "fepois",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("hdfereg.estimators.base", "BaseEstimator"),
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
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'hdfereg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
