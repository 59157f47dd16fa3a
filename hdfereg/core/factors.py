"""Factor registry for fixed-effect dimensions.

Factors are converted once per estimation call into contiguous integer codes
(with the original labels kept for reporting) and bundled, together with any
varying-slope variables, into an immutable :class:`FactorRegistry` shared by
the demeaning engine, the IRLS loop and the variance code.
"""

# hdfereg/core/factors.py
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidFactorError

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

ArrayLike = Union[NDArray[Any], Sequence[Any], pd.Series]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "FactorDimension",
    "FactorRegistry",
    "build_registry",
    "is_nested",
    "perfect_fit_mask",
    "singleton_mask",
    "to_integer",
]


def _readonly(arr: NDArray[Any]) -> NDArray[Any]:
    arr = np.ascontiguousarray(arr)
    arr.setflags(write=False)
    return arr


def _is_missing(values: ArrayLike) -> NDArray[np.bool_]:
    arr = values.to_numpy() if isinstance(values, pd.Series) else np.asarray(values)
    if arr.dtype.kind in {"i", "u", "b"}:
        return np.zeros(arr.shape[0], dtype=bool)
    if arr.dtype.kind in {"f", "c"}:
        return ~np.isfinite(arr)
    return np.asarray(pd.isna(arr), dtype=bool).reshape(-1)


def to_integer(
    *columns: ArrayLike, sort: bool = True,
) -> tuple[NDArray[np.int64], NDArray[np.object_]]:
    """Map one or more label columns to contiguous ``0..G-1`` codes.

    Several columns are combined into a single interacted factor (one group
    per observed combination). Labels of combined factors are the member
    labels joined with ``"_"``.

    Returns
    -------
    codes : (n,) int64 array
    levels : (G,) object array
        Label of each code.
    """
    if not columns:
        raise ValueError("to_integer requires at least one column")
    factorized = []
    n = None
    for col in columns:
        arr = col.to_numpy() if isinstance(col, pd.Series) else np.asarray(col)
        arr = arr.reshape(-1)
        if n is None:
            n = arr.shape[0]
        elif arr.shape[0] != n:
            raise ValueError("all factor columns must have the same length")
        if np.any(_is_missing(arr)):
            raise InvalidFactorError("factor columns must not contain missing values")
        codes, uniques = pd.factorize(arr, sort=sort)
        factorized.append((codes.astype(np.int64), np.asarray(uniques, dtype=object)))

    if len(factorized) == 1:
        return factorized[0]

    combined = np.zeros(int(n or 0), dtype=np.int64)
    for codes, uniques in factorized:
        combined = combined * len(uniques) + codes
    codes, uniques = pd.factorize(combined, sort=sort)
    # decode the mixed-radix index back into member labels
    labels = np.empty(len(uniques), dtype=object)
    first = np.zeros(len(uniques), dtype=np.int64)
    first[codes] = np.arange(codes.shape[0])
    for g, row in enumerate(first):
        labels[g] = "_".join(str(uq[c[row]]) for c, uq in factorized)
    return codes.astype(np.int64), labels


@dataclass(frozen=True, slots=True, eq=False)
class FactorDimension:
    """One fixed-effect dimension.

    Attributes
    ----------
    name : str
        Dimension label (e.g. ``"firm"`` or ``"firm[x]"``).
    codes : np.ndarray
        Read-only contiguous group codes, shape (n,).
    levels : np.ndarray
        Original label of each group, shape (G,).
    slopes : np.ndarray or None
        Read-only varying-slope variables, shape (n, m).
    slope_names : tuple of str
        Names of the slope variables.
    intercept : bool
        Whether the dimension carries a per-group intercept. ``False`` only
        for slope-only dimensions.
    """

    name: str
    codes: NDArray[np.int64]
    levels: NDArray[np.object_]
    slopes: NDArray[np.float64] | None = None
    slope_names: tuple[str, ...] = ()
    intercept: bool = True

    @property
    def n_groups(self) -> int:
        return int(self.levels.shape[0])

    @property
    def n_slopes(self) -> int:
        return 0 if self.slopes is None else int(self.slopes.shape[1])

    @property
    def q(self) -> int:
        """Number of coefficients per group."""
        return self.n_slopes + int(self.intercept)

    @property
    def n_params(self) -> int:
        return self.n_groups * self.q

    @property
    def coef_names(self) -> list[str]:
        out = ["(Intercept)"] if self.intercept else []
        return out + list(self.slope_names)


@dataclass(frozen=True, slots=True, eq=False)
class FactorRegistry:
    """Immutable collection of fixed-effect dimensions on a common sample."""

    dims: tuple[FactorDimension, ...]
    n_obs: int
    _group_counts: tuple[NDArray[np.int64], ...] = field(default=(), repr=False)

    def __post_init__(self) -> None:
        if not self._group_counts:
            counts = tuple(
                _readonly(np.bincount(d.codes, minlength=d.n_groups)) for d in self.dims
            )
            object.__setattr__(self, "_group_counts", counts)

    def __len__(self) -> int:
        return len(self.dims)

    def __iter__(self):
        return iter(self.dims)

    def __getitem__(self, idx: int) -> FactorDimension:
        return self.dims[idx]

    @property
    def K(self) -> int:
        return len(self.dims)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.dims]

    @property
    def codes(self) -> list[NDArray[np.int64]]:
        return [d.codes for d in self.dims]

    @property
    def n_groups(self) -> list[int]:
        return [d.n_groups for d in self.dims]

    @property
    def n_params(self) -> int:
        return int(sum(d.n_params for d in self.dims))

    @property
    def has_slopes(self) -> bool:
        return any(d.n_slopes > 0 for d in self.dims)

    def group_counts(self, k: int) -> NDArray[np.int64]:
        """Number of observations per group of dimension ``k``."""
        return self._group_counts[k]

    def validate(self) -> None:
        """Raise :class:`InvalidFactorError` for a degenerate specification."""
        for d in self.dims:
            if d.codes.shape[0] != self.n_obs:
                raise InvalidFactorError(
                    f"factor '{d.name}' has {d.codes.shape[0]} rows, expected {self.n_obs}",
                )
            if d.n_groups < 2:
                raise InvalidFactorError(
                    f"factor '{d.name}' has fewer than 2 groups; it is collinear "
                    "with the intercept and cannot be absorbed",
                )
            if d.slopes is not None and not np.all(np.isfinite(d.slopes)):
                raise InvalidFactorError(
                    f"slope variables of '{d.name}' contain missing values",
                )
        if self.n_params >= self.n_obs:
            raise InvalidFactorError(
                f"fixed effects carry {self.n_params} parameters for {self.n_obs} "
                "observations; the model is not identified",
            )

    def subset(self, mask: NDArray[np.bool_]) -> FactorRegistry:
        """Return the registry restricted (and re-coded) to ``mask`` rows."""
        mask = np.asarray(mask, dtype=bool).reshape(-1)
        if mask.shape[0] != self.n_obs:
            raise ValueError("mask length must match the registry sample size")
        dims = []
        for d in self.dims:
            used, codes = np.unique(d.codes[mask], return_inverse=True)
            dims.append(
                FactorDimension(
                    name=d.name,
                    codes=_readonly(codes.astype(np.int64)),
                    levels=_readonly(d.levels[used]),
                    slopes=None if d.slopes is None else _readonly(d.slopes[mask]),
                    slope_names=d.slope_names,
                    intercept=d.intercept,
                ),
            )
        return FactorRegistry(dims=tuple(dims), n_obs=int(mask.sum()))


def _split_columns(
    fe: Any, names: Sequence[str] | None,
) -> tuple[list[ArrayLike], list[str]]:
    if isinstance(fe, pd.DataFrame):
        cols = [fe[c] for c in fe.columns]
        default = [str(c) for c in fe.columns]
    elif isinstance(fe, pd.Series):
        cols = [fe]
        default = [str(fe.name) if fe.name is not None else "fe1"]
    elif isinstance(fe, np.ndarray) and fe.ndim == 2:
        cols = [fe[:, j] for j in range(fe.shape[1])]
        default = [f"fe{j + 1}" for j in range(fe.shape[1])]
    elif isinstance(fe, np.ndarray) and fe.ndim == 1:
        cols = [fe]
        default = ["fe1"]
    elif isinstance(fe, Mapping):
        cols = list(fe.values())
        default = [str(k) for k in fe]
    elif isinstance(fe, Sequence) and not isinstance(fe, str):
        cols = list(fe)
        default = [
            str(c.name) if isinstance(c, pd.Series) and c.name is not None else f"fe{j + 1}"
            for j, c in enumerate(cols)
        ]
    else:
        raise TypeError("fixed effects must be a DataFrame, array or sequence of columns")
    if names is None:
        return cols, default
    names = [str(nm) for nm in names]
    if len(names) != len(cols):
        raise ValueError("names must have one entry per fixed-effect column")
    return cols, names


def _slope_matrix(values: Any, base: str) -> tuple[NDArray[np.float64], tuple[str, ...]]:
    if isinstance(values, pd.DataFrame):
        return values.to_numpy(dtype=np.float64), tuple(str(c) for c in values.columns)
    if isinstance(values, pd.Series):
        nm = str(values.name) if values.name is not None else f"{base}_slope"
        return values.to_numpy(dtype=np.float64).reshape(-1, 1), (nm,)
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim == 1:
        return arr.reshape(-1, 1), (f"{base}_slope",)
    return arr, tuple(f"{base}_slope{j + 1}" for j in range(arr.shape[1]))


def build_registry(
    fe: Any,
    slopes: Mapping[str, Any] | None = None,
    *,
    names: Sequence[str] | None = None,
    slope_only: Sequence[str] = (),
    validate: bool = True,
) -> FactorRegistry:
    """Build a :class:`FactorRegistry` from categorical columns.

    Parameters
    ----------
    fe : DataFrame, 2-D array, mapping or sequence of 1-D arrays
        One column per fixed-effect dimension. An element that is itself a
        tuple of columns is combined into a single interacted factor.
    slopes : mapping, optional
        ``{dimension name: slope variable(s)}``; each value is a 1-D array,
        a Series, a 2-D array or a DataFrame of continuous variables whose
        coefficient varies by group of that dimension.
    names : sequence of str, optional
        Dimension names (defaults to column names or ``fe1, fe2, ...``).
    slope_only : sequence of str
        Dimensions that get group-specific slopes without group intercepts.
    validate : bool
        Run :meth:`FactorRegistry.validate`.

    Raises
    ------
    InvalidFactorError
        If a factor has missing values or fewer than two groups, or if the
        specification has as many parameters as observations.
    """
    cols, dim_names = _split_columns(fe, names)
    if not cols:
        raise InvalidFactorError("at least one fixed-effect column is required")
    slopes = dict(slopes or {})
    unknown = sorted(set(slopes) - set(dim_names))
    if unknown:
        raise ValueError(f"slopes given for unknown dimension(s): {unknown}")
    bad_only = sorted(set(slope_only) - set(slopes))
    if bad_only:
        raise ValueError(f"slope_only dimension(s) without slopes: {bad_only}")

    dims = []
    n_obs = None
    for col, nm in zip(cols, dim_names):
        members = col if isinstance(col, tuple) else (col,)
        codes, levels = to_integer(*members)
        if n_obs is None:
            n_obs = codes.shape[0]
        slope_arr = None
        slope_names: tuple[str, ...] = ()
        label = nm
        if nm in slopes:
            slope_arr, slope_names = _slope_matrix(slopes[nm], nm)
            if slope_arr.shape[0] != codes.shape[0]:
                raise ValueError(f"slope variables of '{nm}' must have one row per observation")
            bracket = "[[{}]]" if nm in slope_only else "[{}]"
            label = nm + bracket.format(", ".join(slope_names))
            slope_arr = _readonly(slope_arr)
        dims.append(
            FactorDimension(
                name=label,
                codes=_readonly(codes),
                levels=_readonly(levels),
                slopes=slope_arr,
                slope_names=slope_names,
                intercept=nm not in slope_only,
            ),
        )
    registry = FactorRegistry(dims=tuple(dims), n_obs=int(n_obs or 0))
    if validate:
        registry.validate()
    LOGGER.debug(
        "Built factor registry: %s",
        ", ".join(f"{d.name} ({d.n_groups} groups)" for d in registry.dims),
    )
    return registry


def singleton_mask(
    registry: FactorRegistry, weights: NDArray[np.float64] | None = None,
) -> NDArray[np.bool_]:
    """Iteratively flag observations outside singleton groups.

    Observations belonging to a group with a single member are removed,
    repeating until no singletons remain. The criterion is count based:
    with ``weights``, only observations of positive weight are members and
    zero-weight observations are flagged for removal as well.

    Returns
    -------
    ndarray of bool
        ``True`` for observations to keep.
    """
    n = registry.n_obs
    keep = np.ones(n, dtype=bool)
    if weights is not None:
        w = np.asarray(weights, dtype=np.float64).reshape(-1)
        if w.shape[0] != n:
            raise ValueError(f"weights has {w.shape[0]} entries, expected {n}")
        keep &= w > 0

    def pass_once() -> bool:
        hit = np.zeros(n, dtype=bool)
        for d in registry.dims:
            cnt = np.bincount(d.codes[keep], minlength=d.n_groups)
            hit[keep] |= cnt[d.codes[keep]] == 1
        if np.any(hit):
            keep[hit] = False
            return True
        return False

    while pass_once():
        continue
    return keep


def perfect_fit_mask(
    registry: FactorRegistry, y: NDArray[np.float64], *, kind: str,
) -> NDArray[np.bool_]:
    """Flag observations outside groups whose outcome is perfectly fitted.

    ``kind="count"`` removes groups whose outcome is identically zero
    (Poisson, negative binomial); ``kind="binary"`` removes groups whose
    outcome is constant 0 or constant 1 (logit, probit). Removal is repeated
    across dimensions until stable.

    Returns
    -------
    ndarray of bool
        ``True`` for observations to keep.
    """
    if kind not in {"count", "binary"}:
        raise ValueError("kind must be 'count' or 'binary'")
    yv = np.asarray(y, dtype=np.float64).reshape(-1)
    keep = np.ones(registry.n_obs, dtype=bool)
    changed = True
    while changed:
        changed = False
        for d in registry.dims:
            if not d.intercept:
                continue
            cnt = np.bincount(d.codes[keep], minlength=d.n_groups)
            ysum = np.bincount(d.codes[keep], weights=yv[keep], minlength=d.n_groups)
            if kind == "count":
                bad = (cnt > 0) & (ysum == 0)
            else:
                bad = (cnt > 0) & ((ysum == 0) | (ysum == cnt))
            hit = keep & bad[d.codes]
            if np.any(hit):
                keep[hit] = False
                changed = True
    return keep


def is_nested(target: NDArray[np.int64], other: NDArray[np.int64]) -> bool:
    """Whether every group of ``target`` lies inside a single group of ``other``."""
    t = np.asarray(target).reshape(-1)
    o = np.asarray(other).reshape(-1)
    if t.shape[0] != o.shape[0]:
        raise ValueError("target and other must have the same length")
    if t.size == 0:
        return True
    pairs = np.unique(np.column_stack([t, o]), axis=0)
    return bool(np.all(np.bincount(pairs[:, 0]) <= 1))
