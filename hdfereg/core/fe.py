"""Fixed-effects demeaning and recovery.

This module sweeps an arbitrary number of fixed-effect dimensions out of a set
of columns by alternating projections (Gauss-Seidel over dimensions), handles
observation weights and varying slopes, pins singleton groups to an exact zero
residual, recovers the fixed-effect coefficients of a fitted model and counts
their degrees of freedom.
"""

# hdfereg/core/fe.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from .factors import FactorRegistry, build_registry, is_nested
from .linalg import _validate_weights, group_sum

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DemeanResult",
    "RESID_TOL",
    "check_conv",
    "demean",
    "fe_dof",
    "fixef_fitted",
    "recover_fixef",
]

# a column whose sum of squares falls this far below its starting value has vanished
_VANISHED = 1e-30
# stopping tolerance for the partial residual behind fitted values and fixed-effect recovery
RESID_TOL = 1e-20
# minimum n * p before columns are farmed out to worker threads
_PARALLEL_MIN_SIZE = 50_000


@dataclass(slots=True)
class DemeanResult:
    """Container for demeaning results.

    Attributes
    ----------
    X : np.ndarray
        Residualized columns, shape (n, p).
    converged : np.ndarray
        Per-column convergence flag.
    n_iter : np.ndarray
        Per-column number of sweeps.
    pinned : np.ndarray
        Observations whose residual is exactly zero by construction
        (singleton groups and zero weights).
    fe_coef : list of np.ndarray or None
        Accumulated group coefficients per dimension, shape (G_k, q_k) or
        (G_k, q_k, p), when requested.
    """

    X: NDArray[np.float64]
    converged: NDArray[np.bool_]
    n_iter: NDArray[np.int64]
    pinned: NDArray[np.bool_]
    fe_coef: list[NDArray[np.float64]] | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def all_converged(self) -> bool:
        return bool(np.all(self.converged))

    @property
    def n_iter_max(self) -> int:
        return int(self.n_iter.max()) if self.n_iter.size else 0


# ---------------------------------------------------------------------
# Projection operators
# ---------------------------------------------------------------------


def _pin_mask(registry: FactorRegistry, w: NDArray[np.float64] | None) -> NDArray[np.bool_]:
    """Observations with a zero weight or in an (iterated) singleton group.

    Only dimensions carrying a group intercept can fit a lone observation
    exactly, so only those pin.
    """
    n = registry.n_obs
    pinned = np.zeros(n, dtype=bool) if w is None else w <= 0.0
    changed = True
    while changed:
        changed = False
        live = ~pinned
        for d in registry.dims:
            if not d.intercept:
                continue
            cnt = np.bincount(d.codes[live], minlength=d.n_groups)
            hit = live & (cnt[d.codes] == 1)
            if np.any(hit):
                pinned |= hit
                live = ~pinned
                changed = True
    return pinned


class _Projector:
    """Weighted projections onto each fixed-effect dimension.

    Group weights, inverse group Gram matrices (for slope dimensions) and the
    pinned set are computed once and reused by every sweep and column.
    """

    def __init__(
        self,
        registry: FactorRegistry,
        weights: NDArray[np.float64] | None,
        *,
        pin: bool = True,
    ) -> None:
        self.registry = registry
        n = registry.n_obs
        if pin:
            self.pinned = _pin_mask(registry, weights)
        else:
            self.pinned = np.zeros(n, dtype=bool)
        if weights is None and not np.any(self.pinned):
            w_eff = None
        else:
            w_eff = np.ones(n) if weights is None else weights.copy()
            w_eff[self.pinned] = 0.0
        self.w = w_eff
        self.any_pinned = bool(np.any(self.pinned))
        self._plain_inv: list[NDArray[np.float64] | None] = []
        self._basis: list[NDArray[np.float64] | None] = []
        self._gram_inv: list[NDArray[np.float64] | None] = []
        for d in registry.dims:
            if d.n_slopes == 0:
                wsum = (
                    np.bincount(d.codes, minlength=d.n_groups).astype(np.float64)
                    if w_eff is None
                    else np.bincount(d.codes, weights=w_eff, minlength=d.n_groups)
                )
                inv = np.zeros_like(wsum)
                np.divide(1.0, wsum, out=inv, where=wsum > 0)
                self._plain_inv.append(inv)
                self._basis.append(None)
                self._gram_inv.append(None)
                continue
            B = d.slopes if not d.intercept else np.column_stack([np.ones(n), d.slopes])
            Bw = B if w_eff is None else B * w_eff[:, None]
            q = B.shape[1]
            M = np.empty((d.n_groups, q, q), dtype=np.float64)
            for a in range(q):
                for b in range(a, q):
                    M[:, a, b] = np.bincount(d.codes, weights=Bw[:, a] * B[:, b], minlength=d.n_groups)
                    M[:, b, a] = M[:, a, b]
            self._plain_inv.append(None)
            self._basis.append(np.ascontiguousarray(B))
            self._gram_inv.append(np.linalg.pinv(M, hermitian=True))

    def project(self, r: NDArray[np.float64], k: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Remove dimension ``k`` from ``r``; return the residual and group coefficients."""
        d = self.registry.dims[k]
        rw = r if self.w is None else r * self.w
        inv = self._plain_inv[k]
        if inv is not None:
            coef = np.bincount(d.codes, weights=rw, minlength=d.n_groups) * inv
            out = r - coef[d.codes]
            coef = coef.reshape(-1, 1)
        else:
            B = self._basis[k]
            rhs = group_sum(B * rw[:, None], d.codes, d.n_groups)
            coef = np.einsum("gab,gb->ga", self._gram_inv[k], rhs)
            out = r - np.einsum("na,na->n", B, coef[d.codes])
        if self.any_pinned:
            out[self.pinned] = 0.0
        return out, coef

    def sweep(
        self, r: NDArray[np.float64], acc: list[NDArray[np.float64]] | None,
    ) -> NDArray[np.float64]:
        for k in range(self.registry.K):
            r, coef = self.project(r, k)
            if acc is not None:
                acc[k] += coef
        return r


def _irons_tuck_coef(
    A_k: NDArray[np.float64], A_km1: NDArray[np.float64], A_km2: NDArray[np.float64],
) -> float | None:
    d1 = A_km1 - A_km2
    d2 = A_k - A_km1
    delta = d2 - d1
    denom = float(np.sum(delta * delta))
    if not np.isfinite(denom) or denom <= 0.0:
        return None
    return -float(np.sum(d2 * delta)) / denom


def _demean_column(
    proj: _Projector,
    x: NDArray[np.float64],
    *,
    tol: float,
    max_iter: int,
    accel: bool,
    return_fe: bool,
) -> tuple[NDArray[np.float64], bool, int, list[NDArray[np.float64]] | None]:
    registry = proj.registry
    r = np.array(x, dtype=np.float64, copy=True)
    if proj.any_pinned:
        r[proj.pinned] = 0.0
    acc = (
        [np.zeros((d.n_groups, d.q), dtype=np.float64) for d in registry.dims]
        if return_fe
        else None
    )
    # one projection is exact with a single dimension
    if registry.K == 1:
        return proj.sweep(r, acc), True, 1, acc

    ss_start = float(np.dot(r, r))
    if ss_start == 0.0:
        return r, True, 0, acc
    hist: list[tuple[NDArray[np.float64], list[NDArray[np.float64]] | None]] = []
    converged = False
    it = 0
    while it < max_iter:
        it += 1
        acc_old = None if acc is None else [a.copy() for a in acc]
        r_new = proj.sweep(r, acc)
        diff = r_new - r
        ss_change = float(np.dot(diff, diff))
        ss_old = float(np.dot(r, r))
        ss_new = float(np.dot(r_new, r_new))
        if ss_change <= tol * ss_old or ss_new <= _VANISHED * ss_start:
            r = r_new
            converged = True
            break
        if accel:
            hist.append((r, acc_old))
            if len(hist) == 2:
                (r_km2, acc_km2), (r_km1, acc_km1) = hist
                alpha = _irons_tuck_coef(r_new, r_km1, r_km2)
                hist.clear()
                if alpha is not None:
                    r_new = r_new + alpha * (r_new - r_km1)
                    if acc is not None:
                        acc = [a + alpha * (a - b) for a, b in zip(acc, acc_km1)]
        r = r_new
    return r, converged, it, acc


def demean(
    X: NDArray[np.float64],
    registry: FactorRegistry | Any,
    *,
    weights: Sequence[float] | None = None,
    tol: float = 1e-8,
    max_iter: int = 10_000,
    accel: bool = True,
    n_threads: int = 1,
    return_fe: bool = False,
    pin_singletons: bool = True,
) -> DemeanResult:
    """Sweep the fixed effects of ``registry`` out of every column of ``X``.

    Parameters
    ----------
    X : (n,) or (n, p) array
        Columns to residualize. Columns are processed independently.
    registry : FactorRegistry or factor columns
        Fixed-effect dimensions (and varying slopes). Raw factor columns
        (anything :func:`~hdfereg.core.factors.build_registry` accepts) are
        coded on the fly.
    weights : (n,) array, optional
        Nonnegative observation weights. Zero-weight observations do not
        enter any group statistic and get a residual of exactly zero.
    tol : float
        A column has converged when the sum of squared changes over one full
        sweep is at most ``tol`` times its sum of squares before the sweep.
    max_iter : int
        Sweep cap per column. Columns that hit it are flagged, not raised.
    accel : bool
        Irons-Tuck extrapolation after every second sweep.
    n_threads : int
        Columns are distributed over this many threads when the problem is
        large enough.
    return_fe : bool
        Accumulate the group coefficients removed from each column.
    pin_singletons : bool
        Pin singleton groups and zero-weight observations to a zero residual.

    Returns
    -------
    DemeanResult

    Notes
    -----
    With a single dimension the projection is exact and exactly one sweep is
    performed. Observations in singleton groups (iterated over dimensions
    with a group intercept) are pinned: their residual is exactly ``0.0`` and
    they do not enter the statistics of any other group.
    """
    if not isinstance(registry, FactorRegistry):
        registry = build_registry(registry)
    Xd = np.asarray(X, dtype=np.float64)
    one_d = Xd.ndim == 1
    if one_d:
        Xd = Xd.reshape(-1, 1)
    n, p = Xd.shape
    if n != registry.n_obs:
        raise ValueError(f"X has {n} rows but the factor registry has {registry.n_obs}")
    if not np.all(np.isfinite(Xd)):
        raise ValueError("X contains NaN or Inf; remove missing rows first")
    w = None if weights is None else _validate_weights(weights, n)
    proj = _Projector(registry, w, pin=pin_singletons)

    def run(j: int):
        return _demean_column(
            proj, Xd[:, j], tol=tol, max_iter=max_iter, accel=accel, return_fe=return_fe,
        )

    if n_threads > 1 and p > 1 and n * p >= _PARALLEL_MIN_SIZE:
        with ThreadPoolExecutor(max_workers=min(int(n_threads), p)) as pool:
            outputs = list(pool.map(run, range(p)))
    else:
        outputs = [run(j) for j in range(p)]

    out = np.empty_like(Xd)
    converged = np.zeros(p, dtype=bool)
    n_iter = np.zeros(p, dtype=np.int64)
    for j, (col, conv, it, _acc) in enumerate(outputs):
        out[:, j] = col
        converged[j] = conv
        n_iter[j] = it
    fe_coef = None
    if return_fe:
        fe_coef = [
            np.stack([o[3][k] for o in outputs], axis=-1) for k in range(registry.K)
        ]
        if one_d:
            fe_coef = [c[..., 0] for c in fe_coef]
    if not np.all(converged):
        LOGGER.debug(
            "Demeaning hit max_iter=%d for %d of %d column(s)",
            max_iter, int(np.sum(~converged)), p,
        )
    else:
        LOGGER.debug("Demeaned %d column(s) in at most %d sweep(s)", p, int(n_iter.max(initial=0)))
    return DemeanResult(
        X=out[:, 0] if one_d else out,
        converged=converged,
        n_iter=n_iter,
        pinned=proj.pinned,
        fe_coef=fe_coef,
        diagnostics={"tol": tol, "max_iter": max_iter, "accel": accel, "n_pinned": int(proj.pinned.sum())},
    )


# ---------------------------------------------------------------------
# Fixed-effect coefficients
# ---------------------------------------------------------------------


def _components(registry: FactorRegistry, dims: Sequence[int]) -> tuple[int, NDArray[np.int64], NDArray[np.int64]]:
    """Connected components of the group co-occurrence graph over ``dims``.

    Returns the number of components, the component label of every group
    (stacked across ``dims``) and the offsets of each dimension's groups.
    """
    sizes = [registry.dims[k].n_groups for k in dims]
    offsets = np.concatenate([[0], np.cumsum(sizes)[:-1]]).astype(np.int64)
    total = int(sum(sizes))
    rows, cols = [], []
    for a in range(len(dims) - 1):
        rows.append(registry.dims[dims[a]].codes + offsets[a])
        cols.append(registry.dims[dims[a + 1]].codes + offsets[a + 1])
    if rows:
        r = np.concatenate(rows)
        c = np.concatenate(cols)
        graph = sparse.coo_matrix((np.ones(r.shape[0]), (r, c)), shape=(total, total)).tocsr()
    else:
        graph = sparse.csr_matrix((total, total))
    n_comp, labels = connected_components(graph, directed=False)
    return int(n_comp), labels.astype(np.int64), offsets


def _normalize_references(
    registry: FactorRegistry, coef: list[NDArray[np.float64]],
) -> list[NDArray[np.float64]]:
    """Set one reference group per dimension and component to zero.

    The first dimension with a group intercept absorbs the shift so that the
    fitted values are unchanged.
    """
    icpt = [k for k, d in enumerate(registry.dims) if d.intercept]
    if len(icpt) < 2:
        return coef
    _n_comp, labels, offsets = _components(registry, icpt)
    free = icpt[0]
    free_labels = labels[offsets[0] : offsets[0] + registry.dims[free].n_groups]
    for pos, k in enumerate(icpt[1:], start=1):
        Gk = registry.dims[k].n_groups
        lab_k = labels[offsets[pos] : offsets[pos] + Gk]
        # first group (lowest code) of dimension k within each component
        for comp in np.unique(lab_k):
            members = np.flatnonzero(lab_k == comp)
            shift = coef[k][members[0], 0]
            if shift == 0.0:
                continue
            coef[k][members, 0] -= shift
            coef[free][free_labels == comp, 0] += shift
    return coef


def recover_fixef(
    resid: NDArray[np.float64],
    registry: FactorRegistry,
    *,
    weights: Sequence[float] | None = None,
    tol: float = 1e-8,
    max_iter: int = 10_000,
) -> tuple[list[NDArray[np.float64]], bool]:
    """Recover fixed-effect coefficients from ``y - X b`` (minus any offset).

    The same sweeps as :func:`demean` are run on the partial residual while
    the coefficients removed at every projection are accumulated; at
    convergence they solve the fixed-effect normal equations. References are
    then normalized (see :func:`_normalize_references`).

    Returns
    -------
    coef : list of np.ndarray
        One array of shape (G_k, q_k) per dimension (intercept first, then
        slopes).
    converged : bool
    """
    # singletons are not pinned here so that their own group coefficients are solved for
    res = demean(
        np.asarray(resid, dtype=np.float64).reshape(-1),
        registry,
        weights=weights,
        tol=tol,
        max_iter=max_iter,
        accel=True,
        return_fe=True,
        pin_singletons=False,
    )
    coef = [np.array(c, copy=True) for c in (res.fe_coef or [])]
    return _normalize_references(registry, coef), res.all_converged


def _fe_fitted(d, c: NDArray[np.float64]) -> NDArray[np.float64]:
    rows = c[d.codes]
    out = rows[:, 0] if d.intercept else np.zeros(d.codes.shape[0])
    if d.n_slopes:
        start = int(d.intercept)
        out = out + np.einsum("na,na->n", d.slopes, rows[:, start:])
    return out


def fixef_fitted(registry: FactorRegistry, coef: list[NDArray[np.float64]]) -> NDArray[np.float64]:
    """Sum of the fixed-effect contributions ``sum_k D_k a_k`` per observation."""
    out = np.zeros(registry.n_obs, dtype=np.float64)
    for d, c in zip(registry.dims, coef):
        out += _fe_fitted(d, c)
    return out


def check_conv(
    X: NDArray[np.float64],
    registry: FactorRegistry,
    *,
    weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Largest absolute group coefficient left in already demeaned columns.

    Values near zero mean the columns are orthogonal to every fixed-effect
    dimension.
    """
    Xd = np.asarray(X, dtype=np.float64)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    w = None if weights is None else _validate_weights(weights, Xd.shape[0])
    proj = _Projector(registry, w)
    out = np.zeros(Xd.shape[1], dtype=np.float64)
    for j in range(Xd.shape[1]):
        for k in range(registry.K):
            _r, coef = proj.project(Xd[:, j], k)
            out[j] = max(out[j], float(np.max(np.abs(coef), initial=0.0)))
    return out


# ---------------------------------------------------------------------
# Degrees of freedom
# ---------------------------------------------------------------------


def fe_dof(
    registry: FactorRegistry,
    *,
    clusters: Sequence[NDArray[Any]] | None = None,
    fixef_k: str = "nested",
) -> int:
    """Number of fixed-effect parameters counted in the small-sample ``K``.

    Redundant intercepts are netted out: exactly for the first two
    intercept dimensions (connected components of their bipartite graph),
    and by the largest pairwise component count for further dimensions.
    Slopes that are constant within a group of a dimension that also has an
    intercept are not identified and are not counted.

    Parameters
    ----------
    clusters : sequence of arrays, optional
        Cluster identifiers; used by ``fixef_k="nested"``.
    fixef_k : {"none", "nested", "full"}
        ``"none"`` counts nothing; ``"full"`` counts every identified
        parameter; ``"nested"`` also excludes dimensions whose groups are
        nested in one of ``clusters``.
    """
    fixef_k = str(fixef_k).lower()
    if fixef_k not in {"none", "nested", "full"}:
        raise ValueError("fixef_k must be one of {'none', 'nested', 'full'}")
    if fixef_k == "none" or registry.K == 0:
        return 0

    nested = [False] * registry.K
    if fixef_k == "nested" and clusters:
        for k, d in enumerate(registry.dims):
            nested[k] = any(is_nested(d.codes, np.asarray(c).reshape(-1)) for c in clusters)

    icpt = [k for k, d in enumerate(registry.dims) if d.intercept]
    redundant = dict.fromkeys(icpt, 0)
    for pos, k in enumerate(icpt[1:], start=1):
        redundant[k] = max(_components(registry, [icpt[i], k])[0] for i in range(pos))

    total = 0
    for k, d in enumerate(registry.dims):
        if nested[k]:
            continue
        n_params = d.n_params - redundant.get(k, 0)
        if d.intercept and d.n_slopes:
            for s in range(d.n_slopes):
                x = d.slopes[:, s]
                mean = group_sum(x, d.codes, d.n_groups) / np.maximum(registry.group_counts(k), 1)
                dev = group_sum((x - mean[d.codes]) ** 2, d.codes, d.n_groups)
                n_params -= int(np.sum(dev <= 1e-14 * np.maximum(group_sum(x**2, d.codes, d.n_groups), 1e-300)))
        total += n_params
    return int(total)
