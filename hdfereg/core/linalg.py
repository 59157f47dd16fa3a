"""Linear algebra routines for weighted least squares on demeaned data.

This module provides the weighted least-squares solver used after the fixed
effects have been swept out: an order-preserving collinearity screen, a
pivoted-QR solve of the weighted problem, the inverse information ("bread")
and a few helpers shared with the demeaning and variance code (group sums,
weight validation, PSD repair). Explicit matrix inversion is avoided.
"""

# hdfereg/core/linalg.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sla

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "LinearSolution",
    "find_collinear",
    "fix_psd",
    "gram",
    "group_sum",
    "qr",
    "solve_wls",
    "xty",
]


def _assert_all_finite(*arrays: NDArray[np.float64]) -> None:
    """Raise if any array contains NaN or Inf."""
    for arr in arrays:
        if arr is None:
            continue
        if not np.all(np.isfinite(arr)):
            raise ValueError("Input contains NaN or Inf; remove missing rows first.")


def _validate_weights(
    weights: Sequence[float],
    n: int,
    *,
    allow_zero: bool = True,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,).

    Parameters
    ----------
    weights : Sequence[float]
        Weight values to validate.
    n : int
        Expected length.
    allow_zero : bool, default True
        Whether to allow zero weights. If False, raises ValueError on any zero weight.

    Returns
    -------
    NDArray[np.float64]
        Validated weights as 1D array.

    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    if not allow_zero and np.any(w == 0):
        msg = "Zero weights not allowed (allow_zero=False)."
        raise ValueError(msg)
    wsum = float(np.sum(w))
    if not np.isfinite(wsum) or wsum <= 0.0:
        raise ValueError("weights must sum to a positive finite value")
    return w


def group_sum(
    X: NDArray[np.float64], codes: NDArray[np.int64], n_groups: int | None = None,
) -> NDArray[np.float64]:
    """Sum rows of X within groups given by contiguous integer codes.

    Parameters
    ----------
    X : (n,) or (n, p) array
    codes : (n,) integer codes in ``[0, n_groups)``
    n_groups : int, optional
        Number of groups; inferred from ``codes.max() + 1`` when omitted.

    Returns
    -------
    (G,) or (G, p) float64 array of within-group sums ordered by code.

    """
    codes_arr = np.asarray(codes).reshape(-1)
    Xd = np.asarray(X, dtype=np.float64)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise ValueError(msg)
    G = int(codes_arr.max()) + 1 if n_groups is None and codes_arr.size else int(n_groups or 0)
    if Xd.ndim == 1:
        return np.bincount(codes_arr, weights=Xd, minlength=G).astype(np.float64)
    out = np.empty((G, Xd.shape[1]), dtype=np.float64)
    for j in range(Xd.shape[1]):
        out[:, j] = np.bincount(codes_arr, weights=Xd[:, j], minlength=G)
    return out


def gram(X: NDArray[np.float64], weights: NDArray[np.float64] | None) -> NDArray[np.float64]:
    """Compute ``X' W X`` with ``W = diag(w)`` (identity when weights is None)."""
    Xd = np.asarray(X, dtype=np.float64)
    if weights is None:
        return Xd.T @ Xd
    return Xd.T @ (Xd * np.asarray(weights, dtype=np.float64).reshape(-1, 1))


def xty(
    X: NDArray[np.float64], y: NDArray[np.float64], weights: NDArray[np.float64] | None,
) -> NDArray[np.float64]:
    """Compute ``X' W y`` with ``W = diag(w)`` (identity when weights is None)."""
    Xd = np.asarray(X, dtype=np.float64)
    yd = np.asarray(y, dtype=np.float64).reshape(Xd.shape[0], -1)
    if weights is None:
        return Xd.T @ yd
    return Xd.T @ (yd * np.asarray(weights, dtype=np.float64).reshape(-1, 1))


def qr(A: NDArray[np.float64], *, pivoting: bool = False):
    """Economic QR decomposition via SciPy (pivoted on request)."""
    Ad = np.asarray(A, dtype=np.float64)
    rcols = min(Ad.shape[0], Ad.shape[1])
    if pivoting:
        Q, R, P = sla.qr(Ad, mode="economic", pivoting=True)
        return Q[:, :rcols], R[:rcols, :], P
    Q, R = sla.qr(Ad, mode="economic", pivoting=False)
    return Q[:, :rcols], R[:rcols, :]


def find_collinear(
    XtX: NDArray[np.float64],
    *,
    tol: float = 1e-10,
    ref_norms: NDArray[np.float64] | None = None,
) -> NDArray[np.bool_]:
    """Order-preserving collinearity screen on a cross-product matrix.

    Scans the columns in order with a Cholesky recursion: column ``j`` is
    flagged when its squared residual norm after projecting on the kept
    earlier columns is at most ``tol`` times its own squared norm. Columns
    with a zero (or, relative to ``ref_norms``, negligible) squared norm are
    flagged as well; ``ref_norms`` holds squared norms of the columns before
    the fixed effects were swept out, so a column spanned by the fixed
    effects is detected even if it is not exactly zero.

    Returns
    -------
    ndarray of bool
        ``True`` for every dropped column.
    """
    A = np.asarray(XtX, dtype=np.float64)
    p = A.shape[0]
    drop = np.zeros(p, dtype=bool)
    R = np.zeros((p, p), dtype=np.float64)
    for j in range(p):
        ajj = float(A[j, j])
        if ajj <= 0.0 or not np.isfinite(ajj):
            drop[j] = True
            continue
        if ref_norms is not None and ajj <= tol * float(ref_norms[j]):
            drop[j] = True
            continue
        kept = np.flatnonzero(~drop[:j])
        # R[k, j] for kept k follows from the triangular recursion
        for k in kept:
            R[k, j] = (A[k, j] - float(R[:k, k] @ R[:k, j])) / R[k, k]
        rjj = ajj - float(np.sum(R[kept, j] ** 2))
        if rjj <= tol * ajj:
            drop[j] = True
            R[:, j] = 0.0
            continue
        R[j, j] = np.sqrt(rjj)
    return drop


@dataclass(slots=True)
class LinearSolution:
    """Weighted least-squares fit on (demeaned) data.

    Attributes
    ----------
    coef : np.ndarray
        Full-length coefficient vector; dropped columns hold NaN.
    keep : np.ndarray
        Boolean mask of the columns retained after the collinearity screen.
    fitted : np.ndarray
        ``X @ coef`` on the retained columns.
    resid : np.ndarray
        ``y - fitted``.
    rss : float
        Weighted residual sum of squares.
    bread : np.ndarray
        ``(X_k' W X_k)^{-1}`` for the retained columns ``X_k``.
    rank : int
        Number of retained columns.
    """

    coef: NDArray[np.float64]
    keep: NDArray[np.bool_]
    fitted: NDArray[np.float64]
    resid: NDArray[np.float64]
    rss: float
    bread: NDArray[np.float64]
    rank: int

    @property
    def dropped(self) -> NDArray[np.int64]:
        """Indices of the columns removed as collinear."""
        return np.flatnonzero(~self.keep)


def solve_wls(
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    weights: NDArray[np.float64] | None = None,
    *,
    collin_tol: float = 1e-10,
    ref_norms: NDArray[np.float64] | None = None,
    keep: NDArray[np.bool_] | None = None,
) -> LinearSolution:
    """Solve ``min_b sum_i w_i (y_i - x_i'b)^2`` after dropping collinear columns.

    Parameters
    ----------
    X : (n, p) array
        Regressors (already demeaned when fixed effects are present). ``p``
        may be zero, in which case the fit is empty and ``resid == y``.
    y : (n,) array
        Outcome (or working response).
    weights : (n,) array, optional
        Nonnegative observation weights.
    collin_tol : float
        Threshold of :func:`find_collinear`.
    ref_norms : (p,) array, optional
        Weighted squared norms of the columns before demeaning.
    keep : (p,) bool array, optional
        Pre-computed retained-column mask; skips the collinearity screen.

    Notes
    -----
    The weighted problem is solved by pivoted QR of ``sqrt(W) X``; the bread
    is assembled from the triangular factor as ``R^{-1} R^{-T}``.
    """
    Xd = np.asarray(X, dtype=np.float64)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    yd = np.asarray(y, dtype=np.float64).reshape(-1)
    n, p = Xd.shape
    if yd.shape[0] != n:
        raise ValueError("X and y must have the same number of rows")
    _assert_all_finite(Xd, yd)
    w = None if weights is None else _validate_weights(weights, n)

    if keep is None:
        keep = ~find_collinear(gram(Xd, w), tol=collin_tol, ref_norms=ref_norms)
    keep = np.asarray(keep, dtype=bool)
    coef = np.full(p, np.nan, dtype=np.float64)
    Xk = Xd[:, keep]
    k = Xk.shape[1]
    if k == 0:
        resid = yd.copy()
        rss = float(np.sum(resid**2 if w is None else w * resid**2))
        return LinearSolution(
            coef=coef,
            keep=keep,
            fitted=np.zeros(n, dtype=np.float64),
            resid=resid,
            rss=rss,
            bread=np.zeros((0, 0), dtype=np.float64),
            rank=0,
        )

    sw = np.ones(n) if w is None else np.sqrt(w)
    Q, R, P = qr(Xk * sw[:, None], pivoting=True)
    beta_piv = sla.solve_triangular(R, Q.T @ (yd * sw), lower=False)
    beta = np.empty(k, dtype=np.float64)
    beta[P] = beta_piv
    Rinv = sla.solve_triangular(R, np.eye(k), lower=False)
    bread_piv = Rinv @ Rinv.T
    bread = np.empty_like(bread_piv)
    bread[np.ix_(P, P)] = bread_piv

    coef[keep] = beta
    fitted = Xk @ beta
    resid = yd - fitted
    rss = float(np.sum(resid**2 if w is None else w * resid**2))
    return LinearSolution(
        coef=coef,
        keep=keep,
        fitted=fitted,
        resid=resid,
        rss=rss,
        bread=bread,
        rank=k,
    )


def fix_psd(A: NDArray[np.float64], *, tol: float = 0.0) -> tuple[NDArray[np.float64], bool]:
    """Clip negative eigenvalues of a symmetric matrix.

    Returns the repaired matrix and whether any eigenvalue was clipped. Used
    for multi-way cluster covariances, which are not guaranteed PSD.
    """
    Ad = np.asarray(A, dtype=np.float64)
    Ad = 0.5 * (Ad + Ad.T)
    if Ad.size == 0:
        return Ad, False
    eigval, eigvec = np.linalg.eigh(Ad)
    if np.all(eigval >= -tol):
        return Ad, False
    eigval = np.where(eigval < 0.0, 0.0, eigval)
    return (eigvec * eigval) @ eigvec.T, True
