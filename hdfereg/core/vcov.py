"""Sandwich covariance estimators and small-sample corrections.

Raw sandwich terms (IID, heteroskedasticity-robust, one- or multi-way
clustered) are computed once from the bread and the per-observation scores of
a fitted model. Small-sample corrections are a separate policy object applied
afterwards, so the same raw terms can be corrected several ways without
recomputation.

Multi-way clustering follows Cameron, Gelbach and Miller (2011): the
covariance is the inclusion-exclusion sum over every non-empty subset of
cluster dimensions, each subset clustered by the intersection of its
dimensions.
"""

# hdfereg/core/vcov.py
from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations
from typing import TYPE_CHECKING, Any

import numpy as np

from .factors import to_integer
from .linalg import fix_psd, group_sum

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "CovarianceResult",
    "RawSandwich",
    "SmallSampleCorrection",
    "apply_ssc",
    "raw_sandwich",
    "ssc",
]

_VCOV_ALIASES = {
    "iid": "iid",
    "standard": "iid",
    "hetero": "hetero",
    "hc1": "hetero",
    "white": "hetero",
    "cluster": "cluster",
    "crv1": "cluster",
}


def normalize_kind(kind: str) -> str:
    """Map user spellings of an estimator kind to ``iid``, ``hetero`` or ``cluster``."""
    key = str(kind).lower().strip()
    if key not in _VCOV_ALIASES:
        raise ValueError(f"unknown vcov type {kind!r}; use 'iid', 'hetero' or 'cluster'")
    return _VCOV_ALIASES[key]


@dataclass(frozen=True, slots=True)
class SmallSampleCorrection:
    """Small-sample correction policy.

    Attributes
    ----------
    adj : bool
        Multiply by ``(N - 1) / (N - K)``.
    fixef_k : {"none", "nested", "full"}
        How fixed-effect parameters enter ``K``: not at all, all of them
        except dimensions nested in a cluster dimension, or all of them.
    cluster_adj : bool
        Multiply by ``G / (G - 1)`` (``G = N`` for the heteroskedasticity-robust
        estimator).
    cluster_df : {"min", "conventional"}
        With several cluster dimensions, use the smallest ``G`` for every
        inclusion-exclusion term, or each term's own ``G``.
    t_df : {"min", "conventional"}
        Degrees of freedom of t-statistics for clustered covariances:
        ``min(G) - 1``, or ``N - K``.
    """

    adj: bool = True
    fixef_k: str = "nested"
    cluster_adj: bool = True
    cluster_df: str = "min"
    t_df: str = "min"

    def __post_init__(self) -> None:
        if self.fixef_k not in {"none", "nested", "full"}:
            raise ValueError("fixef_k must be one of {'none', 'nested', 'full'}")
        if self.cluster_df not in {"min", "conventional"}:
            raise ValueError("cluster_df must be 'min' or 'conventional'")
        if self.t_df not in {"min", "conventional"}:
            raise ValueError("t_df must be 'min' or 'conventional'")


def ssc(
    adj: bool = True,
    fixef_k: str = "nested",
    cluster_adj: bool = True,
    cluster_df: str = "min",
    t_df: str = "min",
) -> SmallSampleCorrection:
    """Build a :class:`SmallSampleCorrection` (defaults follow fixest)."""
    return SmallSampleCorrection(
        adj=bool(adj),
        fixef_k=str(fixef_k).lower(),
        cluster_adj=bool(cluster_adj),
        cluster_df=str(cluster_df).lower(),
        t_df=str(t_df).lower(),
    )


@dataclass(slots=True)
class RawSandwich:
    """Uncorrected covariance terms.

    Attributes
    ----------
    kind : str
        ``"iid"``, ``"hetero"`` or ``"cluster"``.
    terms : list of (sign, G, matrix)
        Inclusion-exclusion terms. IID and hetero have a single term; ``G``
        is ``None`` for IID and ``N`` for hetero.
    n_obs : int
    n_coef : int
        Number of estimated (non-collinear) coefficients.
    cluster_names : tuple of str
    n_clusters : tuple of int
        Number of clusters per dimension.
    cluster_codes : list of np.ndarray
        Integer cluster codes per dimension (used for nesting checks).
    """

    kind: str
    terms: list[tuple[int, int | None, NDArray[np.float64]]]
    n_obs: int
    n_coef: int
    cluster_names: tuple[str, ...] = ()
    n_clusters: tuple[int, ...] = ()
    cluster_codes: list[NDArray[np.int64]] = field(default_factory=list)


@dataclass(slots=True)
class CovarianceResult:
    """Corrected covariance matrix with the policy inputs that produced it."""

    kind: str
    matrix: NDArray[np.float64]
    correction: float | tuple[float, ...]
    dof_k: int
    df_t: int
    n_obs: int
    cluster_names: tuple[str, ...] = ()
    n_clusters: tuple[int, ...] = ()
    psd_fixed: bool = False
    policy: SmallSampleCorrection | None = None

    @property
    def se(self) -> NDArray[np.float64]:
        return np.sqrt(np.maximum(np.diag(self.matrix), 0.0))

    @property
    def label(self) -> str:
        if self.kind == "iid":
            return "IID"
        if self.kind == "hetero":
            return "Heteroskedasticity-robust"
        return "Clustered (" + ", ".join(self.cluster_names) + ")"


def _sandwich(bread, meat):
    V = bread @ meat @ bread
    return 0.5 * (V + V.T)


def raw_sandwich(
    kind: str,
    bread: NDArray[np.float64],
    scores: NDArray[np.float64],
    *,
    clusters: Sequence[NDArray[Any]] | Mapping[str, NDArray[Any]] | None = None,
    scale: float = 1.0,
) -> RawSandwich:
    """Compute the uncorrected covariance terms.

    Parameters
    ----------
    kind : {"iid", "hetero", "cluster"}
    bread : (k, k) array
        Inverse information of the kept coefficients.
    scores : (n, k) array
        Per-observation score contributions ``x_tilde_i * w_i * e_i``.
    clusters : sequence or mapping of (n,) arrays
        Cluster identifiers for ``kind="cluster"`` (one or more dimensions).
    scale : float
        Dispersion multiplying the bread for ``kind="iid"``.
    """
    kind = normalize_kind(kind)
    B = np.asarray(bread, dtype=np.float64)
    S = np.asarray(scores, dtype=np.float64)
    n, k = S.shape
    if B.shape != (k, k):
        raise ValueError("bread and scores disagree on the number of coefficients")
    if kind == "iid":
        return RawSandwich(kind="iid", terms=[(1, None, B * float(scale))], n_obs=n, n_coef=k)
    if kind == "hetero":
        return RawSandwich(kind="hetero", terms=[(1, n, _sandwich(B, S.T @ S))], n_obs=n, n_coef=k)

    if clusters is None:
        raise ValueError("kind='cluster' requires cluster identifiers")
    if hasattr(clusters, "items"):
        names = tuple(str(nm) for nm in clusters)
        cols = list(clusters.values())
    else:
        cols = list(clusters)
        names = tuple(f"cluster{j + 1}" for j in range(len(cols)))
    if not cols:
        raise ValueError("at least one cluster dimension is required")
    codes = []
    for col in cols:
        c, _levels = to_integer(np.asarray(col).reshape(-1))
        if c.shape[0] != n:
            raise ValueError("cluster identifiers must have one entry per observation")
        codes.append(c)
    n_clusters = tuple(int(c.max()) + 1 for c in codes)
    if min(n_clusters) < 2:
        raise ValueError("each cluster dimension needs at least two clusters")

    terms = []
    for size in range(1, len(codes) + 1):
        sign = 1 if size % 2 == 1 else -1
        for subset in combinations(range(len(codes)), size):
            if size == 1:
                inter = codes[subset[0]]
            else:
                inter, _ = to_integer(*(codes[j] for j in subset))
            G = int(inter.max()) + 1
            Sg = group_sum(S, inter, G)
            terms.append((sign, G, _sandwich(B, Sg.T @ Sg)))
    return RawSandwich(
        kind="cluster",
        terms=terms,
        n_obs=n,
        n_coef=k,
        cluster_names=names,
        n_clusters=n_clusters,
        cluster_codes=codes,
    )


def apply_ssc(
    raw: RawSandwich,
    policy: SmallSampleCorrection | None = None,
    *,
    fe_k: Mapping[str, int] | None = None,
    psd: bool = True,
) -> CovarianceResult:
    """Apply a small-sample correction policy to raw sandwich terms.

    Parameters
    ----------
    raw : RawSandwich
    policy : SmallSampleCorrection, optional
        Defaults to :func:`ssc` defaults.
    fe_k : mapping, optional
        Number of fixed-effect parameters counted under each ``fixef_k``
        option (``{"none": 0, "nested": ..., "full": ...}``).
    psd : bool
        Clip negative eigenvalues of multi-way clustered results.
    """
    policy = ssc() if policy is None else policy
    fe_counts = {"none": 0, "nested": 0, "full": 0}
    if fe_k is not None:
        fe_counts.update({k: int(v) for k, v in fe_k.items()})
    n = raw.n_obs
    K = raw.n_coef + fe_counts[policy.fixef_k]
    if K >= n:
        raise ValueError(f"no residual degrees of freedom (N={n}, K={K})")
    adj = (n - 1) / (n - K) if policy.adj else 1.0

    def g_adj(G: int) -> float:
        return G / (G - 1) if (policy.cluster_adj and G > 1) else 1.0

    psd_fixed = False
    if raw.kind == "iid":
        correction: float | tuple[float, ...] = adj
        V = raw.terms[0][2] * adj
    elif raw.kind == "hetero":
        correction = adj * g_adj(n)
        V = raw.terms[0][2] * correction
    elif policy.cluster_df == "min":
        correction = adj * g_adj(min(raw.n_clusters))
        V = sum(sign * M for sign, _G, M in raw.terms) * correction
    else:
        factors = tuple(adj * g_adj(int(G)) for _s, G, _M in raw.terms)
        correction = factors
        V = sum(sign * M * f for (sign, _G, M), f in zip(raw.terms, factors))
    if raw.kind == "cluster" and len(raw.n_clusters) > 1 and psd:
        V, psd_fixed = fix_psd(V)

    if raw.kind == "cluster" and policy.t_df == "min":
        df_t = min(raw.n_clusters) - 1
    else:
        df_t = n - K
    return CovarianceResult(
        kind=raw.kind,
        matrix=np.asarray(V, dtype=np.float64),
        correction=correction,
        dof_k=int(K),
        df_t=int(df_t),
        n_obs=n,
        cluster_names=raw.cluster_names,
        n_clusters=raw.n_clusters,
        psd_fixed=psd_fixed,
        policy=policy,
    )
