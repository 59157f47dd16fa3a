"""Base estimator and fitted-model container.

This module defines the abstract base estimator shared by the linear and
generalized-linear fixed-effects estimators (sample preparation, the call
into the IRLS driver, aggregated diagnostics) and the standardized
:class:`FixedEffectsResult` returned by every ``fit()``.
"""

# hdfereg/estimators/base.py
from __future__ import annotations

import logging
import re
import warnings
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from hdfereg.core import fe as fe_core
from hdfereg.core import vcov as vc
from hdfereg.core.exceptions import (
    CollinearityError,
    EstimationError,
    NonConvergenceWarning,
)
from hdfereg.core.factors import (
    _split_columns,
    build_registry,
    perfect_fit_mask,
    singleton_mask,
)
from hdfereg.core.families import CustomMLE, GLMFamily, NegativeBinomial
from hdfereg.core.irls import fit_irls

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from hdfereg.core.config import EstimationConfig
    from hdfereg.core.factors import FactorRegistry
    from hdfereg.core.families import Family

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BaseEstimator",
    "Diagnostics",
    "FixedEffectsResult",
    "normalize_ci_level",
]

_CONST_NAME = "(Intercept)"


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    if level is None:
        coerced = float(default)
    else:
        coerced = float(level)
        # Accept percentage-style inputs (e.g., 90 for 90%)
        if coerced > 1.0:
            coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        raise ValueError("level must be in (0, 1); supply e.g. 0.95 or 95")
    return coerced


# ---------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------


def _to_numpy_1d(values: Sequence | None) -> np.ndarray | None:
    """Convert 1-D like input to a numpy array without copying when possible."""
    if values is None:
        return None
    if hasattr(values, "to_numpy"):
        arr = values.to_numpy()
    else:
        arr = np.asarray(values)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    elif arr.ndim > 1:
        arr = arr.reshape(-1)
    return arr


def _align_with_mask(
    arr: np.ndarray, mask: np.ndarray, n_original: int,
) -> np.ndarray:
    """Align identifier arrays with the estimation sample defined by ``mask``.

    Accepts identifiers defined either on the original sample (length ==
    n_original) or pre-filtered to the estimation sample (length ==
    mask.sum()).
    """
    arr = np.asarray(arr)
    n_final = int(mask.sum())
    if arr.shape[0] == n_final:
        return arr
    if arr.shape[0] == n_original:
        return arr[mask]
    raise ValueError(
        f"Identifier length {arr.shape[0]} incompatible with the original sample "
        f"({n_original}) and the estimation sample ({n_final}).",
    )


def _na_rows(values: Any) -> NDArray[np.bool_]:
    """Rows holding a missing value (any member for interacted factors)."""
    if isinstance(values, tuple):
        out = _na_rows(values[0])
        for v in values[1:]:
            out = out | _na_rows(v)
        return out
    if isinstance(values, pd.DataFrame):
        return values.isna().any(axis=1).to_numpy()
    if isinstance(values, pd.Series):
        return values.isna().to_numpy()
    arr = np.asarray(values)
    if arr.dtype.kind in {"i", "u", "b"}:
        return np.zeros(arr.shape[0], dtype=bool)
    bad = ~np.isfinite(arr) if arr.dtype.kind in {"f", "c"} else np.asarray(pd.isna(arr), dtype=bool)
    return bad.any(axis=1) if bad.ndim == 2 else bad


def _take_rows(values: Any, rows: NDArray[np.int64]) -> Any:
    if isinstance(values, tuple):
        return tuple(_take_rows(v, rows) for v in values)
    if isinstance(values, (pd.Series, pd.DataFrame)):
        return values.iloc[rows]
    return np.asarray(values)[rows]


def _n_rows(values: Any) -> int:
    if isinstance(values, tuple):
        return _n_rows(values[0])
    return int(np.shape(values)[0])


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------


@dataclass
class Diagnostics:
    """Advisory conditions collected during a fit and emitted once at the end."""

    collin_vars: list[str] = field(default_factory=list)
    demean_converged: bool = True
    demean_iter: int = 0
    status: str = "converged"
    n_iter: int = 0
    warn_demean: bool = True

    def emit(self, label: str, *, stacklevel: int = 4) -> None:
        if self.collin_vars:
            warnings.warn(
                f"{label}: the variable(s) {', '.join(self.collin_vars)} "
                "are collinear and have been removed",
                CollinearityError,
                stacklevel=stacklevel,
            )
        msgs = []
        if self.warn_demean and not self.demean_converged:
            msgs.append(f"demeaning reached its sweep cap ({self.demean_iter} sweeps)")
        if self.status != "converged":
            msgs.append(f"the estimation loop stopped after {self.n_iter} iterations without converging")
        if msgs:
            warnings.warn(f"{label}: " + "; ".join(msgs), NonConvergenceWarning, stacklevel=stacklevel)


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class FixedEffectsResult:
    """Fitted fixed-effects model.

    Holds the estimation sample, the state of the estimation loop at exit and
    a default covariance. Accessors follow the usual regression vocabulary
    (``coef``, ``vcov``, ``se``, ``fixef``, ``predict``, ``fitstat`` ...);
    covariances of other types are computed on request without refitting.

    Attributes
    ----------
    coefficients : pd.Series
        All regressors, NaN for the ones removed as collinear.
    keep : np.ndarray
        Retained-regressor mask.
    family : Family
        Outcome family at exit (negative binomial carries the estimated
        dispersion ``theta``).
    registry : FactorRegistry or None
        Fixed effects on the estimation sample.
    obs_mask : np.ndarray
        Rows of the original input used in the estimation.
    n_dropped : dict
        Number of removed rows by reason (``na``, ``zero_weight``,
        ``singleton``, ``perfect_fit``).
    """

    coefficients: pd.Series
    keep: NDArray[np.bool_]
    family: Family
    estimator: str
    depvar: str
    y: NDArray[np.float64]
    X: NDArray[np.float64]
    weights: NDArray[np.float64]
    offset: NDArray[np.float64]
    registry: FactorRegistry | None
    fe_names: list[str]
    eta: NDArray[np.float64]
    mu: NDArray[np.float64]
    X_tilde: NDArray[np.float64]
    z_tilde: NDArray[np.float64]
    work_weights: NDArray[np.float64]
    work_resid: NDArray[np.float64]
    bread_matrix: NDArray[np.float64]
    deviance: float
    n_iter: int
    status: str
    method: str
    obs_mask: NDArray[np.bool_]
    n_dropped: dict[str, int]
    config: EstimationConfig
    has_const: bool = False
    weighted: bool = False
    history: dict[str, list[float]] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    default_vcov: vc.CovarianceResult | None = None
    _fe_coef: list[NDArray[np.float64]] | None = field(default=None, repr=False)
    _scores: NDArray[np.float64] | None = field(default=None, repr=False)

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (
            f"FixedEffectsResult({self.estimator}, family={self.family.name}, "
            f"n={self.n_obs}, k={self.n_coef}, fe={self.fe_names})"
        )

    # -- basic properties ---------------------------------------------
    @property
    def params(self) -> pd.Series:
        """Estimated (non-collinear) coefficients."""
        return self.coefficients[self.keep]

    @property
    def names(self) -> list[str]:
        return [str(nm) for nm in self.coefficients.index]

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_coef(self) -> int:
        return int(np.sum(self.keep))

    @property
    def collin_vars(self) -> list[str]:
        return list(self.coefficients.index[~self.keep])

    @property
    def collin_index(self) -> NDArray[np.int64]:
        return np.flatnonzero(~self.keep)

    @property
    def converged(self) -> bool:
        return self.status == "converged"

    @property
    def theta(self) -> float | None:
        return float(self.family.theta) if isinstance(self.family, NegativeBinomial) else None

    def coef(self) -> pd.Series:
        return self.params.copy()

    # -- covariance -----------------------------------------------------
    def estfun(self) -> pd.DataFrame:
        """Per-observation score contributions of the retained coefficients."""
        return pd.DataFrame(self._score_matrix(), columns=self.params.index)

    def bread(self) -> pd.DataFrame:
        """Inverse information of the retained coefficients."""
        idx = self.params.index
        return pd.DataFrame(self.bread_matrix, index=idx, columns=idx)

    def _score_matrix(self) -> NDArray[np.float64]:
        if self._scores is None:
            d1, _d2 = self.family.derivatives(self.y, self.eta)
            self._scores = self.X_tilde * (self.weights * d1)[:, None]
        return self._scores

    def _cluster_arrays(self, cluster: Any) -> dict[str, NDArray[Any]]:
        if isinstance(cluster, str):
            cluster = [cluster]
        if isinstance(cluster, (list, tuple)) and cluster and all(isinstance(c, str) for c in cluster):
            if all(c in self.fe_names for c in cluster):
                return {c: self.registry.codes[self.fe_names.index(c)] for c in cluster}
            if len(cluster) not in {self.n_obs, self.obs_mask.shape[0]}:
                unknown = [c for c in cluster if c not in self.fe_names]
                raise ValueError(
                    f"unknown cluster name(s) {unknown}; names refer to the fixed effects {self.fe_names}",
                )

        if isinstance(cluster, pd.DataFrame):
            items = [(str(c), cluster[c].to_numpy()) for c in cluster.columns]
        elif isinstance(cluster, Mapping):
            items = [(str(k), _to_numpy_1d(v)) for k, v in cluster.items()]
        elif isinstance(cluster, np.ndarray) and cluster.ndim == 2:
            items = [(f"cluster{j + 1}", cluster[:, j]) for j in range(cluster.shape[1])]
        elif isinstance(cluster, (list, tuple)) and cluster and all(np.ndim(c) >= 1 for c in cluster):
            items = [
                (str(c.name) if isinstance(c, pd.Series) and c.name is not None else f"cluster{j + 1}", _to_numpy_1d(c))
                for j, c in enumerate(cluster)
            ]
        else:
            nm = str(cluster.name) if isinstance(cluster, pd.Series) and cluster.name is not None else "cluster"
            items = [(nm, _to_numpy_1d(cluster))]

        out = {}
        n_original = self.obs_mask.shape[0]
        for nm, arr in items:
            aligned = _align_with_mask(arr, self.obs_mask, n_original)
            if np.any(_na_rows(aligned)):
                raise ValueError(f"cluster variable '{nm}' has missing values in the estimation sample")
            out[nm] = aligned
        return out

    def _resolve_vcov(self, vcov: str | None, cluster: Any) -> tuple[str, dict[str, NDArray[Any]] | None]:
        if vcov is None:
            vcov = "cluster" if (cluster is not None or self.registry is not None) else "iid"
        key = str(vcov).lower().strip()
        if key == "twoway":
            if self.registry is None or self.registry.K < 2:
                raise ValueError("vcov='twoway' requires at least two fixed-effect dimensions")
            if cluster is not None:
                raise ValueError("vcov='twoway' clusters by the first two fixed effects; do not pass cluster")
            return "cluster", self._cluster_arrays(self.fe_names[:2])
        kind = vc.normalize_kind(key)
        if kind != "cluster":
            if cluster is not None:
                raise ValueError(f"cluster identifiers given with vcov={vcov!r}")
            return kind, None
        if cluster is None:
            if self.registry is None:
                raise ValueError("vcov='cluster' requires cluster identifiers when there are no fixed effects")
            return "cluster", self._cluster_arrays(self.fe_names[0])
        return "cluster", self._cluster_arrays(cluster)

    def raw_vcov(self, vcov: str | None = None, cluster: Any = None) -> vc.RawSandwich:
        """Uncorrected covariance terms; correct them with :func:`hdfereg.core.vcov.apply_ssc`."""
        kind, clusters = self._resolve_vcov(vcov, cluster)
        scale = 1.0
        if kind == "iid":
            scale = self.family.scale(self.y, self.mu, self.weights, self.n_obs - 1)
        return vc.raw_sandwich(
            kind,
            self.bread_matrix,
            self._score_matrix(),
            clusters=clusters,
            scale=scale,
        )

    def fe_k(self, clusters: Sequence[NDArray[Any]] | None = None) -> dict[str, int]:
        """Fixed-effect parameter counts under each ``fixef_k`` option."""
        if self.registry is None:
            return {"none": 0, "nested": 0, "full": 0}
        full = fe_core.fe_dof(self.registry, fixef_k="full")
        nested = fe_core.fe_dof(self.registry, clusters=clusters, fixef_k="nested") if clusters else full
        return {"none": 0, "nested": nested, "full": full}

    def _covariance(
        self, vcov: str | None, cluster: Any, ssc: vc.SmallSampleCorrection | None,
    ) -> vc.CovarianceResult:
        raw = self.raw_vcov(vcov, cluster)
        return vc.apply_ssc(raw, ssc, fe_k=self.fe_k(raw.cluster_codes or None))

    def _cov(self, vcov=None, cluster=None, ssc=None) -> vc.CovarianceResult:
        if vcov is None and cluster is None and ssc is None and self.default_vcov is not None:
            return self.default_vcov
        return self._covariance(vcov, cluster, ssc)

    def vcov(self, vcov: str | None = None, cluster: Any = None, ssc: vc.SmallSampleCorrection | None = None) -> pd.DataFrame:
        """Covariance matrix of the retained coefficients.

        Parameters
        ----------
        vcov : {"iid", "hetero", "cluster", "twoway"}, optional
            Defaults to the covariance chosen at fit time.
        cluster : str, list of str, array-like, DataFrame or mapping, optional
            Cluster identifiers (one or several dimensions), or names of
            fixed-effect dimensions to cluster by.
        ssc : SmallSampleCorrection, optional
        """
        cov = self._cov(vcov, cluster, ssc)
        idx = self.params.index
        return pd.DataFrame(cov.matrix, index=idx, columns=idx)

    def se(self, vcov=None, cluster=None, ssc=None) -> pd.Series:
        return pd.Series(self._cov(vcov, cluster, ssc).se, index=self.params.index, name="se")

    def tstat(self, vcov=None, cluster=None, ssc=None) -> pd.Series:
        return (self.params / self.se(vcov, cluster, ssc)).rename("tstat")

    def _use_t(self) -> bool:
        return bool(self.family.is_linear)

    def pvalue(self, vcov=None, cluster=None, ssc=None) -> pd.Series:
        cov = self._cov(vcov, cluster, ssc)
        t = np.abs(self.params.to_numpy() / cov.se)
        p = 2.0 * stats.t.sf(t, cov.df_t) if self._use_t() else 2.0 * stats.norm.sf(t)
        return pd.Series(p, index=self.params.index, name="pvalue")

    def confint(self, level: float = 0.95, vcov=None, cluster=None, ssc=None) -> pd.DataFrame:
        level = normalize_ci_level(level)
        cov = self._cov(vcov, cluster, ssc)
        q = 0.5 + level / 2.0
        crit = stats.t.ppf(q, cov.df_t) if self._use_t() else stats.norm.ppf(q)
        b = self.params.to_numpy()
        lo_name = f"{100 * (1 - q):.1f} %"
        hi_name = f"{100 * q:.1f} %"
        return pd.DataFrame(
            {lo_name: b - crit * cov.se, hi_name: b + crit * cov.se},
            index=self.params.index,
        )

    def coeftable(self, vcov=None, cluster=None, ssc=None) -> pd.DataFrame:
        cov = self._cov(vcov, cluster, ssc)
        b = self.params.to_numpy()
        t = b / cov.se
        stat = "t value" if self._use_t() else "z value"
        pname = "Pr(>|t|)" if self._use_t() else "Pr(>|z|)"
        p = 2.0 * stats.t.sf(np.abs(t), cov.df_t) if self._use_t() else 2.0 * stats.norm.sf(np.abs(t))
        return pd.DataFrame(
            {"Estimate": b, "Std. Error": cov.se, stat: t, pname: p},
            index=self.params.index,
        )

    def summary(self, vcov=None, cluster=None, ssc=None) -> FixedEffectsResult:
        """Copy of the result whose default covariance is the one requested."""
        return replace(self, default_vcov=self._covariance(vcov, cluster, ssc))

    def wald(self, keep: str | Sequence[str] | None = None, vcov=None, cluster=None, ssc=None) -> dict[str, Any]:
        """Joint Wald test that the selected coefficients are zero.

        ``keep`` is a regular expression or a list of coefficient names
        (all coefficients by default). The statistic is F-distributed with
        ``(q, df_t)`` degrees of freedom for linear models and chi-square with
        ``q`` degrees of freedom otherwise.
        """
        names = list(self.params.index)
        if keep is None:
            sel = names
        elif isinstance(keep, str):
            sel = [nm for nm in names if re.search(keep, nm)]
        else:
            sel = [nm for nm in keep if nm in names]
        if not sel:
            raise ValueError("no coefficient selected for the Wald test")
        V = self.vcov(vcov, cluster, ssc).loc[sel, sel].to_numpy()
        b = self.params[sel].to_numpy()
        q = len(sel)
        quad = float(b @ np.linalg.solve(V, b))
        cov = self._cov(vcov, cluster, ssc)
        if self._use_t():
            stat = quad / q
            p = float(stats.f.sf(stat, q, cov.df_t))
            return {"stat": stat, "p": p, "df1": q, "df2": cov.df_t, "vcov": cov.label, "distribution": "F"}
        return {"stat": quad, "p": float(stats.chi2.sf(quad, q)), "df1": q, "df2": None, "vcov": cov.label, "distribution": "chi2"}

    # -- fixed effects, fitted values and prediction ---------------------
    def _recover(self) -> list[NDArray[np.float64]]:
        if self._fe_coef is None:
            base = self.eta - self.offset - self.X[:, self.keep] @ self.params.to_numpy()
            coef, conv = fe_core.recover_fixef(
                base,
                self.registry,
                weights=self.weights,
                tol=min(self.config.fixef_tol, fe_core.RESID_TOL),
                max_iter=self.config.fixef_iter,
            )
            if not conv:
                warnings.warn(
                    "fixed-effect recovery reached its sweep cap; coefficients are approximate",
                    NonConvergenceWarning,
                    stacklevel=3,
                )
            self._fe_coef = coef
        return self._fe_coef

    def fixef(self) -> dict[str, pd.Series | pd.DataFrame]:
        """Fixed-effect coefficients by dimension.

        A Series indexed by group label for plain dimensions; a DataFrame with
        one column per coefficient (intercept and slopes) for dimensions with
        varying slopes. The first dimension absorbs the overall level; every
        other dimension has one reference group per connected set fixed at
        zero.
        """
        if self.registry is None:
            return {}
        out: dict[str, pd.Series | pd.DataFrame] = {}
        for d, c in zip(self.registry.dims, self._recover()):
            idx = pd.Index(d.levels, name=d.name)
            if d.intercept and d.q == 1:
                out[d.name] = pd.Series(c[:, 0], index=idx, name=d.name)
            else:
                out[d.name] = pd.DataFrame(c, index=idx, columns=d.coef_names)
        return out

    def fitted(self, type: str = "response") -> NDArray[np.float64]:  # noqa: A002
        if type == "response":
            return self.mu.copy()
        if type == "link":
            return self.eta.copy()
        raise ValueError("type must be 'response' or 'link'")

    def resid(self, type: str = "response") -> NDArray[np.float64]:  # noqa: A002
        """Residuals: ``response``, ``working``, ``pearson`` or ``deviance``."""
        r = self.y - self.mu
        if type == "response":
            return r
        if type == "working":
            return self.work_resid.copy()
        if not isinstance(self.family, GLMFamily):
            raise ValueError("only 'response' and 'working' residuals exist for user-supplied likelihoods")
        if type == "pearson":
            return r * np.sqrt(self.weights / self.family.variance(self.mu))
        if type == "deviance":
            dev = np.maximum(self.weights * self.family.deviance_obs(self.y, self.mu), 0.0)
            return np.sign(r) * np.sqrt(dev)
        raise ValueError("type must be 'response', 'working', 'pearson' or 'deviance'")

    def obs(self) -> NDArray[np.int64]:
        """Positions (in the original input) of the observations used."""
        return np.flatnonzero(self.obs_mask)

    def predict(  # noqa: PLR0913
        self,
        X: Any = None,
        fe: Any = None,
        *,
        slopes: Mapping[str, Any] | None = None,
        offset: Any = None,
        type: str = "response",  # noqa: A002
    ) -> NDArray[np.float64]:
        """Predict on new data.

        ``X`` holds the regressors (same columns as in the fit, without the
        intercept), ``fe`` the fixed-effect labels laid out as at fit time and
        ``slopes`` the varying-slope variables keyed by dimension name.
        Observations with a fixed-effect level unseen in the estimation
        sample get NaN.
        """
        if type not in {"response", "link"}:
            raise ValueError("type must be 'response' or 'link'")
        if X is None and fe is None:
            return self.fitted(type)

        user_names = [nm for nm in self.names if not (self.has_const and nm == _CONST_NAME)]
        if X is None:
            if user_names:
                raise ValueError("X is required: the model has regressors")
            Xn = None
        elif isinstance(X, pd.DataFrame):
            Xn = X[user_names].to_numpy(dtype=np.float64)
        else:
            Xn = np.asarray(X, dtype=np.float64)
            if Xn.ndim == 1:
                Xn = Xn.reshape(-1, 1)
            if Xn.shape[1] != len(user_names):
                raise ValueError(f"X must have {len(user_names)} column(s)")
        n_new = Xn.shape[0] if Xn is not None else None

        eta = 0.0
        if Xn is not None:
            if self.has_const:
                Xn = np.column_stack([np.ones(n_new), Xn])
            eta = Xn[:, self.keep] @ self.params.to_numpy()

        if self.registry is not None:
            if fe is None:
                raise ValueError("fe is required: the model has fixed effects")
            cols, _names = _split_columns(fe, None)
            if len(cols) != self.registry.K:
                raise ValueError(f"fe must have {self.registry.K} column(s)")
            slopes = dict(slopes or {})
            fe_part = 0.0
            for d, base, col, c in zip(self.registry.dims, self.fe_names, cols, self._recover()):
                if isinstance(col, tuple):
                    members = [_to_numpy_1d(m) for m in col]
                    values = np.array(["_".join(str(v) for v in row) for row in zip(*members)], dtype=object)
                else:
                    values = _to_numpy_1d(col)
                code = pd.Index(d.levels).get_indexer(values)
                rows = c[np.maximum(code, 0)]
                part = rows[:, 0] if d.intercept else np.zeros(code.shape[0])
                if d.n_slopes:
                    if base not in slopes:
                        raise ValueError(f"slope variable(s) of '{base}' are required for prediction")
                    sv = np.asarray(slopes[base], dtype=np.float64).reshape(code.shape[0], -1)
                    part = part + np.einsum("na,na->n", sv, rows[:, int(d.intercept):])
                fe_part = fe_part + np.where(code >= 0, part, np.nan)
            eta = eta + fe_part
        eta = np.asarray(eta, dtype=np.float64)
        if eta.ndim == 0:
            raise ValueError("nothing to predict from: pass X or fe")
        if offset is not None:
            eta = eta + np.asarray(offset, dtype=np.float64).reshape(-1)
        return eta if type == "link" else self.family.inverse_link(eta)

    # -- fit statistics -------------------------------------------------
    def loglik(self) -> float:
        if isinstance(self.family, CustomMLE):
            return float(np.sum(self.weights * self.family.loglik_eta(self.y, self.eta)))
        return self.family.loglik(self.y, self.mu, self.weights)

    def null_loglik(self) -> float:
        if not isinstance(self.family, GLMFamily):
            return float("nan")
        return self.family.loglik(self.y, self.family.null_mu(self.y, self.weights), self.weights)

    def null_deviance(self) -> float:
        if not isinstance(self.family, GLMFamily):
            return float("nan")
        mu0 = self.family.null_mu(self.y, self.weights)
        return float(np.sum(self.weights * self.family.deviance_obs(self.y, mu0)))

    def degrees_freedom(self, type: str = "k", vcov=None, cluster=None, ssc=None) -> int:  # noqa: A002
        """``k`` (all parameters), ``resid`` (``N - k``), ``t`` or ``g`` (smallest cluster count)."""
        k = self.n_coef + self.fe_k()["full"]
        if type == "k":
            return int(k)
        if type == "resid":
            return int(self.n_obs - k)
        cov = self._cov(vcov, cluster, ssc)
        if type == "t":
            return int(cov.df_t)
        if type == "g":
            if not cov.n_clusters:
                raise ValueError("the covariance is not clustered")
            return int(min(cov.n_clusters))
        raise ValueError("type must be 'k', 'resid', 't' or 'g'")

    def fitstat(self) -> pd.Series:
        """Fit statistics: n, ll, ll0, deviance, aic, bic, r2, ar2, wr2, pr2, apr2, rmse, sigma, theta."""
        n = self.n_obs
        k = self.n_coef + self.fe_k()["full"]
        k_ic = k + (1 if isinstance(self.family, NegativeBinomial) else 0)
        ll = self.loglik()
        ll0 = self.null_loglik()
        e = self.y - self.mu
        rss = float(np.sum(self.weights * e**2))
        out: dict[str, float] = {
            "n": float(n),
            "ll": ll,
            "ll0": ll0,
            "deviance": float(self.deviance),
            "null_deviance": self.null_deviance(),
            "aic": -2.0 * ll + 2.0 * k_ic,
            "bic": -2.0 * ll + k_ic * np.log(n),
            "pr2": 1.0 - ll / ll0 if ll0 else float("nan"),
            "apr2": 1.0 - (ll - k) / ll0 if ll0 else float("nan"),
            "rmse": float(np.sqrt(rss / n)),
            "sigma": float(np.sqrt(rss / (n - k))) if n > k else float("nan"),
            "r2": float("nan"),
            "ar2": float("nan"),
            "wr2": float("nan"),
            "theta": float("nan") if self.theta is None else self.theta,
        }
        if self.family.is_linear:
            ybar = float(np.sum(self.weights * self.y) / np.sum(self.weights))
            tss = float(np.sum(self.weights * (self.y - ybar) ** 2))
            if tss > 0.0:
                out["r2"] = 1.0 - rss / tss
                out["ar2"] = 1.0 - (1.0 - out["r2"]) * (n - 1) / (n - k) if n > k else float("nan")
            if self.registry is not None:
                wtss = float(np.sum(self.weights * self.z_tilde**2))
                if wtss > 0.0:
                    out["wr2"] = 1.0 - float(np.sum(self.work_weights * self.work_resid**2)) / wtss
        return pd.Series(out, name="fitstat")


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------
@dataclass
class _Sample:
    y: NDArray[np.float64]
    X: NDArray[np.float64]
    weights: NDArray[np.float64]
    offset: NDArray[np.float64]
    registry: FactorRegistry | None
    obs_mask: NDArray[np.bool_]
    n_dropped: dict[str, int]


class BaseEstimator(ABC):
    """Abstract base class for the fixed-effects estimators.

    Principles
    ----------
    1) Factors are coded once into a ``FactorRegistry`` (``core.factors``).
    2) FE absorption goes through ``core.fe``; estimation through ``core.irls``.
    3) Rows with missing values are removed before anything else, then
       zero-weight rows, then (per ``fixef_rm``) singletons and perfectly
       fitted groups. Every removal is counted on the result.
    4) Advisory conditions are collected and warned about once per fit.

    Parameters
    ----------
    y : array-like, shape (n,)
        Outcome.
    X : array-like, shape (n, p), optional
        Regressors; names are taken from DataFrame columns.
    fe : DataFrame, 2-D array, mapping or sequence of 1-D arrays, optional
        Fixed-effect factors, one column per dimension (a tuple of columns is
        one interacted factor).
    weights : array-like, optional
        Nonnegative observation weights.
    offset : array-like, optional
        Known component of the linear predictor.
    slopes : mapping, optional
        ``{dimension name: variable(s)}`` with group-varying slopes.
    slope_only : sequence of str
        Dimensions with varying slopes but no group intercept.
    fe_names, var_names : sequence of str, optional
        Override dimension / regressor names.
    add_const : bool, optional
        Add an ``(Intercept)`` column; defaults to True only without fixed
        effects, which absorb the intercept.
    """

    _label = "base"

    def __init__(  # noqa: PLR0913
        self,
        y: Any,
        X: Any = None,
        fe: Any = None,
        *,
        weights: Any = None,
        offset: Any = None,
        slopes: Mapping[str, Any] | None = None,
        slope_only: Sequence[str] = (),
        fe_names: Sequence[str] | None = None,
        var_names: Sequence[str] | None = None,
        add_const: bool | None = None,
    ) -> None:
        self._results: FixedEffectsResult | None = None
        self._depvar = str(y.name) if isinstance(y, pd.Series) and y.name is not None else "y"
        y_arr = np.asarray(_to_numpy_1d(y), dtype=np.float64)
        n = y_arr.shape[0]

        if X is None:
            X_arr = np.empty((n, 0), dtype=np.float64)
            names: list[str] = []
        else:
            if isinstance(X, pd.Series):
                X = X.to_frame()
            X_arr = np.asarray(X, dtype=np.float64)
            if X_arr.ndim == 1:
                X_arr = X_arr.reshape(-1, 1)
            if var_names is not None:
                names = [str(v) for v in var_names]
            elif isinstance(X, pd.DataFrame):
                names = [str(c) for c in X.columns]
            else:
                names = [f"x{i + 1}" for i in range(X_arr.shape[1])]
            if len(names) != X_arr.shape[1]:
                raise ValueError("var_names must have one entry per column of X")
            if X_arr.shape[0] != n:
                raise ValueError(f"X has {X_arr.shape[0]} rows but y has {n}")

        if fe is None:
            self._fe_cols: list[Any] = []
            self._fe_names: list[str] = []
        else:
            self._fe_cols, self._fe_names = _split_columns(fe, fe_names)
            for col, nm in zip(self._fe_cols, self._fe_names):
                if _n_rows(col) != n:
                    raise ValueError(f"fixed effect '{nm}' must have one entry per observation")

        self._add_const = (not self._fe_cols) if add_const is None else bool(add_const)
        if self._add_const and self._fe_cols:
            LOGGER.debug("Intercept not added: it is absorbed by the fixed effects")
            self._add_const = False
        if self._add_const:
            X_arr = np.column_stack([np.ones(n), X_arr])
            names = [_CONST_NAME, *names]

        self.y_orig: NDArray[np.float64] = y_arr
        self.X_orig: NDArray[np.float64] = X_arr
        self._var_names = names
        self._weights = None if weights is None else np.asarray(_to_numpy_1d(weights), dtype=np.float64)
        self._offset = None if offset is None else np.asarray(_to_numpy_1d(offset), dtype=np.float64)
        for label, arr in (("weights", self._weights), ("offset", self._offset)):
            if arr is not None and arr.shape[0] != n:
                raise ValueError(f"{label} must have one entry per observation")
        self._slopes = dict(slopes or {})
        self._slope_only = tuple(slope_only)
        if self._slopes and not self._fe_cols:
            raise ValueError("varying slopes require fixed effects")

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> FixedEffectsResult:  # pragma: no cover - abstract
        """Fit the estimator and return a FixedEffectsResult (abstract)."""
        ...

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> FixedEffectsResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def n_obs(self) -> int:
        return self.results.n_obs

    # -- protected helpers for subclasses ------------------------------
    def _prepare(self, cfg: EstimationConfig, family: Family) -> _Sample:
        """Estimation sample: drop missing, zero-weight and uninformative rows."""
        n = self.y_orig.shape[0]
        valid = np.isfinite(self.y_orig) & np.all(np.isfinite(self.X_orig), axis=1)
        for arr in (self._weights, self._offset):
            if arr is not None:
                valid &= np.isfinite(arr)
        for col in self._fe_cols:
            valid &= ~_na_rows(col)
        for values in self._slopes.values():
            valid &= ~_na_rows(values)
        n_dropped = {"na": int(n - valid.sum()), "zero_weight": 0, "singleton": 0, "perfect_fit": 0}
        if self._weights is not None:
            if np.any(self._weights[valid] < 0.0):
                raise ValueError("weights must be nonnegative")
            zero = valid & (self._weights == 0.0)
            n_dropped["zero_weight"] = int(zero.sum())
            valid &= ~zero
        if not np.any(valid):
            raise EstimationError("no observations left after removing missing values and zero weights")

        rows = np.flatnonzero(valid)
        y = self.y_orig[rows]
        X = self.X_orig[rows]
        w = np.ones(rows.shape[0]) if self._weights is None else self._weights[rows]
        off = np.zeros(rows.shape[0]) if self._offset is None else self._offset[rows]
        family.check_outcome(y)

        registry = None
        if self._fe_cols:
            registry = build_registry(
                [_take_rows(c, rows) for c in self._fe_cols],
                {k: _take_rows(v, rows) for k, v in self._slopes.items()},
                names=self._fe_names,
                slope_only=self._slope_only,
                validate=False,
            )
            perfect_kind = family.kind if family.kind in {"count", "binary"} else None
            steps = []
            if cfg.fixef_rm in {"singleton", "both"}:
                steps.append(("singleton", lambda reg: singleton_mask(reg, w)))
            if cfg.fixef_rm in {"perfect", "both"} and perfect_kind is not None:
                steps.append(("perfect_fit", lambda reg: perfect_fit_mask(reg, y, kind=perfect_kind)))
            changed = bool(steps)
            while changed:
                changed = False
                for reason, finder in steps:
                    keep = finder(registry)
                    if np.all(keep):
                        continue
                    if not np.any(keep):
                        raise EstimationError(
                            f"all observations were removed ({reason.replace('_', ' ')} groups)",
                        )
                    n_dropped[reason] += int(np.sum(~keep))
                    registry = registry.subset(keep)
                    y, X, w, off, rows = y[keep], X[keep], w[keep], off[keep], rows[keep]
                    changed = True
            registry.validate()
        elif X.shape[1] == 0:
            raise EstimationError("the model has neither regressors nor fixed effects")

        removed = {k: v for k, v in n_dropped.items() if v}
        if removed:
            LOGGER.info(
                "%s: removed %d observation(s) (%s)",
                self._label,
                sum(removed.values()),
                ", ".join(f"{k}={v}" for k, v in removed.items()),
            )
        obs_mask = np.zeros(n, dtype=bool)
        obs_mask[rows] = True
        return _Sample(y=y, X=X, weights=w, offset=off, registry=registry, obs_mask=obs_mask, n_dropped=n_dropped)

    def _estimate(  # noqa: PLR0913
        self,
        family: Family,
        cfg: EstimationConfig,
        *,
        vcov: str | None = None,
        cluster: Any = None,
        ssc: vc.SmallSampleCorrection | None = None,
        method: str = "irls",
        start: Any = None,
        eta_start: Any = None,
        fixed_theta: bool = False,
    ) -> FixedEffectsResult:
        sample = self._prepare(cfg, family)
        eta0 = None
        if eta_start is not None:
            eta0 = _align_with_mask(_to_numpy_1d(eta_start), sample.obs_mask, self.y_orig.shape[0])
            eta0 = np.asarray(eta0, dtype=np.float64)
        elif start is not None:
            b0 = np.asarray(_to_numpy_1d(start), dtype=np.float64)
            if b0.shape[0] != sample.X.shape[1]:
                raise ValueError(f"start must have {sample.X.shape[1]} coefficient(s)")
            eta0 = sample.offset + sample.X @ b0

        out = fit_irls(
            sample.y,
            sample.X,
            sample.registry,
            family,
            weights=sample.weights,
            offset=sample.offset,
            config=cfg,
            eta_start=eta0,
            method=method,
            fixed_theta=fixed_theta,
        )
        names = list(self._var_names)
        diag = Diagnostics(
            collin_vars=[names[j] for j in np.flatnonzero(~out.keep)],
            demean_converged=out.demean_converged,
            demean_iter=out.demean_iter,
            status=out.status,
            n_iter=out.n_iter,
            warn_demean=cfg.demean_warn,
        )
        res = FixedEffectsResult(
            coefficients=pd.Series(out.coef, index=names, name=self._depvar),
            keep=out.keep,
            family=out.family,
            estimator=self._label,
            depvar=self._depvar,
            y=sample.y,
            X=sample.X,
            weights=sample.weights,
            offset=sample.offset,
            registry=sample.registry,
            fe_names=list(self._fe_names),
            eta=out.eta,
            mu=out.mu,
            X_tilde=out.X_tilde[:, out.keep],
            z_tilde=out.z_tilde,
            work_weights=out.work_weights,
            work_resid=out.work_resid,
            bread_matrix=out.bread,
            deviance=out.deviance,
            n_iter=out.n_iter,
            status=out.status,
            method="newton" if (method == "newton" or isinstance(family, CustomMLE)) else "irls",
            obs_mask=sample.obs_mask,
            n_dropped=sample.n_dropped,
            config=cfg,
            has_const=self._add_const,
            weighted=self._weights is not None,
            history=out.history,
            diagnostics=diag,
        )
        res.default_vcov = res._covariance(vcov, cluster, ssc)  # noqa: SLF001
        diag.emit(self._label)
        self._results = res
        return res
