"""Iteratively reweighted least squares with absorbed fixed effects.

Every iteration forms a working response and working weights from the current
linear predictor, sweeps the fixed effects out of ``[z, X]`` with those weights
and solves one weighted least-squares problem. The Gaussian family needs a
single pass. The negative binomial wraps the loop in an outer update of its
dispersion; user-supplied likelihoods take Newton steps built from the same
demeaning subroutine.
"""

# hdfereg/core/irls.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .config import EstimationConfig, get_defaults
from .exceptions import EstimationError
from .families import CustomMLE, Family, NegativeBinomial, Poisson
from .fe import RESID_TOL, demean
from .linalg import LinearSolution, solve_wls

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .factors import FactorRegistry
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = ["IRLSOutput", "fit_irls", "objective"]


@dataclass(slots=True)
class IRLSOutput:
    """State of the estimation loop at exit.

    Attributes
    ----------
    coef : np.ndarray
        Coefficients (NaN for collinear columns).
    keep : np.ndarray
        Retained-column mask.
    eta : np.ndarray
        Linear predictor, offset and fixed effects included.
    mu : np.ndarray
        Fitted mean.
    X_tilde : np.ndarray
        Demeaned regressors of the last iteration (all columns).
    z_tilde : np.ndarray
        Demeaned working response of the last iteration.
    work_weights : np.ndarray
        Working weights of the last iteration (prior weights included).
    work_resid : np.ndarray
        Working residuals ``z_tilde - X_tilde b``.
    bread : np.ndarray
        Inverse (expected or observed) information for the kept columns.
    deviance : float
        Final deviance (``-2`` log-likelihood for user-supplied likelihoods).
    status : str
        ``"converged"`` or ``"max_iter"``.
    """

    coef: NDArray[np.float64]
    keep: NDArray[np.bool_]
    eta: NDArray[np.float64]
    mu: NDArray[np.float64]
    X_tilde: NDArray[np.float64]
    z_tilde: NDArray[np.float64]
    work_weights: NDArray[np.float64]
    work_resid: NDArray[np.float64]
    bread: NDArray[np.float64]
    deviance: float
    n_iter: int
    status: str
    family: Family
    demean_converged: bool = True
    demean_iter: int = 0
    history: dict[str, list[float]] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status == "converged"


def objective(family: Family, y, eta, weights) -> float:
    """Deviance of ``family`` at ``eta`` (``-2`` log-likelihood for :class:`CustomMLE`)."""
    if isinstance(family, CustomMLE):
        return float(-2.0 * np.sum(weights * family.loglik_eta(y, eta)))
    mu = family.inverse_link(eta)
    return float(np.sum(weights * family.deviance_obs(y, mu)))


class _Stepper:
    """One weighted least-squares step on demeaned data."""

    def __init__(self, y, X, registry, weights, offset, config: EstimationConfig) -> None:
        self.y = y
        self.X = X
        self.registry = registry
        self.w = weights
        self.offset = offset
        self.config = config
        self.demean_converged = True
        self.demean_iter = 0

    def solve(self, target, ww) -> tuple[LinearSolution, NDArray[np.float64], NDArray[np.float64]]:
        """Regress ``target`` on ``X`` and the fixed effects with weights ``ww``."""
        cfg = self.config
        p = self.X.shape[1]
        if self.registry is None:
            Xt, zt = self.X, target
            ref = None
        else:
            stacked = np.column_stack([target, self.X]) if p else target.reshape(-1, 1)
            dm = demean(
                stacked,
                self.registry,
                weights=ww,
                tol=cfg.fixef_tol,
                max_iter=cfg.fixef_iter,
                accel=cfg.accel,
                n_threads=cfg.n_threads,
            )
            self.demean_converged = self.demean_converged and dm.all_converged
            self.demean_iter = max(self.demean_iter, dm.n_iter_max)
            zt, Xt = dm.X[:, 0], dm.X[:, 1:]
            ref = np.sum(ww[:, None] * self.X**2, axis=0)
        sol = solve_wls(Xt, zt, ww, collin_tol=cfg.collin_tol, ref_norms=ref)
        if self.registry is not None and self.registry.K > 1:
            # the swept residual is only as accurate as fixef_tol; re-sweep the
            # partial residual of the full model to RESID_TOL
            partial = target - self.X[:, sol.keep] @ sol.coef[sol.keep]
            tight = demean(
                partial,
                self.registry,
                weights=ww,
                tol=RESID_TOL,
                max_iter=cfg.fixef_iter,
                accel=cfg.accel,
            )
            sol.resid = tight.X
            sol.rss = float(np.sum(ww * sol.resid**2))
        return sol, Xt, zt


def _output(
    sol: LinearSolution,
    Xt,
    zt,
    ww,
    eta,
    family: Family,
    deviance: float,
    n_iter: int,
    status: str,
    stepper: _Stepper,
    history,
) -> IRLSOutput:
    return IRLSOutput(
        coef=sol.coef,
        keep=sol.keep,
        eta=eta,
        mu=family.inverse_link(eta),
        X_tilde=Xt,
        z_tilde=zt,
        work_weights=ww,
        work_resid=sol.resid,
        bread=sol.bread,
        deviance=deviance,
        n_iter=n_iter,
        status=status,
        family=family,
        demean_converged=stepper.demean_converged,
        demean_iter=stepper.demean_iter,
        history=history,
    )


# a boundary observation whose linear predictor moves toward the edge of the
# support by more than _DRIFT_STEP for _DRIFT_RUNS iterations in a row is separated
_DRIFT_STEP = 0.5
_DRIFT_RUNS = 8


def _boundary_drift(family: Family, y, step) -> NDArray[np.bool_] | None:
    """Rows whose step pushes ``mu`` toward a boundary outcome they sit on."""
    if family.kind == "count":
        return (y == 0) & (step < -_DRIFT_STEP)
    if family.kind == "binary":
        return ((y == 0) & (step < -_DRIFT_STEP)) | ((y == 1) & (step > _DRIFT_STEP))
    return None


def _irls_loop(  # noqa: PLR0913
    stepper: _Stepper,
    family: Family,
    eta: NDArray[np.float64],
    *,
    newton: bool,
) -> IRLSOutput:
    cfg = stepper.config
    y, w, off = stepper.y, stepper.w, stepper.offset
    dev_old = objective(family, y, eta, w)
    history: dict[str, list[float]] = {"deviance": [dev_old]}
    status = "max_iter"
    coef_old = None
    it = 0
    drift = np.zeros(y.shape[0], dtype=np.int64)
    while it < cfg.glm_iter:
        it += 1
        if newton:
            d1, d2 = family.derivatives(y, eta)
            ww = np.maximum(-d2, 1e-12) * w
            z = eta + d1 * w / ww
        else:
            z, ww = family.working(y, eta)
            ww = ww * w
        if not (np.all(np.isfinite(z)) and np.all(np.isfinite(ww))):
            raise EstimationError(
                f"{family.name}: working response became non-finite at iteration {it}; "
                "the fitted values diverged (possible separation)",
            )
        sol, Xt, zt = stepper.solve(z - off, ww)
        eta_new = z - sol.resid

        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            dev = objective(family, y, eta_new, w)
        halvings = 0
        # the first step leaves the (model-free) starting values, so only validity is checked
        while not np.isfinite(dev) or (
            it > 1 and (dev - dev_old) / (0.1 + abs(dev)) > cfg.glm_tol
        ):
            halvings += 1
            if halvings > cfg.max_halving:
                raise EstimationError(
                    f"{family.name}: step halving failed at iteration {it} "
                    f"(deviance {dev_old:.6g} -> {dev:.6g}); the estimation diverged",
                )
            eta_new = 0.5 * (eta_new + eta)
            if coef_old is not None:
                sol.coef = np.where(np.isnan(coef_old), sol.coef, 0.5 * (sol.coef + coef_old))
            with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                dev = objective(family, y, eta_new, w)
        if halvings:
            LOGGER.debug("IRLS iteration %d: %d step halving(s)", it, halvings)
        coef_old = sol.coef
        if not np.all(np.isfinite(eta_new)):
            raise EstimationError(f"{family.name}: linear predictor diverged at iteration {it}")
        moving = _boundary_drift(family, y, eta_new - eta)
        if moving is not None:
            drift = np.where(moving, drift + 1, 0)
            n_sep = int(np.sum(drift >= _DRIFT_RUNS))
            if n_sep:
                raise EstimationError(
                    f"{family.name}: separation detected at iteration {it}: {n_sep} observation(s) "
                    "with a boundary outcome have fitted values drifting to the edge of the support; "
                    "remove the separating regressors or the separated observations",
                )

        crit = abs(dev - dev_old) / (0.1 + abs(dev))
        LOGGER.debug("IRLS iteration %d: deviance=%.10g crit=%.3g", it, dev, crit)
        history["deviance"].append(dev)
        eta, dev_old = eta_new, dev
        if crit < cfg.glm_tol:
            status = "converged"
            break
    return _output(sol, Xt, zt, ww, eta, family, dev_old, it, status, stepper, history)


def _theta_ml(
    y, mu, w, theta: float, *, max_iter: int = 25, tol: float = 1e-8,
) -> float:
    """Maximize the negative binomial log-likelihood in ``theta`` given ``mu``.

    Newton steps on ``log(theta)``; steps that are not ascent directions or
    that exceed a factor of ``e^2`` are replaced by a bounded move along the
    score.
    """
    u = np.log(theta)
    for _ in range(max_iter):
        th = float(np.exp(u))
        g, h = NegativeBinomial.theta_score(th, y, mu, w)
        gu = g * th
        hu = h * th * th + g * th
        step = -gu / hu if hu < 0.0 else np.sign(gu) * 1.0
        step = float(np.clip(step, -2.0, 2.0))
        u += step
        if abs(step) < tol:
            break
    return float(np.exp(u))


def _theta_moment(y, mu, w) -> float:
    denom = float(np.sum(w * (y / mu - 1.0) ** 2))
    return float(np.sum(w)) / denom if denom > 0.0 else 1.0


def _negbin_loop(stepper: _Stepper, family: NegativeBinomial, eta, *, newton: bool, fixed_theta: bool) -> IRLSOutput:
    cfg = stepper.config
    y, w = stepper.y, stepper.w
    if fixed_theta:
        return _irls_loop(stepper, family, eta, newton=newton)

    # Poisson pass for the mean, then alternate dispersion and mean updates
    out = _irls_loop(stepper, Poisson(), eta, newton=newton)
    theta = cfg.theta_init if cfg.theta_init is not None else _theta_moment(y, out.mu, w)
    ll_old = -np.inf
    over_bound = 0
    thetas: list[float] = []
    n_inner = out.n_iter
    status = "max_iter"
    for outer in range(1, cfg.nb_iter + 1):
        theta_new = _theta_ml(y, out.mu, w, theta)
        if not np.isfinite(theta_new):
            raise EstimationError("negative binomial: dispersion update is not finite")
        over_bound = over_bound + 1 if theta_new > cfg.theta_max else 0
        if over_bound >= 2:
            raise EstimationError(
                f"negative binomial: dispersion theta={theta_new:.3g} exceeded "
                f"theta_max={cfg.theta_max:.3g} twice in a row; the data show no "
                "overdispersion (use a Poisson model)",
            )
        thetas.append(theta_new)
        fam = family.with_theta(theta_new)
        out = _irls_loop(stepper, fam, out.eta, newton=newton)
        n_inner += out.n_iter
        ll = fam.loglik(y, out.mu, w)
        LOGGER.debug("negbin outer %d: theta=%.8g loglik=%.10g", outer, theta_new, ll)
        ll_crit = abs(ll - ll_old) / (0.1 + abs(ll))
        th_crit = abs(theta_new - theta) / theta
        theta = theta_new
        ll_old = ll
        if ll_crit < cfg.glm_tol and th_crit < np.sqrt(cfg.glm_tol) and out.converged:
            status = "converged"
            break
    out.status = status
    out.n_iter = n_inner
    out.history["theta"] = thetas
    return out


def fit_irls(  # noqa: PLR0913
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    registry: FactorRegistry | None,
    family: Family,
    *,
    weights: NDArray[np.float64] | None = None,
    offset: NDArray[np.float64] | None = None,
    config: EstimationConfig | None = None,
    eta_start: NDArray[np.float64] | None = None,
    method: str = "irls",
    fixed_theta: bool = False,
) -> IRLSOutput:
    """Estimate a (generalized) linear model with absorbed fixed effects.

    Parameters
    ----------
    y : (n,) array
        Outcome.
    X : (n, p) array
        Regressors (``p`` may be zero). No intercept is needed when
        ``registry`` is given.
    registry : FactorRegistry or None
        Fixed effects to absorb.
    family : Family
        Outcome family.
    weights : (n,) array, optional
        Prior observation weights.
    offset : (n,) array, optional
        Known component of the linear predictor.
    config : EstimationConfig, optional
        Numerical controls (process defaults when omitted).
    eta_start : (n,) array, optional
        Starting linear predictor (family default otherwise).
    method : {"irls", "newton"}
        Fisher scoring with working weights, or Newton steps with the
        observed information. :class:`CustomMLE` always uses Newton steps.
    fixed_theta : bool
        Keep the negative binomial dispersion at its given value.

    Raises
    ------
    EstimationError
        If the iterations diverge.
    """
    cfg = get_defaults() if config is None else config
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    n = y.shape[0]
    X = np.asarray(X, dtype=np.float64).reshape(n, -1)
    w = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64).reshape(-1)
    off = np.zeros(n) if offset is None else np.asarray(offset, dtype=np.float64).reshape(-1)
    if method not in {"irls", "newton"}:
        raise ValueError("method must be 'irls' or 'newton'")
    newton = method == "newton" or isinstance(family, CustomMLE)
    family.check_outcome(y)
    stepper = _Stepper(y, X, registry, w, off, cfg)

    if family.is_linear and not newton:
        sol, Xt, zt = stepper.solve(y - off, w)
        eta = y - sol.resid
        dev = objective(family, y, eta, w)
        return _output(sol, Xt, zt, w, eta, family, dev, 1, "converged", stepper, {"deviance": [dev]})

    eta = family.start_eta(y) if eta_start is None else np.asarray(eta_start, dtype=np.float64).reshape(-1)
    if not np.all(np.isfinite(eta)):
        raise EstimationError(f"{family.name}: starting values are not finite")
    if isinstance(family, NegativeBinomial):
        out = _negbin_loop(stepper, family, eta, newton=newton, fixed_theta=fixed_theta)
    else:
        out = _irls_loop(stepper, family, eta, newton=newton)
    LOGGER.debug(
        "%s fit: status=%s iterations=%d deviance=%.10g",
        family.name, out.status, out.n_iter, out.deviance,
    )
    return out
