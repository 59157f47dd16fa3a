"""Outcome families for the iteratively reweighted estimation loop.

The set of families is closed: Gaussian, Poisson, Logit, Probit, negative
binomial and a user-driven maximum-likelihood family. Every family gives the
IRLS driver an inverse link and the derivatives of the log-likelihood in the
linear predictor. The closed-form families (:class:`GLMFamily`) also carry
a variance function, working response and weights, and a deviance.
"""

# hdfereg/core/families.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable

import numpy as np
from scipy import special

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "CustomMLE",
    "Family",
    "GLMFamily",
    "Gaussian",
    "Logit",
    "NegativeBinomial",
    "Poisson",
    "Probit",
    "get_family",
]

_EPS = np.finfo(float).eps


class Family(ABC):
    """Capability set consumed by the IRLS driver.

    Every family maps a linear predictor to a mean and supplies the first
    and second derivative of its log-likelihood in ``eta``; that is all the
    Newton loop needs. Closed-form families add a variance function and a
    saturated model, see :class:`GLMFamily`.
    """

    name: str = ""
    link_name: str = ""
    #: "gaussian", "count", "binary" or "custom"; drives perfect-fit removal
    kind: str = ""
    #: the loop has a closed-form solution (one weighted least squares)
    is_linear: bool = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(link={self.link_name!r})"

    @abstractmethod
    def inverse_link(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        """Mean ``mu`` as a function of the linear predictor."""

    @abstractmethod
    def start_eta(self, y: NDArray[np.float64]) -> NDArray[np.float64]:
        """Starting linear predictor computed from the outcome."""

    @abstractmethod
    def derivatives(
        self, y: NDArray[np.float64], eta: NDArray[np.float64],
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """First and second derivative of the log-likelihood in ``eta``."""

    def check_outcome(self, y: NDArray[np.float64]) -> None:
        """Raise ``ValueError`` if the outcome is outside the family's support."""

    def null_mu(self, y: NDArray[np.float64], weights: NDArray[np.float64]) -> NDArray[np.float64]:
        """Fitted mean of the intercept-only model."""
        return np.full_like(y, float(np.sum(weights * y) / np.sum(weights)))

    def scale(self, y, mu, weights, df_resid: float) -> float:
        """Dispersion used by the IID covariance (fixed at one unless overridden)."""
        return 1.0


class GLMFamily(Family):
    """Exponential-family outcome with a closed-form variance function.

    These families support Fisher scoring, deviance and Pearson residuals
    and the log-likelihood of the intercept-only model.
    """

    @abstractmethod
    def mu_eta(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        """Derivative ``d mu / d eta``."""

    @abstractmethod
    def variance(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        """Variance function ``V(mu)``."""

    @abstractmethod
    def loglik_obs(self, y: NDArray[np.float64], mu: NDArray[np.float64]) -> NDArray[np.float64]:
        """Per-observation log-likelihood."""

    def deviance_obs(self, y: NDArray[np.float64], mu: NDArray[np.float64]) -> NDArray[np.float64]:
        """Per-observation unit deviance (``-2`` log-likelihood ratio to saturation)."""
        return 2.0 * (self.loglik_obs(y, y) - self.loglik_obs(y, mu))

    def working(
        self, y: NDArray[np.float64], eta: NDArray[np.float64],
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Fisher-scoring working response ``z`` and (unweighted) working weights."""
        mu = self.inverse_link(eta)
        me = np.maximum(self.mu_eta(eta), _EPS)
        z = eta + (y - mu) / me
        ww = me**2 / np.maximum(self.variance(mu), _EPS)
        return z, ww

    def derivatives(self, y, eta):
        """First and second derivative of the log-likelihood in ``eta``.

        Exact for canonical links; families with a non-canonical link
        override it.
        """
        mu = self.inverse_link(eta)
        v = np.maximum(self.variance(mu), _EPS)
        me = self.mu_eta(eta)
        return (y - mu) * me / v, -(me**2) / v

    def loglik(self, y, mu, weights) -> float:
        """Weighted log-likelihood."""
        return float(np.sum(weights * self.loglik_obs(y, mu)))


class Gaussian(GLMFamily):
    """Normal outcome with identity link."""

    name = "gaussian"
    link_name = "identity"
    kind = "gaussian"
    is_linear = True

    def inverse_link(self, eta):
        return np.asarray(eta, dtype=np.float64)

    def mu_eta(self, eta):
        return np.ones_like(eta, dtype=np.float64)

    def variance(self, mu):
        return np.ones_like(mu, dtype=np.float64)

    def loglik_obs(self, y, mu):
        # profile likelihood: sigma^2 fixed at the mean squared residual by the caller
        return -0.5 * (y - mu) ** 2

    def deviance_obs(self, y, mu):
        return (y - mu) ** 2

    def start_eta(self, y):
        return np.asarray(y, dtype=np.float64).copy()

    def loglik(self, y, mu, weights) -> float:
        """Concentrated normal log-likelihood with ``sigma^2 = RSS_w / n``."""
        n = y.shape[0]
        rss = float(np.sum(weights * (y - mu) ** 2))
        sigma2 = rss / n
        pos = weights > 0
        return float(
            -0.5 * n * (np.log(2.0 * np.pi * sigma2) + 1.0) + 0.5 * np.sum(np.log(weights[pos])),
        )

    def scale(self, y, mu, weights, df_resid: float) -> float:
        return float(np.sum(weights * (y - mu) ** 2) / max(df_resid, 1.0))


class Poisson(GLMFamily):
    """Count outcome with log link."""

    name = "poisson"
    link_name = "log"
    kind = "count"

    def inverse_link(self, eta):
        return np.exp(eta)

    def mu_eta(self, eta):
        return np.exp(eta)

    def variance(self, mu):
        return mu

    def loglik_obs(self, y, mu):
        return special.xlogy(y, mu) - mu - special.gammaln(y + 1.0)

    def deviance_obs(self, y, mu):
        return 2.0 * (special.xlogy(y, y) - special.xlogy(y, mu) - (y - mu))

    def check_outcome(self, y):
        if np.any(y < 0):
            raise ValueError("Poisson outcome must be non-negative")

    def start_eta(self, y):
        return np.log(y + 0.1)


class NegativeBinomial(GLMFamily):
    """Negative binomial (NB2) with log link and dispersion ``theta``.

    ``Var(y) = mu + mu^2 / theta``; ``theta`` is re-estimated by the driver
    between inner IRLS passes.
    """

    name = "negbin"
    link_name = "log"
    kind = "count"

    def __init__(self, theta: float = 1.0) -> None:
        if not (float(theta) > 0.0):
            raise ValueError("theta must be strictly positive")
        self.theta = float(theta)

    def __repr__(self) -> str:
        return f"NegativeBinomial(theta={self.theta:.6g})"

    def with_theta(self, theta: float) -> NegativeBinomial:
        return NegativeBinomial(theta)

    def inverse_link(self, eta):
        return np.exp(eta)

    def mu_eta(self, eta):
        return np.exp(eta)

    def variance(self, mu):
        return mu + mu**2 / self.theta

    def loglik_obs(self, y, mu):
        th = self.theta
        return (
            special.gammaln(y + th)
            - special.gammaln(th)
            - special.gammaln(y + 1.0)
            + th * np.log(th / (th + mu))
            + special.xlogy(y, mu / (th + mu))
        )

    def deviance_obs(self, y, mu):
        th = self.theta
        return 2.0 * (
            special.xlogy(y, y / mu) - (y + th) * np.log((y + th) / (mu + th))
        )

    def derivatives(self, y, eta):
        mu = self.inverse_link(eta)
        th = self.theta
        d1 = th * (y - mu) / (th + mu)
        d2 = -th * mu * (th + y) / (th + mu) ** 2
        return d1, d2

    def check_outcome(self, y):
        if np.any(y < 0):
            raise ValueError("negative binomial outcome must be non-negative")

    def start_eta(self, y):
        return np.log(y + 0.1)

    @staticmethod
    def theta_score(theta: float, y, mu, weights) -> tuple[float, float]:
        """First and second derivative of the log-likelihood in ``theta``."""
        g = (
            special.digamma(y + theta)
            - special.digamma(theta)
            + np.log(theta / (theta + mu))
            + 1.0
            - (y + theta) / (theta + mu)
        )
        h = (
            special.polygamma(1, y + theta)
            - special.polygamma(1, theta)
            + 1.0 / theta
            - 2.0 / (theta + mu)
            + (y + theta) / (theta + mu) ** 2
        )
        return float(np.sum(weights * g)), float(np.sum(weights * h))


class Logit(GLMFamily):
    """Binary (or fractional) outcome with logit link."""

    name = "logit"
    link_name = "logit"
    kind = "binary"

    def inverse_link(self, eta):
        return special.expit(eta)

    def mu_eta(self, eta):
        mu = special.expit(eta)
        return np.maximum(mu * (1.0 - mu), _EPS)

    def variance(self, mu):
        return mu * (1.0 - mu)

    def loglik_obs(self, y, mu):
        return special.xlogy(y, mu) + special.xlogy(1.0 - y, 1.0 - mu)

    def deviance_obs(self, y, mu):
        return 2.0 * (
            special.xlogy(y, y) + special.xlogy(1.0 - y, 1.0 - y) - self.loglik_obs(y, mu)
        )

    def check_outcome(self, y):
        if np.any((y < 0) | (y > 1)):
            raise ValueError("binary outcome must lie in [0, 1]")

    def start_eta(self, y):
        return special.logit((y + 0.5) / 2.0)


class Probit(Logit):
    """Binary (or fractional) outcome with probit link."""

    name = "probit"
    link_name = "probit"

    def inverse_link(self, eta):
        return np.clip(special.ndtr(eta), _EPS, 1.0 - _EPS)

    def mu_eta(self, eta):
        return np.maximum(np.exp(-0.5 * eta**2) / np.sqrt(2.0 * np.pi), _EPS)

    def start_eta(self, y):
        return special.ndtri((y + 0.5) / 2.0)

    def derivatives(self, y, eta):
        # inverse Mills ratios for y = 1 and y = 0
        log_pdf = -0.5 * eta**2 - 0.5 * np.log(2.0 * np.pi)
        lam1 = np.exp(log_pdf - special.log_ndtr(eta))
        lam0 = np.exp(log_pdf - special.log_ndtr(-eta))
        d1 = y * lam1 - (1.0 - y) * lam0
        d2 = -y * lam1 * (eta + lam1) - (1.0 - y) * lam0 * (lam0 - eta)
        return d1, d2


class CustomMLE(Family):
    """Maximum-likelihood family driven by user-supplied functions of ``(y, eta)``.

    Parameters
    ----------
    loglik : callable
        ``loglik(y, eta)`` returning the per-observation log-likelihood.
    score : callable
        ``score(y, eta)`` returning ``d loglik / d eta`` per observation.
    hessian : callable, optional
        ``hessian(y, eta)`` returning ``d^2 loglik / d eta^2``; a central
        finite difference of ``score`` is used when omitted.
    mean : callable, optional
        ``mean(eta)`` giving the fitted value (identity by default).
    start : callable, optional
        ``start(y)`` giving the starting linear predictor (``y`` by default).
    name : str
        Label used in results.
    """

    kind = "custom"
    link_name = "custom"

    def __init__(  # noqa: PLR0913
        self,
        loglik: Callable[[Any, Any], Any],
        score: Callable[[Any, Any], Any],
        hessian: Callable[[Any, Any], Any] | None = None,
        *,
        mean: Callable[[Any], Any] | None = None,
        start: Callable[[Any], Any] | None = None,
        name: str = "custom",
    ) -> None:
        if not callable(loglik) or not callable(score):
            raise TypeError("loglik and score must be callables of (y, eta)")
        self._loglik = loglik
        self._score = score
        self._hessian = hessian
        self._mean = mean
        self._start = start
        self.name = str(name)

    def __repr__(self) -> str:
        return f"CustomMLE(name={self.name!r})"

    def inverse_link(self, eta):
        if self._mean is None:
            return np.asarray(eta, dtype=np.float64)
        return np.asarray(self._mean(eta), dtype=np.float64)

    def loglik_eta(self, y, eta) -> NDArray[np.float64]:
        return np.asarray(self._loglik(y, eta), dtype=np.float64).reshape(-1)

    def start_eta(self, y):
        if self._start is None:
            return np.asarray(y, dtype=np.float64).copy()
        return np.asarray(self._start(y), dtype=np.float64).reshape(-1)

    def derivatives(self, y, eta):
        d1 = np.asarray(self._score(y, eta), dtype=np.float64).reshape(-1)
        if self._hessian is not None:
            d2 = np.asarray(self._hessian(y, eta), dtype=np.float64).reshape(-1)
        else:
            h = 1e-5 * (1.0 + np.abs(eta))
            up = np.asarray(self._score(y, eta + h), dtype=np.float64).reshape(-1)
            dn = np.asarray(self._score(y, eta - h), dtype=np.float64).reshape(-1)
            d2 = (up - dn) / (2.0 * h)
        return d1, d2

    def null_mu(self, y, weights):
        return np.full_like(y, np.nan)


_FAMILIES: dict[str, type[Family]] = {
    "gaussian": Gaussian,
    "normal": Gaussian,
    "poisson": Poisson,
    "logit": Logit,
    "binomial": Logit,
    "probit": Probit,
    "negbin": NegativeBinomial,
    "negative_binomial": NegativeBinomial,
}


def get_family(family: str | Family, **kwargs: Any) -> Family:
    """Resolve a family name (or pass an instance through)."""
    if isinstance(family, Family):
        if kwargs:
            raise TypeError("keyword arguments are only accepted with a family name")
        return family
    key = str(family).lower().replace("-", "_").strip()
    if key not in _FAMILIES:
        raise ValueError(
            f"unknown family {family!r}; choose one of {sorted(set(_FAMILIES))} "
            "or pass a CustomMLE instance",
        )
    return _FAMILIES[key](**kwargs)
