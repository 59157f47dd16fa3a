"""Generalized linear and maximum-likelihood models with fixed effects.

All estimators here run the IRLS driver of :mod:`hdfereg.core.irls`: Fisher
scoring for the exponential families (Poisson, logit, probit, Gaussian),
an outer dispersion loop for the negative binomial and Newton steps for
user-supplied log-likelihoods.
"""

# hdfereg/estimators/feglm.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from hdfereg.core.config import resolve_config
from hdfereg.core.families import CustomMLE, NegativeBinomial, get_family

from .base import BaseEstimator, FixedEffectsResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from hdfereg.core.config import EstimationConfig
    from hdfereg.core.families import Family
    from hdfereg.core.vcov import SmallSampleCorrection

__all__ = [
    "FEGLM",
    "FELogit",
    "FEMLM",
    "FENegBin",
    "FEPoisson",
    "feglm",
    "femlm",
    "fenegbin",
    "fepois",
]


class FEGLM(BaseEstimator):
    """Generalized linear model with absorbed fixed effects.

    Parameters
    ----------
    y, X, fe
        Outcome, regressors and fixed-effect factors (see
        :class:`~hdfereg.estimators.base.BaseEstimator`).
    family : str or Family
        ``"gaussian"`` (default), ``"poisson"``, ``"logit"``, ``"probit"``,
        ``"negbin"`` or a :class:`~hdfereg.core.families.Family` instance.
    **kwargs
        Remaining data arguments of the base estimator (``weights``,
        ``offset``, ``slopes`` ...).

    Notes
    -----
    With ``fixef_rm="perfect"`` (the default) groups whose outcome is
    identically zero (count families) or constant (binary families) are
    removed before estimation: their fixed effect would diverge.
    """

    _label = "feglm"
    _default_method = "irls"

    def __init__(self, y: Any, X: Any = None, fe: Any = None, *, family: str | Family = "gaussian", **kwargs: Any) -> None:
        super().__init__(y, X, fe, **kwargs)
        self.family = get_family(family)

    def fit(  # noqa: PLR0913
        self,
        *,
        vcov: str | None = None,
        cluster: Any = None,
        ssc: SmallSampleCorrection | None = None,
        config: EstimationConfig | None = None,
        method: str | None = None,
        start: Any = None,
        eta_start: Any = None,
        theta: float | None = None,
        fixed_theta: bool = False,
        **options: Any,
    ) -> FixedEffectsResult:
        """Fit the model.

        Parameters
        ----------
        vcov, cluster, ssc
            Default covariance of the result (see :meth:`FEOLS.fit`).
        config : EstimationConfig, optional
            Numerical controls; ``**options`` override single fields.
        method : {"irls", "newton"}, optional
            Fisher scoring or Newton steps with the observed information.
        start : array-like, optional
            Starting coefficients (one per regressor).
        eta_start : array-like, optional
            Starting linear predictor.
        theta : float, optional
            Negative binomial dispersion: starting value, or the fixed value
            with ``fixed_theta=True``.
        fixed_theta : bool
            Do not estimate the negative binomial dispersion.
        """
        family = self.family
        is_nb = isinstance(family, NegativeBinomial)
        if theta is not None and not is_nb:
            raise ValueError("theta only applies to the negative binomial family")
        if is_nb and theta is not None:
            if fixed_theta:
                family = family.with_theta(theta)
            else:
                options["theta_init"] = theta
        cfg = resolve_config(config, **options)
        return self._estimate(
            family,
            cfg,
            vcov=vcov,
            cluster=cluster,
            ssc=ssc,
            method=method or self._default_method,
            start=start,
            eta_start=eta_start,
            fixed_theta=bool(fixed_theta and is_nb),
        )


class FEPoisson(FEGLM):
    """Poisson regression (log link) with absorbed fixed effects."""

    _label = "fepois"

    def __init__(self, y: Any, X: Any = None, fe: Any = None, **kwargs: Any) -> None:
        super().__init__(y, X, fe, family="poisson", **kwargs)


class FELogit(FEGLM):
    """Logistic regression with absorbed fixed effects."""

    _label = "felogit"

    def __init__(self, y: Any, X: Any = None, fe: Any = None, **kwargs: Any) -> None:
        super().__init__(y, X, fe, family="logit", **kwargs)


class FENegBin(FEGLM):
    """Negative binomial regression (log link, NB2) with absorbed fixed effects.

    The dispersion ``theta`` (variance ``mu + mu^2 / theta``) is estimated by
    maximum likelihood, alternating with IRLS passes for the mean.
    """

    _label = "fenegbin"

    def __init__(self, y: Any, X: Any = None, fe: Any = None, *, theta: float = 1.0, **kwargs: Any) -> None:
        super().__init__(y, X, fe, family=NegativeBinomial(theta), **kwargs)


class FEMLM(FEGLM):
    """Maximum-likelihood estimation with absorbed fixed effects.

    Either a named family (estimated by Newton steps with the observed
    information) or a user log-likelihood given by ``loglik(y, eta)`` and
    ``score(y, eta)`` (and optionally ``hessian(y, eta)``, ``mean(eta)``
    and ``start_fn(y)``), see :class:`~hdfereg.core.families.CustomMLE`.
    """

    _label = "femlm"
    _default_method = "newton"

    def __init__(  # noqa: PLR0913
        self,
        y: Any,
        X: Any = None,
        fe: Any = None,
        *,
        family: str | Family = "poisson",
        loglik: Callable[[Any, Any], Any] | None = None,
        score: Callable[[Any, Any], Any] | None = None,
        hessian: Callable[[Any, Any], Any] | None = None,
        mean: Callable[[Any], Any] | None = None,
        start_fn: Callable[[Any], Any] | None = None,
        name: str = "custom",
        **kwargs: Any,
    ) -> None:
        if loglik is not None or score is not None:
            if loglik is None or score is None:
                raise ValueError("a user likelihood needs both loglik and score")
            family = CustomMLE(loglik, score, hessian, mean=mean, start=start_fn, name=name)
        super().__init__(y, X, fe, family=family, **kwargs)


def feglm(y: Any, X: Any = None, fe: Any = None, *, family: str | Family = "gaussian", **kwargs: Any) -> FixedEffectsResult:
    """Fit :class:`FEGLM` in one call.

    Data keywords go to the constructor, the rest to :meth:`FEGLM.fit`.
    """
    data_kw, fit_kw = _split_kwargs(kwargs)
    return FEGLM(y, X, fe, family=family, **data_kw).fit(**fit_kw)


def fepois(y: Any, X: Any = None, fe: Any = None, **kwargs: Any) -> FixedEffectsResult:
    """Fit :class:`FEPoisson` in one call."""
    data_kw, fit_kw = _split_kwargs(kwargs)
    return FEPoisson(y, X, fe, **data_kw).fit(**fit_kw)


def fenegbin(y: Any, X: Any = None, fe: Any = None, **kwargs: Any) -> FixedEffectsResult:
    """Fit :class:`FENegBin` in one call (``theta`` is the starting dispersion)."""
    data_kw, fit_kw = _split_kwargs(kwargs)
    return FENegBin(y, X, fe, **data_kw).fit(**fit_kw)


def femlm(y: Any, X: Any = None, fe: Any = None, **kwargs: Any) -> FixedEffectsResult:
    """Fit :class:`FEMLM` in one call."""
    data_kw, fit_kw = _split_kwargs(kwargs, extra=_MLM_KEYS)
    return FEMLM(y, X, fe, **data_kw).fit(**fit_kw)


_DATA_KEYS = frozenset(
    {"weights", "offset", "slopes", "slope_only", "fe_names", "var_names", "add_const"},
)
_MLM_KEYS = frozenset({"family", "loglik", "score", "hessian", "mean", "start_fn", "name"})


def _split_kwargs(kwargs: dict[str, Any], extra: frozenset[str] = frozenset()) -> tuple[dict[str, Any], dict[str, Any]]:
    data = {k: v for k, v in kwargs.items() if k in _DATA_KEYS or k in extra}
    rest = {k: v for k, v in kwargs.items() if k not in data}
    return data, rest
