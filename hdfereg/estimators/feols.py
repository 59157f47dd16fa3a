"""Linear regression with high-dimensional fixed effects.

The fixed effects are swept out of the outcome and the regressors by
alternating projections; the coefficients come from one weighted
least-squares solve on the demeaned data.
"""

# hdfereg/estimators/feols.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from hdfereg.core.config import resolve_config
from hdfereg.core.families import Gaussian

from .base import BaseEstimator, FixedEffectsResult

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from hdfereg.core.config import EstimationConfig
    from hdfereg.core.vcov import SmallSampleCorrection

__all__ = ["FEOLS", "feols"]


class FEOLS(BaseEstimator):
    """Ordinary (weighted) least squares with absorbed fixed effects.

    Estimates ``y = X b + sum_k D_k a_k + u`` without forming the dummy
    matrices ``D_k``. See :class:`~hdfereg.estimators.base.BaseEstimator`
    for the data arguments.

    Examples
    --------
    >>> res = FEOLS(df["y"], df[["x1", "x2"]], df[["firm", "year"]]).fit(vcov="cluster", cluster="firm")
    >>> res.coeftable()
    """

    _label = "feols"

    def fit(
        self,
        *,
        vcov: str | None = None,
        cluster: Any = None,
        ssc: SmallSampleCorrection | None = None,
        config: EstimationConfig | None = None,
        **options: Any,
    ) -> FixedEffectsResult:
        """Fit the model.

        Parameters
        ----------
        vcov : {"iid", "hetero", "cluster", "twoway"}, optional
            Default covariance of the result: clustered by the first fixed
            effect when there are fixed effects, IID otherwise.
        cluster : optional
            Cluster identifiers or fixed-effect names (see
            :meth:`FixedEffectsResult.vcov`).
        ssc : SmallSampleCorrection, optional
            Small-sample correction (``hdfereg.ssc()`` defaults).
        config : EstimationConfig, optional
            Numerical controls; the process defaults when omitted.
        **options
            Per-call overrides of ``config`` fields (``fixef_tol=...``).
        """
        cfg = resolve_config(config, **options)
        return self._estimate(Gaussian(), cfg, vcov=vcov, cluster=cluster, ssc=ssc)


def feols(  # noqa: PLR0913
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
    vcov: str | None = None,
    cluster: Any = None,
    ssc: SmallSampleCorrection | None = None,
    config: EstimationConfig | None = None,
    **options: Any,
) -> FixedEffectsResult:
    """Fit :class:`FEOLS` in one call."""
    model = FEOLS(
        y,
        X,
        fe,
        weights=weights,
        offset=offset,
        slopes=slopes,
        slope_only=slope_only,
        fe_names=fe_names,
        var_names=var_names,
        add_const=add_const,
    )
    return model.fit(vcov=vcov, cluster=cluster, ssc=ssc, config=config, **options)
