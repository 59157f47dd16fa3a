import pytest
import numpy as np
import pandas as pd
from scipy import special
from hdfereg.core.exceptions import EstimationError, NonConvergenceWarning
from hdfereg.core.families import CustomMLE, GLMFamily, Poisson
from hdfereg.estimators.feglm import FEGLM, FELogit, feglm, femlm, fenegbin, fepois
from hdfereg.estimators.feols import feols

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(999)


@pytest.fixture
def counts(rng):
    N = 800
    g = rng.integers(0, 40, size=N)
    a = rng.normal(0.5, 0.3, size=40)
    x = rng.standard_normal(N)
    y = rng.poisson(np.exp(0.3 * x + a[g])).astype(float)
    return y, pd.DataFrame({"x": x}), pd.DataFrame({"g": g})


def _dummies(codes):
    return pd.get_dummies(codes).to_numpy(dtype=float)


def _newton(Z, y, kind, n_iter=50):
    """Dummy-variable GLM by plain Newton steps."""
    if kind == "poisson":
        b, *_ = np.linalg.lstsq(Z, np.log(y + 0.1), rcond=None)
    else:
        b = np.zeros(Z.shape[1])
    for _ in range(n_iter):
        eta = Z @ b
        if kind == "poisson":
            mu = np.exp(eta)
            v = mu
        else:
            mu = special.expit(eta)
            v = mu * (1.0 - mu)
        H = Z.T @ (Z * v[:, None])
        b = b + np.linalg.lstsq(H, Z.T @ (y - mu), rcond=None)[0]
    return b

# ---------------------------------------------------------------------
# Unit Tests: Gaussian family
# ---------------------------------------------------------------------

def test_gaussian_glm_equals_feols(counts):
    y, X, fe = counts
    glm = FEGLM(y, X, fe, family="gaussian").fit()
    ols = feols(y, X, fe)
    assert glm.n_iter == 1
    assert np.allclose(glm.params.to_numpy(), ols.params.to_numpy())
    assert np.allclose(glm.se().to_numpy(), ols.se().to_numpy())

def test_feglm_defaults_to_gaussian(counts):
    y, X, fe = counts
    res = feglm(y, X, fe)
    assert res.family.name == "gaussian"
    assert res.n_iter == 1
    assert np.allclose(res.params.to_numpy(), feols(y, X, fe).params.to_numpy())

# ---------------------------------------------------------------------
# Unit Tests: Poisson
# ---------------------------------------------------------------------

def test_poisson_matches_dummies(counts):
    y, X, fe = counts
    res = fepois(y, X, fe, glm_tol=1e-10, fixef_tol=1e-12)
    m = res.obs_mask
    Z = np.column_stack([X["x"].to_numpy()[m], _dummies(fe["g"].to_numpy()[m])])
    b = _newton(Z, y[m], "poisson")
    assert res.converged
    assert np.isclose(res.params["x"], b[0], atol=1e-5)
    assert np.allclose(res.fitted(), np.exp(Z @ b), atol=1e-4)

def test_poisson_inference_uses_normal(counts):
    y, X, fe = counts
    res = fepois(y, X, fe)
    tab = res.coeftable()
    assert list(tab.columns) == ["Estimate", "Std. Error", "z value", "Pr(>|z|)"]
    assert res.wald()["distribution"] == "chi2"

def test_poisson_deviance_residuals(counts):
    y, X, fe = counts
    res = fepois(y, X, fe)
    assert np.isclose(np.sum(res.resid("deviance") ** 2), res.deviance)
    assert res.fitstat()["deviance"] == res.deviance

def test_poisson_perfect_fit_groups_removed(rng):
    N = 300
    g = np.repeat(np.arange(15), 20)
    x = rng.standard_normal(N)
    y = rng.poisson(np.exp(0.5 + 0.2 * x)).astype(float)
    y[g == 4] = 0.0
    res = fepois(y, x, [g])
    assert res.n_dropped["perfect_fit"] == 20
    assert res.n_obs == N - 20
    assert not np.any(res.obs_mask[g == 4])

def test_negative_counts_raise(counts):
    y, X, fe = counts
    y = y.copy()
    y[0] = -1.0
    with pytest.raises(ValueError):
        fepois(y, X, fe)

def test_poisson_two_way_fitted_values(rng):
    N = 1200
    g = rng.integers(0, 40, size=N)
    h = rng.integers(0, 8, size=N)
    x = rng.standard_normal(N) + 0.3 * rng.standard_normal(40)[g]
    y = rng.poisson(np.exp(0.3 * x + rng.normal(0.5, 0.3, size=40)[g] + rng.normal(0.0, 0.3, size=8)[h]))
    res = fepois(y.astype(float), x, [g, h], glm_tol=1e-10)
    m = res.obs_mask
    Z = np.column_stack([x[m], _dummies(g[m]), _dummies(h[m])[:, 1:]])
    b = _newton(Z, y[m].astype(float), "poisson")
    assert res.converged
    assert np.allclose(res.fitted(), np.exp(Z @ b), rtol=1e-6, atol=1e-5)

def test_poisson_separation_raises(rng):
    N = 600
    g = rng.integers(0, 20, size=N)
    d = rng.integers(0, 2, size=N).astype(float)
    z = rng.standard_normal(N)
    y = rng.poisson(np.exp(0.5 + 0.3 * z + rng.normal(0.0, 0.3, size=20)[g])).astype(float)
    # every observation with d == 1 has a zero outcome
    y[d == 1] = 0.0
    with pytest.raises(EstimationError, match="separation"):
        fepois(y, np.column_stack([d, z]), [g])

def test_max_iter_warns_once(counts):
    y, X, fe = counts
    with pytest.warns(NonConvergenceWarning) as record:
        res = fepois(y, X, fe, glm_iter=1)
    assert res.status == "max_iter"
    assert not res.converged
    assert res.n_iter == 1
    assert sum(issubclass(r.category, NonConvergenceWarning) for r in record) == 1

def test_poisson_without_fixed_effects(rng):
    N = 500
    x = rng.standard_normal(N)
    y = rng.poisson(np.exp(0.2 + 0.4 * x)).astype(float)
    res = fepois(y, x)
    Z = np.column_stack([np.ones(N), x])
    b = _newton(Z, y, "poisson")
    assert res.names == ["(Intercept)", "x1"]
    assert np.allclose(res.params.to_numpy(), b, atol=1e-6)
    assert res.default_vcov.kind == "iid"
    assert np.isclose(res.null_loglik(), res.family.loglik(y, np.full(N, y.mean()), np.ones(N)))

def test_offset_shifts_intercept(rng):
    N = 500
    x = rng.standard_normal(N)
    y = rng.poisson(np.exp(0.2 + 0.4 * x)).astype(float)
    base = fepois(y, x)
    shifted = fepois(y, x, offset=np.full(N, 1.0))
    assert np.isclose(shifted.params["(Intercept)"], base.params["(Intercept)"] - 1.0, atol=1e-6)
    assert np.isclose(shifted.params["x1"], base.params["x1"], atol=1e-6)

# ---------------------------------------------------------------------
# Unit Tests: Binary outcomes
# ---------------------------------------------------------------------

def test_logit_matches_dummies(rng):
    N = 1500
    g = rng.integers(0, 30, size=N)
    x = rng.standard_normal(N)
    a = rng.normal(0.0, 0.5, size=30)
    y = (rng.uniform(size=N) < special.expit(x + a[g])).astype(float)
    res = FELogit(y, pd.DataFrame({"x": x}), [g]).fit(glm_tol=1e-10, fixef_tol=1e-12)
    m = res.obs_mask
    Z = np.column_stack([x[m], _dummies(g[m])])
    b = _newton(Z, y[m], "logit")
    assert res.converged
    assert np.isclose(res.params["x"], b[0], atol=1e-5)

def test_logit_perfect_fit_removed(rng):
    g = np.repeat(np.arange(10), 30)
    x = rng.standard_normal(300)
    y = (rng.uniform(size=300) < special.expit(x)).astype(float)
    y[g == 2] = 1.0
    y[g == 7] = 0.0
    res = feglm(y, x, [g], family="logit")
    assert res.n_dropped["perfect_fit"] == 60

def test_logit_separation_raises(rng):
    N = 400
    g = rng.integers(0, 10, size=N)
    x = rng.standard_normal(N)
    # the sign of x predicts the outcome perfectly
    y = (x > 0).astype(float)
    with pytest.raises(EstimationError):
        feglm(y, x, [g], family="logit")

def test_probit_recovers_sign(rng):
    N = 2000
    g = rng.integers(0, 20, size=N)
    x = rng.standard_normal(N)
    y = (x + rng.normal(0.0, 0.5, size=20)[g] + rng.standard_normal(N) > 0).astype(float)
    res = feglm(y, x, [g], family="probit")
    assert res.converged
    assert 0.7 < res.params.iloc[0] < 1.3

def test_binary_outcome_out_of_range(rng):
    y = np.array([0.0, 1.0, 2.0, 0.0, 1.0, 0.0])
    with pytest.raises(ValueError):
        feglm(y, rng.standard_normal(6), family="logit")

# ---------------------------------------------------------------------
# Unit Tests: Negative binomial
# ---------------------------------------------------------------------

@pytest.fixture
def overdispersed(rng):
    N = 3000
    g = rng.integers(0, 50, size=N)
    x = rng.standard_normal(N)
    mu = np.exp(1.0 + 0.3 * x + rng.normal(0.0, 0.3, size=50)[g])
    theta = 2.0
    y = rng.negative_binomial(theta, theta / (theta + mu)).astype(float)
    return y, x, g


def test_negbin_estimates_dispersion(overdispersed):
    y, x, g = overdispersed
    res = fenegbin(y, x, [g])
    assert res.converged
    assert 1.2 < res.theta < 3.5
    assert np.isclose(res.fitstat()["theta"], res.theta)
    assert len(res.history["theta"]) >= 1
    assert abs(res.params.iloc[0] - 0.3) < 0.1

def test_negbin_fixed_theta(overdispersed):
    y, x, g = overdispersed
    res = fenegbin(y, x, [g], theta=2.0, fixed_theta=True)
    assert res.theta == 2.0
    assert "theta" not in res.history

def test_negbin_theta_bound_raises(overdispersed):
    y, x, g = overdispersed
    with pytest.raises(EstimationError):
        fenegbin(y, x, [g], theta_max=0.01)

def test_theta_rejected_for_poisson(counts):
    y, X, fe = counts
    with pytest.raises(ValueError):
        feglm(y, X, fe, family="poisson", theta=1.0)

# ---------------------------------------------------------------------
# Unit Tests: User-supplied likelihoods
# ---------------------------------------------------------------------

def _gauss_ll(y, eta):
    return -0.5 * (y - eta) ** 2


def _gauss_score(y, eta):
    return y - eta


def _gauss_hess(y, eta):
    return -np.ones_like(eta)


def test_custom_gaussian_equals_feols(counts):
    _y, X, fe = counts
    y = X["x"].to_numpy() * 0.8 + np.log1p(_y)
    res = femlm(y, X, fe, loglik=_gauss_ll, score=_gauss_score, hessian=_gauss_hess, name="normal")
    ols = feols(y, X, fe)
    assert res.method == "newton"
    assert res.family.name == "normal"
    assert np.allclose(res.params.to_numpy(), ols.params.to_numpy())
    assert np.allclose(res.vcov("hetero").to_numpy(), ols.vcov("hetero").to_numpy())
    with pytest.raises(ValueError):
        res.resid("pearson")

def test_custom_without_hessian_uses_differences(counts):
    _y, X, fe = counts
    y = X["x"].to_numpy() * 0.8 + np.log1p(_y)
    res = femlm(y, X, fe, loglik=_gauss_ll, score=_gauss_score)
    ols = feols(y, X, fe)
    assert np.allclose(res.params.to_numpy(), ols.params.to_numpy(), atol=1e-6)

def test_custom_nan_loglik_raises(counts):
    y, X, fe = counts
    with pytest.raises(EstimationError):
        femlm(y, X, fe, loglik=lambda y, eta: np.full_like(eta, np.nan), score=_gauss_score)

def test_step_halving_failure_raises(counts):
    _y, X, fe = counts
    y = np.log1p(_y)

    def ll(y, eta):
        # defined only at the starting values
        return np.where(eta == y, 0.0, np.nan)

    with pytest.raises(EstimationError, match="step halving failed"):
        femlm(y, X, fe, loglik=ll, score=_gauss_score, hessian=_gauss_hess, max_halving=3)

def test_custom_family_has_no_closed_form_parts(counts):
    _y, X, fe = counts
    y = X["x"].to_numpy() * 0.8 + np.log1p(_y)
    res = femlm(y, X, fe, loglik=_gauss_ll, score=_gauss_score, hessian=_gauss_hess)
    assert isinstance(res.family, CustomMLE)
    assert not isinstance(res.family, GLMFamily)
    assert isinstance(Poisson(), GLMFamily)
    for attr in ("working", "variance", "deviance_obs"):
        assert not hasattr(res.family, attr)
    assert np.isnan(res.null_loglik())
    with pytest.raises(ValueError):
        res.resid("deviance")

def test_custom_needs_score(counts):
    y, X, fe = counts
    with pytest.raises(ValueError):
        femlm(y, X, fe, loglik=_gauss_ll)

def test_femlm_poisson_matches_fepois(counts):
    y, X, fe = counts
    newton = femlm(y, X, fe, family="poisson", glm_tol=1e-10)
    fisher = fepois(y, X, fe, glm_tol=1e-10)
    assert newton.method == "newton"
    assert fisher.method == "irls"
    assert np.allclose(newton.params.to_numpy(), fisher.params.to_numpy(), atol=1e-6)
