import pytest
import numpy as np
import pandas as pd
from hdfereg.core.exceptions import CollinearityError
from hdfereg.estimators.feols import FEOLS, feols

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(999)


@pytest.fixture
def panel(rng):
    N = 600
    firm = rng.integers(0, 30, size=N)
    year = rng.integers(0, 6, size=N)
    a = rng.standard_normal(30)
    b = rng.standard_normal(6)
    x1 = rng.standard_normal(N) + 0.3 * a[firm]
    x2 = rng.standard_normal(N)
    y = 1.5 * x1 - 0.7 * x2 + a[firm] + b[year] + rng.standard_normal(N)
    return pd.DataFrame({"y": y, "x1": x1, "x2": x2, "firm": firm, "year": year})


def _dummies(codes, drop_first=False):
    D = pd.get_dummies(codes).to_numpy(dtype=float)
    return D[:, 1:] if drop_first else D


def _within(x, g):
    return x - pd.Series(x).groupby(g).transform("mean").to_numpy()

# ---------------------------------------------------------------------
# Unit Tests: Point estimates
# ---------------------------------------------------------------------

def test_one_way_matches_dummies(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    Z = np.column_stack([panel[["x1", "x2"]].to_numpy(), _dummies(panel["firm"])])
    beta, *_ = np.linalg.lstsq(Z, panel["y"].to_numpy(), rcond=None)
    assert list(res.params.index) == ["x1", "x2"]
    assert np.allclose(res.params.to_numpy(), beta[:2])
    assert res.n_iter == 1
    assert res.converged

def test_two_way_matches_dummies(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm", "year"]], fixef_tol=1e-12)
    Z = np.column_stack([
        panel[["x1", "x2"]].to_numpy(),
        _dummies(panel["firm"]),
        _dummies(panel["year"], drop_first=True),
    ])
    beta, *_ = np.linalg.lstsq(Z, panel["y"].to_numpy(), rcond=None)
    assert np.allclose(res.params.to_numpy(), beta[:2], atol=1e-8)
    fitted = Z @ beta
    assert np.allclose(res.fitted(), fitted, atol=1e-7)

def test_two_way_fitted_at_default_tolerance(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm", "year"]])
    Z = np.column_stack([
        panel[["x1", "x2"]].to_numpy(),
        _dummies(panel["firm"]),
        _dummies(panel["year"], drop_first=True),
    ])
    beta, *_ = np.linalg.lstsq(Z, panel["y"].to_numpy(), rcond=None)
    assert res.config.fixef_tol == 1e-8
    assert np.allclose(res.fitted(), Z @ beta, atol=1e-6)
    assert np.allclose(res.resid(), panel["y"].to_numpy() - Z @ beta, atol=1e-6)
    # the recovered fixed effects rebuild the same fitted values
    pred = res.predict(panel[["x1", "x2"]], panel[["firm", "year"]])
    assert np.allclose(pred, res.fitted(), atol=1e-6)

def test_no_fixed_effects_adds_intercept(panel):
    res = feols(panel["y"], panel[["x1", "x2"]])
    Z = np.column_stack([np.ones(len(panel)), panel[["x1", "x2"]].to_numpy()])
    beta, *_ = np.linalg.lstsq(Z, panel["y"].to_numpy(), rcond=None)
    assert res.names == ["(Intercept)", "x1", "x2"]
    assert np.allclose(res.params.to_numpy(), beta)
    # without fixed effects the default covariance is IID
    e = panel["y"].to_numpy() - Z @ beta
    V = np.sum(e**2) / (len(panel) - 3) * np.linalg.inv(Z.T @ Z)
    assert res.default_vcov.kind == "iid"
    assert np.allclose(res.vcov().to_numpy(), V)

def test_weighted_matches_wls(rng, panel):
    w = rng.uniform(0.2, 3.0, size=len(panel))
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]], weights=w)
    Z = np.column_stack([panel[["x1", "x2"]].to_numpy(), _dummies(panel["firm"])])
    sw = np.sqrt(w)
    beta, *_ = np.linalg.lstsq(Z * sw[:, None], panel["y"].to_numpy() * sw, rcond=None)
    assert res.weighted
    assert np.allclose(res.params.to_numpy(), beta[:2])

def test_varying_slopes_match_dummies(rng):
    N = 300
    g = rng.integers(0, 10, size=N)
    z = rng.standard_normal(N)
    x = rng.standard_normal(N)
    y = rng.standard_normal(10)[g] + rng.standard_normal(10)[g] * z + 1.5 * x + 0.1 * rng.standard_normal(N)
    res = feols(y, pd.DataFrame({"x": x}), pd.DataFrame({"g": g}), slopes={"g": pd.Series(z, name="z")})
    D = _dummies(g)
    Z = np.column_stack([x, D, D * z[:, None]])
    beta, *_ = np.linalg.lstsq(Z, y, rcond=None)
    assert res.fe_names == ["g"]
    assert np.isclose(res.params["x"], beta[0])
    slopes = res.fixef()["g[z]"]
    assert list(slopes.columns) == ["(Intercept)", "z"]

# ---------------------------------------------------------------------
# Unit Tests: Sample preparation
# ---------------------------------------------------------------------

def test_singletons_do_not_move_coefficients(rng):
    N = 200
    g = rng.integers(0, 20, size=N)
    g[:5] = np.arange(100, 105)  # five singleton groups
    x = rng.standard_normal(N)
    y = 2.0 * x + rng.standard_normal(20)[g % 20] + rng.standard_normal(N)
    kept = feols(y, x, [g], fixef_rm="none")
    dropped = feols(y, x, [g], fixef_rm="singleton")
    assert np.allclose(kept.params.to_numpy(), dropped.params.to_numpy())
    assert dropped.n_dropped["singleton"] == 5
    assert dropped.n_obs == N - 5
    assert not dropped.obs_mask[:5].any()

def test_missing_rows_dropped_and_reported(rng):
    N = 60
    df = pd.DataFrame({
        "y": rng.standard_normal(N),
        "x": rng.standard_normal(N),
        "g": np.repeat(list("abcdef"), 10).astype(object),
    })
    df.loc[3, "y"] = np.nan
    df.loc[7, "g"] = None
    res = feols(df["y"], df[["x"]], df[["g"]])
    assert res.n_dropped["na"] == 2
    assert res.n_obs == N - 2
    assert not res.obs_mask[3] and not res.obs_mask[7]
    assert res.obs().shape == (N - 2,)
    assert res.depvar == "y"

def test_negative_weight_raises(panel):
    w = np.ones(len(panel))
    w[0] = -1.0
    with pytest.raises(ValueError):
        feols(panel["y"], panel[["x1"]], panel[["firm"]], weights=w)

def test_zero_weights_are_dropped(panel):
    w = np.ones(len(panel))
    w[:10] = 0.0
    res = feols(panel["y"], panel[["x1"]], panel[["firm"]], weights=w)
    ref = feols(panel["y"].iloc[10:], panel[["x1"]].iloc[10:], panel[["firm"]].iloc[10:])
    assert res.n_dropped["zero_weight"] == 10
    assert np.allclose(res.params.to_numpy(), ref.params.to_numpy())

# ---------------------------------------------------------------------
# Unit Tests: Collinearity
# ---------------------------------------------------------------------

def test_collinear_regressor_warned_and_dropped(panel):
    X = panel[["x1", "x2"]].assign(x3=2.0 * panel["x1"] - panel["x2"])
    with pytest.warns(CollinearityError):
        res = feols(panel["y"], X, panel[["firm"]])
    assert res.collin_vars == ["x3"]
    assert np.isnan(res.coefficients["x3"])
    assert list(res.params.index) == ["x1", "x2"]
    assert res.vcov().shape == (2, 2)

def test_regressor_constant_within_groups_is_dropped(rng):
    g = np.array(["A", "A", "B", "B", "C", "C"], dtype=object)
    y = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    X = pd.DataFrame({"x": [1.0, 1.0, 2.0, 2.0, 3.0, 3.0], "z": rng.standard_normal(6)})
    with pytest.warns(CollinearityError):
        res = feols(y, X, [g])
    assert np.isnan(res.coefficients["x"])
    assert res.collin_vars == ["x"]
    assert res.collin_index.tolist() == [0]

# ---------------------------------------------------------------------
# Unit Tests: Covariance
# ---------------------------------------------------------------------

def test_iid_vcov_manual(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]], vcov="iid")
    g = panel["firm"].to_numpy()
    Xt = np.column_stack([_within(panel[c].to_numpy(), g) for c in ("x1", "x2")])
    e = res.resid()
    N, G = len(panel), 30
    V = np.sum(e**2) / (N - 2 - G) * np.linalg.inv(Xt.T @ Xt)
    assert np.allclose(res.vcov().to_numpy(), V)
    assert res.default_vcov.df_t == N - 2 - G

def test_hetero_vcov_manual(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    g = panel["firm"].to_numpy()
    Xt = np.column_stack([_within(panel[c].to_numpy(), g) for c in ("x1", "x2")])
    e = res.resid()
    N, K = len(panel), 2 + 30
    B = np.linalg.inv(Xt.T @ Xt)
    M = (Xt * e[:, None]).T @ (Xt * e[:, None])
    assert np.allclose(res.vcov("hetero").to_numpy(), N / (N - K) * B @ M @ B)

def test_default_clusters_by_first_fixed_effect(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    g = panel["firm"].to_numpy()
    Xt = np.column_stack([_within(panel[c].to_numpy(), g) for c in ("x1", "x2")])
    S = Xt * res.resid()[:, None]
    M = np.zeros((2, 2))
    for grp in np.unique(g):
        s = S[g == grp].sum(axis=0)
        M += np.outer(s, s)
    B = np.linalg.inv(Xt.T @ Xt)
    N, G = len(panel), 30
    # firm is nested in the firm clusters and is not counted in K
    V = (N - 1) / (N - 2) * G / (G - 1) * B @ M @ B
    assert res.default_vcov.kind == "cluster"
    assert res.default_vcov.cluster_names == ("firm",)
    assert np.allclose(res.vcov().to_numpy(), V)
    assert res.degrees_freedom("t") == G - 1
    assert res.degrees_freedom("g") == G

def test_twoway_alias_equals_named_clusters(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm", "year"]])
    a = res.vcov("twoway").to_numpy()
    b = res.vcov("cluster", cluster=["firm", "year"]).to_numpy()
    c = res.vcov(cluster=panel[["firm", "year"]]).to_numpy()
    assert np.allclose(a, b)
    assert np.allclose(a, c)

def test_unknown_cluster_name_raises(panel):
    res = feols(panel["y"], panel[["x1"]], panel[["firm"]])
    with pytest.raises(ValueError):
        res.vcov(cluster="region")

def test_summary_switches_default(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    het = res.summary(vcov="hetero")
    assert het.default_vcov.kind == "hetero"
    assert res.default_vcov.kind == "cluster"
    assert np.allclose(het.se().to_numpy(), res.se("hetero").to_numpy())

def test_inference_tables(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    tab = res.coeftable()
    assert list(tab.columns) == ["Estimate", "Std. Error", "t value", "Pr(>|t|)"]
    ci = res.confint()
    assert list(ci.columns) == ["2.5 %", "97.5 %"]
    assert np.all(ci["2.5 %"] < res.params) and np.all(res.params < ci["97.5 %"])
    w = res.wald("x1")
    assert w["distribution"] == "F"
    assert np.isclose(w["stat"], res.tstat()["x1"] ** 2)
    assert np.isclose(res.confint(95).iloc[0, 0], ci.iloc[0, 0])

# ---------------------------------------------------------------------
# Unit Tests: Fixed effects and prediction
# ---------------------------------------------------------------------

def test_fixef_reproduces_fitted(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm", "year"]], fixef_tol=1e-12)
    fx = res.fixef()
    assert set(fx) == {"firm", "year"}
    fitted = (
        res.X @ res.params.to_numpy()
        + fx["firm"].loc[panel["firm"]].to_numpy()
        + fx["year"].loc[panel["year"]].to_numpy()
    )
    assert np.allclose(fitted, res.fitted(), atol=1e-6)
    assert fx["year"].iloc[0] == 0.0

def test_predict_unseen_level_is_nan(panel):
    model = FEOLS(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    res = model.fit()
    new_X = pd.DataFrame({"x1": [0.5, 0.5], "x2": [1.0, 1.0]})
    new_fe = pd.DataFrame({"firm": [3, 999]})
    pred = res.predict(new_X, new_fe)
    expected = 0.5 * res.params["x1"] + res.params["x2"] + res.fixef()["firm"].loc[3]
    assert np.isclose(pred[0], expected)
    assert np.isnan(pred[1])
    assert model.params.equals(res.params)

def test_predict_in_sample_matches_fitted(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    pred = res.predict(panel[["x1", "x2"]], panel[["firm"]])
    assert np.allclose(pred, res.fitted(), atol=1e-6)

def test_unfitted_model_raises(panel):
    with pytest.raises(RuntimeError):
        _ = FEOLS(panel["y"], panel[["x1"]]).results

# ---------------------------------------------------------------------
# Unit Tests: Fit statistics
# ---------------------------------------------------------------------

def test_fitstat_r2_matches_dummy_regression(panel):
    res = feols(panel["y"], panel[["x1", "x2"]], panel[["firm"]])
    Z = np.column_stack([panel[["x1", "x2"]].to_numpy(), _dummies(panel["firm"])])
    y = panel["y"].to_numpy()
    beta, *_ = np.linalg.lstsq(Z, y, rcond=None)
    r2 = 1.0 - np.sum((y - Z @ beta) ** 2) / np.sum((y - y.mean()) ** 2)
    stats = res.fitstat()
    assert np.isclose(stats["r2"], r2)
    assert 0.0 < stats["wr2"] < stats["r2"]
    assert stats["n"] == len(panel)
    assert res.degrees_freedom("k") == 2 + 30
