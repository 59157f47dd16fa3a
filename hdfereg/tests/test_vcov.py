import pytest
import numpy as np
from hdfereg.core import vcov as vc

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(999)


@pytest.fixture
def design(rng):
    N = 300
    X = rng.standard_normal((N, 2))
    e = rng.standard_normal(N)
    bread = np.linalg.inv(X.T @ X)
    scores = X * e[:, None]
    a = rng.integers(0, 15, size=N)
    b = rng.integers(0, 10, size=N)
    return bread, scores, a, b


def _cluster_meat(scores, ids):
    out = np.zeros((scores.shape[1], scores.shape[1]))
    for g in np.unique(ids):
        s = scores[ids == g].sum(axis=0)
        out += np.outer(s, s)
    return out

# ---------------------------------------------------------------------
# Unit Tests: Raw sandwich terms
# ---------------------------------------------------------------------

def test_iid_is_scaled_bread(design):
    bread, scores, _a, _b = design
    raw = vc.raw_sandwich("iid", bread, scores, scale=2.5)
    assert raw.kind == "iid"
    assert np.allclose(raw.terms[0][2], 2.5 * bread)

def test_hetero_manual(design):
    bread, scores, _a, _b = design
    raw = vc.raw_sandwich("hetero", bread, scores)
    assert np.allclose(raw.terms[0][2], bread @ scores.T @ scores @ bread)
    assert raw.terms[0][1] == scores.shape[0]

def test_one_way_cluster_manual(design):
    bread, scores, a, _b = design
    raw = vc.raw_sandwich("cluster", bread, scores, clusters=[a])
    assert raw.n_clusters == (15,)
    assert np.allclose(raw.terms[0][2], bread @ _cluster_meat(scores, a) @ bread)

def test_two_way_inclusion_exclusion(design):
    bread, scores, a, b = design
    raw = vc.raw_sandwich("cluster", bread, scores, clusters={"a": a, "b": b})
    assert [t[0] for t in raw.terms] == [1, 1, -1]
    ab = a * 100 + b
    meat = _cluster_meat(scores, a) + _cluster_meat(scores, b) - _cluster_meat(scores, ab)
    res = vc.apply_ssc(raw, vc.ssc(adj=False, cluster_adj=False), psd=False)
    assert np.allclose(res.matrix, bread @ meat @ bread)
    assert res.cluster_names == ("a", "b")

def test_two_way_order_symmetry(design):
    bread, scores, a, b = design
    ab = vc.apply_ssc(vc.raw_sandwich("cluster", bread, scores, clusters=[a, b]))
    ba = vc.apply_ssc(vc.raw_sandwich("cluster", bread, scores, clusters=[b, a]))
    assert np.allclose(ab.matrix, ba.matrix)
    assert ab.df_t == ba.df_t == 9

def test_cluster_requires_ids(design):
    bread, scores, _a, _b = design
    with pytest.raises(ValueError):
        vc.raw_sandwich("cluster", bread, scores)
    with pytest.raises(ValueError):
        vc.raw_sandwich("robust-ish", bread, scores)

# ---------------------------------------------------------------------
# Unit Tests: Small-sample corrections
# ---------------------------------------------------------------------

def test_raw_terms_reused_across_policies(design):
    bread, scores, a, _b = design
    N = scores.shape[0]
    raw = vc.raw_sandwich("cluster", bread, scores, clusters=[a])
    plain = vc.apply_ssc(raw, vc.ssc(adj=False, cluster_adj=False))
    full = vc.apply_ssc(raw, vc.ssc(), fe_k={"nested": 5, "full": 5})
    factor = (N - 1) / (N - 2 - 5) * 15 / 14
    assert np.allclose(full.matrix, factor * plain.matrix)
    assert full.dof_k == 7
    assert plain.dof_k == 2

def test_fixef_k_options(design):
    bread, scores, _a, _b = design
    raw = vc.raw_sandwich("iid", bread, scores)
    counts = {"none": 0, "nested": 3, "full": 10}
    ks = {opt: vc.apply_ssc(raw, vc.ssc(fixef_k=opt), fe_k=counts).dof_k for opt in ("none", "nested", "full")}
    assert ks == {"none": 2, "nested": 5, "full": 12}

def test_hetero_uses_n_over_n_minus_one(design):
    bread, scores, _a, _b = design
    N = scores.shape[0]
    raw = vc.raw_sandwich("hetero", bread, scores)
    res = vc.apply_ssc(raw)
    assert np.isclose(res.correction, (N - 1) / (N - 2) * N / (N - 1))
    assert res.df_t == N - 2

def test_conventional_cluster_df(design):
    bread, scores, a, b = design
    raw = vc.raw_sandwich("cluster", bread, scores, clusters=[a, b])
    res = vc.apply_ssc(raw, vc.ssc(adj=False, cluster_df="conventional", t_df="conventional"), psd=False)
    G = [t[1] for t in raw.terms]
    expected = sum(s * M * g / (g - 1) for (s, _g, M), g in zip(raw.terms, G))
    assert np.allclose(res.matrix, expected)
    assert len(res.correction) == 3
    assert res.df_t == scores.shape[0] - 2

def test_ssc_validation():
    with pytest.raises(ValueError):
        vc.ssc(fixef_k="all")
    with pytest.raises(ValueError):
        vc.ssc(cluster_df="max")

def test_no_residual_degrees_of_freedom(design):
    bread, scores, _a, _b = design
    raw = vc.raw_sandwich("iid", bread, scores)
    with pytest.raises(ValueError):
        vc.apply_ssc(raw, fe_k={"nested": scores.shape[0], "full": scores.shape[0]})
