import dataclasses

import pytest
import numpy as np
import hdfereg
from hdfereg.core import config as cfg_mod

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _restore_defaults():
    yield
    cfg_mod.reset_defaults()

# ---------------------------------------------------------------------
# Unit Tests: EstimationConfig
# ---------------------------------------------------------------------

def test_config_is_frozen():
    cfg = cfg_mod.EstimationConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.fixef_tol = 1e-3

def test_invalid_values_raise():
    with pytest.raises(ValueError):
        cfg_mod.EstimationConfig(fixef_tol=0.0)
    with pytest.raises(ValueError):
        cfg_mod.EstimationConfig(fixef_rm="sometimes")
    with pytest.raises(ValueError):
        cfg_mod.EstimationConfig(glm_iter=0)

def test_with_options_copies():
    base = cfg_mod.EstimationConfig()
    new = base.with_options(glm_iter=50)
    assert new.glm_iter == 50
    assert base.glm_iter == 25
    with pytest.raises(TypeError):
        base.with_options(tolerance=1.0)

# ---------------------------------------------------------------------
# Unit Tests: Process defaults
# ---------------------------------------------------------------------

def test_set_get_reset_defaults():
    before = cfg_mod.get_defaults()
    after = hdfereg.set_defaults(fixef_tol=1e-6, n_threads=2)
    assert hdfereg.get_defaults() is after
    assert after.fixef_tol == 1e-6 and after.n_threads == 2
    # the old value is untouched
    assert before.fixef_tol == 1e-8
    assert hdfereg.reset_defaults() == cfg_mod.EstimationConfig()

def test_unknown_default_raises():
    with pytest.raises(TypeError):
        cfg_mod.set_defaults(bogus=1)

def test_resolve_config_ignores_none():
    base = cfg_mod.EstimationConfig(glm_tol=1e-6)
    assert cfg_mod.resolve_config(base, glm_iter=None) is base
    assert cfg_mod.resolve_config(None) is cfg_mod.get_defaults()
    assert cfg_mod.resolve_config(base, glm_iter=7).glm_iter == 7

def test_defaults_reach_estimators():
    rng = np.random.default_rng(999)
    g = np.repeat(np.arange(5), 10)
    x = rng.standard_normal(50)
    y = x + rng.standard_normal(50)
    hdfereg.set_defaults(fixef_rm="singleton")
    res = hdfereg.feols(y, x, [g])
    assert res.config.fixef_rm == "singleton"
    res = hdfereg.feols(y, x, [g], fixef_rm="none")
    assert res.config.fixef_rm == "none"
