import os

import numpy as np
import pandas as pd
import pytest

import hsanalysis as ha
import hsgaussian as hg


def _small_data(signal, seed):
    rng = np.random.default_rng(seed)
    N = 40
    X = rng.standard_normal((N, 3))
    df = pd.DataFrame(X, columns=["a", "b", "c"])
    df["y"] = signal * X[:, 1] + rng.standard_normal(N)
    return df


def test_run_analysis_with_signal(tmp_path, fast):
    df = _small_data(signal=2.5, seed=0)
    stem = str(tmp_path / "signal")
    kwargs = {k: v for k, v in fast.items() if k != "print_summary"}
    out = ha.run_analysis(df, "y", ["a", "b", "c"], stem, force_selection=True,
                          nclusters=10, ndraws_pred=100, ndraws_project=100,
                          **kwargs)
    assert "error" not in out
    assert set(out["fits"]) == {"full", "intercept_only", "horseshoe"}
    assert out["informative"]
    diff, se = out["elpd_diff"]
    assert diff - se > 0
    assert out["top_coefficient"] == "b"
    assert out["varsel"].solution_terms[0] == "b"
    assert out["suggested_size"] >= 1
    assert "b" in out["projection"].terms

    for suffix in ["_full_summary.csv", "_horseshoe_summary.csv",
                   "_intercept_only_summary.csv", "_full_forest.pdf",
                   "_horseshoe_forest.pdf", "_logtau_logeta.pdf",
                   "_varsel.pdf", "_projected.pdf"]:
        assert os.path.exists(stem + suffix), suffix


def test_run_analysis_skips_selection_on_noise(tmp_path, fast):
    df = _small_data(signal=0.0, seed=1)
    kwargs = {k: v for k, v in fast.items() if k != "print_summary"}
    out = ha.run_analysis(df, "y", ["a", "b", "c"], str(tmp_path / "noise"),
                          z=5.0, plots=False, **kwargs)
    assert not out["informative"]
    assert out["varsel"] is None
    assert out["suggested_size"] is None
    assert out["projection"] is None


def test_largest_clear_coefficient(fast):
    df = _small_data(signal=2.5, seed=2)
    d = hg.design_matrix(df, "y", ["a", "b", "c"])
    fit = hg.fit(None, d["X"], d["y"], names=d["names"], **fast)
    assert ha.largest_clear_coefficient(fit) == "b"
    null = hg.fit(None, d["X"][:, :0], d["y"], names=[], **fast)
    assert ha.largest_clear_coefficient(null) is None


def test_run_analysis_selects_despite_nonconvergence(tmp_path):
    df = _small_data(signal=2.5, seed=3)
    # 2 x 30 draws cannot reach the default ESS threshold of 100 per chain
    out = ha.run_analysis(df, formula="y ~ .", filestem=str(tmp_path / "short"),
                          num_warmup=300, num_samples=30, num_chains=2,
                          chain_method="sequential", progress_bar=False,
                          nclusters=10, ndraws_pred=60, ndraws_project=60,
                          plots=False)
    assert out["covariate_cols"] == ["a", "b", "c"]
    assert out["converged"] is False
    assert out["informative"]
    assert out["varsel"] is not None
    assert out["suggested_size"] >= 1
    assert out["projection"] is not None


def test_run_analysis_needs_covariates():
    df = _small_data(signal=1.0, seed=4)
    with pytest.raises(ValueError):
        ha.run_analysis(df, formula="y ~ 1")
    with pytest.raises(ValueError):
        ha.run_analysis(df, "y")
