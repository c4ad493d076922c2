import os

import numpy as np
import pandas as pd
import pytest

import hsgaussian as hg
import hsprojpred as pp


class FakeReference:
    """Reference-model stand-in: fixed posterior draws of mu and sigma."""
    def __init__(self, X, y, mu, sigma, names):
        self.X = X
        self.y = y
        self.X_u = np.empty((len(y), 0))
        self.names = names
        self.unpenalized_names = []
        self.label = "fake reference"
        self._samples = {"mu": mu, "sigma": sigma}

    def get_samples(self, group_by_chain=False):
        return self._samples


@pytest.fixture(scope="module")
def reference():
    rng = np.random.default_rng(2)
    N, J, S = 60, 4, 200
    X = rng.standard_normal((N, J))
    beta_true = np.array([0.0, 2.0, 0.5, 0.0])
    y = 1.0 + X @ beta_true + rng.standard_normal(N)
    beta = beta_true + 0.1 * rng.standard_normal((S, J))
    intercept = 1.0 + 0.1 * rng.standard_normal(S)
    mu = intercept[:, None] + beta @ X.T
    sigma = 1.0 + 0.05 * np.abs(rng.standard_normal(S))
    return FakeReference(X, y, mu, sigma, ["x0", "x1", "x2", "x3"])


def _table(stat, diff, se):
    return pd.DataFrame({"size": np.arange(len(diff)),
                         f"{stat}_diff": diff, f"{stat}_diff_se": se})


def test_projection_exact_when_mean_in_span():
    rng = np.random.default_rng(0)
    Z = np.hstack([np.ones((30, 1)), rng.standard_normal((30, 2))])
    W_true = rng.standard_normal((5, 3))
    mu = W_true @ Z.T
    sigma = np.full(5, 0.7)
    W, sigma_perp, kl = pp._project_onto_submodel(mu, sigma, Z)
    assert np.allclose(W, W_true)
    assert np.allclose(sigma_perp, sigma)
    assert np.allclose(kl, 0.0)


def test_projection_inflates_sigma():
    rng = np.random.default_rng(0)
    x = rng.standard_normal(40)
    mu = np.vstack([1.0 + 2.0 * x, 1.0 + 1.5 * x])
    sigma = np.array([1.0, 1.0])
    W, sigma_perp, kl = pp._project_onto_submodel(mu, sigma, np.ones((40, 1)))
    assert np.allclose(W[:, 0], mu.mean(axis=1))
    expected = np.sqrt(1.0 + mu.var(axis=1))
    assert np.allclose(sigma_perp, expected)
    assert (kl > 0).all()


def test_cluster_reference_keeps_mean():
    rng = np.random.default_rng(3)
    mu = rng.standard_normal((50, 10))
    sigma = np.ones(50)
    labels = pp._cluster_labels(mu, 5, rng_seed=0)
    mu_c, sigma_c, w_c = pp._cluster_reference(mu, sigma, labels)
    assert np.isclose(w_c.sum(), 1.0)
    assert np.allclose(w_c @ mu_c, mu.mean(axis=0))
    assert (sigma_c >= 1.0).all()


def test_varsel_orders_by_signal(reference):
    vs = pp.varsel(reference, nclusters=10, ndraws_pred=100)
    assert vs.solution_terms[:2] == ["x1", "x2"]
    assert vs.cv_method is None
    assert list(vs.summary["size"]) == [0, 1, 2, 3, 4]
    assert vs.summary["solution_term"].iloc[0] is None
    kl = [vs.kl_null] + list(vs.kl_path)
    assert all(a >= b - 1e-12 for a, b in zip(kl, kl[1:]))


def test_varsel_rejects_unknown_method(reference):
    with pytest.raises(ValueError):
        pp.varsel(reference, method="L1")
    with pytest.raises(ValueError):
        pp.cv_varsel(reference, cv_method="bootstrap")


def test_cv_varsel_loo(reference):
    with pytest.warns(UserWarning, match="capping"):
        vs = pp.cv_varsel(reference, cv_method="LOO", nterms_max=6,
                          nclusters=10, ndraws_pred=100)
    assert vs.nterms_max == 4
    assert vs.solution_terms[0] == "x1"
    assert len(vs.cv_paths) == len(reference.y)
    table = vs.summary
    # adding the strong covariate improves LOO performance
    assert table["elpd"].iloc[1] > table["elpd"].iloc[0]
    assert table["rmse"].iloc[1] < table["rmse"].iloc[0]
    assert np.isclose(vs.reference_stats["rmse"] ** 2, vs.reference_stats["mse"])
    size = pp.suggest_size(vs)
    assert size is not None and size >= 1

    props = pp.cv_proportions(vs)
    assert props.shape == (4, 4)
    assert np.allclose(props.sum(axis=1), 1.0)
    assert props.loc[1, "x1"] > 0.9
    cum = pp.cv_proportions(vs, cumulate=True)
    assert np.allclose(cum.iloc[-1], 1.0)


def test_cv_varsel_without_validated_search(reference):
    vs = pp.cv_varsel(reference, validate_search=False, nclusters=10,
                      ndraws_pred=100)
    assert vs.cv_paths is None
    with pytest.raises(ValueError):
        pp.cv_proportions(vs)


def test_suggest_size_reference_level():
    vs = pp.VarselResult(_table("elpd", [-20.0, -5.0, -0.5, 0.1],
                                [4.0, 3.0, 1.0, 0.5]), ["a", "b", "c"])
    assert pp.suggest_size(vs) == 2
    # a wider interval (smaller alpha) reaches the reference earlier
    assert pp.suggest_size(vs, alpha=0.01) == 1


def test_suggest_size_zero_when_nothing_helps():
    vs = pp.VarselResult(_table("elpd", [-0.3, -0.2, -0.4], [1.0, 1.0, 1.0]),
                         ["a", "b"])
    assert pp.suggest_size(vs) == 0


def test_suggest_size_pct_relaxes_threshold():
    vs = pp.VarselResult(_table("elpd", [-20.0, -3.0, -2.5], [0.5, 0.5, 0.5]),
                         ["a", "b"])
    with pytest.warns(UserWarning):
        assert pp.suggest_size(vs) is None
    assert pp.suggest_size(vs, pct=0.2) == 1


def test_suggest_size_lower_is_better():
    vs = pp.VarselResult(_table("rmse", [3.0, 1.0, 0.1], [0.5, 0.5, 0.5]),
                         ["a", "b"])
    assert pp.suggest_size(vs, stat="rmse") == 2
    with pytest.raises(ValueError):
        pp.suggest_size(vs, stat="auc")


def test_project_and_linpred(reference):
    vs = pp.varsel(reference, nclusters=10, ndraws_pred=100)
    proj = pp.project(vs, nterms=1, ndraws=100)
    assert list(proj.draws.columns) == ["Intercept", "x1", "sigma"]
    assert len(proj.draws) == 100
    assert abs(proj.draws["x1"].mean() - 2.0) < 0.3
    # dropped covariates inflate the projected noise
    assert (proj.draws["sigma"] > 1.0).all()

    summary = proj.summary()
    assert list(summary["parameter"]) == ["Intercept", "x1", "sigma"]

    X_new = reference.X[:7]
    eta = pp.proj_linpred(proj, None, X_new)
    assert eta.shape == (100, 7)
    W = proj.coefficients()
    assert np.allclose(eta[0], W[0, 0] + W[0, 1] * X_new[:, 1])


def test_project_explicit_terms(reference):
    vs = pp.varsel(reference, nclusters=10, ndraws_pred=100)
    proj = pp.project(vs, solution_terms=["x3", "x1"], ndraws=50)
    assert proj.terms == ["x3", "x1"]
    assert proj.nterms == 2
    with pytest.raises(ValueError):
        pp.project(vs, solution_terms=["nope"])
    with pytest.raises(ValueError):
        pp.project(vs, nterms=9)


def test_plot_varsel_and_projection(reference, tmp_path):
    vs = pp.varsel(reference, nclusters=10, ndraws_pred=100)
    out = pp.plot_varsel(vs, str(tmp_path / "fake"))
    assert out.endswith("fake_varsel.pdf") and os.path.exists(out)
    out = pp.plot_varsel(vs, str(tmp_path / "fake_delta"), deltas=True)
    assert os.path.exists(out)
    proj = pp.project(vs, nterms=2, ndraws=50)
    out = pp.plot_projection(proj, str(tmp_path / "fake"))
    assert out.endswith("fake_projected.pdf") and os.path.exists(out)


@pytest.fixture(scope="module")
def mcmc_reference(fast):
    rng = np.random.default_rng(4)
    N = 40
    X = rng.standard_normal((N, 3))
    y = 3.0 * X[:, 0] + rng.standard_normal(N)
    return hg.fit(None, X, y, prior="horseshoe", names=["a", "b", "c"],
                  rng_seed=1, **fast)


def test_cv_varsel_on_mcmc_fit(mcmc_reference):
    vs = pp.cv_varsel(mcmc_reference, nclusters=10, ndraws_pred=100)
    assert vs.solution_terms[0] == "a"
    size = pp.suggest_size(vs)
    assert size is not None and size >= 1
    proj = pp.project(vs, nterms=1, ndraws=100)
    assert abs(proj.draws["a"].mean() - 3.0) < 0.6


def test_cv_varsel_kfold(mcmc_reference):
    vs = pp.cv_varsel(mcmc_reference, cv_method="kfold", K=2, nclusters=10,
                      ndraws_pred=100, max_workers=1)
    assert vs.cv_method == "kfold"
    assert len(vs.cv_paths) == 2
    assert all(p[0] == 0 for p in vs.cv_paths)
    table = vs.summary
    assert np.isfinite(table["elpd"]).all()
    assert table["elpd"].iloc[1] > table["elpd"].iloc[0]


def test_available_memory_from_meminfo(tmp_path):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal:       8000 kB\nMemAvailable:   2048 kB\n")
    assert pp._get_available_memory_bytes(str(meminfo)) == 2048 * 1024
    meminfo.write_text("MemTotal:       8000 kB\n")
    assert pp._get_available_memory_bytes(str(meminfo)) is None
    assert pp._get_available_memory_bytes(str(tmp_path / "missing")) is None


@pytest.fixture(scope="module")
def noise_reference():
    rng = np.random.RandomState(0)
    N = 85
    X = rng.standard_normal((N, 5))
    y = rng.standard_normal(N)
    return hg.fit(None, X, y, prior="horseshoe",
                  names=["a", "b", "c", "d", "e"], rng_seed=0,
                  num_warmup=500, num_samples=500, num_chains=2,
                  chain_method="sequential", progress_bar=False,
                  print_summary=False)


def test_noise_target_selects_nothing(noise_reference):
    vs = pp.cv_varsel(noise_reference, nclusters=10, ndraws_pred=200)
    assert pp.suggest_size(vs) == 0

    proj = pp.project(vs, nterms=0, ndraws=200)
    assert list(proj.draws.columns) == ["Intercept", "sigma"]
    assert abs(proj.draws["Intercept"].mean()) < 0.3
    assert abs(proj.draws["sigma"].mean() - 1.0) < 0.3
