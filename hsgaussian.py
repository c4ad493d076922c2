import os
import re
import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az

import jax
import jax.numpy as jnp
import numpyro as npyr
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS, Predictive
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

# Ensure tqdm can detect a terminal width in non-TTY environments
# (cloud notebooks, piped output) so progress bars update in-place.
os.environ.setdefault("COLUMNS", "120")

__all__ = [
    "normal_glm", "hs_glm", "GLMFit",
    "parse_formula", "design_matrix", "default_scale_global",
    "fit", "predict", "coefficient_draws",
    "check_convergence", "summary_report",
    "loo", "compare", "elpd_diff", "covariates_informative",
    "plot_forest", "plot_pair_diagnostic",
]

PRIORS = ("normal", "horseshoe")


def _intercept_and_unpenalized(X_u, N, y_loc, y_scale):
    """Sample the intercept and unpenalized coefficients; return their linear predictor."""
    U = X_u.shape[1]
    intercept = npyr.sample("intercept", dist.Normal(y_loc, 2.5 * y_scale))
    eta_u = intercept * jnp.ones(N)
    if U > 0:
        with npyr.plate("U unpenalized covariates", U):
            beta_u = npyr.sample("beta_u", dist.Normal(0, 2.5 * y_scale))
        eta_u = eta_u + jnp.dot(X_u, beta_u)
    return eta_u


def normal_glm(X_u=None, X=None, y=None, y_loc=0.0, y_scale=1.0):
    """NumPyro model for Gaussian linear regression with weakly informative priors.

    The priors are the autoscaled defaults used by rstanarm for
    standardized covariates: Normal(mean(y), 2.5 sd(y)) on the intercept,
    Normal(0, 2.5 sd(y)) on every coefficient and Exponential(1 / sd(y))
    on the residual scale.  ``X`` may have zero columns, which gives the
    intercept-only model.

    Parameters
    ----------
    X_u : ndarray (N, U)
        Unpenalized covariates (no intercept column).
    X : ndarray (N, J)
        Covariates of interest.
    y : ndarray (N,) or None
        Outcome.  None when sampling from the predictive.
    y_loc, y_scale : float
        Mean and standard deviation of the observed outcome.
    """
    N = X.shape[0]
    J = X.shape[1]
    mu = _intercept_and_unpenalized(X_u, N, y_loc, y_scale)
    if J > 0:
        with npyr.plate("J covariates", J):
            beta = npyr.sample("beta", dist.Normal(0, 2.5 * y_scale))
        mu = mu + jnp.dot(X, beta)
    sigma = npyr.sample("sigma", dist.Exponential(1.0 / y_scale))
    mu = npyr.deterministic("mu", mu)
    with npyr.plate("N observations", N):
        npyr.sample("y", dist.Normal(mu, sigma), obs=y)


def hs_glm(X_u=None, X=None, y=None, y_loc=0.0, y_scale=1.0,
           slab_scale=2.5, slab_df=4.0, scale_global=1.0):
    """NumPyro model for Gaussian linear regression with regularized horseshoe prior.

    Intercept and unpenalized coefficients receive the same priors as in
    :func:`normal_glm`.  The coefficients in ``X`` receive a regularized
    horseshoe prior (Piironen & Vehtari 2017) whose global scale is
    ``scale_global * sigma``, so that ``scale_global`` is expressed
    relative to the noise level.

    Parameters
    ----------
    X_u : ndarray (N, U)
        Unpenalized covariates.
    X : ndarray (N, J)
        Penalized covariates, J >= 1.
    y : ndarray (N,) or None
        Outcome.
    y_loc, y_scale : float
        Mean and standard deviation of the observed outcome.
    slab_scale : float
        Scale of the regularizing slab, in units of sd(y).
    slab_df : float
        Degrees of freedom for the slab inverse-gamma prior.
    scale_global : float
        Global shrinkage scale relative to sigma; controls sparsity.
    """
    nu_local = 1.
    nu_global = 1.
    N = X.shape[0]
    J = X.shape[1]
    mu = _intercept_and_unpenalized(X_u, N, y_loc, y_scale)
    sigma = npyr.sample("sigma", dist.Exponential(1.0 / y_scale))

    aux1_global = npyr.sample("aux1_global", dist.HalfNormal(1.0))
    aux2_global = npyr.sample("aux2_global", dist.InverseGamma(0.5 * nu_global, 0.5 * nu_global))
    τ = npyr.deterministic("tau", aux1_global * jnp.sqrt(aux2_global) * scale_global * sigma)
    caux = npyr.sample("caux", dist.InverseGamma(0.5 * slab_df, 0.5 * slab_df))
    eta = npyr.deterministic("eta", slab_scale * y_scale * jnp.sqrt(caux))
    npyr.deterministic("log_tau", jnp.log(τ))
    npyr.deterministic("log_eta", jnp.log(eta))
    with npyr.plate("J penalized covariates", J):
        z = npyr.sample("z", dist.Normal(0, 1.0))
        aux1_local = npyr.sample("aux1_local", dist.HalfNormal(1.0))
        aux2_local = npyr.sample("aux2_local", dist.InverseGamma(0.5 * nu_local, 0.5 * nu_local))
        lambda_raw = jnp.multiply(aux1_local, jnp.sqrt(aux2_local))
        lambda_tilde = jnp.sqrt(jnp.divide(eta**2 * jnp.square(lambda_raw),
                                           eta**2 + τ**2 * jnp.square(lambda_raw)))
        beta = npyr.deterministic("beta", jnp.multiply(z, lambda_tilde * τ))
    mu = npyr.deterministic("mu", mu + jnp.dot(X, beta))
    with npyr.plate("N observations", N):
        npyr.sample("y", dist.Normal(mu, sigma), obs=y)


class GLMFit:
    """Fitted Gaussian linear model: the NumPyro MCMC plus the data it saw.

    Has the same ``get_samples`` interface as ``MCMC``.  The design,
    prior hyperparameters and sampler settings are kept so that the model
    can be refitted on a subset (K-fold) or projected onto submodels.
    """
    def __init__(self, mcmc, X_u, X, y, prior, prior_kwargs, fit_kwargs,
                 names=None, unpenalized_names=None, label=None):
        self.mcmc = mcmc
        self.X_u = np.asarray(X_u, dtype=np.float64)
        self.X = np.asarray(X, dtype=np.float64)
        self.y = np.asarray(y, dtype=np.float64)
        self.prior = prior
        self.prior_kwargs = prior_kwargs
        self.fit_kwargs = fit_kwargs
        J = self.X.shape[1]
        U = self.X_u.shape[1]
        self.names = list(names) if names is not None else [f"x{j}" for j in range(J)]
        self.unpenalized_names = (list(unpenalized_names) if unpenalized_names is not None
                                  else [f"u{i}" for i in range(U)])
        self.label = label if label is not None else f"{prior} prior"
        self._idata = None

    @property
    def model(self):
        return hs_glm if self.prior == "horseshoe" else normal_glm

    @property
    def num_chains(self):
        return self.mcmc.num_chains

    def get_samples(self, group_by_chain=False):
        return self.mcmc.get_samples(group_by_chain=group_by_chain)

    @property
    def idata(self):
        """ArviZ InferenceData including the pointwise log-likelihood."""
        if self._idata is None:
            self._idata = az.from_numpyro(self.mcmc, log_likelihood=True)
        return self._idata

    def __repr__(self):
        return (f"GLMFit({self.label!r}, N={len(self.y)}, "
                f"U={self.X_u.shape[1]}, J={self.X.shape[1]})")


def _as_columns(a, N):
    """Float array of shape (N, k); a 1-D input becomes a single column."""
    a = np.asarray(a, dtype=np.float64)
    if a.ndim == 1:
        a = a[:, None]
    if a.shape[0] != N:
        raise ValueError(f"expected {N} rows, got {a.shape[0]}")
    return a


def parse_formula(formula, df):
    """Split an R-style formula into outcome and covariate column names.

    Supports ``"y ~ ."`` (all other columns), ``"y ~ 1"`` (intercept
    only) and ``"y ~ a + b"``.

    Returns
    -------
    y_col : str
    covariate_cols : list of str
    """
    parts = formula.split("~")
    if len(parts) != 2:
        raise ValueError(f"formula must contain exactly one '~': {formula!r}")
    y_col = parts[0].strip()
    rhs = parts[1].strip()
    if y_col not in df.columns:
        raise ValueError(f"outcome column '{y_col}' not in data")
    if rhs == ".":
        return y_col, [c for c in df.columns if c != y_col]
    terms = [t.strip() for t in re.split(r"\+", rhs) if t.strip()]
    if terms == ["1"]:
        return y_col, []
    terms = [t for t in terms if t != "1"]
    unknown = [t for t in terms if t not in df.columns]
    if unknown:
        raise ValueError(f"formula terms not in data: {unknown}")
    return y_col, terms


def design_matrix(df, y_col, covariate_cols, unpenalized_cols=(), standardize=True):
    """Extract outcome and design arrays from a DataFrame.

    Rows with missing values in any used column are dropped.  When
    *standardize* is True, every covariate is centred and scaled to unit
    variance; constant columns are only centred.

    Returns
    -------
    dict
        Keys ``y``, ``X_u``, ``X``, ``names``, ``unpenalized_names``,
        ``X_mean``, ``X_std``, ``index``.
    """
    covariate_cols = list(covariate_cols)
    unpenalized_cols = list(unpenalized_cols)
    used_cols = [y_col] + unpenalized_cols + covariate_cols
    N_before = len(df)
    df = df[used_cols].dropna()
    if len(df) < N_before:
        print(f"Dropped {N_before - len(df)} rows with missing values "
              f"({N_before} -> {len(df)})")

    y = df[y_col].to_numpy(dtype=np.float64)
    X = df[covariate_cols].to_numpy(dtype=np.float64).reshape(len(df), len(covariate_cols))
    X_u = df[unpenalized_cols].to_numpy(dtype=np.float64).reshape(len(df), len(unpenalized_cols))

    X_mean = np.zeros(X.shape[1])
    X_std = np.ones(X.shape[1])
    if standardize:
        if X.shape[1] > 0:
            X_mean = X.mean(axis=0)
            X_std = X.std(axis=0)
            X_std[X_std == 0] = 1.0
            X = (X - X_mean) / X_std
        if X_u.shape[1] > 0:
            U_std = X_u.std(axis=0)
            U_std[U_std == 0] = 1.0
            X_u = (X_u - X_u.mean(axis=0)) / U_std

    return {"y": y, "X_u": X_u, "X": X,
            "names": covariate_cols, "unpenalized_names": unpenalized_cols,
            "X_mean": X_mean, "X_std": X_std, "index": df.index}


def default_scale_global(N, J, p0=None):
    """Global scale p0 / (J - p0) / sqrt(N) for the horseshoe (relative to sigma).

    *p0* is the prior guess for the number of relevant covariates and
    defaults to ``max(1, J // 4)``.
    """
    if p0 is None:
        p0 = max(1, J // 4)
    if p0 >= J:
        raise ValueError(f"p0={p0} must be smaller than the number of covariates J={J}")
    return p0 / (J - p0) / np.sqrt(N)


def fit(X_u, X, y, prior="normal", slab_scale=2.5, slab_df=4.0, scale_global=None,
        num_warmup=1000, num_samples=1000, num_chains=4,
        target_accept_prob=0.95, max_tree_depth=12, rng_seed=0,
        chain_method="parallel", progress_bar=True, print_summary=True,
        names=None, unpenalized_names=None, label=None):
    """Fit a Gaussian linear model via NUTS.

    Parameters
    ----------
    X_u : array (N, U) or None
        Unpenalized covariates; None for none.
    X : array (N, J)
        Covariates of interest; J may be 0 with the normal prior.
    y : array (N,)
        Outcome.
    prior : {"normal", "horseshoe"}
        Weakly informative normal prior or regularized horseshoe.
    slab_scale, slab_df : float
        Horseshoe slab settings (ignored for the normal prior).
    scale_global : float or None
        Horseshoe global scale relative to sigma.  None uses
        :func:`default_scale_global`.
    num_warmup, num_samples, num_chains : int
        MCMC settings (per chain).
    target_accept_prob : float
        NUTS target acceptance probability.
    max_tree_depth : int
        NUTS maximum tree depth.
    rng_seed : int
        Random seed.  The same seed gives identical draws.
    chain_method : {"parallel", "sequential", "vectorized"}
        How NumPyro runs the chains.  Parallel chains need
        ``numpyro.set_host_device_count`` to be called before JAX starts.
    progress_bar : bool
        Show the NumPyro progress bar.
    print_summary : bool
        If True, print the NumPyro summary table to stdout.
    names, unpenalized_names : list of str, optional
        Display names for the columns of X and X_u.
    label : str, optional
        Short description used in printed reports.

    Returns
    -------
    GLMFit
    """
    y = np.asarray(y, dtype=np.float64)
    N = len(y)
    X = _as_columns(X, N)
    X_u = np.empty((N, 0)) if X_u is None else _as_columns(X_u, N)
    for name, arr in [("X_u", X_u), ("X", X), ("y", y)]:
        if not np.all(np.isfinite(arr)):
            n_bad = int((~np.isfinite(arr)).sum())
            raise ValueError(
                f"{name} contains {n_bad} non-finite values (NaN/Inf). "
                f"Clean the data before fitting.")
    if prior not in PRIORS:
        raise ValueError(f"Unknown prior: {prior!r}. Use 'normal' or 'horseshoe'.")
    y_scale = float(np.std(y, ddof=1)) if N > 1 else 0.0
    if not y_scale > 0:
        raise ValueError("y must have positive standard deviation")
    prior_kwargs = dict(y_loc=float(np.mean(y)), y_scale=y_scale)

    J = X.shape[1]
    if prior == "horseshoe":
        if J == 0:
            raise ValueError("The horseshoe prior needs at least one penalized covariate")
        if scale_global is None:
            scale_global = default_scale_global(N, J)
        prior_kwargs.update(slab_scale=slab_scale, slab_df=slab_df,
                            scale_global=float(scale_global))
        model = hs_glm
    else:
        model = normal_glm

    kernel = NUTS(
        model,
        target_accept_prob=target_accept_prob,
        max_tree_depth=max_tree_depth,
    )
    mcmc = MCMC(
        kernel,
        num_warmup=num_warmup,
        num_samples=num_samples,
        num_chains=num_chains,
        chain_method=chain_method,
        progress_bar=progress_bar,
    )
    mcmc.run(jax.random.PRNGKey(rng_seed),
             X_u=jnp.asarray(X_u), X=jnp.asarray(X), y=jnp.asarray(y),
             **prior_kwargs)
    if print_summary:
        mcmc.print_summary()

    fit_kwargs = dict(prior=prior, slab_scale=slab_scale, slab_df=slab_df,
                      scale_global=scale_global, num_warmup=num_warmup,
                      num_samples=num_samples, num_chains=num_chains,
                      target_accept_prob=target_accept_prob,
                      max_tree_depth=max_tree_depth, rng_seed=rng_seed,
                      chain_method=chain_method)
    return GLMFit(mcmc, X_u, X, y, prior, prior_kwargs, fit_kwargs,
                  names=names, unpenalized_names=unpenalized_names, label=label)


def predict(result, X_u_new, X_new, rng_seed=1):
    """Posterior draws of the mean outcome for new observations.

    Parameters
    ----------
    result : GLMFit
        Fitted model returned by :func:`fit`.
    X_u_new : array (N_new, U)
        Unpenalized covariates for the new rows (same scaling as in the fit).
    X_new : array (N_new, J)
        Covariates of interest for the new rows.
    rng_seed : int
        Random seed for the predictive.

    Returns
    -------
    ndarray (S, N_new)
        Linear predictor, one row per posterior sample.
    """
    X_new = np.asarray(X_new, dtype=np.float64)
    N_new = X_new.shape[0]
    X_new = _as_columns(X_new, N_new)
    X_u_new = (np.empty((N_new, 0)) if X_u_new is None
               else _as_columns(X_u_new, N_new))
    predictive = Predictive(
        result.model,
        posterior_samples=result.get_samples(),
        return_sites=["mu"],
        exclude_deterministic=True,
    )
    preds = predictive(
        jax.random.PRNGKey(rng_seed),
        X_u=jnp.asarray(X_u_new), X=jnp.asarray(X_new), y=None,
        **result.prior_kwargs,
    )
    return np.asarray(preds["mu"])


def coefficient_draws(result):
    """Posterior draws of all covariate coefficients as an (S, U + J) array plus names."""
    samples = result.get_samples()
    blocks = []
    names = []
    if "beta_u" in samples:
        blocks.append(np.asarray(samples["beta_u"]))
        names += list(result.unpenalized_names)
    if "beta" in samples:
        blocks.append(np.asarray(samples["beta"]))
        names += list(result.names)
    if not blocks:
        S = np.asarray(samples["intercept"]).shape[0]
        return np.empty((S, 0)), names
    return np.hstack(blocks), names


def _parameter_chains(result, chain_samples, hyper=False):
    """(name, draws with shape (chains, samples)) for each reported parameter."""
    out = [("Intercept", chain_samples["intercept"])]
    beta_u = chain_samples.get("beta_u")
    if beta_u is not None:
        for i, name in enumerate(result.unpenalized_names):
            out.append((name, beta_u[..., i]))
    beta = chain_samples.get("beta")
    if beta is not None:
        for j, name in enumerate(result.names):
            out.append((name, beta[..., j]))
    out.append(("sigma", chain_samples["sigma"]))
    if hyper and "tau" in chain_samples:
        out.append(("tau", chain_samples["tau"]))
        out.append(("eta", chain_samples["eta"]))
    return out


def _summary_row(name, x_chain, kappa_val=None):
    x_chain = np.asarray(x_chain, dtype=np.float64)
    x_flat = x_chain.reshape(-1)
    return {
        "parameter": name,
        "kappa": kappa_val if kappa_val is not None else "",
        "mean": float(np.mean(x_flat)),
        "sd": float(np.std(x_flat)),
        "q0.05": float(np.percentile(x_flat, 5)),
        "q0.50": float(np.percentile(x_flat, 50)),
        "q0.95": float(np.percentile(x_flat, 95)),
        "n_eff": float(effective_sample_size(x_chain)),
        "r_hat": float(split_gelman_rubin(x_chain)),
    }


def _shrinkage_factors(chain_samples, N):
    """Horseshoe shrinkage factors kappa_j, shape (chains, samples, J).

    For standardized covariates kappa_j = 1 / (1 + N tau^2 lambda_j^2 / sigma^2),
    with lambda_j the slab-regularized local scale.
    """
    tau_ch = np.asarray(chain_samples["tau"])[..., None]
    eta_ch = np.asarray(chain_samples["eta"])[..., None]
    sigma_ch = np.asarray(chain_samples["sigma"])[..., None]
    lam_raw = (np.asarray(chain_samples["aux1_local"])
               * np.sqrt(np.asarray(chain_samples["aux2_local"])))
    lam_sq = ((eta_ch ** 2 * lam_raw ** 2)
              / (eta_ch ** 2 + tau_ch ** 2 * lam_raw ** 2))
    return 1.0 / (1.0 + N * (tau_ch / sigma_ch) ** 2 * lam_sq)


def check_convergence(result, rhat_max=1.01, ess_min=None):
    """Sampler convergence diagnostics for a fitted model.

    Counts divergent transitions and computes split R-hat and effective
    sample size for the intercept, every coefficient, sigma and (for the
    horseshoe) tau and eta.  Problems are printed and issued as warnings;
    nothing is raised and nothing is re-run.

    Parameters
    ----------
    result : GLMFit
        Fitted model.
    rhat_max : float
        Largest acceptable split R-hat.
    ess_min : float or None
        Smallest acceptable effective sample size.  Defaults to 100 per chain.

    Returns
    -------
    dict
        Keys ``n_divergent``, ``max_r_hat``, ``min_n_eff``, ``converged``,
        ``problems``, ``table``.
    """
    if ess_min is None:
        ess_min = 100 * result.num_chains
    chain_samples = result.get_samples(group_by_chain=True)
    rows = [_summary_row(name, x)
            for name, x in _parameter_chains(result, chain_samples, hyper=True)]
    table = pd.DataFrame(rows).drop(columns="kappa")

    diverging = result.mcmc.get_extra_fields().get("diverging")
    n_divergent = int(np.sum(np.asarray(diverging))) if diverging is not None else 0
    max_r_hat = float(table["r_hat"].max())
    min_n_eff = float(table["n_eff"].min())

    problems = []
    if n_divergent > 0:
        problems.append(f"{n_divergent} divergent transitions")
    if not max_r_hat <= rhat_max:
        worst = table.loc[table["r_hat"].idxmax(), "parameter"]
        problems.append(f"max r_hat {max_r_hat:.3f} > {rhat_max} ({worst})")
    if not min_n_eff >= ess_min:
        worst = table.loc[table["n_eff"].idxmin(), "parameter"]
        problems.append(f"min n_eff {min_n_eff:.0f} < {ess_min:.0f} ({worst})")

    print(f"\nConvergence ({result.label}):")
    print(f"  Divergent transitions = {n_divergent}")
    print(f"  Max r_hat             = {max_r_hat:.3f}")
    print(f"  Min n_eff             = {min_n_eff:.0f}")
    for p in problems:
        warnings.warn(f"{result.label}: {p}")
    if problems:
        print("  Not converged: do not interpret this fit.")

    return {"n_divergent": n_divergent, "max_r_hat": max_r_hat,
            "min_n_eff": min_n_eff, "converged": not problems,
            "problems": problems, "table": table}


def summary_report(result, filepath=None):
    """Posterior interval summary per parameter, optionally saved to CSV.

    Rows cover the intercept, every coefficient and sigma.  For the
    horseshoe fit, tau and the effective number of nonzero coefficients
    ``m_eff`` are added and each coefficient carries its posterior mean
    shrinkage factor ``kappa``.

    Parameters
    ----------
    result : GLMFit
        Fitted model.
    filepath : str, optional
        Path for the output CSV.

    Returns
    -------
    DataFrame
    """
    chain_samples = result.get_samples(group_by_chain=True)
    kappa_mean = None
    rows = []
    if result.prior == "horseshoe":
        kappa_all = _shrinkage_factors(chain_samples, len(result.y))
        kappa_mean = kappa_all.reshape(-1, kappa_all.shape[-1]).mean(axis=0)
        m_eff_chain = (1.0 - kappa_all).sum(axis=-1)
        rows += [_summary_row("tau", chain_samples["tau"]),
                 _summary_row("m_eff", m_eff_chain)]

    beta_names = set(result.names)
    for name, x_chain in _parameter_chains(result, chain_samples):
        kappa_val = None
        if kappa_mean is not None and name in beta_names:
            kappa_val = round(float(kappa_mean[result.names.index(name)]), 4)
        rows.append(_summary_row(name, x_chain, kappa_val=kappa_val))

    df = pd.DataFrame(rows)
    if kappa_mean is None:
        df = df.drop(columns="kappa")
    print(f"\nPosterior summary ({result.label}):")
    try:
        from IPython.display import display
        display(df)
    except ImportError:
        print(df.to_string(index=False, float_format="{:.3f}".format))
    if filepath is not None:
        df.to_csv(filepath, index=False, float_format="%.4f")
        print(f"Summary saved to {filepath}")
    return df


def loo(result):
    """PSIS leave-one-out expected log predictive density.

    This is an importance-sampling approximation, not a refit per
    observation.  Observations whose Pareto shape k exceeds 0.7 have
    unreliable importance weights and are reported.

    Returns
    -------
    ELPDData
        ArviZ result with ``elpd_loo``, ``se``, ``p_loo`` and pointwise
        ``loo_i`` and ``pareto_k``.
    """
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="Estimated shape parameter of Pareto")
        elpd = az.loo(result.idata, pointwise=True)
    pareto_k = np.asarray(elpd.pareto_k)
    bad = np.flatnonzero(pareto_k > 0.7)
    print(f"\nLOO ({result.label}): elpd_loo = {float(elpd.elpd_loo):.2f} "
          f"(se {float(elpd.se):.2f}), p_loo = {float(elpd.p_loo):.2f}")
    if len(bad) > 0:
        msg = (f"{result.label}: {len(bad)} observations with Pareto k > 0.7 "
               f"(indices {bad.tolist()}); LOO estimate may be unreliable")
        print(f"  {msg}")
        warnings.warn(msg)
    return elpd


def compare(results):
    """Rank fitted models by PSIS-LOO.

    Parameters
    ----------
    results : dict
        Model name -> GLMFit.

    Returns
    -------
    DataFrame
        ArviZ comparison table (``elpd_loo``, ``elpd_diff``, ``dse``, ...).
    """
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="Estimated shape parameter of Pareto")
        cmp = az.compare({name: r.idata for name, r in results.items()}, ic="loo")
    print("\nModel comparison (PSIS-LOO):")
    print(cmp[["rank", "elpd_loo", "p_loo", "elpd_diff", "dse", "se"]]
          .to_string(float_format="{:.2f}".format))
    return cmp


def elpd_diff(loo_a, loo_b):
    """Difference in elpd_loo of model a over model b, with its standard error.

    The standard error is ``sqrt(n * var(a_i - b_i))`` over the
    pointwise contributions.
    """
    a = np.asarray(loo_a.loo_i, dtype=np.float64).reshape(-1)
    b = np.asarray(loo_b.loo_i, dtype=np.float64).reshape(-1)
    if a.shape != b.shape:
        raise ValueError("LOO results cover different numbers of observations")
    d = a - b
    return float(d.sum()), float(np.sqrt(len(d) * np.var(d, ddof=1)))


def covariates_informative(loo_full, loo_null, z=1.0):
    """True if the full model predicts better than the null by more than z standard errors."""
    diff, se = elpd_diff(loo_full, loo_null)
    informative = diff - z * se > 0
    print(f"\nelpd_loo(full) - elpd_loo(intercept only) = {diff:.2f} (se {se:.2f})")
    print("  Covariates are " + ("informative" if informative else
                                 "not distinguishable from noise"))
    return informative


def plot_forest(samples, names, filestem, title=None, xlabel="Coefficient",
                max_show=20, sort=True, suffix="_forest"):
    """Forest plot of posterior draws with 50% and 90% credible intervals.

    Parameters
    ----------
    samples : array (S, K)
        Posterior draws, one column per parameter.
    names : list of str
        Parameter names (length K).
    filestem : str
        Prefix for the output PDF file.
    title : str, optional
        Figure title.
    xlabel : str
        Axis label.
    max_show : int
        Keep at most this many parameters (largest absolute means when
        *sort* is True).
    sort : bool
        Order parameters by absolute posterior mean.
    suffix : str
        Appended to *filestem* to form the file name.

    Returns
    -------
    str
        Path to the saved plot.
    """
    samples = np.asarray(samples)
    means = samples.mean(axis=0)
    lo90, lo50, hi50, hi90 = np.percentile(samples, [5, 25, 75, 95], axis=0)

    order = np.argsort(np.abs(means)) if sort else np.arange(len(means))[::-1]
    n_show = min(max_show, len(order))
    order = order[-n_show:]
    labels = [names[i] for i in order]

    fig, ax = plt.subplots(figsize=(5, max(2, 0.3 * n_show + 1)))
    y_pos = np.arange(n_show)
    ax.axvline(0, color="grey", linewidth=0.8, linestyle="--")
    ax.hlines(y_pos, lo90[order], hi90[order], color="steelblue", linewidth=1.2)
    ax.hlines(y_pos, lo50[order], hi50[order], color="steelblue", linewidth=3.5)
    ax.plot(means[order], y_pos, "o", color="navy", markersize=4)
    ax.set_yticks(y_pos)
    ax.set_yticklabels(labels, fontsize=8)
    ax.set_ylim(-0.5, n_show - 0.5)
    ax.set_xlabel(xlabel)
    ax.set_title(title or "Posterior mean, 50% and 90% intervals", fontsize=9)
    fig.tight_layout()
    outpath = filestem + suffix + ".pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_pair_diagnostic(result, filestem):
    """Scatter plot of log(tau) vs log(eta) with divergences highlighted.

    Saves the figure to ``{filestem}_logtau_logeta.pdf``.

    Parameters
    ----------
    result : GLMFit
        Horseshoe fit.
    filestem : str
        Output file prefix.

    Returns
    -------
    str
        Path to the saved PDF.
    """
    if result.prior != "horseshoe":
        raise ValueError("pair diagnostic needs a horseshoe fit")
    fig, ax = plt.subplots(figsize=(5, 4))
    az.plot_pair(result.idata, var_names=["log_tau", "log_eta"], ax=ax,
                 divergences=True,
                 divergences_kwargs={"color": "red", "marker": "o", "markersize": 4},
                 scatter_kwargs={"alpha": 0.4, "s": 12})
    n_div = int(result.idata.sample_stats["diverging"].sum())
    ax.set_title(f"{result.label}: {n_div} divergent transitions", fontsize=9)
    fig.tight_layout()
    outpath = filestem + "_logtau_logeta.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath
