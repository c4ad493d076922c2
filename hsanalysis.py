"""High-level pipeline: fit, diagnose, compare, select and project for one data set."""

import numpy as np

import hsgaussian as hg
import hsprojpred as pp

__all__ = ["run_analysis", "largest_clear_coefficient"]


def largest_clear_coefficient(result, prob=0.9):
    """Name of the coefficient with the largest |posterior mean| whose interval excludes 0.

    Returns None when every central *prob* interval contains zero.
    """
    draws, names = hg.coefficient_draws(result)
    if draws.shape[1] == 0:
        return None
    lo, hi = np.percentile(draws, [50 * (1 - prob), 100 - 50 * (1 - prob)], axis=0)
    clear = (lo > 0) | (hi < 0)
    if not clear.any():
        return None
    means = np.abs(draws.mean(axis=0))
    means[~clear] = -np.inf
    return names[int(np.argmax(means))]


def run_analysis(df, y_col=None, covariate_cols=None, filestem="analysis",
                 formula=None, unpenalized_cols=(),
                 standardize=True, slab_scale=2.5, slab_df=4.0, p0=None,
                 scale_global=None, num_warmup=1000, num_samples=1000,
                 num_chains=4, target_accept_prob=0.95, max_tree_depth=12,
                 rng_seed=0, chain_method="parallel", progress_bar=True,
                 z=1.0, force_selection=False, cv_method="LOO",
                 validate_search=True, nterms_max=None, nclusters=20,
                 ndraws_pred=400, ndraws_project=400, K=5, max_workers=None,
                 plots=True):
    """Run the full analysis for one data set.

    Fits the full and intercept-only models with the normal prior,
    checks convergence, compares them by PSIS-LOO, fits the horseshoe
    model and, when the covariates are informative (or
    ``force_selection``), runs cross-validated projection predictive
    selection and projects onto the suggested size.

    Parameters
    ----------
    df : DataFrame
        Data containing outcome and covariates.
    y_col : str
        Outcome column.
    covariate_cols : list of str
        Covariates of interest (penalized under the horseshoe prior).
    filestem : str
        Prefix for all output files (CSV summaries and PDF plots).
    formula : str, optional
        R-style formula such as ``"winpercent ~ ."``; replaces *y_col*
        and *covariate_cols*.
    unpenalized_cols : list of str
        Covariates always kept in every model and submodel.
    standardize : bool
        Centre and scale covariates before fitting.
    slab_scale, slab_df : float
        Horseshoe slab settings.
    p0 : int or None
        Prior guess of the number of relevant covariates, used for
        ``scale_global`` when that is not given.
    scale_global : float or None
        Horseshoe global scale relative to sigma.
    num_warmup, num_samples, num_chains : int
        MCMC settings.
    target_accept_prob : float
        NUTS target acceptance probability.
    max_tree_depth : int
        NUTS maximum tree depth.
    rng_seed : int
        Random seed.
    chain_method : str
        NumPyro chain method.
    progress_bar : bool
        Show NumPyro progress bars.
    z : float
        Standard errors by which the full model must beat the
        intercept-only model for the covariates to count as informative.
    force_selection : bool
        Run variable selection even when the covariates look
        uninformative.
    cv_method : {"LOO", "kfold"}
        Validation of the submodel size.
    validate_search : bool
        Repeat the search inside LOO.
    nterms_max : int or None
        Largest submodel size.
    nclusters, ndraws_pred : int
        Draw clustering for the search and thinning for evaluation.
    ndraws_project : int
        Draws in the projected posterior.
    K : int
        Folds when ``cv_method="kfold"``.
    max_workers : int or None
        Maximum parallel K-fold refits.
    plots : bool
        Produce PDF plots.

    Returns
    -------
    dict
        ``N``, ``covariate_cols``, ``fits``, ``diagnostics``,
        ``converged``, ``loo``, ``comparison``, ``elpd_diff``,
        ``informative``, ``summaries``, ``top_coefficient``, ``varsel``,
        ``suggested_size``, ``projection``.  On a sampling failure only
        ``error``, ``N`` and ``covariate_cols``.
    """
    if formula is not None:
        y_col, covariate_cols = hg.parse_formula(formula, df)
        covariate_cols = [c for c in covariate_cols if c not in unpenalized_cols]
    if y_col is None or not covariate_cols:
        raise ValueError("run_analysis needs an outcome and at least one covariate "
                         "(y_col and covariate_cols, or formula)")
    covariate_cols = list(covariate_cols)
    design = hg.design_matrix(df, y_col, covariate_cols,
                              unpenalized_cols=unpenalized_cols,
                              standardize=standardize)
    y, X_u, X = design["y"], design["X_u"], design["X"]
    N, J = X.shape
    print(f"N={N}, U={X_u.shape[1]} (excl intercept), J={J}")
    if standardize:
        print("Covariates standardized to zero mean, unit variance")

    if scale_global is None:
        scale_global = hg.default_scale_global(N, J, p0=p0)
        print(f"scale_global estimated: p0={p0 if p0 is not None else max(1, J // 4)}, "
              f"scale_global={scale_global:.4f}")

    sampler_kwargs = dict(num_warmup=num_warmup, num_samples=num_samples,
                          num_chains=num_chains,
                          target_accept_prob=target_accept_prob,
                          max_tree_depth=max_tree_depth, rng_seed=rng_seed,
                          chain_method=chain_method, progress_bar=progress_bar,
                          print_summary=False,
                          unpenalized_names=design["unpenalized_names"])
    rhs = " + ".join(design["unpenalized_names"] + covariate_cols) or "1"

    # --- 1. Fit normal-prior full and intercept-only models, and horseshoe ---
    try:
        fit_full = hg.fit(X_u, X, y, prior="normal", names=covariate_cols,
                          label=f"normal: {y_col} ~ {rhs}", **sampler_kwargs)
        fit_null = hg.fit(X_u, X[:, :0], y, prior="normal", names=[],
                          label=f"normal: {y_col} ~ 1", **sampler_kwargs)
        fit_hs = hg.fit(X_u, X, y, prior="horseshoe", slab_scale=slab_scale,
                        slab_df=slab_df, scale_global=scale_global,
                        names=covariate_cols,
                        label=f"horseshoe: {y_col} ~ {rhs}", **sampler_kwargs)
    except RuntimeError as e:
        print(f"\nrun_analysis: sampling failed: {e}")
        print("Exiting without producing plots or summaries.")
        return {"error": str(e), "N": N, "covariate_cols": covariate_cols}
    fits = {"full": fit_full, "intercept_only": fit_null, "horseshoe": fit_hs}

    # --- 2. Diagnostics and posterior summaries ---
    diagnostics = {name: hg.check_convergence(r) for name, r in fits.items()}
    converged = all(d["converged"] for d in diagnostics.values())
    summaries = {name: hg.summary_report(r, f"{filestem}_{name}_summary.csv")
                 for name, r in fits.items()}
    top_coefficient = largest_clear_coefficient(fit_hs)
    print(f"\nLargest clearly nonzero horseshoe coefficient: {top_coefficient}")

    if plots:
        for name in ("full", "horseshoe"):
            draws, names = hg.coefficient_draws(fits[name])
            hg.plot_forest(draws, names, f"{filestem}_{name}",
                           title=f"{fits[name].label}")
        hg.plot_pair_diagnostic(fit_hs, filestem)

    # --- 3. Predictive comparison ---
    loos = {name: hg.loo(r) for name, r in fits.items()}
    comparison = hg.compare(fits)
    diff, diff_se = hg.elpd_diff(loos["full"], loos["intercept_only"])
    informative = hg.covariates_informative(loos["full"], loos["intercept_only"], z=z)

    out = {
        "N": N, "covariate_cols": covariate_cols,
        "fits": fits, "diagnostics": diagnostics, "converged": converged,
        "summaries": summaries, "top_coefficient": top_coefficient,
        "loo": loos, "comparison": comparison,
        "elpd_diff": (diff, diff_se), "informative": informative,
        "varsel": None, "suggested_size": None, "projection": None,
    }

    if not converged:
        print("\nAt least one fit did not converge; results should not be interpreted.")
    if not (informative or force_selection):
        print("Skipping variable selection.")
        return out

    # --- 4. Variable selection on the horseshoe reference model ---
    vs = pp.cv_varsel(fit_hs, method="forward", cv_method=cv_method,
                      nterms_max=nterms_max, nclusters=nclusters,
                      ndraws_pred=ndraws_pred, validate_search=validate_search,
                      K=K, rng_seed=rng_seed, max_workers=max_workers)
    size = pp.suggest_size(vs)
    print(f"\nSuggested submodel size: {size}")
    if size is not None and size > 0:
        print(f"  Selected: {vs.solution_terms[:size]}")
        if top_coefficient is not None:
            agree = vs.solution_terms[0] == top_coefficient
            print(f"  First selected term {'matches' if agree else 'differs from'} "
                  f"the largest horseshoe coefficient ({top_coefficient})")
    out.update(varsel=vs, suggested_size=size)

    # --- 5. Projection ---
    proj = pp.project(vs, nterms=size if size is not None else vs.nterms_max,
                      ndraws=ndraws_project)
    out["projection"] = proj

    if plots:
        pp.plot_varsel(vs, filestem)
        pp.plot_projection(proj, filestem)
    return out
