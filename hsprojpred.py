"""Projection predictive variable selection for Gaussian linear models.

The reference model is a :class:`hsgaussian.GLMFit`.  For a Gaussian
likelihood the projection of each posterior draw onto a submodel has a
closed form: the submodel coefficients are the least-squares fit to the
draw's mean, and the projected residual variance absorbs what the
submodel cannot reproduce (Piironen, Paasiniemi & Vehtari 2020).
"""

import os
import multiprocessing as mp
import warnings
from concurrent.futures import ProcessPoolExecutor

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az
from scipy import stats
from scipy.special import logsumexp
from scipy.cluster.vq import kmeans2

import hsgaussian as hg

__all__ = [
    "VarselResult", "ProjectedPosterior",
    "varsel", "cv_varsel", "suggest_size", "cv_proportions",
    "project", "proj_linpred",
    "plot_varsel", "plot_projection",
]

STATS = ("elpd", "mlpd", "mse", "rmse")
_HIGHER_IS_BETTER = {"elpd": True, "mlpd": True, "mse": False, "rmse": False}


class VarselResult:
    """Outcome of a projection predictive variable selection.

    Attributes
    ----------
    summary : DataFrame
        One row per submodel size (0 = intercept and unpenalized terms
        only) with ``elpd``, ``mlpd``, ``mse``, ``rmse``, their standard
        errors, and differences to the reference model.
    solution_terms : list of str
        Covariates in the order the full-data search added them.
    solution_idx : list of int
        Column indices of ``solution_terms`` in the reference design.
    reference_stats : dict
        The same statistics for the reference model.
    cv_paths : list of list of int or None
        Per-observation (LOO) or per-fold (K-fold) search paths when the
        search itself was cross-validated.
    """
    def __init__(self, summary, solution_terms, solution_idx=None, names=None,
                 kl_path=None, kl_null=None, reference=None,
                 reference_stats=None, cv_paths=None, method="forward",
                 cv_method=None, validate_search=False, pointwise=None):
        self.summary = summary
        self.solution_terms = list(solution_terms)
        self.solution_idx = (list(solution_idx) if solution_idx is not None
                             else list(range(len(self.solution_terms))))
        self.names = list(names) if names is not None else list(self.solution_terms)
        self.kl_path = kl_path
        self.kl_null = kl_null
        self.reference = reference
        self.reference_stats = reference_stats or {}
        self.cv_paths = cv_paths
        self.method = method
        self.cv_method = cv_method
        self.validate_search = validate_search
        self.pointwise = pointwise

    @property
    def nterms_max(self):
        return len(self.solution_terms)

    def __repr__(self):
        how = self.cv_method if self.cv_method else "training data"
        return (f"VarselResult({self.method}, {how}, "
                f"solution_terms={self.solution_terms})")


class ProjectedPosterior:
    """Reference posterior projected onto a submodel.

    ``draws`` has one row per projected draw and columns ``Intercept``,
    the unpenalized covariates, the selected covariates and ``sigma``.
    """
    def __init__(self, draws, term_idx, terms, kl=None):
        self.draws = draws
        self.term_idx = list(term_idx)
        self.terms = list(terms)
        self.kl = kl

    @property
    def nterms(self):
        return len(self.term_idx)

    def coefficients(self):
        return self.draws.drop(columns="sigma").to_numpy()

    def summary(self, prob=0.9):
        lo = 50 * (1 - prob)
        hi = 100 - lo
        rows = []
        for col in self.draws.columns:
            x = self.draws[col].to_numpy()
            rows.append({"parameter": col, "mean": x.mean(), "sd": x.std(),
                         f"q{lo / 100:.2f}": np.percentile(x, lo),
                         f"q{hi / 100:.2f}": np.percentile(x, hi)})
        return pd.DataFrame(rows)

    def __repr__(self):
        return f"ProjectedPosterior(terms={self.terms}, ndraws={len(self.draws)})"


def _reference_draws(result):
    samples = result.get_samples()
    mu = np.asarray(samples["mu"], dtype=np.float64)        # (S, N)
    sigma = np.asarray(samples["sigma"], dtype=np.float64)  # (S,)
    return mu, sigma


def _base_design(X_u):
    """Intercept column plus unpenalized covariates; always in the submodel."""
    return np.hstack([np.ones((X_u.shape[0], 1)), X_u])


def _thin_indices(S, ndraws):
    """Evenly spaced draw indices, all draws when ndraws is None or >= S."""
    if ndraws is None or ndraws >= S:
        return np.arange(S)
    return np.unique(np.linspace(0, S - 1, ndraws).round().astype(int))


def _gaussian_loglik(y, mu, sigma):
    """Pointwise log density, shape (S, N)."""
    return stats.norm.logpdf(y[None, :], loc=mu, scale=sigma[:, None])


def _project_onto_submodel(mu, sigma, Z):
    """Project Gaussian reference draws onto the submodel with design Z.

    Minimizes KL(reference || submodel) draw by draw.  For a Gaussian
    likelihood the minimizer is the least-squares fit of the reference
    mean, and sigma_perp^2 = sigma^2 + mean squared residual.

    Parameters
    ----------
    mu : ndarray (S, N)
        Reference model means per draw (or per cluster).
    sigma : ndarray (S,)
        Reference residual scales.
    Z : ndarray (N, d)
        Submodel design matrix.

    Returns
    -------
    W : ndarray (S, d)
        Projected coefficients.
    sigma_perp : ndarray (S,)
        Projected residual scales.
    kl : ndarray (S,)
        KL divergence per observation, 0.5 log(sigma_perp^2 / sigma^2).
    """
    W, _, _, _ = np.linalg.lstsq(Z, mu.T, rcond=None)
    resid = mu - (Z @ W).T
    sigma_perp = np.sqrt(sigma ** 2 + np.mean(resid ** 2, axis=1))
    kl = 0.5 * np.log(sigma_perp ** 2 / sigma ** 2)
    return W.T, sigma_perp, kl


def _cluster_labels(mu, nclusters, rng_seed):
    """Assign reference draws to clusters of similar predictions (k-means)."""
    S = mu.shape[0]
    if nclusters is None or nclusters >= S:
        return np.arange(S)
    if nclusters <= 1:
        return np.zeros(S, dtype=int)
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="One of the clusters is empty")
        _, labels = kmeans2(mu, nclusters, minit="++", seed=rng_seed)
    return labels


def _cluster_reference(mu, sigma, labels, weights=None):
    """Weighted cluster means of the reference draws.

    Each cluster is summarised by its weighted mean prediction and a
    residual variance that adds the within-cluster spread of the means.
    Clusters with zero weight are dropped.

    Returns
    -------
    mu_c : ndarray (C, N)
    sigma_c : ndarray (C,)
    w_c : ndarray (C,)
        Normalized cluster weights.
    """
    if weights is None:
        weights = np.ones(len(sigma))
    n_clusters = int(labels.max()) + 1
    wsum = np.bincount(labels, weights=weights, minlength=n_clusters)
    mu_sum = np.zeros((n_clusters, mu.shape[1]))
    np.add.at(mu_sum, labels, weights[:, None] * mu)
    sq_sum = np.bincount(labels, weights=weights * np.mean(mu ** 2, axis=1),
                         minlength=n_clusters)
    s2_sum = np.bincount(labels, weights=weights * sigma ** 2, minlength=n_clusters)

    keep = wsum > 0
    wsum = wsum[keep]
    mu_c = mu_sum[keep] / wsum[:, None]
    spread = sq_sum[keep] / wsum - np.mean(mu_c ** 2, axis=1)
    s2_c = s2_sum[keep] / wsum + np.maximum(spread, 0.0)
    return mu_c, np.sqrt(s2_c), wsum / wsum.sum()


def _forward_search(mu_c, sigma_c, w_c, Z_base, X, nterms_max):
    """Greedy forward search: at each step add the covariate with smallest KL.

    Returns
    -------
    selected : list of int
        Covariate indices in order of entry.
    kl_path : list of float
        Weighted KL after each step.
    kl_null : float
        Weighted KL of the base submodel.
    """
    _, _, kl = _project_onto_submodel(mu_c, sigma_c, Z_base)
    kl_null = float(np.sum(w_c * kl))

    selected = []
    remaining = list(range(X.shape[1]))
    kl_path = []
    Z_cur = Z_base
    for _ in range(nterms_max):
        best_kl = np.inf
        best_j = None
        for j in remaining:
            _, _, kl = _project_onto_submodel(mu_c, sigma_c,
                                              np.hstack([Z_cur, X[:, [j]]]))
            kl_j = float(np.sum(w_c * kl))
            if kl_j < best_kl:
                best_kl = kl_j
                best_j = j
        selected.append(best_j)
        remaining.remove(best_j)
        kl_path.append(best_kl)
        Z_cur = np.hstack([Z_cur, X[:, [best_j]]])
    return selected, kl_path, kl_null


def _performance_table(lpd, pred, ref_lpd, ref_pred, y, solution_terms):
    """Per-size predictive statistics and their differences to the reference.

    ``lpd`` and ``pred`` have shape (nterms_max + 1, N): pointwise
    (cross-validated) log predictive densities and point predictions.
    """
    N = len(y)
    sqrt_n = np.sqrt(N)
    sq_ref = (y - ref_pred) ** 2
    rmse_ref = np.sqrt(sq_ref.mean())
    rows = []
    for size in range(lpd.shape[0]):
        e = lpd[size]
        d = e - ref_lpd
        sq = (y - pred[size]) ** 2
        sq_d = sq - sq_ref
        mse = sq.mean()
        mse_se = sq.std(ddof=1) / sqrt_n
        rmse = np.sqrt(mse)
        rmse_se = mse_se / (2 * rmse) if rmse > 0 else 0.0
        mse_diff_se = sq_d.std(ddof=1) / sqrt_n
        rows.append({
            "size": size,
            "solution_term": solution_terms[size - 1] if size > 0 else None,
            "elpd": e.sum(), "elpd_se": np.sqrt(N * e.var(ddof=1)),
            "elpd_diff": d.sum(), "elpd_diff_se": np.sqrt(N * d.var(ddof=1)),
            "mlpd": e.mean(), "mlpd_se": e.std(ddof=1) / sqrt_n,
            "mlpd_diff": d.mean(), "mlpd_diff_se": d.std(ddof=1) / sqrt_n,
            "mse": mse, "mse_se": mse_se,
            "mse_diff": sq_d.mean(), "mse_diff_se": mse_diff_se,
            "rmse": rmse, "rmse_se": rmse_se,
            "rmse_diff": rmse - rmse_ref,
            "rmse_diff_se": mse_diff_se / (2 * rmse) if rmse > 0 else 0.0,
        })
    reference_stats = {
        "elpd": ref_lpd.sum(), "elpd_se": np.sqrt(N * ref_lpd.var(ddof=1)),
        "mlpd": ref_lpd.mean(), "mlpd_se": ref_lpd.std(ddof=1) / sqrt_n,
        "mse": sq_ref.mean(), "mse_se": sq_ref.std(ddof=1) / sqrt_n,
        "rmse": rmse_ref,
    }
    return pd.DataFrame(rows), reference_stats


def _check_nterms_max(nterms_max, J):
    if nterms_max is None:
        return J
    if nterms_max > J:
        warnings.warn(f"nterms_max={nterms_max} > J={J}; capping at J={J}")
        return J
    return nterms_max


def _setup(result, nterms_max, nclusters, rng_seed):
    X_u = result.X_u
    X = result.X
    y = result.y
    if X.shape[1] == 0:
        raise ValueError("reference model has no covariates to select from")
    nterms_max = _check_nterms_max(nterms_max, X.shape[1])
    mu, sigma = _reference_draws(result)
    labels = _cluster_labels(mu, nclusters, rng_seed)
    return X_u, X, y, nterms_max, mu, sigma, labels


def _print_search(solution_terms, kl_path, kl_null):
    print(f"  KL null = {kl_null:.6f}")
    for v, (name, kl) in enumerate(zip(solution_terms, kl_path)):
        print(f"  step {v+1}: selected {name}, KL={kl:.6f}")


def varsel(result, method="forward", nterms_max=None, nclusters=20,
           ndraws_pred=400, rng_seed=0):
    """Projection predictive selection evaluated on the training data.

    Search and performance evaluation both use all observations, so the
    statistics of the selected submodels are optimistic.  Use
    :func:`cv_varsel` to decide the submodel size.

    Parameters
    ----------
    result : GLMFit
        Reference model.
    method : {"forward"}
        Search method.
    nterms_max : int or None
        Largest submodel size to consider (default: all covariates).
    nclusters : int
        Number of clusters of reference draws used in the search.
    ndraws_pred : int
        Number of (thinned) draws projected for performance evaluation.
    rng_seed : int
        Seed for clustering.

    Returns
    -------
    VarselResult
    """
    if method != "forward":
        raise ValueError(f"Unknown search method: {method!r}. Use 'forward'.")
    X_u, X, y, nterms_max, mu, sigma, labels = _setup(result, nterms_max,
                                                       nclusters, rng_seed)
    Z_base = _base_design(X_u)
    print("\n" + "=" * 60)
    print(f"Projection predictive forward search (training data, {result.label})")
    print("=" * 60)
    mu_c, s_c, w_c = _cluster_reference(mu, sigma, labels)
    path, kl_path, kl_null = _forward_search(mu_c, s_c, w_c, Z_base, X, nterms_max)
    solution_terms = [result.names[j] for j in path]
    _print_search(solution_terms, kl_path, kl_null)

    idx_pred = _thin_indices(len(sigma), ndraws_pred)
    mu_p, sigma_p = mu[idx_pred], sigma[idx_pred]
    S = len(idx_pred)
    lpd = np.empty((nterms_max + 1, len(y)))
    pred = np.empty_like(lpd)
    for size in range(nterms_max + 1):
        Z = np.hstack([Z_base, X[:, path[:size]]])
        W, sp, _ = _project_onto_submodel(mu_p, sigma_p, Z)
        m = W @ Z.T
        lpd[size] = logsumexp(_gaussian_loglik(y, m, sp), axis=0) - np.log(S)
        pred[size] = m.mean(axis=0)
    ll_ref = _gaussian_loglik(y, mu, sigma)
    ref_lpd = logsumexp(ll_ref, axis=0) - np.log(len(sigma))
    ref_pred = mu.mean(axis=0)

    summary, reference_stats = _performance_table(lpd, pred, ref_lpd, ref_pred,
                                                  y, solution_terms)
    return VarselResult(summary, solution_terms, solution_idx=path,
                        names=result.names, kl_path=kl_path, kl_null=kl_null,
                        reference=result, reference_stats=reference_stats,
                        method=method, cv_method=None, validate_search=False,
                        pointwise={"lpd": lpd, "pred": pred,
                                   "ref_lpd": ref_lpd, "ref_pred": ref_pred})


def _loo_performance(X_u, X, y, mu, sigma, labels, path, nterms_max,
                     idx_pred, validate_search):
    """PSIS-LOO performance of each submodel size.

    With *validate_search*, the forward search is repeated for each
    observation i on the reference draws reweighted by their PSIS-LOO
    weights for i, and observation i is scored with the submodels along
    its own path.
    """
    N = len(y)
    Z_base = _base_design(X_u)

    loglik_ref = _gaussian_loglik(y, mu, sigma)
    lw_ref, k_ref = az.psislw(-loglik_ref.T)
    ref_lpd = logsumexp(loglik_ref.T + lw_ref, axis=1)
    ref_pred = np.sum(np.exp(lw_ref) * mu.T, axis=1)

    if validate_search:
        paths = []
        for i in range(N):
            mu_c, s_c, w_c = _cluster_reference(mu, sigma, labels, np.exp(lw_ref[i]))
            path_i, _, _ = _forward_search(mu_c, s_c, w_c, Z_base, X, nterms_max)
            paths.append(path_i)
            if (i + 1) % 10 == 0 or i + 1 == N:
                print(f"  LOO search {i+1}/{N}", flush=True)
    else:
        paths = [path] * N

    mu_p, sigma_p = mu[idx_pred], sigma[idx_pred]
    S = len(idx_pred)
    lpd = np.empty((nterms_max + 1, N))
    pred = np.empty_like(lpd)
    n_bad_k = 0
    cache = {}
    for size in range(nterms_max + 1):
        loglik = np.empty((S, N))
        means = np.empty((S, N))
        for i in range(N):
            key = tuple(sorted(paths[i][:size]))
            if key not in cache:
                Z = np.hstack([Z_base, X[:, list(key)]])
                W, sp, _ = _project_onto_submodel(mu_p, sigma_p, Z)
                cache[key] = (W @ Z.T, sp)
            m, sp = cache[key]
            means[:, i] = m[:, i]
            loglik[:, i] = stats.norm.logpdf(y[i], loc=m[:, i], scale=sp)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", message="overflow")
            lw, k_sub = az.psislw(-loglik.T)
        n_bad_k += int(np.sum(np.asarray(k_sub) > 0.7))
        lpd[size] = logsumexp(loglik.T + lw, axis=1)
        pred[size] = np.sum(np.exp(lw) * means.T, axis=1)

    n_bad_ref = int(np.sum(np.asarray(k_ref) > 0.7))
    if n_bad_ref or n_bad_k:
        warnings.warn(f"Pareto k > 0.7 for {n_bad_ref} reference and {n_bad_k} "
                      f"submodel LOO weights; estimates may be unreliable")
    cv_paths = paths if validate_search else None
    return lpd, pred, ref_lpd, ref_pred, cv_paths


def _get_available_memory_bytes(meminfo="/proc/meminfo"):
    """MemAvailable in bytes, or None where *meminfo* is missing or lacks it."""
    try:
        with open(meminfo) as f:
            fields = dict(line.split(":", 1) for line in f if ":" in line)
        return int(fields["MemAvailable"].split()[0]) * 1024
    except (OSError, KeyError, ValueError, IndexError):
        return None


def _estimate_fold_memory_bytes(N_train, U, J, num_chains, num_samples):
    """Rough estimate of memory needed per K-fold refit in bytes."""
    # intercept, beta_u, sigma, horseshoe globals, z/aux1/aux2_local per J,
    # plus the deterministic mean for every training row
    n_params = 1 + U + 5 + J * 4 + N_train
    samples_bytes = num_chains * num_samples * n_params * 4
    data_bytes = N_train * (J + U + 1) * 4
    model_bytes = int((samples_bytes + data_bytes) * 3)
    # baseline for JAX/XLA runtime + JIT compilation cache per process
    jax_baseline = 512 * 1024 * 1024  # 512 MB
    return model_bytes + jax_baseline


def _kfold_worker(fold_args):
    """Refit, search and score one fold (module-level for pickling)."""
    (k, K, train_idx, test_idx, X_u, X, y, fit_kwargs,
     nterms_max, nclusters, ndraws_pred, rng_seed) = fold_args

    print(f"\n--- Fold {k+1}/{K}: train={len(train_idx)}, test={len(test_idx)} ---",
          flush=True)
    kwargs = dict(fit_kwargs)
    kwargs.update(rng_seed=fit_kwargs["rng_seed"] + k,
                  progress_bar=False, print_summary=False)
    result_k = hg.fit(X_u[train_idx], X[train_idx], y[train_idx],
                      label=f"fold {k+1}", **kwargs)
    mu, sigma = _reference_draws(result_k)

    Z_base = _base_design(X_u)
    Z_tr, Z_te = Z_base[train_idx], Z_base[test_idx]
    X_tr, X_te = X[train_idx], X[test_idx]
    y_te = y[test_idx]

    labels = _cluster_labels(mu, nclusters, rng_seed + k)
    mu_c, s_c, w_c = _cluster_reference(mu, sigma, labels)
    path, _, _ = _forward_search(mu_c, s_c, w_c, Z_tr, X_tr, nterms_max)

    idx_pred = _thin_indices(len(sigma), ndraws_pred)
    mu_p, sigma_p = mu[idx_pred], sigma[idx_pred]
    S = len(idx_pred)
    lpd = np.empty((nterms_max + 1, len(test_idx)))
    pred = np.empty_like(lpd)
    for size in range(nterms_max + 1):
        cols = path[:size]
        W, sp, _ = _project_onto_submodel(mu_p, sigma_p, np.hstack([Z_tr, X_tr[:, cols]]))
        m = W @ np.hstack([Z_te, X_te[:, cols]]).T
        lpd[size] = logsumexp(_gaussian_loglik(y_te, m, sp), axis=0) - np.log(S)
        pred[size] = m.mean(axis=0)

    mu_te = hg.predict(result_k, X_u[test_idx], X_te, rng_seed=rng_seed + k)
    ref_lpd = (logsumexp(_gaussian_loglik(y_te, mu_te, sigma), axis=0)
               - np.log(len(sigma)))
    return k, test_idx, path, lpd, pred, ref_lpd, mu_te.mean(axis=0)


def _kfold_performance(result, nterms_max, nclusters, ndraws_pred, K,
                       rng_seed, max_workers):
    """K-fold performance: refit the reference on K-1 folds, score the rest."""
    X_u, X, y = result.X_u, result.X, result.y
    N = len(y)
    U = X_u.shape[1]
    J = X.shape[1]
    indices = np.arange(N)
    rng = np.random.RandomState(rng_seed)
    rng.shuffle(indices)
    folds = np.array_split(indices, K)

    n_cpus = os.cpu_count() or 1
    n_workers = min(K, n_cpus)
    mem_avail = _get_available_memory_bytes()
    if mem_avail is not None:
        N_train = int(N * (K - 1) / K)
        mem_per_fold = _estimate_fold_memory_bytes(
            N_train, U, J, result.fit_kwargs["num_chains"],
            result.fit_kwargs["num_samples"])
        mem_limit = max(1, int(mem_avail * 0.8) // mem_per_fold)
        n_workers = min(n_workers, mem_limit)
        print(f"Memory: {mem_avail / 1e9:.1f} GB available, "
              f"~{mem_per_fold / 1e6:.0f} MB per fold, "
              f"limit {mem_limit} parallel folds")
    if max_workers is not None:
        n_workers = min(n_workers, max_workers)
    n_workers = max(1, n_workers)

    fold_args = []
    for k in range(K):
        test_idx = folds[k]
        train_idx = np.concatenate([folds[j] for j in range(K) if j != k])
        fold_args.append((k, K, train_idx, test_idx, X_u, X, y,
                          result.fit_kwargs, nterms_max, nclusters,
                          ndraws_pred, rng_seed))

    if n_workers > 1:
        print(f"Running {K}-fold refits with {n_workers} parallel workers")
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_workers, mp_context=ctx) as pool:
            results = list(pool.map(_kfold_worker, fold_args))
    else:
        print(f"Running {K}-fold refits sequentially")
        results = [_kfold_worker(a) for a in fold_args]

    results.sort(key=lambda r: r[0])
    lpd = np.empty((nterms_max + 1, N))
    pred = np.empty_like(lpd)
    ref_lpd = np.empty(N)
    ref_pred = np.empty(N)
    for _, test_idx, _, lpd_k, pred_k, ref_lpd_k, ref_pred_k in results:
        lpd[:, test_idx] = lpd_k
        pred[:, test_idx] = pred_k
        ref_lpd[test_idx] = ref_lpd_k
        ref_pred[test_idx] = ref_pred_k
    cv_paths = [r[2] for r in results]
    return lpd, pred, ref_lpd, ref_pred, cv_paths


def cv_varsel(result, method="forward", cv_method="LOO", nterms_max=None,
              nclusters=20, ndraws_pred=400, validate_search=True, K=5,
              rng_seed=0, max_workers=None):
    """Cross-validated projection predictive variable selection.

    The covariates are ranked by forward search on the full data, and the
    predictive performance of each submodel size is estimated out of
    sample, so that the choice of size is not fooled by the optimism of
    the search itself.

    Parameters
    ----------
    result : GLMFit
        Reference model (typically the horseshoe fit).
    method : {"forward"}
        Search method.
    cv_method : {"LOO", "kfold"}
        PSIS-LOO on the reference fit, or K-fold with refits of the
        reference model.
    nterms_max : int or None
        Largest submodel size to consider (default: all covariates).
    nclusters : int
        Clusters of reference draws used in the search.
    ndraws_pred : int
        Thinned draws projected for performance evaluation.
    validate_search : bool
        LOO only: repeat the search for every left-out observation.  When
        False, the full-data path is used for every observation.
    K : int
        Number of folds for ``cv_method="kfold"``.
    rng_seed : int
        Seed for clustering and fold assignment.
    max_workers : int or None
        Maximum parallel fold refits (K-fold only).

    Returns
    -------
    VarselResult
    """
    if method != "forward":
        raise ValueError(f"Unknown search method: {method!r}. Use 'forward'.")
    cv_key = cv_method.lower()
    if cv_key not in ("loo", "kfold"):
        raise ValueError(f"Unknown cv_method: {cv_method!r}. Use 'LOO' or 'kfold'.")
    X_u, X, y, nterms_max, mu, sigma, labels = _setup(result, nterms_max,
                                                       nclusters, rng_seed)

    print("\n" + "=" * 60)
    print(f"Projection predictive forward search ({cv_method}, {result.label})")
    print("=" * 60)
    mu_c, s_c, w_c = _cluster_reference(mu, sigma, labels)
    path, kl_path, kl_null = _forward_search(mu_c, s_c, w_c, _base_design(X_u),
                                             X, nterms_max)
    solution_terms = [result.names[j] for j in path]
    _print_search(solution_terms, kl_path, kl_null)

    if cv_key == "loo":
        idx_pred = _thin_indices(len(sigma), ndraws_pred)
        lpd, pred, ref_lpd, ref_pred, cv_paths = _loo_performance(
            X_u, X, y, mu, sigma, labels, path, nterms_max, idx_pred,
            validate_search)
    else:
        validate_search = True
        lpd, pred, ref_lpd, ref_pred, cv_paths = _kfold_performance(
            result, nterms_max, nclusters, ndraws_pred, K, rng_seed, max_workers)

    summary, reference_stats = _performance_table(lpd, pred, ref_lpd, ref_pred,
                                                  y, solution_terms)
    vs = VarselResult(summary, solution_terms, solution_idx=path,
                      names=result.names, kl_path=kl_path, kl_null=kl_null,
                      reference=result, reference_stats=reference_stats,
                      cv_paths=cv_paths, method=method, cv_method=cv_method,
                      validate_search=validate_search,
                      pointwise={"lpd": lpd, "pred": pred,
                                 "ref_lpd": ref_lpd, "ref_pred": ref_pred})
    print(f"\nPerformance by submodel size ({cv_method}):")
    print(summary[["size", "solution_term", "elpd", "elpd_se", "elpd_diff",
                   "elpd_diff_se", "rmse", "rmse_se"]].to_string(
                       index=False, float_format="{:.2f}".format))
    print(f"  reference: elpd = {reference_stats['elpd']:.2f} "
          f"(se {reference_stats['elpd_se']:.2f}), "
          f"rmse = {reference_stats['rmse']:.2f}")
    return vs


def suggest_size(vs, stat="elpd", alpha=0.32, pct=0.0):
    """Smallest submodel size whose performance matches the reference model.

    A size qualifies when the (1 - alpha) interval of its difference to
    the reference model reaches ``-pct`` times the gap between the
    base submodel (size 0) and the reference.  With the defaults this is
    "within one standard error of the reference".  Size 0 is a valid
    answer: no covariate improves on the intercept-only submodel.

    Returns
    -------
    int or None
        None when no size qualifies.
    """
    if stat not in STATS:
        raise ValueError(f"Unknown stat: {stat!r}. Use one of {STATS}.")
    z = stats.norm.ppf(1 - alpha / 2)
    table = vs.summary
    diff = table[f"{stat}_diff"].to_numpy(dtype=np.float64)
    se = np.nan_to_num(table[f"{stat}_diff_se"].to_numpy(dtype=np.float64))
    gap = abs(diff[0])
    if _HIGHER_IS_BETTER[stat]:
        ok = diff + z * se >= -pct * gap
    else:
        ok = diff - z * se <= pct * gap
    hits = np.flatnonzero(ok)
    if len(hits) == 0:
        warnings.warn(f"No submodel size up to {table['size'].max()} reaches "
                      f"the reference {stat}; consider a larger nterms_max")
        return None
    return int(table["size"].iloc[hits[0]])


def cv_proportions(vs, cumulate=False):
    """Share of cross-validation search paths selecting each covariate at each size.

    Rows are submodel sizes 1..nterms_max, columns the covariates (full-data
    solution order first).  With *cumulate*, entry (k, j) is the share of
    paths that include covariate j among their first k terms.
    """
    if vs.cv_paths is None:
        raise ValueError("the search was not cross-validated (cv_paths is None)")
    n_paths = len(vs.cv_paths)
    order = list(vs.solution_idx) + [j for j in range(len(vs.names))
                                     if j not in vs.solution_idx]
    props = np.zeros((vs.nterms_max, len(vs.names)))
    for p in vs.cv_paths:
        for pos, j in enumerate(p[:vs.nterms_max]):
            props[pos, j] += 1
    props /= n_paths
    if cumulate:
        props = np.cumsum(props, axis=0)
    return pd.DataFrame(props[:, order],
                        index=pd.Index(np.arange(1, vs.nterms_max + 1), name="size"),
                        columns=[vs.names[j] for j in order])


def project(vs, nterms=None, ndraws=400, solution_terms=None):
    """Project the reference posterior onto a submodel.

    Each thinned reference draw is projected onto the intercept, the
    unpenalized covariates and the first *nterms* solution terms.  This
    keeps the uncertainty of the reference fit instead of refitting a
    smaller model to the observed outcome.

    Parameters
    ----------
    vs : VarselResult
        Selection result whose ``reference`` is a GLMFit.
    nterms : int or None
        Submodel size.  Defaults to :func:`suggest_size`.
    ndraws : int
        Number of evenly thinned reference draws to project.
    solution_terms : list of str, optional
        Explicit covariates; overrides *nterms*.

    Returns
    -------
    ProjectedPosterior
    """
    ref = vs.reference
    if ref is None:
        raise ValueError("selection result carries no reference model")
    if solution_terms is not None:
        unknown = [t for t in solution_terms if t not in ref.names]
        if unknown:
            raise ValueError(f"unknown terms: {unknown}")
        idx = [ref.names.index(t) for t in solution_terms]
    else:
        if nterms is None:
            nterms = suggest_size(vs)
            if nterms is None:
                raise ValueError("no suggested size; pass nterms explicitly")
        if not 0 <= nterms <= vs.nterms_max:
            raise ValueError(f"nterms={nterms} outside 0..{vs.nterms_max}")
        idx = list(vs.solution_idx[:nterms])

    mu, sigma = _reference_draws(ref)
    sel = _thin_indices(len(sigma), ndraws)
    Z = np.hstack([_base_design(ref.X_u), ref.X[:, idx]])
    W, sigma_perp, kl = _project_onto_submodel(mu[sel], sigma[sel], Z)

    terms = [ref.names[j] for j in idx]
    columns = ["Intercept"] + list(ref.unpenalized_names) + terms
    draws = pd.DataFrame(W, columns=columns)
    draws["sigma"] = sigma_perp
    proj = ProjectedPosterior(draws, idx, terms, kl=kl)
    print(f"\nProjected posterior onto {len(terms)} term(s) {terms}, "
          f"{len(draws)} draws:")
    print(proj.summary().to_string(index=False, float_format="{:.3f}".format))
    return proj


def proj_linpred(proj, X_u_new, X_new):
    """Projected linear predictor draws for new rows, shape (ndraws, N_new).

    *X_new* holds all reference covariates (same scaling as in the fit);
    only the projected terms are used.
    """
    X_new = np.asarray(X_new, dtype=np.float64)
    N_new = X_new.shape[0]
    if X_u_new is None:
        X_u_new = np.empty((N_new, 0))
    X_u_new = np.asarray(X_u_new, dtype=np.float64)
    if X_u_new.ndim == 1:
        X_u_new = X_u_new[:, None]
    Z = np.hstack([_base_design(X_u_new), X_new[:, proj.term_idx]])
    return proj.coefficients() @ Z.T


def plot_varsel(vs, filestem, stats=("elpd", "rmse"), deltas=False):
    """Plot predictive performance against submodel size.

    Error bars are one standard error; the dashed red line is the
    reference model and the dotted line marks the suggested size.
    Saves the figure to ``{filestem}_varsel.pdf``.

    Parameters
    ----------
    vs : VarselResult
        Output of :func:`varsel` or :func:`cv_varsel`.
    filestem : str
        Output file prefix.
    stats : sequence of str
        Statistics to plot, one panel each.
    deltas : bool
        Plot differences to the reference instead of absolute values.

    Returns
    -------
    str
        Path to the saved PDF.
    """
    table = vs.summary
    sizes = table["size"].to_numpy()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        size_sel = suggest_size(vs)

    fig, axes = plt.subplots(len(stats), 1, figsize=(5, 2.5 * len(stats) + 0.5),
                             sharex=True, squeeze=False)
    axes = axes[:, 0]
    for ax, stat in zip(axes, stats):
        col = f"{stat}_diff" if deltas else stat
        ref = 0.0 if deltas else vs.reference_stats[stat]
        ax.axhline(ref, color="red", linestyle="--", linewidth=0.8)
        ax.errorbar(sizes, table[col], yerr=table[col + "_se"], fmt="ko-",
                    markersize=4, capsize=2, elinewidth=1)
        if size_sel is not None:
            ax.axvline(size_sel, color="grey", linestyle=":", linewidth=1)
        ax.set_ylabel(col)

    # annotate each selected variable, alternating above/below to avoid overlap
    first = f"{stats[0]}_diff" if deltas else stats[0]
    for i, name in enumerate(vs.solution_terms):
        xytext, va = ((6, 8), "bottom") if i % 2 == 0 else ((6, -8), "top")
        axes[0].annotate(name, (i + 1, table[first].iloc[i + 1]),
                         textcoords="offset points", xytext=xytext,
                         fontsize=7, va=va)
    axes[-1].set_xlabel("Submodel size")
    axes[-1].set_xlim(-0.3, len(sizes) - 0.7)
    how = vs.cv_method if vs.cv_method else "training data"
    axes[0].set_title(f"Projection predictive forward search ({how})", fontsize=9)
    fig.tight_layout()
    outpath = filestem + "_varsel.pdf"
    fig.savefig(outpath)
    plt.show()
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_projection(proj, filestem):
    """Posterior intervals of the projected draws (``{filestem}_projected.pdf``)."""
    return hg.plot_forest(proj.draws.to_numpy(), list(proj.draws.columns),
                          filestem, sort=False, suffix="_projected",
                          xlabel="Projected value",
                          title=f"Projected posterior ({proj.nterms} term(s))")
