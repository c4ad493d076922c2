import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


@pytest.fixture(scope="session")
def fast():
    """Small MCMC settings shared by the sampling tests."""
    return dict(num_warmup=300, num_samples=300, num_chains=2,
                chain_method="sequential", progress_bar=False,
                print_summary=False)


@pytest.fixture(scope="session")
def signal_data():
    """N=60 rows, 4 covariates; y depends strongly on x1 and weakly on x2."""
    rng = np.random.default_rng(1)
    N = 60
    X = rng.standard_normal((N, 4))
    y = 1.0 + 2.0 * X[:, 1] + 0.5 * X[:, 2] + rng.standard_normal(N)
    df = pd.DataFrame(X, columns=["x0", "x1", "x2", "x3"])
    df["y"] = y
    return df
