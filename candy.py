"""Candy power ranking data (FiveThirtyEight) and its null-target variant."""

import os

import numpy as np
import pandas as pd

__all__ = [
    "CANDY_URL", "CANDY_TARGET", "CANDY_COVARIATES",
    "load_candy", "make_null_dataset",
]

CANDY_URL = ("https://raw.githubusercontent.com/fivethirtyeight/data/"
             "master/candy-power-ranking/candy-data.csv")
CANDY_TARGET = "winpercent"
CANDY_COVARIATES = [
    "chocolate", "fruity", "caramel", "peanutyalmondy", "nougat",
    "crispedricewafer", "hard", "bar", "pluribus",
    "sugarpercent", "pricepercent",
]


def load_candy(source=None):
    """Load the candy data set.

    Parameters
    ----------
    source : str, path or file-like, optional
        CSV location.  Defaults to the ``CANDY_DATA`` environment variable
        and then to :data:`CANDY_URL`.

    Returns
    -------
    DataFrame
        One row per candy, indexed by ``competitorname``, with the target
        ``winpercent`` and the 11 covariates as floats.
    """
    if source is None:
        source = os.environ.get("CANDY_DATA", CANDY_URL)
    df = pd.read_csv(source)
    if "competitorname" in df.columns:
        df = df.set_index("competitorname")

    needed = [CANDY_TARGET] + CANDY_COVARIATES
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise ValueError(f"candy data is missing columns: {missing}")

    df = df[needed].astype(np.float64)
    print(f"Loaded candy data: N={len(df)}, "
          f"{len(CANDY_COVARIATES)} covariates, target '{CANDY_TARGET}'")
    return df


def make_null_dataset(df, y_col=CANDY_TARGET, rng_seed=0):
    """Copy of *df* with the target replaced by independent N(0, 1) draws.

    The covariates are left untouched, so any association a model finds
    between them and the new target is noise.
    """
    if y_col not in df.columns:
        raise ValueError(f"column '{y_col}' not in data")
    rng = np.random.RandomState(rng_seed)
    null_df = df.copy()
    null_df[y_col] = rng.standard_normal(len(df))
    return null_df
