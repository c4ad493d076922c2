import numpy as np
import pandas as pd
import pytest

import candy


def _write_candy_csv(path, n=12):
    rng = np.random.default_rng(0)
    data = {"competitorname": [f"candy {i}" for i in range(n)]}
    for col in candy.CANDY_COVARIATES:
        if col.endswith("percent"):
            data[col] = rng.uniform(0, 1, n)
        else:
            data[col] = rng.integers(0, 2, n)
    data[candy.CANDY_TARGET] = rng.uniform(20, 80, n)
    pd.DataFrame(data).to_csv(path, index=False)


def test_load_candy_from_file(tmp_path):
    path = tmp_path / "candy-data.csv"
    _write_candy_csv(path)
    df = candy.load_candy(path)
    assert df.shape == (12, 1 + len(candy.CANDY_COVARIATES))
    assert df.index.name == "competitorname"
    assert list(df.columns) == [candy.CANDY_TARGET] + candy.CANDY_COVARIATES
    assert all(dt == np.float64 for dt in df.dtypes)


def test_load_candy_uses_environment(tmp_path, monkeypatch):
    path = tmp_path / "candy-data.csv"
    _write_candy_csv(path, n=7)
    monkeypatch.setenv("CANDY_DATA", str(path))
    assert len(candy.load_candy()) == 7


def test_load_candy_missing_column(tmp_path):
    path = tmp_path / "candy-data.csv"
    _write_candy_csv(path)
    pd.read_csv(path).drop(columns="nougat").to_csv(path, index=False)
    with pytest.raises(ValueError, match="nougat"):
        candy.load_candy(path)


def test_null_dataset_replaces_only_target(tmp_path):
    path = tmp_path / "candy-data.csv"
    _write_candy_csv(path, n=85)
    df = candy.load_candy(path)
    original = df.copy()

    null_df = candy.make_null_dataset(df, rng_seed=3)
    pd.testing.assert_frame_equal(df, original)
    pd.testing.assert_frame_equal(null_df[candy.CANDY_COVARIATES],
                                  df[candy.CANDY_COVARIATES])
    assert null_df.shape == df.shape
    y0 = null_df[candy.CANDY_TARGET]
    assert not np.allclose(y0, df[candy.CANDY_TARGET])
    assert abs(y0.mean()) < 0.5
    assert 0.6 < y0.std() < 1.4


def test_null_dataset_reproducible():
    df = pd.DataFrame({"winpercent": np.arange(10.0), "sugarpercent": np.ones(10)})
    a = candy.make_null_dataset(df, rng_seed=5)
    b = candy.make_null_dataset(df, rng_seed=5)
    c = candy.make_null_dataset(df, rng_seed=6)
    assert np.array_equal(a["winpercent"], b["winpercent"])
    assert not np.array_equal(a["winpercent"], c["winpercent"])


def test_null_dataset_unknown_column():
    df = pd.DataFrame({"a": [1.0, 2.0]})
    with pytest.raises(ValueError):
        candy.make_null_dataset(df, y_col="winpercent")
