import numpy as np
import pandas as pd
import pytest

from .datasets import annotate_genes, simulate_counts
from .quality_control import calculate_qc_metrics, filter_cells, is_outlier, per_cell_qc_filters


def test_is_outlier_both_tails():
    values = pd.Series([10.0] * 10 + [11.0] * 10 + [100.0, -50.0])
    flags = is_outlier(values, nmads=3)
    assert flags.tolist() == [False] * 20 + [True, True]
    lower, upper = flags.attrs["thresholds"]["all"]
    assert lower < 10 and upper > 11


def test_is_outlier_one_tail():
    values = pd.Series([10.0] * 10 + [11.0] * 10 + [100.0, -50.0])
    assert is_outlier(values, type="higher").tolist()[-2:] == [True, False]
    assert is_outlier(values, type="lower").tolist()[-2:] == [False, True]
    assert is_outlier(values, type="higher").attrs["thresholds"]["all"][0] == -np.inf


def test_is_outlier_log_thresholds_on_original_scale():
    rng = np.random.default_rng(0)
    values = pd.Series(rng.lognormal(np.log(5000), 0.2, size=200))
    flags = is_outlier(values, type="lower", log=True)
    lower, _ = flags.attrs["thresholds"]["all"]
    assert 1000 < lower < 5000
    assert (flags == (values < lower)).all()


def test_is_outlier_log_keeps_open_bounds_infinite():
    values = pd.Series([100.0, 120.0, 90.0, 110.0, 5.0, 2000.0])
    assert is_outlier(values, type="lower", log=True).attrs["thresholds"]["all"][1] == np.inf
    assert is_outlier(values, type="higher", log=True).attrs["thresholds"]["all"][0] == -np.inf
    lower, upper = is_outlier(values, log=True).attrs["thresholds"]["all"]
    assert 0 < lower < 90 and 120 < upper < 2000


def test_is_outlier_zero_mad_thresholds_at_median():
    values = pd.Series([10.0] * 20 + [10.5])
    assert is_outlier(values).attrs["thresholds"]["all"] == (10.0, 10.0)
    assert is_outlier(values, type="lower").attrs["thresholds"]["all"] == (10.0, np.inf)


def test_is_outlier_per_batch():
    values = pd.Series([10.0, 11.0, 12.0, 10.5, 100.0, 101.0, 102.0, 100.5])
    batch = ["a"] * 4 + ["b"] * 4
    flags = is_outlier(values, batch=batch)
    # No cell is an outlier within its own batch
    assert not flags.any()
    assert set(flags.attrs["thresholds"]) == {"a", "b"}


def test_is_outlier_min_diff():
    values = pd.Series([10.0] * 20 + [10.5])
    # MAD of zero would flag anything off the median
    assert is_outlier(values)[20]
    assert not is_outlier(values, min_diff=1.0)[20]


def test_is_outlier_nan_never_flagged():
    values = pd.Series([1.0, 1.1, 0.9, np.nan, 1.0])
    assert not is_outlier(values)[3]


@pytest.mark.parametrize("kwargs", [{"nmads": 0}, {"type": "sideways"}])
def test_is_outlier_invalid_arguments(kwargs):
    with pytest.raises(ValueError):
        is_outlier([1.0, 2.0, 3.0], **kwargs)


def test_is_outlier_empty():
    with pytest.raises(ValueError):
        is_outlier([])


def test_per_cell_qc_filters_finds_damaged_cells():
    adata = annotate_genes(simulate_counts(n_cells=500, n_genes=400, low_quality_rate=0.1, random_state=3))
    summary = per_cell_qc_filters(adata)

    assert list(summary.index) == ["low_lib_size", "low_n_features", "high_pct_counts_mt", "discard"]
    truth = adata.obs["is_low_quality"].to_numpy()
    discard = adata.obs["discard"].to_numpy()
    assert discard[truth].mean() > 0.95
    assert discard[~truth].mean() < 0.05
    assert summary.loc["discard", "n_cells"] == discard.sum()
    assert set(adata.uns["qc_thresholds"]) == {"low_lib_size", "low_n_features", "high_pct_counts_mt"}


def test_per_cell_qc_filters_with_batch():
    adata = annotate_genes(simulate_counts(n_cells=300, n_genes=300, random_state=4))
    adata.obs["batch"] = np.where(np.arange(adata.n_obs) % 2 == 0, "b1", "b2")
    per_cell_qc_filters(adata, batch_key="batch")
    assert set(adata.uns["qc_thresholds"]["low_lib_size"]) == {"b1", "b2"}

    with pytest.raises(ValueError):
        per_cell_qc_filters(adata, batch_key="sample")


def test_filter_cells():
    adata = annotate_genes(simulate_counts(n_cells=200, n_genes=300, random_state=5))
    per_cell_qc_filters(adata)
    kept = filter_cells(adata)
    assert kept.n_obs == (~adata.obs["discard"]).sum()
    assert kept.is_view is False

    adata.obs["discard"] = True
    with pytest.raises(ValueError, match="All cells"):
        filter_cells(adata)


def test_filter_cells_requires_flags():
    adata = simulate_counts(n_cells=20, n_genes=50)
    with pytest.raises(ValueError):
        filter_cells(adata)


def test_calculate_qc_metrics_without_mito_annotation():
    adata = simulate_counts(n_cells=30, n_genes=50)
    calculate_qc_metrics(adata)
    assert (adata.obs["pct_counts_mt"] == 0).all()
    assert "total_counts" in adata.obs


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
