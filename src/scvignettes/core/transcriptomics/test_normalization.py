import numpy as np
import pandas as pd
import pytest
import scipy.sparse
from scipy.stats import spearmanr

import anndata as ad

from .datasets import simulate_counts
from .normalization import (
    _ring_order,
    deconvolution_size_factors,
    library_size_factors,
    log_norm_counts,
    quick_cluster,
)


@pytest.fixture
def healthy_adata():
    adata = simulate_counts(n_cells=360, n_genes=500, n_groups=3, doublet_rate=0.0,
                            low_quality_rate=0.0, random_state=7)
    return adata


def test_library_size_factors_unit_mean(healthy_adata):
    factors = library_size_factors(healthy_adata)
    assert factors.shape == (healthy_adata.n_obs,)
    np.testing.assert_allclose(factors.mean(), 1.0)
    lib = np.asarray(healthy_adata.X.sum(axis=1)).ravel()
    np.testing.assert_allclose(factors, lib / lib.mean(), rtol=1e-5)


def test_library_size_factors_zero_library():
    adata = ad.AnnData(X=np.array([[1.0, 2.0], [0.0, 0.0]]))
    with pytest.raises(ValueError, match="zero total counts"):
        library_size_factors(adata)


def test_ring_order_is_permutation():
    lib_sizes = np.array([5.0, 1.0, 4.0, 2.0, 3.0])
    order = _ring_order(lib_sizes)
    assert sorted(order.tolist()) == list(range(5))
    # smallest first, largest in the middle of the ring
    assert order[0] == 1
    assert lib_sizes[order].argmax() == 2


def test_deconvolution_tracks_library_size(healthy_adata):
    clusters = healthy_adata.obs["group"]
    factors = deconvolution_size_factors(healthy_adata, clusters=clusters)

    assert np.all(factors > 0)
    np.testing.assert_allclose(factors.mean(), 1.0)
    lib = np.asarray(healthy_adata.X.sum(axis=1)).ravel()
    assert spearmanr(factors, lib).correlation > 0.8


def test_deconvolution_without_clusters(healthy_adata):
    factors = deconvolution_size_factors(healthy_adata)
    assert np.all(factors > 0)
    np.testing.assert_allclose(factors.mean(), 1.0)


def test_deconvolution_small_cluster_falls_back(healthy_adata):
    clusters = np.where(np.arange(healthy_adata.n_obs) < 10, "tiny", "big")
    factors = deconvolution_size_factors(healthy_adata, clusters=clusters)
    assert np.all(np.isfinite(factors))
    assert np.all(factors > 0)


def test_deconvolution_cluster_length_mismatch(healthy_adata):
    with pytest.raises(ValueError):
        deconvolution_size_factors(healthy_adata, clusters=["a", "b"])


def test_quick_cluster_merges_small_clusters(healthy_adata):
    clusters = quick_cluster(healthy_adata, min_size=60, random_state=0)
    assert len(clusters) == healthy_adata.n_obs
    assert clusters.value_counts().min() >= 60

    single = quick_cluster(healthy_adata, min_size=10_000)
    assert single.nunique() == 1


def test_log_norm_counts_dense():
    counts = np.array([[0.0, 2.0, 6.0], [4.0, 0.0, 4.0]])
    adata = ad.AnnData(X=counts.copy())
    size_factors = np.array([0.5, 2.0])
    log_norm_counts(adata, size_factors=size_factors)

    expected = np.log2(counts / size_factors[:, None] + 1)
    np.testing.assert_allclose(adata.layers["logcounts"], expected)
    np.testing.assert_allclose(adata.X, expected)
    np.testing.assert_array_equal(adata.layers["counts"], counts)
    assert adata.uns["log_norm"] == {"pseudo_count": 1.0, "log_base": 2.0}
    assert adata.uns["log1p"] == {"base": 2.0}

    log_norm_counts(adata, size_factors=size_factors, pseudo_count=0.5)
    assert "log1p" not in adata.uns


def test_log_norm_counts_sparse_stays_sparse(healthy_adata):
    log_norm_counts(healthy_adata)
    assert scipy.sparse.issparse(healthy_adata.layers["logcounts"])
    dense = np.log2(healthy_adata.layers["counts"].toarray()
                    / healthy_adata.obs["size_factors"].to_numpy()[:, None] + 1)
    np.testing.assert_allclose(healthy_adata.layers["logcounts"].toarray(), dense, rtol=1e-5)


def test_log_norm_counts_rejects_bad_factors():
    adata = ad.AnnData(X=np.ones((3, 2)))
    with pytest.raises(ValueError):
        log_norm_counts(adata, size_factors=np.array([1.0, 0.0, 1.0]))
    with pytest.raises(ValueError):
        log_norm_counts(adata, size_factors=np.array([1.0, 1.0]))


def test_log_norm_counts_uses_stored_size_factors():
    adata = ad.AnnData(X=np.array([[2.0, 2.0], [4.0, 4.0]]), obs=pd.DataFrame(index=["a", "b"]))
    adata.obs["size_factors"] = [1.0, 2.0]
    log_norm_counts(adata, log_base=np.e, pseudo_count=1.0)
    np.testing.assert_allclose(adata.X, np.log(np.full((2, 2), 3.0)))


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
