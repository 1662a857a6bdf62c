import numpy as np
import pandas as pd
import pytest

import anndata as ad

from .datasets import simulate_counts
from .feature_selection import fit_trend_var, get_top_hvgs, highly_variable_genes, model_gene_var
from .normalization import log_norm_counts


@pytest.fixture
def lognorm_adata():
    adata = simulate_counts(n_cells=300, n_genes=400, n_groups=3, low_quality_rate=0.0, random_state=11)
    return log_norm_counts(adata)


def test_fit_trend_passes_through_origin():
    means = np.linspace(0.1, 5, 100)
    variances = means * 0.5
    trend = fit_trend_var(means, variances, n_bins=10)
    assert trend(np.array([0.0]))[0] == 0.0
    np.testing.assert_allclose(trend(np.array([2.0])), [1.0], rtol=0.05)
    # Flat past the last knot
    assert trend(np.array([100.0]))[0] == pytest.approx(trend(np.array([5.0]))[0], rel=0.05)


def test_fit_trend_needs_expressed_genes():
    with pytest.raises(ValueError):
        fit_trend_var(np.array([0.0, 0.0, 1.0]), np.array([0.0, 0.0, 1.0]))


def test_model_gene_var_decomposition(lognorm_adata):
    stats = model_gene_var(lognorm_adata)
    assert list(stats.columns) == ["mean", "total", "tech", "bio"]
    assert stats.index.equals(lognorm_adata.var_names)
    np.testing.assert_allclose(stats["total"], stats["tech"] + stats["bio"])
    assert (stats["total"] >= 0).all()


def test_model_gene_var_finds_variable_gene():
    rng = np.random.default_rng(0)
    X = rng.normal(1.0, 0.1, size=(200, 50)).clip(0)
    X[:, 7] = np.where(np.arange(200) < 100, 0.2, 3.0)
    adata = ad.AnnData(X=X, var=pd.DataFrame(index=[f"g{i}" for i in range(50)]))
    stats = model_gene_var(adata, layer=None, n_bins=5)
    assert get_top_hvgs(stats, n=1) == ["g7"]


def test_model_gene_var_blocked(lognorm_adata):
    lognorm_adata.obs["batch"] = np.where(np.arange(lognorm_adata.n_obs) < 150, "a", "b")
    stats = model_gene_var(lognorm_adata, block="batch")
    assert stats.index.equals(lognorm_adata.var_names)

    with pytest.raises(ValueError):
        model_gene_var(lognorm_adata, block="missing")


def test_get_top_hvgs_selection():
    stats = pd.DataFrame({"bio": [0.5, -0.1, 2.0, 1.0, 0.0]}, index=list("abcde"))
    assert get_top_hvgs(stats) == ["c", "d", "a"]
    assert get_top_hvgs(stats, n=2) == ["c", "d"]
    assert get_top_hvgs(stats, prop=0.2) == ["c"]
    assert get_top_hvgs(stats, var_threshold=0.75) == ["c", "d"]

    with pytest.raises(ValueError):
        get_top_hvgs(stats, n=2, prop=0.5)
    with pytest.raises(ValueError):
        get_top_hvgs(stats, prop=1.5)


def test_highly_variable_genes_marks_var(lognorm_adata):
    hvgs = highly_variable_genes(lognorm_adata, n_top=50)
    assert 0 < len(hvgs) <= 50
    assert lognorm_adata.var["highly_variable"].sum() == len(hvgs)
    assert "bio" in lognorm_adata.var


def test_highly_variable_genes_seurat_v3_uses_counts(lognorm_adata):
    hvgs = highly_variable_genes(lognorm_adata, method="seurat_v3", n_top=50)
    assert len(hvgs) == 50


def test_highly_variable_genes_seurat_reads_log_base(lognorm_adata):
    natural = ad.AnnData(X=lognorm_adata.X * np.log(2), var=pd.DataFrame(index=lognorm_adata.var_names))
    expected = highly_variable_genes(natural, method="seurat", n_top=50)
    assert sorted(highly_variable_genes(lognorm_adata, method="seurat", n_top=50)) == sorted(expected)


def test_highly_variable_genes_unknown_method(lognorm_adata):
    with pytest.raises(ValueError):
        highly_variable_genes(lognorm_adata, method="pearson")


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
