import h5py
import numpy as np
import pandas as pd
import pytest
import scipy.sparse

from ..utils.cache import CacheConfig
from .datasets import annotate_genes, load_dataset, read_10x_h5_subset, simulate_counts


def test_simulate_counts_ground_truth():
    adata = simulate_counts(n_cells=200, n_genes=300, n_mito=10, doublet_rate=0.1,
                            low_quality_rate=0.05, random_state=2)
    assert adata.shape == (200, 300)
    assert scipy.sparse.issparse(adata.X)
    assert adata.obs["is_low_quality"].sum() == 10
    assert adata.obs["is_doublet"].sum() == 20
    assert not (adata.obs["is_low_quality"] & adata.obs["is_doublet"]).any()
    assert adata.var_names[:10].str.startswith("MT-").all()

    again = simulate_counts(n_cells=200, n_genes=300, n_mito=10, doublet_rate=0.1,
                            low_quality_rate=0.05, random_state=2)
    assert (adata.X != again.X).nnz == 0


def test_simulate_counts_damaged_cells_have_high_mito():
    adata = annotate_genes(simulate_counts(n_cells=300, n_genes=200, random_state=3))
    counts = adata.X.toarray()
    mito_frac = counts[:, adata.var["mt"].to_numpy()].sum(axis=1) / counts.sum(axis=1)
    low = adata.obs["is_low_quality"].to_numpy()
    assert mito_frac[low].min() > mito_frac[~low].max()


@pytest.mark.parametrize("kwargs", [{"n_cells": 1}, {"n_genes": 5, "n_mito": 10}, {"doublet_rate": 0.7}])
def test_simulate_counts_invalid(kwargs):
    with pytest.raises(ValueError):
        simulate_counts(**kwargs)


def test_annotate_genes_by_prefix():
    adata = simulate_counts(n_cells=10, n_genes=30, n_mito=4)
    annotate_genes(adata)
    assert adata.var["mt"].sum() == 4
    assert (adata.var["gene_symbols"] == adata.var_names).all()


def test_annotate_genes_with_table():
    adata = simulate_counts(n_cells=10, n_genes=20, n_mito=2)
    adata.var["gene_ids"] = [f"ENSG{i:05d}" for i in range(adata.n_vars)]
    table = pd.DataFrame({
        "gene_id": ["ENSG00000", "ENSG00005", "ENSG00006"],
        "symbol": ["mt-Co1", "Actb", "Gapdh"],
        "chromosome": ["MT", "5", "6"],
    })
    annotate_genes(adata, annotation=table)
    assert adata.var["mt"].sum() == 1
    assert adata.var["gene_symbols"].iloc[5] == "Actb"
    # Unmapped ids keep their identifier
    assert adata.var["gene_symbols"].iloc[1] == "ENSG00001"

    with pytest.raises(ValueError):
        annotate_genes(adata, annotation=table.drop(columns="chromosome"))


def test_load_dataset_simulated_is_cached(tmp_path, monkeypatch):
    monkeypatch.setattr(CacheConfig, "CACHE_DIR", str(tmp_path))
    monkeypatch.setattr(CacheConfig, "CACHE_ENABLED", True)
    first = load_dataset("simulated", n_cells=50, n_genes=80)
    assert first.shape == (50, 80)
    assert "mt" in first.var
    assert len(list(tmp_path.glob("*.pkl"))) == 1

    second = load_dataset("simulated", n_cells=50, n_genes=80)
    assert (first.X != second.X).nnz == 0


def test_load_dataset_unknown():
    with pytest.raises(ValueError, match="Unknown dataset"):
        load_dataset("pbmc68k")


def _write_legacy_10x_h5(path, dense, genome="mm10"):
    matrix = scipy.sparse.csc_matrix(dense.T)
    with h5py.File(path, "w") as f:
        group = f.create_group(genome)
        group["data"] = matrix.data.astype(np.int32)
        group["indices"] = matrix.indices.astype(np.int64)
        group["indptr"] = matrix.indptr.astype(np.int64)
        group["shape"] = np.array(matrix.shape, dtype=np.int32)
        group["barcodes"] = np.array([f"AAAC-{i}" for i in range(dense.shape[0])], dtype="S")
        group["genes"] = np.array([f"ENSMUSG{i}" for i in range(dense.shape[1])], dtype="S")
        group["gene_names"] = np.array([f"Gene{i}" for i in range(dense.shape[1])], dtype="S")


def test_read_10x_h5_subset(tmp_path):
    rng = np.random.default_rng(0)
    dense = rng.poisson(1.0, size=(12, 7))
    path = tmp_path / "brain.h5"
    _write_legacy_10x_h5(path, dense)

    subset = read_10x_h5_subset(path, max_cells=5)
    assert subset.shape == (5, 7)
    np.testing.assert_array_equal(subset.X.toarray(), dense[:5])
    assert subset.obs_names[0] == "AAAC-0"
    assert subset.var["gene_ids"].iloc[3] == "ENSMUSG3"

    full = read_10x_h5_subset(path)
    assert full.n_obs == 12

    with pytest.raises(ValueError, match="Genome"):
        read_10x_h5_subset(path, genome="GRCh38")
    with pytest.raises(FileNotFoundError):
        read_10x_h5_subset(tmp_path / "missing.h5")
