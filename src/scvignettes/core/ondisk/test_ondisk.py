import dask.array as da
import numpy as np
import pytest
import scanpy as sc

from ..parallel.backends import MulticoreBackend, SerialBackend
from ..parallel.equivalence import check_equivalent
from ..transcriptomics.datasets import annotate_genes, simulate_counts
from .blockwise import backed_qc_metrics, blockwise_gene_stats, blockwise_qc_metrics, read_backed
from .file_backed import FileBackedMatrix, lazy_log_normalize, write_hdf5_matrix


@pytest.fixture
def counts_adata():
    return annotate_genes(simulate_counts(n_cells=230, n_genes=120, n_mito=5, random_state=9))


@pytest.fixture
def backed_file(tmp_path, counts_adata):
    path = tmp_path / "counts.h5"
    matrix = write_hdf5_matrix(
        counts_adata.X, path, chunk_rows=50,
        obs_names=counts_adata.obs_names, var_names=counts_adata.var_names,
    )
    matrix.close()
    return path


def test_write_and_read_blocks(backed_file, counts_adata):
    with FileBackedMatrix(backed_file) as matrix:
        assert matrix.shape == counts_adata.shape
        assert matrix.chunks == (50, counts_adata.n_vars)
        assert matrix.dtype == np.float32
        np.testing.assert_array_equal(matrix.row_block(40, 60), counts_adata.X[40:60].toarray())
        assert list(matrix.obs_names[:2]) == ["Cell_0", "Cell_1"]
        assert matrix.var_names[0] == "MT-1"

        blocks = list(matrix.iter_blocks())
        assert [(start, stop) for start, stop, _ in blocks][-1] == (200, 230)

        with pytest.raises(IndexError):
            matrix.row_block(10, 500)


def test_missing_file_and_dataset(tmp_path, backed_file):
    with pytest.raises(FileNotFoundError):
        FileBackedMatrix(tmp_path / "none.h5")
    with pytest.raises(KeyError):
        FileBackedMatrix(backed_file, dataset="logcounts")


def test_write_rejects_bad_names(tmp_path):
    with pytest.raises(ValueError):
        write_hdf5_matrix(np.ones((3, 2)), tmp_path / "x.h5", obs_names=["a"])
    with pytest.raises(ValueError):
        write_hdf5_matrix(np.ones((0, 2)), tmp_path / "y.h5")


def test_to_dask_is_lazy_view(backed_file, counts_adata):
    with FileBackedMatrix(backed_file) as matrix:
        lazy = matrix.to_dask()
        assert isinstance(lazy, da.Array)
        assert lazy.chunks[0] == (50, 50, 50, 50, 30)
        np.testing.assert_allclose(lazy.sum(axis=0).compute(), np.asarray(counts_adata.X.sum(axis=0)).ravel(), rtol=1e-5)


def test_lazy_log_normalize_and_realize(tmp_path, backed_file, counts_adata):
    dense = counts_adata.X.toarray()
    size_factors = dense.sum(axis=1) / dense.sum(axis=1).mean()

    with FileBackedMatrix(backed_file) as matrix:
        lazy = lazy_log_normalize(matrix.to_dask(), size_factors)
        assert isinstance(lazy, da.Array)
        realized = FileBackedMatrix.realize(lazy, tmp_path / "logcounts.h5", "logcounts")

    expected = np.log2(dense / size_factors[:, None] + 1)
    with realized:
        np.testing.assert_allclose(realized.row_block(0, realized.shape[0]), expected, rtol=1e-5)


def test_lazy_log_normalize_validates_factors(backed_file):
    with FileBackedMatrix(backed_file) as matrix:
        lazy = matrix.to_dask()
        with pytest.raises(ValueError):
            lazy_log_normalize(lazy, np.ones(3))
        with pytest.raises(ValueError):
            lazy_log_normalize(lazy, np.zeros(matrix.shape[0]))


def test_blockwise_qc_matches_scanpy(backed_file, counts_adata):
    qc = blockwise_qc_metrics(backed_file, mito_mask=counts_adata.var["mt"], block_size=64)
    sc.pp.calculate_qc_metrics(counts_adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True)

    assert list(qc.index) == list(counts_adata.obs_names)
    np.testing.assert_allclose(qc["total_counts"], counts_adata.obs["total_counts"], rtol=1e-5)
    np.testing.assert_array_equal(qc["n_genes_by_counts"], counts_adata.obs["n_genes_by_counts"])
    np.testing.assert_allclose(qc["pct_counts_mt"], counts_adata.obs["pct_counts_mt"], rtol=1e-4)


def test_blockwise_qc_equivalent_across_backends(backed_file, counts_adata):
    mito = counts_adata.var["mt"].to_numpy()
    serial = blockwise_qc_metrics(backed_file, mito_mask=mito, backend=SerialBackend())
    with MulticoreBackend(workers=2) as backend:
        parallel = blockwise_qc_metrics(backed_file, mito_mask=mito, backend=backend)
    assert check_equivalent(serial, parallel, rtol=0)


def test_blockwise_qc_rejects_bad_mask(backed_file):
    with pytest.raises(ValueError):
        blockwise_qc_metrics(backed_file, mito_mask=[True, False])


def test_blockwise_gene_stats(backed_file, counts_adata):
    stats = blockwise_gene_stats(backed_file, block_size=37)
    dense = counts_adata.X.toarray().astype(np.float64)
    np.testing.assert_allclose(stats["mean"], dense.mean(axis=0), rtol=1e-10)
    np.testing.assert_allclose(stats["var"], dense.var(axis=0, ddof=1), rtol=1e-8, atol=1e-8)
    np.testing.assert_array_equal(stats["n_cells_by_counts"], (dense > 0).sum(axis=0))
    assert stats.index[0] == "MT-1"


def test_backed_anndata_qc(tmp_path, counts_adata, backed_file):
    path = tmp_path / "counts.h5ad"
    counts_adata.write_h5ad(path)
    backed = read_backed(path)
    assert backed.isbacked

    qc = backed_qc_metrics(backed, chunk_size=60)
    expected = blockwise_qc_metrics(backed_file, mito_mask=counts_adata.var["mt"])
    np.testing.assert_allclose(qc["total_counts"], expected["total_counts"], rtol=1e-6)
    np.testing.assert_array_equal(qc["n_genes_by_counts"], expected["n_genes_by_counts"])
    backed.file.close()

    with pytest.raises(FileNotFoundError):
        read_backed(tmp_path / "missing.h5ad")
