"""
Block-wise statistics over file-backed matrices.

Every block is an independent task that opens the file itself, so blocks
can run on any parallel backend (including separate machines sharing a
filesystem). Partial results are combined in block order, which makes the
result identical whichever backend computed the blocks.
"""

import logging
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import anndata as ad
import h5py
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse

from ..parallel.backends import ParallelBackend, SerialBackend
from .file_backed import FileBackedMatrix

logger = logging.getLogger(__name__)


def _block_ranges(n_rows: int, block_size: int) -> List[Tuple[int, int]]:
    if block_size < 1:
        raise ValueError("block_size must be positive")
    return [(start, min(start + block_size, n_rows)) for start in range(0, n_rows, block_size)]


def _read_block(path: str, dataset: str, bounds: Tuple[int, int]) -> np.ndarray:
    start, stop = bounds
    with h5py.File(path, "r") as f:
        return f[dataset][start:stop]


def _qc_block(bounds: Tuple[int, int], path: str, dataset: str, mito_mask: Optional[np.ndarray]) -> Dict[str, np.ndarray]:
    block = _read_block(path, dataset, bounds)
    return _qc_from_block(block, mito_mask)


def _qc_from_block(block, mito_mask: Optional[np.ndarray]) -> Dict[str, np.ndarray]:
    if scipy.sparse.issparse(block):
        total = np.asarray(block.sum(axis=1)).ravel()
        detected = block.getnnz(axis=1)
        mito = np.asarray(block[:, mito_mask].sum(axis=1)).ravel() if mito_mask is not None else np.zeros_like(total)
    else:
        total = block.sum(axis=1, dtype=np.float64)
        detected = np.count_nonzero(block, axis=1)
        mito = block[:, mito_mask].sum(axis=1, dtype=np.float64) if mito_mask is not None else np.zeros_like(total)
    return {"total_counts": total.astype(np.float64), "n_genes_by_counts": np.asarray(detected, dtype=np.int64), "mito_counts": mito.astype(np.float64)}


def _qc_frame(parts: Sequence[Dict[str, np.ndarray]], index: pd.Index) -> pd.DataFrame:
    total = np.concatenate([p["total_counts"] for p in parts])
    mito = np.concatenate([p["mito_counts"] for p in parts])
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(total > 0, 100 * mito / total, 0.0)
    return pd.DataFrame(
        {
            "total_counts": total,
            "n_genes_by_counts": np.concatenate([p["n_genes_by_counts"] for p in parts]),
            "pct_counts_mt": pct,
        },
        index=index,
    )


def blockwise_qc_metrics(
    path: Union[str, Path],
    dataset: str = "counts",
    mito_mask: Optional[Sequence[bool]] = None,
    block_size: Optional[int] = None,
    backend: Optional[ParallelBackend] = None,
) -> pd.DataFrame:
    """
    Per-cell QC metrics of a file-backed matrix, one task per row block.

    Args:
        path: HDF5 file written by write_hdf5_matrix
        dataset: Dataset name
        mito_mask: Boolean mask of mitochondrial genes
        block_size: Rows per task (defaults to the HDF5 chunk size)
        backend: Parallel backend (serial when None)

    Returns:
        DataFrame indexed by cell with `total_counts`, `n_genes_by_counts`
        and `pct_counts_mt`
    """
    backend = backend or SerialBackend()
    with FileBackedMatrix(path, dataset) as matrix:
        n_rows, n_cols = matrix.shape
        block_size = block_size or matrix.chunks[0]
        index = matrix.obs_names

    if mito_mask is not None:
        mito_mask = np.asarray(mito_mask, dtype=bool)
        if mito_mask.shape != (n_cols,):
            raise ValueError(f"mito_mask must have {n_cols} entries")

    ranges = _block_ranges(n_rows, block_size)
    logger.info(f"Computing QC metrics over {len(ranges)} blocks with {backend!r}")
    parts = backend.map(partial(_qc_block, path=str(path), dataset=dataset, mito_mask=mito_mask), ranges)
    return _qc_frame(parts, index)


def _gene_stats_block(bounds: Tuple[int, int], path: str, dataset: str) -> Dict[str, np.ndarray]:
    block = _read_block(path, dataset, bounds).astype(np.float64)
    return {
        "n": block.shape[0],
        "sum": block.sum(axis=0),
        "sum_sq": (block ** 2).sum(axis=0),
        "nnz": np.count_nonzero(block, axis=0),
    }


def blockwise_gene_stats(
    path: Union[str, Path],
    dataset: str = "counts",
    block_size: Optional[int] = None,
    backend: Optional[ParallelBackend] = None,
) -> pd.DataFrame:
    """
    Per-gene mean, unbiased variance and detection count from block
    partial sums.

    Returns:
        DataFrame indexed by gene with `mean`, `var` and `n_cells_by_counts`
    """
    backend = backend or SerialBackend()
    with FileBackedMatrix(path, dataset) as matrix:
        n_rows = matrix.shape[0]
        block_size = block_size or matrix.chunks[0]
        index = matrix.var_names

    parts = backend.map(partial(_gene_stats_block, path=str(path), dataset=dataset), _block_ranges(n_rows, block_size))

    n = sum(p["n"] for p in parts)
    total = np.sum([p["sum"] for p in parts], axis=0)
    total_sq = np.sum([p["sum_sq"] for p in parts], axis=0)
    mean = total / n
    var = (total_sq - n * mean ** 2) / max(n - 1, 1)
    return pd.DataFrame(
        {
            "mean": mean,
            "var": np.clip(var, 0, None),
            "n_cells_by_counts": np.sum([p["nnz"] for p in parts], axis=0),
        },
        index=index,
    )


def read_backed(path: Union[str, Path]) -> ad.AnnData:
    """Open an h5ad file in backed mode; X stays on disk."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"h5ad file not found: {path}")
    return sc.read_h5ad(path, backed="r")


def backed_qc_metrics(adata: ad.AnnData, chunk_size: int = 1000, mito_key: str = "mt") -> pd.DataFrame:
    """
    Per-cell QC metrics of a (possibly backed) AnnData, reading X one chunk
    of cells at a time with `chunked_X`.
    """
    mito_mask = adata.var[mito_key].to_numpy(dtype=bool) if mito_key in adata.var else None
    if mito_mask is None:
        logger.warning(f"No '{mito_key}' column in var; mitochondrial percentages will be zero")

    parts = [_qc_from_block(chunk, mito_mask) for chunk, _, _ in adata.chunked_X(chunk_size)]
    return _qc_frame(parts, adata.obs_names)
