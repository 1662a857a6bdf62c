"""
Dense, row-chunked HDF5 matrices exposed as lazy dask arrays.

Cells are rows and each HDF5 chunk holds a contiguous block of cells over
all genes, so per-cell work reads whole chunks and per-gene work combines
per-block partial results.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional, Sequence, Tuple, Union

import dask.array as da
import h5py
import numpy as np
import pandas as pd
import scipy.sparse

logger = logging.getLogger(__name__)


def write_hdf5_matrix(
    matrix,
    path: Union[str, Path],
    dataset: str = "counts",
    chunk_rows: int = 1000,
    obs_names: Optional[Sequence[str]] = None,
    var_names: Optional[Sequence[str]] = None,
    compression: Optional[str] = "gzip",
) -> "FileBackedMatrix":
    """
    Write a matrix to a row-chunked dense HDF5 dataset.

    The input is written one block of `chunk_rows` rows at a time, so a
    sparse matrix is never densified as a whole.

    Args:
        matrix: Dense array or scipy sparse matrix (cells x genes)
        path: Output HDF5 file; created or appended to
        dataset: Dataset name inside the file
        chunk_rows: Rows per HDF5 chunk
        obs_names: Optional cell names stored alongside
        var_names: Optional gene names stored alongside
        compression: HDF5 compression filter

    Returns:
        A FileBackedMatrix opened on the new dataset
    """
    if chunk_rows < 1:
        raise ValueError("chunk_rows must be positive")
    n_rows, n_cols = matrix.shape
    if n_rows == 0 or n_cols == 0:
        raise ValueError("Cannot write an empty matrix")
    dtype = np.float32 if np.issubdtype(matrix.dtype, np.integer) else matrix.dtype
    chunk_rows = min(chunk_rows, n_rows)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(path, "a") as f:
        if dataset in f:
            del f[dataset]
        dset = f.create_dataset(
            dataset, shape=(n_rows, n_cols), dtype=dtype, chunks=(chunk_rows, n_cols), compression=compression
        )
        for start in range(0, n_rows, chunk_rows):
            stop = min(start + chunk_rows, n_rows)
            block = matrix[start:stop]
            dset[start:stop] = block.toarray() if scipy.sparse.issparse(block) else np.asarray(block)

        for key, names in (("obs_names", obs_names), ("var_names", var_names)):
            if names is None:
                continue
            if len(names) != (n_rows if key == "obs_names" else n_cols):
                raise ValueError(f"{key} has the wrong length")
            if key in f:
                del f[key]
            f.create_dataset(key, data=np.asarray(names, dtype=object), dtype=h5py.string_dtype())

    logger.info(f"Wrote {n_rows} x {n_cols} matrix to {path}:{dataset} in chunks of {chunk_rows} rows")
    return FileBackedMatrix(path, dataset)


class FileBackedMatrix:
    """Read-only handle on a row-chunked HDF5 matrix."""

    def __init__(self, path: Union[str, Path], dataset: str = "counts"):
        self.path = Path(path)
        self.dataset = dataset
        if not self.path.exists():
            raise FileNotFoundError(f"HDF5 file not found: {self.path}")
        self._file = h5py.File(self.path, "r")
        if dataset not in self._file:
            self._file.close()
            raise KeyError(f"Dataset '{dataset}' not found in {self.path}")
        self._dset = self._file[dataset]

    @property
    def shape(self) -> Tuple[int, int]:
        return self._dset.shape

    @property
    def dtype(self):
        return self._dset.dtype

    @property
    def chunks(self) -> Tuple[int, int]:
        return self._dset.chunks or self._dset.shape

    @property
    def obs_names(self) -> pd.Index:
        return self._names("obs_names", self.shape[0])

    @property
    def var_names(self) -> pd.Index:
        return self._names("var_names", self.shape[1])

    def _names(self, key: str, n: int) -> pd.Index:
        if key in self._file:
            return pd.Index(self._file[key].asstr()[()])
        return pd.Index([str(i) for i in range(n)])

    def row_block(self, start: int, stop: int) -> np.ndarray:
        """Read rows [start, stop) into memory."""
        if not 0 <= start < stop <= self.shape[0]:
            raise IndexError(f"Invalid row range [{start}, {stop}) for {self.shape[0]} rows")
        return self._dset[start:stop]

    def iter_blocks(self, block_size: Optional[int] = None) -> Iterator[Tuple[int, int, np.ndarray]]:
        block_size = block_size or self.chunks[0]
        for start in range(0, self.shape[0], block_size):
            stop = min(start + block_size, self.shape[0])
            yield start, stop, self.row_block(start, stop)

    def to_dask(self) -> da.Array:
        """Lazy dask view; one dask chunk per HDF5 chunk of rows."""
        return da.from_array(self._dset, chunks=(self.chunks[0], self.shape[1]), lock=True)

    @staticmethod
    def realize(array: da.Array, path: Union[str, Path], dataset: str) -> "FileBackedMatrix":
        """
        Compute a lazy array block by block into an HDF5 dataset.

        `path` must not be open for reading by another handle.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        da.to_hdf5(str(path), f"/{dataset}", array)
        logger.info(f"Realized {array.shape} array to {path}:{dataset}")
        return FileBackedMatrix(path, dataset)

    def close(self) -> None:
        if self._file.id.valid:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"FileBackedMatrix('{self.path}', '{self.dataset}', shape={self.shape})"


def lazy_log_normalize(
    matrix: da.Array,
    size_factors: Sequence[float],
    pseudo_count: float = 1.0,
    log_base: float = 2.0,
) -> da.Array:
    """
    Deferred log-normalization: log(x / size_factor + pseudo_count).

    Nothing is read or computed until the result is computed or realized.
    """
    size_factors = np.asarray(size_factors, dtype=float)
    if size_factors.shape != (matrix.shape[0],):
        raise ValueError("size_factors must have one value per row")
    if np.any(size_factors <= 0):
        raise ValueError("size_factors must be positive")

    factors = da.from_array(size_factors[:, None], chunks=(matrix.chunks[0], 1))
    return da.log(matrix / factors + pseudo_count) / np.log(log_base)
