"""
File-backed matrices and block-wise computation for datasets that do not
fit in memory.
"""

from .blockwise import backed_qc_metrics, blockwise_gene_stats, blockwise_qc_metrics, read_backed
from .file_backed import FileBackedMatrix, lazy_log_normalize, write_hdf5_matrix

__all__ = [
    "FileBackedMatrix",
    "backed_qc_metrics",
    "blockwise_gene_stats",
    "blockwise_qc_metrics",
    "lazy_log_normalize",
    "read_backed",
    "write_hdf5_matrix",
]
