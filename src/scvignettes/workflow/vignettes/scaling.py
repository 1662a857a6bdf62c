"""
Scaling to large datasets.

Datasets with hundreds of thousands of cells do not fit comfortably in
memory. Here the count matrix lives in a chunked HDF5 file and every
computation reads it one block of cells at a time. Blocks are independent,
so they can be farmed out to a parallel backend: worker processes on this
machine, a dask cluster, or jobs submitted to a batch scheduler.

A parallel backend must give the same answer as a serial loop. The
vignette checks this explicitly and the build stops if the results
differ.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import seaborn as sns
from matplotlib.figure import Figure

from ...core.ondisk.blockwise import backed_qc_metrics, blockwise_gene_stats, blockwise_qc_metrics, read_backed
from ...core.ondisk.file_backed import FileBackedMatrix, lazy_log_normalize, write_hdf5_matrix
from ...core.parallel.backends import SerialBackend
from ...core.parallel.equivalence import check_equivalent
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, make_backend, plot_figure

logger = logging.getLogger(__name__)

TITLE = "Scaling to large datasets"

COUNTS_FILE = "counts.h5"
LOGCOUNTS_FILE = "logcounts.h5"


@workflow_step(name="Write a file-backed matrix")
def write_file_backed(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                      dataset_kwargs: Optional[Dict[str, Any]] = None,
                      work_dir: str = "work", chunk_rows: int = 500,
                      params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    The counts are written to an HDF5 dataset chunked by rows, so that a
    block of cells can be read without touching the rest of the file. In
    practice the file would come straight from the sequencing pipeline;
    here we write it from an in-memory dataset.
    """
    params = params or ScRNAParameters()
    adata = load_input(context, dataset, dataset_kwargs)
    path = Path(work_dir) / COUNTS_FILE
    with write_hdf5_matrix(adata.X, path, chunk_rows=chunk_rows,
                           obs_names=adata.obs_names, var_names=adata.var_names) as matrix:
        shape, chunks = matrix.shape, matrix.chunks

    context.add_result("adata", adata)
    context.add_result("counts_path", str(path))
    context.add_result("mito_mask", adata.var[params.mito_key].to_numpy(dtype=bool))
    context.add_artifact("counts", str(path))
    return {
        "summary": {
            "file": str(path),
            "shape": list(shape),
            "chunk shape": list(chunks),
            "blocks": int(np.ceil(shape[0] / chunks[0])),
            "file size (MB)": path.stat().st_size / 1e6,
        }
    }


@workflow_step(name="Blockwise QC metrics, serially", dependencies=["write_file_backed"])
def qc_serial(context: WorkflowContext) -> Dict[str, Any]:
    """
    The per-cell QC metrics only need the counts of one cell at a time,
    so each block is processed on its own and the per-block results are
    concatenated. This first pass runs the blocks one after another.
    """
    metrics = blockwise_qc_metrics(context.require_result("counts_path"),
                                   mito_mask=context.require_result("mito_mask"), backend=SerialBackend())
    context.add_result("qc_serial_metrics", metrics)
    return {"summary": {"cells": len(metrics), "median library size": float(metrics["total_counts"].median())}}


@workflow_step(name="Blockwise QC metrics, in parallel", dependencies=["write_file_backed"])
def qc_parallel(context: WorkflowContext, backend: str = "multicore", workers: int = 2,
                work_dir: str = "work", submit_command: str = "sbatch") -> Dict[str, Any]:
    """
    The same computation with the blocks distributed over a parallel
    backend. Only the file path and the block bounds travel to the
    workers; each worker opens the file and reads its own block.
    """
    with make_backend(backend, workers=workers, work_dir=work_dir, submit_command=submit_command) as executor:
        metrics = blockwise_qc_metrics(context.require_result("counts_path"),
                                       mito_mask=context.require_result("mito_mask"), backend=executor)
        description = repr(executor)
    context.add_result("qc_parallel_metrics", metrics)
    return {"summary": {"backend": description, "cells": len(metrics)}}


@workflow_step(name="Check the backends agree", dependencies=["qc_serial", "qc_parallel"])
def check_backend_equivalence(context: WorkflowContext) -> Dict[str, Any]:
    """
    Serial and parallel results must be identical, cell for cell. A
    mismatch means the parallel backend dropped, reordered or corrupted
    blocks, and nothing computed with it can be trusted, so the check
    raises and halts the build.
    """
    serial = context.require_result("qc_serial_metrics")
    parallel = context.require_result("qc_parallel_metrics")
    check_equivalent(serial, parallel, rtol=0.0, label="qc_metrics")
    return {"summary": {"cells compared": len(serial), "metrics compared": list(serial.columns), "identical": True}}


@workflow_step(name="Lazy log-normalization", dependencies=["check_backend_equivalence"])
def lazy_normalize(context: WorkflowContext, work_dir: str = "work") -> Dict[str, Any]:
    """
    With dask the normalization is expressed on the whole matrix but only
    builds a task graph: one task per block and operation. Writing the
    result to a new HDF5 file computes the graph block by block, so memory
    use stays bounded by a few blocks.
    """
    metrics = context.require_result("qc_serial_metrics")
    total = metrics["total_counts"].to_numpy(dtype=float)
    size_factors = total / total.mean()

    out_path = Path(work_dir) / LOGCOUNTS_FILE
    out_path.unlink(missing_ok=True)
    with FileBackedMatrix(context.require_result("counts_path")) as counts:
        lazy = lazy_log_normalize(counts.to_dask(), size_factors)
        n_tasks = len(lazy.__dask_graph__())
        with FileBackedMatrix.realize(lazy, out_path, "logcounts") as logcounts:
            shape = logcounts.shape

    context.add_result("logcounts_path", str(out_path))
    context.add_artifact("logcounts", str(out_path))
    return {
        "summary": {
            "graph tasks": n_tasks,
            "dask chunks": list(lazy.numblocks),
            "output": str(out_path),
            "shape": list(shape),
        }
    }


@workflow_step(name="Blockwise gene statistics", dependencies=["lazy_normalize"])
def gene_statistics(context: WorkflowContext, backend: str = "multicore", workers: int = 2,
                    work_dir: str = "work", submit_command: str = "sbatch",
                    figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    Per-gene means and variances combine across blocks from partial sums
    of values and squared values. These are the inputs to variance
    modelling for feature selection, obtained without loading the matrix.
    """
    path = context.require_result("logcounts_path")
    with make_backend(backend, workers=workers, work_dir=work_dir, submit_command=submit_command) as executor:
        stats = blockwise_gene_stats(path, dataset="logcounts", backend=executor)
    with FileBackedMatrix(context.require_result("counts_path")) as counts:
        stats.index = counts.var_names
        n_cells = counts.shape[0]

    def draw() -> Figure:
        fig = Figure(figsize=(6, 5))
        ax = fig.subplots()
        sns.scatterplot(x=stats["mean"], y=stats["var"], s=6, color="grey", linewidth=0, ax=ax)
        ax.set_xlabel("Mean of log-expression")
        ax.set_ylabel("Variance of log-expression")
        return fig

    return {
        "summary": {"genes": len(stats), "detected in every cell": int((stats["n_cells_by_counts"] == n_cells).sum())},
        "table": stats.sort_values("var", ascending=False).head(10),
        "figures": plot_figure(draw, figure_dir, "blockwise_mean_variance", context),
    }


@workflow_step(name="Backed AnnData", dependencies=["check_backend_equivalence"])
def backed_anndata(context: WorkflowContext, work_dir: str = "work", chunk_rows: int = 500) -> Dict[str, Any]:
    """
    AnnData offers the same pattern natively: an h5ad file opened in
    backed mode keeps X on disk and hands out chunks of cells on request.
    The chunked QC metrics match the blockwise ones.
    """
    path = Path(work_dir) / "counts.h5ad"
    context.require_result("adata").write_h5ad(path)

    adata = read_backed(path)
    try:
        metrics = backed_qc_metrics(adata, chunk_size=chunk_rows)
    finally:
        adata.file.close()

    check_equivalent(context.require_result("qc_serial_metrics"), metrics, rtol=1e-6, label="backed_qc_metrics")
    return {"summary": {"file": str(path), "backed": True, "matches blockwise metrics": True}}


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[
            write_file_backed,
            qc_serial,
            qc_parallel,
            check_backend_equivalence,
            lazy_normalize,
            gene_statistics,
            backed_anndata,
        ],
        workflow_id="scaling",
        description=__doc__,
    )
