"""Helpers shared by the vignette steps."""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import anndata as ad
from matplotlib.figure import Figure

from ...core.parallel.backends import ParallelBackend, get_backend
from ...core.transcriptomics.datasets import load_dataset
from ...core.transcriptomics.quality_control import calculate_qc_metrics, filter_cells, per_cell_qc_filters
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters, ScRNAProcessor
from ..pipeline.workflow_context import WorkflowContext

logger = logging.getLogger(__name__)

DEFAULT_DATASET = "simulated"
DEFAULT_FIGURE_DIR = "figures"


def load_input(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
               dataset_kwargs: Optional[Dict[str, Any]] = None) -> ad.AnnData:
    adata = load_dataset(dataset, **(dataset_kwargs or {}))
    context.add_log(f"Loaded dataset {dataset}: {adata.n_obs} cells x {adata.n_vars} genes")
    return adata


def quality_controlled(adata: ad.AnnData, params: ScRNAParameters) -> ad.AnnData:
    """Metrics, adaptive filters and filtering in one go, for vignettes that start after QC"""
    calculate_qc_metrics(adata, mito_key=params.mito_key)
    per_cell_qc_filters(adata, nmads=params.nmads, batch_key=params.batch_key, mito_key=params.mito_key)
    return filter_cells(adata, min_cells=params.min_cells)


def processor_for(adata: ad.AnnData, params: ScRNAParameters) -> ScRNAProcessor:
    processor = ScRNAProcessor(params)
    processor.adata = adata
    return processor


def save_figure(fig: Figure, figure_dir: Union[str, Path], name: str) -> str:
    """Write a figure as PNG; returns its path"""
    figure_dir = Path(figure_dir)
    figure_dir.mkdir(parents=True, exist_ok=True)
    path = figure_dir / f"{name}.png"
    fig.savefig(path, dpi=100, bbox_inches="tight")
    logger.debug(f"Saved figure {path}")
    return str(path)


def plot_figure(draw: Callable[[], Figure], figure_dir: Union[str, Path], name: str,
                context: Optional[WorkflowContext] = None) -> List[str]:
    """
    Draw and save a diagnostic figure.

    Figures are built with the object-oriented matplotlib API so steps
    running in parallel threads never share pyplot state. A failure to
    draw is logged as a warning and yields no figure.

    Returns:
        A list holding the figure path, or an empty list
    """
    try:
        return [save_figure(draw(), figure_dir, name)]
    except Exception as e:
        logger.warning(f"Could not draw figure {name}: {type(e).__name__}: {e}")
        if context is not None:
            context.add_warning(f"Figure {name} skipped: {e}")
        return []


def make_backend(backend: str = "multicore", workers: int = 2, work_dir: Optional[Union[str, Path]] = None,
                 submit_command: str = "sbatch") -> ParallelBackend:
    """Backend from run parameters; only the options a backend understands are passed on"""
    if backend == "serial":
        return get_backend("serial")
    if backend == "batchjobs":
        jobs_dir = Path(work_dir) / "jobs" if work_dir is not None else None
        return get_backend("batchjobs", submit_command=submit_command, work_dir=jobs_dir)
    return get_backend(backend, workers=workers)
