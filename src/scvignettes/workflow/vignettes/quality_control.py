"""
Quality control vignette.

Low-quality libraries (damaged cells, empty droplets that slipped through
cell calling) show up as cells with small libraries, few detected genes
and a high proportion of mitochondrial reads. Rather than fixing
thresholds by hand, we flag cells that are outliers for these metrics
relative to the rest of the dataset.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import scipy.sparse
import seaborn as sns
from matplotlib.figure import Figure

from ...core.transcriptomics.quality_control import calculate_qc_metrics, filter_cells, per_cell_qc_filters
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, plot_figure

logger = logging.getLogger(__name__)

TITLE = "Quality control"
QC_METRICS = ("total_counts", "n_genes_by_counts", "pct_counts_mt")


@workflow_step(name="Load the count matrix")
def load_counts(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                dataset_kwargs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    We start from a matrix of UMI counts with one row per cell and one
    column per gene. Mitochondrial genes are flagged from their symbols so
    that their share of each library can be measured.
    """
    adata = load_input(context, dataset, dataset_kwargs)
    context.add_result("adata", adata)
    return {
        "summary": {
            "dataset": dataset,
            "cells": adata.n_obs,
            "genes": adata.n_vars,
            "mitochondrial genes": int(adata.var["mt"].sum()),
        }
    }


@workflow_step(name="Compute QC metrics", dependencies=["load_counts"])
def compute_qc_metrics(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    For each cell we compute the total count (library size), the number of
    genes with non-zero counts and the percentage of counts assigned to
    mitochondrial genes.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    calculate_qc_metrics(adata, mito_key=params.mito_key)
    table = adata.obs[list(QC_METRICS)].describe().T
    return {"table": table}


@workflow_step(name="Identify outlier cells", dependencies=["compute_qc_metrics"])
def identify_outliers(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    A cell is an outlier when its metric lies more than a few median
    absolute deviations (MADs) from the median, in the problematic
    direction: low library size and few detected genes on a log scale,
    high mitochondrial percentage. When a batch column is given, medians
    and MADs are computed per batch.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    summary = per_cell_qc_filters(adata, nmads=params.nmads, batch_key=params.batch_key, mito_key=params.mito_key)
    # {filter: {batch: [lower, upper]}} on the original metric scale
    context.add_result("qc_thresholds", adata.uns["qc_thresholds"])
    return {"table": summary, "summary": {"nmads": params.nmads, "cells flagged": int(adata.obs["discard"].sum())}}


@workflow_step(name="Plot QC metrics", dependencies=["identify_outliers"])
def plot_qc_metrics(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    Plotting the metric distributions with discarded cells highlighted
    checks that the thresholds cut off the tails we expect and do not run
    through the bulk of the population.
    """
    adata = context.require_result("adata")
    frame = adata.obs[list(QC_METRICS) + ["discard"]].copy()
    frame["discard"] = frame["discard"].map({True: "discarded", False: "kept"})

    def draw() -> Figure:
        fig = Figure(figsize=(12, 4))
        axes = fig.subplots(1, len(QC_METRICS))
        for ax, metric in zip(axes, QC_METRICS):
            sns.stripplot(data=frame, y=metric, hue="discard", palette={"kept": "grey", "discarded": "orange"},
                          size=2, jitter=0.35, ax=ax)
            if metric != "pct_counts_mt":
                ax.set_yscale("log")
            ax.set_title(metric)
        fig.tight_layout()
        return fig

    figures = plot_figure(draw, figure_dir, "qc_metrics", context)

    def draw_scatter() -> Figure:
        fig = Figure(figsize=(5, 4))
        ax = fig.subplots()
        sns.scatterplot(data=frame, x="total_counts", y="pct_counts_mt", hue="discard",
                        palette={"kept": "grey", "discarded": "orange"}, s=8, linewidth=0, ax=ax)
        ax.set_xscale("log")
        return fig

    figures += plot_figure(draw_scatter, figure_dir, "qc_total_vs_mito", context)
    return {"figures": figures}


@workflow_step(name="Check the discarded cells", dependencies=["identify_outliers"])
def check_discarded(context: WorkflowContext, n_top: int = 10) -> Dict[str, Any]:
    """
    Outlier-based filtering can throw away a real cell type whose
    libraries are naturally small. Comparing average expression in the
    discarded and kept pools shows whether any genes are strongly enriched
    among discarded cells; apart from mitochondrial transcripts none
    should be. With simulated data we can also check the flags against
    the known damaged cells.
    """
    adata = context.require_result("adata")
    discard = adata.obs["discard"].to_numpy(dtype=bool)
    summary: Dict[str, Any] = {"discarded": int(discard.sum()), "kept": int((~discard).sum())}

    if discard.any() and (~discard).any():
        counts = adata.X
        lib = np.asarray(counts.sum(axis=1)).ravel()
        scale = 1e4 / np.where(lib > 0, lib, 1)
        normalized = scipy.sparse.diags(scale) @ counts if scipy.sparse.issparse(counts) else counts * scale[:, None]
        lost = np.asarray(normalized[discard].mean(axis=0)).ravel()
        kept = np.asarray(normalized[~discard].mean(axis=0)).ravel()
        log_fc = np.log2(lost + 1) - np.log2(kept + 1)
        table = pd.DataFrame({"mean_discarded": lost, "mean_kept": kept, "log2_fold_change": log_fc},
                             index=adata.var_names).sort_values("log2_fold_change", ascending=False).head(n_top)
    else:
        table = None

    if "is_low_quality" in adata.obs:
        truth = adata.obs["is_low_quality"].to_numpy(dtype=bool)
        summary["true positives"] = int((truth & discard).sum())
        summary["false positives"] = int((~truth & discard).sum())
        summary["missed"] = int((truth & ~discard).sum())

    result: Dict[str, Any] = {"summary": summary}
    if table is not None:
        result["table"] = table
    return result


@workflow_step(name="Filter cells", dependencies=["identify_outliers", "check_discarded"])
def remove_low_quality(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Finally we drop the flagged cells and genes detected in too few of the
    remaining cells.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    n_cells, n_genes = adata.n_obs, adata.n_vars
    filtered = filter_cells(adata, min_cells=params.min_cells)
    context.add_result("adata", filtered)
    return {
        "summary": {
            "cells before": n_cells,
            "cells after": filtered.n_obs,
            "genes before": n_genes,
            "genes after": filtered.n_vars,
        }
    }


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[load_counts, compute_qc_metrics, identify_outliers, plot_qc_metrics, check_discarded, remove_low_quality],
        workflow_id="quality_control",
        description=__doc__,
    )
