"""
Feature selection vignette.

Downstream steps such as clustering compare cells on their expression
profiles. Genes with only technical noise dilute these comparisons, so we
keep the genes whose expression varies most across cells beyond what is
expected from their mean expression.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import seaborn as sns
from matplotlib.figure import Figure

from ...core.transcriptomics.feature_selection import (
    fit_trend_var,
    get_top_hvgs,
    highly_variable_genes,
    model_gene_var,
)
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, plot_figure, processor_for, quality_controlled

logger = logging.getLogger(__name__)

TITLE = "Feature selection"


@workflow_step(name="Load normalized data")
def load_normalized(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                    dataset_kwargs: Optional[Dict[str, Any]] = None,
                    params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Starting point: quality-controlled cells with log-normalized
    expression values, as produced by the previous two vignettes.
    """
    params = params or ScRNAParameters()
    adata = quality_controlled(load_input(context, dataset, dataset_kwargs), params)
    processor = processor_for(adata, params)
    adata = processor.normalize()
    context.add_result("adata", adata)
    return {"summary": {"cells": adata.n_obs, "genes": adata.n_vars, "normalization": params.normalization_method}}


@workflow_step(name="Model the per-gene variance", dependencies=["load_normalized"])
def model_variance(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    We compute the variance of the log-expression values of each gene and
    fit a trend to the variance against the mean over all genes. Most
    genes are assumed to carry only uninteresting variation, so the trend
    estimates the technical component; the residual above the trend is the
    biological component. With a batch column the model is fitted per
    batch and averaged.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    stats = model_gene_var(adata, block=params.batch_key)
    context.add_result("variance_stats", stats)
    return {
        "summary": {
            "genes modelled": len(stats),
            "genes with positive biological component": int((stats["bio"] > 0).sum()),
        },
        "table": stats.sort_values("bio", ascending=False).head(10),
    }


@workflow_step(name="Plot the variance trend", dependencies=["model_variance"])
def plot_variance_trend(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    The trend follows the bulk of the genes; genes far above it are the
    candidates for selection.
    """
    stats = context.require_result("variance_stats")
    trend = fit_trend_var(stats["mean"].to_numpy(), stats["total"].to_numpy())

    def draw() -> Figure:
        fig = Figure(figsize=(6, 5))
        ax = fig.subplots()
        sns.scatterplot(x=stats["mean"], y=stats["total"], s=6, color="grey", linewidth=0, ax=ax)
        grid = np.linspace(0, stats["mean"].max(), 200)
        ax.plot(grid, trend(grid), color="dodgerblue", linewidth=2)
        ax.set_xlabel("Mean of log-expression")
        ax.set_ylabel("Variance of log-expression")
        return fig

    return {"figures": plot_figure(draw, figure_dir, "variance_trend", context)}


@workflow_step(name="Select highly variable genes", dependencies=["model_variance"])
def select_hvgs(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    We keep the genes with the largest biological components, up to a
    fixed number. The choice of number is a trade-off between keeping
    informative genes and excluding noise; a few thousand genes is a
    common default.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    stats = context.require_result("variance_stats")
    hvgs = get_top_hvgs(stats, n=params.n_hvgs)
    adata.var["highly_variable"] = adata.var_names.isin(hvgs)
    for column in stats.columns:
        adata.var[column] = stats[column]
    context.add_result("hvgs", hvgs)
    return {"summary": {"selected genes": len(hvgs), "top genes": hvgs[:10]}}


@workflow_step(name="Compare with a dispersion-based selection", dependencies=["select_hvgs"])
def compare_selections(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Scanpy's dispersion-based selection ranks genes by their normalized
    dispersion within bins of mean expression. It computes dispersions on
    the unlogged scale and reads the log base of our log2 values from
    `uns["log1p"]`, so it sees the same normalized expression. The two
    selections usually share most of their top genes.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    hvgs = set(context.require_result("hvgs"))
    scratch = adata.copy()
    dispersion = set(highly_variable_genes(scratch, method="seurat", n_top=max(1, len(hvgs))))
    shared = len(hvgs & dispersion)
    return {
        "summary": {
            "variance modelling": len(hvgs),
            "dispersion": len(dispersion),
            "shared": shared,
            "overlap fraction": shared / max(1, len(hvgs)),
        }
    }


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[load_normalized, model_variance, plot_variance_trend, select_hvgs, compare_selections],
        workflow_id="feature_selection",
        description=__doc__,
    )
