"""
Normalization vignette.

Systematic differences in sequencing coverage between libraries make
cells look different for purely technical reasons. Normalization removes
these differences by scaling each cell's counts with a size factor. The
simplest size factor is the library size; pooling-based deconvolution
additionally copes with composition biases between cell types.

Library-size factors and the quick clustering used by the deconvolution
do not depend on each other, so this vignette runs them concurrently.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure

from ...core.transcriptomics.normalization import (
    deconvolution_size_factors,
    library_size_factors,
    log_norm_counts,
    quick_cluster,
)
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, plot_figure, quality_controlled

logger = logging.getLogger(__name__)

TITLE = "Normalization"


@workflow_step(name="Load quality-controlled counts")
def load_filtered_counts(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                         dataset_kwargs: Optional[Dict[str, Any]] = None,
                         params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    We pick up where the quality control vignette left off: outlier cells
    have been removed and the raw counts are kept aside in a layer.
    """
    params = params or ScRNAParameters()
    adata = quality_controlled(load_input(context, dataset, dataset_kwargs), params)
    adata.layers["counts"] = adata.X.copy()
    context.add_result("adata", adata)
    return {"summary": {"cells": adata.n_obs, "genes": adata.n_vars}}


@workflow_step(name="Library size factors", dependencies=["load_filtered_counts"])
def compute_library_size_factors(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    The library size factor of a cell is its total count, scaled so that
    the factors have a mean of one across cells. Normalized values then
    stay on the scale of the original counts.
    """
    adata = context.require_result("adata")
    factors = library_size_factors(adata, layer="counts")
    context.add_result("library_size_factors", factors)

    def draw() -> Figure:
        fig = Figure(figsize=(5, 4))
        ax = fig.subplots()
        sns.histplot(np.log10(factors), bins=50, ax=ax)
        ax.set_xlabel("log10(library size factor)")
        return fig

    return {
        "summary": {
            "min": float(factors.min()),
            "median": float(np.median(factors)),
            "max": float(factors.max()),
        },
        "figures": plot_figure(draw, figure_dir, "library_size_factors", context),
    }


@workflow_step(name="Quick clustering", dependencies=["load_filtered_counts"])
def cluster_for_pooling(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Deconvolution assumes most genes are not differentially expressed
    between the cells of a pool. A coarse pre-clustering lets us pool
    similar cells only; each cluster is normalized separately and the
    clusters are rescaled against each other afterwards.
    """
    params = params or ScRNAParameters()
    adata = context.require_result("adata")
    clusters = quick_cluster(adata, min_size=params.quick_cluster_min_size, random_state=params.random_state,
                             layer="counts")
    context.add_result("quick_clusters", clusters)
    table = clusters.value_counts().rename("n_cells").to_frame()
    table.index.name = "cluster"
    return {"summary": {"clusters": int(clusters.nunique())}, "table": table}


@workflow_step(name="Deconvolution size factors",
               dependencies=["compute_library_size_factors", "cluster_for_pooling"])
def compute_deconvolution_factors(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    Counts are summed over pools of cells, pool-based size factors are
    computed against an average pseudo-cell and the per-cell factors are
    recovered by solving the linear system linking cells to pools. The
    deconvolution factors track the library size factors closely but
    deviate systematically for some clusters, which is exactly the
    composition bias the method corrects.
    """
    adata = context.require_result("adata")
    clusters = context.require_result("quick_clusters")
    lib_factors = context.require_result("library_size_factors")

    factors = deconvolution_size_factors(adata, clusters=clusters, layer="counts")
    adata.obs["size_factors"] = factors
    adata.obs["quick_cluster"] = clusters.values

    frame = pd.DataFrame({"library_size": lib_factors, "deconvolution": factors, "cluster": clusters.values})
    per_cluster = frame.assign(ratio=frame["deconvolution"] / frame["library_size"]).groupby(
        "cluster", observed=True
    )["ratio"].median().rename("median_ratio").to_frame()

    def draw() -> Figure:
        fig = Figure(figsize=(5, 5))
        ax = fig.subplots()
        sns.scatterplot(data=frame, x="library_size", y="deconvolution", hue="cluster", s=8, linewidth=0, ax=ax)
        ax.set_xscale("log")
        ax.set_yscale("log")
        lims = [min(factors.min(), lib_factors.min()), max(factors.max(), lib_factors.max())]
        ax.plot(lims, lims, color="red", linewidth=1)
        ax.set_xlabel("Library size factor")
        ax.set_ylabel("Deconvolution factor")
        return fig

    return {
        "summary": {
            "correlation with library size factors": float(np.corrcoef(factors, lib_factors)[0, 1]),
        },
        "table": per_cluster,
        "figures": plot_figure(draw, figure_dir, "deconvolution_vs_library_size", context),
    }


@workflow_step(name="Log-transform", dependencies=["compute_deconvolution_factors"])
def log_transform(context: WorkflowContext) -> Dict[str, Any]:
    """
    Each count is divided by its cell's size factor and log-transformed
    after adding a pseudo-count of one. Differences in log-values then
    represent log-fold changes in expression, which is what downstream
    distance-based methods operate on.
    """
    adata = context.require_result("adata")
    log_norm_counts(adata)
    logcounts = adata.layers["logcounts"]
    return {
        "summary": {
            "mean log-expression": float(logcounts.mean()),
            "max log-expression": float(logcounts.max()),
        }
    }


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[
            load_filtered_counts,
            compute_library_size_factors,
            cluster_for_pooling,
            compute_deconvolution_factors,
            log_transform,
        ],
        workflow_id="normalization",
        description=__doc__,
        execution_mode="PARALLEL",
    )
