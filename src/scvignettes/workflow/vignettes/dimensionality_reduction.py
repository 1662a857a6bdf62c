"""
Dimensionality reduction vignette.

Principal components analysis compacts the highly variable genes into a
few dozen components that capture the dominant biological structure and
average out much of the technical noise. Clustering runs on the retained
components; UMAP and t-SNE are used only to look at the result in two
dimensions.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure

from ...core.transcriptomics.dimensionality import find_elbow_point
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, plot_figure, processor_for, quality_controlled

logger = logging.getLogger(__name__)

TITLE = "Dimensionality reduction"


@workflow_step(name="Prepare the data")
def prepare_data(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                 dataset_kwargs: Optional[Dict[str, Any]] = None,
                 params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Quality control, normalization and HVG selection as in the previous
    vignettes, run through the analysis processor.
    """
    params = params or ScRNAParameters()
    processor = processor_for(quality_controlled(load_input(context, dataset, dataset_kwargs), params), params)
    processor.normalize()
    hvgs = processor.select_features()
    context.add_result("processor", processor)
    return {"summary": {"cells": processor.adata.n_obs, "highly variable genes": len(hvgs)}}


@workflow_step(name="Principal components analysis", dependencies=["prepare_data"])
def run_pca(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    PCA is computed on the log-expression values of the highly variable
    genes. The scree plot shows the proportion of variance explained by
    each component; it typically drops quickly and then levels off.
    """
    processor = context.require_result("processor")
    processor.run_pca()
    ratio = np.asarray(processor.results["variance_explained"])
    elbow = find_elbow_point(ratio)

    def draw() -> Figure:
        fig = Figure(figsize=(6, 4))
        ax = fig.subplots()
        ax.plot(np.arange(1, ratio.size + 1), ratio * 100, marker="o", markersize=3)
        ax.axvline(elbow, color="red", linestyle="--")
        ax.set_xlabel("PC")
        ax.set_ylabel("Variance explained (%)")
        return fig

    return {
        "summary": {
            "components computed": int(ratio.size),
            "total variance explained": float(ratio.sum()),
        },
        "figures": plot_figure(draw, figure_dir, "pca_scree", context),
    }


@workflow_step(name="Choose the number of PCs", dependencies=["run_pca"])
def choose_pcs(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    A simple heuristic keeps the components up to the elbow of the scree
    curve, the point furthest from the straight line joining its ends.
    Later components explain little variance each and mostly add noise.
    """
    params = params or ScRNAParameters()
    processor = context.require_result("processor")
    ratio = processor.results["variance_explained"]
    n_pcs = processor.results["n_pcs_used"]
    return {
        "summary": {
            "elbow point": find_elbow_point(ratio),
            "PCs retained": n_pcs,
            "chosen by elbow": params.choose_pcs_by_elbow,
            "variance retained": float(np.sum(ratio[:n_pcs])),
        }
    }


@workflow_step(name="Graph-based clustering", dependencies=["choose_pcs"])
def cluster_cells(context: WorkflowContext) -> Dict[str, Any]:
    """
    We build a shared nearest-neighbour graph on the retained components
    and partition it with the Leiden algorithm. The silhouette width
    summarises how well separated the clusters are in PC space.
    """
    processor = context.require_result("processor")
    processor.run_clustering()
    table = pd.Series(processor.results["cluster_counts"], name="n_cells").to_frame()
    table.index.name = "cluster"
    summary = {"clusters": processor.results["n_clusters"]}
    if "silhouette_score" in processor.results:
        summary["silhouette"] = processor.results["silhouette_score"]
    return {"summary": summary, "table": table}


@workflow_step(name="Visualize with UMAP and t-SNE", dependencies=["cluster_cells"])
def visualize_embeddings(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    Both methods try to keep neighbouring cells close together in two
    dimensions. Distances between well-separated clusters are not
    meaningful in either plot, so conclusions should come from the
    clustering rather than from the picture.
    """
    processor = context.require_result("processor")
    processor.run_umap()
    adata = processor.adata

    figures = []
    for key in ("X_umap", "X_tsne"):
        if key not in adata.obsm:
            continue
        coords = adata.obsm[key]
        label = key[2:].upper()

        def draw(coords=coords, label=label) -> Figure:
            fig = Figure(figsize=(6, 5))
            ax = fig.subplots()
            sns.scatterplot(x=coords[:, 0], y=coords[:, 1], hue=adata.obs["leiden"].to_numpy(), s=6,
                            linewidth=0, ax=ax)
            ax.set_xlabel(f"{label} 1")
            ax.set_ylabel(f"{label} 2")
            ax.legend(title="cluster", markerscale=2, fontsize=8)
            return fig

        figures += plot_figure(draw, figure_dir, f"{label.lower()}_clusters", context)

    return {"summary": {"embeddings": [k for k in ("X_umap", "X_tsne") if k in adata.obsm]}, "figures": figures}


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[prepare_data, run_pca, choose_pcs, cluster_cells, visualize_embeddings],
        workflow_id="dimensionality_reduction",
        description=__doc__,
    )
