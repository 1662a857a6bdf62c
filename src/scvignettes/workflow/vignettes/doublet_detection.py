"""
Doublet detection vignette.

A doublet is a droplet that captured two cells. Its expression profile is
a mixture that can masquerade as an intermediate cell state or a novel
cell type. Scrublet simulates doublets from the data itself and scores
each real cell by how many simulated doublets sit among its neighbours.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import seaborn as sns
from matplotlib.figure import Figure
from sklearn.metrics import roc_auc_score

from ...core.transcriptomics.doublets import doublets_by_cluster
from ...core.transcriptomics.sc_rna_processor import ScRNAParameters
from ..pipeline.workflow_context import WorkflowContext
from ..pipeline.workflow_factory import WorkflowFactory
from ..pipeline.workflow_utils import workflow_step
from ._common import DEFAULT_DATASET, DEFAULT_FIGURE_DIR, load_input, plot_figure, processor_for, quality_controlled

logger = logging.getLogger(__name__)

TITLE = "Doublet detection"


@workflow_step(name="Cluster the cells")
def prepare_clusters(context: WorkflowContext, dataset: str = DEFAULT_DATASET,
                     dataset_kwargs: Optional[Dict[str, Any]] = None,
                     params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Doublet scores are easiest to interpret against a clustering, so we
    first run the analysis from the previous vignettes up to the UMAP.
    """
    params = params or ScRNAParameters()
    processor = processor_for(quality_controlled(load_input(context, dataset, dataset_kwargs), params), params)
    processor.normalize()
    processor.select_features()
    processor.run_pca()
    processor.run_clustering()
    processor.run_umap()
    context.add_result("processor", processor)
    return {"summary": {"cells": processor.adata.n_obs, "clusters": processor.results["n_clusters"]}}


@workflow_step(name="Score doublets", dependencies=["prepare_clusters"])
def score_doublets(context: WorkflowContext, params: Optional[ScRNAParameters] = None) -> Dict[str, Any]:
    """
    Scrublet works on the raw counts. The expected doublet rate sets the
    number of simulated doublets and, when the score distribution is not
    clearly bimodal, the score quantile used as threshold.
    """
    params = params or ScRNAParameters()
    processor = context.require_result("processor")
    result = processor.detect_doublets()
    scores = processor.adata.obs["doublet_score"]
    return {
        "summary": {
            "expected doublet rate": params.expected_doublet_rate,
            "threshold": result["threshold"],
            "predicted doublet rate": result["doublet_rate"],
            "median score": float(scores.median()),
        }
    }


@workflow_step(name="Doublets per cluster", dependencies=["score_doublets"])
def summarize_by_cluster(context: WorkflowContext) -> Dict[str, Any]:
    """
    Clusters whose cells have consistently high scores are candidates for
    doublet clusters. They should be checked for co-expression of markers
    from two unrelated cell types before being removed.
    """
    processor = context.require_result("processor")
    table = doublets_by_cluster(processor.adata)
    return {"summary": {"highest-scoring cluster": str(table.index[0])}, "table": table}


@workflow_step(name="Plot doublet scores", dependencies=["score_doublets"])
def plot_doublet_scores(context: WorkflowContext, figure_dir: str = DEFAULT_FIGURE_DIR) -> Dict[str, Any]:
    """
    The score histogram should show a large mode of singlets and a tail of
    doublets; on the UMAP the high scores concentrate between clusters.
    """
    processor = context.require_result("processor")
    adata = processor.adata
    scores = adata.obs["doublet_score"].to_numpy()
    threshold = processor.results["doublet_threshold"]

    def draw_histogram() -> Figure:
        fig = Figure(figsize=(5, 4))
        ax = fig.subplots()
        sns.histplot(scores, bins=50, ax=ax)
        ax.axvline(threshold, color="red", linestyle="--")
        ax.set_xlabel("Doublet score")
        return fig

    figures = plot_figure(draw_histogram, figure_dir, "doublet_score_histogram", context)

    if "X_umap" in adata.obsm:
        coords = adata.obsm["X_umap"]

        def draw_umap() -> Figure:
            fig = Figure(figsize=(6, 5))
            ax = fig.subplots()
            points = ax.scatter(coords[:, 0], coords[:, 1], c=scores, s=6, cmap="viridis")
            fig.colorbar(points, ax=ax, label="Doublet score")
            ax.set_xlabel("UMAP 1")
            ax.set_ylabel("UMAP 2")
            return fig

        figures += plot_figure(draw_umap, figure_dir, "doublet_score_umap", context)

    return {"figures": figures}


@workflow_step(name="Compare with known doublets", dependencies=["score_doublets"])
def compare_with_truth(context: WorkflowContext) -> Dict[str, Any]:
    """
    Simulated datasets record which cells are real doublets, so we can
    measure how well the scores rank them. For real data this step only
    reports the number of predicted doublets.
    """
    adata = context.require_result("processor").adata
    predicted = adata.obs["predicted_doublet"].to_numpy(dtype=bool)
    summary: Dict[str, Any] = {"predicted doublets": int(predicted.sum())}

    if "is_doublet" in adata.obs:
        truth = adata.obs["is_doublet"].to_numpy(dtype=bool)
        summary["known doublets"] = int(truth.sum())
        summary["recovered"] = int((truth & predicted).sum())
        if 0 < truth.sum() < truth.size:
            summary["ROC AUC"] = float(roc_auc_score(truth, adata.obs["doublet_score"].to_numpy()))
        if truth.any():
            summary["mean score of known doublets"] = float(np.mean(adata.obs["doublet_score"].to_numpy()[truth]))
    return {"summary": summary}


def create_workflow(factory: Optional[WorkflowFactory] = None) -> Dict[str, Any]:
    factory = factory or WorkflowFactory()
    return factory.create_workflow_from_functions(
        name=TITLE,
        steps=[prepare_clusters, score_doublets, summarize_by_cluster, plot_doublet_scores, compare_with_truth],
        workflow_id="doublet_detection",
        description=__doc__,
    )
