"""
Doublet detection with Scrublet (as shipped in scanpy).

Scrublet simulates artificial doublets by summing random pairs of observed
cells, embeds observed and simulated profiles together and scores each
cell by the fraction of simulated doublets among its neighbours.
"""

import logging
from typing import Any, Dict, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

logger = logging.getLogger(__name__)


def detect_doublets(
    adata: ad.AnnData,
    expected_doublet_rate: float = 0.06,
    random_state: int = 0,
    layer: Optional[str] = "counts",
    batch_key: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Score cells for being doublets.

    Writes `doublet_score` and `predicted_doublet` to obs. When Scrublet
    cannot place a threshold automatically (no bimodality in the simulated
    scores), the threshold is the (1 - expected_doublet_rate) quantile of
    the observed scores.

    Args:
        adata: AnnData with raw counts in `layer` (X when None or missing)
        expected_doublet_rate: Expected fraction of doublets
        random_state: Seed for doublet simulation
        layer: Layer holding raw counts
        batch_key: Optional obs column; Scrublet runs per batch

    Returns:
        Dictionary with the threshold used and the predicted doublet rate
    """
    if not 0 < expected_doublet_rate < 1:
        raise ValueError("expected_doublet_rate must be in (0, 1)")

    counts = adata.layers[layer] if layer is not None and layer in adata.layers else adata.X
    scratch = ad.AnnData(X=counts.copy(), obs=adata.obs[[batch_key]].copy() if batch_key else pd.DataFrame(index=adata.obs_names))
    n_prin_comps = max(2, min(30, scratch.n_obs - 1, scratch.n_vars - 1))

    sc.pp.scrublet(
        scratch,
        expected_doublet_rate=expected_doublet_rate,
        n_prin_comps=n_prin_comps,
        random_state=random_state,
        batch_key=batch_key,
        verbose=False,
    )

    scores = scratch.obs["doublet_score"].to_numpy(dtype=float)
    threshold = scratch.uns.get("scrublet", {}).get("threshold")
    if threshold is None or "predicted_doublet" not in scratch.obs or scratch.obs["predicted_doublet"].isna().any():
        threshold = float(np.quantile(scores, 1 - expected_doublet_rate))
        logger.warning(
            f"Scrublet could not set a doublet threshold automatically; using the score quantile {threshold:.3f}"
        )
        predicted = scores > threshold
    else:
        predicted = scratch.obs["predicted_doublet"].to_numpy(dtype=bool)

    adata.obs["doublet_score"] = scores
    adata.obs["predicted_doublet"] = predicted

    result = {"threshold": float(threshold), "doublet_rate": float(np.mean(predicted))}
    logger.info(f"Detected doublet rate: {result['doublet_rate']:.4f} (threshold {result['threshold']:.3f})")
    return result


def doublets_by_cluster(adata: ad.AnnData, cluster_key: str = "leiden") -> pd.DataFrame:
    """
    Per-cluster doublet summary.

    Clusters made up mostly of high-scoring cells are candidate doublet
    clusters sitting between two real cell types.
    """
    missing = {cluster_key, "doublet_score", "predicted_doublet"} - set(adata.obs.columns)
    if missing:
        raise ValueError(f"Missing obs columns {sorted(missing)}. Run clustering and detect_doublets() first.")

    summary = adata.obs.groupby(cluster_key, observed=True).agg(
        n_cells=("doublet_score", "size"),
        median_score=("doublet_score", "median"),
        doublet_fraction=("predicted_doublet", "mean"),
    )
    return summary.sort_values("median_score", ascending=False)
