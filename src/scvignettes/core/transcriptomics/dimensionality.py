import logging
from typing import Sequence

import anndata as ad
import numpy as np

logger = logging.getLogger(__name__)


def find_elbow_point(variance_ratio: Sequence[float]) -> int:
    """
    Number of PCs up to the elbow of a scree curve.

    The elbow is the point with the largest perpendicular distance from
    the line joining the first and last points of the curve.
    """
    y = np.asarray(variance_ratio, dtype=float)
    if y.size == 0:
        raise ValueError("variance_ratio is empty")
    if y.size < 3:
        return int(y.size)

    x = np.arange(y.size, dtype=float)
    start = np.array([x[0], y[0]])
    direction = np.array([x[-1], y[-1]]) - start
    direction /= np.linalg.norm(direction)

    offsets = np.column_stack([x, y]) - start
    projections = np.outer(offsets @ direction, direction)
    distances = np.linalg.norm(offsets - projections, axis=1)
    return max(1, int(np.argmax(distances)) + 1)


def choose_n_pcs(adata: ad.AnnData, min_pcs: int = 5) -> int:
    """Elbow choice on a fitted PCA, never fewer than `min_pcs` (or all PCs if fewer exist)."""
    if "pca" not in adata.uns:
        raise ValueError("PCA not computed. Run PCA first.")
    ratio = adata.uns["pca"]["variance_ratio"]
    chosen = min(max(find_elbow_point(ratio), min_pcs), len(ratio))
    logger.info(f"Elbow point suggests keeping {chosen} of {len(ratio)} PCs")
    return chosen
