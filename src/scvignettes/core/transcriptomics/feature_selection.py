"""
Feature selection by modelling per-gene variance of log-expression.

The total variance of each gene is split into a technical component,
read off a trend fitted to the variance-mean relationship across all
genes, and a biological component (the residual). Genes with the largest
biological component are the highly variable genes (HVGs).
"""

import logging
from typing import Callable, List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse

logger = logging.getLogger(__name__)

HVG_METHODS = ("model_gene_var", "seurat", "cell_ranger", "seurat_v3")


def _mean_var(matrix) -> tuple:
    """Per-column mean and unbiased variance for dense or sparse input."""
    n = matrix.shape[0]
    if scipy.sparse.issparse(matrix):
        mean = np.asarray(matrix.mean(axis=0)).ravel()
        mean_sq = np.asarray(matrix.multiply(matrix).mean(axis=0)).ravel()
    else:
        matrix = np.asarray(matrix, dtype=float)
        mean = matrix.mean(axis=0)
        mean_sq = (matrix ** 2).mean(axis=0)
    var = (mean_sq - mean ** 2) * n / max(n - 1, 1)
    return mean, np.clip(var, 0, None)


def fit_trend_var(means: np.ndarray, variances: np.ndarray, n_bins: int = 30) -> Callable[[np.ndarray], np.ndarray]:
    """
    Fit the variance-mean trend.

    Genes are binned on quantiles of their mean; the trend passes through
    the origin and the (median mean, median variance) point of every bin,
    with linear interpolation in between and a flat extension past the
    last bin.

    Returns:
        A function mapping means to fitted technical variances
    """
    means = np.asarray(means, dtype=float)
    variances = np.asarray(variances, dtype=float)
    expressed = means > 0
    if expressed.sum() < 2:
        raise ValueError("Need at least two expressed genes to fit a variance trend")

    m, v = means[expressed], variances[expressed]
    edges = np.unique(np.quantile(m, np.linspace(0, 1, n_bins + 1)))
    bin_ids = np.clip(np.searchsorted(edges, m, side="right") - 1, 0, len(edges) - 2)

    knots_x, knots_y = [0.0], [0.0]
    for b in np.unique(bin_ids):
        in_bin = bin_ids == b
        knots_x.append(float(np.median(m[in_bin])))
        knots_y.append(float(np.median(v[in_bin])))

    order = np.argsort(knots_x, kind="stable")
    knots_x = np.asarray(knots_x)[order]
    knots_y = np.asarray(knots_y)[order]

    def trend(x: np.ndarray) -> np.ndarray:
        return np.interp(np.asarray(x, dtype=float), knots_x, knots_y)

    return trend


def _model_block(matrix, var_names: pd.Index, n_bins: int) -> pd.DataFrame:
    mean, total = _mean_var(matrix)
    tech = fit_trend_var(mean, total, n_bins=n_bins)(mean)
    return pd.DataFrame({"mean": mean, "total": total, "tech": tech, "bio": total - tech}, index=var_names)


def model_gene_var(
    adata: ad.AnnData,
    layer: Optional[str] = "logcounts",
    block: Optional[str] = None,
    n_bins: int = 30,
) -> pd.DataFrame:
    """
    Decompose per-gene variance of log-expression into technical and
    biological components.

    Args:
        adata: Log-normalized AnnData
        layer: Layer with log-expression values (X when None or missing)
        block: Optional obs column; the model is fitted per block and the
            statistics averaged with weights proportional to residual
            degrees of freedom
        n_bins: Number of mean bins used by the trend

    Returns:
        DataFrame indexed by gene with `mean`, `total`, `tech` and `bio`
    """
    matrix = adata.layers[layer] if layer is not None and layer in adata.layers else adata.X
    if block is None:
        stats = _model_block(matrix, adata.var_names, n_bins)
    else:
        if block not in adata.obs:
            raise ValueError(f"Block key '{block}' not found in obs")
        labels = adata.obs[block].to_numpy()
        per_block, weights = [], []
        for label in pd.unique(labels):
            members = np.flatnonzero(labels == label)
            if members.size < 2:
                logger.warning(f"Block {label} has fewer than 2 cells and is ignored")
                continue
            per_block.append(_model_block(matrix[members], adata.var_names, n_bins))
            weights.append(members.size - 1)
        if not per_block:
            raise ValueError("No block has enough cells to model gene variance")
        weights = np.asarray(weights, dtype=float) / np.sum(weights)
        stats = sum(w * s for w, s in zip(weights, per_block))

    logger.info(f"Modelled variance for {len(stats)} genes; {int((stats['bio'] > 0).sum())} with positive biological component")
    return stats


def get_top_hvgs(
    stats: pd.DataFrame,
    n: Optional[int] = None,
    prop: Optional[float] = None,
    var_threshold: float = 0.0,
) -> List[str]:
    """
    Genes with the largest biological component.

    Args:
        stats: Output of model_gene_var
        n: Keep at most this many genes
        prop: Keep at most this proportion of all genes
        var_threshold: Only genes with bio above this are kept

    Returns:
        Gene names sorted by decreasing biological component
    """
    if n is not None and prop is not None:
        raise ValueError("Specify at most one of n and prop")
    if prop is not None and not 0 < prop <= 1:
        raise ValueError("prop must be in (0, 1]")

    ranked = stats[stats["bio"] > var_threshold].sort_values("bio", ascending=False)
    if prop is not None:
        n = int(round(prop * len(stats)))
    if n is not None:
        ranked = ranked.head(n)
    return ranked.index.tolist()


def highly_variable_genes(
    adata: ad.AnnData,
    method: str = "model_gene_var",
    n_top: int = 2000,
    batch_key: Optional[str] = None,
) -> List[str]:
    """
    Mark highly variable genes in var["highly_variable"].

    "model_gene_var" uses the variance decomposition above; the other
    methods are scanpy's flavours ("seurat_v3" reads raw counts from
    layers["counts"]).

    Returns:
        Names of the selected genes
    """
    if method not in HVG_METHODS:
        raise ValueError(f"Unknown HVG method: {method}. Use one of {HVG_METHODS}")

    if method == "model_gene_var":
        stats = model_gene_var(adata, block=batch_key)
        for column in stats.columns:
            adata.var[column] = stats[column]
        hvgs = get_top_hvgs(stats, n=n_top)
        adata.var["highly_variable"] = adata.var_names.isin(hvgs)
    elif method == "seurat_v3":
        layer = "counts" if "counts" in adata.layers else None
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top, flavor="seurat_v3", layer=layer, batch_key=batch_key)
        hvgs = adata.var_names[adata.var["highly_variable"]].tolist()
    else:
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top, flavor=method, batch_key=batch_key)
        hvgs = adata.var_names[adata.var["highly_variable"]].tolist()

    logger.info(f"Selected {len(hvgs)} highly variable genes using {method}")
    return hvgs
