"""
Scaling normalization: library-size factors, pooling-based deconvolution
size factors and log-transformation.

The deconvolution estimator pools cells so that the many zeros of
individual UMI profiles average out, estimates a size factor per pool
against a reference pseudo-cell, and solves the resulting linear system
for per-cell factors (Lun, Bach and Marioni, Genome Biology 2016).
"""

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse
from scipy.sparse.linalg import lsqr

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZES = tuple(range(21, 102, 5))

# Weight of the per-cell library-size equations that make the system solvable
PRIOR_WEIGHT = 1e-3


def _counts(adata: ad.AnnData, layer: Optional[str] = None):
    if layer is not None:
        return adata.layers[layer]
    if "counts" in adata.layers:
        return adata.layers["counts"]
    return adata.X


def _as_dense(matrix) -> np.ndarray:
    if scipy.sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix)


def _library_sizes(counts) -> np.ndarray:
    return np.asarray(counts.sum(axis=1)).ravel().astype(float)


def library_size_factors(adata: ad.AnnData, layer: Optional[str] = None) -> np.ndarray:
    """
    Library sizes scaled to unit mean.

    Raises:
        ValueError: if any cell has zero total count
    """
    lib_sizes = _library_sizes(_counts(adata, layer))
    if np.any(lib_sizes <= 0):
        raise ValueError("Cells with zero total counts cannot be normalized; filter them first")
    return lib_sizes / lib_sizes.mean()


def quick_cluster(
    adata: ad.AnnData,
    min_size: int = 100,
    resolution: float = 1.0,
    n_pcs: int = 20,
    random_state: int = 0,
    layer: Optional[str] = None,
) -> pd.Series:
    """
    Coarse clustering used to block the deconvolution by cell type.

    Cells are log-normalized by library size, projected on the top PCs and
    clustered with Leiden. Clusters smaller than `min_size` are merged into
    the nearest sufficiently large cluster (by centroid distance).

    Returns:
        Categorical Series of cluster labels indexed like adata.obs
    """
    scratch = ad.AnnData(X=_counts(adata, layer).copy(), obs=pd.DataFrame(index=adata.obs_names))
    sc.pp.normalize_total(scratch)
    sc.pp.log1p(scratch)
    n_comps = max(2, min(n_pcs, scratch.n_obs - 1, scratch.n_vars - 1))
    sc.tl.pca(scratch, n_comps=n_comps, random_state=random_state)
    sc.pp.neighbors(scratch, n_neighbors=min(15, scratch.n_obs - 1), random_state=random_state)
    sc.tl.leiden(scratch, resolution=resolution, random_state=random_state, key_added="cluster",
                 flavor="igraph", n_iterations=2, directed=False)

    labels = scratch.obs["cluster"].astype(str).to_numpy()
    embedding = scratch.obsm["X_pca"]
    sizes = pd.Series(labels).value_counts()
    large = sizes[sizes >= min_size].index.tolist()

    if not large:
        logger.info(f"No cluster reaches min_size={min_size}; using a single cluster")
        labels = np.full(labels.shape, "0", dtype=object)
    else:
        centroids = {lab: embedding[labels == lab].mean(axis=0) for lab in large}
        for lab in sizes[sizes < min_size].index:
            centroid = embedding[labels == lab].mean(axis=0)
            nearest = min(large, key=lambda other: np.linalg.norm(centroids[other] - centroid))
            labels[labels == lab] = nearest

    clusters = pd.Series(pd.Categorical(labels), index=adata.obs_names, name="quick_cluster")
    logger.info(f"quick_cluster found {clusters.nunique()} clusters")
    return clusters


def _ring_order(lib_sizes: np.ndarray) -> np.ndarray:
    """Order cells by library size around a ring: odd ranks up, even ranks down."""
    ranked = np.argsort(lib_sizes, kind="stable")
    return np.concatenate([ranked[0::2], ranked[1::2][::-1]])


def _pool_factors(normalized: np.ndarray, reference: np.ndarray, sizes: Sequence[int]) -> np.ndarray:
    """
    Solve for per-cell factors (relative to library-size normalization)
    within a single cluster.
    """
    n_cells = normalized.shape[0]
    ring = _ring_order(normalized.sum(axis=1))
    doubled = np.concatenate([ring, ring])
    positive = reference > 0

    # Windows are contiguous along the doubled ring, so pooled profiles are
    # differences of cumulative sums
    cumulative = np.vstack([np.zeros((1, positive.sum())), np.cumsum(normalized[doubled][:, positive], axis=0)])
    starts = np.arange(n_cells)

    rows, cols, rhs = [], [], []
    n_rows = 0
    for size in sizes:
        pooled = cumulative[starts + size] - cumulative[starts]
        rhs.append(np.median(pooled / reference[positive], axis=1))
        window = starts[:, None] + np.arange(size)[None, :]
        rows.append(np.repeat(np.arange(n_rows, n_rows + n_cells), size))
        cols.append(doubled[window].ravel())
        n_rows += n_cells

    rows.append(np.arange(n_rows, n_rows + n_cells))
    cols.append(np.arange(n_cells))
    rhs.append(np.full(n_cells, PRIOR_WEIGHT))

    values = np.ones(sum(len(r) for r in rows))
    values[-n_cells:] = PRIOR_WEIGHT
    design = scipy.sparse.csr_matrix(
        (values, (np.concatenate(rows), np.concatenate(cols))), shape=(n_rows + n_cells, n_cells)
    )
    return lsqr(design, np.concatenate(rhs))[0]


def deconvolution_size_factors(
    adata: ad.AnnData,
    clusters: Optional[Sequence] = None,
    sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    min_mean: float = 0.1,
    layer: Optional[str] = None,
) -> np.ndarray:
    """
    Pooling-based ("sum factor") size factors.

    Args:
        adata: AnnData with raw counts in `layer`, layers["counts"] or X
        clusters: Optional cluster labels; pooling happens within clusters
            and clusters are rescaled against a reference cluster
        sizes: Pool sizes; sizes larger than a cluster are dropped
        min_mean: Minimum average library-normalized count for a gene to be
            used in the pooled ratios
        layer: Layer holding the counts

    Returns:
        Size factors centred to unit mean
    """
    counts = _counts(adata, layer)
    lib_factors = library_size_factors(adata, layer)
    labels = np.zeros(adata.n_obs, dtype=int) if clusters is None else pd.Categorical(np.asarray(clusters)).codes
    if len(labels) != adata.n_obs:
        raise ValueError("clusters must have one label per cell")

    normalized = _as_dense(counts) / lib_factors[:, None]
    factors = np.empty(adata.n_obs)
    pseudo_cells = {}

    for label in np.unique(labels):
        members = np.flatnonzero(labels == label)
        cluster_norm = normalized[members]
        reference = cluster_norm.mean(axis=0)
        keep = reference >= min_mean
        usable_sizes = sorted({s for s in sizes if s <= members.size})

        if not usable_sizes or not keep.any():
            logger.warning(
                f"Cluster {label} has {members.size} cells, fewer than the smallest pool size; "
                "using library-size factors for it"
            )
            relative = np.ones(members.size)
        else:
            relative = _pool_factors(cluster_norm[:, keep], reference[keep], usable_sizes)

        bad = relative <= 0
        if bad.any():
            logger.warning(f"{int(bad.sum())} non-positive size factors in cluster {label}; using library-size factors")
            relative[bad] = 1.0
        # pool ratios are expressed per pool member; rescale to the cluster's mean
        relative = relative / relative.mean()

        factors[members] = relative * lib_factors[members]
        pseudo_cells[label] = (_as_dense(counts[members]) / factors[members][:, None]).mean(axis=0)

    if len(pseudo_cells) > 1:
        _rescale_clusters(factors, labels, pseudo_cells, min_mean)

    factors = factors / factors.mean()
    logger.info(
        f"Deconvolution size factors: range {factors.min():.3f}-{factors.max():.3f} "
        f"over {len(pseudo_cells)} cluster(s)"
    )
    return factors


def _rescale_clusters(factors: np.ndarray, labels: np.ndarray, pseudo_cells: dict, min_mean: float) -> None:
    """Put every cluster on the scale of the cluster with the median library size."""
    cluster_libs = {lab: np.sum(profile) for lab, profile in pseudo_cells.items()}
    ordered = sorted(cluster_libs, key=cluster_libs.get)
    reference_label = ordered[len(ordered) // 2]
    reference = pseudo_cells[reference_label]

    for label, profile in pseudo_cells.items():
        if label == reference_label:
            continue
        keep = ((profile + reference) / 2 >= min_mean) & (profile > 0) & (reference > 0)
        if not keep.any():
            logger.warning(f"No shared expressed genes between cluster {label} and the reference; not rescaled")
            continue
        scale = np.median(profile[keep] / reference[keep])
        factors[labels == label] *= scale


def log_norm_counts(
    adata: ad.AnnData,
    size_factors: Optional[np.ndarray] = None,
    pseudo_count: float = 1.0,
    log_base: float = 2.0,
) -> ad.AnnData:
    """
    Log-transform size-factor normalized counts in place.

    Raw counts are kept in layers["counts"]; the log-expression values go
    to layers["logcounts"] and X. Size factors default to
    obs["size_factors"], then to library-size factors.
    """
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    if size_factors is None:
        if "size_factors" in adata.obs:
            size_factors = adata.obs["size_factors"].to_numpy()
        else:
            size_factors = library_size_factors(adata)
    size_factors = np.asarray(size_factors, dtype=float)
    if size_factors.shape != (adata.n_obs,):
        raise ValueError("size_factors must have one value per cell")
    if np.any(size_factors <= 0):
        raise ValueError("size_factors must be positive")

    counts = adata.layers["counts"]
    if scipy.sparse.issparse(counts):
        scaled = scipy.sparse.diags(1 / size_factors) @ counts
        # log(x + 1) keeps zeros at zero, so sparsity survives
        if pseudo_count == 1:
            logged = scaled.tocsr(copy=True)
            logged.data = np.log1p(logged.data) / np.log(log_base)
        else:
            logged = np.log(scaled.toarray() + pseudo_count) / np.log(log_base)
    else:
        logged = np.log(np.asarray(counts) / size_factors[:, None] + pseudo_count) / np.log(log_base)

    adata.obs["size_factors"] = size_factors
    adata.layers["logcounts"] = logged
    adata.X = logged.copy()
    adata.uns["log_norm"] = {"pseudo_count": pseudo_count, "log_base": log_base}
    # scanpy's record of a log(x + 1) transform; its dispersion-based HVG flavours invert with this base
    if pseudo_count == 1:
        adata.uns["log1p"] = {"base": log_base}
    else:
        adata.uns.pop("log1p", None)
    logger.info(f"Log-normalized {adata.n_obs} cells (base {log_base}, pseudo-count {pseudo_count})")
    return adata
