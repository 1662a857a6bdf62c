"""
Per-cell quality control: metrics, MAD-based outlier calls and filtering.
"""

import logging
from typing import Dict, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

logger = logging.getLogger(__name__)

# Scales the MAD to a consistent estimator of the standard deviation
MAD_SCALE = 1.4826

OUTLIER_TYPES = ("both", "lower", "higher")


def calculate_qc_metrics(adata: ad.AnnData, mito_key: str = "mt") -> ad.AnnData:
    """
    Compute per-cell and per-gene QC metrics in place.

    Adds `total_counts`, `n_genes_by_counts` and `pct_counts_<mito_key>` to
    obs, and `n_cells_by_counts`, `mean_counts` and friends to var.
    """
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise ValueError("Cannot compute QC metrics on an empty dataset")
    if mito_key not in adata.var:
        logger.warning(f"No '{mito_key}' column in var; mitochondrial percentages will be zero")
        adata.var[mito_key] = False

    sc.pp.calculate_qc_metrics(adata, qc_vars=[mito_key], percent_top=None, log1p=False, inplace=True)
    logger.info(
        f"QC metrics: median library size {np.median(adata.obs['total_counts']):.0f}, "
        f"median genes detected {np.median(adata.obs['n_genes_by_counts']):.0f}"
    )
    return adata


def is_outlier(
    values: Union[Sequence[float], pd.Series, np.ndarray],
    nmads: float = 3.0,
    type: str = "both",
    log: bool = False,
    batch: Optional[Union[Sequence, pd.Series]] = None,
    min_diff: Optional[float] = None,
) -> pd.Series:
    """
    Flag values more than `nmads` median absolute deviations from the median.

    Args:
        values: Numeric metric per cell
        nmads: Number of MADs defining the acceptance interval
        type: Which tail to test: "both", "lower" or "higher"
        log: Compute the interval on log1p-transformed values
        batch: Optional batch labels; thresholds are computed per batch
        min_diff: Minimum distance between the median and a threshold

    Returns:
        Boolean Series (NaN values are never outliers). The thresholds used,
        on the original scale, are stored in `.attrs["thresholds"]` as
        {batch: (lower, upper)}.
    """
    if nmads <= 0:
        raise ValueError("nmads must be positive")
    if type not in OUTLIER_TYPES:
        raise ValueError(f"type must be one of {OUTLIER_TYPES}, got {type}")

    series = values if isinstance(values, pd.Series) else pd.Series(np.asarray(values, dtype=float))
    series = series.astype(float)
    if series.empty:
        raise ValueError("Cannot detect outliers in an empty series")

    x = np.log1p(series) if log else series
    batches = pd.Series("all", index=series.index) if batch is None else pd.Series(np.asarray(batch), index=series.index)

    flags = pd.Series(False, index=series.index)
    thresholds: Dict[str, Tuple[float, float]] = {}
    for label, idx in batches.groupby(batches, observed=True).groups.items():
        subset = x.loc[idx]
        median = np.nanmedian(subset)
        diff = nmads * MAD_SCALE * np.nanmedian(np.abs(subset - median))
        if min_diff is not None:
            diff = max(diff, min_diff)

        lower = median - diff if type in ("both", "lower") else -np.inf
        upper = median + diff if type in ("both", "higher") else np.inf
        flags.loc[idx] = (subset < lower) | (subset > upper)

        if log:
            # expm1(-inf) is -1, so open bounds stay infinite
            lower, upper = (np.expm1(b) if np.isfinite(b) else b for b in (lower, upper))
        thresholds[label] = (float(lower), float(upper))

    flags.attrs["thresholds"] = thresholds
    return flags


def per_cell_qc_filters(
    adata: ad.AnnData,
    nmads: float = 3.0,
    batch_key: Optional[str] = None,
    mito_key: str = "mt",
) -> pd.DataFrame:
    """
    Apply the three standard adaptive QC filters.

    Cells are discarded for a low log-library size, a low log-number of
    detected genes, or a high mitochondrial percentage. Flags are written
    to obs (`low_lib_size`, `low_n_features`, `high_pct_counts_mt`,
    `discard`) and thresholds to `uns["qc_thresholds"]`.

    Returns:
        DataFrame with the number of cells flagged per reason
    """
    pct_key = f"pct_counts_{mito_key}"
    if "total_counts" not in adata.obs or pct_key not in adata.obs:
        calculate_qc_metrics(adata, mito_key=mito_key)

    batch = None
    if batch_key is not None:
        if batch_key not in adata.obs:
            raise ValueError(f"Batch key '{batch_key}' not found in obs")
        batch = adata.obs[batch_key]

    low_lib = is_outlier(adata.obs["total_counts"], nmads=nmads, type="lower", log=True, batch=batch)
    low_features = is_outlier(adata.obs["n_genes_by_counts"], nmads=nmads, type="lower", log=True, batch=batch)
    high_mito = is_outlier(adata.obs[pct_key], nmads=nmads, type="higher", batch=batch)

    adata.obs["low_lib_size"] = low_lib.values
    adata.obs["low_n_features"] = low_features.values
    adata.obs["high_pct_counts_mt"] = high_mito.values
    adata.obs["discard"] = (low_lib | low_features | high_mito).values

    adata.uns["qc_thresholds"] = {
        "low_lib_size": {str(k): list(v) for k, v in low_lib.attrs["thresholds"].items()},
        "low_n_features": {str(k): list(v) for k, v in low_features.attrs["thresholds"].items()},
        "high_pct_counts_mt": {str(k): list(v) for k, v in high_mito.attrs["thresholds"].items()},
    }

    summary = pd.DataFrame(
        {
            "n_cells": [
                int(adata.obs["low_lib_size"].sum()),
                int(adata.obs["low_n_features"].sum()),
                int(adata.obs["high_pct_counts_mt"].sum()),
                int(adata.obs["discard"].sum()),
            ]
        },
        index=["low_lib_size", "low_n_features", "high_pct_counts_mt", "discard"],
    )
    logger.info(f"QC filters flag {summary.loc['discard', 'n_cells']} of {adata.n_obs} cells for removal")
    return summary


def filter_cells(adata: ad.AnnData, discard_key: str = "discard", min_cells: int = 1) -> ad.AnnData:
    """
    Return a copy without discarded cells and without genes seen in fewer
    than `min_cells` of the retained cells.
    """
    if discard_key not in adata.obs:
        raise ValueError(f"'{discard_key}' not found in obs. Run per_cell_qc_filters() first.")

    kept = adata[~adata.obs[discard_key].astype(bool).values].copy()
    if kept.n_obs == 0:
        raise ValueError("All cells were discarded by quality control")
    if min_cells > 0:
        sc.pp.filter_genes(kept, min_cells=min_cells)
    logger.info(f"Retained {kept.n_obs} of {adata.n_obs} cells and {kept.n_vars} of {adata.n_vars} genes")
    return kept
