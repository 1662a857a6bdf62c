"""
Example datasets used throughout the vignettes.

Small analyses run on simulated counts with known ground truth, the
in-memory tutorials can use scanpy's PBMC 3k download, and the scaling
vignette can page cells from the 10x Genomics 1.3 million brain cell
atlas without loading it whole.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

import anndata as ad
import h5py
import numpy as np
import pandas as pd
import pooch
import scanpy as sc
import scipy.sparse

from ..utils.cache import cached_computation

logger = logging.getLogger(__name__)

BRAIN_1M_URL = (
    "https://cf.10xgenomics.com/samples/cell-exp/1.3.0/1M_neurons/"
    "1M_neurons_filtered_gene_bc_matrices_h5.h5"
)
BRAIN_1M_GENOME = "mm10"

DATASETS = {
    "simulated": "Simulated negative-binomial counts with injected low-quality cells and doublets",
    "pbmc3k": "3k peripheral blood mononuclear cells from 10x Genomics (scanpy download)",
    "brain1.3m": "1.3 million mouse brain cells from 10x Genomics (HDF5, read on demand)",
}


def _data_dir(data_dir: Optional[Union[str, Path]] = None) -> Path:
    if data_dir is not None:
        return Path(data_dir)
    env_dir = os.environ.get("SCVIGNETTES_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(pooch.os_cache("scvignettes"))


def simulate_counts(
    n_cells: int = 2000,
    n_genes: int = 2000,
    n_mito: int = 13,
    n_groups: int = 4,
    doublet_rate: float = 0.05,
    low_quality_rate: float = 0.05,
    random_state: int = 0,
) -> ad.AnnData:
    """
    Simulate a UMI count matrix with cell-group structure.

    Counts are negative-binomial around group-specific gene means. A block
    of mitochondrial genes ("MT-" prefix) carries ~5% of the library in
    healthy cells and ~40% in the injected low-quality cells, whose
    libraries are also shrunk. Doublets are made by summing two cells from
    different groups.

    Args:
        n_cells: Number of cells
        n_genes: Number of genes, including the mitochondrial block
        n_mito: Number of mitochondrial genes
        n_groups: Number of cell groups with distinct expression profiles
        doublet_rate: Fraction of cells replaced by doublets
        low_quality_rate: Fraction of damaged cells
        random_state: Seed for the random generator

    Returns:
        AnnData with sparse counts in X and ground truth in obs
    """
    if n_cells < 2 or n_genes <= n_mito:
        raise ValueError("Need at least 2 cells and more genes than mitochondrial genes")
    if not 0 <= doublet_rate < 0.5 or not 0 <= low_quality_rate < 0.5:
        raise ValueError("doublet_rate and low_quality_rate must be in [0, 0.5)")

    rng = np.random.default_rng(random_state)
    n_nuclear = n_genes - n_mito

    groups = rng.integers(0, n_groups, size=n_cells)
    baseline = rng.gamma(shape=0.5, scale=1.0, size=n_nuclear) + 1e-3
    effects = np.ones((n_groups, n_nuclear))
    for g in range(n_groups):
        de_genes = rng.choice(n_nuclear, size=max(1, n_nuclear // 10), replace=False)
        effects[g, de_genes] = rng.lognormal(mean=1.0, sigma=0.5, size=de_genes.size)
    nuclear_prop = baseline * effects[groups]
    nuclear_prop /= nuclear_prop.sum(axis=1, keepdims=True)
    mito_prop = np.tile(rng.dirichlet(np.ones(n_mito)), (n_cells, 1))

    library_sizes = rng.lognormal(mean=np.log(5000), sigma=0.35, size=n_cells)
    mito_fraction = np.clip(rng.normal(0.05, 0.01, size=n_cells), 0.005, None)

    is_low_quality = np.zeros(n_cells, dtype=bool)
    n_low = int(round(low_quality_rate * n_cells))
    if n_low:
        damaged = rng.choice(n_cells, size=n_low, replace=False)
        is_low_quality[damaged] = True
        library_sizes[damaged] *= 0.15
        mito_fraction[damaged] = rng.uniform(0.3, 0.5, size=n_low)

    mu = np.hstack(
        [
            mito_prop * (mito_fraction * library_sizes)[:, None],
            nuclear_prop * ((1 - mito_fraction) * library_sizes)[:, None],
        ]
    )
    dispersion = 0.1
    counts = rng.negative_binomial(1 / dispersion, 1 / (1 + mu * dispersion)).astype(np.float32)

    is_doublet = np.zeros(n_cells, dtype=bool)
    n_doublets = int(round(doublet_rate * n_cells))
    if n_doublets and n_groups > 1:
        healthy = np.flatnonzero(~is_low_quality)
        targets = rng.choice(healthy, size=min(n_doublets, healthy.size), replace=False)
        for target in targets:
            partners = healthy[groups[healthy] != groups[target]]
            partner = rng.choice(partners)
            counts[target] = counts[target] + counts[partner]
            is_doublet[target] = True

    var_names = [f"MT-{i + 1}" for i in range(n_mito)] + [f"Gene_{i}" for i in range(n_nuclear)]
    adata = ad.AnnData(
        X=scipy.sparse.csr_matrix(counts),
        obs=pd.DataFrame(
            {
                "group": pd.Categorical([f"G{g}" for g in groups]),
                "is_low_quality": is_low_quality,
                "is_doublet": is_doublet,
            },
            index=[f"Cell_{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=var_names),
    )
    logger.info(
        f"Simulated {n_cells} cells x {n_genes} genes "
        f"({n_low} low-quality cells, {int(is_doublet.sum())} doublets)"
    )
    return adata


@cached_computation
def _cached_simulation(**kwargs) -> ad.AnnData:
    return simulate_counts(**kwargs)


def read_10x_h5_subset(path: Union[str, Path], max_cells: Optional[int] = None,
                       genome: str = BRAIN_1M_GENOME) -> ad.AnnData:
    """
    Read the first `max_cells` cells of a legacy 10x HDF5 matrix.

    Only the requested column range of the compressed-sparse-column matrix
    is paged in from disk.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"10x HDF5 file not found: {path}")

    with h5py.File(path, "r") as f:
        if genome not in f:
            raise ValueError(f"Genome {genome} not found in {path}. Available: {list(f.keys())}")
        group = f[genome]
        n_genes, n_total = group["shape"][()]
        n_cells = n_total if max_cells is None else min(int(max_cells), int(n_total))

        indptr = group["indptr"][: n_cells + 1]
        start, stop = indptr[0], indptr[-1]
        data = group["data"][start:stop]
        indices = group["indices"][start:stop]
        barcodes = group["barcodes"][:n_cells].astype(str)
        gene_ids = group["genes"][()].astype(str)
        gene_names = group["gene_names"][()].astype(str)

    # Columns are cells on disk; transpose to cells x genes
    matrix = scipy.sparse.csc_matrix((data, indices, indptr - start), shape=(n_genes, n_cells))
    adata = ad.AnnData(
        X=matrix.T.tocsr().astype(np.float32),
        obs=pd.DataFrame(index=barcodes),
        var=pd.DataFrame({"gene_ids": gene_ids}, index=gene_names),
    )
    adata.var_names_make_unique()
    logger.info(f"Read {n_cells} of {n_total} cells from {path}")
    return adata


def load_dataset(name: str, data_dir: Optional[Union[str, Path]] = None, **kwargs) -> ad.AnnData:
    """
    Load one of the named example datasets.

    Args:
        name: One of the keys of DATASETS
        data_dir: Download directory for remote datasets
        **kwargs: Passed to the dataset's loader (e.g. n_cells, max_cells)

    Returns:
        AnnData with raw counts in X and gene annotations applied
    """
    if name == "simulated":
        adata = _cached_simulation(**kwargs)
    elif name == "pbmc3k":
        adata = sc.datasets.pbmc3k()
        adata.var_names_make_unique()
    elif name == "brain1.3m":
        path = pooch.retrieve(
            BRAIN_1M_URL,
            known_hash=None,
            path=_data_dir(data_dir),
            fname="1M_neurons_filtered_gene_bc_matrices_h5.h5",
            progressbar=False,
        )
        adata = read_10x_h5_subset(path, max_cells=kwargs.get("max_cells", 20000))
    else:
        raise ValueError(f"Unknown dataset: {name}. Available: {sorted(DATASETS)}")

    annotate_genes(adata)
    return adata


def annotate_genes(adata: ad.AnnData, annotation: Optional[pd.DataFrame] = None) -> ad.AnnData:
    """
    Map gene identifiers to symbols and flag mitochondrial genes.

    Without an annotation table the symbol prefix ("MT-" or "mt-") decides.
    With a table holding `gene_id`, `symbol` and `chromosome` columns, genes
    are matched on var_names (or var["gene_ids"] when present) and flagged
    by chromosome "MT".

    Args:
        adata: AnnData to annotate in place
        annotation: Optional gene annotation table

    Returns:
        The same AnnData, for chaining
    """
    if annotation is None:
        symbols = pd.Series(adata.var_names, index=adata.var_names)
        adata.var["gene_symbols"] = symbols.values
        adata.var["mt"] = symbols.str.upper().str.startswith("MT-").values
    else:
        missing = {"gene_id", "symbol", "chromosome"} - set(annotation.columns)
        if missing:
            raise ValueError(f"Annotation table is missing columns: {sorted(missing)}")
        keys = adata.var["gene_ids"] if "gene_ids" in adata.var else pd.Series(adata.var_names, index=adata.var_names)
        table = annotation.drop_duplicates("gene_id").set_index("gene_id")
        symbol_map: Dict[str, str] = table["symbol"].to_dict()
        chrom_map: Dict[str, str] = table["chromosome"].astype(str).to_dict()

        adata.var["gene_symbols"] = [symbol_map.get(k, k) for k in keys]
        adata.var["mt"] = [chrom_map.get(k, "").upper() in {"MT", "CHRM"} for k in keys]
        n_unmapped = sum(k not in symbol_map for k in keys)
        if n_unmapped:
            logger.warning(f"{n_unmapped} genes had no entry in the annotation table")

    logger.info(f"Flagged {int(adata.var['mt'].sum())} mitochondrial genes")
    return adata
