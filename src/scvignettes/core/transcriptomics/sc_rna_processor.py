import json
import logging
import multiprocessing
import os
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import psutil
import scanpy as sc
import yaml
from sklearn.metrics import silhouette_score

from .dimensionality import choose_n_pcs
from .doublets import detect_doublets
from .feature_selection import HVG_METHODS, highly_variable_genes
from .normalization import deconvolution_size_factors, library_size_factors, log_norm_counts, quick_cluster
from .quality_control import calculate_qc_metrics, filter_cells, per_cell_qc_filters

logger = logging.getLogger(__name__)

NORMALIZATION_METHODS = ("deconvolution", "library_size", "log1p")
SUPPORTED_FORMATS = ("10x", "10x_h5", "h5ad", "auto")


@dataclass
class ScRNAParameters:
    """Parameters for the tutorial scRNA-seq analysis"""

    # Quality control
    nmads: float = 3.0
    min_cells: int = 1
    batch_key: Optional[str] = None
    mito_key: str = "mt"
    # Normalization
    normalization_method: str = "deconvolution"  # "deconvolution", "library_size", "log1p"
    quick_cluster_min_size: int = 100
    # Feature selection
    hvg_method: str = "model_gene_var"  # "model_gene_var", "seurat", "cell_ranger", "seurat_v3"
    n_hvgs: int = 2000
    # Dimensionality reduction and clustering
    n_pcs: int = 50
    choose_pcs_by_elbow: bool = True
    n_neighbors: int = 15
    resolution: float = 0.5
    umap_min_dist: float = 0.3
    umap_spread: float = 1.0
    run_tsne: bool = True
    # Doublet detection
    use_doublet_detection: bool = True
    expected_doublet_rate: float = 0.06
    # Execution
    n_jobs: int = max(1, multiprocessing.cpu_count() - 1)
    random_state: int = 42
    save_intermediates: bool = False
    figure_dir: str = "figures"

    def save_to_yaml(self, filepath: Union[str, Path]):
        """Saves the parameters to a YAML file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w') as f:
            yaml.dump(asdict(self), f, sort_keys=False)
        logger.info(f"Parameters saved to {filepath}")

    @classmethod
    def load_from_yaml(cls, filepath: Union[str, Path]) -> 'ScRNAParameters':
        """Loads parameters from a YAML file, ignoring unknown keys."""
        filepath = Path(filepath)
        if not filepath.exists():
            logger.error(f"Parameter file not found: {filepath}")
            raise FileNotFoundError(f"Parameter file not found: {filepath}")
        with open(filepath, 'r') as f:
            params_dict = yaml.safe_load(f) or {}

        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        unknown = set(params_dict) - valid_fields
        if unknown:
            logger.warning(f"Ignoring unknown parameters in {filepath}: {sorted(unknown)}")
        filtered_params = {k: v for k, v in params_dict.items() if k in valid_fields}

        return cls(**filtered_params)


class ScRNAProcessor:
    """
    Runs the tutorial analysis on one dataset: quality control,
    normalization, feature selection, PCA, clustering, visualization
    embeddings and doublet detection.

    Each stage updates `adata` in place and records what it found in
    `results`. Stage wall times go to `execution_times` and resident
    memory before and after a stage to `results["memory_<when>_<stage>"]`.
    """

    STAGES = (
        ("quality_control", "quality_control"),
        ("normalization", "normalize"),
        ("feature_selection", "select_features"),
        ("pca", "run_pca"),
        ("clustering", "run_clustering"),
        ("umap", "run_umap"),
    )

    def __init__(self, parameters: Optional[ScRNAParameters] = None):
        self.parameters = parameters or ScRNAParameters()
        self._validate_parameters()
        _log_available_memory()

        self.adata: Optional[ad.AnnData] = None
        self.results: Dict[str, Any] = {}
        self.intermediate_adatas: Dict[str, ad.AnnData] = {}
        self.execution_times: Dict[str, float] = {}
        self.benchmarks: Dict[str, Optional[float]] = {f"{stage}_time": None for stage, _ in self.STAGES}
        self.logger = logging.getLogger(f"{__name__}.ScRNAProcessor")

        sc.settings.n_jobs = self.parameters.n_jobs
        sc.settings.verbosity = 1
        sc.settings.figdir = self.parameters.figure_dir

    @contextmanager
    def _stage(self, name: str):
        self._track_memory(f"before_{name}")
        start = time.perf_counter()
        yield
        elapsed = time.perf_counter() - start
        self.execution_times[name] = elapsed
        self.benchmarks[f"{name}_time"] = elapsed
        self._track_memory(f"after_{name}")
        self.logger.info(f"{name} completed in {elapsed:.2f}s")

    def _track_memory(self, when: str) -> None:
        self.results[f"memory_{when}"] = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 2)

    def _require(self, check: bool, message: str) -> None:
        if not check:
            raise ValueError(message)

    def _snapshot(self, name: str) -> None:
        if self.parameters.save_intermediates:
            self.intermediate_adatas[name] = self.adata.copy()

    def load_data(self, data_path: Union[str, Path], format_type: str = "auto") -> ad.AnnData:
        """Load a count matrix from a 10x directory, a 10x HDF5 file or an h5ad file"""
        data_path = Path(data_path)
        if format_type not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported format type: {format_type}")
        if not data_path.exists():
            raise FileNotFoundError(f"Data path not found: {data_path}")

        if format_type == "auto":
            format_type = "10x" if data_path.is_dir() else "10x_h5" if data_path.suffix == ".h5" else "h5ad"
        readers = {"10x": sc.read_10x_mtx, "10x_h5": sc.read_10x_h5, "h5ad": sc.read_h5ad}

        with self._stage("load"):
            adata = readers[format_type](data_path)
        self._require(adata.n_obs > 0 and adata.n_vars > 0, f"Empty dataset loaded from {data_path}")

        adata.var_names_make_unique()
        if self.parameters.mito_key not in adata.var:
            adata.var[self.parameters.mito_key] = adata.var_names.str.upper().str.startswith("MT-")
        self.adata = adata
        self.logger.info(f"Loaded {adata.n_obs} cells x {adata.n_vars} genes from {data_path}")
        return adata

    def quality_control(self, adata: Optional[ad.AnnData] = None) -> ad.AnnData:
        """Compute QC metrics, flag outlier cells and remove them"""
        if adata is not None:
            self.adata = adata
        self._require(self.adata is not None, "No data loaded. Call load_data() or pass an AnnData first.")
        p = self.parameters

        calculate_qc_metrics(self.adata, mito_key=p.mito_key)
        summary = per_cell_qc_filters(self.adata, nmads=p.nmads, batch_key=p.batch_key, mito_key=p.mito_key)
        self._snapshot("pre_filter")

        n_before = self.adata.n_obs
        self.adata = filter_cells(self.adata, min_cells=p.min_cells)
        self.results.update(
            qc_summary=summary["n_cells"].to_dict(),
            n_cells_before_qc=n_before,
            n_cells_after_qc=self.adata.n_obs,
            qc_thresholds=self.adata.uns.get("qc_thresholds", {}),
        )
        return self.adata

    def normalize(self) -> ad.AnnData:
        """Compute size factors and log-normalize; raw counts are kept in layers["counts"]"""
        self._require(self.adata is not None, "No data loaded. Call load_data() or pass an AnnData first.")
        method = self.parameters.normalization_method
        self.logger.info(f"Normalizing with {method}")
        adata = self.adata
        if "counts" not in adata.layers:
            adata.layers["counts"] = adata.X.copy()

        if method == "deconvolution":
            clusters = quick_cluster(adata, min_size=self.parameters.quick_cluster_min_size,
                                     random_state=self.parameters.random_state)
            adata.obs["quick_cluster"] = clusters.values
            log_norm_counts(adata, size_factors=deconvolution_size_factors(adata, clusters=clusters))
        elif method == "library_size":
            log_norm_counts(adata, size_factors=library_size_factors(adata))
        elif method == "log1p":
            adata.X = adata.layers["counts"].copy()
            adata.uns.pop("log1p", None)
            sc.pp.normalize_total(adata, target_sum=1e4)
            sc.pp.log1p(adata)
            adata.layers["logcounts"] = adata.X.copy()
        else:
            raise ValueError(f"Unsupported normalization method: {method}")

        if "size_factors" in adata.obs:
            self.results["size_factor_range"] = [float(adata.obs["size_factors"].min()),
                                                 float(adata.obs["size_factors"].max())]
        self._snapshot("normalized")
        return adata

    def select_features(self) -> List[str]:
        """Mark highly variable genes in var; all genes stay in the object"""
        self._require(self.adata is not None and "logcounts" in self.adata.layers,
                      "Data not normalized. Call normalize() first.")
        batch_key = self.parameters.batch_key
        if batch_key and batch_key not in self.adata.obs:
            self.logger.warning(f"Batch key '{batch_key}' not in obs; selecting without blocking")
            batch_key = None

        hvgs = highly_variable_genes(
            self.adata,
            method=self.parameters.hvg_method,
            n_top=min(self.parameters.n_hvgs, self.adata.n_vars),
            batch_key=batch_key,
        )
        self.results["n_hvgs"] = len(hvgs)
        self.results["top_hvgs"] = hvgs[:20]
        return hvgs

    def run_pca(self) -> None:
        """
        PCA on the highly variable genes. The number of PCs carried
        forward is either all of them or the elbow of the scree plot.
        """
        self._require(self.adata is not None and "highly_variable" in self.adata.var,
                      "Highly variable genes not selected. Call select_features() first.")
        adata = self.adata
        n_hvgs = int(adata.var["highly_variable"].sum())
        n_comps = min(self.parameters.n_pcs, adata.n_obs - 1, n_hvgs - 1)
        self._require(n_comps >= 2, f"Too few cells or HVGs for PCA ({adata.n_obs} cells, {n_hvgs} HVGs)")

        # arpack is exact but slow beyond ~10k cells or genes
        large = max(adata.n_obs, adata.n_vars) > 10000
        sc.tl.pca(adata, n_comps=n_comps, svd_solver="randomized" if large else "arpack",
                  random_state=self.parameters.random_state, mask_var="highly_variable")

        variance_ratio = adata.uns["pca"]["variance_ratio"]
        self.results["variance_explained"] = variance_ratio.tolist()
        self.results["pca_variance_ratio"] = float(np.sum(variance_ratio))
        self.results["n_pcs_used"] = choose_n_pcs(adata) if self.parameters.choose_pcs_by_elbow else n_comps
        self.logger.info(f"PCA with {n_comps} components; keeping {self.results['n_pcs_used']}")

    def run_clustering(self) -> None:
        """Neighbour graph on the retained PCs, then Leiden"""
        self._require(self.adata is not None and "X_pca" in self.adata.obsm, "PCA not computed. Call run_pca() first.")
        adata, p = self.adata, self.parameters
        n_pcs = self.results.get("n_pcs_used", adata.obsm["X_pca"].shape[1])

        sc.pp.neighbors(adata, n_neighbors=p.n_neighbors, n_pcs=n_pcs, use_rep="X_pca", random_state=p.random_state)
        sc.tl.leiden(adata, resolution=p.resolution, random_state=p.random_state,
                     flavor="igraph", n_iterations=2, directed=False)

        counts = adata.obs["leiden"].value_counts()
        self.results["cluster_counts"] = {str(k): int(v) for k, v in counts.items()}
        self.results["n_clusters"] = len(counts)
        if len(counts) > 1:
            self.results["silhouette_score"] = float(
                silhouette_score(adata.obsm["X_pca"][:, :n_pcs], adata.obs["leiden"].values,
                                 random_state=p.random_state)
            )
        self.logger.info(f"{len(counts)} clusters from {n_pcs} PCs, silhouette "
                         f"{self.results.get('silhouette_score', float('nan')):.3f}")

    def run_umap(self) -> None:
        """UMAP, and t-SNE unless disabled, for visualization"""
        self._require(self.adata is not None and "neighbors" in self.adata.uns,
                      "Neighbor graph not computed. Call run_clustering() first.")
        p = self.parameters
        sc.tl.umap(self.adata, min_dist=p.umap_min_dist, spread=p.umap_spread, random_state=p.random_state)
        if p.run_tsne:
            sc.tl.tsne(
                self.adata,
                n_pcs=self.results.get("n_pcs_used"),
                use_rep="X_pca",
                perplexity=min(30, max(5, (self.adata.n_obs - 1) // 3)),
                random_state=p.random_state,
                n_jobs=p.n_jobs,
            )

    def detect_doublets(self) -> Dict[str, Any]:
        """Score doublets on the raw counts"""
        self._require(self.adata is not None, "No data loaded. Call load_data() or pass an AnnData first.")
        batch_key = self.parameters.batch_key
        result = detect_doublets(
            self.adata,
            expected_doublet_rate=self.parameters.expected_doublet_rate,
            random_state=self.parameters.random_state,
            layer="counts" if "counts" in self.adata.layers else None,
            batch_key=batch_key if batch_key in self.adata.obs else None,
        )
        self.results["doublet_threshold"] = result["threshold"]
        self.results["doublet_rate"] = result["doublet_rate"]
        return result

    def run_analysis(self, adata: Optional[ad.AnnData] = None) -> ad.AnnData:
        """All stages in order, each timed"""
        if adata is not None:
            self.adata = adata
        self._require(self.adata is not None, "No data loaded. Call load_data() or pass an AnnData first.")

        stages = list(self.STAGES)
        if self.parameters.use_doublet_detection:
            stages.append(("doublet_detection", "detect_doublets"))
        with self._stage("total_analysis"):
            for name, method in stages:
                with self._stage(name):
                    getattr(self, method)()
        return self.adata

    def save_results(self, dataset_id: str, output_path: Union[str, Path]) -> Dict[str, str]:
        """Write the processed AnnData, results, timings and parameters under `output_path`"""
        self._require(self.adata is not None, "No data loaded. Call load_data() or pass an AnnData first.")
        output_path = Path(output_path)
        output_path.mkdir(parents=True, exist_ok=True)
        paths = {
            "adata": output_path / f"{dataset_id}_processed_adata.h5ad",
            "results": output_path / f"{dataset_id}_analysis_results.json",
            "execution_times": output_path / f"{dataset_id}_execution_times.json",
            "parameters": output_path / f"{dataset_id}_parameters.yaml",
        }

        self.adata.write_h5ad(paths["adata"])
        for key, content in (("results", self.results), ("execution_times", self.execution_times)):
            with open(paths[key], "w") as f:
                json.dump(content, f, indent=2, default=_json_default)
        self.parameters.save_to_yaml(paths["parameters"])

        self.logger.info(f"Results for {dataset_id} saved to {output_path}")
        return {k: str(v) for k, v in paths.items()}

    def _validate_parameters(self) -> None:
        p = self.parameters
        if not isinstance(p, ScRNAParameters):
            raise TypeError("parameters must be ScRNAParameters instance")
        checks = [
            (2 <= p.n_pcs <= 100, "n_pcs must be between 2 and 100"),
            (2 <= p.n_neighbors <= 100, "n_neighbors must be between 2 and 100"),
            (p.nmads > 0, "nmads must be positive"),
            (p.normalization_method in NORMALIZATION_METHODS,
             f"normalization_method must be one of {NORMALIZATION_METHODS}"),
            (p.hvg_method in HVG_METHODS, f"hvg_method must be one of {HVG_METHODS}"),
            (0 < p.expected_doublet_rate < 1, "expected_doublet_rate must be in (0, 1)"),
        ]
        for ok, message in checks:
            self._require(ok, message)


def _log_available_memory() -> None:
    memory = psutil.virtual_memory()
    available_gb = memory.available / 1024 ** 3
    logger.info(f"System memory: {available_gb:.2f} GB available of {memory.total / 1024 ** 3:.2f} GB")
    if available_gb < 2:
        logger.warning("Low available memory; consider the file-backed workflow for large data")


def _json_default(value):
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, (np.ndarray, pd.Index)):
        return value.tolist()
    return str(value)
