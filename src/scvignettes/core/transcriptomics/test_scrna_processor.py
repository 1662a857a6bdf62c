import json
import logging
from pathlib import Path

import numpy as np
import pytest
import yaml

from .datasets import annotate_genes, simulate_counts
from .sc_rna_processor import ScRNAParameters, ScRNAProcessor

logger = logging.getLogger(__name__)


def dense(matrix):
    return matrix.toarray() if hasattr(matrix, "toarray") else np.asarray(matrix)


def create_test_adata(n_cells=400, n_genes=600):
    """Simulated counts with mitochondrial genes flagged."""
    adata = simulate_counts(n_cells=n_cells, n_genes=n_genes, n_groups=3, random_state=1)
    return annotate_genes(adata)


def test_parameters_save_load(tmp_path):
    original_params = ScRNAParameters(n_pcs=42, umap_min_dist=0.25, hvg_method="seurat")
    params_file = tmp_path / "test_params.yaml"
    original_params.save_to_yaml(params_file)
    assert params_file.exists(), "Parameter file was not created."

    loaded_params = ScRNAParameters.load_from_yaml(params_file)
    assert loaded_params == original_params, "Loaded parameters do not match original."


def test_parameters_ignore_unknown_keys(tmp_path):
    params_file = tmp_path / "params.yaml"
    params_file.write_text(yaml.dump({"n_pcs": 20, "use_gpu": True}))
    loaded = ScRNAParameters.load_from_yaml(params_file)
    assert loaded.n_pcs == 20
    assert not hasattr(loaded, "use_gpu")


def test_parameters_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ScRNAParameters.load_from_yaml(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "overrides",
    [
        {"n_pcs": 1},
        {"n_pcs": 101},
        {"n_neighbors": 1},
        {"nmads": 0},
        {"normalization_method": "sctransform"},
        {"hvg_method": "pearson"},
        {"expected_doublet_rate": 1.5},
    ],
)
def test_invalid_parameters_rejected(overrides):
    with pytest.raises(ValueError):
        ScRNAProcessor(ScRNAParameters(**overrides))


def test_steps_out_of_order():
    processor = ScRNAProcessor(ScRNAParameters(n_jobs=1))
    with pytest.raises(ValueError):
        processor.quality_control()

    processor.adata = create_test_adata(n_cells=100, n_genes=200)
    with pytest.raises(ValueError, match="normalize"):
        processor.select_features()
    with pytest.raises(ValueError, match="PCA"):
        processor.run_clustering()
    with pytest.raises(ValueError, match="Neighbor"):
        processor.run_umap()


def test_load_data_h5ad(tmp_path):
    adata = create_test_adata(n_cells=50, n_genes=100)
    path = tmp_path / "input.h5ad"
    adata.write_h5ad(path)

    processor = ScRNAProcessor(ScRNAParameters(n_jobs=1))
    loaded = processor.load_data(path)
    assert loaded.shape == (50, 100)
    assert loaded.var["mt"].sum() == 13

    with pytest.raises(ValueError):
        processor.load_data(path, format_type="loom")
    with pytest.raises(FileNotFoundError):
        processor.load_data(tmp_path / "missing.h5ad")


def test_scrna_processor_pipeline(tmp_path):
    adata = create_test_adata()
    params = ScRNAParameters(
        n_pcs=20,
        n_neighbors=10,
        resolution=0.5,
        n_hvgs=200,
        quick_cluster_min_size=50,
        n_jobs=1,
        random_state=0,
    )
    processor = ScRNAProcessor(parameters=params)

    logger.info("Running the analysis pipeline on simulated data...")
    processed_adata = processor.run_analysis(adata.copy())

    assert processed_adata.n_obs < adata.n_obs, "QC should remove the injected low-quality cells."
    assert not processed_adata.obs["is_low_quality"].any()
    assert 0 < processed_adata.var["highly_variable"].sum() <= 200
    assert "X_pca" in processed_adata.obsm
    assert processed_adata.obsm["X_pca"].shape[1] <= params.n_pcs
    assert 5 <= processor.results["n_pcs_used"] <= processed_adata.obsm["X_pca"].shape[1]
    assert "leiden" in processed_adata.obs
    assert processor.results["n_clusters"] >= 1
    assert "X_umap" in processed_adata.obsm
    assert "X_tsne" in processed_adata.obsm
    assert "doublet_score" in processed_adata.obs
    assert 0 <= processor.results["doublet_rate"] <= 1
    np.testing.assert_allclose(processed_adata.obs["size_factors"].mean(), 1.0, rtol=1e-6)

    for stage in ["quality_control", "normalization", "feature_selection", "pca", "clustering", "umap"]:
        assert processor.benchmarks[f"{stage}_time"] is not None, f"No benchmark for {stage}"
    assert "memory_before_total_analysis" in processor.results

    paths = processor.save_results(dataset_id="simulated", output_path=tmp_path)
    for key in ["adata", "results", "execution_times", "parameters"]:
        assert Path(paths[key]).exists(), f"Missing output: {key}"

    with open(paths["results"]) as f:
        results = json.load(f)
    assert results["n_cells_after_qc"] == processed_adata.n_obs
    assert ScRNAParameters.load_from_yaml(paths["parameters"]) == params


def test_library_size_normalization_without_doublets():
    params = ScRNAParameters(
        normalization_method="library_size",
        hvg_method="seurat",
        n_hvgs=150,
        n_pcs=10,
        run_tsne=False,
        use_doublet_detection=False,
        n_jobs=1,
    )
    processor = ScRNAProcessor(params)
    processed = processor.run_analysis(create_test_adata(n_cells=200, n_genes=400))
    assert "doublet_score" not in processed.obs
    assert "X_tsne" not in processed.obsm
    assert "logcounts" in processed.layers


def test_log1p_normalization_starts_from_counts():
    processor = ScRNAProcessor(ScRNAParameters(normalization_method="log1p"))
    processor.adata = create_test_adata(n_cells=100, n_genes=200)
    first = dense(processor.normalize().layers["logcounts"])
    second = dense(processor.normalize().layers["logcounts"])

    np.testing.assert_allclose(second, first)
    np.testing.assert_allclose(np.expm1(first).sum(axis=1), 1e4, rtol=1e-4)
    np.testing.assert_allclose(dense(processor.adata.X), first)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    pytest.main([__file__, "-v"])
