"""Pytest configuration and shared fixtures for Singlecell-Refinery tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_raw_droplets,
    create_count_adata,
    create_batch_pair,
)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def raw_droplets():
    """Raw droplet matrix: 200 cells + 800 ambient droplets x 500 genes."""
    return create_raw_droplets()


@pytest.fixture
def count_adata():
    """Filtered counts: 300 cells of 3 types x 400 genes."""
    return create_count_adata()


@pytest.fixture
def batch_pair():
    """Two 200-cell datasets sharing cell types, with a batch effect."""
    return create_batch_pair()


# ============================================================================
# Dataset Fixtures
# ============================================================================


@pytest.fixture
def count_dataset(count_adata):
    """CellDataset wrapping the filtered counts."""
    from singlecell_refinery.core.dataset import CellDataset

    return CellDataset(count_adata)


@pytest.fixture
def normalized_dataset(count_dataset):
    """Log-normalized dataset with 200 variable features."""
    from singlecell_refinery.core.preprocessing import Normalizer, NormalizationConfig

    return Normalizer(NormalizationConfig(nfeatures=200)).run(count_dataset).dataset


@pytest.fixture
def pca_dataset(normalized_dataset):
    """Normalized dataset with a 20-component PCA."""
    from singlecell_refinery.core.reduction import DimensionalityReducer, ReductionConfig

    return DimensionalityReducer(ReductionConfig(k_max=20)).run_pca(normalized_dataset).dataset


@pytest.fixture
def graph_dataset(pca_dataset):
    """PCA dataset with an SNN graph on the first 10 components."""
    from singlecell_refinery.core.clustering import ClusteringEngine

    return ClusteringEngine().build_graph(pca_dataset, reduction="pca", n_dims=10)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def small_pipeline_config(tmp_output_dir):
    """PipelineConfig sized for the synthetic fixtures."""
    from singlecell_refinery.pipeline import PipelineConfig

    return PipelineConfig.from_dict(
        {
            "preprocessing": {
                "ingest": {"n_iter": 200},
                "normalization": {"nfeatures": 200},
            },
            "reduction": {"k_max": 20},
            "clustering": {"resolution": 0.5, "resolutions": [0.5]},
            "embedding": {"n_neighbors": 15},
            "doublets": {"n_dims": 10},
            "integration": {
                "nfeatures": 200,
                "n_dims": 10,
                "k_filter": 50,
                "k_score": 10,
                "k_weight": 20,
            },
            "output_dir": str(tmp_output_dir),
        }
    )


@pytest.fixture
def sample_pipeline_config(tmp_path) -> Path:
    """Pipeline YAML with two raw samples written as h5ad files."""
    import yaml

    data_dir = tmp_path / "data"
    data_dir.mkdir()
    for i, name in enumerate(["donor1", "donor2"]):
        create_raw_droplets(seed=10 + i).write_h5ad(data_dir / f"{name}.h5ad")

    config = {
        "samples": {
            "donor1": "data/donor1.h5ad",
            "donor2": "data/donor2.h5ad",
        },
        "output_dir": "results",
        "preprocessing": {
            "ingest": {"n_iter": 200},
            "normalization": {"nfeatures": 200},
        },
        "reduction": {"k_max": 20},
        "clustering": {"resolution": 0.5, "resolutions": [0.5]},
        "embedding": {"n_neighbors": 15},
        "doublets": {"n_dims": 10},
        "integration": {
            "nfeatures": 200,
            "n_dims": 10,
            "k_filter": 50,
            "k_score": 10,
            "k_weight": 20,
        },
        "resources": {"n_workers": 1},
    }

    path = tmp_path / "pipeline.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)

    return path
