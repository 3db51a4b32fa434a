"""Pytest configuration and shared fixtures for scclust tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scclust.config import RunConfig

# Import mock data generators
from tests.fixtures import (
    create_block_embedding,
    create_count_frame,
    create_qc_counts,
    create_two_block_counts,
)


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture
def two_block_counts():
    """100 cells x 50 genes with two separated expression blocks."""
    return create_two_block_counts()


@pytest.fixture
def qc_counts():
    """Small matrix with one cell failing each QC predicate."""
    return create_qc_counts()


@pytest.fixture
def count_frame() -> pd.DataFrame:
    """Dense Poisson count table."""
    return create_count_frame()


@pytest.fixture
def block_embedding() -> np.ndarray:
    """Three well-separated Gaussian blobs, 15 points each."""
    return create_block_embedding()


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def small_config() -> RunConfig:
    """Thresholds adjusted for the 100 x 50 two-block matrix."""
    return RunConfig(min_genes=1, max_genes=50, max_percent_mito=100)


@pytest.fixture
def marker_config() -> RunConfig:
    """Small-data thresholds with positive markers only."""
    return RunConfig(min_genes=1, max_genes=50, max_percent_mito=100, only_pos=True)


@pytest.fixture
def sample_run_config(tmp_path) -> Path:
    """Create sample run configuration file."""
    import yaml

    config = {
        "run": {
            "min_genes": 1,
            "max_genes": 50,
            "max_percent_mito": 100,
            "neighbor_k": 10,
            "cluster_resolution": 0.8,
        },
    }

    path = tmp_path / "run.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)

    return path


# ============================================================================
# Stage Output Fixtures
# ============================================================================


@pytest.fixture(scope="module")
def two_block_session():
    """Full pipeline run on the two-block matrix (positive markers only)."""
    from scclust.pipeline import run_pipeline

    config = RunConfig(min_genes=1, max_genes=50, max_percent_mito=100, only_pos=True)
    return run_pipeline(create_two_block_counts(), config)
