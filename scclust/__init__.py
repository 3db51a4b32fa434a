"""scclust: single-cell RNA-seq clustering and marker detection.

This package provides tools for:
- Quality control and library-size normalization of sparse count matrices
- Variance-stabilized variable feature selection and scaling
- PCA with JackStraw significance testing
- Shared-neighbor graph construction and Louvain clustering
- Per-cluster marker detection with Wilcoxon and ROC tests

Every stage returns a new immutable result; ``PipelineSession`` keeps the
committed results of one run as versioned records.

Example usage:
    >>> from scclust.config import RunConfig
    >>> from scclust.pipeline import run_pipeline
    >>>
    >>> config = RunConfig(min_genes=1, max_genes=50, max_percent_mito=100)
    >>> session = run_pipeline(counts, config)
    >>> session.get("clusters").sizes()
"""

__version__ = "0.1.0"
