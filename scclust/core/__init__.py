"""Core computational modules for scclust.

This package contains the numerical stages, in pipeline order:
- matrix: sparse counts and typed cell metadata
- preprocessing: QC, normalization, variable features, scaling
- reduction: PCA and JackStraw significance
- clustering: shared-neighbor graph and Louvain clustering
- markers: per-cluster differential expression
"""
