"""Preprocessing: quality control, normalization, feature selection, scaling.

Example Usage
-------------
>>> from scclust.config import RunConfig
>>> from scclust.core.preprocessing import (
...     QCFilter, Normalizer, FeatureSelector, Scaler,
... )
>>> config = RunConfig()
>>> qc = QCFilter(config).run(counts)
>>> normalized = Normalizer(config).run(qc.counts, qc.metadata)
>>> features = FeatureSelector(config).run(qc.counts)
>>> scaled = Scaler(config).run(normalized, features, qc.metadata)
"""

# Quality control
from .qc import (
    QCFilter,
    QCResult,
    REASON_COLUMNS,
    compute_cell_stats,
    mito_gene_mask,
)

# Normalization
from .normalization import (
    NormalizedMatrix,
    Normalizer,
)

# Variable features
from .features import (
    FeatureSelector,
    FeatureSet,
    gene_mean_variance,
    standardized_variance,
)

# Scaling
from .scaling import (
    ScaledMatrix,
    Scaler,
    regress_out,
    standardize,
)

__all__ = [
    # QC
    "QCFilter",
    "QCResult",
    "REASON_COLUMNS",
    "compute_cell_stats",
    "mito_gene_mask",
    # Normalization
    "NormalizedMatrix",
    "Normalizer",
    # Features
    "FeatureSelector",
    "FeatureSet",
    "gene_mean_variance",
    "standardized_variance",
    # Scaling
    "ScaledMatrix",
    "Scaler",
    "regress_out",
    "standardize",
]
