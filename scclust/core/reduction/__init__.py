"""Dimensionality reduction: PCA and JackStraw significance."""

from .pca import DimReducer, Embedding, fix_signs, truncated_svd
from .jackstraw import JackStraw, JackStrawResult

__all__ = [
    "DimReducer",
    "Embedding",
    "fix_signs",
    "truncated_svd",
    "JackStraw",
    "JackStrawResult",
]
