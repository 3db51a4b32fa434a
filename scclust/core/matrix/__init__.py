"""Matrix store: sparse counts plus typed cell metadata.

Example Usage
-------------
>>> from scclust.core.matrix import CountMatrix, CellMetadata
>>> counts = CountMatrix.from_dense(values, cell_ids, gene_ids)
"""

from .store import (
    BASE_SCHEMA,
    CLUSTER_COLUMN,
    CellMetadata,
    CountMatrix,
)

__all__ = [
    "BASE_SCHEMA",
    "CLUSTER_COLUMN",
    "CellMetadata",
    "CountMatrix",
]
