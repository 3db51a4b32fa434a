"""Library-size normalization.

Scales each cell to ``scale_factor`` total counts and applies ``log1p``.
The output stays sparse: zero counts map to zero.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...config import RunConfig
from ...errors import DataIntegrityError
from ..matrix import CellMetadata, CountMatrix


@dataclass(frozen=True, eq=False)
class NormalizedMatrix:
    """Normalized expression aligned with a CountMatrix.

    Attributes
    ----------
    X : sparse.csr_matrix
        Normalized float values, cells x genes
    cell_ids : pd.Index
        Cell identifiers
    gene_ids : pd.Index
        Gene identifiers
    method : str
        LogNormalize or RC
    scale_factor : float
        Library size target
    """

    X: sparse.csr_matrix
    cell_ids: pd.Index
    gene_ids: pd.Index
    method: str = "LogNormalize"
    scale_factor: float = 10000.0

    @property
    def shape(self):
        return self.X.shape

    def gene_index(self, genes) -> np.ndarray:
        """Column positions of ``genes``; raises on unknown ids."""
        positions = self.gene_ids.get_indexer(pd.Index([str(g) for g in genes]))
        if (positions < 0).any():
            missing = [g for g, p in zip(genes, positions) if p < 0][:5]
            raise DataIntegrityError(f"Genes not present in normalized matrix: {missing}")
        return positions


def _scale_rows(X: sparse.csr_matrix, factors: np.ndarray) -> sparse.csr_matrix:
    """Multiply each row of a CSR matrix by its factor."""
    out = X.astype(np.float64, copy=True)
    row_lengths = np.diff(out.indptr)
    out.data *= np.repeat(factors, row_lengths)
    return out


class Normalizer:
    """Per-cell library-size normalizer.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> normalizer = Normalizer(RunConfig(scale_factor=1e4))
    >>> normalized = normalizer.run(qc_result.counts, qc_result.metadata)
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def relative_counts(
        self,
        counts: CountMatrix,
        n_counts: np.ndarray,
    ) -> sparse.csr_matrix:
        """Counts divided by library size, times the scale factor."""
        n_counts = np.asarray(n_counts, dtype=np.float64)
        factors = np.zeros_like(n_counts)
        nonempty = n_counts > 0
        factors[nonempty] = self.config.scale_factor / n_counts[nonempty]
        return _scale_rows(counts.X, factors)

    def run(
        self,
        counts: CountMatrix,
        metadata: Optional[CellMetadata] = None,
    ) -> NormalizedMatrix:
        """Normalize every retained cell.

        Parameters
        ----------
        counts : CountMatrix
            QC-filtered counts
        metadata : CellMetadata, optional
            Metadata providing ``n_counts``; recomputed from counts if None

        Returns
        -------
        NormalizedMatrix
            Sparse normalized values
        """
        if metadata is not None:
            metadata.validate_against(counts.cell_ids)
            n_counts = metadata["n_counts"].to_numpy()
        else:
            n_counts = np.asarray(counts.X.sum(axis=1)).ravel()

        method = self.config.normalization_method
        X = self.relative_counts(counts, n_counts)
        if method == "LogNormalize":
            np.log1p(X.data, out=X.data)
        X.eliminate_zeros()

        self.logger.info(
            "Normalized %d cells (%s, scale_factor=%.0f)",
            counts.n_cells,
            method,
            self.config.scale_factor,
        )
        return NormalizedMatrix(
            X=X,
            cell_ids=counts.cell_ids.copy(),
            gene_ids=counts.gene_ids.copy(),
            method=method,
            scale_factor=self.config.scale_factor,
        )
