"""Cell-level quality control.

Drops rarely detected genes, computes per-cell summary statistics and keeps
cells that pass the gene-count and mitochondrial-fraction thresholds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np

from ...config import RunConfig
from ...errors import ConfigurationError
from ..matrix import CellMetadata, CountMatrix


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_n_genes",
    "high_n_genes",
    "high_percent_mito",
]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    counts : CountMatrix
        Counts restricted to retained cells and genes
    metadata : CellMetadata
        QC columns for retained cells only
    cells_total : int
        Cells before filtering
    genes_total : int
        Genes before filtering
    dropped_cells : List[str]
        Ids of removed cells
    dropped_genes : List[str]
        Ids of genes detected in too few cells
    reason_counts : Dict[str, int]
        Counts per removal reason (a cell may have several)
    """

    counts: CountMatrix
    metadata: CellMetadata
    cells_total: int = 0
    genes_total: int = 0
    dropped_cells: List[str] = field(default_factory=list)
    dropped_genes: List[str] = field(default_factory=list)
    reason_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def cells_removed(self) -> int:
        return len(self.dropped_cells)

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_kept": self.counts.n_cells,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
            "genes_total": self.genes_total,
            "genes_kept": self.counts.n_genes,
            "genes_removed": len(self.dropped_genes),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


def mito_gene_mask(gene_ids, prefix: str) -> np.ndarray:
    """Boolean mask of genes whose id starts with ``prefix`` (case-insensitive)."""
    prefix = prefix.upper()
    return np.array([str(g).upper().startswith(prefix) for g in gene_ids], dtype=bool)


def compute_cell_stats(counts: CountMatrix, mito_prefix: str) -> Dict[str, np.ndarray]:
    """Compute n_genes, n_counts and percent_mito for every cell.

    Parameters
    ----------
    counts : CountMatrix
        Count matrix
    mito_prefix : str
        Mitochondrial gene id prefix

    Returns
    -------
    Dict[str, np.ndarray]
        Arrays aligned with ``counts.cell_ids``
    """
    X = counts.X
    n_genes = np.asarray(X.getnnz(axis=1)).ravel().astype(np.int64)
    n_counts = np.asarray(X.sum(axis=1)).ravel().astype(np.int64)

    mito = mito_gene_mask(counts.gene_ids, mito_prefix)
    if mito.any():
        mito_counts = np.asarray(X[:, mito].sum(axis=1)).ravel().astype(float)
    else:
        mito_counts = np.zeros(counts.n_cells, dtype=float)

    percent_mito = np.zeros(counts.n_cells, dtype=float)
    nonempty = n_counts > 0
    percent_mito[nonempty] = mito_counts[nonempty] / n_counts[nonempty] * 100.0

    return {
        "n_genes": n_genes,
        "n_counts": n_counts,
        "percent_mito": percent_mito,
    }


class QCFilter:
    """Threshold-based cell and gene filter.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from scclust.core.preprocessing import QCFilter
    >>> qc = QCFilter(RunConfig(min_genes=200, max_genes=2500, max_percent_mito=5))
    >>> result = qc.run(counts)
    >>> result.metadata.table.head()
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _check_thresholds(self) -> None:
        cfg = self.config
        if cfg.min_genes >= cfg.max_genes:
            raise ConfigurationError(
                f"Inverted gene thresholds: min_genes={cfg.min_genes} "
                f">= max_genes={cfg.max_genes}"
            )
        if cfg.max_percent_mito <= 0:
            raise ConfigurationError("max_percent_mito must be positive")
        if cfg.min_cells < 0:
            raise ConfigurationError("min_cells must be >= 0")

    def filter_genes(self, counts: CountMatrix) -> np.ndarray:
        """Mask of genes detected in at least ``min_cells`` cells."""
        return counts.cells_per_gene() >= self.config.min_cells

    def run(self, counts: CountMatrix) -> QCResult:
        """Filter genes, then cells.

        Parameters
        ----------
        counts : CountMatrix
            Raw counts

        Returns
        -------
        QCResult
            Filtered counts with metadata for retained cells only

        Raises
        ------
        ConfigurationError
            If thresholds are inverted or no cell/gene survives
        """
        self._check_thresholds()
        cfg = self.config

        current = counts
        dropped_cells: List[str] = []
        dropped_genes: List[str] = []
        reason_counts = {name: 0 for name in REASON_COLUMNS}

        # Removing cells can push a gene below min_cells, and removing genes
        # changes n_genes, so filter until the output is a fixed point.
        while True:
            gene_keep = self.filter_genes(current)
            if not gene_keep.any():
                raise ConfigurationError(
                    f"No gene is detected in >= {cfg.min_cells} cells; "
                    "matrix is empty after filtering"
                )
            if not gene_keep.all():
                self.logger.info(
                    "Dropping %d genes detected in fewer than %d cells",
                    int((~gene_keep).sum()),
                    cfg.min_cells,
                )
                dropped_genes.extend(current.gene_ids[~gene_keep].tolist())
                current = current.subset(gene_mask=gene_keep)

            stats = compute_cell_stats(current, cfg.mito_prefix)
            reasons = {
                "low_n_genes": stats["n_genes"] <= cfg.min_genes,
                "high_n_genes": stats["n_genes"] >= cfg.max_genes,
                "high_percent_mito": stats["percent_mito"] >= cfg.max_percent_mito,
            }
            flagged = np.zeros(current.n_cells, dtype=bool)
            for name, mask in reasons.items():
                flagged |= mask
                reason_counts[name] += int(mask.sum())

            if flagged.all():
                raise ConfigurationError(
                    "All cells removed by QC thresholds "
                    f"(min_genes={cfg.min_genes}, max_genes={cfg.max_genes}, "
                    f"max_percent_mito={cfg.max_percent_mito})"
                )
            if not flagged.any():
                break

            dropped_cells.extend(current.cell_ids[flagged].tolist())
            current = current.subset(cell_mask=~flagged)

        # Metadata is built from the retained rows only
        metadata = CellMetadata.from_columns(
            current.cell_ids,
            n_genes=stats["n_genes"],
            n_counts=stats["n_counts"],
            percent_mito=stats["percent_mito"],
        )
        metadata.validate_against(current.cell_ids)
        filtered = current

        result = QCResult(
            counts=filtered,
            metadata=metadata,
            cells_total=counts.n_cells,
            genes_total=counts.n_genes,
            dropped_cells=dropped_cells,
            dropped_genes=dropped_genes,
            reason_counts=reason_counts,
        )

        self.logger.info(
            "QC kept %d/%d cells and %d/%d genes",
            filtered.n_cells,
            counts.n_cells,
            filtered.n_genes,
            counts.n_genes,
        )
        return result
