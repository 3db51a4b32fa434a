"""Differential expression testing for cluster markers.

Compares a group of cells against a reference set (default: every other
cell) gene by gene. Genes are pre-filtered on detection rate and fold
change, then tested with a Wilcoxon rank-sum test (``test="wilcox"``) or
scored by ROC AUC (``test="roc"``).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse

from ...config import RunConfig
from ...errors import ConfigurationError, DataIntegrityError, InsufficientDataError
from ...utils.cancel import CancellationToken, check
from ...utils.stats import auc_from_u, bonferroni, rank_sum_test
from ..clustering.labels import ClusterAssignment
from ..preprocessing.normalization import NormalizedMatrix

MARKER_COLUMNS = ["gene", "avg_log2FC", "pct_1", "pct_2", "p_val", "p_val_adj"]
ROC_COLUMNS = ["auc", "power"]


@dataclass(frozen=True, eq=False)
class MarkerResult:
    """Ranked markers for one group vs reference comparison.

    Attributes
    ----------
    group : str
        Name of the tested group
    reference : str
        Name of the reference set
    test : str
        wilcox or roc
    table : pd.DataFrame
        One row per tested gene, sorted by p_val then avg_log2FC descending
    n_group : int
        Cells in the group
    n_reference : int
        Cells in the reference
    """

    group: str
    reference: str
    test: str
    table: pd.DataFrame = field(repr=False)
    n_group: int = 0
    n_reference: int = 0

    def __len__(self) -> int:
        return len(self.table)

    @property
    def genes(self) -> List[str]:
        return self.table["gene"].tolist()

    def top(self, n: int = 10, positive: bool = False) -> pd.DataFrame:
        """First ``n`` rows, optionally only positive fold changes."""
        table = self.table
        if positive:
            table = table[table["avg_log2FC"] > 0]
        return table.head(n).copy()

    def to_dataframe(self) -> pd.DataFrame:
        return self.table.copy()


@dataclass(frozen=True, eq=False)
class AllMarkersResult:
    """Per-cluster markers from ``find_all_markers``."""

    results: Dict[int, MarkerResult]
    elapsed_seconds: float = 0.0

    def __getitem__(self, cluster: int) -> MarkerResult:
        return self.results[cluster]

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def combined(self) -> pd.DataFrame:
        """All tables stacked with a leading ``cluster`` column."""
        frames = []
        for cluster, result in self.results.items():
            frame = result.to_dataframe()
            frame.insert(0, "cluster", cluster)
            frames.append(frame)
        if not frames:
            return pd.DataFrame(columns=["cluster"] + MARKER_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    def top_genes(self, n: int = 10) -> Dict[int, List[str]]:
        """Top ``n`` positive marker genes per cluster."""
        return {
            cluster: result.top(n, positive=True)["gene"].tolist()
            for cluster, result in self.results.items()
        }


def _test_chunk(
    group: np.ndarray,
    reference: np.ndarray,
) -> tuple:
    u_stat, p_values = rank_sum_test(group, reference)
    return u_stat, p_values


def detection_rate(X: sparse.csr_matrix) -> np.ndarray:
    """Fraction of rows with a value > 0 per column, rounded to 3 places."""
    if X.shape[0] == 0:
        return np.zeros(X.shape[1])
    positive = np.asarray((X > 0).sum(axis=0)).ravel()
    return np.round(positive / X.shape[0], 3)


class MarkerTester:
    """Find marker genes for groups of cells.

    Parameters
    ----------
    config : RunConfig, optional
        Uses ``min_pct``, ``logfc_threshold``, ``only_pos``, ``marker_test``,
        ``pseudocount`` and ``n_jobs``
    logger : logging.Logger, optional
        Logger instance
    chunk_size : int
        Genes per test batch; cancellation is checked between batches

    Example
    -------
    >>> tester = MarkerTester(RunConfig(only_pos=True))
    >>> markers = tester.find_all_markers(normalized, assignment)
    >>> markers.top_genes(5)
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
        chunk_size: int = 500,
    ):
        if chunk_size < 1:
            raise ConfigurationError("chunk_size must be >= 1")
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.chunk_size = chunk_size

    def _positions(self, normalized: NormalizedMatrix, cells: Sequence[Any]) -> np.ndarray:
        cells = pd.Index([str(c) for c in cells])
        positions = normalized.cell_ids.get_indexer(cells)
        if (positions < 0).any():
            missing = cells[positions < 0][:5].tolist()
            raise DataIntegrityError(f"Cells not present in expression matrix: {missing}")
        return positions

    def _linear_mean(self, X: sparse.csr_matrix, method: str) -> np.ndarray:
        linear = X.expm1() if method == "LogNormalize" else X
        return np.asarray(linear.mean(axis=0)).ravel()

    def _run_tests(
        self,
        Xg: sparse.csr_matrix,
        Xr: sparse.csr_matrix,
        genes: np.ndarray,
        token: Optional[CancellationToken],
    ):
        n_jobs = self.config.n_jobs
        chunks = [
            genes[i:i + self.chunk_size] for i in range(0, len(genes), self.chunk_size)
        ]
        batch = max(abs(n_jobs), 1)
        u_parts, p_parts = [], []
        for start in range(0, len(chunks), batch):
            check(token, f"marker test chunk {start}")
            work = chunks[start:start + batch]
            if n_jobs == 1:
                out = [_test_chunk(Xg[:, c].toarray(), Xr[:, c].toarray()) for c in work]
            else:
                out = Parallel(n_jobs=n_jobs)(
                    delayed(_test_chunk)(Xg[:, c].toarray(), Xr[:, c].toarray())
                    for c in work
                )
            for u_stat, p_values in out:
                u_parts.append(u_stat)
                p_parts.append(p_values)
        if not u_parts:
            return np.array([]), np.array([])
        return np.concatenate(u_parts), np.concatenate(p_parts)

    def find_markers(
        self,
        normalized: NormalizedMatrix,
        group: Sequence[Any],
        reference: Optional[Sequence[Any]] = None,
        group_name: str = "group",
        reference_name: Optional[str] = None,
        test: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> MarkerResult:
        """Test every candidate gene for group vs reference.

        Parameters
        ----------
        normalized : NormalizedMatrix
            Normalized expression
        group : Sequence
            Cell ids of the group
        reference : Sequence, optional
            Cell ids of the reference; default is every other cell
        group_name, reference_name : str
            Labels stored on the result
        test : str, optional
            Overrides ``config.marker_test``
        token : CancellationToken, optional
            Checked between gene chunks

        Returns
        -------
        MarkerResult
            Ranked marker table

        Raises
        ------
        InsufficientDataError
            If the group or reference is empty
        ConfigurationError
            If group and reference overlap
        """
        cfg = self.config
        test = test or cfg.marker_test
        if test not in ("wilcox", "roc"):
            raise ConfigurationError(f"Unknown marker test '{test}'")

        g_pos = self._positions(normalized, group)
        if g_pos.size == 0:
            raise InsufficientDataError(f"Group '{group_name}' has no cells")
        if reference is None:
            r_mask = np.ones(normalized.shape[0], dtype=bool)
            r_mask[g_pos] = False
            r_pos = np.flatnonzero(r_mask)
            reference_name = reference_name or "rest"
        else:
            r_pos = self._positions(normalized, reference)
            overlap = np.intersect1d(g_pos, r_pos)
            if overlap.size:
                raise ConfigurationError(
                    f"Group and reference share {overlap.size} cells"
                )
            reference_name = reference_name or "reference"
        if r_pos.size == 0:
            raise InsufficientDataError(f"Reference for '{group_name}' has no cells")

        Xg = normalized.X[g_pos]
        Xr = normalized.X[r_pos]
        pct_1 = detection_rate(Xg)
        pct_2 = detection_rate(Xr)

        mean_g = self._linear_mean(Xg, normalized.method)
        mean_r = self._linear_mean(Xr, normalized.method)
        fold = np.log2(mean_g + cfg.pseudocount) - np.log2(mean_r + cfg.pseudocount)

        keep = np.maximum(pct_1, pct_2) >= cfg.min_pct
        if cfg.only_pos:
            keep &= (fold >= cfg.logfc_threshold) & (fold > 0)
        else:
            keep &= np.abs(fold) >= cfg.logfc_threshold
        genes = np.flatnonzero(keep)

        self.logger.debug(
            "Markers %s vs %s: %d/%d genes pass min_pct=%.2f, logfc=%.2f",
            group_name,
            reference_name,
            genes.size,
            normalized.shape[1],
            cfg.min_pct,
            cfg.logfc_threshold,
        )

        u_stat, p_values = self._run_tests(Xg, Xr, genes, token)
        table = pd.DataFrame(
            {
                "gene": normalized.gene_ids[genes].astype(str).to_numpy(),
                "avg_log2FC": fold[genes],
                "pct_1": pct_1[genes],
                "pct_2": pct_2[genes],
                "p_val": p_values,
                "p_val_adj": bonferroni(p_values),
            },
            columns=MARKER_COLUMNS,
        )
        if test == "roc":
            auc = auc_from_u(u_stat, g_pos.size, r_pos.size)
            table["auc"] = np.round(auc, 3)
            table["power"] = np.round(2 * np.abs(auc - 0.5), 3)

        order = np.lexsort((-table["avg_log2FC"].to_numpy(), table["p_val"].to_numpy()))
        table = table.iloc[order].reset_index(drop=True)

        return MarkerResult(
            group=str(group_name),
            reference=str(reference_name),
            test=test,
            table=table,
            n_group=int(g_pos.size),
            n_reference=int(r_pos.size),
        )

    def find_cluster_markers(
        self,
        normalized: NormalizedMatrix,
        assignment: ClusterAssignment,
        cluster: int,
        reference_clusters: Optional[Sequence[int]] = None,
        token: Optional[CancellationToken] = None,
    ) -> MarkerResult:
        """Markers of one cluster vs the rest or vs chosen clusters."""
        self._check_alignment(normalized, assignment)
        if cluster not in assignment.clusters:
            raise ConfigurationError(f"Unknown cluster {cluster}")
        reference = None
        reference_name = "rest"
        if reference_clusters is not None:
            mask = np.isin(assignment.labels, list(reference_clusters))
            reference = assignment.cell_ids[mask]
            reference_name = ",".join(str(c) for c in reference_clusters)
        return self.find_markers(
            normalized,
            assignment.cells_in(cluster),
            reference=reference,
            group_name=str(cluster),
            reference_name=reference_name,
            token=token,
        )

    def _check_alignment(
        self,
        normalized: NormalizedMatrix,
        assignment: ClusterAssignment,
    ) -> None:
        if not normalized.cell_ids.equals(assignment.cell_ids):
            raise DataIntegrityError(
                "Cluster assignment cells do not match the expression matrix"
            )

    def find_all_markers(
        self,
        normalized: NormalizedMatrix,
        assignment: ClusterAssignment,
        token: Optional[CancellationToken] = None,
    ) -> AllMarkersResult:
        """Markers of every cluster against all other cells.

        Each cluster is tested independently; the token is checked before
        each cluster.

        Returns
        -------
        AllMarkersResult
            MarkerResult per cluster id plus a combined table
        """
        self._check_alignment(normalized, assignment)
        start = time.time()
        results: Dict[int, MarkerResult] = {}
        for cluster in assignment.clusters:
            check(token, f"markers for cluster {cluster}")
            results[cluster] = self.find_markers(
                normalized,
                assignment.cells_in(cluster),
                group_name=str(cluster),
                reference_name="rest",
                token=token,
            )
            self.logger.info(
                "Cluster %d: %d markers (%d cells)",
                cluster,
                len(results[cluster]),
                results[cluster].n_group,
            )
        elapsed = time.time() - start
        self.logger.info(
            "Marker search completed for %d clusters in %.1f seconds",
            len(results),
            elapsed,
        )
        return AllMarkersResult(results=results, elapsed_seconds=elapsed)
