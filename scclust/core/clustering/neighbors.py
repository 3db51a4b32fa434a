"""k-nearest-neighbor graph refined by shared-neighbor (Jaccard) similarity.

Neighbors are found with ``scipy.spatial.cKDTree`` in the leading PCs.
Each cell's neighbor set includes the cell itself. Any two cells whose
neighbor sets intersect get an edge weighted by the Jaccard index of the
two sets, so every k-NN pair is connected and the graph is symmetric.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial import cKDTree

from ...config import RunConfig
from ...errors import InsufficientDataError
from ..reduction.pca import Embedding


@dataclass(frozen=True, eq=False)
class NeighborGraphData:
    """Shared-neighbor graph over cells.

    Attributes
    ----------
    weights : sparse.csr_matrix
        Symmetric Jaccard weights, zero diagonal
    knn_indices : np.ndarray
        Cells x k neighbor positions, self excluded, nearest first
    knn_distances : np.ndarray
        Euclidean distances matching ``knn_indices``
    cell_ids : pd.Index
        Cell identifiers (row/column order of ``weights``)
    k : int
        Effective neighbor count
    n_dims : int
        PCs used for the search
    """

    weights: sparse.csr_matrix
    knn_indices: np.ndarray = field(repr=False)
    knn_distances: np.ndarray = field(repr=False)
    cell_ids: pd.Index = field(repr=False)
    k: int = 0
    n_dims: int = 0

    @property
    def n_cells(self) -> int:
        return self.weights.shape[0]

    @property
    def n_edges(self) -> int:
        """Undirected edge count."""
        return self.weights.nnz // 2

    def degree(self) -> np.ndarray:
        """Number of neighbors of each cell in the weighted graph."""
        return np.asarray(self.weights.getnnz(axis=1)).ravel()

    def knn_adjacency(self) -> sparse.csr_matrix:
        """Binary (directed) k-NN adjacency without self loops."""
        n = self.n_cells
        rows = np.repeat(np.arange(n), self.knn_indices.shape[1])
        data = np.ones(rows.size, dtype=np.float64)
        return sparse.csr_matrix(
            (data, (rows, self.knn_indices.ravel())), shape=(n, n)
        )


def _order_ties(indices: np.ndarray, distances: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Sort each row by (distance, cell index)."""
    order = np.lexsort((indices, distances), axis=-1)
    rows = np.arange(indices.shape[0])[:, np.newaxis]
    return indices[rows, order], distances[rows, order]


def jaccard_weights(neighbors: np.ndarray, n_cells: int, prune: float = 0.0) -> sparse.csr_matrix:
    """Jaccard similarity between neighbor sets.

    Parameters
    ----------
    neighbors : np.ndarray
        Cells x (k + 1) neighbor positions, each row containing the cell itself
    n_cells : int
        Number of cells
    prune : float
        Weights strictly below this are removed

    Returns
    -------
    sparse.csr_matrix
        Symmetric weights with zero diagonal
    """
    size = neighbors.shape[1]
    rows = np.repeat(np.arange(n_cells), size)
    membership = sparse.csr_matrix(
        (np.ones(rows.size, dtype=np.float64), (rows, neighbors.ravel())),
        shape=(n_cells, n_cells),
    )
    shared = (membership @ membership.T).tocoo()
    union = 2.0 * size - shared.data
    weights = shared.data / union

    keep = (shared.row != shared.col) & (weights >= prune) & (weights > 0)
    graph = sparse.csr_matrix(
        (weights[keep], (shared.row[keep], shared.col[keep])),
        shape=(n_cells, n_cells),
    )
    graph.sort_indices()
    return graph


class NeighborGraph:
    """Build the shared-neighbor graph from an Embedding.

    Parameters
    ----------
    config : RunConfig, optional
        Uses ``neighbor_k``, ``n_neighbor_dims``, ``neighbor_method``,
        ``approx_eps``, ``prune_snn`` and ``n_jobs``
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> graph = NeighborGraph(RunConfig(neighbor_k=20)).run(embedding)
    >>> graph.n_edges
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def find_neighbors(
        self,
        coords: np.ndarray,
        k: int,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """k nearest neighbors of every cell, self excluded.

        Neighbors are ordered by (distance, cell index). When the k-th
        distance is shared by cells beyond the initial query window, every
        cell at that distance is collected so the lowest indices win.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (indices, distances), both cells x k
        """
        cfg = self.config
        n = coords.shape[0]
        eps = cfg.approx_eps if cfg.neighbor_method == "approx" else 0.0
        tree = cKDTree(coords)
        # Room for the query point and one extra to detect a tie at the k-th distance
        n_query = min(k + 2, n)
        distances, indices = tree.query(coords, k=n_query, eps=eps, workers=cfg.n_jobs)
        distances = np.atleast_2d(distances)
        indices = np.atleast_2d(indices)

        out_idx = np.empty((n, k), dtype=np.int64)
        out_dist = np.empty((n, k), dtype=np.float64)
        for i in range(n):
            mask = indices[i] != i
            idx, dist = indices[i][mask], distances[i][mask]
            if n_query < n and dist[k - 1] >= dist[-1]:
                tied_idx, tied_dist = self._tied_candidates(
                    tree, coords, i, dist[k - 1], eps
                )
                if tied_idx.size >= k:
                    idx, dist = tied_idx, tied_dist
            idx, dist = _order_ties(idx[np.newaxis, :], dist[np.newaxis, :])
            out_idx[i] = idx[0, :k]
            out_dist[i] = dist[0, :k]
        return out_idx, out_dist

    @staticmethod
    def _tied_candidates(
        tree: cKDTree,
        coords: np.ndarray,
        cell: int,
        radius: float,
        eps: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Every other cell within ``radius`` of ``cell``, with distances."""
        idx = np.asarray(
            tree.query_ball_point(coords[cell], np.nextafter(radius, np.inf), eps=eps),
            dtype=np.int64,
        )
        idx = idx[idx != cell]
        dist = np.sqrt(((coords[idx] - coords[cell]) ** 2).sum(axis=1))
        return idx, dist

    def run(
        self,
        embedding: Embedding,
        n_dims: Optional[int] = None,
        k: Optional[int] = None,
    ) -> NeighborGraphData:
        """Construct the graph.

        Parameters
        ----------
        embedding : Embedding
            PCA result
        n_dims : int, optional
            Overrides ``config.n_neighbor_dims``
        k : int, optional
            Overrides ``config.neighbor_k``

        Returns
        -------
        NeighborGraphData
            Symmetric Jaccard-weighted graph

        Raises
        ------
        InsufficientDataError
            If fewer than 2 cells are present
        """
        cfg = self.config
        n_cells = embedding.cell_embeddings.shape[0]
        if n_cells < 2:
            raise InsufficientDataError(
                f"Neighbor graph needs at least 2 cells, got {n_cells}"
            )

        n_dims = n_dims or cfg.n_neighbor_dims
        if n_dims > embedding.n_components:
            self.logger.warning(
                "Requested %d dims but embedding has %d components; using all",
                n_dims,
                embedding.n_components,
            )
        coords = np.ascontiguousarray(embedding.restrict(n_dims), dtype=np.float64)

        k_requested = k or cfg.neighbor_k
        k_eff = min(k_requested, n_cells - 1)
        if k_eff < k_requested:
            self.logger.warning(
                "neighbor_k=%d exceeds n_cells-1; using k=%d", k_requested, k_eff
            )

        indices, distances = self.find_neighbors(coords, k_eff)
        with_self = np.column_stack([np.arange(n_cells), indices])
        weights = jaccard_weights(with_self, n_cells, prune=cfg.prune_snn)

        self.logger.info(
            "Built SNN graph: %d cells, k=%d, %d dims, %d edges (%s search)",
            n_cells,
            k_eff,
            coords.shape[1],
            weights.nnz // 2,
            cfg.neighbor_method,
        )
        return NeighborGraphData(
            weights=weights,
            knn_indices=indices,
            knn_distances=distances,
            cell_ids=embedding.cell_ids.copy(),
            k=k_eff,
            n_dims=coords.shape[1],
        )
