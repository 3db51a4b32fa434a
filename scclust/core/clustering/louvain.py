"""Louvain modularity optimisation on the shared-neighbor graph.

Algorithm
---------
1. Start with every node in its own community.
2. Local moving: visit nodes in order and move each to the neighbouring
   community with the largest gain ``k_i,C - gamma * k_i * tot(C) / 2m``,
   only when the gain beats staying put. Repeat passes until nothing moves
   or ``max_passes`` is reached.
3. Aggregate each community into a super-node (``S^T A S``) and repeat
   from step 2 until the number of communities stops changing or
   ``max_iterations`` levels have run.

The final partition is mapped back to cells and renumbered by size.
"""

from typing import List, Optional, Tuple
import logging
import warnings

import numpy as np
from joblib import Parallel, delayed
from scipy import sparse

from ...config import RunConfig
from ...errors import NumericalConvergenceWarning
from .labels import ClusterAssignment, renumber_by_size
from .neighbors import NeighborGraphData

GAIN_TOLERANCE = 1e-12


def modularity(
    adjacency: sparse.spmatrix,
    labels: np.ndarray,
    resolution: float = 1.0,
) -> float:
    """Newman modularity of a partition with a resolution parameter.

    Parameters
    ----------
    adjacency : sparse.spmatrix
        Symmetric weighted adjacency
    labels : np.ndarray
        Community of each node
    resolution : float
        gamma in ``sum_c [ in_c / 2m - gamma * (tot_c / 2m) ** 2 ]``

    Returns
    -------
    float
        Modularity (0 for an edgeless graph)
    """
    adjacency = sparse.csr_matrix(adjacency)
    two_m = float(adjacency.sum())
    if two_m == 0:
        return 0.0
    labels = np.asarray(labels)
    _, communities = np.unique(labels, return_inverse=True)
    n_comm = communities.max() + 1
    membership = sparse.csr_matrix(
        (np.ones(labels.size), (np.arange(labels.size), communities)),
        shape=(labels.size, n_comm),
    )
    internal = (membership.T @ adjacency @ membership).diagonal()
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    totals = np.bincount(communities, weights=degree, minlength=n_comm)
    return float(np.sum(internal / two_m - resolution * (totals / two_m) ** 2))


def _local_moving(
    adjacency: sparse.csr_matrix,
    resolution: float,
    order: np.ndarray,
    max_passes: int,
) -> Tuple[np.ndarray, bool, bool]:
    """One level of local moving.

    Returns
    -------
    Tuple[np.ndarray, bool, bool]
        (community per node, any node moved, converged within ``max_passes``)
    """
    n = adjacency.shape[0]
    indptr, indices, data = adjacency.indptr, adjacency.indices, adjacency.data
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    two_m = degree.sum()
    community = np.arange(n)
    totals = degree.copy()

    improved = False
    for _ in range(max_passes):
        moved = 0
        for node in order:
            k_i = degree[node]
            current = community[node]
            start, end = indptr[node], indptr[node + 1]
            neighbours = indices[start:end]
            weights = data[start:end]
            not_self = neighbours != node

            links = {}
            for comm, w in zip(community[neighbours[not_self]], weights[not_self]):
                links[comm] = links.get(comm, 0.0) + w

            totals[current] -= k_i
            best = current
            best_gain = links.get(current, 0.0) - resolution * k_i * totals[current] / two_m
            for comm in sorted(links):
                gain = links[comm] - resolution * k_i * totals[comm] / two_m
                if gain > best_gain + GAIN_TOLERANCE:
                    best, best_gain = comm, gain
            totals[best] += k_i
            if best != current:
                community[node] = best
                moved += 1
        if moved == 0:
            return community, improved, True
        improved = True
    return community, improved, False


def _aggregate(adjacency: sparse.csr_matrix, community: np.ndarray) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """Collapse communities into super-nodes."""
    _, dense = np.unique(community, return_inverse=True)
    n_comm = dense.max() + 1
    membership = sparse.csr_matrix(
        (np.ones(dense.size), (np.arange(dense.size), dense)),
        shape=(dense.size, n_comm),
    )
    coarse = (membership.T @ adjacency @ membership).tocsr()
    coarse.sum_duplicates()
    coarse.sort_indices()
    return coarse, dense


def louvain(
    adjacency: sparse.spmatrix,
    resolution: float,
    order: str = "sequential",
    seed: int = 1337,
    max_iterations: int = 10,
    max_passes: int = 100,
) -> Tuple[np.ndarray, int, bool]:
    """Run Louvain from singletons.

    A level whose local moving hits ``max_passes`` is still aggregated and
    the run continues, but the result is reported as not converged.

    Returns
    -------
    Tuple[np.ndarray, int, bool]
        (community per node, aggregation levels, converged)
    """
    adjacency = sparse.csr_matrix(adjacency, dtype=np.float64)
    n = adjacency.shape[0]
    node_community = np.arange(n)
    if adjacency.nnz == 0:
        return node_community, 0, True

    rng = np.random.default_rng(seed)
    graph = adjacency
    levels = 0
    settled = False
    passes_exhausted = False
    while levels < max_iterations:
        size = graph.shape[0]
        visit = rng.permutation(size) if order == "random" else np.arange(size)
        community, improved, passes_ok = _local_moving(
            graph, resolution, visit, max_passes
        )
        passes_exhausted |= not passes_ok
        graph, dense = _aggregate(graph, community)
        node_community = dense[node_community]
        levels += 1
        if not improved or graph.shape[0] == size:
            settled = True
            break
    return node_community, levels, settled and not passes_exhausted


def group_singletons(adjacency: sparse.spmatrix, labels: np.ndarray) -> np.ndarray:
    """Merge singleton clusters into their most-connected cluster.

    Isolated singletons are left alone. Connectivity is the mean edge weight
    to the members of each candidate cluster; ties go to the lower id.
    """
    adjacency = sparse.csr_matrix(adjacency)
    labels = np.asarray(labels).copy()
    ids, counts = np.unique(labels, return_counts=True)
    singles = set(ids[counts == 1].tolist())
    if not singles or len(singles) == len(ids):
        return labels
    sizes = dict(zip(ids.tolist(), counts.tolist()))

    original = labels.copy()
    for node in np.flatnonzero(np.isin(original, list(singles))):
        start, end = adjacency.indptr[node], adjacency.indptr[node + 1]
        neighbours = adjacency.indices[start:end]
        weights = adjacency.data[start:end]
        scores = {}
        for nb, w in zip(neighbours, weights):
            target = original[nb]
            if target in singles:
                continue
            scores[target] = scores.get(target, 0.0) + w
        if not scores:
            continue
        best = max(sorted(scores), key=lambda c: scores[c] / sizes[c])
        labels[node] = best
    return labels


def _single_start(
    adjacency: sparse.csr_matrix,
    resolution: float,
    order: str,
    seed: int,
    max_iterations: int,
    max_passes: int,
) -> Tuple[np.ndarray, int, bool, float]:
    labels, levels, converged = louvain(
        adjacency, resolution, order, seed, max_iterations, max_passes
    )
    return labels, levels, converged, modularity(adjacency, labels, resolution)


class ClusterEngine:
    """Louvain community detection on a NeighborGraphData.

    Parameters
    ----------
    config : RunConfig, optional
        Uses ``cluster_resolution``, ``louvain_order``, ``n_starts``,
        ``max_iterations``, ``max_passes``, ``group_singletons``, ``random_seed``
        and ``n_jobs``
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> engine = ClusterEngine(RunConfig(cluster_resolution=0.8))
    >>> assignment = engine.run(graph)
    >>> assignment.sizes()
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        graph: NeighborGraphData,
        resolution: Optional[float] = None,
    ) -> ClusterAssignment:
        """Cluster the graph.

        Parameters
        ----------
        graph : NeighborGraphData
            Shared-neighbor graph
        resolution : float, optional
            Overrides ``config.cluster_resolution``

        Returns
        -------
        ClusterAssignment
            One cluster id per cell, renumbered by size
        """
        cfg = self.config
        resolution = resolution if resolution is not None else cfg.cluster_resolution
        adjacency = sparse.csr_matrix(graph.weights, dtype=np.float64)
        seeds = [cfg.random_seed + i for i in range(cfg.n_starts)]

        if cfg.n_starts > 1 and cfg.n_jobs != 1:
            runs: List[Tuple] = Parallel(n_jobs=cfg.n_jobs)(
                delayed(_single_start)(
                    adjacency,
                    resolution,
                    cfg.louvain_order,
                    seed,
                    cfg.max_iterations,
                    cfg.max_passes,
                )
                for seed in seeds
            )
        else:
            runs = [
                _single_start(
                    adjacency,
                    resolution,
                    cfg.louvain_order,
                    seed,
                    cfg.max_iterations,
                    cfg.max_passes,
                )
                for seed in seeds
            ]

        # max() keeps the first of equal scores, so ties go to the lowest start
        best = max(range(len(runs)), key=lambda i: runs[i][3])
        labels, levels, converged, score = runs[best]
        if cfg.n_starts > 1:
            self.logger.debug(
                "Louvain starts modularity: %s (best start %d)",
                ", ".join(f"{r[3]:.4f}" for r in runs),
                best,
            )

        if not converged:
            message = (
                f"Louvain did not converge within {cfg.max_iterations} levels "
                f"of at most {cfg.max_passes} passes; "
                "returning best-effort partition"
            )
            warnings.warn(message, NumericalConvergenceWarning, stacklevel=2)
            self.logger.warning(message)

        if cfg.group_singletons:
            grouped = group_singletons(adjacency, labels)
            n_merged = int((grouped != labels).sum())
            if n_merged:
                self.logger.info("Merged %d singleton clusters", n_merged)
                labels = grouped
                score = modularity(adjacency, labels, resolution)

        labels = renumber_by_size(labels)
        assignment = ClusterAssignment(
            labels=labels,
            cell_ids=graph.cell_ids.copy(),
            resolution=resolution,
            modularity=score,
            n_levels=levels,
            converged=converged,
        )
        self.logger.info(
            "Louvain (resolution=%.2f): %d clusters, modularity=%.4f, %d levels",
            resolution,
            assignment.n_clusters,
            score,
            levels,
        )
        return assignment
