"""Cluster assignments and biological label mapping."""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping
import logging

import numpy as np
import pandas as pd

from ...errors import ConfigurationError, DataIntegrityError

logger = logging.getLogger(__name__)


def renumber_by_size(labels: np.ndarray) -> np.ndarray:
    """Relabel clusters 0..n-1 by size descending, ties by first cell index."""
    labels = np.asarray(labels)
    unique, first, counts = np.unique(labels, return_index=True, return_counts=True)
    order = np.lexsort((first, -counts))
    mapping = np.empty(unique.size, dtype=np.int64)
    mapping[order] = np.arange(unique.size)
    positions = np.searchsorted(unique, labels)
    return mapping[positions]


@dataclass(frozen=True, eq=False)
class ClusterAssignment:
    """Numeric cluster id per cell from one clustering run.

    Attributes
    ----------
    labels : np.ndarray
        Cluster id per cell, 0 is the largest cluster
    cell_ids : pd.Index
        Cell identifiers aligned with ``labels``
    resolution : float
        Resolution parameter used
    modularity : float
        Modularity of the partition at that resolution
    n_levels : int
        Aggregation levels performed
    converged : bool
        False if the iteration budget ran out
    """

    labels: np.ndarray
    cell_ids: pd.Index = field(repr=False)
    resolution: float = 0.5
    modularity: float = 0.0
    n_levels: int = 0
    converged: bool = True

    def __post_init__(self):
        labels = np.asarray(self.labels, dtype=np.int64)
        if labels.shape != (len(self.cell_ids),):
            raise DataIntegrityError(
                f"{labels.size} labels for {len(self.cell_ids)} cells"
            )
        labels = labels.copy()
        labels.setflags(write=False)
        object.__setattr__(self, "labels", labels)

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.labels).size)

    @property
    def clusters(self):
        return sorted(int(c) for c in np.unique(self.labels))

    def sizes(self) -> pd.Series:
        """Cells per cluster, indexed by cluster id."""
        return pd.Series(self.labels).value_counts().sort_index().rename("n_cells")

    def to_series(self) -> pd.Series:
        return pd.Series(self.labels, index=self.cell_ids, name="cluster")

    def cells_in(self, cluster: int) -> pd.Index:
        """Cell ids assigned to ``cluster``."""
        return self.cell_ids[self.labels == cluster]

    def rename(self, mapping: Mapping[int, Any]) -> "LabeledAssignment":
        """Map numeric ids to external labels without touching this object.

        Parameters
        ----------
        mapping : Mapping[int, Any]
            Cluster id to label. Every cluster must be covered; several ids
            may share one label.

        Returns
        -------
        LabeledAssignment
            New object holding the mapped labels and this assignment
        """
        mapping = {int(k): str(v) for k, v in mapping.items()}
        missing = [c for c in self.clusters if c not in mapping]
        if missing:
            raise ConfigurationError(f"No label given for clusters {missing}")
        unknown = sorted(set(mapping) - set(self.clusters))
        if unknown:
            logger.warning("Ignoring labels for unknown clusters %s", unknown)
            mapping = {k: v for k, v in mapping.items() if k in self.clusters}
        return LabeledAssignment(assignment=self, mapping=mapping)


@dataclass(frozen=True, eq=False)
class LabeledAssignment:
    """ClusterAssignment with an external label per cluster id."""

    assignment: ClusterAssignment
    mapping: Dict[int, str]

    @property
    def labels(self) -> np.ndarray:
        return np.array([self.mapping[int(c)] for c in self.assignment.labels], dtype=object)

    def to_series(self) -> pd.Series:
        categories = list(dict.fromkeys(self.mapping[c] for c in sorted(self.mapping)))
        return pd.Series(
            pd.Categorical(self.labels, categories=categories),
            index=self.assignment.cell_ids,
            name="cell_type",
        )
