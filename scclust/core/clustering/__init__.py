"""Graph construction and community detection.

Main components:
- NeighborGraph: k-NN search plus Jaccard (shared-neighbor) weighting
- ClusterEngine: Louvain modularity optimisation
- ClusterAssignment: numeric clusters with a pure ``rename`` step
"""

from .neighbors import NeighborGraph, NeighborGraphData, jaccard_weights
from .labels import ClusterAssignment, LabeledAssignment, renumber_by_size
from .louvain import ClusterEngine, group_singletons, louvain, modularity

__all__ = [
    "NeighborGraph",
    "NeighborGraphData",
    "jaccard_weights",
    "ClusterAssignment",
    "LabeledAssignment",
    "renumber_by_size",
    "ClusterEngine",
    "group_singletons",
    "louvain",
    "modularity",
]
