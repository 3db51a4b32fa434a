"""Run configuration for scclust.

Example
-------
>>> from scclust.config import RunConfig
>>> config = RunConfig.from_yaml("run.yaml")
>>> config.validate()
"""

from .run import (
    LOUVAIN_ORDERS,
    MARKER_TESTS,
    NEIGHBOR_METHODS,
    NORMALIZATION_METHODS,
    RunConfig,
)

__all__ = [
    "RunConfig",
    "LOUVAIN_ORDERS",
    "MARKER_TESTS",
    "NEIGHBOR_METHODS",
    "NORMALIZATION_METHODS",
]
