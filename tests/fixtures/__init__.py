"""Test fixtures for scclust.

Provides mock count matrix generators and test utilities.
"""

from .mock_counts import (
    create_block_embedding,
    create_count_frame,
    create_qc_counts,
    create_two_block_counts,
)

__all__ = [
    "create_block_embedding",
    "create_count_frame",
    "create_qc_counts",
    "create_two_block_counts",
]
