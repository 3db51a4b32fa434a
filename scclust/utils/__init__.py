"""Utility functions for scclust.

Provides statistical helpers and cooperative cancellation used across modules.
"""

from .cancel import (
    CancellationToken,
    check,
)
from .stats import (
    auc_from_u,
    bonferroni,
    empirical_p_values,
    rank_sum_test,
    two_proportion_test,
)

__all__ = [
    "CancellationToken",
    "check",
    "auc_from_u",
    "bonferroni",
    "empirical_p_values",
    "rank_sum_test",
    "two_proportion_test",
]
