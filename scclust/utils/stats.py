"""Statistical utilities for scclust.

Vectorized rank tests, multiple-testing correction and the two-proportion
test used to score principal components.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.stats import chi2_contingency, mannwhitneyu
from statsmodels.stats.multitest import multipletests


def rank_sum_test(
    group: np.ndarray,
    reference: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Two-sided Wilcoxon rank-sum test for every column.

    Uses the normal approximation with tie and continuity correction.
    Columns that are constant across both samples get p = 1.

    Parameters
    ----------
    group : np.ndarray
        Cells x genes values for the first sample
    reference : np.ndarray
        Cells x genes values for the second sample

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (U statistic of ``group``, p-values)
    """
    group = np.asarray(group, dtype=float)
    reference = np.asarray(reference, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        result = mannwhitneyu(
            group,
            reference,
            alternative="two-sided",
            method="asymptotic",
            use_continuity=True,
            axis=0,
        )
    u_stat = np.atleast_1d(np.asarray(result.statistic, dtype=float))
    p_values = np.atleast_1d(np.asarray(result.pvalue, dtype=float))

    constant = np.all(
        np.vstack([group, reference]) == np.vstack([group, reference])[:1], axis=0
    )
    p_values = np.where(constant | np.isnan(p_values), 1.0, p_values)
    return u_stat, np.clip(p_values, 0.0, 1.0)


def auc_from_u(u_stat: np.ndarray, n_group: int, n_reference: int) -> np.ndarray:
    """Area under the ROC curve for classifying group vs reference."""
    return np.asarray(u_stat, dtype=float) / float(n_group * n_reference)


def bonferroni(p_values: np.ndarray) -> np.ndarray:
    """Bonferroni-adjusted p-values, capped at 1."""
    p_values = np.asarray(p_values, dtype=float)
    if p_values.size == 0:
        return p_values.copy()
    return multipletests(p_values, method="bonferroni")[1]


def two_proportion_test(successes_a: int, successes_b: int, n: int) -> float:
    """Chi-square test (with continuity correction) of two equal-size proportions.

    Returns 1.0 when the contingency table is degenerate.
    """
    table = np.array(
        [[successes_a, n - successes_a], [successes_b, n - successes_b]],
        dtype=float,
    )
    if (table.sum(axis=0) == 0).any() or (table.sum(axis=1) == 0).any():
        return 1.0
    _, p_value, _, _ = chi2_contingency(table, correction=True)
    return float(p_value)


def empirical_p_values(observed: np.ndarray, null: np.ndarray) -> np.ndarray:
    """Fraction of null values strictly greater than each observed value."""
    null_sorted = np.sort(np.asarray(null, dtype=float))
    if null_sorted.size == 0:
        return np.ones_like(np.asarray(observed, dtype=float))
    n_le = np.searchsorted(null_sorted, observed, side="right")
    return (null_sorted.size - n_le) / null_sorted.size
