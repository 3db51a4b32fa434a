"""Unit tests for statistics helpers and cancellation."""

import threading

import pytest
import numpy as np
from scipy.stats import mannwhitneyu

from scclust.errors import ScclustError, StageCancelledError
from scclust.utils.cancel import CancellationToken, check
from scclust.utils.stats import (
    auc_from_u,
    bonferroni,
    empirical_p_values,
    rank_sum_test,
    two_proportion_test,
)


class TestRankSumTest:
    """Tests for the column-wise Wilcoxon test."""

    def test_matches_scipy_per_column(self):
        """Test each column agrees with a direct scipy call."""
        rng = np.random.default_rng(0)
        group = rng.poisson(3.0, size=(15, 4)).astype(float)
        reference = rng.poisson(2.0, size=(20, 4)).astype(float)
        u_stat, p_values = rank_sum_test(group, reference)
        for j in range(4):
            expected = mannwhitneyu(
                group[:, j], reference[:, j], alternative="two-sided",
                method="asymptotic", use_continuity=True,
            )
            assert u_stat[j] == pytest.approx(expected.statistic)
            assert p_values[j] == pytest.approx(expected.pvalue)

    def test_constant_column(self):
        """Test a column that never varies gets p = 1."""
        group = np.zeros((5, 2))
        reference = np.zeros((6, 2))
        reference[:, 1] = 1.0
        _, p_values = rank_sum_test(group, reference)
        assert p_values[0] == 1.0
        assert p_values[1] < 0.05

    def test_auc(self):
        """Test AUC from the U statistic of perfectly separated samples."""
        group = np.array([[5.0], [6.0], [7.0]])
        reference = np.array([[1.0], [2.0]])
        u_stat, _ = rank_sum_test(group, reference)
        np.testing.assert_allclose(auc_from_u(u_stat, 3, 2), [1.0])


class TestCorrections:
    """Tests for multiple testing and proportion tests."""

    def test_bonferroni_capped(self):
        """Test adjustment multiplies by the test count and caps at 1."""
        np.testing.assert_allclose(bonferroni(np.array([0.01, 0.2, 0.5])), [0.03, 0.6, 1.0])

    def test_bonferroni_empty(self):
        """Test an empty input stays empty."""
        assert bonferroni(np.array([])).size == 0

    def test_two_proportion_test(self):
        """Test unequal proportions give a small p-value."""
        assert two_proportion_test(40, 5, 100) < 1e-6
        assert two_proportion_test(10, 10, 100) == pytest.approx(1.0)

    def test_two_proportion_degenerate(self):
        """Test an all-zero column returns 1."""
        assert two_proportion_test(0, 0, 50) == 1.0

    def test_empirical_p_values(self):
        """Test fraction of null values strictly above each observation."""
        p_values = empirical_p_values(np.array([0.5, 2.0, 10.0]), np.array([3.0, 1.0, 2.0]))
        np.testing.assert_allclose(p_values, [1.0, 1 / 3, 0.0])

    def test_empirical_p_values_empty_null(self):
        """Test an empty null yields p = 1."""
        np.testing.assert_array_equal(empirical_p_values(np.array([1.0, 2.0]), np.array([])), [1.0, 1.0])


class TestCancellationToken:
    """Tests for cooperative cancellation."""

    def test_not_cancelled(self):
        """Test a fresh token does not raise."""
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        check(token)
        check(None)

    def test_cancel_reason_and_location(self):
        """Test the error names the reason and the checkpoint."""
        token = CancellationToken()
        token.cancel("user interrupt")
        assert token.cancelled
        with pytest.raises(StageCancelledError, match=r"user interrupt \(chunk 3\)"):
            check(token, "chunk 3")

    def test_cancel_from_other_thread(self):
        """Test cancellation set by another thread is observed."""
        token = CancellationToken()
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()
        with pytest.raises(ScclustError):
            token.raise_if_cancelled()
