"""Unit tests for preprocessing module."""

import logging

import pytest
import numpy as np
import pandas as pd

from scclust.config import RunConfig
from scclust.core.matrix import CellMetadata, CountMatrix
from scclust.core.preprocessing import (
    FeatureSelector,
    Normalizer,
    QCFilter,
    Scaler,
    compute_cell_stats,
    mito_gene_mask,
    regress_out,
    standardize,
    standardized_variance,
)
from scclust.errors import ConfigurationError, InsufficientDataError


def qc_config(**overrides) -> RunConfig:
    values = dict(min_genes=2, max_genes=10, max_percent_mito=20, min_cells=2)
    values.update(overrides)
    return RunConfig(**values)


class TestCellStats:
    """Tests for per-cell statistics."""

    def test_mito_prefix_case_insensitive(self):
        """Test mitochondrial genes match regardless of case."""
        mask = mito_gene_mask(["MT-CO1", "mt-nd2", "GAPDH", "AMT-1"], "MT-")
        assert mask.tolist() == [True, True, False, False]

    def test_compute_cell_stats(self):
        """Test n_genes, n_counts and percent_mito."""
        counts = CountMatrix.from_dense(
            np.array([[3, 1, 0], [0, 0, 0]]), ["a", "b"], ["MT-CO1", "G1", "G2"]
        )
        stats = compute_cell_stats(counts, "MT-")
        assert stats["n_genes"].tolist() == [2, 0]
        assert stats["n_counts"].tolist() == [4, 0]
        assert stats["percent_mito"][0] == pytest.approx(75.0)
        # Empty cells get 0 rather than NaN
        assert stats["percent_mito"][1] == 0.0


class TestQCFilter:
    """Tests for QCFilter."""

    def test_retained_cells_satisfy_predicates(self, qc_counts):
        """Test every retained cell passes every threshold."""
        cfg = qc_config()
        result = QCFilter(cfg).run(qc_counts)
        table = result.metadata.table
        assert (table["n_genes"] > cfg.min_genes).all()
        assert (table["n_genes"] < cfg.max_genes).all()
        assert (table["percent_mito"] < cfg.max_percent_mito).all()

    def test_failing_cells_removed(self, qc_counts):
        """Test each failing cell is dropped with its metadata."""
        result = QCFilter(qc_config()).run(qc_counts)
        assert set(result.dropped_cells) == {"sparse", "dense", "mito"}
        assert list(result.counts.cell_ids) == [f"good{i}" for i in range(6)]
        result.metadata.validate_against(result.counts.cell_ids)
        for cell in result.dropped_cells:
            assert cell not in result.metadata.table.index

    def test_reason_counts(self, qc_counts):
        """Test removal reasons are tallied."""
        result = QCFilter(qc_config()).run(qc_counts)
        assert result.reason_counts["low_n_genes"] == 1
        assert result.reason_counts["high_n_genes"] == 1
        assert result.reason_counts["high_percent_mito"] == 1
        summary = result.to_dict()
        assert summary["cells_kept"] == 6
        assert summary["cells_removed"] == 3

    def test_reasons_not_exclusive(self, qc_counts):
        """Test a cell failing two predicates is tallied under both."""
        result = QCFilter(qc_config(max_percent_mito=5)).run(qc_counts)
        assert set(result.dropped_cells) == {"sparse", "dense", "mito"}
        assert result.reason_counts["high_n_genes"] == 1
        assert result.reason_counts["high_percent_mito"] == 2
        assert result.to_dict()["cells_removed"] == 3

    def test_rare_genes_dropped(self, qc_counts):
        """Test genes detected in too few cells are removed."""
        result = QCFilter(qc_config()).run(qc_counts)
        assert "Rare" in result.dropped_genes
        assert "Rare" not in result.counts.gene_ids
        # MT-CO1 was only detected in cells removed by QC
        assert "MT-CO1" not in result.counts.gene_ids
        assert "MT-ND1" in result.counts.gene_ids

    def test_idempotent(self, qc_counts):
        """Test QC on already-filtered output is a no-op."""
        qc = QCFilter(qc_config())
        first = qc.run(qc_counts)
        second = qc.run(first.counts)
        assert second.counts.cell_ids.equals(first.counts.cell_ids)
        assert second.counts.gene_ids.equals(first.counts.gene_ids)
        assert second.metadata.equals(first.metadata)
        assert second.cells_removed == 0
        assert second.dropped_genes == []

    def test_idempotent_on_two_block(self, two_block_counts, small_config):
        """Test idempotence on the two-block matrix."""
        qc = QCFilter(small_config)
        first = qc.run(two_block_counts)
        second = qc.run(first.counts)
        assert second.counts.shape == first.counts.shape
        assert second.metadata.equals(first.metadata)

    def test_inverted_thresholds(self, qc_counts):
        """Test min_genes >= max_genes is a configuration error."""
        with pytest.raises(ConfigurationError, match="Inverted"):
            QCFilter(qc_config(min_genes=10, max_genes=5)).run(qc_counts)

    def test_all_cells_removed(self, qc_counts):
        """Test an empty result is a configuration error."""
        with pytest.raises(ConfigurationError, match="All cells removed"):
            QCFilter(qc_config(min_genes=50, max_genes=60)).run(qc_counts)


class TestNormalizer:
    """Tests for Normalizer."""

    def test_sparsity_preserved(self, two_block_counts):
        """Test zero counts stay zero."""
        normalized = Normalizer(RunConfig()).run(two_block_counts)
        counts_nz = two_block_counts.X.toarray() > 0
        norm_nz = normalized.X.toarray() > 0
        np.testing.assert_array_equal(counts_nz, norm_nz)

    def test_expm1_rows_sum_to_scale_factor(self, two_block_counts):
        """Test each cell's linear values sum to the scale factor."""
        normalized = Normalizer(RunConfig(scale_factor=1e4)).run(two_block_counts)
        row_sums = np.asarray(normalized.X.expm1().sum(axis=1)).ravel()
        np.testing.assert_allclose(row_sums, 1e4, rtol=1e-10)

    def test_log_normalize_values(self):
        """Test log1p(x / n * scale_factor)."""
        counts = CountMatrix.from_dense(np.array([[1, 3], [2, 0]]), ["a", "b"], ["g1", "g2"])
        normalized = Normalizer(RunConfig(scale_factor=100)).run(counts)
        expected = np.log1p(np.array([[25.0, 75.0], [100.0, 0.0]]))
        np.testing.assert_allclose(normalized.X.toarray(), expected)

    def test_relative_counts_method(self):
        """Test RC normalization skips the log."""
        counts = CountMatrix.from_dense(np.array([[1, 3]]), ["a"], ["g1", "g2"])
        normalized = Normalizer(RunConfig(scale_factor=100, normalization_method="RC")).run(counts)
        np.testing.assert_allclose(normalized.X.toarray(), [[25.0, 75.0]])
        assert normalized.method == "RC"

    def test_uses_metadata_library_size(self, qc_counts):
        """Test n_counts from metadata matches the recomputed value."""
        result = QCFilter(qc_config()).run(qc_counts)
        with_meta = Normalizer().run(result.counts, result.metadata)
        without = Normalizer().run(result.counts)
        np.testing.assert_allclose(with_meta.X.toarray(), without.X.toarray())


class TestFeatureSelector:
    """Tests for vst feature selection."""

    def test_selects_requested_number(self, two_block_counts):
        """Test |FeatureSet| == n_variable_features when enough genes exist."""
        features = FeatureSelector(RunConfig(n_variable_features=15)).run(two_block_counts)
        assert len(features) == 15
        assert features.dispersion_rank == tuple(range(15))

    def test_caps_at_available_genes(self, two_block_counts, caplog):
        """Test |FeatureSet| == min(K, n_genes) with a warning."""
        with caplog.at_level(logging.WARNING):
            features = FeatureSelector(RunConfig(n_variable_features=2000)).run(two_block_counts)
        assert len(features) == two_block_counts.n_genes
        assert "only 50 genes" in caplog.text

    def test_overdispersed_genes_rank_first(self):
        """Test genes with excess variance at a shared mean top the ranking."""
        rng = np.random.default_rng(7)
        n_cells = 200
        dense = rng.poisson(5.0, size=(n_cells, 100))
        half = n_cells // 2
        dense[:half, 95:] = rng.poisson(10.0, size=(half, 5))
        dense[half:, 95:] = 0
        counts = CountMatrix.from_dense(
            dense,
            [f"c{i}" for i in range(n_cells)],
            [f"g{j}" for j in range(100)],
        )
        features = FeatureSelector(RunConfig(n_variable_features=5)).run(counts)
        assert set(features.genes) == {f"g{j}" for j in range(95, 100)}

    def test_deterministic(self, two_block_counts):
        """Test repeated runs produce the same ranked list."""
        selector = FeatureSelector(RunConfig(n_variable_features=30))
        assert selector.run(two_block_counts).genes == selector.run(two_block_counts).genes

    def test_stats_table(self, two_block_counts):
        """Test per-gene vst table covers every gene."""
        features = FeatureSelector(RunConfig(n_variable_features=10)).run(two_block_counts)
        assert list(features.stats.columns) == [
            "mean", "variance", "variance_expected", "variance_standardized", "rank",
        ]
        assert features.stats.shape[0] == 50
        top = features.stats.sort_values("rank").index[:10].tolist()
        assert tuple(top) == features.genes

    def test_standardized_variance_matches_dense(self):
        """Test the sparse computation against a dense reference."""
        rng = np.random.default_rng(1)
        dense = rng.poisson(1.0, size=(30, 6)).astype(float)
        from scipy import sparse

        mean = dense.mean(axis=0)
        sd = np.full(6, 1.3)
        clip = 2.0
        z = np.minimum((dense - mean) / sd, clip)
        expected = (z ** 2).sum(axis=0) / (30 - 1)
        result = standardized_variance(sparse.csr_matrix(dense), mean, sd, clip)
        np.testing.assert_allclose(result, expected)

    def test_too_few_genes(self):
        """Test fewer than 2 genes is insufficient data."""
        counts = CountMatrix.from_dense(np.array([[1], [2]]), ["a", "b"], ["g"])
        with pytest.raises(InsufficientDataError):
            FeatureSelector().run(counts)


class TestScaler:
    """Tests for Scaler."""

    @pytest.fixture
    def prepared(self, two_block_counts, small_config):
        qc = QCFilter(small_config).run(two_block_counts)
        normalized = Normalizer(small_config).run(qc.counts, qc.metadata)
        features = FeatureSelector(RunConfig(n_variable_features=20)).run(qc.counts)
        return qc, normalized, features

    def test_zero_mean_unit_variance(self, prepared):
        """Test each scaled column is standardized."""
        qc, normalized, features = prepared
        scaled = Scaler(RunConfig(scale_max=100)).run(normalized, features)
        assert scaled.shape == (qc.counts.n_cells, 20)
        np.testing.assert_allclose(scaled.X.mean(axis=0), 0, atol=1e-10)
        np.testing.assert_allclose(scaled.X.std(axis=0, ddof=1), 1, atol=1e-10)
        assert list(scaled.gene_ids) == list(features.genes)

    def test_constant_gene_scaled_to_zero(self):
        """Test zero-variance columns become 0 instead of failing."""
        values = np.column_stack([np.full(5, 3.0), np.arange(5.0)])
        scaled, mean, std = standardize(values)
        assert std[0] == 0
        np.testing.assert_array_equal(scaled[:, 0], 0)
        assert np.isfinite(scaled).all()

    def test_clipping(self):
        """Test values are clipped symmetrically."""
        values = np.zeros((50, 1))
        values[0, 0] = 100.0
        scaled, _, _ = standardize(values, clip=3.0)
        assert scaled.max() == 3.0
        assert scaled.min() >= -3.0

    def test_regress_out_removes_covariate(self):
        """Test residuals are uncorrelated with the covariate."""
        rng = np.random.default_rng(0)
        covariate = rng.normal(size=40)
        values = np.column_stack([2.0 * covariate + rng.normal(scale=0.1, size=40), rng.normal(size=40)])
        residuals = regress_out(values, covariate[:, np.newaxis])
        assert abs(np.corrcoef(residuals[:, 0], covariate)[0, 1]) < 1e-8
        np.testing.assert_allclose(residuals.mean(axis=0), 0, atol=1e-10)

    def test_regression_with_metadata(self, prepared):
        """Test covariate regression uses metadata columns."""
        qc, normalized, features = prepared
        scaled = Scaler(RunConfig(regress_covariates=["n_counts"])).run(
            normalized, features, qc.metadata
        )
        assert scaled.regressed == ("n_counts",)
        n_counts = qc.metadata["n_counts"].to_numpy(dtype=float)
        for j in range(scaled.shape[1]):
            if scaled.scale[j] > 0 and np.abs(scaled.X[:, j]).max() < 10:
                assert abs(np.corrcoef(scaled.X[:, j], n_counts)[0, 1]) < 1e-6

    def test_unknown_covariate(self, prepared):
        """Test an unknown covariate is a configuration error."""
        qc, normalized, features = prepared
        with pytest.raises(ConfigurationError, match="Unknown covariate"):
            Scaler(RunConfig(regress_covariates=["batch"])).run(normalized, features, qc.metadata)

    def test_regression_requires_metadata(self, prepared):
        """Test regression without metadata is rejected."""
        _, normalized, features = prepared
        with pytest.raises(ConfigurationError):
            Scaler(RunConfig(regress_covariates=["percent_mito"])).run(normalized, features)
