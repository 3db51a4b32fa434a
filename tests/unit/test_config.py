"""Unit tests for run configuration."""

import pytest

from scclust.config import RunConfig
from scclust.errors import ConfigurationError


class TestRunConfig:
    """Tests for RunConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = RunConfig()
        assert config.min_genes == 200
        assert config.max_genes == 2500
        assert config.max_percent_mito == 5.0
        assert config.scale_factor == 10000.0
        assert config.n_variable_features == 2000
        assert config.n_pca_components == 50
        assert config.neighbor_k == 20
        assert config.cluster_resolution == 0.5
        assert config.min_pct == 0.25
        assert config.logfc_threshold == 0.25
        assert config.only_pos is False
        assert config.random_seed == 1337
        assert config.louvain_order == "sequential"

    def test_defaults_validate(self):
        """Test that default configuration is valid."""
        RunConfig().validate()

    def test_inverted_gene_thresholds(self):
        """Test min_genes >= max_genes is rejected."""
        with pytest.raises(ConfigurationError, match="min_genes"):
            RunConfig(min_genes=300, max_genes=300).validate()

    def test_collects_all_errors(self):
        """Test that every problem is reported at once."""
        config = RunConfig(neighbor_k=0, cluster_resolution=-1, louvain_order="shuffled")
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        message = str(excinfo.value)
        assert "neighbor_k" in message
        assert "cluster_resolution" in message
        assert "louvain_order" in message

    def test_louvain_budgets(self):
        """Test pass and level budgets are validated separately."""
        config = RunConfig()
        assert config.max_iterations == 10
        assert config.max_passes == 100
        with pytest.raises(ConfigurationError, match="max_passes"):
            RunConfig(max_passes=0).validate()

    def test_configuration_error_is_value_error(self):
        """Test ConfigurationError can be caught as ValueError."""
        with pytest.raises(ValueError):
            RunConfig(max_percent_mito=0).validate()

    def test_from_dict_rejects_unknown_keys(self):
        """Test unknown options are rejected rather than ignored."""
        with pytest.raises(ConfigurationError, match="resolutoin"):
            RunConfig.from_dict({"resolutoin": 0.8})

    def test_from_yaml_run_section(self, sample_run_config):
        """Test loading config from YAML with a run section."""
        config = RunConfig.from_yaml(sample_run_config)
        assert config.min_genes == 1
        assert config.neighbor_k == 10
        assert config.cluster_resolution == 0.8
        # Unspecified values keep defaults
        assert config.n_pca_components == 50

    def test_from_yaml_flat(self, tmp_path):
        """Test loading a flat YAML file."""
        path = tmp_path / "flat.yaml"
        path.write_text("neighbor_k: 5\nonly_pos: true\n")
        config = RunConfig.from_yaml(path)
        assert config.neighbor_k == 5
        assert config.only_pos is True

    def test_from_yaml_empty(self, tmp_path):
        """Test an empty YAML file gives defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert RunConfig.from_yaml(path).to_dict() == RunConfig().to_dict()

    def test_yaml_roundtrip(self, tmp_path):
        """Test to_yaml then from_yaml reproduces the config."""
        config = RunConfig(neighbor_k=7, regress_covariates=["percent_mito"], clip_max=4.0)
        path = tmp_path / "out.yaml"
        config.to_yaml(path)
        assert RunConfig.from_yaml(path).to_dict() == config.to_dict()
