"""Tests for the scclust command line."""

import pytest
import pandas as pd
import yaml
from click.testing import CliRunner

from scclust.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def counts_csv(tmp_path, two_block_counts):
    path = tmp_path / "counts.csv"
    two_block_counts.to_dataframe().to_csv(path)
    return path


@pytest.fixture
def run_config(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(
        yaml.safe_dump(
            {"run": {"min_genes": 1, "max_genes": 50, "max_percent_mito": 100, "only_pos": True}}
        )
    )
    return path


class TestShowConfig:
    """Tests for show-config."""

    def test_defaults(self, runner):
        """Test defaults are printed under a run section."""
        result = runner.invoke(cli, ["show-config"])
        assert result.exit_code == 0
        printed = yaml.safe_load(result.output)
        assert printed["run"]["neighbor_k"] == 20
        assert printed["run"]["random_seed"] == 1337

    def test_from_file(self, runner, sample_run_config):
        """Test values from a config file."""
        result = runner.invoke(cli, ["show-config", "--config", str(sample_run_config)])
        assert result.exit_code == 0
        assert yaml.safe_load(result.output)["run"]["neighbor_k"] == 10

    def test_invalid(self, runner, tmp_path):
        """Test invalid values exit with status 1."""
        path = tmp_path / "bad.yaml"
        path.write_text("neighbor_k: 0\n")
        result = runner.invoke(cli, ["show-config", "--config", str(path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestRunCommand:
    """Tests for run and markers commands."""

    def test_run_and_markers(self, runner, counts_csv, run_config, tmp_path):
        """Test a CSV run writes results that the markers command can reuse."""
        out_dir = tmp_path / "results"
        result = runner.invoke(
            cli,
            ["run", "--input", str(counts_csv), "--out", str(out_dir), "--config", str(run_config)],
        )
        assert result.exit_code == 0, result.output
        assert "Clustering complete: 2 clusters" in result.output
        for name in ("scclust.h5ad", "clusters.csv", "markers.csv", "config.yaml"):
            assert (out_dir / name).exists()
        assert list((out_dir / "logs").glob("scclust_*.log"))

        clusters = pd.read_csv(out_dir / "clusters.csv", index_col=0)
        assert clusters["cluster"].nunique() == 2
        saved = yaml.safe_load((out_dir / "config.yaml").read_text())
        assert saved["run"]["only_pos"] is True

        marker_path = tmp_path / "cluster0.csv"
        result = runner.invoke(
            cli,
            [
                "markers",
                "--input", str(out_dir / "scclust.h5ad"),
                "--cluster", "0",
                "--only-pos",
                "--out", str(marker_path),
            ],
        )
        assert result.exit_code == 0, result.output
        table = pd.read_csv(marker_path)
        assert set(table["gene"]) == {f"Gene{i}" for i in range(1, 11)}
        assert (table["cluster"] == 0).all()

    def test_overrides(self, runner, counts_csv, run_config, tmp_path):
        """Test command-line options override the config file."""
        out_dir = tmp_path / "results"
        result = runner.invoke(
            cli,
            [
                "run", "--input", str(counts_csv), "--out", str(out_dir),
                "--config", str(run_config), "--k", "15", "--seed", "7",
            ],
        )
        assert result.exit_code == 0, result.output
        saved = yaml.safe_load((out_dir / "config.yaml").read_text())
        assert saved["run"]["neighbor_k"] == 15
        assert saved["run"]["random_seed"] == 7

    def test_pipeline_error_exit_code(self, runner, counts_csv, tmp_path):
        """Test QC removing every cell exits with status 1."""
        result = runner.invoke(
            cli, ["run", "--input", str(counts_csv), "--out", str(tmp_path / "out")]
        )
        assert result.exit_code == 1
        assert "Pipeline failed" in result.output

    def test_reference_requires_cluster(self, runner, tmp_path):
        """Test --reference without --cluster is a usage error."""
        path = tmp_path / "empty.h5ad"
        path.write_text("")
        result = runner.invoke(cli, ["markers", "--input", str(path), "--reference", "1"])
        assert result.exit_code == 2
        assert "--reference requires --cluster" in result.output
