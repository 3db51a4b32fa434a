"""Unit tests for I/O helpers."""

import json
import logging

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import yaml
from scipy import io as spio
from scipy import sparse

from scclust.core.matrix import CLUSTER_COLUMN
from scclust.errors import DataIntegrityError
from scclust.io import (
    ensure_output_dir,
    load_count_table,
    log_json,
    log_yaml,
    run_log_path,
    to_builtin,
    write_dataframe,
)
from scclust.io.anndata_io import (
    assignment_from_anndata,
    counts_from_anndata,
    counts_to_anndata,
    embedding_from_anndata,
    graph_from_anndata,
    metadata_from_anndata,
    normalized_from_anndata,
    read_10x_counts,
    read_h5ad_counts,
    session_to_anndata,
    write_h5ad,
)


class TestRunLogging:
    """Tests for run log helpers."""

    def test_run_log_path(self, tmp_path):
        """Test log path naming."""
        path = run_log_path(tmp_path, "demo")
        assert path.parent == tmp_path
        assert path.name.startswith("demo_")
        assert path.suffix == ".log"

    def test_log_json_appends(self, tmp_path):
        """Test records are appended as JSON lines with numpy values converted."""
        path = tmp_path / "records.jsonl"
        log_json(path, {"stage": "qc", "kept": np.int64(5)})
        log_json(path, {"stage": "pca", "ratio": np.array([0.5, 0.25])})
        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert lines == [{"stage": "qc", "kept": 5}, {"stage": "pca", "ratio": [0.5, 0.25]}]

    def test_log_yaml_file(self, tmp_path):
        """Test YAML documents are separated by ---."""
        path = tmp_path / "records.yaml"
        log_yaml(path, {"stage": "qc"})
        log_yaml(path, {"stage": "pca"})
        docs = [d for d in yaml.safe_load_all(path.read_text()) if d]
        assert docs == [{"stage": "qc"}, {"stage": "pca"}]

    def test_log_yaml_logger(self, tmp_path, caplog):
        """Test YAML goes to the logger when one is given."""
        with caplog.at_level(logging.INFO):
            log_yaml(tmp_path / "unused.yaml", {"n": 1}, logger=logging.getLogger("scclust.yaml"))
        assert "n: 1" in caplog.text
        assert not (tmp_path / "unused.yaml").exists()

    def test_to_builtin(self, tmp_path):
        """Test nested numpy and path values are converted."""
        value = to_builtin({"a": (np.float32(1.5), tmp_path), 2: np.arange(2)})
        assert value == {"a": [1.5, str(tmp_path)], "2": [0, 1]}


class TestCsv:
    """Tests for CSV tables."""

    def test_load_count_table(self, tmp_path, count_frame):
        """Test a cells x genes CSV loads as counts."""
        path = tmp_path / "counts.csv"
        count_frame.to_csv(path)
        counts = load_count_table(path)
        assert counts.shape == (20, 8)
        assert list(counts.gene_ids) == list(count_frame.columns)
        np.testing.assert_array_equal(counts.X.toarray(), count_frame.to_numpy())

    def test_load_transposed(self, tmp_path, count_frame):
        """Test genes x cells tables are transposed."""
        path = tmp_path / "counts.tsv"
        count_frame.T.to_csv(path, sep="\t")
        counts = load_count_table(path, transpose=True, sep="\t")
        assert list(counts.cell_ids) == list(count_frame.index)

    def test_missing_file(self, tmp_path):
        """Test a missing table raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_count_table(tmp_path / "absent.csv")

    def test_write_dataframe(self, tmp_path):
        """Test parent directories are created."""
        target = ensure_output_dir(tmp_path / "out") / "deep" / "table.csv"
        path = write_dataframe(pd.DataFrame({"a": [1, 2]}), target)
        assert path.exists()
        assert pd.read_csv(path)["a"].tolist() == [1, 2]


class TestAnnData:
    """Tests for AnnData conversion and h5ad persistence."""

    def test_counts_roundtrip(self, two_block_counts):
        """Test counts survive conversion to and from AnnData."""
        adata = counts_to_anndata(two_block_counts)
        back = counts_from_anndata(adata)
        assert back.cell_ids.equals(two_block_counts.cell_ids)
        assert (back.X != two_block_counts.X).nnz == 0

    def test_missing_layer(self, two_block_counts):
        """Test loaders report what is missing."""
        adata = counts_to_anndata(two_block_counts)
        with pytest.raises(DataIntegrityError, match="data"):
            normalized_from_anndata(adata)
        with pytest.raises(DataIntegrityError, match="snn"):
            graph_from_anndata(adata)
        with pytest.raises(DataIntegrityError, match=CLUSTER_COLUMN):
            assignment_from_anndata(adata)
        with pytest.raises(DataIntegrityError, match="obs"):
            metadata_from_anndata(adata)

    def test_session_h5ad_roundtrip(self, two_block_session, tmp_path):
        """Test every stage result can be read back from the h5ad file."""
        path = write_h5ad(session_to_anndata(two_block_session), tmp_path / "run" / "scclust.h5ad")
        adata = ad.read_h5ad(path)

        n_genes = two_block_session.get("qc").counts.n_genes
        assert adata.shape == (100, n_genes)
        assert int(adata.var["highly_variable"].sum()) == n_genes
        assert "vst_variance_standardized" in adata.var.columns

        counts = read_h5ad_counts(path)
        assert (counts.X != two_block_session.get("qc").counts.X).nnz == 0

        normalized = normalized_from_anndata(adata)
        np.testing.assert_allclose(
            normalized.X.toarray(), two_block_session.get("normalize").X.toarray()
        )

        embedding = embedding_from_anndata(adata)
        expected = two_block_session.get("pca")
        np.testing.assert_allclose(embedding.cell_embeddings, expected.cell_embeddings)
        np.testing.assert_allclose(embedding.loadings, expected.loadings)
        assert embedding.gene_ids.equals(expected.gene_ids)

        graph = graph_from_anndata(adata)
        assert abs(graph - two_block_session.get("neighbors").weights).max() < 1e-12

        assignment = assignment_from_anndata(adata)
        np.testing.assert_array_equal(assignment.labels, two_block_session.get("clusters").labels)
        assert assignment.modularity == pytest.approx(two_block_session.get("clusters").modularity)

        metadata = metadata_from_anndata(adata)
        assert CLUSTER_COLUMN in metadata.columns
        assert metadata.schema_version == 2

        markers = adata.uns["markers"]
        assert len(markers) == len(two_block_session.get("markers").combined())

    def test_read_10x_directory(self, tmp_path):
        """Test a legacy 10x matrix directory is read cells x genes."""
        directory = tmp_path / "hg19"
        directory.mkdir()
        genes_by_cells = sparse.coo_matrix(np.array([[1, 0, 2], [0, 3, 0]]))
        spio.mmwrite(str(directory / "matrix.mtx"), genes_by_cells)
        (directory / "genes.tsv").write_text("ENSG1\tCD3E\nENSG2\tMS4A1\n")
        (directory / "barcodes.tsv").write_text("AAAC-1\nAAAG-1\nAAAT-1\n")

        counts = read_10x_counts(directory)
        assert counts.shape == (3, 2)
        assert list(counts.gene_ids) == ["CD3E", "MS4A1"]
        np.testing.assert_array_equal(counts.X.toarray(), [[1, 0], [0, 3], [2, 0]])
