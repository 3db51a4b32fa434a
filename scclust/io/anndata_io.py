"""AnnData conversion for ingestion and persistence.

The numerical core never touches AnnData. These functions translate
between core result objects and an ``AnnData`` so runs can be stored as
``.h5ad`` and read back without loss:

- ``X``: QC-retained raw counts
- ``layers["data"]``: normalized expression
- ``obs``: cell metadata (including ``cluster_label``)
- ``var``: vst statistics and ``highly_variable``
- ``obsm["X_pca"]`` / ``varm["PCs"]``: embedding and loadings
- ``obsp["snn"]``: shared-neighbor weights
- ``uns["scclust"]``: run config and per-stage scalars; ``uns["markers"]``
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from ..core.clustering import ClusterAssignment
from ..core.matrix import CLUSTER_COLUMN, BASE_SCHEMA, CellMetadata, CountMatrix
from ..core.preprocessing import NormalizedMatrix
from ..core.reduction import Embedding
from ..errors import DataIntegrityError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def counts_to_anndata(
    counts: CountMatrix,
    metadata: Optional[CellMetadata] = None,
) -> ad.AnnData:
    """Wrap counts (and optional metadata) in an AnnData."""
    obs = pd.DataFrame(index=counts.cell_ids.copy())
    if metadata is not None:
        metadata.validate_against(counts.cell_ids)
        obs = metadata.table.copy()
    obs.index.name = None
    var = pd.DataFrame(index=counts.gene_ids.copy())
    var.index.name = None
    return ad.AnnData(X=counts.X.copy(), obs=obs, var=var)


def counts_from_anndata(adata: ad.AnnData, layer: Optional[str] = None) -> CountMatrix:
    """Build a CountMatrix from ``adata.X`` or a counts layer.

    Raises
    ------
    ConfigurationError
        If the values are not non-negative integers
    """
    matrix = adata.layers[layer] if layer is not None else adata.X
    if not sparse.issparse(matrix):
        matrix = sparse.csr_matrix(np.asarray(matrix))
    return CountMatrix(sparse.csr_matrix(matrix), adata.obs_names, adata.var_names)


def metadata_from_anndata(adata: ad.AnnData) -> CellMetadata:
    """Typed metadata from ``obs``; requires the base QC columns."""
    missing = [c for c in BASE_SCHEMA if c not in adata.obs.columns]
    if missing:
        raise DataIntegrityError(f"obs is missing metadata columns: {missing}")
    table = adata.obs.copy()
    schema = {name: str(table[name].dtype) for name in table.columns}
    schema.update(BASE_SCHEMA)
    version = int(adata.uns.get("scclust", {}).get("schema_version", 1))
    return CellMetadata(table, schema, version)


def session_to_anndata(session) -> ad.AnnData:
    """Collect the current results of a PipelineSession into one AnnData.

    Parameters
    ----------
    session : PipelineSession
        Session with at least the ``qc`` stage committed

    Returns
    -------
    ad.AnnData
        QC-retained cells and genes with every available result attached
    """
    qc = session.get("qc")
    metadata = session.cell_metadata()
    adata = counts_to_anndata(qc.counts, metadata)
    info: Dict[str, Any] = {
        "config": _plain(session.config.to_dict()),
        "stages": _plain(session.summary()),
        "schema_version": metadata.schema_version,
    }

    if "normalize" in session:
        normalized: NormalizedMatrix = session.get("normalize")
        adata.layers["data"] = normalized.X.copy()
        info["normalization"] = {
            "method": normalized.method,
            "scale_factor": normalized.scale_factor,
        }

    if "features" in session:
        features = session.get("features")
        stats = features.stats.reindex(adata.var_names)
        for column in stats.columns:
            adata.var[f"vst_{column}"] = stats[column].to_numpy()
        adata.var["highly_variable"] = adata.var_names.isin(list(features.genes))
        info["features"] = list(features.genes)

    if "pca" in session:
        embedding: Embedding = session.get("pca")
        adata.obsm["X_pca"] = embedding.cell_embeddings.copy()
        loadings = np.zeros((adata.n_vars, embedding.n_components))
        positions = adata.var_names.get_indexer(embedding.gene_ids)
        loadings[positions] = embedding.loadings
        adata.varm["PCs"] = loadings
        info["pca"] = {
            "singular_values": embedding.singular_values.copy(),
            "variance_ratio": embedding.variance_ratio.copy(),
            "genes": list(embedding.gene_ids),
            "converged": bool(embedding.converged),
        }

    if "neighbors" in session:
        graph = session.get("neighbors")
        adata.obsp["snn"] = graph.weights.copy()
        adata.obsm["knn_indices"] = graph.knn_indices.copy()
        adata.obsm["knn_distances"] = graph.knn_distances.copy()
        info["neighbors"] = {"k": graph.k, "n_dims": graph.n_dims}

    if "clusters" in session:
        assignment: ClusterAssignment = session.get("clusters")
        info["clusters"] = {
            "resolution": float(assignment.resolution),
            "modularity": float(assignment.modularity),
            "n_levels": int(assignment.n_levels),
            "converged": bool(assignment.converged),
        }

    if "markers" in session:
        combined = session.get("markers").combined()
        combined["cluster"] = combined["cluster"].astype(np.int64)
        adata.uns["markers"] = combined

    adata.uns["scclust"] = info
    return adata


def _plain(value: Any) -> Any:
    """Make nested dicts storable in ``uns`` (no None values)."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def normalized_from_anndata(adata: ad.AnnData) -> NormalizedMatrix:
    """NormalizedMatrix from ``layers["data"]``."""
    if "data" not in adata.layers:
        raise DataIntegrityError("AnnData has no 'data' layer")
    params = adata.uns.get("scclust", {}).get("normalization", {})
    return NormalizedMatrix(
        X=sparse.csr_matrix(adata.layers["data"]),
        cell_ids=pd.Index(adata.obs_names, name="cell_id"),
        gene_ids=pd.Index(adata.var_names, name="gene_id"),
        method=str(params.get("method", "LogNormalize")),
        scale_factor=float(params.get("scale_factor", 10000.0)),
    )


def embedding_from_anndata(adata: ad.AnnData) -> Embedding:
    """Embedding from ``obsm["X_pca"]`` and ``varm["PCs"]``."""
    if "X_pca" not in adata.obsm:
        raise DataIntegrityError("AnnData has no 'X_pca' embedding")
    params = adata.uns["scclust"]["pca"]
    genes = pd.Index([str(g) for g in params["genes"]], name="gene_id")
    positions = adata.var_names.get_indexer(genes)
    return Embedding(
        cell_embeddings=np.asarray(adata.obsm["X_pca"]),
        loadings=np.asarray(adata.varm["PCs"])[positions],
        singular_values=np.asarray(params["singular_values"]),
        variance_ratio=np.asarray(params["variance_ratio"]),
        cell_ids=pd.Index(adata.obs_names, name="cell_id"),
        gene_ids=genes,
        converged=bool(params["converged"]),
    )


def graph_from_anndata(adata: ad.AnnData) -> sparse.csr_matrix:
    """Shared-neighbor weights from ``obsp["snn"]``."""
    if "snn" not in adata.obsp:
        raise DataIntegrityError("AnnData has no 'snn' graph")
    return sparse.csr_matrix(adata.obsp["snn"])


def assignment_from_anndata(adata: ad.AnnData) -> ClusterAssignment:
    """ClusterAssignment from the ``cluster_label`` obs column."""
    if CLUSTER_COLUMN not in adata.obs.columns:
        raise DataIntegrityError(f"obs has no '{CLUSTER_COLUMN}' column")
    params = adata.uns.get("scclust", {}).get("clusters", {})
    return ClusterAssignment(
        labels=adata.obs[CLUSTER_COLUMN].astype(np.int64).to_numpy(),
        cell_ids=pd.Index(adata.obs_names, name="cell_id"),
        resolution=float(params.get("resolution", 0.5)),
        modularity=float(params.get("modularity", 0.0)),
        n_levels=int(params.get("n_levels", 0)),
        converged=bool(params.get("converged", True)),
    )


def write_h5ad(adata: ad.AnnData, path: PathLike) -> Path:
    """Write ``adata`` to ``path``, creating parent directories."""
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(output)
    logger.info("Wrote %d cells x %d genes to %s", adata.n_obs, adata.n_vars, output)
    return output


def read_h5ad_counts(path: PathLike, layer: Optional[str] = None) -> CountMatrix:
    """Read raw counts from an ``.h5ad`` file."""
    adata = sc.read_h5ad(path)
    logger.info("Read %d cells x %d genes from %s", adata.n_obs, adata.n_vars, path)
    return counts_from_anndata(adata, layer=layer)


def read_10x_counts(path: PathLike, var_names: str = "gene_symbols") -> CountMatrix:
    """Read a 10x Genomics ``matrix.mtx`` directory."""
    adata = sc.read_10x_mtx(path, var_names=var_names, make_unique=True)
    logger.info("Read %d cells x %d genes from %s", adata.n_obs, adata.n_vars, path)
    return counts_from_anndata(adata)
