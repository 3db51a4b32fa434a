"""Sparse count matrix and typed per-cell metadata.

``CountMatrix`` is created once at ingestion and never mutated; every
filtering step returns a new object. ``CellMetadata`` is a typed table that
only grows through ``with_columns``, which extends the schema explicitly.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError, DataIntegrityError


# Columns every CellMetadata carries, with their dtypes
BASE_SCHEMA: Dict[str, str] = {
    "n_genes": "int64",
    "n_counts": "int64",
    "percent_mito": "float64",
}

CLUSTER_COLUMN = "cluster_label"


def _as_index(ids: Iterable[Any], kind: str) -> pd.Index:
    index = pd.Index([str(i) for i in ids], name=f"{kind}_id")
    if not index.is_unique:
        dupes = index[index.duplicated()].unique().tolist()[:5]
        raise DataIntegrityError(f"Duplicate {kind} identifiers: {dupes}")
    return index


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """Immutable sparse cell-by-gene UMI count matrix.

    Attributes
    ----------
    X : sparse.csr_matrix
        Non-negative integer counts, rows are cells, columns are genes
    cell_ids : pd.Index
        Unique cell barcodes
    gene_ids : pd.Index
        Unique gene identifiers

    Example
    -------
    >>> counts = CountMatrix.from_dense(
    ...     np.array([[1, 0], [0, 3]]), ["c1", "c2"], ["g1", "g2"]
    ... )
    >>> counts.shape
    (2, 2)
    """

    X: sparse.csr_matrix
    cell_ids: pd.Index
    gene_ids: pd.Index

    def __post_init__(self):
        matrix = sparse.csr_matrix(self.X)
        cell_ids = _as_index(self.cell_ids, "cell")
        gene_ids = _as_index(self.gene_ids, "gene")

        if matrix.shape != (len(cell_ids), len(gene_ids)):
            raise DataIntegrityError(
                f"Matrix shape {matrix.shape} does not match "
                f"{len(cell_ids)} cells x {len(gene_ids)} genes"
            )
        if matrix.nnz:
            if matrix.data.min() < 0:
                raise ConfigurationError("Count matrix contains negative values")
            if not np.all(np.equal(np.mod(matrix.data, 1), 0)):
                raise ConfigurationError("Count matrix contains non-integer values")

        matrix = matrix.astype(np.int64)
        matrix.eliminate_zeros()
        matrix.sort_indices()

        object.__setattr__(self, "X", matrix)
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "gene_ids", gene_ids)

    @classmethod
    def from_dense(
        cls,
        values: np.ndarray,
        cell_ids: Sequence[Any],
        gene_ids: Sequence[Any],
    ) -> "CountMatrix":
        """Build from a dense array."""
        return cls(sparse.csr_matrix(np.asarray(values)), cell_ids, gene_ids)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "CountMatrix":
        """Build from a cells x genes DataFrame (index = cell ids)."""
        return cls(sparse.csr_matrix(df.to_numpy()), df.index, df.columns)

    @property
    def shape(self):
        return self.X.shape

    @property
    def n_cells(self) -> int:
        return self.X.shape[0]

    @property
    def n_genes(self) -> int:
        return self.X.shape[1]

    def subset(
        self,
        cell_mask: Optional[np.ndarray] = None,
        gene_mask: Optional[np.ndarray] = None,
    ) -> "CountMatrix":
        """Return a new matrix restricted to the masked cells and genes."""
        cell_mask = (
            np.ones(self.n_cells, dtype=bool) if cell_mask is None
            else np.asarray(cell_mask, dtype=bool)
        )
        gene_mask = (
            np.ones(self.n_genes, dtype=bool) if gene_mask is None
            else np.asarray(gene_mask, dtype=bool)
        )
        X = self.X[cell_mask][:, gene_mask]
        return CountMatrix(X, self.cell_ids[cell_mask], self.gene_ids[gene_mask])

    def cells_per_gene(self) -> np.ndarray:
        """Number of cells with a nonzero count, per gene."""
        return np.asarray(self.X.getnnz(axis=0)).ravel()

    def to_dataframe(self) -> pd.DataFrame:
        """Dense DataFrame copy, for small matrices and debugging."""
        return pd.DataFrame(
            self.X.toarray(), index=self.cell_ids, columns=self.gene_ids
        )


@dataclass(frozen=True, eq=False)
class CellMetadata:
    """Typed per-cell metadata table.

    Attributes
    ----------
    table : pd.DataFrame
        One row per cell, indexed by cell id
    schema : Dict[str, str]
        Column name to dtype; every column in ``table`` is declared here
    schema_version : int
        Incremented each time the schema is extended

    Example
    -------
    >>> meta = CellMetadata.from_columns(
    ...     ["c1"], n_genes=[5], n_counts=[10], percent_mito=[0.0]
    ... )
    >>> meta = meta.with_columns({"score": ("float64", [0.5])})
    >>> meta.schema_version
    2
    """

    table: pd.DataFrame
    schema: Dict[str, str] = field(default_factory=lambda: dict(BASE_SCHEMA))
    schema_version: int = 1

    def __post_init__(self):
        missing = [c for c in self.schema if c not in self.table.columns]
        undeclared = [c for c in self.table.columns if c not in self.schema]
        if missing or undeclared:
            raise DataIntegrityError(
                f"Metadata does not match schema (missing={missing}, "
                f"undeclared={undeclared})"
            )
        if not self.table.index.is_unique:
            raise DataIntegrityError("Metadata index contains duplicate cell ids")

        table = self.table.copy()
        for name, dtype in self.schema.items():
            table[name] = table[name].astype(dtype)
        table.index = pd.Index(table.index.astype(str), name="cell_id")
        object.__setattr__(self, "table", table[list(self.schema)])
        object.__setattr__(self, "schema", dict(self.schema))

    @classmethod
    def from_columns(
        cls,
        cell_ids: Sequence[Any],
        n_genes: Sequence[int],
        n_counts: Sequence[int],
        percent_mito: Sequence[float],
    ) -> "CellMetadata":
        """Build base metadata from the three QC columns."""
        table = pd.DataFrame(
            {
                "n_genes": np.asarray(n_genes),
                "n_counts": np.asarray(n_counts),
                "percent_mito": np.asarray(percent_mito, dtype=float),
            },
            index=pd.Index([str(c) for c in cell_ids], name="cell_id"),
        )
        return cls(table)

    @property
    def cell_ids(self) -> pd.Index:
        return self.table.index

    @property
    def columns(self):
        return list(self.schema)

    def __len__(self) -> int:
        return len(self.table)

    def __getitem__(self, column: str) -> pd.Series:
        return self.table[column].copy()

    def with_columns(
        self,
        columns: Mapping[str, Any],
    ) -> "CellMetadata":
        """Return new metadata extended with typed columns.

        Parameters
        ----------
        columns : Mapping[str, Any]
            Column name to ``(dtype, values)``. Values may be a sequence
            aligned with the rows or a Series indexed by cell id.

        Returns
        -------
        CellMetadata
            Copy with the extended schema and ``schema_version + 1``

        Raises
        ------
        ConfigurationError
            If a column already exists
        DataIntegrityError
            If values do not align with the cells
        """
        clashes = [name for name in columns if name in self.schema]
        if clashes:
            raise ConfigurationError(
                f"Metadata columns already exist and cannot be replaced: {clashes}"
            )

        table = self.table.copy()
        schema = dict(self.schema)
        for name, (dtype, values) in columns.items():
            if isinstance(values, pd.Series):
                values = values.copy()
                values.index = values.index.astype(str)
                if not values.index.sort_values().equals(table.index.sort_values()):
                    raise DataIntegrityError(
                        f"Column '{name}' is indexed by different cells than the metadata"
                    )
                values = values.reindex(table.index)
            elif len(values) != len(table):
                raise DataIntegrityError(
                    f"Column '{name}' has {len(values)} values for {len(table)} cells"
                )
            table[name] = pd.Series(np.asarray(values), index=table.index).astype(dtype)
            schema[name] = dtype

        return CellMetadata(table, schema, self.schema_version + 1)

    def subset(self, cell_ids: Sequence[Any]) -> "CellMetadata":
        """Return metadata restricted to (and ordered like) ``cell_ids``."""
        cell_ids = pd.Index([str(c) for c in cell_ids])
        missing = cell_ids.difference(self.table.index)
        if len(missing):
            raise DataIntegrityError(
                f"{len(missing)} cells not present in metadata, e.g. {missing[:5].tolist()}"
            )
        return CellMetadata(self.table.loc[cell_ids], self.schema, self.schema_version)

    def validate_against(self, cell_ids: Union[pd.Index, Sequence[Any]]) -> None:
        """Raise DataIntegrityError unless rows match ``cell_ids`` exactly."""
        cell_ids = pd.Index([str(c) for c in cell_ids])
        if not self.table.index.equals(cell_ids):
            extra = self.table.index.difference(cell_ids)
            missing = cell_ids.difference(self.table.index)
            raise DataIntegrityError(
                f"Metadata/matrix cell mismatch: {len(extra)} orphaned metadata rows, "
                f"{len(missing)} cells without metadata"
            )

    def equals(self, other: "CellMetadata") -> bool:
        return (
            self.schema == other.schema
            and self.table.equals(other.table)
        )
