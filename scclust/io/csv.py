"""CSV I/O utilities for scclust.

Reads dense count tables and writes result tables (markers, QC summaries).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import pandas as pd

from ..core.matrix import CountMatrix

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def load_count_table(
    path: PathLike,
    transpose: bool = False,
    sep: str = ",",
) -> CountMatrix:
    """Read a dense count table into a CountMatrix.

    Parameters
    ----------
    path : PathLike
        CSV/TSV file whose first column holds row identifiers
    transpose : bool
        Set when rows are genes and columns are cells
    sep : str
        Field separator

    Returns
    -------
    CountMatrix
        Cells x genes counts

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    """
    table_path = Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"Count table not found: {table_path}")
    df = pd.read_csv(table_path, sep=sep, index_col=0)
    if transpose:
        df = df.T
    df = df.fillna(0)
    logger.info("Loaded %d cells x %d genes from %s", df.shape[0], df.shape[1], table_path)
    return CountMatrix.from_dataframe(df)


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path
