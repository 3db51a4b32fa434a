"""I/O utilities for scclust.

Provides logging and CSV I/O. AnnData conversion lives in
``scclust.io.anndata_io`` and is imported on demand (scanpy is slow to load).
"""

from .logging import log_json, log_yaml, run_log_path, to_builtin
from .csv import ensure_output_dir, load_count_table, write_dataframe

__all__ = [
    # Logging
    "log_json",
    "log_yaml",
    "run_log_path",
    "to_builtin",
    # CSV I/O
    "ensure_output_dir",
    "load_count_table",
    "write_dataframe",
]
