"""Run logging for scclust.

Provides per-run file logging and structured stage records (JSON lines,
YAML documents).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Union

import numpy as np
import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def run_log_path(log_dir: PathLike, run_name: str = "scclust") -> Path:
    """Log file path for a new run, e.g. ``logs/scclust_20250101_120000.log``."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return Path(log_dir) / f"{run_name}_{timestamp}.log"


def _prepare_log_destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def to_builtin(value: Any) -> Any:
    """Convert numpy scalars/arrays and paths to plain Python values."""
    if isinstance(value, dict):
        return {str(k): to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_builtin(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append one stage record as a JSON line.

    Parameters
    ----------
    log_path : PathLike
        Path to the JSON-lines file
    record : dict
        Record to serialize; numpy values are converted
    """
    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(to_builtin(record), default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append a YAML document to ``log_path``, or to ``logger`` if given."""
    yaml_text = yaml.safe_dump(to_builtin(record), sort_keys=False).rstrip("\n")
    message = f"{yaml_text}\n---"
    if logger is not None:
        logger.info("%s", message)
        return

    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")
