"""Versioned arena of committed stage outputs.

A ``PipelineSession`` owns the input counts and every result a run has
committed. Results are immutable; re-running a stage appends a new version
and supersedes everything downstream of it. A stage that fails never
reaches ``commit``, so earlier results stay exactly as they were.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import pandas as pd

from ..config import RunConfig
from ..core.clustering.labels import ClusterAssignment, LabeledAssignment
from ..core.matrix import CLUSTER_COLUMN, CellMetadata, CountMatrix
from ..errors import ConfigurationError, DataIntegrityError

logger = logging.getLogger(__name__)

# Stage id to the stages whose results it consumes
STAGE_DEPENDENCIES: Dict[str, List[str]] = {
    "qc": [],
    "normalize": ["qc"],
    "features": ["qc"],
    "scale": ["normalize", "features"],
    "pca": ["scale"],
    "jackstraw": ["scale", "pca"],
    "neighbors": ["pca"],
    "clusters": ["neighbors"],
    "markers": ["normalize", "clusters"],
}

STAGE_NAMES: Dict[str, str] = {
    "qc": "Quality control",
    "normalize": "Normalization",
    "features": "Variable feature selection",
    "scale": "Scaling",
    "pca": "Principal component analysis",
    "jackstraw": "JackStraw significance",
    "neighbors": "Shared-neighbor graph",
    "clusters": "Louvain clustering",
    "markers": "Marker detection",
}


@dataclass(frozen=True)
class StageRecord:
    """One committed stage result.

    Attributes
    ----------
    stage_id : str
        Stage identifier
    version : int
        1 for the first commit of this stage, incremented on re-runs
    result : Any
        Immutable stage output
    inputs : Dict[str, int]
        Versions of the upstream records the result was computed from
    duration : float
        Wall time in seconds
    committed_at : str
        ISO timestamp
    """

    stage_id: str
    version: int
    result: Any = field(repr=False)
    inputs: Dict[str, int] = field(default_factory=dict)
    duration: float = 0.0
    committed_at: str = ""


def downstream_of(stage_id: str) -> List[str]:
    """Every stage that transitively consumes ``stage_id``."""
    found: List[str] = []
    frontier = [stage_id]
    while frontier:
        current = frontier.pop()
        for other, deps in STAGE_DEPENDENCIES.items():
            if current in deps and other not in found:
                found.append(other)
                frontier.append(other)
    return found


class PipelineSession:
    """Committed results of one pipeline run.

    Parameters
    ----------
    counts : CountMatrix
        Ingested counts (never modified)
    config : RunConfig, optional
        Configuration the stages run with

    Example
    -------
    >>> session = PipelineSession(counts, RunConfig())
    >>> session.commit("qc", qc_result)
    >>> session.get("qc").counts.shape
    """

    def __init__(self, counts: CountMatrix, config: Optional[RunConfig] = None):
        if not isinstance(counts, CountMatrix):
            raise ConfigurationError("PipelineSession requires a CountMatrix")
        self.counts = counts
        self.config = config or RunConfig()
        self._history: Dict[str, List[StageRecord]] = {}
        self._current: Dict[str, StageRecord] = {}

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._current

    @property
    def stages(self) -> List[str]:
        """Stages with a current result, in pipeline order."""
        return [s for s in STAGE_DEPENDENCIES if s in self._current]

    def get(self, stage_id: str, version: Optional[int] = None) -> Any:
        """Current result of a stage, or a specific earlier version."""
        return self.record(stage_id, version).result

    def record(self, stage_id: str, version: Optional[int] = None) -> StageRecord:
        if version is None:
            if stage_id not in self._current:
                raise KeyError(f"Stage '{stage_id}' has no current result")
            return self._current[stage_id]
        for record in self._history.get(stage_id, []):
            if record.version == version:
                return record
        raise KeyError(f"Stage '{stage_id}' has no version {version}")

    def history(self, stage_id: str) -> List[StageRecord]:
        return list(self._history.get(stage_id, []))

    def _check_alignment(self, stage_id: str, result: Any) -> None:
        if stage_id == "qc" or "qc" not in self._current:
            return
        cell_ids = getattr(result, "cell_ids", None)
        if cell_ids is None:
            return
        expected = self._current["qc"].result.counts.cell_ids
        if not pd.Index(cell_ids).equals(expected):
            raise DataIntegrityError(
                f"Stage '{stage_id}' result does not cover the QC-retained cells"
            )

    def commit(self, stage_id: str, result: Any, duration: float = 0.0) -> StageRecord:
        """Store a finished stage result.

        Downstream results are superseded (kept in history, no longer
        current).

        Raises
        ------
        ConfigurationError
            If the stage is unknown or its inputs are not committed
        DataIntegrityError
            If the result is indexed by cells other than the QC-retained ones
        """
        if stage_id not in STAGE_DEPENDENCIES:
            raise ConfigurationError(f"Unknown stage '{stage_id}'")
        missing = [d for d in STAGE_DEPENDENCIES[stage_id] if d not in self._current]
        if missing:
            raise ConfigurationError(
                f"Stage '{stage_id}' committed before its inputs: {missing}"
            )
        self._check_alignment(stage_id, result)

        record = StageRecord(
            stage_id=stage_id,
            version=len(self._history.get(stage_id, [])) + 1,
            result=result,
            inputs={d: self._current[d].version for d in STAGE_DEPENDENCIES[stage_id]},
            duration=duration,
            committed_at=datetime.now().isoformat(timespec="seconds"),
        )
        superseded = [s for s in downstream_of(stage_id) if s in self._current]

        self._history.setdefault(stage_id, []).append(record)
        self._current[stage_id] = record
        for stage in superseded:
            del self._current[stage]

        if superseded:
            logger.debug(
                "Commit of %s v%d superseded %s", stage_id, record.version, superseded
            )
        return record

    def cell_metadata(self) -> CellMetadata:
        """QC metadata, extended with ``cluster_label`` once clustering ran."""
        if "qc" not in self._current:
            raise KeyError("Stage 'qc' has no current result")
        metadata: CellMetadata = self.get("qc").metadata
        if "clusters" in self._current:
            assignment: ClusterAssignment = self.get("clusters")
            metadata = metadata.with_columns(
                {CLUSTER_COLUMN: ("category", assignment.to_series())}
            )
        return metadata

    def labeled_metadata(self, labeled: LabeledAssignment) -> CellMetadata:
        """Cell metadata with a ``cell_type`` column from a renamed assignment."""
        if "clusters" not in self._current or labeled.assignment is not self.get("clusters"):
            raise DataIntegrityError("Labels belong to a superseded cluster assignment")
        return self.cell_metadata().with_columns(
            {"cell_type": ("category", labeled.to_series())}
        )

    def summary(self) -> Dict[str, Any]:
        """Stage versions and timings for logging."""
        return {
            stage: {
                "version": record.version,
                "duration": round(record.duration, 3),
                "inputs": dict(record.inputs),
            }
            for stage, record in ((s, self._current[s]) for s in self.stages)
        }
