"""Stage representation for in-process pipeline execution."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List


@dataclass
class Stage:
    """A registered pipeline stage.

    Attributes
    ----------
    stage_id : str
        Short identifier, also the session key of its result
    func : Callable
        ``func(session, token) -> result``
    name : str
        Human-readable stage name (e.g., "Louvain clustering")
    depends_on : List[str]
        Stage IDs whose results this stage reads
    optional : bool
        Optional stages run only when explicitly requested

    Example
    -------
    >>> stage = Stage("qc", run_qc, name="Quality control")
    >>> stage.describe()
    'qc (Quality control)'
    """

    stage_id: str
    func: Callable[..., Any]
    name: str = ""
    depends_on: List[str] = field(default_factory=list)
    optional: bool = False

    def __post_init__(self):
        if not self.name:
            self.name = self.stage_id

    def describe(self) -> str:
        return f"{self.stage_id} ({self.name})"

    def to_dict(self) -> Dict[str, Any]:
        """Stage description for serialization (the callable is omitted)."""
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "depends_on": list(self.depends_on),
            "optional": self.optional,
        }
