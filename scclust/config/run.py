"""Per-run configuration record.

Every stage reads its parameters from a single ``RunConfig`` passed in
explicitly. Nothing is read from environment variables or module globals.

Example
-------
>>> from scclust.config import RunConfig
>>> config = RunConfig(min_genes=1, max_genes=50, max_percent_mito=100)
>>> config.validate()
>>> config.cluster_resolution
0.5
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigurationError


LOUVAIN_ORDERS = ("sequential", "random")
NEIGHBOR_METHODS = ("exact", "approx")
MARKER_TESTS = ("wilcox", "roc")
NORMALIZATION_METHODS = ("LogNormalize", "RC")


@dataclass
class RunConfig:
    """Configuration for one pipeline run.

    Attributes
    ----------
    min_genes : int
        Cells need strictly more detected genes than this
    max_genes : int
        Cells need strictly fewer detected genes than this
    max_percent_mito : float
        Cells need a mitochondrial percentage strictly below this
    scale_factor : float
        Library size target for normalization
    n_variable_features : int
        Number of genes selected by the vst ranking
    n_pca_components : int
        Principal components to compute
    neighbor_k : int
        Nearest neighbors per cell (self excluded)
    cluster_resolution : float
        Louvain resolution parameter
    min_pct : float
        Minimum detection fraction in either group for marker testing
    logfc_threshold : float
        Minimum absolute average log2 fold-change for marker testing
    only_pos : bool
        Report only positive markers
    min_cells : int
        Genes detected in fewer cells are dropped at ingestion
    mito_prefix : str
        Gene id prefix identifying mitochondrial genes
    normalization_method : str
        LogNormalize or RC (relative counts)
    vst_span : float
        LOWESS span for the mean-variance fit
    clip_max : float, optional
        Clip for standardized values; None means sqrt(n_cells)
    regress_covariates : List[str]
        Metadata columns regressed out before scaling
    scale_max : float
        Clip for scaled values
    n_neighbor_dims : int
        Leading PCs used for the neighbor search
    neighbor_method : str
        exact or approx k-NN search
    approx_eps : float
        Relative distance tolerance for approximate search
    prune_snn : float
        Jaccard weights below this are dropped
    louvain_order : str
        sequential (cell index order) or random node visiting order
    n_starts : int
        Independent Louvain starts; best modularity wins
    max_iterations : int
        Budget of Louvain aggregation levels
    max_passes : int
        Budget of local-moving passes within one level
    group_singletons : bool
        Merge singleton clusters into their best-connected neighbor
    marker_test : str
        wilcox or roc
    pseudocount : float
        Pseudocount for fold-change computation
    random_seed : int
        Seed for every randomized step
    n_jobs : int
        Worker count for parallel per-item work
    """

    min_genes: int = 200
    max_genes: int = 2500
    max_percent_mito: float = 5.0
    scale_factor: float = 10000.0
    n_variable_features: int = 2000
    n_pca_components: int = 50
    neighbor_k: int = 20
    cluster_resolution: float = 0.5
    min_pct: float = 0.25
    logfc_threshold: float = 0.25
    only_pos: bool = False
    min_cells: int = 3
    mito_prefix: str = "MT-"
    normalization_method: str = "LogNormalize"
    vst_span: float = 0.3
    clip_max: Optional[float] = None
    regress_covariates: List[str] = field(default_factory=list)
    scale_max: float = 10.0
    n_neighbor_dims: int = 10
    neighbor_method: str = "exact"
    approx_eps: float = 0.1
    prune_snn: float = 0.0
    louvain_order: str = "sequential"
    n_starts: int = 1
    max_iterations: int = 10
    max_passes: int = 100
    group_singletons: bool = True
    marker_test: str = "wilcox"
    pseudocount: float = 1.0
    random_seed: int = 1337
    n_jobs: int = 1

    def validate(self) -> None:
        """Check parameters for contradictions.

        Raises
        ------
        ConfigurationError
            Listing every problem found
        """
        errors = []

        if self.min_genes >= self.max_genes:
            errors.append(
                f"min_genes ({self.min_genes}) must be < max_genes ({self.max_genes})"
            )
        if self.min_genes < 0:
            errors.append("min_genes must be >= 0")
        if not 0 < self.max_percent_mito <= 100:
            errors.append("max_percent_mito must be in (0, 100]")
        if self.min_cells < 0:
            errors.append("min_cells must be >= 0")
        if self.scale_factor <= 0:
            errors.append("scale_factor must be positive")
        if self.n_variable_features < 1:
            errors.append("n_variable_features must be >= 1")
        if self.n_pca_components < 1:
            errors.append("n_pca_components must be >= 1")
        if self.n_neighbor_dims < 1:
            errors.append("n_neighbor_dims must be >= 1")
        if self.neighbor_k < 1:
            errors.append("neighbor_k must be >= 1")
        if self.cluster_resolution <= 0:
            errors.append("cluster_resolution must be positive")
        if not 0 <= self.min_pct <= 1:
            errors.append("min_pct must be in [0, 1]")
        if self.logfc_threshold < 0:
            errors.append("logfc_threshold must be >= 0")
        if not 0 < self.vst_span <= 1:
            errors.append("vst_span must be in (0, 1]")
        if self.clip_max is not None and self.clip_max <= 0:
            errors.append("clip_max must be positive")
        if self.scale_max <= 0:
            errors.append("scale_max must be positive")
        if not 0 <= self.prune_snn < 1:
            errors.append("prune_snn must be in [0, 1)")
        if self.approx_eps < 0:
            errors.append("approx_eps must be >= 0")
        if self.n_starts < 1:
            errors.append("n_starts must be >= 1")
        if self.max_iterations < 1:
            errors.append("max_iterations must be >= 1")
        if self.max_passes < 1:
            errors.append("max_passes must be >= 1")
        if self.pseudocount <= 0:
            errors.append("pseudocount must be positive")
        if self.n_jobs == 0:
            errors.append("n_jobs must be non-zero")
        if self.louvain_order not in LOUVAIN_ORDERS:
            errors.append(f"louvain_order must be one of {LOUVAIN_ORDERS}")
        if self.neighbor_method not in NEIGHBOR_METHODS:
            errors.append(f"neighbor_method must be one of {NEIGHBOR_METHODS}")
        if self.marker_test not in MARKER_TESTS:
            errors.append(f"marker_test must be one of {MARKER_TESTS}")
        if self.normalization_method not in NORMALIZATION_METHODS:
            errors.append(
                f"normalization_method must be one of {NORMALIZATION_METHODS}"
            )

        if errors:
            raise ConfigurationError("; ".join(errors))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        """Build a config from a flat dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration options: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Path) -> "RunConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested run section
        if "run" in data:
            data = data["run"] or {}

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "RunConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def to_yaml(self, path: Path) -> None:
        """Write configuration to YAML file under a ``run`` section."""
        with open(path, "w") as f:
            yaml.safe_dump({"run": self.to_dict()}, f, sort_keys=False)
