"""In-process pipeline execution with atomic commits."""

from collections import deque
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from ..config import RunConfig
from ..core.clustering import ClusterEngine, NeighborGraph
from ..core.markers import MarkerTester
from ..core.matrix import CountMatrix
from ..core.preprocessing import FeatureSelector, Normalizer, QCFilter, Scaler
from ..core.reduction import DimReducer, JackStraw
from ..errors import ConfigurationError
from ..utils.cancel import CancellationToken, check
from .logger import PipelineLogger
from .session import STAGE_DEPENDENCIES, STAGE_NAMES, PipelineSession
from .stage import Stage


class StageExecutor:
    """Runs registered stages in dependency order against a session.

    Each stage function receives the session and the cancellation token
    and returns its result. The result is committed only after the
    function returns, so a failing or cancelled stage leaves the session
    exactly as it was.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = StageExecutor()
    >>> executor.register_stage("qc", run_qc)
    >>> executor.register_stage("normalize", run_norm, depends_on=["qc"])
    >>> executor.run(session)
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Stage] = {}
        self.completed_stages: List[str] = []

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        optional: bool = False,
    ) -> None:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier (session key)
        func : Callable
            ``func(session, token) -> result``
        depends_on : List[str], optional
            Stage IDs this stage depends on
        name : str, optional
            Human-readable stage name
        optional : bool
            Skip unless requested in ``run(include=...)``
        """
        self.stages[stage_id] = Stage(
            stage_id=stage_id,
            func=func,
            name=name or stage_id,
            depends_on=list(depends_on or []),
            optional=optional,
        )

    def _get_execution_order(self) -> List[str]:
        """Topological order; ties keep registration order."""
        in_degree = {stage_id: 0 for stage_id in self.stages}
        for stage_id, stage in self.stages.items():
            for dep in stage.depends_on:
                if dep not in self.stages:
                    raise ConfigurationError(
                        f"Stage '{stage_id}' depends on unregistered stage '{dep}'"
                    )
                in_degree[stage_id] += 1

        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []
        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ConfigurationError("Circular stage dependency detected")
        return order

    def run_stage(
        self,
        stage_id: str,
        session: PipelineSession,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """Execute one stage and commit its result."""
        stage = self.stages[stage_id]
        check(token, f"before stage {stage_id}")
        if self.logger:
            self.logger.log_stage_start(stage_id, stage.name)

        start_time = time.time()
        try:
            result = stage.func(session, token)
        except Exception as e:
            if self.logger:
                self.logger.log_stage_error(stage_id, str(e))
            raise

        duration = time.time() - start_time
        session.commit(stage_id, result, duration=duration)
        self.completed_stages.append(stage_id)
        if self.logger:
            self.logger.log_stage_complete(stage_id, duration, stage_summary(stage_id, result))
        return result

    def run(
        self,
        session: PipelineSession,
        token: Optional[CancellationToken] = None,
        include: Optional[List[str]] = None,
        end_stage: Optional[str] = None,
    ) -> PipelineSession:
        """Execute all registered stages in order.

        Parameters
        ----------
        session : PipelineSession
            Session receiving the results
        token : CancellationToken, optional
            Checked before every stage and inside long stages
        include : List[str], optional
            Optional stages to run
        end_stage : str, optional
            Stop after this stage

        Returns
        -------
        PipelineSession
            The same session, with the new results committed
        """
        include = set(include or [])
        order = self._get_execution_order()
        if end_stage is not None:
            if end_stage not in order:
                raise ConfigurationError(f"End stage '{end_stage}' not found")
            order = order[: order.index(end_stage) + 1]

        for stage_id in order:
            stage = self.stages[stage_id]
            if stage.optional and stage_id not in include:
                continue
            self.run_stage(stage_id, session, token)

        if self.logger:
            self.logger.log_info(f"Pipeline completed: {' -> '.join(session.stages)}")
        return session


def stage_summary(stage_id: str, result: Any) -> Dict[str, Any]:
    """Small per-stage record for the run log."""
    if stage_id == "qc":
        return result.to_dict()
    if stage_id == "features":
        return {"n_features": len(result), "top": list(result.top(10))}
    if stage_id == "pca":
        return {
            "n_components": result.n_components,
            "converged": result.converged,
            "variance_ratio": [round(float(v), 4) for v in result.variance_ratio[:10]],
        }
    if stage_id == "jackstraw":
        return {"significant_pcs": result.significant_pcs()}
    if stage_id == "neighbors":
        return {"k": result.k, "n_dims": result.n_dims, "n_edges": result.n_edges}
    if stage_id == "clusters":
        return {
            "n_clusters": result.n_clusters,
            "modularity": round(result.modularity, 4),
            "converged": result.converged,
            "sizes": {int(k): int(v) for k, v in result.sizes().items()},
        }
    if stage_id == "markers":
        return {"top_genes": result.top_genes(5)}
    return {}


def build_executor(
    config: RunConfig,
    logger: Optional[PipelineLogger] = None,
    jackstraw_replicates: int = 100,
) -> StageExecutor:
    """Executor with the standard stages wired to ``config``."""
    log = logger.logger if logger is not None else logging.getLogger("scclust")
    executor = StageExecutor(logger)

    def run_qc(session, token):
        return QCFilter(config, log).run(session.counts)

    def run_normalize(session, token):
        qc = session.get("qc")
        return Normalizer(config, log).run(qc.counts, qc.metadata)

    def run_features(session, token):
        return FeatureSelector(config, log).run(session.get("qc").counts)

    def run_scale(session, token):
        return Scaler(config, log).run(
            session.get("normalize"), session.get("features"), session.get("qc").metadata
        )

    def run_pca(session, token):
        return DimReducer(config, log).run(session.get("scale"))

    def run_jackstraw(session, token):
        return JackStraw(config, log, n_replicates=jackstraw_replicates).run(
            session.get("scale"), session.get("pca"), token=token
        )

    def run_neighbors(session, token):
        return NeighborGraph(config, log).run(session.get("pca"))

    def run_clusters(session, token):
        return ClusterEngine(config, log).run(session.get("neighbors"))

    def run_markers(session, token):
        return MarkerTester(config, log).find_all_markers(
            session.get("normalize"), session.get("clusters"), token=token
        )

    funcs = {
        "qc": run_qc,
        "normalize": run_normalize,
        "features": run_features,
        "scale": run_scale,
        "pca": run_pca,
        "jackstraw": run_jackstraw,
        "neighbors": run_neighbors,
        "clusters": run_clusters,
        "markers": run_markers,
    }
    for stage_id, func in funcs.items():
        executor.register_stage(
            stage_id,
            func,
            depends_on=STAGE_DEPENDENCIES[stage_id],
            name=STAGE_NAMES[stage_id],
            optional=stage_id == "jackstraw",
        )
    return executor


def run_pipeline(
    counts: CountMatrix,
    config: Optional[RunConfig] = None,
    token: Optional[CancellationToken] = None,
    logger: Optional[PipelineLogger] = None,
    jackstraw: bool = False,
    end_stage: Optional[str] = None,
) -> PipelineSession:
    """Validate the configuration and run the full pipeline.

    Parameters
    ----------
    counts : CountMatrix
        Ingested counts
    config : RunConfig, optional
        Run configuration (validated before any computation)
    token : CancellationToken, optional
        Cooperative cancellation
    logger : PipelineLogger, optional
        Run logger
    jackstraw : bool
        Also run the JackStraw stage
    end_stage : str, optional
        Stop after this stage

    Returns
    -------
    PipelineSession
        Session holding every committed result
    """
    config = config or RunConfig()
    config.validate()
    if logger is not None:
        logger.log_config({"run": config.to_dict()})
    session = PipelineSession(counts, config)
    executor = build_executor(config, logger)
    return executor.run(
        session,
        token=token,
        include=["jackstraw"] if jackstraw else None,
        end_stage=end_stage,
    )
