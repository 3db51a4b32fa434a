"""Pipeline orchestration module.

Provides the versioned session arena and in-process stage execution with
atomic commits.

Example Usage
-------------
>>> from scclust.pipeline import PipelineLogger, run_pipeline
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> session = run_pipeline(counts, config, logger=logger)
>>> session.get("markers").combined().head()
"""

# Stage representation
from .stage import Stage

# Session
from .session import (
    STAGE_DEPENDENCIES,
    STAGE_NAMES,
    PipelineSession,
    StageRecord,
    downstream_of,
)

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Execution
from .executor import (
    StageExecutor,
    build_executor,
    run_pipeline,
    stage_summary,
)

__all__ = [
    # Stage
    "Stage",
    # Session
    "STAGE_DEPENDENCIES",
    "STAGE_NAMES",
    "PipelineSession",
    "StageRecord",
    "downstream_of",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "StageExecutor",
    "build_executor",
    "run_pipeline",
    "stage_summary",
]
