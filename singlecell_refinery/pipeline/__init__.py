"""Pipeline orchestration module.

Provides YAML-based configuration, stage ordering and execution of
per-sample stage chains in parallel worker processes, followed by
integration of the samples.

Example Usage
-------------
>>> from singlecell_refinery.pipeline import (
...     PipelineConfig,
...     PipelineExecutor,
...     PipelineLogger,
... )
>>> # Load configuration
>>> config = PipelineConfig.from_yaml("pipeline.yaml")
>>> # Setup logging
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> # Execute pipeline
>>> executor = PipelineExecutor(config, logger)
>>> exit_code = executor.run()
"""

# Stage representation
from .stage import Stage, STAGES, POST_INTEGRATION_STAGES

# Configuration
from .config import PipelineConfig, ResourceConfig, DEFAULT_STAGES

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Execution
from .executor import (
    PipelineExecutor,
    SampleRun,
    StageRunner,
)

__all__ = [
    # Stage
    "Stage",
    "STAGES",
    "POST_INTEGRATION_STAGES",
    # Config
    "PipelineConfig",
    "ResourceConfig",
    "DEFAULT_STAGES",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "PipelineExecutor",
    "SampleRun",
    "StageRunner",
]
