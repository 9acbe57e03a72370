"""Pipeline configuration loader and validator."""

from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from ..core.clustering import ClusteringConfig, EmbeddingConfig, MarkerConfig
from ..core.doublets import DoubletConfig
from ..core.integration import IntegrationConfig
from ..core.preprocessing import PreprocessingConfig
from ..core.reduction import HarmonyConfig, ReductionConfig
from .stage import POST_INTEGRATION_STAGES, STAGES, Stage

DEFAULT_STAGES = ["A", "B", "C", "E", "F", "G", "H", "I", "J", "K"]


@dataclass
class ResourceConfig:
    """Worker pool settings for per-sample runs.

    Attributes
    ----------
    n_workers : int
        Parallel worker processes (1 = sequential)
    max_nbytes : str
        Arrays larger than this are memory-mapped when sent to workers
    """

    n_workers: int = 1
    max_nbytes: Optional[str] = "1G"


@dataclass
class PipelineConfig:
    """Master configuration for a pipeline run.

    One nested configuration per stage plus the samples to process.

    Attributes
    ----------
    samples : Dict[str, str]
        Sample id -> raw count path (10x directory, .h5 or .h5ad)
    stages : List[str]
        Enabled stage IDs; D is added when ``preprocessing.use_sct`` is set
    output_dir : str
        Directory for h5ad outputs, marker tables and summaries
    log_dir : str, optional
        Directory for per-sample log files (default: ``<output_dir>/logs``)
    use_harmony : bool
        Correct the merged PCA with Harmony before clustering

    Example
    -------
    >>> config = PipelineConfig.from_yaml("pipeline.yaml")
    >>> valid, errors = config.validate_dependencies()
    >>> config.sample_stages()
    ['A', 'B', 'C', 'E', 'F', 'G', 'H', 'I', 'J']
    """

    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    harmony: HarmonyConfig = field(default_factory=HarmonyConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    doublets: DoubletConfig = field(default_factory=DoubletConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    samples: Dict[str, str] = field(default_factory=dict)
    stages: List[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    output_dir: str = "results"
    log_dir: Optional[str] = None
    use_harmony: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Create PipelineConfig from dictionary."""
        return cls(
            preprocessing=PreprocessingConfig.from_dict(data.get("preprocessing", {})),
            reduction=ReductionConfig(**data.get("reduction", {})),
            harmony=HarmonyConfig(**data.get("harmony", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            embedding=EmbeddingConfig(**data.get("embedding", {})),
            doublets=DoubletConfig(**data.get("doublets", {})),
            markers=MarkerConfig(**data.get("markers", {})),
            integration=IntegrationConfig(**data.get("integration", {})),
            resources=ResourceConfig(**data.get("resources", {})),
            samples={str(k): str(v) for k, v in (data.get("samples") or {}).items()},
            stages=[str(s) for s in data.get("stages", DEFAULT_STAGES)],
            output_dir=str(data.get("output_dir", "results")),
            log_dir=data.get("log_dir"),
            use_harmony=bool(data.get("use_harmony", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PipelineConfig":
        """Load configuration from YAML file.

        Relative sample and output paths are resolved against the
        directory containing the file.

        Raises
        ------
        FileNotFoundError
            If config file doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        base = path.parent
        samples = data.get("samples") or {}
        data["samples"] = {
            sample_id: str(_resolve(base, sample_path)) for sample_id, sample_path in samples.items()
        }
        data["output_dir"] = str(_resolve(base, data.get("output_dir", "results")))
        if data.get("log_dir"):
            data["log_dir"] = str(_resolve(base, data["log_dir"]))
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def resolved_log_dir(self) -> Path:
        return Path(self.log_dir) if self.log_dir else Path(self.output_dir) / "logs"

    def enabled_stages(self) -> List[str]:
        """Enabled stage IDs in canonical order."""
        enabled = set(self.stages)
        if self.preprocessing.use_sct:
            enabled.add("D")
        return [stage_id for stage_id in STAGES if stage_id in enabled]

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Check that every enabled stage has its required stages enabled.

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors) where valid is True if all dependencies are met
        """
        errors = []
        for stage_id in self.stages:
            if stage_id not in STAGES:
                errors.append(f"Unknown stage '{stage_id}'")

        enabled = self.enabled_stages()
        for stage_id in enabled:
            for dep in STAGES[stage_id].depends_on:
                if dep not in enabled and not STAGES[dep].optional:
                    errors.append(f"Stage '{stage_id}' requires stage '{dep}'")

        return (len(errors) == 0, errors)

    def get_execution_order(self, stage_ids: Optional[Sequence[str]] = None) -> List[str]:
        """Compute stage execution order via topological sort.

        Dependencies on stages outside ``stage_ids`` are ignored.

        Parameters
        ----------
        stage_ids : Sequence[str], optional
            Stages to order (default: all enabled stages)

        Raises
        ------
        ValueError
            If circular dependencies detected
        """
        selected: Dict[str, Stage] = {
            stage_id: STAGES[stage_id]
            for stage_id in (stage_ids if stage_ids is not None else self.enabled_stages())
        }
        in_degree = {
            stage_id: sum(1 for dep in stage.depends_on if dep in selected)
            for stage_id, stage in selected.items()
        }

        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)

            for other_id, other_stage in selected.items():
                if stage_id in other_stage.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(selected):
            raise ValueError("Circular dependency detected - cannot compute execution order")

        return order

    def sample_stages(self) -> List[str]:
        """Ordered per-sample stages."""
        return self.get_execution_order([s for s in self.enabled_stages() if STAGES[s].per_sample])

    def merged_stages(self) -> List[str]:
        """Ordered stages re-run on the merged object after integration."""
        enabled = self.enabled_stages()
        return self.get_execution_order([s for s in POST_INTEGRATION_STAGES if s in enabled])


def _resolve(base: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base / path
