"""Pipeline execution: per-sample stage chains, parallel workers and integration."""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd
from joblib import Parallel, delayed

from ..core.clustering import ClusteringEngine, MarkerFinder, NonlinearEmbedder, cluster_key
from ..core.dataset import CellDataset
from ..core.doublets import DoubletDetector
from ..core.errors import RefineryError
from ..core.integration import INTEGRATED_LAYER, Integrator
from ..core.preprocessing import (
    RESIDUALS_LAYER,
    CellQC,
    EmptyDropletFilter,
    Normalizer,
    VarianceStabilizer,
)
from ..core.reduction import DimensionalityReducer, DimensionSelector, HarmonyCorrector
from ..io.h5ad import load_dataset, load_raw_counts, save_dataset
from ..io.logging import get_logger, log_json
from .config import PipelineConfig
from .logger import PipelineLogger
from .stage import STAGES

SampleSource = Union[str, Path, Any]


@dataclass
class SampleRun:
    """Outcome of running the stage chain on one sample (or the merged object).

    Attributes
    ----------
    sample_id : str
        Sample identifier
    dataset : CellDataset
        Final dataset version
    summaries : Dict[str, Dict[str, Any]]
        Stage ID -> result ``to_dict()``
    durations : Dict[str, float]
        Stage ID -> seconds
    markers : pd.DataFrame, optional
        Marker table when stage J ran
    """

    sample_id: str
    dataset: CellDataset
    summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    markers: Optional[pd.DataFrame] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_id": self.sample_id,
            "n_cells": self.dataset.n_cells,
            "n_genes": self.dataset.n_genes,
            "stages": list(self.summaries),
            "durations": self.durations,
            "summaries": self.summaries,
        }


class StageRunner:
    """Runs stages in-process on one dataset.

    Parameters
    ----------
    config : PipelineConfig
        Pipeline configuration
    logger : logging.Logger, optional
        Logger passed to every engine
    """

    def __init__(self, config: PipelineConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def _pca_layer(self, dataset: CellDataset) -> str:
        if dataset.has_layer(INTEGRATED_LAYER):
            return INTEGRATED_LAYER
        if self.config.preprocessing.use_sct and dataset.has_layer(RESIDUALS_LAYER):
            return RESIDUALS_LAYER
        return self.config.reduction.layer

    def _graph_input(self, dataset: CellDataset) -> tuple:
        """(reduction, n_dims) used by graph building and UMAP."""
        selection = dataset.adata.uns.get("dimension_selection", {}).get("pca")
        n_dims = int(selection["pc_num"]) if selection is not None else None
        if self.config.use_harmony and dataset.has_reduction("harmony"):
            return "harmony", n_dims
        return self.config.clustering.reduction, n_dims

    def run_stage(self, stage_id: str, dataset: Any) -> tuple:
        """Run one stage.

        Parameters
        ----------
        stage_id : str
            Stage identifier (A-J)
        dataset : CellDataset or AnnData
            Raw AnnData for stage A, a CellDataset otherwise

        Returns
        -------
        tuple
            (new dataset, stage result)
        """
        cfg = self.config
        pre = cfg.preprocessing

        if stage_id == "A":
            result = EmptyDropletFilter(pre.ingest, logger=self.logger).run(dataset)
        elif stage_id == "B":
            result = CellQC(pre.qc, logger=self.logger).filter(dataset)
        elif stage_id == "C":
            result = Normalizer(pre.normalization, logger=self.logger).run(dataset)
        elif stage_id == "D":
            result = VarianceStabilizer(pre.sct, logger=self.logger).run(dataset)
        elif stage_id == "E":
            result = DimensionalityReducer(cfg.reduction, logger=self.logger).run_pca(
                dataset, layer=self._pca_layer(dataset)
            )
            if cfg.use_harmony and all(c in result.dataset.obs.columns for c in cfg.harmony.group_by):
                result = HarmonyCorrector(cfg.harmony, logger=self.logger).run(result.dataset)
        elif stage_id == "F":
            result = DimensionSelector(cfg.reduction, logger=self.logger).run(dataset, reduction="pca")
        elif stage_id == "G":
            engine = ClusteringEngine(cfg.clustering, logger=self.logger)
            reduction, n_dims = self._graph_input(dataset)
            graphed = engine.build_graph(dataset, reduction=reduction, n_dims=n_dims)
            resolutions = sorted(set(cfg.clustering.resolutions) | {cfg.clustering.resolution})
            result = engine.sweep(graphed, resolutions)
        elif stage_id == "H":
            reduction, n_dims = self._graph_input(dataset)
            result = NonlinearEmbedder(cfg.embedding, logger=self.logger).run(
                dataset, reduction=reduction, n_dims=n_dims
            )
        elif stage_id == "I":
            result = DoubletDetector(cfg.doublets, logger=self.logger).run(dataset)
        elif stage_id == "J":
            result = MarkerFinder(cfg.markers, logger=self.logger).find_all_markers(
                dataset, group_by=cluster_key(cfg.clustering.resolution)
            )
            return dataset, result
        else:
            raise ValueError(f"Stage '{stage_id}' cannot run on a single dataset")

        return result.dataset, result

    def run_chain(
        self,
        sample_id: str,
        dataset: Any,
        stage_ids: Sequence[str],
        pipeline_logger: Optional[PipelineLogger] = None,
    ) -> SampleRun:
        """Run ``stage_ids`` in order, timing and summarizing each."""
        summaries: Dict[str, Dict[str, Any]] = {}
        durations: Dict[str, float] = {}
        markers = None
        current = dataset

        for stage_id in stage_ids:
            name = STAGES[stage_id].name
            if pipeline_logger is not None:
                pipeline_logger.log_stage_start(stage_id, name, sample_id=sample_id)
            else:
                self.logger.info("[%s] Starting stage %s: %s", sample_id, stage_id, name)

            start_time = time.time()
            try:
                current, result = self.run_stage(stage_id, current)
            except Exception as e:
                if pipeline_logger is not None:
                    pipeline_logger.log_stage_error(stage_id, str(e), sample_id=sample_id)
                else:
                    self.logger.error("[%s] Stage %s failed: %s", sample_id, stage_id, e)
                raise

            duration = time.time() - start_time
            durations[stage_id] = duration
            summaries[stage_id] = result.to_dict()
            if stage_id == "J":
                markers = result.markers

            if pipeline_logger is not None:
                pipeline_logger.log_stage_complete(stage_id, duration, sample_id=sample_id)
            else:
                self.logger.info("[%s] Stage %s completed in %.1fs", sample_id, stage_id, duration)

        return SampleRun(
            sample_id=sample_id,
            dataset=current,
            summaries=summaries,
            durations=durations,
            markers=markers,
        )


def _run_sample_job(
    config: PipelineConfig,
    sample_id: str,
    source: SampleSource,
    stage_ids: Sequence[str],
    log_dir: Optional[str],
) -> SampleRun:
    """Worker entry point: load one sample and run its stage chain."""
    if log_dir is not None:
        logger, _ = get_logger(f"singlecell_refinery.sample.{sample_id}", Path(log_dir) / f"{sample_id}.log")
    else:
        logger = logging.getLogger(__name__)

    raw = load_raw_counts(source) if isinstance(source, (str, Path)) else source
    return StageRunner(config, logger=logger).run_chain(sample_id, raw, stage_ids)


class PipelineExecutor:
    """Runs the pipeline over samples with parallel workers and checkpointing.

    Per-sample chains run in separate worker processes through joblib's
    loky backend; results come back in input order. Completed samples are
    recorded in a state file so an interrupted run can resume.

    Parameters
    ----------
    config : PipelineConfig
        Pipeline configuration
    logger : PipelineLogger, optional
        Run logger. If None, logs through the module logger.
    state_file : str, optional
        Path to checkpoint state file (default: ``<output_dir>/.pipeline_state.json``)

    Example
    -------
    >>> config = PipelineConfig.from_yaml("pipeline.yaml")
    >>> logger = PipelineLogger("logs/")
    >>> logger.setup()
    >>> executor = PipelineExecutor(config, logger)
    >>> exit_code = executor.run()
    """

    def __init__(
        self,
        config: PipelineConfig,
        logger: Optional[PipelineLogger] = None,
        state_file: Optional[str] = None,
    ):
        self.config = config
        self.logger = logger
        self._log = logger.logger if logger is not None else logging.getLogger(__name__)
        self.output_dir = Path(config.output_dir)
        self.state_file = (
            Path(state_file) if state_file else self.output_dir / ".pipeline_state.json"
        )
        self.completed_samples: List[str] = []

    def load_state(self) -> None:
        """Load completed sample IDs from a previous run.

        Samples whose saved dataset is missing are not considered complete.
        """
        if not self.state_file.exists():
            self._log.debug("No checkpoint file found, starting fresh")
            return

        with open(self.state_file, "r") as f:
            state = json.load(f)

        self.completed_samples = [
            sample_id
            for sample_id in state.get("completed_samples", [])
            if self.sample_path(sample_id).exists()
        ]
        self._log.info("Loaded checkpoint: %d samples completed", len(self.completed_samples))

    def save_state(self) -> None:
        """Save completed sample IDs to the checkpoint file."""
        state = {
            "completed_samples": self.completed_samples,
            "timestamp": datetime.now().isoformat(),
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, "w") as f:
            json.dump(state, f, indent=2)

    def clear_state(self) -> None:
        """Clear checkpoint state (for fresh run)."""
        if self.state_file.exists():
            self.state_file.unlink()
            self._log.info("Cleared checkpoint state")
        self.completed_samples = []

    def sample_path(self, sample_id: str) -> Path:
        return self.output_dir / "samples" / f"{sample_id}.h5ad"

    def run_sample(self, sample_id: str, raw: SampleSource) -> SampleRun:
        """Run the enabled per-sample stages on one sample in this process."""
        stage_ids = self.config.sample_stages()
        raw = load_raw_counts(raw) if isinstance(raw, (str, Path)) else raw
        return StageRunner(self.config, logger=self._log).run_chain(sample_id, raw, stage_ids, self.logger)

    def run_samples(
        self,
        samples: Mapping[str, SampleSource],
        log_dir: Optional[str] = None,
    ) -> List[SampleRun]:
        """Run per-sample stage chains, in parallel when ``n_workers > 1``.

        Parameters
        ----------
        samples : Mapping[str, SampleSource]
            Sample id -> raw count path or AnnData
        log_dir : str, optional
            Directory for one log file per sample

        Returns
        -------
        List[SampleRun]
            One run per sample, in input order
        """
        resources = self.config.resources
        stage_ids = self.config.sample_stages()
        self._log.info(
            "Running %d samples through %s with %d workers",
            len(samples),
            " -> ".join(stage_ids),
            resources.n_workers,
        )

        start_time = time.time()
        runs = Parallel(n_jobs=resources.n_workers, backend="loky", max_nbytes=resources.max_nbytes)(
            delayed(_run_sample_job)(self.config, sample_id, source, stage_ids, log_dir)
            for sample_id, source in samples.items()
        )
        self._log.info("Per-sample stages finished in %.1fs", time.time() - start_time)
        return list(runs)

    def integrate(self, datasets: Sequence[CellDataset], labels: Sequence[str]) -> SampleRun:
        """Merge per-sample datasets (stage K) and re-run the downstream stages."""
        start_time = time.time()
        if self.logger is not None:
            self.logger.log_stage_start("K", STAGES["K"].name, sample_id="merged")
        result = Integrator(self.config.integration, logger=self._log).integrate(datasets, labels)
        duration = time.time() - start_time
        if self.logger is not None:
            self.logger.log_stage_complete("K", duration, sample_id="merged")

        run = StageRunner(self.config, logger=self._log).run_chain(
            "merged", result.dataset, self.config.merged_stages(), self.logger
        )
        run.summaries = {"K": result.to_dict(), **run.summaries}
        run.durations = {"K": duration, **run.durations}
        return run

    def _write_run(self, run: SampleRun, path: Path) -> None:
        save_dataset(run.dataset, path)
        if run.markers is not None:
            run.markers.to_csv(path.with_name(f"{path.stem}_markers.csv"), index=False)
        log_json(self.output_dir / "summary.jsonl", run.to_dict())

    def run(self, dry_run: bool = False, force: bool = False) -> int:
        """Execute the configured pipeline.

        Parameters
        ----------
        dry_run : bool
            If True, show execution plan without running
        force : bool
            If True, ignore checkpoint and re-run all samples

        Returns
        -------
        int
            Exit code (0 = success, non-zero = failure)
        """
        valid, errors = self.config.validate_dependencies()
        if not valid:
            for error in errors:
                self._log.error(error)
            return 1
        if not self.config.samples:
            self._log.error("No samples configured")
            return 1

        sample_stages = self.config.sample_stages()
        merge = "K" in self.config.enabled_stages() and len(self.config.samples) >= 2
        plan = " -> ".join(sample_stages)
        if merge:
            plan += " | K -> " + " -> ".join(self.config.merged_stages())
        self._log.info("Pipeline execution plan: %s", plan)

        if dry_run:
            self._log.info("DRY RUN MODE - No stages will be executed")
            return 0

        if force:
            self.clear_state()
        else:
            self.load_state()

        pending = {
            sample_id: source
            for sample_id, source in self.config.samples.items()
            if sample_id not in self.completed_samples
        }
        for sample_id in self.config.samples:
            if sample_id not in pending:
                self._log.info("[SKIP] Sample %s already completed", sample_id)

        try:
            runs = self.run_samples(pending, log_dir=str(self.config.resolved_log_dir))
            for run in runs:
                self._write_run(run, self.sample_path(run.sample_id))
                self.completed_samples.append(run.sample_id)
                self.save_state()

            if merge:
                datasets = [load_dataset(self.sample_path(s)) for s in self.config.samples]
                merged = self.integrate(datasets, list(self.config.samples))
                self._write_run(merged, self.output_dir / "integrated.h5ad")
        except RefineryError as e:
            self._log.error("Pipeline failed: %s", e)
            return 1

        self._log.info("Pipeline completed successfully")
        return 0
