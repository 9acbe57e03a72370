"""Command-line interface for Singlecell-Refinery.

Provides CLI commands for running pipeline stages.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("singlecell_refinery")


def _load_config(config: Optional[str]):
    from singlecell_refinery.pipeline import PipelineConfig

    return PipelineConfig.from_yaml(Path(config)) if config else PipelineConfig()


@click.group()
@click.version_option(version=__version__, prog_name="singlecell-refinery")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """Singlecell-Refinery: droplet-to-cluster single-cell RNA-seq pipeline.

    Examples:

        # Process one sample from raw 10x output
        singlecell-refinery run --input raw_feature_bc_matrix/ --out results/ --sample-id donor1

        # Integrate processed samples
        singlecell-refinery integrate -i results/donor1.h5ad -i results/donor2.h5ad --out merged/

        # Find cluster markers
        singlecell-refinery markers --input merged/integrated.h5ad --group-by snn_res.0.8 --out markers.csv

        # Run full pipeline from config
        singlecell-refinery pipeline --config pipeline.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Raw counts: 10x directory, .h5 or .h5ad")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--sample-id", "-s", default=None, help="Sample identifier (default: input name)")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    sample_id: Optional[str],
    config: Optional[str],
) -> None:
    """Run the per-sample stages (A-J) on one raw count matrix."""
    logger = ctx.obj["logger"]

    from singlecell_refinery.core.errors import RefineryError
    from singlecell_refinery.io import log_json, save_dataset
    from singlecell_refinery.pipeline import PipelineExecutor

    cfg = _load_config(config)
    valid, errors = cfg.validate_dependencies()
    if not valid:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)

    sample_id = sample_id or Path(input_path).name.split(".")[0]
    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Running %s on %s", " -> ".join(cfg.sample_stages()), input_path)

    try:
        result = PipelineExecutor(cfg).run_sample(sample_id, input_path)
    except RefineryError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    save_dataset(result.dataset, out_dir / f"{sample_id}.h5ad")
    if result.markers is not None:
        result.markers.to_csv(out_dir / f"{sample_id}_markers.csv", index=False)
    log_json(out_dir / "summary.jsonl", result.to_dict())

    click.echo(f"{sample_id}: {result.dataset.n_cells} cells x {result.dataset.n_genes} genes")
    click.echo(f"Output saved to: {output_path}")


@cli.command()
@click.option("--input", "-i", "input_paths", required=True, multiple=True,
              type=click.Path(exists=True), help="Processed sample (.h5ad); repeat per sample")
@click.option("--label", "-l", "labels", multiple=True,
              help="Provenance label per input (default: file stem)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.pass_context
def integrate(
    ctx: click.Context,
    input_paths: Tuple[str, ...],
    labels: Tuple[str, ...],
    output_path: str,
    config: Optional[str],
) -> None:
    """Integrate processed samples (Stage K) and re-cluster the merged object."""
    logger = ctx.obj["logger"]

    from singlecell_refinery.core.errors import RefineryError
    from singlecell_refinery.io import load_dataset, log_json, save_dataset
    from singlecell_refinery.pipeline import PipelineExecutor

    if len(input_paths) < 2:
        click.echo("Error: integration needs at least two inputs", err=True)
        sys.exit(1)
    labels = list(labels) or [Path(p).stem for p in input_paths]
    if len(labels) != len(input_paths):
        click.echo("Error: give one --label per --input", err=True)
        sys.exit(1)

    cfg = _load_config(config)
    datasets = [load_dataset(p) for p in input_paths]
    logger.info("Integrating %d samples: %s", len(datasets), ", ".join(labels))

    try:
        merged = PipelineExecutor(cfg).integrate(datasets, labels)
    except RefineryError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    out_dir = Path(output_path)
    save_dataset(merged.dataset, out_dir / "integrated.h5ad")
    if merged.markers is not None:
        merged.markers.to_csv(out_dir / "integrated_markers.csv", index=False)
    log_json(out_dir / "summary.jsonl", merged.to_dict())

    click.echo(f"Integrated {merged.dataset.n_cells} cells from {len(datasets)} samples")
    click.echo(f"Output saved to: {output_path}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Clustered dataset (.h5ad)")
@click.option("--group-by", "-g", required=True, help="Cell metadata column with groups")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output marker table (.csv)")
@click.option("--layer", default=None, help="Expression layer (default: lognorm)")
@click.option("--method", type=click.Choice(["wilcoxon", "t-test"]), default="wilcoxon",
              help="Statistical test")
@click.option("--only-pos", is_flag=True, help="Keep only up-regulated genes")
@click.option("--logfc-threshold", type=float, default=0.25, help="Minimum |log2FC| tested")
@click.option("--min-pct", type=float, default=0.1, help="Minimum detection fraction tested")
@click.option("--recorrect-umi", is_flag=True,
              help="Recompute corrected counts at the subset's median depth")
@click.pass_context
def markers(
    ctx: click.Context,
    input_path: str,
    group_by: str,
    output_path: str,
    layer: Optional[str],
    method: str,
    only_pos: bool,
    logfc_threshold: float,
    min_pct: float,
    recorrect_umi: bool,
) -> None:
    """Find one-vs-rest markers for every group (Stage J)."""
    logger = ctx.obj["logger"]

    from singlecell_refinery.core.clustering import MarkerConfig, MarkerFinder
    from singlecell_refinery.io import load_dataset

    cfg = MarkerConfig(
        method=method,
        only_pos=only_pos,
        logfc_threshold=logfc_threshold,
        min_pct=min_pct,
        recorrect_umi=recorrect_umi,
    )
    if layer:
        cfg.layer = layer

    dataset = load_dataset(input_path)
    try:
        result = MarkerFinder(cfg, logger=logger).find_all_markers(dataset, group_by)
    except KeyError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    out_path = Path(output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    result.markers.to_csv(out_path, index=False)

    click.echo(f"{len(result.markers)} marker rows for {result.markers['group'].nunique()} groups")
    if result.skipped_groups:
        click.echo(f"Skipped groups (too few cells): {', '.join(result.skipped_groups)}")
    click.echo(f"Output saved to: {output_path}")


@cli.command("select-dims")
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Dataset with a stored reduction (.h5ad)")
@click.option("--reduction", default="pca", help="Reduction name")
@click.option("--threshold", type=float, default=0.9, help="Cumulative variance threshold")
@click.option("--out", "-o", "output_path", type=click.Path(),
              help="Write the dataset with the selection recorded (.h5ad)")
@click.pass_context
def select_dims(
    ctx: click.Context,
    input_path: str,
    reduction: str,
    threshold: float,
    output_path: Optional[str],
) -> None:
    """Choose the number of dimensions to keep (Stage F)."""
    logger = ctx.obj["logger"]

    from singlecell_refinery.core.reduction import DimensionSelector
    from singlecell_refinery.io import load_dataset, save_dataset

    dataset = load_dataset(input_path)
    try:
        result = DimensionSelector(logger=logger).run(dataset, reduction=reduction, threshold=threshold)
    except (KeyError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    suffix = "" if result.crossed else " (threshold not crossed)"
    click.echo(f"PCNum: {result.pc_num}{suffix}")
    if output_path:
        save_dataset(result.dataset, output_path)
        click.echo(f"Output saved to: {output_path}")


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.option("--workers", "-j", type=int, default=None, help="Override resources.n_workers")
@click.option("--dry-run", is_flag=True, help="Show execution plan without running")
@click.option("--force", is_flag=True, help="Ignore checkpoint and re-run all samples")
@click.pass_context
def pipeline(
    ctx: click.Context,
    config: str,
    workers: Optional[int],
    dry_run: bool,
    force: bool,
) -> None:
    """Run full pipeline from configuration.

    Runs every configured sample through the per-sample stages, then
    integrates them when more than one sample is given.
    """
    verbose = ctx.obj["verbose"]

    from singlecell_refinery.pipeline import PipelineExecutor, PipelineLogger

    cfg = _load_config(config)
    if workers is not None:
        cfg.resources.n_workers = workers

    valid, errors = cfg.validate_dependencies()
    if not valid:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)

    click.echo(f"Pipeline stages: {' -> '.join(cfg.sample_stages())}")

    pipeline_logger = PipelineLogger(str(cfg.resolved_log_dir), log_level="DEBUG" if verbose else "INFO")
    pipeline_logger.setup()

    executor = PipelineExecutor(cfg, pipeline_logger)
    exit_code = executor.run(dry_run=dry_run, force=force)
    pipeline_logger.close()

    if exit_code == 0:
        click.echo("Pipeline completed successfully")
    else:
        click.echo(f"Pipeline failed with exit code {exit_code}", err=True)
        sys.exit(exit_code)


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
