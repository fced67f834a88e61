"""Command-line interface for CellType-RefMatch.

Provides CLI commands for reference-based cell-type classification.
"""

import logging
import sys
from typing import Optional

import click
import pandas as pd

from celltype_refmatch.core.classification.config import GRANULARITIES, MODES


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("celltype_refmatch")


@click.group()
@click.version_option(version="0.1.0", prog_name="celltype-refmatch")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """CellType-RefMatch: reference-based cell-type annotation.

    Scores each query cell (or cluster) against a labeled reference with
    Spearman correlation and refines the best label by fine-tuning.

    Examples:

        # Classify single cells
        celltype-refmatch classify -q query.h5ad -r ref.h5ad --type-key label -o out/

        # Classify clusters with both taxonomies
        celltype-refmatch classify -q query.csv -r ref.h5ad --type-key label \\
            --main-type-key main --clusters clusters.csv --mode cluster \\
            --granularity both -o out/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


def _load_reference(
    reference_path: str,
    type_key: str,
    main_type_key: Optional[str],
    labels_path: Optional[str],
    layer: Optional[str],
):
    from celltype_refmatch.io import load_reference

    return load_reference(
        reference_path,
        type_key=type_key,
        main_type_key=main_type_key,
        labels_path=labels_path,
        layer=layer,
    )


@cli.command()
@click.option("--query", "-q", "query_path", required=True, type=click.Path(exists=True),
              help="Query data (.h5ad cells x genes, or .csv genes x samples)")
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Reference atlas (.h5ad, or .csv with --reference-labels)")
@click.option("--reference-labels", type=click.Path(exists=True),
              help="Labels CSV for a CSV reference (sample_id + label columns)")
@click.option("--type-key", required=True, help="Fine label column")
@click.option("--main-type-key", help="Main label column")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Classification configuration file (YAML)")
@click.option("--mode", type=click.Choice(MODES), help="Classify single cells or clusters")
@click.option("--clusters", type=click.Path(exists=True),
              help="Cluster assignment CSV (sample_id, cluster)")
@click.option("--granularity", type=click.Choice(GRANULARITIES + ("both",)),
              help="Label taxonomy to classify with")
@click.option("--gene-selection", type=click.Choice(["sd", "de", "explicit"]),
              help="Variable gene selection mode")
@click.option("--genes", "genes_path", type=click.Path(exists=True),
              help="Gene list file (implies --gene-selection explicit)")
@click.option("--quantile", type=float, help="Per-label aggregation quantile")
@click.option("--fine-tune/--no-fine-tune", default=None, help="Run fine-tuning")
@click.option("--fine-tune-threshold", type=float, help="Fine-tuning score margin")
@click.option("--workers", type=int, help="Number of parallel workers")
@click.option("--layer", help="Expression layer for .h5ad inputs")
@click.pass_context
def classify(
    ctx: click.Context,
    query_path: str,
    reference_path: str,
    reference_labels: Optional[str],
    type_key: str,
    main_type_key: Optional[str],
    output_path: str,
    config: Optional[str],
    mode: Optional[str],
    clusters: Optional[str],
    granularity: Optional[str],
    gene_selection: Optional[str],
    genes_path: Optional[str],
    quantile: Optional[float],
    fine_tune: Optional[bool],
    fine_tune_threshold: Optional[float],
    workers: Optional[int],
    layer: Optional[str],
) -> None:
    """Classify query samples against a reference atlas.

    Writes scores.csv, labels.csv, errors.csv and finetune_trace.csv
    (prefixed main_ for the main taxonomy), failures.jsonl and
    run_summary.yaml.
    """
    logger = ctx.obj["logger"]

    from celltype_refmatch.core.classification import (
        ClassificationEngine,
        ClassificationError,
        ClassificationParams,
    )
    from celltype_refmatch.io import (
        ensure_output_dir,
        get_run_logger,
        load_cluster_assignment,
        load_gene_list,
        load_query,
        log_failures,
        write_dataframe,
        write_run_summary,
    )

    out_dir = ensure_output_dir(output_path)
    logger, log_path = get_run_logger(out_dir, "classify")
    logger.info("Running classification on: %s", query_path)
    logger.info("Reference: %s", reference_path)

    try:
        params = ClassificationParams.from_yaml(config) if config else ClassificationParams()
        genes = load_gene_list(genes_path) if genes_path else None
        params = params.with_overrides(
            mode=mode,
            gene_selection="explicit" if genes else gene_selection,
            genes=genes,
            quantile=quantile,
            fine_tune=fine_tune,
            fine_tune_threshold=fine_tune_threshold,
            worker_count=workers,
            granularity=granularity if granularity in GRANULARITIES else None,
        )
        reference = _load_reference(reference_path, type_key, main_type_key, reference_labels, layer)
        query = load_query(query_path, layer=layer)
        assignment = load_cluster_assignment(clusters) if clusters else None

        engine = ClassificationEngine(reference, params, logger=logger)
        if granularity == "both":
            batches = engine.run_all(query, clusters=assignment, output_dir=out_dir)
        else:
            batch = engine.run(query, clusters=assignment, output_dir=out_dir)
            batches = {batch.granularity: batch}
    except ClassificationError as e:
        logger.error("Classification aborted: %s", e.to_dict())
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if len(batches) > 1:
        combined = pd.concat(
            [b.labels_frame().assign(granularity=g) for g, b in batches.items()],
            ignore_index=True,
        )
        write_dataframe(combined, out_dir / "labels_all.csv")

    n_failures = log_failures(out_dir / "failures.jsonl", batches)
    if n_failures:
        logger.warning("%d failed sample(s) listed in failures.jsonl", n_failures)

    write_run_summary(
        out_dir / "run_summary.yaml",
        batches,
        inputs={"query": query_path, "reference": reference_path, "log": log_path},
    )

    for g, b in batches.items():
        click.echo(f"[{g}] classified {b.n_succeeded}/{len(b)} samples ({b.n_failed} failed)")
    click.echo(f"Output saved to: {out_dir}")


@cli.command("validate-reference")
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Reference atlas (.h5ad, or .csv with --reference-labels)")
@click.option("--reference-labels", type=click.Path(exists=True),
              help="Labels CSV for a CSV reference")
@click.option("--type-key", required=True, help="Fine label column")
@click.option("--main-type-key", help="Main label column")
@click.option("--layer", help="Expression layer for .h5ad inputs")
@click.pass_context
def validate_reference(
    ctx: click.Context,
    reference_path: str,
    reference_labels: Optional[str],
    type_key: str,
    main_type_key: Optional[str],
    layer: Optional[str],
) -> None:
    """Check a reference atlas can be used for classification.

    Verifies label columns and the fine-to-main label mapping.
    """
    logger = ctx.obj["logger"]

    from celltype_refmatch.core.classification import ClassificationError

    try:
        reference = _load_reference(reference_path, type_key, main_type_key, reference_labels, layer)
        reference.validate(logger)
    except ClassificationError as e:
        click.echo(f"Invalid reference: {e}", err=True)
        sys.exit(1)

    click.echo(f"Reference '{reference.name}' is valid")
    click.echo(f"  Genes: {reference.data.shape[0]}, samples: {reference.n_samples}")
    click.echo(f"  Types: {reference.types.nunique()}")
    if reference.has_main_types():
        click.echo(f"  Main types: {reference.main_types.nunique()}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
