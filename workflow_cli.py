"""Command-line entry point: ``rnaseq-workflow run CONFIG`` and ``rnaseq-workflow demo OUTDIR``."""

import logging
from pathlib import Path
from typing import Optional

import click

from workflow_config import load_config
from workflow_errors import WorkflowError
from rnaseq_workflow import WorkflowResult, export_results, run_from_config, run_workflow
from de_analysis import DEAnalysisEngine
from demo_data import demo_config, demo_gene_sets, load_demo_dataset
from gene_annotation import TableSymbolLookup

logger = logging.getLogger(__name__)


def _summarize(result: WorkflowResult) -> None:
    padj = result.config.differential.padj_threshold if result.config else 0.05
    summary = DEAnalysisEngine.summarize(result.de_result.results_df, padj_threshold=padj)
    click.echo(f"Reference sample: {result.reference_sample}")
    click.echo(f"Genes tested: {result.de_result.results_df['gene_id'].nunique()}")
    click.echo(summary.to_string())
    for contrast, sets in result.enrichment.items():
        n_sig = int((sets["FDR"] < 0.05).sum())
        click.echo(f"{contrast}: {n_sig} of {len(sets)} gene sets with FDR < 0.05")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
@click.option("--quiet", is_flag=True, help="Only log warnings and errors.")
def cli(verbose: bool, quiet: bool) -> None:
    """Tidy bulk RNA-seq differential-expression workflow."""
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("run")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--outdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Output directory (default: output.outdir of the config).",
)
@click.option("--no-figures", is_flag=True, help="Skip figure generation.")
def run_command(config_path: Path, outdir: Optional[Path], no_figures: bool) -> None:
    """Run the workflow described by CONFIG_PATH (YAML)."""
    try:
        config = load_config(config_path)
        result = run_from_config(config, make_figures=not no_figures)
        written = export_results(result, outdir)
    except WorkflowError as e:
        logger.error(f"Workflow failed: {e}", exc_info=True)
        raise click.ClickException(str(e)) from e
    _summarize(result)
    click.echo(f"Wrote {len(written)} files to {written[0].parent}")


@cli.command("demo")
@click.argument("outdir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--n-genes", default=2000, show_default=True, help="Number of simulated genes.")
@click.option("--seed", default=42, show_default=True, help="Random seed.")
def demo_command(outdir: Path, n_genes: int, seed: int) -> None:
    """Run the workflow on the simulated mammary-gland dataset."""
    counts_wide, metadata, symbols = load_demo_dataset(n_genes=n_genes, seed=seed)
    config = demo_config()
    outdir.mkdir(parents=True, exist_ok=True)
    counts_wide.to_csv(outdir / "demo_counts.tsv", sep="\t", index=False)
    metadata.to_csv(outdir / "demo_metadata.tsv", sep="\t", index=False)
    try:
        result = run_workflow(
            counts_wide,
            metadata,
            config,
            symbol_lookup=TableSymbolLookup(symbols, "EntrezGeneID", "Symbols"),
            gene_sets=demo_gene_sets(n_genes=n_genes),
        )
        written = export_results(result, outdir)
    except WorkflowError as e:
        logger.error(f"Demo failed: {e}", exc_info=True)
        raise click.ClickException(str(e)) from e
    _summarize(result)
    click.echo(f"Wrote {len(written) + 2} files to {outdir}")


if __name__ == "__main__":
    cli()
