"""
End-to-end RNA-seq workflow.

Chains the stages over one tidy long table:

    pivot → join metadata → annotate → identify abundant → TMM scaling
    → MDS/PCA → limma-voom contrasts → CAMERA → figures

``run_workflow`` is a pure function of (counts, metadata, configuration);
``run_from_config`` reads the inputs named in the configuration first, and
``export_results`` writes tables, figures and reports to disk.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union, Mapping, Sequence
import logging
import re
import pandas as pd
import plotly.graph_objects as go
import requests

from workflow_config import WorkflowConfig
from workflow_errors import ConfigError
from data_sources import create_session, read_count_table, read_sample_metadata
from tidy_counts import (
    GROUP,
    SAMPLE,
    COUNT,
    COUNT_SCALED,
    add_composite_group,
    aggregate_duplicates,
    annotate_symbols,
    join_sample_metadata,
    pivot_counts_longer,
    sample_table,
)
from gene_annotation import MyGeneSymbolLookup, SymbolLookup, TableSymbolLookup
from abundance_filter import identify_abundant
from normalization import compute_scaling_factors, scale_abundance
from dimensionality import REDUCTION_METHODS, reduce_dimensions
from de_analysis import DEAnalysisEngine, DEResult, FoldChangeTester
from gene_sets import GeneSetCollection
from pathway_enrichment import GeneSetTester, PathwayEnrichment
from qc_plots import (
    PlotConfig,
    create_count_distribution_boxplot,
    create_gene_detection_plot,
    create_library_size_barplot,
    create_sample_similarity_heatmap,
)
from visualizations import (
    create_clustered_heatmap,
    create_gene_set_barplot,
    create_ma_plot,
    create_reduction_plot,
    create_stripchart,
    create_voom_trend_plot,
    create_volcano_plot,
    top_genes,
)
from export_engine import ExportData, ExportEngine

logger = logging.getLogger(__name__)

GeneSets = Union[GeneSetCollection, Mapping[str, Sequence[str]]]


@dataclass
class WorkflowResult:
    """Everything one workflow run produces."""

    counts: pd.DataFrame  # long table: abundant flag, TMM, count_scaled, reduction coordinates
    scaling: pd.DataFrame  # sample → lib_size, TMM, scaling_factor
    reference_sample: str
    reductions: Dict[str, pd.DataFrame]  # method → per-sample coordinates
    explained_variance: Dict[str, List[float]]
    de_result: DEResult
    enrichment: Dict[str, pd.DataFrame] = field(default_factory=dict)  # contrast → CAMERA table
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    config: Optional[WorkflowConfig] = None

    @property
    def warnings(self) -> List[str]:
        return list(self.de_result.warnings)

    @property
    def samples(self) -> pd.DataFrame:
        return sample_table(self.counts).set_index(SAMPLE)

    def export_data(self) -> ExportData:
        settings = self.config.settings() if self.config is not None else {}
        settings["reference_sample"] = self.reference_sample
        return ExportData(
            de_result=self.de_result,
            enrichment_results=self.enrichment,
            figures=self.figures,
            settings=settings,
            samples=self.samples,
            scaling_factors=self.scaling,
        )


def prepare_counts(
    counts_wide: pd.DataFrame,
    metadata: pd.DataFrame,
    config: WorkflowConfig,
    symbol_lookup: Optional[SymbolLookup] = None,
) -> pd.DataFrame:
    """Reshape, join, group, annotate and flag abundant genes."""
    source, filt = config.source, config.filter
    long = pivot_counts_longer(counts_wide, source.gene_column, source.length_column)
    long = aggregate_duplicates(long)
    long = join_sample_metadata(long, metadata, source.sample_column, source.sample_id_rule())
    if filt.group_covariates:
        long = add_composite_group(long, filt.group_covariates, sep=filt.group_sep)
    if symbol_lookup is not None:
        long = annotate_symbols(long, symbol_lookup)
    return identify_abundant(
        long,
        factor_of_interest=filt.factor_of_interest,
        min_count=filt.min_count,
        min_total_count=filt.min_total_count,
        large_n=filt.large_n,
        min_proportion=filt.min_proportion,
    )


def build_figures(
    long: pd.DataFrame,
    reductions: Dict[str, pd.DataFrame],
    de_result: DEResult,
    enrichment: Dict[str, pd.DataFrame],
    config: WorkflowConfig,
    plot_config: Optional[PlotConfig] = None,
) -> Dict[str, go.Figure]:
    """Standard figure set of a workflow run, keyed by file-friendly names."""
    plot_config = plot_config or PlotConfig()
    diff, red, out = config.differential, config.reduction, config.output
    color_by = red.color_by if red.color_by in long.columns else None
    group_by = GROUP if GROUP in long.columns else color_by
    lfc = diff.lfc_threshold or 1.0

    figures = {
        "library_size": create_library_size_barplot(long, color_by=color_by, config=plot_config),
        "counts_raw": create_count_distribution_boxplot(long, COUNT, color_by=color_by, config=plot_config),
        "counts_scaled": create_count_distribution_boxplot(
            long, COUNT_SCALED, color_by=color_by, config=plot_config
        ),
        "gene_detection": create_gene_detection_plot(long, config=plot_config),
        "sample_similarity": create_sample_similarity_heatmap(long, COUNT_SCALED, config=plot_config),
    }
    for method, coords in reductions.items():
        if red.dims < 2:
            break
        prefix = REDUCTION_METHODS[method]
        symbol_by = red.symbol_by if red.symbol_by in coords.columns else None
        figures[method.lower()] = create_reduction_plot(
            coords,
            components=(f"{prefix}1", f"{prefix}2"),
            color_by=color_by,
            symbol_by=symbol_by,
            config=plot_config,
        )
    if de_result.voom is not None:
        figures["voom_trend"] = create_voom_trend_plot(de_result.voom, config=plot_config)

    for contrast in de_result.contrast_names:
        table = de_result.for_contrast(contrast)
        figures[f"volcano_{contrast}"] = create_volcano_plot(
            table, lfc_threshold=lfc, padj_threshold=diff.padj_threshold,
            top_n_labels=out.top_n_labels, config=plot_config,
        )
        figures[f"ma_{contrast}"] = create_ma_plot(
            table, padj_threshold=diff.padj_threshold, lfc_threshold=lfc, config=plot_config
        )
        genes = top_genes(table, n=out.n_top_genes)
        if genes and group_by:
            figures[f"stripchart_{contrast}"] = create_stripchart(
                long, genes, group_by=group_by, config=plot_config
            )
        sets = enrichment.get(contrast)
        if sets is not None and len(sets):
            figures[f"gene_sets_{contrast}"] = create_gene_set_barplot(sets, config=plot_config)

    if group_by:
        figures["heatmap"] = create_clustered_heatmap(
            long, annotate_by=group_by, top_n_genes=out.heatmap_genes,
            config=plot_config,
        )
    return figures


def run_workflow(
    counts_wide: pd.DataFrame,
    metadata: pd.DataFrame,
    config: WorkflowConfig,
    symbol_lookup: Optional[SymbolLookup] = None,
    gene_sets: Optional[GeneSets] = None,
    tester: Optional[FoldChangeTester] = None,
    set_tester: Optional[GeneSetTester] = None,
    plot_config: Optional[PlotConfig] = None,
    make_figures: bool = True,
) -> WorkflowResult:
    """
    Run every stage on in-memory inputs.

    Args:
        counts_wide: gene id (+ length) column and one count column per sample
        metadata: one row per sample, keyed by ``config.source.sample_column``
        config: validated WorkflowConfig
        symbol_lookup: optional gene id → symbol collaborator
        gene_sets: optional sets for CAMERA (skipped when None)
        tester: custom FoldChangeTester overriding ``config.differential.method``
        set_tester: custom GeneSetTester overriding ``config.enrichment.method``
        plot_config: styling of the generated figures
        make_figures: build the standard figure set

    Returns:
        WorkflowResult
    """
    long = prepare_counts(counts_wide, metadata, config, symbol_lookup)

    norm = config.normalization
    factors = compute_scaling_factors(
        long,
        method=norm.method,
        reference=norm.reference,
        logratio_trim=norm.logratio_trim,
        sum_trim=norm.sum_trim,
    )
    long = scale_abundance(long, factors=factors)

    red = config.reduction
    reductions, explained = {}, {}
    for method in red.methods:
        reduced = reduce_dimensions(long, method=method, dims=red.dims, top=red.top, scale=red.scale)
        coords = sample_table(reduced)
        if "explained_variance" in reduced.attrs:
            explained[method] = list(reduced.attrs["explained_variance"])
            coords.attrs["explained_variance"] = explained[method]
        reductions[method] = coords
        long = reduced

    diff = config.differential
    de_result = DEAnalysisEngine().test_differential_abundance(
        long,
        diff.formula,
        diff.contrasts,
        method=diff.method,
        lfc_threshold=diff.lfc_threshold,
        weighting=diff.weighting,
        span=diff.span,
        tester=tester,
    )

    enrichment = {}
    if gene_sets is not None:
        enr = config.enrichment
        engine = PathwayEnrichment(testers={enr.method: set_tester} if set_tester else None)
        enrichment = engine.test_gene_enrichment(
            long,
            gene_sets,
            diff.formula,
            diff.contrasts,
            method=enr.method,
            key=enr.key,
            min_size=enr.min_size,
            max_size=enr.max_size,
            inter_gene_cor=enr.inter_gene_cor,
            use_ranks=enr.use_ranks,
            n_jobs=enr.n_jobs,
            span=diff.span,
        )

    figures = {}
    if make_figures:
        figures = build_figures(long, reductions, de_result, enrichment, config, plot_config)

    return WorkflowResult(
        counts=long,
        scaling=factors.table,
        reference_sample=factors.reference,
        reductions=reductions,
        explained_variance=explained,
        de_result=de_result,
        enrichment=enrichment,
        figures=figures,
        config=config,
    )


def symbol_lookup_from_config(config: WorkflowConfig) -> Optional[SymbolLookup]:
    """Symbol lookup named by the source section (None when neither is set)."""
    source = config.source
    if source.symbols:
        return TableSymbolLookup.from_file(
            source.symbols, source.symbol_id_column, source.symbol_column
        )
    if source.mygene_species:
        return MyGeneSymbolLookup(species=source.mygene_species)
    return None


def gene_sets_from_config(config: WorkflowConfig) -> Optional[GeneSetCollection]:
    """Load and merge every configured gene-set source (None when none are configured)."""
    sources = config.enrichment.sources
    if not sources:
        return None
    merged, descriptions = {}, {}
    for source in sources:
        kind = source["type"]
        if kind == "gmt":
            collection = GeneSetCollection.from_gmt(source["path"])
        elif kind == "yaml":
            collection = GeneSetCollection.from_yaml(source["path"])
        elif kind == "enrichr":
            collection = GeneSetCollection.from_enrichr_library(
                source["library"], organism=source.get("organism", "Mouse")
            )
        elif kind == "msigdb":
            collection = GeneSetCollection.from_msigdb(
                category=source.get("category", "mh.all"), dbver=source.get("dbver", "2023.2.Mm")
            )
        else:
            raise ConfigError(f"Unknown gene-set source type '{kind}'.", details={"source": source})
        merged.update(collection.sets)
        descriptions.update(collection.descriptions)
    name = "+".join(str(s.get("path") or s.get("library") or s.get("category")) for s in sources)
    return GeneSetCollection(merged, name=name, descriptions=descriptions)


def run_from_config(
    config: WorkflowConfig,
    session: Optional[requests.Session] = None,
    symbol_lookup: Optional[SymbolLookup] = None,
    gene_sets: Optional[GeneSets] = None,
    **kwargs,
) -> WorkflowResult:
    """
    Read the inputs named in ``config`` and run the workflow.

    Collaborators not passed explicitly are built from the configuration.
    """
    source = config.source
    if not source.counts or not source.metadata:
        raise ConfigError(
            "source.counts and source.metadata are required to run from a config file.",
            details={"section": "source"},
        )
    session = session or create_session()
    counts_wide = read_count_table(
        source.counts, gene_column=source.gene_column,
        length_column=source.length_column, session=session,
    )
    metadata = read_sample_metadata(source.metadata, source.sample_column, session=session)
    logger.info(
        f"Read {len(counts_wide)} genes x {len(counts_wide.columns) - 1 - bool(source.length_column)} "
        f"samples and {len(metadata)} metadata rows"
    )
    if symbol_lookup is None:
        symbol_lookup = symbol_lookup_from_config(config)
    if gene_sets is None:
        gene_sets = gene_sets_from_config(config)
    return run_workflow(
        counts_wide, metadata, config, symbol_lookup=symbol_lookup, gene_sets=gene_sets, **kwargs
    )


def export_results(result: WorkflowResult, outdir=None, engine: Optional[ExportEngine] = None) -> List[Path]:
    """
    Write the run's outputs under ``outdir`` (default: ``config.output.outdir``).

    Always writes ``de_results.tsv``; Excel, HTML figures and the PDF report
    follow the output configuration.

    Returns:
        Paths of the written files
    """
    engine = engine or ExportEngine()
    out = result.config.output if result.config is not None else None
    outdir = Path(outdir or (out.outdir if out else "results"))
    outdir.mkdir(parents=True, exist_ok=True)

    written = [engine.write_results_tsv(result.de_result.results_df, outdir / "de_results.tsv")]
    for contrast, table in result.enrichment.items():
        safe = re.sub(r"[^\w.-]+", "_", contrast).strip("_")
        path = outdir / f"camera_{safe}.tsv"
        table.to_csv(path, sep="\t", na_rep="NA")
        written.append(path)

    export_data = result.export_data()
    if out is None or out.excel:
        path = outdir / "rnaseq_results.xlsx"
        engine.export_excel(path, export_data)
        written.append(path)
    if (out is None or out.html_figures) and result.figures:
        written.extend(engine.export_figures_html(result.figures, outdir / "figures"))
    if out is not None and out.pdf:
        path = outdir / "rnaseq_report.pdf"
        engine.export_pdf_report(path, export_data, embed_figures=out.embed_figures)
        written.append(path)
    logger.info(f"Wrote {len(written)} files to {outdir}")
    return written
