"""
RNA-seq Workflow App
A Streamlit front-end for the tidy RNA-seq differential-expression workflow.
"""

import logging
import os
import tempfile
from typing import Optional

import streamlit as st
import pandas as pd

from workflow_config import WorkflowConfig
from workflow_errors import WorkflowError
from data_sources import read_count_table, read_sample_metadata
from gene_annotation import TableSymbolLookup, search_genes
from gene_sets import GeneSetCollection
from de_analysis import DEAnalysisEngine
from rnaseq_workflow import WorkflowResult, run_workflow
from demo_data import demo_gene_sets, load_demo_dataset
from export_engine import ExportEngine

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# --- Page Config ---
st.set_page_config(
    page_title="RNA-seq Workflow",
    page_icon="🧬",
    layout="wide",
    initial_sidebar_state="expanded",
)

# --- Session State Initialization ---
for key, default in {
    "counts_wide": None,
    "metadata": None,
    "symbols": None,
    "gene_sets": None,
    "result": None,
}.items():
    if key not in st.session_state:
        st.session_state[key] = default


# --- Helper Functions ---


def _save_upload(uploaded_file) -> str:
    """Write an uploaded file to a temporary path the readers can open."""
    suffix = f".{uploaded_file.name.split('.')[-1]}"
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        tmp.write(uploaded_file.getvalue())
        return tmp.name


def _read_upload(uploaded_file, reader, *args):
    tmp_path = _save_upload(uploaded_file)
    try:
        return reader(tmp_path, *args)
    finally:
        os.unlink(tmp_path)


def _load_gene_sets(uploaded_file) -> Optional[GeneSetCollection]:
    tmp_path = _save_upload(uploaded_file)
    try:
        if uploaded_file.name.endswith((".yaml", ".yml")):
            return GeneSetCollection.from_yaml(tmp_path, name=uploaded_file.name)
        return GeneSetCollection.from_gmt(tmp_path, name=uploaded_file.name)
    finally:
        os.unlink(tmp_path)


def _show_error(e: WorkflowError) -> None:
    st.error(f"{type(e).__name__}: {e.message}")
    if e.details:
        st.json(e.details)


def _download_file(engine_method, suffix: str, label: str, filename: str, mime: str, *args):
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        tmp_path = tmp.name
    try:
        engine_method(tmp_path, *args)
        with open(tmp_path, "rb") as f:
            st.download_button(label, f.read(), filename, mime)
    finally:
        os.unlink(tmp_path)


# --- Main App Layout ---

st.title("🧬 RNA-seq Differential Expression Workflow")
st.markdown("---")

# Sidebar - Setup
with st.sidebar:
    st.header("1. Data")
    if st.button("Load demo dataset"):
        counts_wide, metadata, symbols = load_demo_dataset()
        st.session_state["counts_wide"] = counts_wide
        st.session_state["metadata"] = metadata
        st.session_state["symbols"] = TableSymbolLookup(symbols, "EntrezGeneID", "Symbols")
        st.session_state["gene_sets"] = demo_gene_sets()
        st.session_state["result"] = None
        st.success("Loaded simulated mammary-gland dataset.")

    gene_column = st.text_input("Gene id column", "EntrezGeneID")
    length_column = st.text_input("Gene length column (blank if none)", "Length") or None
    sample_column = st.text_input("Metadata sample column", "FileName")
    sample_extract = st.text_input("Sample id extraction regex (optional)", r"^(MCL1\.[A-Z]+)")

    counts_file = st.file_uploader("Counts table (TSV/CSV)", type=["tsv", "csv", "txt", "gz"])
    metadata_file = st.file_uploader("Sample metadata (TSV/CSV)", type=["tsv", "csv", "txt"])
    sets_file = st.file_uploader("Gene sets (GMT/YAML, optional)", type=["gmt", "yaml", "yml"])

    try:
        if counts_file is not None:
            st.session_state["counts_wide"] = _read_upload(
                counts_file, read_count_table, gene_column, length_column
            )
            st.session_state["symbols"] = None
        if metadata_file is not None:
            st.session_state["metadata"] = _read_upload(metadata_file, read_sample_metadata, sample_column)
        if sets_file is not None:
            st.session_state["gene_sets"] = _load_gene_sets(sets_file)
    except WorkflowError as e:
        _show_error(e)

    metadata = st.session_state["metadata"]
    if st.session_state["counts_wide"] is not None and metadata is not None:
        st.header("2. Design")
        candidates = [c for c in metadata.columns if c != sample_column]
        covariates = st.multiselect(
            "Covariates forming the group", candidates, default=candidates[-2:] if len(candidates) >= 2 else candidates
        )
        contrasts_text = st.text_area(
            "Contrasts (one per line)",
            "groupbasal.pregnant - groupbasal.lactate\ngroupluminal.pregnant - groupluminal.lactate",
        )

        st.header("3. Thresholds")
        method = st.selectbox("Method", ["limma_voom", "deseq2"])
        use_treat = st.checkbox("Test against a fold-change threshold (TREAT)")
        lfc_threshold = st.number_input("log2 fold-change threshold", 0.0, 10.0, 0.58) if use_treat else None
        padj_threshold = st.number_input("Adjusted p-value cut-off", 0.001, 1.0, 0.05)
        min_count = st.number_input("Minimum count (abundance filter)", 0, 1000, 10)
        inter_gene_cor = st.number_input("CAMERA inter-gene correlation", 0.0, 0.9, 0.01)

        if st.button("Run Analysis", type="primary"):
            try:
                config = WorkflowConfig.from_dict(
                    {
                        "source": {
                            "gene_column": gene_column,
                            "length_column": length_column,
                            "sample_column": sample_column,
                            "sample_id_extract": sample_extract or None,
                        },
                        "filter": {"group_covariates": covariates, "min_count": min_count},
                        "reduction": {"methods": ["MDS", "PCA"]},
                        "differential": {
                            "formula": "~0 + group",
                            "contrasts": [c.strip() for c in contrasts_text.splitlines() if c.strip()],
                            "method": method,
                            "lfc_threshold": lfc_threshold,
                            "padj_threshold": padj_threshold,
                        },
                        "enrichment": {"inter_gene_cor": inter_gene_cor},
                        "output": {"pdf": True},
                    }
                )
                with st.spinner("Running workflow..."):
                    st.session_state["result"] = run_workflow(
                        st.session_state["counts_wide"],
                        metadata,
                        config,
                        symbol_lookup=st.session_state["symbols"],
                        gene_sets=st.session_state["gene_sets"],
                    )
                st.rerun()
            except WorkflowError as e:
                logger.error("Workflow failed", exc_info=True)
                _show_error(e)

# Main Content - Results
result: Optional[WorkflowResult] = st.session_state["result"]
if result is not None:
    figures = result.figures
    de = result.de_result
    contrasts = de.contrast_names
    active = st.selectbox("Contrast", contrasts) if len(contrasts) > 1 else contrasts[0]

    for warning in result.warnings:
        st.warning(warning)

    tab1, tab2, tab3, tab4, tab5 = st.tabs(
        ["Quality Control", "Samples", "Differential Expression", "Heatmap", "Gene Sets"]
    )

    with tab1:
        st.subheader("Library sizes and count distributions")
        st.write(f"Reference sample for TMM: **{result.reference_sample}**")
        st.dataframe(result.scaling)
        qc_keys = (
            "library_size",
            "gene_detection",
            "counts_raw",
            "counts_scaled",
            "sample_similarity",
            "voom_trend",
        )
        for key in qc_keys:
            if key in figures:
                st.plotly_chart(figures[key], use_container_width=True)

    with tab2:
        col1, col2 = st.columns(2)
        for col, key in zip((col1, col2), ("mds", "pca")):
            with col:
                if key in figures:
                    st.plotly_chart(figures[key], use_container_width=True)

    with tab3:
        st.subheader("Differential Expression Results")
        padj = result.config.differential.padj_threshold
        st.dataframe(DEAnalysisEngine.summarize(de.results_df, padj_threshold=padj))
        table = de.for_contrast(active)
        query = st.text_input("Search genes (symbol or id)", "")
        st.dataframe(search_genes(table, query).head(1000))
        col1, col2 = st.columns(2)
        with col1:
            if f"volcano_{active}" in figures:
                st.plotly_chart(figures[f"volcano_{active}"], use_container_width=True)
        with col2:
            if f"ma_{active}" in figures:
                st.plotly_chart(figures[f"ma_{active}"], use_container_width=True)
        if f"stripchart_{active}" in figures:
            st.plotly_chart(figures[f"stripchart_{active}"], use_container_width=True)

    with tab4:
        if "heatmap" in figures:
            st.plotly_chart(figures["heatmap"], use_container_width=True)

    with tab5:
        st.subheader("CAMERA gene-set tests")
        if active in result.enrichment:
            st.dataframe(result.enrichment[active])
            if f"gene_sets_{active}" in figures:
                st.plotly_chart(figures[f"gene_sets_{active}"], use_container_width=True)
        else:
            st.info("No gene sets loaded. Upload a GMT/YAML file or load the demo dataset.")

    # Export Section
    st.markdown("---")
    st.header("4. Export Results")
    engine = ExportEngine()
    export_data = result.export_data()

    col1, col2, col3 = st.columns(3)
    with col1:
        tsv = de.results_df.to_csv(sep="\t", index=False, na_rep="NA").encode("utf-8")
        st.download_button("Download DE Results (TSV)", tsv, "de_results.tsv", "text/tab-separated-values")
    with col2:
        if st.button("Generate Excel Report"):
            with st.spinner("Generating Excel..."):
                _download_file(
                    engine.export_excel, ".xlsx", "Download Excel Report", "rnaseq_results.xlsx",
                    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", export_data,
                )
    with col3:
        if st.button("Generate PDF Report"):
            with st.spinner("Generating PDF..."):
                _download_file(
                    engine.export_pdf_report, ".pdf", "Download PDF Report", "rnaseq_report.pdf",
                    "application/pdf", export_data,
                )

else:
    if st.session_state["counts_wide"] is None:
        st.info("👋 Welcome! Upload a counts table and sample metadata, or load the demo dataset.")
    else:
        st.info("Choose covariates and contrasts, then click 'Run Analysis'.")
