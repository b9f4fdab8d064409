"""
Export module for RNA-seq workflow results.

Writes the differential-expression table as TSV, multi-sheet Excel workbooks
with DE and gene-set results, standalone interactive HTML figures and a PDF
summary report.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging
import re
import sys
import io
import numpy as np
import pandas as pd
import plotly.graph_objects as go
import scipy
import statsmodels
from reportlab.lib.pagesizes import letter
from reportlab.platypus import SimpleDocTemplate, Paragraph, Table, Image, Spacer
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.utils import ImageReader

from de_analysis import DEResult

logger = logging.getLogger(__name__)

TSV_COLUMNS = ["gene_id", "symbol", "log2FoldChange", "pvalue", "padj", "AveExpr", "contrast"]


@dataclass
class ExportData:
    """Complete export data bundle - constructed by the workflow or UI before export."""

    de_result: Optional[DEResult]
    enrichment_results: Dict[str, pd.DataFrame] = field(default_factory=dict)  # contrast → CAMERA table
    figures: Dict[str, go.Figure] = field(default_factory=dict)  # e.g. "mds", "volcano_<contrast>"
    settings: Dict[str, Any] = field(default_factory=dict)  # thresholds, formula, contrasts, ...
    samples: Optional[pd.DataFrame] = None  # one row per sample with covariates
    scaling_factors: Optional[pd.DataFrame] = None  # sample → lib_size, TMM, scaling_factor


class ExportEngine:
    """Export engine for RNA-seq workflow results."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '

        Args:
            name: Raw sheet name
            max_length: Maximum length (default 31 for Excel)

        Returns:
            Sanitized sheet name
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def _unique_sheet_name(self, name: str, used: set) -> str:
        candidate = self.sanitize_sheet_name(name)
        k = 2
        while candidate in used:
            suffix = f"_{k}"
            candidate = self.sanitize_sheet_name(name, 31 - len(suffix)) + suffix
            k += 1
        used.add(candidate)
        return candidate

    def write_results_tsv(self, results_df: pd.DataFrame, filepath) -> Path:
        """
        Write the differential-expression table as tab-separated text.

        Columns: gene_id, symbol, log2FoldChange, pvalue, padj, AveExpr,
        contrast (those present in ``results_df``).
        """
        columns = [c for c in TSV_COLUMNS if c in results_df.columns]
        missing = [c for c in ("gene_id", "log2FoldChange", "pvalue", "padj") if c not in columns]
        if missing:
            raise ValueError(f"Cannot write results: missing columns {missing}.")
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        results_df[columns].to_csv(filepath, sep="\t", index=False, na_rep="NA")
        logger.info(f"Wrote {len(results_df)} rows to {filepath}")
        return filepath

    def export_excel(
        self, filepath, export_data: ExportData, padj_threshold: Optional[float] = None
    ) -> None:
        """
        Export analysis results to multi-sheet Excel workbook.

        Sheet layout: DE_{contrast}, Sig_{contrast}, Sets_{contrast},
        Scaling, Samples, Settings.

        Args:
            filepath: Output Excel file path (.xlsx)
            export_data: Complete export data bundle
            padj_threshold: Cut-off for the Sig_ sheets (default: settings or 0.05)
        """
        if padj_threshold is None:
            padj_threshold = export_data.settings.get("padj_threshold", 0.05)
        used: set = set()
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            if export_data.de_result is not None:
                for contrast in export_data.de_result.contrast_names:
                    table = export_data.de_result.for_contrast(contrast)
                    table.to_excel(
                        writer, sheet_name=self._unique_sheet_name(f"DE_{contrast}", used), index=False
                    )
                    sig = table[table["padj"] < padj_threshold]
                    sig.to_excel(
                        writer, sheet_name=self._unique_sheet_name(f"Sig_{contrast}", used), index=False
                    )

            for contrast, sets in export_data.enrichment_results.items():
                sets.to_excel(writer, sheet_name=self._unique_sheet_name(f"Sets_{contrast}", used))

            if export_data.scaling_factors is not None:
                export_data.scaling_factors.to_excel(writer, sheet_name=self._unique_sheet_name("Scaling", used))
            if export_data.samples is not None:
                export_data.samples.to_excel(writer, sheet_name=self._unique_sheet_name("Samples", used))

            self._write_settings_sheet(writer, export_data, padj_threshold)
        logger.info(f"Wrote Excel workbook {filepath}")

    def _write_settings_sheet(
        self, writer: pd.ExcelWriter, export_data: ExportData, padj_threshold: float
    ) -> None:
        """
        Write Settings sheet with analysis metadata.

        Settings sheet contains key-value rows with sections:
        - Analysis Date, Python and library versions
        - Workflow settings (formula, thresholds, methods)
        - Contrasts with significant gene counts
        - Gene-set results per contrast
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
            ["numpy Version", np.__version__],
            ["pandas Version", pd.__version__],
            ["scipy Version", scipy.__version__],
            ["statsmodels Version", statsmodels.__version__],
        ]

        if export_data.settings:
            settings_data.append(["---", "---"])
            settings_data.append(["Settings", ""])
            for key, value in export_data.settings.items():
                settings_data.append([key, str(value)])

        if export_data.de_result is not None:
            settings_data.append(["---", "---"])
            settings_data.append(["Contrasts", ""])
            counts = export_data.de_result.n_significant(padj_threshold)
            for contrast, n in counts.items():
                settings_data.append([contrast, f"{n} genes with padj < {padj_threshold}"])
            for warning in export_data.de_result.warnings:
                settings_data.append(["Warning", warning])

        if export_data.enrichment_results:
            settings_data.append(["---", "---"])
            settings_data.append(["Gene-set Tests", ""])
            for contrast, sets in export_data.enrichment_results.items():
                n_sig = int((sets["FDR"] < 0.05).sum()) if "FDR" in sets else 0
                settings_data.append([contrast, f"{len(sets)} sets, {n_sig} with FDR < 0.05"])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)

    def export_figures_html(self, figures: Dict[str, go.Figure], outdir) -> List[Path]:
        """
        Write each figure as a self-contained interactive HTML file.

        Returns:
            Paths of the written files, in ``figures`` order
        """
        outdir = Path(outdir)
        outdir.mkdir(parents=True, exist_ok=True)
        paths = []
        for name, fig in figures.items():
            safe = re.sub(r"[^\w.-]+", "_", name).strip("_") or "figure"
            path = outdir / f"{safe}.html"
            fig.write_html(str(path), include_plotlyjs=True, full_html=True)
            paths.append(path)
        logger.info(f"Wrote {len(paths)} HTML figures to {outdir}")
        return paths

    def _figure_flowable(self, fig: go.Figure) -> Image:
        png_bytes = fig.to_image(format="png", scale=2, width=800, height=600)
        return Image(ImageReader(io.BytesIO(png_bytes)), width=400, height=300)

    def export_pdf_report(
        self, filepath, export_data: ExportData, embed_figures: bool = False, top_n: int = 20
    ) -> None:
        """
        Generate PDF summary report from ExportData bundle.

        Sections: methods, per-contrast top genes, per-contrast top gene sets
        and, when ``embed_figures`` is set, static renderings of the figures
        (requires kaleido).

        Args:
            filepath: Output PDF file path
            export_data: Complete export data bundle
            embed_figures: Embed figures as PNG images
            top_n: Rows per top-gene table
        """
        doc = SimpleDocTemplate(str(filepath), pagesize=letter)
        styles = getSampleStyleSheet()
        story = []

        # 1. Title page
        story.append(Paragraph("RNA-seq Differential Expression Report", styles["Title"]))
        story.append(Spacer(1, 12))
        story.append(
            Paragraph(
                f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
                styles["Normal"],
            )
        )
        story.append(Spacer(1, 24))

        # 2. Methods section
        settings = export_data.settings
        story.append(Paragraph("Methods", styles["Heading1"]))
        methods = [
            "Lowly expressed genes were removed with a counts-per-million filter "
            f"(min_count {settings.get('min_count', 10)}, min_total_count "
            f"{settings.get('min_total_count', 15)}).",
            "Libraries were scaled with TMM normalization factors computed on the retained genes.",
        ]
        if export_data.de_result is not None:
            de = export_data.de_result
            if de.method == "limma_voom":
                text = "Differential expression was tested with limma"
                text += "-voom precision weights" if de.voom is not None else " on log-CPM values"
                text += (
                    f" and TREAT against |log2FC| &gt; {de.lfc_threshold}"
                    if de.lfc_threshold
                    else " and empirical Bayes moderated t-statistics"
                )
            else:
                text = "Differential expression was tested with the DESeq2 Wald test (PyDESeq2)"
            methods.append(text + "; p-values were adjusted per contrast with Benjamini-Hochberg.")
        if export_data.enrichment_results:
            methods.append(
                "Gene sets were tested with CAMERA, a competitive test accounting for "
                "inter-gene correlation."
            )
        for line in methods:
            story.append(Paragraph(line, styles["Normal"]))
            story.append(Spacer(1, 6))
        if "formula" in settings:
            story.append(Paragraph(f"Model: {settings['formula']}", styles["Normal"]))
        story.append(Spacer(1, 24))

        # 3. Top genes per contrast
        if export_data.de_result is not None:
            story.append(Paragraph("Top Differentially Expressed Genes", styles["Heading1"]))
            for contrast in export_data.de_result.contrast_names:
                table = export_data.de_result.for_contrast(contrast)
                story.append(Paragraph(f"Contrast: {contrast}", styles["Heading2"]))
                story.append(Spacer(1, 6))
                top = table.dropna(subset=["padj"]).sort_values(["pvalue", "gene_id"]).head(top_n)
                table_data = [["Gene", "Symbol", "log2FC", "padj"]] + [
                    [str(g), str(s) if pd.notna(s) else "", f"{fc:.2f}", f"{p:.2e}"]
                    for g, s, fc, p in top[["gene_id", "symbol", "log2FoldChange", "padj"]].values.tolist()
                ]
                story.append(Table(table_data))
                story.append(Spacer(1, 12))
                if embed_figures and f"volcano_{contrast}" in export_data.figures:
                    story.append(self._figure_flowable(export_data.figures[f"volcano_{contrast}"]))
                    story.append(Spacer(1, 12))

        # 4. Gene sets per contrast
        if export_data.enrichment_results:
            story.append(Paragraph("Gene-set Tests (CAMERA)", styles["Heading1"]))
            for contrast, sets in export_data.enrichment_results.items():
                story.append(Paragraph(f"Contrast: {contrast} (Top 10)", styles["Heading2"]))
                story.append(Spacer(1, 6))
                rows = [["Gene set", "NGenes", "Direction", "FDR"]] + [
                    [str(name), str(int(r["NGenes"])), r["Direction"], f"{r['FDR']:.2e}"]
                    for name, r in sets.head(10).iterrows()
                ]
                story.append(Table(rows))
                story.append(Spacer(1, 12))

        # 5. Remaining figures
        if embed_figures:
            for name, fig in export_data.figures.items():
                if name.startswith("volcano_"):
                    continue
                story.append(Paragraph(name.replace("_", " ").title(), styles["Heading1"]))
                story.append(Spacer(1, 6))
                story.append(self._figure_flowable(fig))
                story.append(Spacer(1, 24))

        doc.build(story)
        logger.info(f"Wrote PDF report {filepath}")
