"""Tests for TSV, Excel, HTML and PDF export."""
import pytest
import pandas as pd
from openpyxl import load_workbook

from de_analysis import DEAnalysisEngine
from export_engine import TSV_COLUMNS, ExportData, ExportEngine
from normalization import compute_scaling_factors
from tidy_counts import sample_table
from visualizations import create_volcano_plot


CONTRAST = "groupA - groupB"


@pytest.fixture
def engine():
    return ExportEngine()


@pytest.fixture
def export_data(toy_long):
    de_result = DEAnalysisEngine().test_differential_abundance(toy_long, "~0 + group", [CONTRAST])
    camera = pd.DataFrame(
        {
            "NGenes": [2],
            "Correlation": [0.01],
            "Direction": ["Up"],
            "PValue": [0.01],
            "FDR": [0.01],
        },
        index=pd.Index(["SET1"], name="gene_set"),
    )
    return ExportData(
        de_result=de_result,
        enrichment_results={CONTRAST: camera},
        figures={f"volcano_{CONTRAST}": create_volcano_plot(de_result.for_contrast(CONTRAST))},
        settings={"formula": "~0 + group", "padj_threshold": 0.05},
        samples=sample_table(toy_long).set_index("sample"),
        scaling_factors=compute_scaling_factors(toy_long).table,
    )


def test_sanitize_sheet_name(engine):
    assert engine.sanitize_sheet_name("DE_a/b:c*d?") == "DE_a_b_c_d_"
    assert len(engine.sanitize_sheet_name("x" * 50)) == 31
    assert engine.sanitize_sheet_name("'quoted'") == "quoted"


def test_unique_sheet_names(engine):
    used = set()
    first = engine._unique_sheet_name("DE_groupbasal.pregnant - groupbasal.lactate", used)
    second = engine._unique_sheet_name("DE_groupbasal.pregnant - groupbasal.virgin", used)
    assert first != second
    assert len(first) <= 31 and len(second) <= 31
    assert second.endswith("_2")


def test_write_results_tsv(engine, export_data, tmp_path):
    path = engine.write_results_tsv(export_data.de_result.results_df, tmp_path / "out" / "de.tsv")
    assert path.exists()
    text = path.read_text()
    assert text.splitlines()[0].split("\t") == TSV_COLUMNS
    assert "\tNA\t" in text
    table = pd.read_csv(path, sep="\t", dtype={"gene_id": str})
    assert sorted(table["gene_id"]) == ["G1", "G2", "G3"]


def test_write_results_tsv_missing_columns(engine, sample_de_results_df, tmp_path):
    with pytest.raises(ValueError, match="padj"):
        engine.write_results_tsv(sample_de_results_df.drop(columns="padj"), tmp_path / "de.tsv")


def test_export_excel(engine, export_data, tmp_path):
    path = tmp_path / "results.xlsx"
    engine.export_excel(path, export_data)
    workbook = load_workbook(path)
    assert workbook.sheetnames == [
        f"DE_{CONTRAST}",
        f"Sig_{CONTRAST}",
        f"Sets_{CONTRAST}",
        "Scaling",
        "Samples",
        "Settings",
    ]
    de_sheet = pd.read_excel(path, sheet_name=f"DE_{CONTRAST}")
    assert len(de_sheet) == 3
    sig_sheet = pd.read_excel(path, sheet_name=f"Sig_{CONTRAST}")
    assert (sig_sheet["padj"] < 0.05).all()

    settings = pd.read_excel(path, sheet_name="Settings", header=None)
    keys = settings[0].astype(str).tolist()
    assert "pandas Version" in keys
    assert "formula" in keys
    assert CONTRAST in keys


def test_export_excel_without_de(engine, tmp_path):
    path = tmp_path / "empty.xlsx"
    engine.export_excel(path, ExportData(de_result=None))
    assert load_workbook(path).sheetnames == ["Settings"]


def test_export_figures_html(engine, export_data, tmp_path):
    paths = engine.export_figures_html(export_data.figures, tmp_path / "figures")
    assert [p.name for p in paths] == ["volcano_groupA_-_groupB.html"]
    assert "plotly" in paths[0].read_text().lower()


def test_export_pdf_report(engine, export_data, tmp_path):
    path = tmp_path / "report.pdf"
    engine.export_pdf_report(path, export_data)
    assert path.read_bytes()[:4] == b"%PDF"
