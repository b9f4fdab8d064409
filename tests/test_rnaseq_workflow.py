"""End-to-end tests of the workflow orchestration."""
import pytest
import pandas as pd

import de_analysis

from demo_data import demo_config, demo_gene_sets, load_demo_dataset, toy_config
from gene_annotation import TableSymbolLookup
from linear_models import voom
from rnaseq_workflow import (
    export_results,
    gene_sets_from_config,
    prepare_counts,
    run_from_config,
    run_workflow,
)
from workflow_config import WorkflowConfig
from workflow_errors import ConfigError, JoinError


CONTRAST = "groupA - groupB"


@pytest.fixture
def toy_result(toy_wide, toy_metadata):
    return run_workflow(toy_wide, toy_metadata, toy_config())


@pytest.fixture(scope="module")
def demo_result():
    counts_wide, metadata, symbols = load_demo_dataset(n_genes=400, seed=3)
    return run_workflow(
        counts_wide,
        metadata,
        demo_config(),
        symbol_lookup=TableSymbolLookup(symbols, "EntrezGeneID", "Symbols"),
        gene_sets=demo_gene_sets(n_random=6, set_size=15, n_genes=400),
    )


def test_toy_low_gene_filtered(toy_result):
    flags = toy_result.counts.drop_duplicates("gene_id").set_index("gene_id")["abundant"]
    assert not flags["G4"]
    assert flags[["G1", "G2", "G3"]].all()
    assert "G4" not in set(toy_result.de_result.results_df["gene_id"])


def test_toy_differential_gene(toy_result):
    table = toy_result.de_result.for_contrast(CONTRAST).set_index("gene_id")
    assert table.loc["G2", "log2FoldChange"] > 0
    assert table.loc["G2", "padj"] < 0.05


def test_toy_scaling_and_reduction(toy_result):
    assert toy_result.reference_sample == "A2"
    assert sorted(toy_result.scaling.index) == ["A1", "A2", "B1", "B2"]
    coords = toy_result.reductions["MDS"]
    assert {"Dim1", "Dim2"} <= set(coords.columns)
    assert len(coords) == 4
    assert len(toy_result.explained_variance["MDS"]) == 2
    assert {"TMM", "count_scaled", "Dim1"} <= set(toy_result.counts.columns)


def test_toy_figures(toy_result):
    for name in (
        "library_size",
        "counts_raw",
        "counts_scaled",
        "gene_detection",
        "sample_similarity",
        "mds",
        "voom_trend",
        f"volcano_{CONTRAST}",
        f"ma_{CONTRAST}",
        f"stripchart_{CONTRAST}",
        "heatmap",
    ):
        assert name in toy_result.figures
    assert any("unit weights" in w for w in toy_result.warnings)


def test_toy_without_figures(toy_wide, toy_metadata):
    result = run_workflow(toy_wide, toy_metadata, toy_config(), make_figures=False)
    assert result.figures == {}


def test_toy_export(toy_result, tmp_path):
    written = export_results(toy_result, tmp_path)
    assert [p.name for p in written] == ["de_results.tsv", "rnaseq_results.xlsx"]
    table = pd.read_csv(tmp_path / "de_results.tsv", sep="\t")
    assert len(table) == 3


def test_toy_treat(toy_wide, toy_metadata):
    result = run_workflow(toy_wide, toy_metadata, toy_config(lfc_threshold=1.0), make_figures=False)
    assert result.de_result.lfc_threshold == 1.0


def test_configured_span_reaches_voom(toy_wide, toy_metadata, monkeypatch):
    spans = []

    def recording_voom(*args, **kwargs):
        spans.append(kwargs.get("span"))
        return voom(*args, **kwargs)

    monkeypatch.setattr(de_analysis, "voom", recording_voom)
    run_workflow(toy_wide, toy_metadata, toy_config(span=0.2), make_figures=False)
    assert spans == [0.2]


def test_unmatched_metadata(toy_wide, toy_metadata):
    with pytest.raises(JoinError):
        run_workflow(toy_wide, toy_metadata.iloc[:3], toy_config())


def test_prepare_counts_demo(demo_dataset):
    counts_wide, metadata, symbols = demo_dataset
    long = prepare_counts(
        counts_wide, metadata, demo_config(), TableSymbolLookup(symbols, "EntrezGeneID", "Symbols")
    )
    assert long["sample"].nunique() == 12
    assert set(long["group"]) >= {"basal.virgin", "luminal.lactate"}
    assert long.loc[long["gene_id"] == "12991", "symbol"].iloc[0] == "Csn2"


def test_demo_end_to_end(demo_result):
    config = demo_config()
    assert demo_result.de_result.contrast_names == config.differential.contrasts
    assert set(demo_result.enrichment) == set(config.differential.contrasts)
    assert set(demo_result.reductions) == {"MDS", "PCA"}
    assert "pca" in demo_result.figures
    for contrast in config.differential.contrasts:
        assert f"gene_sets_{contrast}" in demo_result.figures
    milk = demo_result.enrichment["groupbasal.pregnant - groupbasal.lactate"].loc["MILK_PROTEINS"]
    assert milk["Direction"] == "Down"


def test_demo_export(demo_result, tmp_path):
    written = export_results(demo_result, tmp_path)
    names = {p.name for p in written}
    assert {"de_results.tsv", "rnaseq_results.xlsx", "rnaseq_report.pdf", "mds.html"} <= names
    assert "camera_groupbasal.pregnant_-_groupbasal.lactate.tsv" in names
    assert all(p.exists() for p in written)


def test_run_from_config(toy_wide, toy_metadata, tmp_path):
    toy_wide.to_csv(tmp_path / "counts.tsv", sep="\t", index=False)
    toy_metadata.to_csv(tmp_path / "samples.tsv", sep="\t", index=False)
    config = WorkflowConfig.from_dict(
        {
            "source": {
                "counts": "counts.tsv",
                "metadata": "samples.tsv",
                "gene_column": "GeneID",
                "length_column": None,
                "sample_column": "sample",
            },
            "reduction": {"top": 3},
            "differential": {"contrasts": [CONTRAST]},
        },
        base_dir=tmp_path,
    )
    result = run_from_config(config, make_figures=False)
    table = result.de_result.for_contrast(CONTRAST).set_index("gene_id")
    assert table.loc["G2", "padj"] < 0.05


def test_run_from_config_requires_inputs():
    with pytest.raises(ConfigError, match="source.counts"):
        run_from_config(toy_config())


def test_gene_sets_from_config(tmp_path):
    (tmp_path / "a.gmt").write_text("SET_A\tna\t1\t2\n")
    (tmp_path / "b.yaml").write_text("gene_sets:\n  SET_B:\n    description: b\n    genes: [3, 4]\n")
    config = WorkflowConfig.from_dict(
        {
            "differential": {"contrasts": [CONTRAST]},
            "enrichment": {"sources": [{"type": "gmt", "path": "a.gmt"}, {"type": "yaml", "path": "b.yaml"}]},
        },
        base_dir=tmp_path,
    )
    collection = gene_sets_from_config(config)
    assert set(collection) == {"SET_A", "SET_B"}
    assert collection.descriptions == {"SET_B": "b"}
    assert gene_sets_from_config(toy_config()) is None
