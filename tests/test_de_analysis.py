"""Tests for the differential expression engine."""
import pytest
import numpy as np
import pandas as pd

from de_analysis import (
    RESULT_COLUMNS,
    DEAnalysisEngine,
    DESeq2Tester,
    LimmaVoomTester,
    model_inputs,
)
from gene_annotation import TableSymbolLookup
from tidy_counts import annotate_symbols
from workflow_errors import ConfigError, ModelRankError, ThresholdConfigError


CONTRAST = "grouptrt - groupctrl"


@pytest.fixture
def simple_long(simple_counts):
    counts, samples = simple_counts
    long = counts.reset_index().melt(id_vars="gene_id", var_name="sample", value_name="count")
    return long.merge(samples.reset_index(), on="sample")


@pytest.fixture
def engine():
    return DEAnalysisEngine()


def test_toy_gene_up_in_a(engine, toy_long):
    result = engine.test_differential_abundance(toy_long, "~0 + group", ["groupA - groupB"])
    df = result.results_df.set_index("gene_id")
    assert sorted(df.index) == ["G1", "G2", "G3"]
    assert df.loc["G2", "log2FoldChange"] > 5
    assert df.loc["G2", "padj"] < 0.05
    assert result.results_df.iloc[0]["gene_id"] == "G2"
    assert any("unit weights" in w for w in result.warnings)


def test_result_columns(engine, simple_long):
    result = engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST])
    assert result.results_df.columns.tolist() == RESULT_COLUMNS
    assert result.results_df["symbol"].isna().all()
    assert result.method == "limma_voom"
    assert result.voom is not None
    pvalues = result.results_df["pvalue"].to_numpy()
    assert (np.diff(pvalues) >= 0).all()


def test_swapping_contrast_negates_fold_change(engine, simple_long):
    forward = engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST])
    reverse = engine.test_differential_abundance(
        simple_long, "~0 + group", ["groupctrl - grouptrt"]
    )
    a = forward.results_df.set_index("gene_id")
    b = reverse.results_df.set_index("gene_id").loc[a.index]
    np.testing.assert_allclose(a["log2FoldChange"], -b["log2FoldChange"])
    np.testing.assert_allclose(a["stat"], -b["stat"])
    np.testing.assert_allclose(a["pvalue"], b["pvalue"])
    np.testing.assert_allclose(a["padj"], b["padj"])


def test_several_contrasts_one_fit(engine, demo_long):
    contrasts = [
        "groupbasal.pregnant - groupbasal.lactate",
        "groupbasal.pregnant - groupluminal.pregnant",
        "groupbasal.lactate - groupluminal.lactate",
    ]
    result = engine.test_differential_abundance(demo_long, "~0 + group", contrasts)
    assert result.contrast_names == contrasts
    assert result.results_df["contrast"].unique().tolist() == contrasts
    n_abundant = demo_long.loc[demo_long["abundant"], "gene_id"].nunique()
    for name in contrasts:
        assert len(result.for_contrast(name)) == n_abundant
    assert set(result.n_significant()) == set(contrasts)


def test_lactation_genes_detected(engine, demo_long):
    result = engine.test_differential_abundance(
        demo_long, "~0 + group", ["groupluminal.lactate - groupluminal.virgin"]
    )
    df = result.results_df.set_index("gene_id")
    assert df.loc["12991", "log2FoldChange"] > 0
    assert df.loc["12991", "padj"] < 0.05


def test_treat_threshold(engine, simple_long):
    plain = engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST])
    tested = engine.test_differential_abundance(
        simple_long, "~0 + group", [CONTRAST], lfc_threshold=1.0
    )
    assert tested.lfc_threshold == 1.0
    a = plain.results_df.set_index("gene_id")["pvalue"]
    b = tested.results_df.set_index("gene_id")["pvalue"].loc[a.index]
    assert (b >= a - 1e-12).all()


def test_negative_threshold(engine, simple_long):
    with pytest.raises(ThresholdConfigError):
        engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST], lfc_threshold=-1)


def test_unweighted(engine, simple_long):
    result = engine.test_differential_abundance(
        simple_long, "~0 + group", [CONTRAST], weighting="none"
    )
    assert result.voom is None
    top = result.results_df.head(20)["gene_id"]
    assert top.isin([f"g{i:03d}" for i in range(40)]).mean() > 0.8


def test_voom_span_changes_weights(engine, simple_long):
    default = engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST])
    narrow = engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST], span=0.2)
    assert default.voom.trend_fitted and narrow.voom.trend_fitted
    assert not np.allclose(default.voom.weights.to_numpy(), narrow.voom.weights.to_numpy())


def test_unknown_method(engine, simple_long):
    with pytest.raises(ConfigError, match="edgeR"):
        engine.test_differential_abundance(simple_long, "~0 + group", [CONTRAST], method="edgeR")


def test_unknown_weighting():
    with pytest.raises(ConfigError):
        LimmaVoomTester(weighting="trend")


def test_confounded_design(engine, simple_long):
    long = simple_long.assign(lane=np.where(simple_long["group"] == "ctrl", "L1", "L2"))
    with pytest.raises(ModelRankError, match="laneL2"):
        engine.test_differential_abundance(long, "~0 + group + lane", [CONTRAST])


def test_symbols_attached(engine, toy_long):
    table = pd.DataFrame({"id": ["G1", "G2"], "symbol": ["Alpha", "Beta"]})
    long = annotate_symbols(toy_long, TableSymbolLookup(table, "id", "symbol"))
    result = engine.test_differential_abundance(long, "~0 + group", ["groupA - groupB"])
    symbols = result.results_df.set_index("gene_id")["symbol"]
    assert symbols["G2"] == "Beta"
    assert pd.isna(symbols["G3"])


def test_model_inputs_uses_tmm(demo_long):
    counts, samples, lib_size = model_inputs(demo_long)
    assert counts.shape[0] == demo_long.loc[demo_long["abundant"], "gene_id"].nunique()
    assert list(samples.index) == list(counts.columns)
    tmm = demo_long.drop_duplicates("sample").set_index("sample")["TMM"]
    np.testing.assert_allclose(lib_size, counts.sum(axis=0) * tmm.loc[counts.columns])


def test_for_contrast_unknown(engine, toy_long):
    result = engine.test_differential_abundance(toy_long, "~0 + group", ["groupA - groupB"])
    with pytest.raises(ConfigError):
        result.for_contrast("groupB - groupA")


def test_deseq2_rejects_non_pairwise(engine, simple_long):
    with pytest.raises(ConfigError, match="pairwise"):
        engine.test_differential_abundance(
            simple_long, "~0 + group", ["(grouptrt + groupctrl)/2"], method="deseq2"
        )


def test_deseq2_pairwise(simple_long):
    engine = DEAnalysisEngine({DESeq2Tester.name: DESeq2Tester(n_cpus=1)})
    result = engine.test_differential_abundance(
        simple_long, "~0 + group", [CONTRAST], method="deseq2"
    )
    assert result.method == "deseq2"
    assert result.results_df.columns.tolist() == RESULT_COLUMNS
    df = result.results_df.set_index("gene_id")
    truly_up = [f"g{i:03d}" for i in range(40)]
    assert (df.loc[truly_up, "log2FoldChange"] > 0).mean() > 0.9
    assert (df.loc[truly_up, "padj"] < 0.05).sum() >= 25


def test_filter_results(sample_de_results_df):
    filtered = DEAnalysisEngine.filter_results(sample_de_results_df, 0.05, 1.0)
    assert len(filtered) >= 11
    assert (filtered["padj"] < 0.05).all()
    assert (filtered["log2FoldChange"].abs() > 1.0).all()


def test_summarize(sample_de_results_df):
    summary = DEAnalysisEngine.summarize(sample_de_results_df)
    assert summary.columns.tolist() == ["Down", "NotSig", "Up"]
    row = summary.loc["groupA - groupB"]
    assert row.sum() == 100
    assert row["Up"] >= 11
