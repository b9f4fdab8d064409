"""Tests for CAMERA competitive gene-set testing."""
import pytest
import numpy as np
import pandas as pd

import pathway_enrichment

from gene_annotation import TableSymbolLookup
from linear_models import voom
from pathway_enrichment import (
    CAMERA_COLUMNS,
    CameraTester,
    PathwayEnrichment,
    rank_sum_test_with_correlation,
    zscore_t,
)
from tidy_counts import annotate_symbols
from workflow_errors import ConfigError, ThresholdConfigError


LACTATION = "groupluminal.lactate - groupluminal.virgin"


@pytest.fixture
def enrichment():
    return PathwayEnrichment()


def _camera(enrichment, long, sets, **kwargs):
    results = enrichment.test_gene_enrichment(long, sets, "~0 + group", [LACTATION], **kwargs)
    return results[LACTATION]


def test_milk_proteins_enriched(enrichment, demo_long, demo_sets):
    table = _camera(enrichment, demo_long, demo_sets)
    assert table.columns.tolist() == CAMERA_COLUMNS
    assert table.index[0] == "MILK_PROTEINS"
    assert table.loc["MILK_PROTEINS", "Direction"] == "Up"
    assert table.loc["MILK_PROTEINS", "FDR"] < 0.05
    assert table.loc["MILK_PROTEINS", "NGenes"] == 6
    assert (np.diff(table["PValue"].to_numpy()) >= 0).all()
    assert (table["PValue"] <= 1.0).all()


def test_higher_correlation_weakens_evidence(enrichment, demo_long, demo_sets):
    low = _camera(enrichment, demo_long, demo_sets, inter_gene_cor=0.01)
    high = _camera(enrichment, demo_long, demo_sets, inter_gene_cor=0.3)
    assert high.loc["MILK_PROTEINS", "PValue"] > low.loc["MILK_PROTEINS", "PValue"]
    assert (high["Correlation"] == 0.3).all()


def test_estimated_correlation(enrichment, demo_long, demo_sets):
    table = _camera(enrichment, demo_long, demo_sets, inter_gene_cor=None)
    assert np.isfinite(table["Correlation"]).all()
    assert table.loc["MILK_PROTEINS", "Direction"] == "Up"


def test_rank_version(enrichment, demo_long, demo_sets):
    table = _camera(enrichment, demo_long, demo_sets, use_ranks=True)
    assert table.loc["MILK_PROTEINS", "PValue"] < 0.01
    assert table.loc["MILK_PROTEINS", "Direction"] == "Up"


def test_threaded_matches_serial(enrichment, demo_long, demo_sets):
    serial = _camera(enrichment, demo_long, demo_sets)
    threaded = _camera(enrichment, demo_long, demo_sets, n_jobs=3)
    assert threaded.equals(serial)


def test_symbol_keyed_sets(enrichment, demo_long, demo_dataset):
    _, _, symbols = demo_dataset
    lookup = TableSymbolLookup(symbols, "EntrezGeneID", "Symbols")
    long = annotate_symbols(demo_long, lookup)
    sets = {"MILK": ["CSN2", "Wap", "lalba", "Csn1s1"], "MIXED": ["Krt5", "Esr1", "Gm10042"]}
    table = _camera(enrichment, long, sets, key="symbol")
    assert table.loc["MILK", "NGenes"] == 4
    assert table.index[0] == "MILK"


def test_symbol_key_needs_symbol_column(enrichment, demo_long, demo_sets):
    with pytest.raises(ConfigError, match="annotate_symbols"):
        _camera(enrichment, demo_long, demo_sets, key="symbol")


def test_no_sets_large_enough(enrichment, demo_long, demo_sets):
    with pytest.raises(ConfigError, match="No gene sets"):
        _camera(enrichment, demo_long, demo_sets, min_size=500)


def test_unknown_method(enrichment, demo_long, demo_sets):
    with pytest.raises(ConfigError):
        _camera(enrichment, demo_long, demo_sets, method="roast")


@pytest.mark.parametrize("correlation", [1.0, -1.0, 1.5])
def test_invalid_correlation(correlation):
    with pytest.raises(ThresholdConfigError):
        CameraTester(inter_gene_cor=correlation)


def test_rank_sum_top_ranked_set():
    statistics = np.arange(100, dtype=float)
    p_less, p_greater = rank_sum_test_with_correlation(np.arange(95, 100), statistics, 0.0, 98)
    assert p_greater < 0.01
    assert p_less > 0.99


def test_rank_sum_correlation_inflates_pvalue():
    statistics = np.arange(100, dtype=float)
    index = np.arange(90, 100)
    _, independent = rank_sum_test_with_correlation(index, statistics, 0.0, 98)
    _, correlated = rank_sum_test_with_correlation(index, statistics, 0.2, 98)
    assert correlated > independent


def test_zscore_t():
    z = zscore_t(np.array([-2.0, 0.0, 2.0]), 1e6)
    np.testing.assert_allclose(z, [-2.0, 0.0, 2.0], atol=1e-3)
    heavy = zscore_t(np.array([3.0]), 3)
    assert 0 < heavy[0] < 3.0


@pytest.fixture
def anticorrelated_set():
    """Set genes come in pairs whose residuals are exact negatives."""
    rng = np.random.default_rng(0)
    samples = [f"S{i}" for i in range(1, 9)]
    shift = np.array([1.0] * 4 + [0.0] * 4)
    rows = {f"BG{i:02d}": rng.normal(5, 1, size=8) for i in range(60)}
    for k in range(5):
        noise = rng.normal(0, 1, size=8)
        rows[f"SET{2 * k}"] = 6 + shift + noise
        rows[f"SET{2 * k + 1}"] = 6 + shift - noise
    expression = pd.DataFrame(rows, index=samples).T
    design = pd.DataFrame(
        {"groupA": shift, "groupB": 1 - shift}, index=samples
    )
    contrast = pd.Series({"groupA": 1.0, "groupB": -1.0})
    sets = {
        "PAIRED": frozenset(f"SET{i}" for i in range(10)),
        "BACKGROUND": frozenset(f"BG{i:02d}" for i in range(10)),
    }
    return expression, design, contrast, sets


def test_negative_fixed_correlation_treated_as_zero(anticorrelated_set):
    negative = CameraTester(inter_gene_cor=-0.5).test(*anticorrelated_set)
    zero = CameraTester(inter_gene_cor=0.0).test(*anticorrelated_set)
    assert np.isfinite(negative["PValue"]).all()
    assert (negative["Correlation"] == 0.0).all()
    pd.testing.assert_frame_equal(negative, zero)


def test_negative_estimated_correlation_clamped(anticorrelated_set):
    table = CameraTester(inter_gene_cor=None).test(*anticorrelated_set)
    assert table.loc["PAIRED", "Correlation"] == 0.0
    assert (table["Correlation"] >= 0).all()
    assert np.isfinite(table["PValue"]).all()


def test_negative_correlation_rank_version(anticorrelated_set):
    negative = CameraTester(inter_gene_cor=-0.5, use_ranks=True).test(*anticorrelated_set)
    zero = CameraTester(inter_gene_cor=0.0, use_ranks=True).test(*anticorrelated_set)
    pd.testing.assert_frame_equal(negative, zero)


def test_span_reaches_voom(enrichment, demo_long, demo_sets, monkeypatch):
    spans = []

    def recording_voom(*args, **kwargs):
        spans.append(kwargs.get("span"))
        return voom(*args, **kwargs)

    monkeypatch.setattr(pathway_enrichment, "voom", recording_voom)
    _camera(enrichment, demo_long, demo_sets, span=0.3)
    assert spans == [0.3]
