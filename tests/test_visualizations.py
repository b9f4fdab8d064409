"""Tests for result visualizations."""
import pytest
import pandas as pd
import numpy as np

from de_analysis import DEAnalysisEngine
from dimensionality import reduce_dimensions
from normalization import scale_abundance
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


def test_volcano_plot(sample_de_results_df):
    fig = create_volcano_plot(sample_de_results_df, top_n_labels=5)
    names = {trace.name for trace in fig.data}
    assert "Up" in names
    text_traces = [trace for trace in fig.data if trace.mode == "text"]
    assert len(text_traces) == 1
    assert len(text_traces[0].text) == 5
    assert fig.layout.title.text == "Volcano Plot: groupA - groupB"


def test_volcano_plot_no_labels(sample_de_results_df):
    fig = create_volcano_plot(sample_de_results_df, top_n_labels=0)
    assert not [trace for trace in fig.data if trace.mode == "text"]


def test_volcano_plot_rejects_several_contrasts(sample_de_results_df):
    other = sample_de_results_df.assign(contrast="groupB - groupC")
    with pytest.raises(ValueError, match="contrasts"):
        create_volcano_plot(pd.concat([sample_de_results_df, other]))


def test_volcano_plot_missing_columns(sample_de_results_df):
    with pytest.raises(ValueError, match="padj"):
        create_volcano_plot(sample_de_results_df.drop(columns="padj"))


def test_volcano_plot_all_nan(sample_de_results_df):
    df = sample_de_results_df.assign(pvalue=np.nan)
    with pytest.raises(ValueError, match="NaN"):
        create_volcano_plot(df)


def test_ma_plot(sample_de_results_df):
    fig = create_ma_plot(sample_de_results_df)
    assert fig.layout.xaxis.title.text == "Average log₂-CPM"
    assert sum(len(trace.x) for trace in fig.data) == 100


def test_reduction_plot_mds(toy_long):
    reduced = reduce_dimensions(scale_abundance(toy_long), method="MDS", dims=2, top=3)
    fig = create_reduction_plot(reduced, ("Dim1", "Dim2"), color_by="group")
    assert fig.layout.title.text == "MDS Plot"
    assert "%" in fig.layout.xaxis.title.text
    assert sum(len(trace.x) for trace in fig.data) == 4


def test_reduction_plot_pca_symbols(demo_long):
    reduced = reduce_dimensions(demo_long, method="PCA", dims=2, top=100)
    fig = create_reduction_plot(reduced, ("PC1", "PC2"), color_by="CellType", symbol_by="Status")
    assert fig.layout.title.text == "PCA Plot"
    assert sum(len(trace.x) for trace in fig.data) == 12


def test_reduction_plot_missing_component(toy_long):
    reduced = reduce_dimensions(scale_abundance(toy_long), method="MDS", dims=2, top=3)
    with pytest.raises(ValueError, match="Dim3"):
        create_reduction_plot(reduced, ("Dim1", "Dim3"))


def test_stripchart(toy_long):
    fig = create_stripchart(scale_abundance(toy_long), ["G2", "G3"])
    assert {a.text for a in fig.layout.annotations} == {"G2", "G3"}


def test_stripchart_unknown_genes(toy_long):
    with pytest.raises(ValueError, match="none of the genes"):
        create_stripchart(scale_abundance(toy_long), ["G9"])


def test_clustered_heatmap(demo_long):
    fig = create_clustered_heatmap(demo_long, top_n_genes=50)
    z = np.array(fig.data[0].z)
    assert z.shape == (50, 12)
    np.testing.assert_allclose(z.mean(axis=1), 0.0, atol=1e-9)
    groups = [label.split("(")[-1].rstrip(")") for label in fig.data[0].x]
    assert groups == sorted(groups)


def test_clustered_heatmap_selected_genes(demo_long):
    fig = create_clustered_heatmap(demo_long, genes=["12991", "22373", "16770"])
    assert len(fig.data[0].y) == 3


def test_gene_set_barplot():
    camera = pd.DataFrame(
        {
            "NGenes": [6, 20, 20],
            "Correlation": [0.01] * 3,
            "Direction": ["Up", "Down", "Up"],
            "PValue": [1e-8, 0.2, 0.6],
            "FDR": [3e-8, 0.3, 0.6],
        },
        index=pd.Index(["MILK", "RANDOM_1", "RANDOM_2"], name="gene_set"),
    )
    fig = create_gene_set_barplot(camera, top_n=2)
    labels = [y for trace in fig.data for y in trace.y]
    assert sorted(labels) == ["MILK *", "RANDOM_1"]


def test_voom_trend_plot(toy_long):
    result = DEAnalysisEngine().test_differential_abundance(toy_long, "~0 + group", ["groupA - groupB"])
    fig = create_voom_trend_plot(result.voom)
    assert "unit weights" in fig.layout.title.text
    assert len(fig.data[0].x) == 3


def test_top_genes(sample_de_results_df):
    genes = top_genes(sample_de_results_df, n=3)
    expected = sample_de_results_df.sort_values(["pvalue", "gene_id"])["gene_id"].head(3).tolist()
    assert genes == expected
