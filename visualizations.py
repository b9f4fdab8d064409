"""
Interactive visualizations for RNA-seq analysis using Plotly.

Provides volcano and MA plots, MDS/PCA scatter plots, stripcharts of top
genes, clustered heatmaps, gene-set bar charts and the voom mean-variance
trend.
"""

from typing import List, Optional, Sequence, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist

from abundance_filter import keep_variable
from linear_models import VoomResult
from qc_plots import PlotConfig
from tidy_counts import ABUNDANT, COUNT_SCALED, GENE, SAMPLE, SYMBOL, to_matrix


def _classify(
    df: pd.DataFrame, padj_threshold: float, lfc_threshold: float
) -> pd.Series:
    significant = df["padj"] < padj_threshold
    up = significant & (df["log2FoldChange"] > lfc_threshold)
    down = significant & (df["log2FoldChange"] < -lfc_threshold)
    return pd.Series(np.where(up, "Up", np.where(down, "Down", "NS")), index=df.index)


def _gene_labels(df: pd.DataFrame) -> pd.Series:
    """Symbol where known, gene id otherwise."""
    if SYMBOL in df.columns:
        return df[SYMBOL].where(df[SYMBOL].notna(), df[GENE]).astype(str)
    return df[GENE].astype(str)


def _check_results(results_df: pd.DataFrame, required: Sequence[str], plot: str) -> pd.DataFrame:
    if results_df is None or results_df.empty:
        raise ValueError(
            f"Cannot create {plot}: results_df is empty or None. "
            "Ensure your differential expression analysis produced results."
        )
    missing = [col for col in required if col not in results_df.columns]
    if missing:
        available = ", ".join(results_df.columns.tolist()[:5])
        raise ValueError(
            f"Cannot create {plot}: missing required columns {missing}. "
            f"Found columns: {available}."
        )
    if "contrast" in results_df.columns and results_df["contrast"].nunique() > 1:
        raise ValueError(
            f"Cannot create {plot}: results hold {results_df['contrast'].nunique()} contrasts. "
            f"Suggestion: pass DEResult.for_contrast(name)."
        )
    return results_df.copy()


def create_volcano_plot(
    results_df: pd.DataFrame,
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    top_n_labels: int = 10,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Create interactive volcano plot from DE results of one contrast.

    Args:
        results_df: DataFrame with columns: gene_id, log2FoldChange, pvalue, padj
        lfc_threshold: Log2 fold change threshold for significance (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        top_n_labels: Label this many most significant genes

    Returns:
        Plotly Figure object
    """
    df = _check_results(results_df, [GENE, "log2FoldChange", "pvalue", "padj"], "volcano plot")
    config = config or PlotConfig()

    df = df.dropna(subset=["pvalue", "padj"])
    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: all p-values are NaN. "
            "Ensure differential expression analysis completed successfully."
        )

    df["-log10_pvalue"] = -np.log10(df["pvalue"].clip(lower=1e-300))  # Clip to avoid inf
    df["significance"] = _classify(df, padj_threshold, lfc_threshold)
    df["label"] = _gene_labels(df)

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_pvalue",
        color="significance",
        hover_name="label",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_pvalue": False,
            "significance": False,
        },
        color_discrete_map={"Up": config.up_color, "Down": config.down_color, "NS": config.ns_color},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_pvalue": "-log₁₀(p-value)"},
    )

    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[df["significance"] != "NS"].sort_values(["padj", GENE]).head(top_n_labels)
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes["log2FoldChange"],
                    y=top_genes["-log10_pvalue"],
                    mode="text",
                    text=top_genes["label"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    title = "Volcano Plot"
    if "contrast" in df.columns:
        title += f": {df['contrast'].iloc[0]}"
    return config.apply(fig, title=title, showlegend=True)


def create_ma_plot(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Create MA plot (average log-expression vs log2 fold change).

    Args:
        results_df: DataFrame with columns: gene_id, log2FoldChange, padj, AveExpr
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        lfc_threshold: Log2 fold change threshold (default: 1.0)

    Returns:
        Plotly Figure object
    """
    df = _check_results(results_df, [GENE, "log2FoldChange", "padj", "AveExpr"], "MA plot")
    config = config or PlotConfig()
    df = df.dropna(subset=["padj", "log2FoldChange", "AveExpr"])
    if df.empty:
        raise ValueError("Cannot create MA plot: no valid data after removing NaN values.")

    df["significance"] = _classify(df, padj_threshold, lfc_threshold)
    df["label"] = _gene_labels(df)

    fig = px.scatter(
        df,
        x="AveExpr",
        y="log2FoldChange",
        color="significance",
        hover_name="label",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "AveExpr": ":.2f",
            "significance": False,
        },
        color_discrete_map={"Up": config.up_color, "Down": config.down_color, "NS": config.ns_color},
        labels={"AveExpr": "Average log₂-CPM", "log2FoldChange": "log₂(Fold Change)"},
    )

    fig.add_hline(y=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_hline(y=-lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_hline(y=0, line_color="black", line_width=0.5)

    return config.apply(fig, title="MA Plot", showlegend=True)


def create_reduction_plot(
    reduced: pd.DataFrame,
    components: Tuple[str, str] = ("Dim1", "Dim2"),
    color_by: Optional[str] = "group",
    symbol_by: Optional[str] = None,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Scatter plot of samples in MDS / PCA / tSNE space.

    Args:
        reduced: Long table returned by reduce_dimensions (one coordinate set
            per sample)
        components: Two coordinate columns to plot
        color_by: Sample covariate for point colour
        symbol_by: Sample covariate for point shape

    Returns:
        Plotly Figure object
    """
    if reduced is None or reduced.empty:
        raise ValueError(
            "Cannot create reduction plot: input is empty or None. "
            "Suggestion: run reduce_dimensions() first."
        )
    needed = [c for c in (*components, color_by, symbol_by) if c]
    missing = [c for c in needed if c not in reduced.columns]
    if missing:
        raise ValueError(
            f"Cannot create reduction plot: missing columns {missing}. "
            f"Suggestion: run reduce_dimensions() with enough dims."
        )

    samples = reduced.drop_duplicates(SAMPLE)[[SAMPLE] + needed].copy()
    for col in (color_by, symbol_by):
        if col:
            samples[col] = samples[col].astype(str)
    config = config or PlotConfig()

    x, y = components
    labels = {}
    variance = reduced.attrs.get("explained_variance")
    if variance:
        for comp in (x, y):
            k = int("".join(ch for ch in comp if ch.isdigit())) - 1
            if 0 <= k < len(variance):
                labels[comp] = f"{comp} ({variance[k] * 100:.1f}%)"

    fig = px.scatter(
        samples,
        x=x,
        y=y,
        color=color_by,
        symbol=symbol_by,
        hover_name=SAMPLE,
        color_discrete_sequence=config.palette,
        labels=labels,
    )
    fig.update_traces(marker=dict(size=11))
    title = {"Dim": "MDS Plot", "PC": "PCA Plot", "tSNE": "tSNE Plot"}.get(x.rstrip("0123456789"), "Samples")
    return config.apply(fig, title=title, showlegend=True)


def create_stripchart(
    long: pd.DataFrame,
    genes: Sequence[str],
    group_by: str = "group",
    value: str = COUNT_SCALED,
    log_transform: bool = True,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Stripchart of selected genes, one panel per gene, points grouped by a
    sample covariate.

    Args:
        long: Long count table
        genes: Gene ids to show (e.g. top genes of a contrast)
        group_by: Sample covariate on the x axis
        value: Value column (default: count_scaled)

    Returns:
        Plotly Figure object
    """
    if not len(genes):
        raise ValueError("Cannot create stripchart: no genes selected.")
    missing = [c for c in (group_by, value) if c not in long.columns]
    if missing:
        raise ValueError(f"Cannot create stripchart: missing columns {missing}.")

    genes = [str(g) for g in genes]
    df = long[long[GENE].isin(genes)].copy()
    if df.empty:
        raise ValueError(
            f"Cannot create stripchart: none of the genes {genes[:5]} are in the table."
        )
    config = config or PlotConfig()
    df["label"] = _gene_labels(df)
    df[group_by] = df[group_by].astype(str)
    y = value
    if log_transform:
        y = f"log2({value} + 1)"
        df[y] = np.log2(df[value].astype(float) + 1)

    order = [lbl for g in genes for lbl in df.loc[df[GENE] == g, "label"].unique()[:1]]
    fig = px.strip(
        df,
        x=group_by,
        y=y,
        color=group_by,
        facet_col="label",
        facet_col_wrap=min(len(order), 3),
        category_orders={"label": order, group_by: sorted(df[group_by].unique())},
        hover_name=SAMPLE,
        color_discrete_sequence=config.palette,
    )
    fig.for_each_annotation(lambda a: a.update(text=a.text.split("=")[-1]))
    return config.apply(fig, title="Top genes by group", showlegend=False)


def create_clustered_heatmap(
    long: pd.DataFrame,
    annotate_by: str = "group",
    top_n_genes: int = 500,
    value: str = COUNT_SCALED,
    z_score: bool = True,
    genes: Optional[Sequence[str]] = None,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Create heatmap of the most variable genes with row (gene) clustering.

    Args:
        long: Long count table (abundant genes are used when flagged)
        annotate_by: Sample covariate used to order columns
        top_n_genes: Number of most variable genes (default: 500)
        value: Value column (log2(x+1) transformed)
        z_score: Apply z-score normalization per gene (default: True)
        genes: Explicit gene ids instead of the most variable genes

    Returns:
        Plotly Figure object

    Note: We only cluster ROWS (genes), not columns (samples).
    Samples are grouped by annotation for clearer visualization.
    """
    if long is None or long.empty:
        raise ValueError(
            "Cannot create heatmap: input is empty or None. "
            "Ensure your expression data contains samples and genes."
        )
    if annotate_by not in long.columns:
        raise ValueError(f"Cannot create heatmap: column '{annotate_by}' not found.")

    data = long[long[ABUNDANT]] if ABUNDANT in long.columns else long
    if genes is not None:
        data = data[data[GENE].isin([str(g) for g in genes])]
    else:
        data = keep_variable(data, top=top_n_genes, abundance=value)
    if data.empty:
        raise ValueError("Cannot create heatmap: no genes left to display.")

    plot_data = np.log2(to_matrix(data, value).astype(float) + 1)
    if z_score:
        sd = plot_data.std(axis=1).replace(0, np.nan)
        plot_data = plot_data.sub(plot_data.mean(axis=1), axis=0).div(sd, axis=0).fillna(0.0)

    annotation = long.drop_duplicates(SAMPLE).set_index(SAMPLE)[annotate_by].astype(str)
    sample_order = sorted(plot_data.columns, key=lambda s: (annotation.get(s, ""), s))
    plot_data = plot_data[sample_order]

    if len(plot_data) > 1:
        linkage_matrix = linkage(
            pdist(plot_data.values, metric="euclidean"), method="average"
        )
        gene_order = leaves_list(linkage_matrix)
        plot_data = plot_data.iloc[gene_order]

    labels = _gene_labels(data.drop_duplicates(GENE)).set_axis(data.drop_duplicates(GENE)[GENE])
    config = config or PlotConfig()
    fig = go.Figure(
        data=go.Heatmap(
            z=plot_data.values,
            x=[f"{s} ({annotation.get(s, '')})" for s in plot_data.columns],
            y=[labels.get(g, g) for g in plot_data.index],
            colorscale="RdBu_r",
            zmid=0,
            hovertemplate="Gene: %{y}<br>Sample: %{x}<br>Value: %{z:.2f}<extra></extra>",
        )
    )

    return config.apply(
        fig,
        title=f"Clustered Heatmap (Top {len(plot_data)} Genes)",
        xaxis_title="Samples",
        yaxis_title="Genes",
        height=max(400, min(len(plot_data), 200) * 10),
    )


def create_gene_set_barplot(
    camera_df: pd.DataFrame,
    top_n: int = 20,
    fdr_threshold: float = 0.05,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Horizontal bar chart of the most significant gene sets.

    Bars show -log10(PValue), coloured by direction; sets passing the FDR
    threshold are marked with an asterisk.

    Args:
        camera_df: CAMERA result table indexed by gene set
        top_n: Number of sets to show

    Returns:
        Plotly Figure object
    """
    if camera_df is None or camera_df.empty:
        raise ValueError("Cannot create gene-set plot: result table is empty or None.")
    config = config or PlotConfig()
    df = camera_df.head(top_n).rename_axis(None).copy()
    df["gene_set"] = [
        f"{name} *" if fdr < fdr_threshold else str(name) for name, fdr in zip(df.index, df["FDR"])
    ]
    df["-log10_pvalue"] = -np.log10(df["PValue"].clip(lower=1e-300))
    df = df.iloc[::-1]

    fig = px.bar(
        df,
        x="-log10_pvalue",
        y="gene_set",
        color="Direction",
        orientation="h",
        hover_data={"NGenes": True, "FDR": ":.2e", "gene_set": False},
        color_discrete_map={"Up": config.up_color, "Down": config.down_color},
        labels={"-log10_pvalue": "-log₁₀(p-value)", "gene_set": ""},
    )
    return config.apply(
        fig,
        title=f"Top {len(df)} Gene Sets",
        height=max(400, len(df) * 25),
    )


def create_voom_trend_plot(
    voom_result: VoomResult, config: Optional[PlotConfig] = None
) -> go.Figure:
    """Mean-variance trend: sqrt(standard deviation) against mean log2 count."""
    if voom_result is None or len(voom_result.trend_x) == 0:
        raise ValueError("Cannot create voom trend plot: no trend data.")
    config = config or PlotConfig()
    order = np.argsort(voom_result.trend_x)
    fig = go.Figure(
        go.Scattergl(
            x=voom_result.trend_x[order],
            y=voom_result.trend_y[order],
            mode="markers",
            marker=dict(size=3, color="black", opacity=0.4),
            name="genes",
        )
    )
    title = "voom: Mean-variance trend"
    if not voom_result.trend_fitted:
        title += " (too few genes, unit weights)"
    return config.apply(
        fig,
        title=title,
        xaxis_title="log₂(count size + 0.5)",
        yaxis_title="Sqrt(standard deviation)",
        showlegend=False,
    )


def top_genes(results_df: pd.DataFrame, n: int = 6) -> List[str]:
    """Gene ids of the n smallest p-values (ties broken by gene id)."""
    df = results_df.dropna(subset=["pvalue"]).sort_values(["pvalue", GENE])
    return df[GENE].head(n).tolist()
