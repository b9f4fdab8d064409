"""Pre-analysis QC visualizations for RNA-seq data."""

from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px

from tidy_counts import COUNT, SAMPLE, to_matrix


@dataclass
class PlotConfig:
    """Explicit styling shared by all workflow figures."""

    template: str = "plotly_white"
    palette: List[str] = field(default_factory=lambda: list(px.colors.qualitative.Set2))
    width: Optional[int] = None
    height: Optional[int] = None
    font_size: int = 12
    up_color: str = "red"
    down_color: str = "blue"
    ns_color: str = "lightgray"

    def apply(self, fig: go.Figure, **layout) -> go.Figure:
        settings = dict(layout)
        settings["template"] = self.template
        settings["font"] = dict(size=self.font_size)
        if self.width:
            settings["width"] = self.width
        if self.height:
            settings["height"] = self.height
        fig.update_layout(**settings)
        return fig


def _require_columns(long: pd.DataFrame, columns, plot: str) -> None:
    if long is None or long.empty:
        raise ValueError(
            f"Cannot create {plot}: input table is empty or None. "
            f"Ensure your count table contains samples and genes."
        )
    missing = [c for c in columns if c and c not in long.columns]
    if missing:
        available = ", ".join(long.columns.tolist()[:8])
        raise ValueError(
            f"Cannot create {plot}: missing columns {missing}. Found columns: {available}."
        )


def _sample_labels(long: pd.DataFrame, color_by: Optional[str]) -> pd.Series:
    samples = long.drop_duplicates(SAMPLE).set_index(SAMPLE)
    if color_by is None:
        return pd.Series("all", index=samples.index)
    return samples[color_by].astype(str)


def create_library_size_barplot(
    long: pd.DataFrame, color_by: Optional[str] = None, config: Optional[PlotConfig] = None
) -> go.Figure:
    """
    Bar plot of total counts (library size) per sample, sorted descending.

    Args:
        long: Long count table
        color_by: Optional sample covariate used for bar colours
        config: Plot styling

    Returns:
        Plotly Figure object
    """
    _require_columns(long, [SAMPLE, COUNT, color_by], "library size plot")
    config = config or PlotConfig()
    lib_sizes = long.groupby(SAMPLE, sort=False)[COUNT].sum().sort_values(ascending=False)
    mean_size = lib_sizes.mean()
    labels = _sample_labels(long, color_by).reindex(lib_sizes.index)

    df = pd.DataFrame({"sample": lib_sizes.index, "lib_size": lib_sizes.values, "label": labels.values})
    fig = px.bar(
        df,
        x="sample",
        y="lib_size",
        color="label" if color_by else None,
        color_discrete_sequence=config.palette,
        labels={"sample": "Sample", "lib_size": "Total Counts", "label": color_by or ""},
    )
    fig.add_hline(
        y=mean_size,
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean: {mean_size:,.0f}",
        annotation_position="top right",
    )
    return config.apply(fig, title="Library Size per Sample", showlegend=bool(color_by))


def create_count_distribution_boxplot(
    long: pd.DataFrame,
    value: str = COUNT,
    log_transform: bool = True,
    color_by: Optional[str] = None,
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Box plot of expression distribution per sample.

    Comparing ``value="count"`` with ``value="count_scaled"`` shows the
    effect of scaling normalization.

    Args:
        long: Long count table
        value: Value column to plot
        log_transform: Apply log2(x+1) transformation (default: True)
        color_by: Optional sample covariate used for box colours

    Returns:
        Plotly Figure object
    """
    _require_columns(long, [SAMPLE, value, color_by], "count distribution plot")
    config = config or PlotConfig()
    data = long[[SAMPLE, value]].copy()
    if log_transform:
        data[value] = np.log2(data[value].astype(float) + 1)
    labels = _sample_labels(long, color_by)
    levels = sorted(labels.unique())

    fig = go.Figure()
    for sample, values in data.groupby(SAMPLE, sort=False)[value]:
        color = config.palette[levels.index(labels[sample]) % len(config.palette)]
        fig.add_trace(
            go.Box(
                y=values.values,
                name=str(sample),
                marker_color=color,
                showlegend=False,
            )
        )

    ylabel = f"log₂({value} + 1)" if log_transform else value
    return config.apply(
        fig,
        title="Expression Distribution per Sample",
        xaxis_title="Sample",
        yaxis_title=ylabel,
    )


def create_gene_detection_plot(
    long: pd.DataFrame, threshold: int = 0, config: Optional[PlotConfig] = None
) -> go.Figure:
    """
    Bar plot of number of detected genes per sample.

    Args:
        long: Long count table
        threshold: Minimum count to consider a gene detected (default: 0)

    Returns:
        Plotly Figure object
    """
    _require_columns(long, [SAMPLE, COUNT], "gene detection plot")
    config = config or PlotConfig()
    detected = (
        (long[COUNT] > threshold).groupby(long[SAMPLE], sort=False).sum().sort_values(ascending=False)
    )

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=detected.index.tolist(),
            y=detected.values,
            marker_color="darkorange",
            name="Detected Genes",
        )
    )
    return config.apply(
        fig,
        title=f"Genes Detected per Sample (count > {threshold})",
        xaxis_title="Sample",
        yaxis_title="Number of Genes",
        showlegend=False,
    )


def create_sample_similarity_heatmap(
    long: pd.DataFrame,
    value: str = COUNT,
    method: str = "spearman",
    config: Optional[PlotConfig] = None,
) -> go.Figure:
    """
    Pairwise sample correlation heatmap.

    Args:
        long: Long count table
        value: Value column to correlate
        method: Correlation method ('spearman' or 'pearson')

    Returns:
        Plotly Figure object
    """
    _require_columns(long, [SAMPLE, value], "sample similarity heatmap")
    config = config or PlotConfig()
    corr_matrix = to_matrix(long, value).astype(float).corr(method=method)

    text_vals = [[f"{v:.3f}" for v in row] for row in corr_matrix.values]

    fig = go.Figure(
        data=go.Heatmap(
            z=corr_matrix.values,
            x=corr_matrix.columns.tolist(),
            y=corr_matrix.index.tolist(),
            colorscale="RdBu_r",
            zmid=0,
            text=text_vals,
            texttemplate="%{text}",
            hovertemplate="Sample X: %{x}<br>Sample Y: %{y}<br>Correlation: %{z:.3f}<extra></extra>",
        )
    )
    return config.apply(fig, title=f"Sample Similarity ({method.capitalize()} Correlation)")
