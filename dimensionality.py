"""
Dimensionality reduction of samples.

- MDS: limma-style multidimensional scaling on leading log-fold-change
  distances between every pair of samples
- PCA: principal components of the most variable genes (scikit-learn)
- tSNE: t-distributed stochastic neighbour embedding (scikit-learn)

All methods are deterministic, independent of gene row order, and report
components with a fixed sign (the sample with the largest absolute
coordinate on each component is positive).
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE
from sklearn.preprocessing import StandardScaler

from tidy_counts import ABUNDANT, COUNT_SCALED, GENE, SAMPLE, to_matrix
from workflow_errors import FormatError, ThresholdConfigError

logger = logging.getLogger(__name__)

REDUCTION_METHODS = {"MDS": "Dim", "PCA": "PC", "tSNE": "tSNE"}


def _fix_signs(coords: np.ndarray) -> np.ndarray:
    """Flip each column so its largest-magnitude entry is positive."""
    coords = coords.copy()
    for k in range(coords.shape[1]):
        idx = int(np.argmax(np.abs(coords[:, k])))
        if coords[idx, k] < 0:
            coords[:, k] = -coords[:, k]
    return coords


def _top_variable(matrix: pd.DataFrame, top: int) -> pd.DataFrame:
    """Rows with the highest variance, ties broken by gene id."""
    order = pd.DataFrame({"var": matrix.var(axis=1).to_numpy(), GENE: matrix.index})
    order = order.sort_values(["var", GENE], ascending=[False, True])
    return matrix.loc[order[GENE].head(top).tolist()]


def leading_fc_distances(log_matrix: pd.DataFrame, top: int = 500) -> pd.DataFrame:
    """
    Pairwise leading log-fold-change distances.

    For each pair of samples the distance is the root-mean-square of the
    ``top`` largest absolute log-fold-changes between them.
    """
    values = log_matrix.to_numpy(dtype=float)
    n_genes, n_samples = values.shape
    top = min(top, n_genes)
    dist = np.zeros((n_samples, n_samples))
    for i in range(n_samples):
        for j in range(i + 1, n_samples):
            sq = np.sort((values[:, i] - values[:, j]) ** 2)[::-1][:top]
            dist[i, j] = dist[j, i] = np.sqrt(sq.mean())
    return pd.DataFrame(dist, index=log_matrix.columns, columns=log_matrix.columns)


def classical_scaling(dist: np.ndarray, dims: int = 2):
    """
    Classical (Torgerson) scaling of a distance matrix.

    Returns:
        (coordinates samples × dims, eigenvalues of the retained dimensions)
    """
    n = dist.shape[0]
    centering = np.eye(n) - np.ones((n, n)) / n
    b = -0.5 * centering @ (dist**2) @ centering
    eigval, eigvec = np.linalg.eigh(b)
    order = np.argsort(eigval)[::-1][:dims]
    eigval = eigval[order]
    eigvec = eigvec[:, order]
    coords = eigvec * np.sqrt(np.clip(eigval, 0, None))
    return _fix_signs(coords), eigval


def mds_coordinates(matrix: pd.DataFrame, dims: int = 2, top: int = 500) -> pd.DataFrame:
    """MDS coordinates (samples × Dim1..DimK) from a gene × sample abundance matrix."""
    log_matrix = np.log2(matrix.astype(float) + 1)
    dist = leading_fc_distances(log_matrix, top=top)
    coords, eigval = classical_scaling(dist.to_numpy(), dims=dims)
    result = pd.DataFrame(
        coords, index=matrix.columns, columns=[f"Dim{k + 1}" for k in range(dims)]
    )
    total = np.clip(eigval, 0, None).sum()
    result.attrs["explained_variance"] = (
        (np.clip(eigval, 0, None) / total).tolist() if total > 0 else [0.0] * dims
    )
    return result


def pca_coordinates(
    matrix: pd.DataFrame, dims: int = 2, top: int = 500, scale: bool = False
) -> pd.DataFrame:
    """
    PCA scores (samples × PC1..PCK) of the ``top`` most variable genes.

    Explained variance ratios are stored in ``attrs["explained_variance"]``.
    """
    log_matrix = np.log2(matrix.astype(float) + 1)
    selected = _top_variable(log_matrix, top)
    # Sort rows by id so column order of the sample × gene input is fixed
    selected = selected.sort_index()
    x = selected.T.to_numpy()
    if scale:
        x = StandardScaler().fit_transform(x)

    pca = PCA(n_components=dims, svd_solver="full")
    scores = _fix_signs(pca.fit_transform(x))
    result = pd.DataFrame(
        scores, index=matrix.columns, columns=[f"PC{k + 1}" for k in range(dims)]
    )
    result.attrs["explained_variance"] = pca.explained_variance_ratio_.tolist()
    return result


def tsne_coordinates(
    matrix: pd.DataFrame,
    dims: int = 2,
    top: int = 500,
    perplexity: float = 30.0,
    random_state: int = 0,
) -> pd.DataFrame:
    """tSNE embedding (samples × tSNE1..tSNEK) of the most variable genes."""
    log_matrix = np.log2(matrix.astype(float) + 1)
    selected = _top_variable(log_matrix, top).sort_index()
    n_samples = selected.shape[1]
    perplexity = min(perplexity, max((n_samples - 1) / 3, 1.0))
    tsne = TSNE(
        n_components=dims, perplexity=perplexity, init="pca", random_state=random_state
    )
    coords = _fix_signs(tsne.fit_transform(selected.T.to_numpy()))
    return pd.DataFrame(
        coords, index=matrix.columns, columns=[f"tSNE{k + 1}" for k in range(dims)]
    )


def reduce_dimensions(
    long: pd.DataFrame,
    method: str = "MDS",
    dims: int = 2,
    top: int = 500,
    abundance: str = COUNT_SCALED,
    scale: bool = False,
    only_abundant: bool = True,
    random_state: int = 0,
) -> pd.DataFrame:
    """
    Reduce samples to ``dims`` coordinates and join them onto the long table.

    Args:
        long: Long count table (normally after scale_abundance)
        method: "MDS", "PCA" or "tSNE"
        dims: Number of dimensions to keep
        top: Number of genes used (leading fold changes for MDS, most
            variable genes for PCA/tSNE)
        abundance: Value column to reduce
        scale: Standardize genes before PCA
        only_abundant: Restrict to genes flagged abundant when the flag exists

    Returns:
        Long table with Dim1..K / PC1..K / tSNE1..K columns added per sample;
        ``attrs["explained_variance"]`` holds the variance fractions for MDS
        and PCA.
    """
    if method not in REDUCTION_METHODS:
        raise ThresholdConfigError(
            f"Unknown reduction method '{method}'. Use one of {list(REDUCTION_METHODS)}.",
            details={"method": method},
        )
    if top <= 0:
        raise ThresholdConfigError(f"top must be positive, got {top}", details={"top": top})
    if abundance not in long.columns:
        raise FormatError(
            f"Column '{abundance}' not found. Suggestion: run scale_abundance() first "
            f"or pass abundance='count'.",
            details={"column": abundance},
        )

    data = long
    if only_abundant and ABUNDANT in long.columns:
        data = long[long[ABUNDANT]]
    matrix = to_matrix(data, abundance)

    n_samples = matrix.shape[1]
    if dims < 1 or dims >= n_samples:
        raise ThresholdConfigError(
            f"dims must be between 1 and {n_samples - 1} for {n_samples} samples, got {dims}",
            details={"dims": dims, "samples": n_samples},
        )

    if method == "MDS":
        coords = mds_coordinates(matrix, dims=dims, top=top)
    elif method == "PCA":
        coords = pca_coordinates(matrix, dims=dims, top=top, scale=scale)
    else:
        coords = tsne_coordinates(matrix, dims=dims, top=top, random_state=random_state)
    logger.info(f"{method} on {matrix.shape[0]} genes x {n_samples} samples")

    coord_cols = list(coords.columns)
    result = long.drop(columns=[c for c in coord_cols if c in long.columns])
    coords_table = coords.rename_axis(SAMPLE).reset_index()
    result = result.merge(coords_table, on=SAMPLE, how="left")
    if "explained_variance" in coords.attrs:
        result.attrs["explained_variance"] = coords.attrs["explained_variance"]
    return result
