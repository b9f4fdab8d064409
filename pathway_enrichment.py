"""
Pathway Enrichment Analysis Module

Competitive gene-set testing with CAMERA: is a set of genes more
differentially expressed than the rest, after accounting for correlation
between genes in the set?

Classes:
    CameraTester: CAMERA test of many gene sets for one contrast
    PathwayEnrichment: Runs a gene-set tester over every contrast of a
        tidy count table
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Mapping, Optional, Protocol, Sequence, Union

import numpy as np
import pandas as pd
from scipy import special, stats
from scipy.stats import rankdata

from de_analysis import Contrasts, model_inputs
from gene_sets import GeneSetCollection, map_symbols_to_ids
from linear_models import (
    build_design_matrix,
    check_estimable,
    make_contrasts,
    squeeze_var,
    adjust_bh,
    voom,
)
from normalization import calc_norm_factors
from tidy_counts import GENE, SYMBOL
from workflow_errors import ConfigError, ThresholdConfigError

logger = logging.getLogger(__name__)

CAMERA_COLUMNS = ["NGenes", "Correlation", "Direction", "PValue", "FDR"]


class GeneSetTester(Protocol):
    """Capability interface for competitive gene-set tests."""

    def test(
        self,
        expression: pd.DataFrame,
        design: pd.DataFrame,
        contrast: pd.Series,
        gene_sets: Mapping[str, frozenset],
        weights: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        ...


def zscore_t(t: np.ndarray, df: float) -> np.ndarray:
    """Convert t-statistics to z-scores with the same tail probability."""
    t = np.asarray(t, dtype=float)
    log_sf = stats.t.logsf(np.abs(t), df)
    return np.sign(t) * -special.ndtri_exp(log_sf)


def rank_sum_test_with_correlation(
    index: np.ndarray, statistics: np.ndarray, correlation: float = 0.0, df: float = np.inf
):
    """
    Wilcoxon rank-sum test of ``statistics[index]`` against the rest, with a
    variance allowing for correlation between the indexed genes.

    Returns:
        (p_less, p_greater)
    """
    n = len(statistics)
    ranks = rankdata(statistics)
    r1 = ranks[index]
    n1 = len(r1)
    n2 = n - n1
    u = n1 * n2 + n1 * (n1 + 1) / 2 - r1.sum()
    mu = n1 * n2 / 2

    if not np.isfinite(correlation) or correlation == 0 or n1 == 1:
        sigma2 = n1 * n2 * (n + 1) / 12
    else:
        sigma2 = (
            np.arcsin(1) * n1 * n2
            + np.arcsin(0.5) * n1 * n2 * (n2 - 1)
            + np.arcsin(correlation / 2) * n1 * (n1 - 1) * n2 * (n2 - 1)
            + np.arcsin((correlation + 1) / 2) * n1 * (n1 - 1) * n2
        )
        sigma2 = sigma2 / 2 / np.pi

    _, tie_counts = np.unique(ranks, return_counts=True)
    if (tie_counts > 1).any():
        adjustment = np.sum(tie_counts * (tie_counts + 1) * (tie_counts - 1)) / (n * (n + 1) * (n - 1))
        sigma2 = sigma2 * (1 - adjustment)

    z_lower = (u + 0.5 - mu) / np.sqrt(sigma2)
    z_upper = (u - 0.5 - mu) / np.sqrt(sigma2)
    # U counts the complementary set, so the tails swap
    p_less = float(stats.t.sf(z_upper, df))
    p_greater = float(stats.t.cdf(z_lower, df))
    return p_less, p_greater


def _reform_design(design: np.ndarray, contrast: np.ndarray) -> np.ndarray:
    """Rotate the design so the contrast becomes its last coefficient."""
    q, r = np.linalg.qr(contrast.reshape(-1, 1), mode="complete")
    reformed = design @ q
    if r[0, 0] < 0:
        reformed[:, 0] = -reformed[:, 0]
    return np.column_stack([reformed[:, 1:], reformed[:, 0]])


class CameraTester:
    """
    CAMERA competitive gene-set test.

    Args:
        inter_gene_cor: fixed inter-gene correlation; None estimates it per set
            from the residuals. Negative values (fixed or estimated) are
            treated as zero.
        use_ranks: Wilcoxon rank-sum version instead of the parametric test
        n_jobs: evaluate sets on a thread pool of this size
    """

    name = "camera"

    def __init__(
        self,
        inter_gene_cor: Optional[float] = 0.01,
        use_ranks: bool = False,
        n_jobs: Optional[int] = None,
    ):
        if inter_gene_cor is not None and not -1 < inter_gene_cor < 1:
            raise ThresholdConfigError(
                f"inter_gene_cor must be within (-1, 1), got {inter_gene_cor}",
                details={"inter_gene_cor": inter_gene_cor},
            )
        self.inter_gene_cor = inter_gene_cor
        self.use_ranks = use_ranks
        self.n_jobs = n_jobs

    def _gene_statistics(
        self, expression: pd.DataFrame, design: np.ndarray, weights: Optional[np.ndarray]
    ):
        """Per-gene contrast statistic and standardized residual effects."""
        y = expression.to_numpy(dtype=float)
        n_genes, n_samples = y.shape
        p = design.shape[1]

        if weights is None:
            q, r = np.linalg.qr(design, mode="complete")
            effects = y @ q
            unscaled_t = effects[:, p - 1] * np.sign(r[p - 1, p - 1])
        else:
            sw = np.sqrt(weights)
            xw = design[None, :, :] * sw[:, :, None]
            q, r = np.linalg.qr(xw, mode="complete")
            effects = np.einsum("gnm,gn->gm", q, y * sw)
            unscaled_t = effects[:, p - 1] * np.sign(r[:, p - 1, p - 1])

        df_residual = n_samples - p
        residuals = effects[:, p:]
        sigma2 = np.mean(residuals**2, axis=1)
        u = residuals / np.sqrt(np.maximum(sigma2, 1e-8))[:, None]

        if self.use_ranks:
            stat = unscaled_t
        else:
            s2_post, _, df_prior = squeeze_var(sigma2, np.full(n_genes, float(df_residual)))
            mod_t = unscaled_t / np.sqrt(s2_post)
            df_total = min(df_residual + df_prior, n_genes * df_residual)
            stat = zscore_t(mod_t, df_total)
        return stat, u, df_residual

    def test(
        self,
        expression: pd.DataFrame,
        design: pd.DataFrame,
        contrast: pd.Series,
        gene_sets: Mapping[str, frozenset],
        weights: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Test every gene set for one contrast.

        Args:
            expression: genes × samples log-expression
            design: samples × coefficients
            contrast: weights over the design coefficients
            gene_sets: set name → gene ids (members not in ``expression`` are
                ignored)
            weights: genes × samples precision weights

        Returns:
            DataFrame indexed by set name with NGenes, Correlation, Direction,
            PValue and FDR, sorted by PValue then set name
        """
        design = design.loc[expression.columns]
        check_estimable(design)
        c = contrast.reindex(design.columns).fillna(0.0).to_numpy(dtype=float)
        x = _reform_design(design.to_numpy(dtype=float), c)
        w = None
        if weights is not None:
            w = weights.reindex(index=expression.index, columns=expression.columns).to_numpy(dtype=float)

        stat, u, df_residual = self._gene_statistics(expression, x, w)
        n_genes = len(stat)
        mean_stat = stat.mean()
        var_stat = stat.var(ddof=1)
        position = {g: i for i, g in enumerate(expression.index.astype(str))}

        if self.inter_gene_cor is not None:
            df_camera = n_genes - 2
        else:
            df_camera = min(df_residual, n_genes - 2)

        def test_set(item):
            set_name, genes = item
            index = np.array(sorted(position[g] for g in genes if g in position), dtype=int)
            m = len(index)
            m2 = n_genes - m
            if m == 0 or m2 == 0:
                return None

            if self.inter_gene_cor is not None:
                correlation = self.inter_gene_cor
                vif = 1 + (m - 1) * correlation
            elif m > 1:
                vif = m * np.mean(u[index].mean(axis=0) ** 2)
                correlation = (vif - 1) / (m - 1)
            else:
                vif = 1.0
                correlation = np.nan

            # Negative correlation is not allowed to shrink the variance
            if correlation < 0:
                correlation = 0.0
                vif = 1.0

            if self.use_ranks:
                down, up = rank_sum_test_with_correlation(
                    index, stat, 0.0 if np.isnan(correlation) else correlation, df_camera
                )
            else:
                delta = n_genes / m2 * (stat[index].mean() - mean_stat)
                var_pooled = ((n_genes - 1) * var_stat - delta**2 * m * m2 / n_genes) / (n_genes - 2)
                two_sample_t = delta / np.sqrt(var_pooled * (vif / m + 1 / m2))
                down = float(stats.t.cdf(two_sample_t, df_camera))
                up = float(stats.t.sf(two_sample_t, df_camera))

            return {
                "gene_set": set_name,
                "NGenes": m,
                "Correlation": correlation,
                "Direction": "Down" if down < up else "Up",
                "PValue": min(2 * min(down, up), 1.0),
            }

        items = list(gene_sets.items())
        if self.n_jobs and self.n_jobs > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                rows = list(pool.map(test_set, items))
        else:
            rows = [test_set(item) for item in items]

        skipped = [name for (name, _), row in zip(items, rows) if row is None]
        if skipped:
            logger.warning(f"Skipped {len(skipped)} gene sets with no genes inside or outside the set")
        rows = [row for row in rows if row is not None]
        if not rows:
            return pd.DataFrame(columns=CAMERA_COLUMNS).rename_axis("gene_set")

        table = pd.DataFrame(rows)
        table["FDR"] = adjust_bh(table["PValue"].to_numpy())
        table = table.sort_values(["PValue", "gene_set"], kind="mergesort")
        return table.set_index("gene_set")[CAMERA_COLUMNS]


class PathwayEnrichment:
    """
    Gene-set enrichment over the contrasts of a tidy count table.

    Supports:
    - CAMERA with fixed or estimated inter-gene correlation
    - Parametric or rank-based statistics
    - Gene sets keyed by gene id or by symbol
    """

    def __init__(self, testers: Optional[Dict[str, GeneSetTester]] = None):
        self.testers = testers or {}

    def _tester(self, method: str, **options) -> GeneSetTester:
        if method in self.testers:
            return self.testers[method]
        if method == CameraTester.name:
            return CameraTester(**options)
        raise ConfigError(
            f"Unknown enrichment method '{method}'. Use 'camera'.", details={"method": method}
        )

    def test_gene_enrichment(
        self,
        long: pd.DataFrame,
        gene_sets: Union[GeneSetCollection, Mapping[str, Sequence[str]]],
        formula: Union[str, Sequence[str]],
        contrasts: Contrasts,
        method: str = "camera",
        key: str = GENE,
        min_size: int = 2,
        max_size: Optional[int] = None,
        inter_gene_cor: Optional[float] = 0.01,
        use_ranks: bool = False,
        n_jobs: Optional[int] = None,
        span: float = 0.5,
    ) -> Dict[str, pd.DataFrame]:
        """
        Run the gene-set test for every contrast.

        Args:
            long: Long count table (abundant genes and TMM factors are used
                when present)
            gene_sets: collection or mapping of set name → genes
            formula: e.g. "~0 + group"
            contrasts: contrast expressions or weight dicts
            method: "camera"
            key: "gene_id" when sets hold gene ids, "symbol" when they hold
                symbols (mapped through the table's symbol column)
            min_size, max_size: set size range after restriction to tested genes
            span: lowess span of the voom mean-variance trend

        Returns:
            Dict mapping contrast name → result table
        """
        if not isinstance(gene_sets, GeneSetCollection):
            gene_sets = GeneSetCollection(dict(gene_sets))
        if key == SYMBOL:
            if SYMBOL not in long.columns:
                raise ConfigError(
                    "Gene sets keyed by symbol need a 'symbol' column. "
                    "Suggestion: run annotate_symbols() first.",
                    details={"key": key},
                )
            id_to_symbol = long.drop_duplicates(GENE).set_index(GENE)[SYMBOL].to_dict()
            gene_sets = map_symbols_to_ids(gene_sets, id_to_symbol)
        elif key != GENE:
            raise ConfigError(f"Unknown gene-set key '{key}'.", details={"key": key})

        counts, samples, lib_size = model_inputs(long)
        if lib_size is None:
            lib_size = counts.sum(axis=0) * calc_norm_factors(counts)
        design = build_design_matrix(samples.loc[counts.columns], formula)
        check_estimable(design)
        contrast_matrix = make_contrasts(contrasts, design.columns)

        gene_sets = gene_sets.filter_to(counts.index, min_size=min_size, max_size=max_size)
        if not len(gene_sets):
            raise ConfigError(
                f"No gene sets have at least {min_size} genes among the {counts.shape[0]} tested genes.",
                details={"min_size": min_size, "genes": counts.shape[0]},
            )

        v = voom(counts, design, lib_size, span=span)
        tester = self._tester(
            method, inter_gene_cor=inter_gene_cor, use_ranks=use_ranks, n_jobs=n_jobs
        )

        results = {}
        for name in contrast_matrix.columns:
            results[name] = tester.test(
                v.expression, design, contrast_matrix[name], gene_sets.sets, v.weights
            )
            n_sig = int((results[name]["FDR"] < 0.05).sum())
            logger.info(f"{name}: {len(results[name])} sets tested, {n_sig} with FDR < 0.05")
        return results
