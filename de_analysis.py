"""
Differential expression analysis.

Implements "fit once, contrast many": one linear model per gene is fitted on
the abundant genes, then every requested contrast is tested from that fit.
The default tester is limma-voom; a PyDESeq2 tester is available for simple
two-group comparisons.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union
import logging
import pandas as pd
import numpy as np
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from linear_models import (
    ContrastSpec,
    LinearFit,
    VoomResult,
    build_design_matrix,
    check_estimable,
    contrasts_fit,
    e_bayes,
    lm_fit,
    make_contrasts,
    parse_formula,
    top_table,
    treat,
    voom,
)
from normalization import calc_norm_factors
from tidy_counts import ABUNDANT, COUNT, GENE, SAMPLE, SYMBOL, TMM, sample_table, to_matrix
from workflow_errors import ConfigError, ThresholdConfigError

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "gene_id",
    "symbol",
    "contrast",
    "log2FoldChange",
    "AveExpr",
    "stat",
    "pvalue",
    "padj",
]

WEIGHTING_METHODS = ("voom", "none")

Contrasts = Union[Sequence[ContrastSpec], Mapping[str, ContrastSpec]]


@dataclass
class DEResult:
    """Result from differential expression analysis."""

    results_df: pd.DataFrame  # one row per gene per contrast, RESULT_COLUMNS
    design: pd.DataFrame  # samples × coefficients
    contrasts: pd.DataFrame  # coefficients × contrasts
    method: str
    lfc_threshold: Optional[float] = None
    fit: Optional[LinearFit] = None  # limma fit - None for DESeq2
    voom: Optional[VoomResult] = None  # None unless voom weighting was used
    dds: Optional[DeseqDataSet] = None  # DESeq2 fit - None for limma
    warnings: List[str] = field(default_factory=list)

    @property
    def contrast_names(self) -> List[str]:
        return list(self.contrasts.columns)

    def for_contrast(self, name: str) -> pd.DataFrame:
        """Rows of one contrast."""
        if name not in self.contrast_names:
            raise ConfigError(
                f"Unknown contrast '{name}'. Available: {self.contrast_names}",
                details={"contrast": name},
            )
        return self.results_df[self.results_df["contrast"] == name].reset_index(drop=True)

    def n_significant(self, padj_threshold: float = 0.05) -> Dict[str, int]:
        """Count of genes with padj below the threshold, per contrast."""
        sig = self.results_df["padj"] < padj_threshold
        counts = sig.groupby(self.results_df["contrast"], sort=False).sum()
        return {name: int(counts.get(name, 0)) for name in self.contrast_names}


class FoldChangeTester(Protocol):
    """Capability interface for differential testers."""

    def test(
        self,
        counts: pd.DataFrame,
        samples: pd.DataFrame,
        formula: Union[str, Sequence[str]],
        contrasts: Contrasts,
        lfc_threshold: Optional[float] = None,
        lib_size: Optional[pd.Series] = None,
    ) -> DEResult:
        ...


def _validate_lfc_threshold(lfc_threshold: Optional[float]) -> None:
    if lfc_threshold is not None and lfc_threshold < 0:
        raise ThresholdConfigError(
            f"lfc_threshold must be >= 0, got {lfc_threshold}",
            details={"lfc_threshold": lfc_threshold},
        )


def model_inputs(long: pd.DataFrame):
    """
    Count matrix of abundant genes, per-sample table and effective library sizes.

    Effective library sizes are column sums times the TMM factor when the
    table has been scaled, otherwise None.
    """
    data = long[long[ABUNDANT]] if ABUNDANT in long.columns else long
    counts = to_matrix(data, COUNT)
    samples = sample_table(long).set_index(SAMPLE)

    lib_size = None
    if TMM in long.columns:
        tmm = long.drop_duplicates(SAMPLE).set_index(SAMPLE)[TMM]
        lib_size = counts.sum(axis=0) * tmm.reindex(counts.columns)
    return counts, samples, lib_size


def _sort_results(df: pd.DataFrame, contrast_order: Sequence[str]) -> pd.DataFrame:
    order = {name: i for i, name in enumerate(contrast_order)}
    df = df.assign(_contrast_order=df["contrast"].map(order))
    df = df.sort_values(
        ["_contrast_order", "pvalue", "gene_id"], na_position="last", kind="mergesort"
    )
    return df.drop(columns="_contrast_order").reset_index(drop=True)


class LimmaVoomTester:
    """
    limma-voom: log-CPM with precision weights, linear model, empirical Bayes.

    Args:
        weighting: "voom" for mean-variance precision weights, "none" for
            unweighted log-CPM
        span: lowess span of the voom trend
    """

    name = "limma_voom"

    def __init__(self, weighting: str = "voom", span: float = 0.5):
        if weighting not in WEIGHTING_METHODS:
            raise ConfigError(
                f"Unknown weighting '{weighting}'. Use one of {WEIGHTING_METHODS}.",
                details={"weighting": weighting},
            )
        self.weighting = weighting
        self.span = span

    def test(
        self,
        counts: pd.DataFrame,
        samples: pd.DataFrame,
        formula: Union[str, Sequence[str]],
        contrasts: Contrasts,
        lfc_threshold: Optional[float] = None,
        lib_size: Optional[pd.Series] = None,
    ) -> DEResult:
        _validate_lfc_threshold(lfc_threshold)
        design = build_design_matrix(samples.loc[counts.columns], formula)
        check_estimable(design)
        contrast_matrix = make_contrasts(contrasts, design.columns)

        if lib_size is None:
            lib_size = counts.sum(axis=0) * calc_norm_factors(counts)

        warnings = []
        voom_result = None
        if self.weighting == "voom":
            voom_result = voom(counts, design, lib_size, span=self.span)
            expression, weights = voom_result.expression, voom_result.weights
            if not voom_result.trend_fitted:
                warnings.append("Too few genes for a voom mean-variance trend; unit weights used")
        else:
            lib = lib_size.reindex(counts.columns).to_numpy(dtype=float)
            expression = np.log2((counts.astype(float) + 0.5).div(lib + 1, axis=1) * 1e6)
            weights = None

        fit = contrasts_fit(lm_fit(expression, design, weights), contrast_matrix)
        if lfc_threshold:
            fit = treat(fit, lfc_threshold)
        else:
            fit = e_bayes(fit)

        tables = [top_table(fit, name) for name in contrast_matrix.columns]
        results_df = _sort_results(pd.concat(tables, ignore_index=True), contrast_matrix.columns)
        return DEResult(
            results_df=results_df,
            design=design,
            contrasts=contrast_matrix,
            method=self.name,
            lfc_threshold=lfc_threshold,
            fit=fit,
            voom=voom_result,
            warnings=warnings,
        )


class DESeq2Tester:
    """
    PyDESeq2 Wald test for pairwise contrasts between levels of one factor.

    Contrasts must have the form ``"<factor><levelA> - <factor><levelB>"``
    with ``factor`` the first covariate of the formula.
    """

    name = "deseq2"

    def __init__(self, refit_cooks: bool = True, n_cpus: Optional[int] = None):
        self.refit_cooks = refit_cooks
        self.n_cpus = n_cpus

    def _pairwise_levels(
        self, factor: str, design: pd.DataFrame, contrast_matrix: pd.DataFrame
    ) -> Dict[str, tuple]:
        pairs = {}
        for name in contrast_matrix.columns:
            weights = contrast_matrix[name]
            nonzero = weights[weights != 0]
            if (
                len(nonzero) != 2
                or sorted(nonzero.tolist()) != [-1.0, 1.0]
                or not all(c.startswith(factor) for c in nonzero.index)
            ):
                raise ConfigError(
                    f"Contrast '{name}' is not a pairwise comparison of '{factor}' levels; "
                    f"DESeq2 supports only those. Suggestion: use method='limma_voom'.",
                    details={"contrast": name},
                )
            test = nonzero[nonzero > 0].index[0][len(factor):]
            ref = nonzero[nonzero < 0].index[0][len(factor):]
            pairs[name] = (test, ref)
        return pairs

    def test(
        self,
        counts: pd.DataFrame,
        samples: pd.DataFrame,
        formula: Union[str, Sequence[str]],
        contrasts: Contrasts,
        lfc_threshold: Optional[float] = None,
        lib_size: Optional[pd.Series] = None,
    ) -> DEResult:
        _validate_lfc_threshold(lfc_threshold)
        covariates, _ = parse_formula(formula)
        factor = covariates[0]
        cell_means = build_design_matrix(
            samples.loc[counts.columns], "~0 + " + " + ".join(covariates)
        )
        check_estimable(cell_means)
        contrast_matrix = make_contrasts(contrasts, cell_means.columns)
        pairs = self._pairwise_levels(factor, cell_means, contrast_matrix)

        metadata = samples.loc[counts.columns, covariates].astype(str)
        kwargs = {"n_cpus": self.n_cpus} if self.n_cpus else {}
        dds = DeseqDataSet(
            counts=counts.T.astype(int),  # samples × genes, integers
            metadata=metadata,
            design="~" + " + ".join(covariates),
            refit_cooks=self.refit_cooks,
            quiet=True,
            **kwargs,
        )
        dds.deseq2()

        tables = []
        for name, (test_level, ref_level) in pairs.items():
            stat_kwargs = {}
            if lfc_threshold:
                stat_kwargs = {"lfc_null": lfc_threshold, "alt_hypothesis": "greaterAbs"}
            stat_res = DeseqStats(
                dds, contrast=[factor, test_level, ref_level], quiet=True, **stat_kwargs
            )
            stat_res.summary()
            res = stat_res.results_df
            tables.append(
                pd.DataFrame(
                    {
                        "gene_id": res.index.astype(str),
                        "contrast": name,
                        "log2FoldChange": res["log2FoldChange"].to_numpy(),
                        "AveExpr": np.log2(res["baseMean"].to_numpy() + 1),
                        "stat": res["stat"].to_numpy(),
                        "pvalue": res["pvalue"].to_numpy(),
                        "padj": res["padj"].to_numpy(),
                    }
                )
            )

        results_df = _sort_results(pd.concat(tables, ignore_index=True), contrast_matrix.columns)
        return DEResult(
            results_df=results_df,
            design=cell_means,
            contrasts=contrast_matrix,
            method=self.name,
            lfc_threshold=lfc_threshold,
            dds=dds,
        )


class DEAnalysisEngine:
    """Differential expression on a tidy long count table."""

    def __init__(self, testers: Optional[Dict[str, FoldChangeTester]] = None):
        self.testers: Dict[str, FoldChangeTester] = testers or {
            LimmaVoomTester.name: LimmaVoomTester(),
            DESeq2Tester.name: DESeq2Tester(),
        }

    def test_differential_abundance(
        self,
        long: pd.DataFrame,
        formula: Union[str, Sequence[str]],
        contrasts: Contrasts,
        method: str = "limma_voom",
        lfc_threshold: Optional[float] = None,
        weighting: str = "voom",
        span: float = 0.5,
        tester: Optional[FoldChangeTester] = None,
    ) -> DEResult:
        """
        Main entry point: test every contrast on the abundant genes.

        Args:
            long: Long count table (abundant flag and TMM factors are used
                when present)
            formula: e.g. "~0 + group + lane"
            contrasts: contrast expressions or weight dicts
            method: "limma_voom" or "deseq2"
            lfc_threshold: when > 0, test |log2FC| > threshold (treat)
            weighting: "voom" or "none" (limma only)
            span: lowess span of the voom mean-variance trend (limma only)
            tester: custom FoldChangeTester overriding ``method``

        Returns:
            DEResult with one row per gene per contrast

        Raises:
            ModelRankError: design is not of full rank
            ConfigError: unknown method or malformed contrast
            ThresholdConfigError: negative lfc_threshold
        """
        _validate_lfc_threshold(lfc_threshold)
        if tester is None:
            if method not in self.testers:
                raise ConfigError(
                    f"Unknown DE method '{method}'. Use one of {list(self.testers)}.",
                    details={"method": method},
                )
            tester = self.testers[method]
            if isinstance(tester, LimmaVoomTester):
                tester = LimmaVoomTester(weighting=weighting, span=span)

        counts, samples, lib_size = model_inputs(long)
        logger.info(
            f"Testing {counts.shape[0]} genes x {counts.shape[1]} samples "
            f"with {getattr(tester, 'name', type(tester).__name__)}"
        )
        result = tester.test(counts, samples, formula, contrasts, lfc_threshold, lib_size)

        df = result.results_df
        if SYMBOL in long.columns:
            symbols = long.drop_duplicates(GENE).set_index(GENE)[SYMBOL]
            df["symbol"] = df["gene_id"].map(symbols)
        else:
            df["symbol"] = None
        result.results_df = df[RESULT_COLUMNS]

        for name, n in result.n_significant().items():
            logger.info(f"{name}: {n} genes with padj < 0.05")
        return result

    @staticmethod
    def filter_results(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> pd.DataFrame:
        """
        Filter DE results to significant genes.

        Args:
            results_df: DE results DataFrame
            padj_threshold: Adjusted p-value threshold (default: 0.05)
            lfc_threshold: Absolute log2 fold change threshold (default: 1.0)

        Returns:
            Filtered DataFrame with significant genes only
        """
        return results_df[
            (results_df["padj"] < padj_threshold)
            & (abs(results_df["log2FoldChange"]) > lfc_threshold)
        ].copy()

    @staticmethod
    def summarize(
        results_df: pd.DataFrame, padj_threshold: float = 0.05, lfc_threshold: float = 0.0
    ) -> pd.DataFrame:
        """
        Down / NotSig / Up gene counts per contrast.

        Returns:
            DataFrame indexed by contrast with columns Down, NotSig, Up
        """
        significant = (results_df["padj"] < padj_threshold) & (
            results_df["log2FoldChange"].abs() >= lfc_threshold
        )
        direction = np.where(
            significant, np.where(results_df["log2FoldChange"] > 0, "Up", "Down"), "NotSig"
        )
        summary = pd.crosstab(results_df["contrast"], direction)
        summary = summary.reindex(
            index=pd.unique(results_df["contrast"]), columns=["Down", "NotSig", "Up"], fill_value=0
        )
        summary.index.name = "contrast"
        summary.columns.name = None
        return summary
