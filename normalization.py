"""
Scale normalization (TMM) of RNA-seq libraries.

Scaling factors are computed from the abundant genes only and then applied to
every gene of the sample:

    scaling_factor = lib_size * TMM / lib_size[reference]
    count_scaled   = count / scaling_factor

so the reference sample's scaled counts equal its raw counts up to one global
constant (its TMM factor), and a single-sample input has a factor of exactly 1.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from tidy_counts import (
    ABUNDANT,
    COUNT,
    COUNT_SCALED,
    GENE,
    SAMPLE,
    SCALING_FACTOR,
    TMM,
    to_matrix,
)
from workflow_errors import FormatError, ThresholdConfigError

logger = logging.getLogger(__name__)

NORMALIZATION_METHODS = ("TMM", "upperquartile", "none")


@dataclass
class ScalingFactors:
    """Per-sample normalization result."""

    table: pd.DataFrame  # index: sample; columns: lib_size, TMM, scaling_factor
    reference: str  # Sample used as TMM reference
    method: str
    n_genes: int  # Genes used to compute the factors


def upper_quartile_factors(counts: pd.DataFrame, lib_size: pd.Series) -> pd.Series:
    """75th percentile of count / library size per sample."""
    scaled = counts.div(lib_size, axis=1)
    return scaled.quantile(0.75, axis=0)


def choose_reference(counts: pd.DataFrame, lib_size: pd.Series) -> str:
    """
    Reference sample for TMM.

    The sample whose upper quartile is closest to the mean upper quartile; when
    upper quartiles are all ~0 (very sparse data) the sample with the largest
    sum of square-root counts.
    """
    f75 = upper_quartile_factors(counts, lib_size)
    if float(np.median(f75)) < 1e-20:
        return str(np.sqrt(counts).sum(axis=0).idxmax())
    return str((f75 - f75.mean()).abs().idxmin())


def tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: Optional[float] = None,
    lib_ref: Optional[float] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    """
    Trimmed mean of M-values of ``obs`` relative to ``ref``.

    M-values (log ratios) and A-values (mean log abundance) are trimmed by
    rank, then averaged with inverse asymptotic-variance weights.
    """
    obs = np.asarray(obs, dtype=float)
    ref = np.asarray(ref, dtype=float)
    n_obs = float(lib_obs if lib_obs is not None else obs.sum())
    n_ref = float(lib_ref if lib_ref is not None else ref.sum())

    with np.errstate(divide="ignore", invalid="ignore"):
        log_obs = np.log2(obs / n_obs)
        log_ref = np.log2(ref / n_ref)
        log_r = log_obs - log_ref
        abs_e = (log_obs + log_ref) / 2
        var = (n_obs - obs) / n_obs / obs + (n_ref - ref) / n_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, var = log_r[finite], abs_e[finite], var[finite]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if weighting:
        f = np.nansum(log_r[keep] / var[keep]) / np.nansum(1.0 / var[keep])
    else:
        f = np.nanmean(log_r[keep]) if keep.any() else np.nan
    if not np.isfinite(f):
        f = 0.0
    return float(2.0**f)


def calc_norm_factors(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    method: str = "TMM",
    reference: Optional[str] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighting: bool = True,
    a_cutoff: float = -1e10,
) -> pd.Series:
    """
    Normalization factors per sample, rescaled to a geometric mean of 1.

    Args:
        counts: gene × sample raw counts
        lib_size: library sizes (default: column sums)
        method: "TMM", "upperquartile" or "none"
        reference: TMM reference sample (default: choose_reference)

    Returns:
        pd.Series of factors indexed by sample
    """
    if method not in NORMALIZATION_METHODS:
        raise ThresholdConfigError(
            f"Unknown normalization method '{method}'. Use one of {NORMALIZATION_METHODS}.",
            details={"method": method},
        )
    if not 0 <= logratio_trim < 0.5 or not 0 <= sum_trim < 0.5:
        raise ThresholdConfigError(
            "Trim fractions must be within [0, 0.5).",
            details={"logratio_trim": logratio_trim, "sum_trim": sum_trim},
        )

    counts = counts.astype(float)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = lib_size.reindex(counts.columns).astype(float)
    if (lib_size <= 0).any():
        empty = lib_size[lib_size <= 0].index.tolist()
        raise FormatError(
            f"Samples with zero library size cannot be normalized: {empty}",
            details={"samples": empty},
        )

    # Genes with zero counts everywhere carry no information
    counts = counts[counts.sum(axis=1) > 0]

    if method == "none" or counts.shape[1] == 1:
        return pd.Series(1.0, index=lib_size.index)

    if method == "upperquartile":
        factors = upper_quartile_factors(counts, lib_size)
    else:
        if reference is None:
            reference = choose_reference(counts, lib_size)
        elif reference not in counts.columns:
            raise FormatError(
                f"Reference sample '{reference}' not in count matrix.",
                details={"reference": reference},
            )
        ref = counts[reference].to_numpy()
        factors = pd.Series(
            {
                sample: tmm_factor(
                    counts[sample].to_numpy(),
                    ref,
                    lib_obs=lib_size[sample],
                    lib_ref=lib_size[reference],
                    logratio_trim=logratio_trim,
                    sum_trim=sum_trim,
                    weighting=weighting,
                    a_cutoff=a_cutoff,
                )
                for sample in counts.columns
            }
        )

    factors = factors.astype(float)
    factors = factors / np.exp(np.mean(np.log(factors)))
    return factors.reindex(lib_size.index)


def compute_scaling_factors(
    long: pd.DataFrame,
    method: str = "TMM",
    reference: Optional[str] = None,
    **kwargs,
) -> ScalingFactors:
    """
    Scaling factors from the abundant genes of a long count table.

    When no ``abundant`` column is present all genes are used.
    """
    counts = to_matrix(long, COUNT)
    if ABUNDANT in long.columns:
        abundant = long.drop_duplicates(GENE).set_index(GENE)[ABUNDANT]
        counts = counts[abundant.reindex(counts.index).fillna(False).astype(bool)]
    else:
        logger.warning("No abundance flag found; computing scaling factors on all genes")
    counts = counts[counts.sum(axis=1) > 0]
    if counts.empty:
        raise FormatError("No abundant genes left to compute scaling factors.")

    lib_size = counts.sum(axis=0).astype(float)
    if reference is None:
        reference = choose_reference(counts.astype(float), lib_size) if counts.shape[1] > 1 else str(counts.columns[0])

    factors = calc_norm_factors(counts, lib_size=lib_size, method=method, reference=reference, **kwargs)
    scaling = lib_size * factors / lib_size[reference]

    table = pd.DataFrame({"lib_size": lib_size, TMM: factors, SCALING_FACTOR: scaling})
    table.index.name = SAMPLE
    logger.info(
        f"Computed {method} factors on {counts.shape[0]} genes; reference sample {reference}"
    )
    return ScalingFactors(table=table, reference=reference, method=method, n_genes=counts.shape[0])


def scale_abundance(
    long: pd.DataFrame,
    method: str = "TMM",
    reference: Optional[str] = None,
    factors: Optional[ScalingFactors] = None,
    **kwargs,
) -> pd.DataFrame:
    """
    Add TMM, scaling_factor and count_scaled columns to a long count table.

    Factors come from abundant genes; scaled counts are produced for all genes.
    Precomputed ``factors`` (from compute_scaling_factors) are applied as is.
    """
    if factors is None:
        factors = compute_scaling_factors(long, method=method, reference=reference, **kwargs)
    result = long.drop(columns=[c for c in (TMM, SCALING_FACTOR, COUNT_SCALED) if c in long.columns])
    result = result.merge(
        factors.table[[TMM, SCALING_FACTOR]], left_on=SAMPLE, right_index=True, how="left"
    )
    result[COUNT_SCALED] = result[COUNT] / result[SCALING_FACTOR]
    result.attrs["reference_sample"] = factors.reference
    return result


def cpm(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """
    Counts per million, optionally log2 with a library-size-scaled prior count.
    """
    counts = counts.astype(float)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = lib_size.reindex(counts.columns).astype(float)
    if not log:
        return counts.div(lib_size, axis=1) * 1e6
    prior = prior_count * lib_size / lib_size.mean()
    adjusted_lib = lib_size + 2 * prior
    return np.log2(counts.add(prior, axis=1).div(adjusted_lib, axis=1) * 1e6)
