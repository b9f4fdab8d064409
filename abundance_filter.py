"""
Abundance filtering of lowly expressed genes.

Policy (the edgeR ``filterByExpr`` rule):

1. CPM cutoff = min_count / median(library size) * 1e6
2. Required samples = size of the smallest non-empty group of
   ``factor_of_interest`` (all samples when no factor is given). When that
   size exceeds ``large_n`` it is shrunk to
   ``large_n + (n - large_n) * min_proportion``.
3. A gene is abundant when its CPM reaches the cutoff in at least the
   required number of samples, in any group or across groups, AND its total
   count reaches ``min_total_count``.

A gene expressed in only one group is therefore kept as long as that group
has enough replicates above the cutoff.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from tidy_counts import ABUNDANT, COUNT, COUNT_SCALED, GENE, SAMPLE, to_matrix
from workflow_errors import FormatError, ThresholdConfigError

logger = logging.getLogger(__name__)

# Numerical tolerance used by filterByExpr
_TOL = 1e-14


def _validate_thresholds(
    min_count: float, min_total_count: float, large_n: float, min_proportion: float
) -> None:
    if min_count < 0:
        raise ThresholdConfigError(
            f"min_count must be >= 0, got {min_count}", details={"min_count": min_count}
        )
    if min_total_count < 0:
        raise ThresholdConfigError(
            f"min_total_count must be >= 0, got {min_total_count}",
            details={"min_total_count": min_total_count},
        )
    if large_n < 0:
        raise ThresholdConfigError(
            f"large_n must be >= 0, got {large_n}", details={"large_n": large_n}
        )
    if not 0 <= min_proportion <= 1:
        raise ThresholdConfigError(
            f"min_proportion must be within [0, 1], got {min_proportion}",
            details={"min_proportion": min_proportion},
        )


def min_sample_size(
    groups: Optional[pd.Series], n_samples: int, large_n: float = 10, min_proportion: float = 0.7
) -> float:
    """
    Number of samples in which a gene must pass the CPM cutoff.

    Uses the smallest non-empty group; with unequal replicate counts the
    smallest group always decides.
    """
    if groups is None:
        size = float(n_samples)
    else:
        sizes = groups.value_counts()
        sizes = sizes[sizes > 0]
        size = float(sizes.min()) if len(sizes) else float(n_samples)
    if size > large_n:
        size = large_n + (size - large_n) * min_proportion
    return size


def filter_by_expression(
    counts: pd.DataFrame,
    groups: Optional[pd.Series] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: float = 10,
    min_proportion: float = 0.7,
    lib_size: Optional[pd.Series] = None,
) -> pd.Series:
    """
    Boolean keep flag per gene for a gene × sample count matrix.

    Args:
        counts: gene × sample raw counts
        groups: group label per sample (index = sample names), optional
        min_count: minimum count expressed through the CPM cutoff
        min_total_count: minimum total count across all samples
        large_n: sample-size above which min_proportion applies
        min_proportion: fraction of samples required in large groups
        lib_size: library sizes (default: column sums)

    Returns:
        pd.Series of bool indexed by gene
    """
    _validate_thresholds(min_count, min_total_count, large_n, min_proportion)

    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = lib_size.reindex(counts.columns).astype(float)

    if groups is not None:
        groups = groups.reindex(counts.columns)
        if groups.isna().any():
            missing = groups[groups.isna()].index.tolist()
            raise FormatError(
                f"No group label for samples {missing}.", details={"samples": missing}
            )

    median_lib = float(np.median(lib_size))
    cpm_cutoff = min_count / median_lib * 1e6 if median_lib > 0 else np.inf
    cpm = counts.div(lib_size.where(lib_size > 0, np.nan), axis=1).fillna(0.0) * 1e6

    required = min_sample_size(groups, counts.shape[1], large_n, min_proportion)
    passes_cpm = (cpm >= cpm_cutoff).sum(axis=1) >= required - _TOL
    passes_total = counts.sum(axis=1) >= min_total_count - _TOL
    return passes_cpm & passes_total


def identify_abundant(
    long: pd.DataFrame,
    factor_of_interest: Optional[str] = "group",
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: float = 10,
    min_proportion: float = 0.7,
) -> pd.DataFrame:
    """
    Add a boolean ``abundant`` column to a long count table.

    Rows are never dropped; use keep_abundant for that.
    """
    counts = to_matrix(long, COUNT)
    groups = None
    if factor_of_interest is not None:
        if factor_of_interest not in long.columns:
            raise FormatError(
                f"Factor of interest '{factor_of_interest}' not found in table.",
                details={"column": factor_of_interest},
            )
        groups = long.drop_duplicates(SAMPLE).set_index(SAMPLE)[factor_of_interest]

    keep = filter_by_expression(
        counts,
        groups=groups,
        min_count=min_count,
        min_total_count=min_total_count,
        large_n=large_n,
        min_proportion=min_proportion,
    )
    logger.info(f"{int(keep.sum())} of {len(keep)} genes are abundant")

    result = long.copy()
    result[ABUNDANT] = result[GENE].map(keep).astype(bool)
    return result


def keep_abundant(long: pd.DataFrame, **kwargs) -> pd.DataFrame:
    """identify_abundant followed by dropping non-abundant genes."""
    if ABUNDANT in long.columns and not kwargs:
        flagged = long
    else:
        flagged = identify_abundant(long, **kwargs)
    return flagged[flagged[ABUNDANT]].reset_index(drop=True)


def keep_variable(
    long: pd.DataFrame, top: int = 500, abundance: str = COUNT_SCALED, log_transform: bool = True
) -> pd.DataFrame:
    """
    Keep the ``top`` genes with the highest variance of log2(abundance + 1).

    Ties are broken by gene id so the result does not depend on row order.
    """
    if top <= 0:
        raise ThresholdConfigError(f"top must be positive, got {top}", details={"top": top})
    matrix = to_matrix(long, abundance).astype(float)
    if log_transform:
        matrix = np.log2(matrix + 1)
    variances = pd.DataFrame({"var": matrix.var(axis=1), GENE: matrix.index})
    variances = variances.sort_values(["var", GENE], ascending=[False, True])
    selected = set(variances[GENE].head(top))
    return long[long[GENE].isin(selected)].reset_index(drop=True)
