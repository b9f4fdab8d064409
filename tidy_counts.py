"""
Tidy (long) representation of RNA-seq counts.

The workflow keeps every stage in one relational table with one row per
gene-sample pair. This module converts the wide count matrix into that form
and back, aligns count-table sample names with the metadata, joins sample
covariates and attaches gene symbols.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pandas as pd

from workflow_errors import FormatError, JoinError

logger = logging.getLogger(__name__)

# Canonical long-table columns
GENE = "gene_id"
SAMPLE = "sample"
COUNT = "count"
GENE_LENGTH = "gene_length"
SYMBOL = "symbol"
GROUP = "group"
ABUNDANT = "abundant"
TMM = "TMM"
SCALING_FACTOR = "scaling_factor"
COUNT_SCALED = "count_scaled"
SOURCE_COLUMN = "source_column"

# Columns that vary within a sample and never describe the sample itself
FEATURE_COLUMNS = {GENE, COUNT, GENE_LENGTH, SYMBOL, ABUNDANT, COUNT_SCALED}


@dataclass(frozen=True)
class SampleIdRule:
    """
    How to turn a count-table column header into a metadata sample id.

    ``extract`` is an optional regex whose first group is kept; ``pattern``
    is then replaced by ``replacement``. E.g. ``extract=r"^([^_]+)"``,
    ``pattern=r"\\."``, ``replacement="-"`` maps
    ``MCL1.DG_BC2CTUACXX_ACAGTG_L002_R1`` to ``MCL1-DG``.
    """

    extract: Optional[str] = None
    pattern: Optional[str] = None
    replacement: str = ""


def normalize_sample_ids(ids: Sequence[str], rule: Optional[SampleIdRule]) -> List[str]:
    """Apply a SampleIdRule to a sequence of ids (identity when rule is None)."""
    series = pd.Series(list(ids), dtype=str)
    if rule is None:
        return series.tolist()
    if rule.extract:
        extracted = series.str.extract(rule.extract, expand=False)
        if isinstance(extracted, pd.DataFrame):
            extracted = extracted.iloc[:, 0]
        series = extracted.fillna(series)
    if rule.pattern:
        series = series.str.replace(rule.pattern, rule.replacement, regex=True)
    return series.tolist()


def pivot_counts_longer(
    wide: pd.DataFrame,
    gene_column: str = "EntrezGeneID",
    length_column: Optional[str] = "Length",
) -> pd.DataFrame:
    """
    Convert a wide gene × sample count matrix to one row per gene-sample pair.

    Args:
        wide: DataFrame with a gene id column, optional length column and one
            column per sample
        gene_column: Name of the gene id column in ``wide``
        length_column: Name of the gene length column (None if absent)

    Returns:
        Long DataFrame with columns gene_id, [gene_length], sample, count
    """
    id_vars = [gene_column] + ([length_column] if length_column else [])
    missing = [c for c in id_vars if c not in wide.columns]
    if missing:
        raise FormatError(
            f"Cannot reshape counts: missing columns {missing}.",
            details={"missing": missing},
        )

    long = wide.melt(id_vars=id_vars, var_name=SAMPLE, value_name=COUNT)
    rename = {gene_column: GENE}
    if length_column:
        rename[length_column] = GENE_LENGTH
    long = long.rename(columns=rename)
    long[GENE] = long[GENE].astype(str)
    long[SAMPLE] = long[SAMPLE].astype(str)
    return long


def to_matrix(long: pd.DataFrame, value: str = COUNT) -> pd.DataFrame:
    """
    Gene × sample matrix of any long-table value column.

    Genes and samples keep their order of first appearance.

    Raises:
        FormatError: if a (gene, sample) pair occurs more than once
    """
    dup = long.duplicated(subset=[GENE, SAMPLE], keep=False)
    if dup.any():
        first = long.loc[dup, [GENE, SAMPLE]].iloc[0]
        raise FormatError(
            f"Gene '{first[GENE]}' appears more than once in sample '{first[SAMPLE]}'. "
            f"Suggestion: call aggregate_duplicates() first.",
            details={"gene": first[GENE], "sample": first[SAMPLE]},
        )

    genes = pd.unique(long[GENE])
    samples = pd.unique(long[SAMPLE])
    matrix = long.pivot(index=GENE, columns=SAMPLE, values=value)
    matrix = matrix.reindex(index=genes, columns=samples)
    matrix.index.name = GENE
    matrix.columns.name = None
    return matrix


def pivot_counts_wider(
    long: pd.DataFrame,
    gene_column: str = "EntrezGeneID",
    length_column: Optional[str] = "Length",
    value: str = COUNT,
) -> pd.DataFrame:
    """
    Inverse of pivot_counts_longer: back to a wide gene × sample table.

    Round-trips exactly with pivot_counts_longer (same gene and sample order,
    same dtypes).
    """
    matrix = to_matrix(long, value)
    wide = matrix.reset_index().rename(columns={GENE: gene_column})
    if length_column and GENE_LENGTH in long.columns:
        lengths = long.drop_duplicates(GENE).set_index(GENE)[GENE_LENGTH]
        wide.insert(1, length_column, wide[gene_column].map(lengths).to_numpy())
    wide.columns.name = None
    return wide


def aggregate_duplicates(long: pd.DataFrame) -> pd.DataFrame:
    """
    Sum counts of rows sharing a (gene, sample) key.

    Other columns keep their first value.
    """
    dup = long.duplicated(subset=[GENE, SAMPLE])
    if not dup.any():
        return long.copy()

    n_merged = int(dup.sum())
    agg = {c: "first" for c in long.columns if c not in (GENE, SAMPLE, COUNT)}
    agg[COUNT] = "sum"
    result = long.groupby([GENE, SAMPLE], sort=False, as_index=False).agg(agg)
    logger.info(f"Aggregated {n_merged} duplicated gene-sample rows by summing counts")
    return result[long.columns]


def join_sample_metadata(
    long: pd.DataFrame,
    metadata: pd.DataFrame,
    sample_column: str,
    rule: Optional[SampleIdRule] = None,
) -> pd.DataFrame:
    """
    Join sample metadata onto the long count table.

    Count-table sample names are normalised with ``rule`` and must then match
    exactly one metadata row each. The normalised id replaces ``sample``; the
    original header is kept in ``source_column``.

    Raises:
        JoinError: listing samples with zero or multiple metadata matches, or
            count columns that collapse onto the same id
    """
    if sample_column not in metadata.columns:
        raise JoinError(
            f"Metadata has no sample column '{sample_column}'.",
            details={"column": sample_column},
        )

    sources = pd.unique(long[SAMPLE]).tolist()
    normalized = normalize_sample_ids(sources, rule)
    id_map = dict(zip(sources, normalized))

    collisions: Dict[str, List[str]] = {}
    for source, key in id_map.items():
        collisions.setdefault(key, []).append(source)
    collisions = {k: v for k, v in collisions.items() if len(v) > 1}
    if collisions:
        raise JoinError(
            f"Count columns collapse onto the same sample id: {collisions}",
            details={"collisions": collisions},
        )

    meta_ids = metadata[sample_column].astype(str)
    matches = meta_ids.value_counts()
    unmatched = [s for s in normalized if matches.get(s, 0) == 0]
    ambiguous = [s for s in normalized if matches.get(s, 0) > 1]
    if unmatched or ambiguous:
        parts = []
        if unmatched:
            parts.append(f"no metadata row for {', '.join(unmatched)}")
        if ambiguous:
            parts.append(f"multiple metadata rows for {', '.join(ambiguous)}")
        raise JoinError(
            f"Sample join failed: {'; '.join(parts)}.",
            details={"unmatched": unmatched, "ambiguous": ambiguous},
        )

    result = long.copy()
    result[SOURCE_COLUMN] = result[SAMPLE]
    result[SAMPLE] = result[SAMPLE].map(id_map)

    meta = metadata.copy()
    meta[sample_column] = meta_ids
    meta = meta.rename(columns={sample_column: SAMPLE})
    clashing = [c for c in meta.columns if c != SAMPLE and c in result.columns]
    if clashing:
        meta = meta.rename(columns={c: f"{c}_meta" for c in clashing})

    joined = result.merge(meta, on=SAMPLE, how="left", validate="many_to_one")
    logger.info(f"Joined metadata for {len(normalized)} samples")
    return joined


def add_composite_group(
    df: pd.DataFrame, covariates: Sequence[str], sep: str = ".", name: str = GROUP
) -> pd.DataFrame:
    """Add a composite label such as ``basal.lactate`` from several covariates."""
    missing = [c for c in covariates if c not in df.columns]
    if missing:
        raise FormatError(
            f"Cannot build '{name}': missing covariates {missing}.",
            details={"missing": missing},
        )
    result = df.copy()
    result[name] = result[list(covariates)].astype(str).agg(sep.join, axis=1)
    return result


def annotate_symbols(long: pd.DataFrame, lookup) -> pd.DataFrame:
    """
    Attach gene symbols via an injected SymbolLookup.

    Genes the lookup cannot map get a missing symbol.
    """
    genes = pd.unique(long[GENE]).tolist()
    mapping = lookup.lookup(genes)
    result = long.copy()
    result[SYMBOL] = result[GENE].map(mapping)
    n_missing = int(pd.Series([mapping.get(g) for g in genes]).isna().sum())
    if n_missing:
        logger.info(f"{n_missing} of {len(genes)} genes have no symbol")
    return result


def sample_table(long: pd.DataFrame) -> pd.DataFrame:
    """
    One row per sample with every column that is constant within a sample.

    Sample order follows first appearance in ``long``.
    """
    candidates = [c for c in long.columns if c not in FEATURE_COLUMNS and c != SAMPLE]
    constant = []
    grouped = long.groupby(SAMPLE, sort=False)
    for col in candidates:
        if grouped[col].nunique(dropna=False).max() <= 1:
            constant.append(col)
    table = long.drop_duplicates(SAMPLE)[[SAMPLE] + constant]
    return table.reset_index(drop=True)
