"""
Data ingestion for the RNA-seq workflow.

Reads the two delimited inputs of the workflow from local paths or HTTP(S)
URLs:

- a gene-by-sample count matrix (gene id + gene length + one count column per sample)
- a sample metadata table (sample id + categorical covariates)

Remote fetches go through a ``requests.Session`` with a bounded urllib3
``Retry`` policy. When the retry budget is exhausted a ``NetworkError`` is
raised; there is no other local recovery.
"""

import csv
import gzip
import io
import logging
from os import PathLike
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from workflow_errors import FormatError, NetworkError

logger = logging.getLogger(__name__)

Location = Union[str, PathLike]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
USER_AGENT = "rnaseq-workflow/0.1"


def create_session(
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    status_forcelist: tuple = RETRY_STATUS_CODES,
) -> requests.Session:
    """
    Create a requests Session with exponential-backoff retries.

    Args:
        max_retries: Maximum retry attempts before giving up
        backoff_factor: Backoff multiplier (sleep = factor * 2 ** (attempt - 1))
        status_forcelist: HTTP status codes that trigger a retry

    Returns:
        Configured requests.Session
    """
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET",),
        raise_on_status=True,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def is_remote(location: Location) -> bool:
    """True for http:// and https:// locations."""
    return str(location).lower().startswith(("http://", "https://"))


def fetch_bytes(
    location: Location,
    session: Optional[requests.Session] = None,
    timeout: float = 30,
) -> bytes:
    """
    Fetch raw bytes from a local path or an HTTP(S) URL.

    Raises:
        NetworkError: remote fetch failed after the retry budget
        FormatError: local file does not exist
    """
    if is_remote(location):
        url = str(location)
        session = session or create_session()
        logger.info(f"Fetching {url}")
        try:
            response = session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NetworkError(
                f"Failed to fetch {url} after retries: {e}",
                details={"url": url},
            ) from e
        return response.content

    path = Path(location)
    if not path.exists():
        raise FormatError(
            f"File not found: {path}. "
            f"Suggestion: Check the path is correct or use an http(s):// URL.",
            details={"location": str(path)},
        )
    return path.read_bytes()


def fetch_text(
    location: Location,
    session: Optional[requests.Session] = None,
    timeout: float = 30,
    encoding: str = "utf-8",
) -> str:
    """Fetch a text source, transparently decompressing gzip content."""
    raw = fetch_bytes(location, session=session, timeout=timeout)
    if raw[:2] == b"\x1f\x8b":
        raw = gzip.decompress(raw)
    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        raise FormatError(
            f"Could not decode {location} as {encoding}: {e}",
            details={"location": str(location)},
        ) from e


def detect_separator(header_line: str) -> str:
    """Tab wins over comma; a header without either is single-column."""
    if "\t" in header_line:
        return "\t"
    if "," in header_line:
        return ","
    return "\t"


def read_delimited_table(
    location: Location,
    sep: Optional[str] = None,
    required_columns: Sequence[str] = (),
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """
    Read a delimited text table and validate its shape.

    Args:
        location: Local path or URL
        sep: Field separator (auto-detected from the header when None)
        required_columns: Column names that must be present

    Returns:
        Parsed DataFrame

    Raises:
        FormatError: empty table, fewer than 2 columns, duplicated headers,
            ragged rows or missing required columns
    """
    text = fetch_text(location, session=session)
    first_line = next((line for line in text.splitlines() if line.strip()), None)
    if first_line is None:
        raise FormatError(
            f"Table {location} is empty.", details={"location": str(location)}
        )

    sep = sep or detect_separator(first_line)
    reader = csv.reader(io.StringIO(text), delimiter=sep)
    rows = []
    for fields in reader:
        if any(f.strip() for f in fields):
            rows.append((reader.line_num, fields))
    header = [h.strip() for h in rows[0][1]]
    if len(header) < 2:
        raise FormatError(
            f"Table {location} must have at least 2 columns, but found {len(header)}. "
            f"Suggestion: Check the delimiter (tab or comma).",
            details={"location": str(location), "columns": len(header)},
        )

    duplicated = sorted({h for h in header if header.count(h) > 1})
    if duplicated:
        raise FormatError(
            f"Table {location} has duplicated column headers: {duplicated}",
            details={"location": str(location), "columns": duplicated},
        )

    for row_number, fields in rows[1:]:
        n_fields = len(fields)
        if n_fields != len(header):
            raise FormatError(
                f"Row {row_number} of {location} has {n_fields} fields, "
                f"expected {len(header)}.",
                details={
                    "location": str(location),
                    "row": row_number,
                    "fields": n_fields,
                    "expected": len(header),
                },
            )

    try:
        df = pd.read_csv(io.StringIO(text), sep=sep, skip_blank_lines=True)
    except pd.errors.ParserError as e:
        raise FormatError(
            f"Failed to parse {location}: {e}", details={"location": str(location)}
        ) from e

    missing = [c for c in required_columns if c not in df.columns]
    if missing:
        available = ", ".join(str(c) for c in df.columns[:5])
        raise FormatError(
            f"Table {location} is missing required columns {missing}. "
            f"Found columns: {available}.",
            details={"location": str(location), "missing": missing},
        )

    logger.info(f"Read {df.shape[0]} rows x {df.shape[1]} columns from {location}")
    return df


def count_columns(
    df: pd.DataFrame, gene_column: str, length_column: Optional[str]
) -> List[str]:
    """Columns holding per-sample counts (everything but id and length)."""
    skip = {gene_column}
    if length_column:
        skip.add(length_column)
    return [c for c in df.columns if c not in skip]


def validate_counts(df: pd.DataFrame, columns: Sequence[str]) -> None:
    """
    Check count columns are numeric, non-negative and integer-like.

    Raises:
        FormatError: naming the first offending column and row
    """
    for col in columns:
        values = pd.to_numeric(df[col], errors="coerce")
        if values.isna().any():
            row = int(np.flatnonzero(values.isna().to_numpy())[0])
            raise FormatError(
                f"Count column '{col}' has a non-numeric or missing value at row {row + 2}.",
                details={"column": col, "row": row + 2, "value": str(df[col].iloc[row])},
            )
        if (values < 0).any():
            row = int(np.flatnonzero((values < 0).to_numpy())[0])
            raise FormatError(
                f"Count column '{col}' has a negative value at row {row + 2}. "
                f"Raw read counts must be non-negative integers.",
                details={"column": col, "row": row + 2, "value": float(values.iloc[row])},
            )
        off_integer = (values - values.round()).abs() > 1e-3
        if off_integer.any():
            row = int(np.flatnonzero(off_integer.to_numpy())[0])
            raise FormatError(
                f"Count column '{col}' has a non-integer value at row {row + 2}. "
                f"Suggestion: Provide raw counts, not normalized values.",
                details={"column": col, "row": row + 2, "value": float(values.iloc[row])},
            )


def read_count_table(
    location: Location,
    gene_column: str = "EntrezGeneID",
    length_column: Optional[str] = "Length",
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """
    Read and validate a wide gene-by-sample count matrix.

    Returns:
        DataFrame with the gene id column (as string), the optional length
        column and one integer count column per sample.
    """
    required = [gene_column] + ([length_column] if length_column else [])
    df = read_delimited_table(location, required_columns=required, session=session)

    samples = count_columns(df, gene_column, length_column)
    if not samples:
        raise FormatError(
            f"Count table {location} has no sample columns.",
            details={"location": str(location)},
        )
    validate_counts(df, samples)

    df[gene_column] = df[gene_column].astype(str)
    dup = df[gene_column].duplicated(keep=False)
    if dup.any():
        dup_ids = sorted(df.loc[dup, gene_column].unique().tolist())
        raise FormatError(
            f"Count table has duplicated gene ids: {', '.join(dup_ids[:5])}"
            f"{'...' if len(dup_ids) > 5 else ''}",
            details={"column": gene_column, "duplicates": dup_ids},
        )

    df[samples] = df[samples].apply(pd.to_numeric).round().astype(np.int64)
    return df


def read_sample_metadata(
    location: Location,
    sample_column: str,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """
    Read a sample metadata table keyed by ``sample_column``.

    Raises:
        FormatError: missing sample column or duplicated sample ids
    """
    df = read_delimited_table(location, required_columns=[sample_column], session=session)
    df[sample_column] = df[sample_column].astype(str)
    dup = df[sample_column].duplicated(keep=False)
    if dup.any():
        dup_ids = sorted(df.loc[dup, sample_column].unique().tolist())
        raise FormatError(
            f"Metadata has duplicated sample ids: {', '.join(dup_ids)}",
            details={"column": sample_column, "duplicates": dup_ids},
        )
    return df
