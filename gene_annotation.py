"""
Gene identifier to symbol lookup.

The workflow treats symbol annotation as an external collaborator: anything
with a ``lookup(gene_ids) -> {gene_id: symbol or None}`` method can be
injected. Two implementations are provided:

- TableSymbolLookup: static reference table (e.g. an org-db export)
- MyGeneSymbolLookup: MyGene.info queries through the ``mygene`` client

Both resolve ambiguous ids by keeping the first match.
"""

import logging
from typing import Dict, Iterable, Optional, Protocol, Sequence

import mygene
import pandas as pd
import requests

from data_sources import Location, read_delimited_table
from workflow_errors import FormatError, NetworkError

logger = logging.getLogger(__name__)


class SymbolLookup(Protocol):
    """Capability interface: map gene ids to symbols."""

    def lookup(self, gene_ids: Sequence[str]) -> Dict[str, Optional[str]]:
        ...


def _normalize_id(value) -> str:
    """'497097', 497097 and 497097.0 all become '497097'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class TableSymbolLookup:
    """Static many-to-one id → symbol mapping; first row wins for repeated ids."""

    def __init__(self, table: pd.DataFrame, id_column: str, symbol_column: str):
        missing = [c for c in (id_column, symbol_column) if c not in table.columns]
        if missing:
            raise FormatError(
                f"Symbol table is missing columns {missing}.",
                details={"missing": missing},
            )
        ids = table[id_column].map(_normalize_id)
        symbols = table[symbol_column].where(table[symbol_column].notna(), None)
        mapping = pd.Series(symbols.to_numpy(), index=ids)
        self.mapping: Dict[str, Optional[str]] = mapping[
            ~mapping.index.duplicated(keep="first")
        ].to_dict()

    @classmethod
    def from_file(
        cls, location: Location, id_column: str = "ENTREZID", symbol_column: str = "SYMBOL"
    ) -> "TableSymbolLookup":
        table = read_delimited_table(location, required_columns=[id_column, symbol_column])
        return cls(table, id_column, symbol_column)

    def lookup(self, gene_ids: Sequence[str]) -> Dict[str, Optional[str]]:
        return {g: self.mapping.get(_normalize_id(g)) for g in gene_ids}


class MyGeneSymbolLookup:
    """
    Query MyGene.info for Entrez id → symbol.

    Args:
        species: MyGene species name or taxonomy id (default: "mouse")
        client: Optional preconfigured ``mygene.MyGeneInfo`` (injected in tests)
        batch_size: Ids per request
    """

    def __init__(self, species: str = "mouse", client=None, batch_size: int = 1000):
        if client is None:
            client = mygene.MyGeneInfo()
        self.client = client
        self.species = species
        self.batch_size = batch_size

    def lookup(self, gene_ids: Sequence[str]) -> Dict[str, Optional[str]]:
        ids = [_normalize_id(g) for g in gene_ids]
        result: Dict[str, Optional[str]] = {}
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start : start + self.batch_size]
            try:
                hits = self.client.querymany(
                    batch,
                    scopes="entrezgene",
                    fields="symbol",
                    species=self.species,
                    verbose=False,
                )
            except requests.RequestException as e:
                raise NetworkError(
                    f"MyGene.info query failed: {e}",
                    details={"batch_start": start, "batch_size": len(batch)},
                ) from e
            for hit in _iter_hits(hits):
                query = str(hit.get("query"))
                if query in result or hit.get("notfound"):
                    continue
                result[query] = hit.get("symbol")

        logger.info(f"MyGene.info mapped {sum(v is not None for v in result.values())} of {len(ids)} ids")
        return {g: result.get(_normalize_id(g)) for g in gene_ids}


def _iter_hits(hits) -> Iterable[dict]:
    """querymany returns a list, or a dict with 'out' when returnall=True."""
    if isinstance(hits, dict):
        return hits.get("out", [])
    return hits or []


def search_genes(
    df: pd.DataFrame,
    query: str,
    columns: Sequence[str] = ("symbol", "gene_id"),
    case_sensitive: bool = False,
) -> pd.DataFrame:
    """
    Substring search of a results table by symbol or gene id.

    Behavior:
        - Empty query: returns the full DataFrame
        - Case-insensitive by default: "csn" matches "Csn2", "Csn3"
        - Columns absent from ``df`` are skipped

    Examples:
        >>> df = pd.DataFrame({'symbol': ['Csn2', 'Wap', 'Csn3'], 'gene_id': ['12991', '22373', '12992']})
        >>> search_genes(df, 'csn')['symbol'].tolist()
        ['Csn2', 'Csn3']
    """
    if not query:
        return df.copy()

    mask = pd.Series(False, index=df.index)
    for col in columns:
        if col in df.columns:
            mask |= df[col].fillna("").astype(str).str.contains(
                query, case=case_sensitive, regex=False
            )
    return df[mask].copy()
