"""
Gene-set collections for competitive enrichment testing.

Collections can be loaded from GMT files, a YAML config, Enrichr libraries
or MSigDB (both through GSEApy). Set members are gene identifiers of one
kind (symbols or Entrez ids); map_symbols_to_ids converts symbol-keyed sets
to the ids used in the count table.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, Mapping, Optional, Tuple

import gseapy as gp
import pandas as pd
import requests
import yaml
from gseapy.parser import read_gmt

from workflow_errors import ConfigError, FormatError, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class GeneSetCollection:
    """Named gene sets plus optional descriptions."""

    sets: Dict[str, FrozenSet[str]]
    name: str = "gene_sets"
    descriptions: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.sets = {str(k): frozenset(str(g) for g in v) for k, v in self.sets.items()}

    def __len__(self) -> int:
        return len(self.sets)

    def __iter__(self) -> Iterator[str]:
        return iter(self.sets)

    def __getitem__(self, set_name: str) -> FrozenSet[str]:
        return self.sets[set_name]

    def items(self) -> Iterable[Tuple[str, FrozenSet[str]]]:
        return self.sets.items()

    def filter_to(
        self, universe: Iterable[str], min_size: int = 1, max_size: Optional[int] = None
    ) -> "GeneSetCollection":
        """
        Restrict every set to ``universe`` and drop sets outside the size range.
        """
        universe = {str(g) for g in universe}
        kept = {}
        for set_name, genes in self.sets.items():
            members = genes & universe
            if len(members) < min_size:
                continue
            if max_size is not None and len(members) > max_size:
                continue
            kept[set_name] = members
        dropped = len(self.sets) - len(kept)
        if dropped:
            logger.info(
                f"{self.name}: kept {len(kept)} of {len(self.sets)} sets "
                f"with {min_size}-{max_size or 'any'} genes in the universe"
            )
        return GeneSetCollection(kept, name=self.name, descriptions=self.descriptions)

    def to_frame(self) -> pd.DataFrame:
        """Long table of (gene_set, gene_id) memberships."""
        rows = [
            {"gene_set": set_name, "gene_id": gene}
            for set_name, genes in self.sets.items()
            for gene in sorted(genes)
        ]
        return pd.DataFrame(rows, columns=["gene_set", "gene_id"])

    @classmethod
    def from_gmt(cls, path, name: Optional[str] = None) -> "GeneSetCollection":
        """Load a GMT file (one set per line: name, description, genes...)."""
        path = Path(path)
        if not path.exists():
            raise FormatError(f"Gene-set file not found: {path}", details={"location": str(path)})
        sets = read_gmt(str(path))
        if not sets:
            raise FormatError(f"No gene sets found in {path}", details={"location": str(path)})
        return cls(sets, name=name or path.stem)

    @classmethod
    def from_yaml(cls, path, name: Optional[str] = None) -> "GeneSetCollection":
        """
        Load sets from YAML.

        Expected structure::

            gene_sets:
              MAMMARY_STEM_CELL_UP:
                description: Up in mammary stem cells
                genes: [12992, 16878, ...]
        """
        path = Path(path)
        if not path.exists():
            raise FormatError(f"Gene-set file not found: {path}", details={"location": str(path)})
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}

        entries = config.get("gene_sets")
        if not isinstance(entries, dict):
            raise ConfigError(
                f"{path} must contain a 'gene_sets' mapping.", details={"location": str(path)}
            )
        sets, descriptions = {}, {}
        for set_name, info in entries.items():
            if isinstance(info, dict):
                if "genes" not in info:
                    raise ConfigError(
                        f"Gene set '{set_name}' in {path} has no 'genes' list.",
                        details={"gene_set": set_name},
                    )
                sets[set_name] = info["genes"]
                if info.get("description"):
                    descriptions[set_name] = str(info["description"])
            else:
                sets[set_name] = info
        return cls(sets, name=name or config.get("name", path.stem), descriptions=descriptions)

    @classmethod
    def from_enrichr_library(
        cls, library: str, organism: str = "Mouse"
    ) -> "GeneSetCollection":
        """Download an Enrichr library (e.g. ``KEGG_2019_Mouse``)."""
        try:
            sets = gp.get_library(name=library, organism=organism)
        except requests.RequestException as e:
            raise NetworkError(
                f"Failed to download Enrichr library {library}: {e}",
                details={"library": library, "organism": organism},
            ) from e
        logger.info(f"Loaded {len(sets)} sets from Enrichr library {library}")
        return cls(sets, name=library)

    @classmethod
    def from_msigdb(
        cls, category: str = "mh.all", dbver: str = "2023.2.Mm"
    ) -> "GeneSetCollection":
        """Download an MSigDB collection (e.g. mouse hallmark ``mh.all``)."""
        try:
            sets = gp.Msigdb().get_gmt(category=category, dbver=dbver)
        except requests.RequestException as e:
            raise NetworkError(
                f"Failed to download MSigDB {category} ({dbver}): {e}",
                details={"category": category, "dbver": dbver},
            ) from e
        if not sets:
            raise NetworkError(
                f"MSigDB returned no sets for {category} ({dbver})",
                details={"category": category, "dbver": dbver},
            )
        return cls(sets, name=f"{category}.{dbver}")


def map_symbols_to_ids(
    collection: GeneSetCollection,
    id_to_symbol: Mapping[str, Optional[str]],
    case_sensitive: bool = False,
) -> GeneSetCollection:
    """
    Re-key symbol-based sets to gene ids.

    A symbol shared by several ids maps to all of them; unknown symbols are
    dropped.
    """
    def key(symbol: str) -> str:
        return symbol if case_sensitive else symbol.upper()

    symbol_to_ids: Dict[str, set] = {}
    for gene_id, symbol in id_to_symbol.items():
        if symbol is None or pd.isna(symbol):
            continue
        symbol_to_ids.setdefault(key(str(symbol)), set()).add(str(gene_id))

    mapped = {
        set_name: {g for symbol in genes for g in symbol_to_ids.get(key(symbol), ())}
        for set_name, genes in collection.items()
    }
    return GeneSetCollection(mapped, name=collection.name, descriptions=collection.descriptions)
