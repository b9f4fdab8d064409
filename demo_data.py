"""
Demo datasets for the RNA-seq workflow.

Two deterministic datasets:

- a simulated count matrix shaped like the mouse mammary-gland study
  (Entrez gene ids, gene lengths, 12 samples = 2 cell types × 3 statuses × 2
  replicates) with built-in differential expression
- the 4 × 4 toy matrix used to check the workflow end to end
"""

from typing import Dict, List, Tuple
import pandas as pd
import numpy as np

from gene_sets import GeneSetCollection
from workflow_config import WorkflowConfig

# Sample code → (CellType, Status); two replicates per combination
MAMMARY_SAMPLES = {
    "DG": ("basal", "virgin"),
    "DH": ("basal", "virgin"),
    "DI": ("basal", "pregnant"),
    "DJ": ("basal", "pregnant"),
    "DK": ("basal", "lactate"),
    "DL": ("basal", "lactate"),
    "LA": ("luminal", "virgin"),
    "LB": ("luminal", "virgin"),
    "LC": ("luminal", "pregnant"),
    "LD": ("luminal", "pregnant"),
    "LE": ("luminal", "lactate"),
    "LF": ("luminal", "lactate"),
}

# Real mouse Entrez ids/symbols for the genes carrying the main effects
LACTATION_GENES = {
    "12991": "Csn2",
    "22373": "Wap",
    "16770": "Lalba",
    "12992": "Csn1s1",
    "12990": "Csn1s2a",
    "13711": "Elf5",
}
BASAL_GENES = {
    "110308": "Krt5",
    "16664": "Krt14",
    "11475": "Acta2",
    "17880": "Myh11",
    "21838": "Thy1",
}
LUMINAL_GENES = {
    "16668": "Krt18",
    "16669": "Krt19",
    "13982": "Esr1",
    "18667": "Pgr",
    "14733": "Gpc3",
}


def _negative_binomial(rng: np.random.Generator, mu: np.ndarray, dispersion: float) -> np.ndarray:
    size = 1.0 / dispersion
    return rng.negative_binomial(size, size / (size + mu))


def load_demo_dataset(
    n_genes: int = 2000, seed: int = 42
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Generate a mammary-gland-like RNA-seq dataset.

    Returns:
        Tuple of (counts_wide, metadata, symbols):
        - counts_wide: EntrezGeneID, Length and one integer column per sample
          named like ``MCL1.DG_BC2CTUACXX_ACAGTG_L002_R1``
        - metadata: FileName (``MCL1.DG``), SampleName, CellType, Status
        - symbols: EntrezGeneID → Symbols table

    Dataset characteristics:
    - Lactation genes strongly up in lactating samples of both cell types
    - Basal and luminal marker blocks differ between cell types
    - 150 additional random genes change between pregnant and lactating basal cells
    - About a fifth of the genes are too lowly expressed to pass filtering
    - Reproducible for a given seed
    """
    rng = np.random.default_rng(seed)

    marker_ids = list(LACTATION_GENES) + list(BASAL_GENES) + list(LUMINAL_GENES)
    n_other = max(n_genes - len(marker_ids), 0)
    other_ids = [str(100000 + 37 * i) for i in range(n_other)]
    gene_ids = marker_ids + other_ids
    symbols = {**LACTATION_GENES, **BASAL_GENES, **LUMINAL_GENES}
    symbols.update({g: f"Gm{10000 + i}" for i, g in enumerate(other_ids)})

    base = rng.lognormal(mean=4.0, sigma=1.8, size=len(gene_ids))
    low = rng.random(len(gene_ids)) < 0.2
    base[low] = rng.uniform(0.05, 1.0, size=int(low.sum()))
    lengths = rng.integers(500, 8000, size=len(gene_ids))

    # Marker genes are always well expressed
    base[: len(marker_ids)] = rng.uniform(200, 2000, size=len(marker_ids))
    basal_pl = rng.choice(np.arange(len(marker_ids), len(gene_ids)), size=min(150, n_other), replace=False)
    basal_pl_lfc = rng.normal(0, 2.0, size=len(basal_pl))

    codes = list(MAMMARY_SAMPLES)
    lib_factor = rng.uniform(0.7, 1.4, size=len(codes))
    columns, metadata_rows = {}, []
    for j, code in enumerate(codes):
        cell_type, status = MAMMARY_SAMPLES[code]
        log_fc = np.zeros(len(gene_ids))
        for i, gene in enumerate(gene_ids):
            if gene in LACTATION_GENES and status == "lactate":
                log_fc[i] += 5.0
            elif gene in LACTATION_GENES and status == "pregnant":
                log_fc[i] += 2.0
            if gene in BASAL_GENES:
                log_fc[i] += 4.0 if cell_type == "basal" else -1.0
            if gene in LUMINAL_GENES:
                log_fc[i] += 4.0 if cell_type == "luminal" else -1.0
        if cell_type == "basal" and status == "lactate":
            log_fc[basal_pl] += basal_pl_lfc
        mu = base * np.exp2(log_fc) * lib_factor[j]
        header = f"MCL1.{code}_BC2CTUACXX_{''.join(rng.choice(list('ACGT'), size=6))}_L00{1 + j % 2}_R1"
        columns[header] = _negative_binomial(rng, mu, dispersion=0.05).astype(np.int64)
        metadata_rows.append(
            {
                "FileName": f"MCL1.{code}",
                "SampleName": f"MCL1-{code}",
                "CellType": cell_type,
                "Status": status,
            }
        )

    counts_wide = pd.DataFrame({"EntrezGeneID": gene_ids, "Length": lengths})
    counts_wide = pd.concat([counts_wide, pd.DataFrame(columns)], axis=1)
    metadata = pd.DataFrame(metadata_rows)
    symbol_table = pd.DataFrame({"EntrezGeneID": gene_ids, "Symbols": [symbols[g] for g in gene_ids]})
    return counts_wide, metadata, symbol_table


def demo_gene_sets(
    n_random: int = 20, set_size: int = 25, n_genes: int = 2000, seed: int = 7
) -> GeneSetCollection:
    """Marker sets of the demo dataset plus random background sets."""
    rng = np.random.default_rng(seed)
    n_markers = len(LACTATION_GENES) + len(BASAL_GENES) + len(LUMINAL_GENES)
    others = [str(100000 + 37 * i) for i in range(n_genes - n_markers)]
    sets: Dict[str, List[str]] = {
        "MILK_PROTEINS": list(LACTATION_GENES),
        "BASAL_MARKERS": list(BASAL_GENES),
        "LUMINAL_MARKERS": list(LUMINAL_GENES),
    }
    for k in range(n_random):
        sets[f"RANDOM_SET_{k + 1:02d}"] = rng.choice(others, size=set_size, replace=False).tolist()
    descriptions = {
        "MILK_PROTEINS": "Caseins, whey acidic protein and alpha-lactalbumin",
        "BASAL_MARKERS": "Myoepithelial / basal cell markers",
        "LUMINAL_MARKERS": "Luminal epithelial markers",
    }
    return GeneSetCollection(sets, name="demo_sets", descriptions=descriptions)


def demo_config() -> WorkflowConfig:
    """Configuration matching load_demo_dataset (no file locations)."""
    return WorkflowConfig.from_dict(
        {
            "source": {
                "sample_column": "FileName",
                "sample_id_extract": r"^(MCL1\.[A-Z]+)",
            },
            "filter": {"group_covariates": ["CellType", "Status"]},
            "reduction": {"methods": ["MDS", "PCA"], "symbol_by": "Status", "color_by": "CellType"},
            "differential": {
                "formula": "~0 + group",
                "contrasts": [
                    "groupbasal.pregnant - groupbasal.lactate",
                    "groupluminal.pregnant - groupluminal.lactate",
                    "groupbasal.virgin - groupluminal.virgin",
                ],
            },
            "output": {"pdf": True},
        }
    )


def load_toy_dataset() -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    The 4-gene × 4-sample toy matrix.

    G2 is expressed in group A only, G4 is too low to pass filtering.

    Returns:
        Tuple of (counts_wide with a GeneID column, metadata keyed by sample)
    """
    counts_wide = pd.DataFrame(
        {
            "GeneID": ["G1", "G2", "G3", "G4"],
            "A1": [100, 200, 300, 1],
            "A2": [100, 220, 310, 0],
            "B1": [100, 0, 290, 2],
            "B2": [100, 0, 305, 0],
        }
    )
    metadata = pd.DataFrame({"sample": ["A1", "A2", "B1", "B2"], "group": ["A", "A", "B", "B"]})
    return counts_wide, metadata


def toy_config(**differential) -> WorkflowConfig:
    """Configuration for load_toy_dataset testing A - B."""
    diff = {"formula": "~0 + group", "contrasts": ["groupA - groupB"]}
    diff.update(differential)
    return WorkflowConfig.from_dict(
        {
            "source": {"gene_column": "GeneID", "length_column": None, "sample_column": "sample"},
            "reduction": {"methods": ["MDS"], "top": 3},
            "differential": diff,
            "output": {"excel": True, "html_figures": False, "n_top_genes": 2},
        }
    )
