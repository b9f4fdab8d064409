"""
Pytest configuration and fixtures for RNA-seq workflow tests.
"""

from unittest.mock import MagicMock
import pytest
import requests
import pandas as pd
import numpy as np

from demo_data import load_demo_dataset, load_toy_dataset, toy_config, demo_gene_sets
from tidy_counts import SampleIdRule, add_composite_group, join_sample_metadata, pivot_counts_longer
from abundance_filter import identify_abundant
from normalization import scale_abundance


# ============================================================================
# Toy Dataset Fixtures
# ============================================================================


@pytest.fixture
def toy_wide():
    """4 genes × 4 samples (A1, A2, B1, B2) with a GeneID column."""
    counts_wide, _ = load_toy_dataset()
    return counts_wide


@pytest.fixture
def toy_metadata():
    _, metadata = load_toy_dataset()
    return metadata


@pytest.fixture
def toy_counts(toy_wide):
    """Toy counts as a gene × sample matrix."""
    return toy_wide.set_index("GeneID").rename_axis("gene_id")


@pytest.fixture
def toy_long(toy_wide, toy_metadata):
    """Toy long table joined with metadata and flagged for abundance."""
    long = pivot_counts_longer(toy_wide, gene_column="GeneID", length_column=None)
    long = join_sample_metadata(long, toy_metadata, "sample")
    return identify_abundant(long, factor_of_interest="group")


@pytest.fixture
def toy_workflow_config():
    return toy_config()


# ============================================================================
# Simulated Dataset Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def demo_dataset():
    """Simulated mammary-gland-like dataset (600 genes, 12 samples)."""
    return load_demo_dataset(n_genes=600, seed=42)


@pytest.fixture(scope="session")
def demo_sets():
    return demo_gene_sets(n_random=8, set_size=20, n_genes=600)


@pytest.fixture
def demo_long(demo_dataset):
    """Demo long table joined, grouped, flagged and TMM scaled."""
    counts_wide, metadata, _ = demo_dataset
    long = pivot_counts_longer(counts_wide)
    long = join_sample_metadata(
        long, metadata, "FileName", SampleIdRule(extract=r"^(MCL1\.[A-Z]+)")
    )
    long = add_composite_group(long, ["CellType", "Status"])
    long = identify_abundant(long, factor_of_interest="group")
    return scale_abundance(long)


@pytest.fixture
def simple_counts():
    """
    Two-group negative binomial counts with 40 up-regulated genes.
    Shape: (300 genes, 8 samples)
    """
    rng = np.random.default_rng(42)
    n_genes = 300
    base = rng.lognormal(5, 1, n_genes)
    samples = [f"S{i + 1}" for i in range(8)]
    group = np.array(["ctrl"] * 4 + ["trt"] * 4)
    mu = np.tile(base[:, None], (1, 8))
    mu[:40, group == "trt"] *= 4
    size = 10.0
    counts = rng.negative_binomial(size, size / (size + mu))
    df = pd.DataFrame(counts, index=[f"g{i:03d}" for i in range(n_genes)], columns=samples)
    df.index.name = "gene_id"
    samples_df = pd.DataFrame({"group": group}, index=pd.Index(samples, name="sample"))
    return df, samples_df


# ============================================================================
# DE Result Fixtures
# ============================================================================


@pytest.fixture
def sample_de_results_df():
    """
    Sample differential expression results for one contrast.
    Contains the workflow's result columns.
    """
    np.random.seed(42)
    n_genes = 100
    genes = [str(10000 + i) for i in range(n_genes)]

    df = pd.DataFrame(
        {
            "gene_id": genes,
            "symbol": [f"Gene{i}" for i in range(n_genes)],
            "contrast": "groupA - groupB",
            "log2FoldChange": np.random.normal(0, 2, n_genes),
            "AveExpr": np.random.uniform(0, 12, n_genes),
            "stat": np.random.normal(0, 3, n_genes),
            "pvalue": np.random.uniform(0, 1, n_genes),
            "padj": np.random.uniform(0, 1, n_genes),
        }
    )

    # Ensure some significant genes
    df.loc[:10, "padj"] = np.random.uniform(0, 0.05, 11)
    df.loc[:10, "pvalue"] = df.loc[:10, "padj"] / 10
    df.loc[:10, "log2FoldChange"] = np.random.uniform(1.5, 3, 11)

    return df


# ============================================================================
# External Service Mocks
# ============================================================================


@pytest.fixture
def mock_mygene_client():
    """MyGeneInfo stand-in whose querymany answers from a fixed table."""
    symbols = {"12991": "Csn2", "22373": "Wap", "16770": "Lalba"}

    def querymany(ids, **kwargs):
        hits = []
        for gene_id in ids:
            if gene_id in symbols:
                hits.append({"query": gene_id, "_id": gene_id, "symbol": symbols[gene_id]})
            else:
                hits.append({"query": gene_id, "notfound": True})
        return hits

    client = MagicMock()
    client.querymany = MagicMock(side_effect=querymany)
    return client


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Replace the GSEApy download entry points used by gene_sets."""
    mock_gp = MagicMock()
    mock_gp.get_library = MagicMock(
        return_value={"Lactation": ["Csn2", "Wap", "Lalba"], "Basal": ["Krt5", "Krt14"]}
    )
    mock_gp.Msigdb.return_value.get_gmt = MagicMock(
        return_value={"HALLMARK_EXAMPLE": ["Csn2", "Krt5", "Esr1"]}
    )
    monkeypatch.setattr("gene_sets.gp", mock_gp)
    return mock_gp


@pytest.fixture
def failing_session():
    """requests.Session stand-in whose GET always exhausts its retries."""
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = requests.exceptions.RetryError("Max retries exceeded")
    return session
