"""Tests for gene-set collections and their loaders."""
import pytest
import requests

from gene_sets import GeneSetCollection, map_symbols_to_ids
from workflow_errors import ConfigError, FormatError, NetworkError


def test_from_gmt(tmp_path):
    path = tmp_path / "sets.gmt"
    path.write_text("MILK\tmilk proteins\t12991\t22373\t16770\nBASAL\tna\t110308\t16664\n")
    collection = GeneSetCollection.from_gmt(path)
    assert collection.name == "sets"
    assert set(collection) == {"MILK", "BASAL"}
    assert collection["MILK"] == frozenset({"12991", "22373", "16770"})


def test_from_gmt_missing_file(tmp_path):
    with pytest.raises(FormatError, match="not found"):
        GeneSetCollection.from_gmt(tmp_path / "nope.gmt")


def test_from_yaml(tmp_path):
    path = tmp_path / "sets.yaml"
    path.write_text(
        "name: mammary\n"
        "gene_sets:\n"
        "  MILK_PROTEINS:\n"
        "    description: Caseins\n"
        "    genes: [12991, 22373]\n"
        "  LUMINAL: [16668, 16669]\n"
    )
    collection = GeneSetCollection.from_yaml(path)
    assert collection.name == "mammary"
    assert collection["MILK_PROTEINS"] == frozenset({"12991", "22373"})
    assert collection["LUMINAL"] == frozenset({"16668", "16669"})
    assert collection.descriptions == {"MILK_PROTEINS": "Caseins"}


def test_from_yaml_without_mapping(tmp_path):
    path = tmp_path / "sets.yaml"
    path.write_text("sets: []\n")
    with pytest.raises(ConfigError, match="gene_sets"):
        GeneSetCollection.from_yaml(path)


def test_from_yaml_set_without_genes(tmp_path):
    path = tmp_path / "sets.yaml"
    path.write_text("gene_sets:\n  EMPTY:\n    description: nothing\n")
    with pytest.raises(ConfigError, match="EMPTY"):
        GeneSetCollection.from_yaml(path)


def test_from_enrichr_library(mock_gseapy):
    collection = GeneSetCollection.from_enrichr_library("KEGG_2019_Mouse")
    assert collection.name == "KEGG_2019_Mouse"
    assert collection["Lactation"] == frozenset({"Csn2", "Wap", "Lalba"})
    mock_gseapy.get_library.assert_called_once_with(name="KEGG_2019_Mouse", organism="Mouse")


def test_from_enrichr_network_failure(mock_gseapy):
    mock_gseapy.get_library.side_effect = requests.ConnectionError("offline")
    with pytest.raises(NetworkError, match="KEGG_2019_Mouse"):
        GeneSetCollection.from_enrichr_library("KEGG_2019_Mouse")


def test_from_msigdb(mock_gseapy):
    collection = GeneSetCollection.from_msigdb("mh.all", "2023.2.Mm")
    assert collection.name == "mh.all.2023.2.Mm"
    assert "HALLMARK_EXAMPLE" in collection
    mock_gseapy.Msigdb.return_value.get_gmt.assert_called_once_with(category="mh.all", dbver="2023.2.Mm")


def test_from_msigdb_empty(mock_gseapy):
    mock_gseapy.Msigdb.return_value.get_gmt.return_value = {}
    with pytest.raises(NetworkError):
        GeneSetCollection.from_msigdb()


def test_filter_to_universe():
    collection = GeneSetCollection({"a": ["1", "2", "3"], "b": ["3", "9"], "c": ["1", "2", "3", "4"]})
    kept = collection.filter_to(["1", "2", "3", "4"], min_size=2, max_size=3)
    assert set(kept) == {"a"}
    assert kept["a"] == frozenset({"1", "2", "3"})


def test_to_frame():
    frame = GeneSetCollection({"a": ["2", "1"]}).to_frame()
    assert frame.to_dict("list") == {"gene_set": ["a", "a"], "gene_id": ["1", "2"]}


def test_map_symbols_to_ids():
    collection = GeneSetCollection({"milk": ["CSN2", "wap", "Unknown"]})
    mapping = {"12991": "Csn2", "22373": "Wap", "99": "Csn2", "5": None}
    mapped = map_symbols_to_ids(collection, mapping)
    assert mapped["milk"] == frozenset({"12991", "22373", "99"})
    strict = map_symbols_to_ids(collection, mapping, case_sensitive=True)
    assert strict["milk"] == frozenset()
