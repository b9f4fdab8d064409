"""Tests for TMM scaling normalization."""
import pytest
import numpy as np
import pandas as pd

from normalization import (
    calc_norm_factors,
    choose_reference,
    compute_scaling_factors,
    cpm,
    scale_abundance,
    tmm_factor,
)
from workflow_errors import FormatError, ThresholdConfigError


@pytest.fixture
def composition_counts():
    """Two samples identical except one gene that takes half of sample 'obs'."""
    ref = np.full(100, 100.0)
    obs = ref.copy()
    obs[0] = 10000.0
    return pd.DataFrame({"ref": ref, "obs": obs}, index=[f"g{i}" for i in range(100)])


def test_tmm_identical_samples():
    x = np.array([10.0, 50.0, 100.0, 400.0])
    assert tmm_factor(x, x) == 1.0


def test_tmm_corrects_composition(composition_counts):
    factor = tmm_factor(composition_counts["obs"].to_numpy(), composition_counts["ref"].to_numpy())
    assert factor == pytest.approx(10000 / 19900, rel=1e-9)


def test_effective_library_sizes_equal(composition_counts):
    factors = calc_norm_factors(composition_counts, reference="ref")
    assert np.prod(factors) == pytest.approx(1.0)
    effective = composition_counts.sum(axis=0) * factors
    assert effective["obs"] == pytest.approx(effective["ref"])


def test_factors_positive_geometric_mean_one(demo_dataset):
    counts_wide, _, _ = demo_dataset
    counts = counts_wide.set_index("EntrezGeneID").drop(columns="Length")
    factors = calc_norm_factors(counts)
    assert (factors > 0).all()
    assert np.exp(np.log(factors).mean()) == pytest.approx(1.0)


def test_single_sample_factor_is_one(toy_counts):
    factors = calc_norm_factors(toy_counts[["A1"]])
    assert factors.tolist() == [1.0]


def test_invariant_to_gene_order(demo_dataset):
    counts_wide, _, _ = demo_dataset
    counts = counts_wide.set_index("EntrezGeneID").drop(columns="Length")
    shuffled = counts.sample(frac=1.0, random_state=3)
    pd.testing.assert_series_equal(calc_norm_factors(counts), calc_norm_factors(shuffled), rtol=1e-12)


def test_toy_reference_sample(toy_long):
    factors = compute_scaling_factors(toy_long)
    assert factors.reference == "A2"
    assert factors.n_genes == 3


def test_toy_tmm_matches_hand_computed(toy_long):
    # G1-G3 against A2 (lib 630); B1/B2 drop G2 (zero count); rel tol 1e-3
    table = compute_scaling_factors(toy_long).table
    expected_tmm = {"A1": 0.80903, "A2": 0.80847, "B1": 1.23297, "B2": 1.24001}
    expected_scaling = {"A1": 0.77050, "A2": 0.80847, "B1": 0.76327, "B2": 0.79715}
    for sample, value in expected_tmm.items():
        assert table.loc[sample, "TMM"] == pytest.approx(value, rel=1e-3)
        assert table.loc[sample, "scaling_factor"] == pytest.approx(expected_scaling[sample], rel=1e-3)
    assert table["lib_size"].to_dict() == {"A1": 600.0, "A2": 630.0, "B1": 390.0, "B2": 405.0}


def test_reference_ignores_all_zero_genes():
    counts = pd.DataFrame(
        {"a": [10, 20, 30, 40], "b": [1, 1, 1, 97], "c": [20, 25, 25, 30]},
        index=["w", "x", "y", "z"],
    )
    zeros = pd.DataFrame(0, index=[f"zero{i}" for i in range(8)], columns=counts.columns)
    padded = pd.concat([counts, zeros])
    long = padded.rename_axis("gene_id").reset_index().melt(
        id_vars="gene_id", var_name="sample", value_name="count"
    )
    long["abundant"] = True
    factors = compute_scaling_factors(long)
    assert factors.reference == "c"
    assert factors.reference == choose_reference(counts, counts.sum(axis=0))
    assert factors.n_genes == 4


def test_choose_reference_closest_upper_quartile():
    counts = pd.DataFrame(
        {"a": [10, 20, 30, 40], "b": [10, 20, 30, 40], "c": [1, 1, 1, 97]},
        index=list("wxyz"),
    )
    lib = counts.sum(axis=0)
    assert choose_reference(counts, lib) in ("a", "b")


def test_scale_abundance_columns(toy_long):
    scaled = scale_abundance(toy_long)
    for col in ("TMM", "scaling_factor", "count_scaled"):
        assert col in scaled.columns
    assert len(scaled) == len(toy_long)
    assert scaled.attrs["reference_sample"] == "A2"
    g4 = scaled[scaled["gene_id"] == "G4"]
    assert g4["count_scaled"].notna().all()


def test_reference_scaled_counts_constant_multiple(toy_long):
    scaled = scale_abundance(toy_long)
    ref = scaled[scaled["sample"] == "A2"]
    assert ref["scaling_factor"].iloc[0] == pytest.approx(ref["TMM"].iloc[0])
    nonzero = ref[ref["count"] > 0]
    ratio = nonzero["count_scaled"] / nonzero["count"]
    assert np.allclose(ratio, ratio.iloc[0])


def test_toy_stable_gene_comparable_after_scaling(toy_long):
    scaled = scale_abundance(toy_long)
    g3 = scaled[scaled["gene_id"] == "G3"]["count_scaled"]
    assert g3.max() / g3.min() < 1.1


def test_scaling_invariant_to_row_order(toy_long):
    a = compute_scaling_factors(toy_long).table
    b = compute_scaling_factors(toy_long.iloc[::-1].reset_index(drop=True)).table
    pd.testing.assert_frame_equal(a, b.loc[a.index])


def test_upperquartile_and_none(toy_counts):
    assert (calc_norm_factors(toy_counts, method="none") == 1.0).all()
    uq = calc_norm_factors(toy_counts, method="upperquartile")
    assert np.exp(np.log(uq).mean()) == pytest.approx(1.0)


def test_invalid_method(toy_counts):
    with pytest.raises(ThresholdConfigError):
        calc_norm_factors(toy_counts, method="RLE")


def test_invalid_trim(toy_counts):
    with pytest.raises(ThresholdConfigError):
        calc_norm_factors(toy_counts, logratio_trim=0.6)


def test_zero_library_size(toy_counts):
    counts = toy_counts.copy()
    counts["B2"] = 0
    with pytest.raises(FormatError, match="zero library size"):
        calc_norm_factors(counts)


def test_unknown_reference(toy_counts):
    with pytest.raises(FormatError):
        calc_norm_factors(toy_counts, reference="Z9")


def test_cpm(toy_counts):
    values = cpm(toy_counts)
    assert np.allclose(values.sum(axis=0), 1e6)
    logged = cpm(toy_counts, log=True)
    assert np.isfinite(logged.to_numpy()).all()
