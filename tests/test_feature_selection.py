import numpy as np
import pytest
import scipy.sparse as sp

from sc_cluster import StageOrderError, create_dataset, normalize, select_variable_genes
from sc_cluster.feature_selection import assign_bins, binned_zscores, dispersion_statistics


def test_dispersion_statistics_hand_computed():
    # non-logged values 1 and 3: mean 2, sample variance 2
    values = sp.csr_matrix(np.log1p(np.array([[1.0, 0.0], [3.0, 0.0]])))
    x, y = dispersion_statistics(values)
    np.testing.assert_allclose(x, [np.log(3.0), 0.0])
    np.testing.assert_allclose(y[0], 0.0, atol=1e-12)
    assert np.isnan(y[1])


def test_binned_zscores():
    y = np.array([1.0, 2.0, 3.0, 5.0, np.nan])
    bins = np.array([0, 0, 0, 1, 1])
    z = binned_zscores(y, bins)
    np.testing.assert_allclose(z[:4], [-1.0, 0.0, 1.0, 0.0])
    assert np.isnan(z[4])


def test_identical_dispersions_give_zero_scores():
    y = np.full(6, 0.7)
    z = binned_zscores(y, assign_bins(np.full(6, 1.5), 20))
    np.testing.assert_array_equal(z, np.zeros(6))


def test_binning_policies_differ():
    x = np.array([0.0, 1.0, 2.0, 3.0, 10.0])
    assert assign_bins(x, 2, "equal_width").tolist() == [0, 0, 0, 0, 1]
    assert assign_bins(x, 2, "equal_frequency").tolist() == [0, 0, 0, 1, 1]
    with pytest.raises(ValueError):
        assign_bins(x, 2, "log")


def test_identical_genes_select_all_or_none():
    counts = np.repeat(np.arange(1, 9)[:, None], 4, axis=1)
    ds = normalize(create_dataset(counts, [f"c{i}" for i in range(8)], list("ABCD")))
    for cutoff in (-1.0, 0.0, 0.5):
        out = select_variable_genes(ds, x_low_cutoff=-np.inf, x_high_cutoff=np.inf, y_cutoff=cutoff)
        assert out.gene_meta["selected"].sum() in (0, 4)


def test_genes_with_equal_finite_dispersion_score_zero():
    # equal cell totals: A-D vary identically across cells, E balances them
    v = np.tile(np.arange(1, 5), 2)
    counts = np.column_stack([v, v, v, v, 20 - 4 * v])
    ds = normalize(create_dataset(counts, [f"c{i}" for i in range(8)], list("ABCDE")))
    out = select_variable_genes(ds, x_low_cutoff=-np.inf, x_high_cutoff=np.inf, y_cutoff=0.0)
    meta = out.gene_meta
    dispersion = meta.loc[list("ABCD"), "dispersion"].to_numpy()
    assert np.isfinite(dispersion).all()
    assert (dispersion != 0).all()
    assert np.unique(dispersion).size == 1
    np.testing.assert_array_equal(meta["dispersion_norm"], np.zeros(5))
    assert meta["selected"].all()

    strict = select_variable_genes(ds, x_low_cutoff=-np.inf, x_high_cutoff=np.inf, y_cutoff=0.5)
    assert not strict.gene_meta["selected"].any()


def test_selection_respects_cutoffs(normalized):
    out = select_variable_genes(normalized, x_low_cutoff=0.5, x_high_cutoff=6.0, y_cutoff=0.5)
    meta = out.gene_meta
    assert {"mean", "dispersion", "dispersion_norm", "selected"} <= set(meta.columns)
    chosen = meta[meta["selected"]]
    assert (chosen["mean"] >= 0.5).all()
    assert (chosen["mean"] <= 6.0).all()
    assert (chosen["dispersion_norm"] >= 0.5).all()
    rest = meta[~meta["selected"]]
    eligible = (rest["mean"] >= 0.5) & (rest["mean"] <= 6.0) & (rest["dispersion_norm"] >= 0.5)
    assert not eligible.any()
    assert out.selected_genes() == chosen.index.tolist()
    assert "selected" not in normalized.gene_meta.columns


def test_requires_normalized(two_groups):
    dataset, _ = two_groups
    with pytest.raises(StageOrderError):
        select_variable_genes(dataset)
