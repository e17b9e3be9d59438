import numpy as np
import pytest
import scipy.sparse as sp

from sc_cluster import (
    InputFormatError,
    InvalidAttribute,
    StageOrderError,
    UnknownIdentifier,
    calculate_qc_metrics,
    create_dataset,
)


def _small():
    counts = np.array([[1, 0, 3], [0, 2, 2], [0, 0, 0]])
    return create_dataset(counts, ["c1", "c2", "c3"], ["A", "B", "MT-X"])


def test_create_dataset_computes_qc_metrics():
    ds = _small()
    assert ds.shape == (3, 3)
    np.testing.assert_array_equal(ds.cell_meta["n_genes"], [2, 2, 0])
    np.testing.assert_allclose(ds.cell_meta["n_counts"], [4, 4, 0])
    np.testing.assert_allclose(ds.cell_meta["mito_fraction"], [0.75, 0.5, 0.0])
    np.testing.assert_array_equal(ds.gene_meta["n_cells"], [1, 1, 2])
    assert ds.gene_meta["mito"].tolist() == [False, False, True]


def test_create_dataset_thresholds_drop_genes_then_cells():
    counts = np.array([[1, 0, 3], [0, 2, 2], [0, 0, 0]])
    ds = create_dataset(counts, ["c1", "c2", "c3"], ["A", "B", "MT-X"], min_cells=2, min_genes=1)
    assert ds.gene_ids.tolist() == ["MT-X"]
    assert ds.cell_ids.tolist() == ["c1", "c2"]
    np.testing.assert_array_equal(ds.counts.toarray(), [[3], [2]])
    np.testing.assert_allclose(ds.cell_meta["mito_fraction"], [1.0, 1.0])
    # the loaded matrix is kept whole
    assert ds.raw.shape == (3, 3)


def test_mito_prefix_is_case_insensitive():
    ds = create_dataset(np.ones((2, 2)), ["a", "b"], ["mt-co1", "ACTB"])
    assert ds.gene_meta["mito"].tolist() == [True, False]


@pytest.mark.parametrize(
    "counts, message",
    [
        (np.array([[1, -1], [0, 2]]), "negative"),
        (np.array([[1, np.nan], [0, 2]]), "non-finite"),
        (np.ones(4), "2-dimensional"),
    ],
)
def test_create_dataset_rejects_malformed_counts(counts, message):
    with pytest.raises(InputFormatError) as excinfo:
        create_dataset(counts, ["a", "b"], ["x", "y"])
    assert message in str(excinfo.value)


def test_create_dataset_rejects_duplicated_ids():
    with pytest.raises(InputFormatError):
        create_dataset(np.ones((2, 2)), ["a", "a"], ["x", "y"])


def test_create_dataset_accepts_sparse_input():
    counts = sp.csr_matrix(np.array([[0, 5], [1, 0]]))
    ds = create_dataset(counts, ["a", "b"], ["x", "y"])
    np.testing.assert_array_equal(ds.counts.toarray(), [[0, 5], [1, 0]])


def test_metadata_schema_guards_columns():
    ds = _small()
    with pytest.raises(InvalidAttribute):
        ds.with_cell_columns({"batch": [1, 1, 2]})
    with pytest.raises(InvalidAttribute):
        ds.metadata_column("cell", "batch")

    extended = ds.declare_cell_fields("batch").with_cell_columns({"batch": [1, 1, 2]})
    assert extended.metadata_column("cell", "batch").tolist() == [1, 1, 2]
    # the original is untouched
    assert "batch" not in ds.cell_meta.columns
    assert "batch" not in ds.cell_schema


def test_declared_but_uncomputed_column():
    ds = _small()
    with pytest.raises(InvalidAttribute) as excinfo:
        ds.metadata_column("cell", "cluster")
    msg = str(excinfo.value)
    assert "not been computed" in msg
    assert not msg.startswith("'")


def test_column_length_is_checked():
    ds = _small()
    with pytest.raises(ValueError):
        ds.declare_cell_fields("batch").with_cell_columns({"batch": [1, 2]})


def test_unknown_identifiers():
    ds = _small()
    with pytest.raises(UnknownIdentifier):
        ds.gene_positions(["A", "nope"])
    with pytest.raises(KeyError):
        ds.cell_positions(["zz"])
    np.testing.assert_array_equal(ds.gene_positions(["MT-X", "A"]), [2, 0])


def test_working_matrix_requires_normalization():
    with pytest.raises(StageOrderError):
        _small().working_matrix()
    with pytest.raises(StageOrderError):
        _small().selected_genes()


def test_calculate_qc_metrics_after_subset():
    ds = _small()
    sub = ds.subset(np.array([True, True, False]), np.array([True, False, True]))
    sub = calculate_qc_metrics(sub)
    np.testing.assert_allclose(sub.cell_meta["n_counts"], [4, 2])
    np.testing.assert_allclose(sub.cell_meta["mito_fraction"], [0.75, 1.0])
    np.testing.assert_array_equal(sub.gene_meta["n_cells"], [1, 2])
