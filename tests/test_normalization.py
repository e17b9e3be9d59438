import numpy as np
import pytest

from sc_cluster import EmptyColumn, create_dataset, normalize
from sc_cluster.normalization import NORM, scaled_counts


def test_log_normalize_hand_computed():
    ds = create_dataset(np.array([[1, 3], [2, 2]]), ["c1", "c2"], ["A", "B"])
    out = normalize(ds, scale_factor=100)
    np.testing.assert_allclose(out.normalized.toarray(), np.log1p([[25.0, 75.0], [50.0, 50.0]]))
    assert out.normalization == {"method": "log_normalize", "scale_factor": 100.0}
    # raw counts and the input dataset are untouched
    assert ds.normalized is None
    np.testing.assert_array_equal(out.counts.toarray(), [[1, 3], [2, 2]])


def test_pre_log_intermediate_sums_to_scale_factor(two_groups):
    dataset, _ = two_groups
    for scale_factor in (100, 1e4):
        sums = np.asarray(scaled_counts(dataset.counts, scale_factor).sum(axis=1)).ravel()
        np.testing.assert_allclose(sums, scale_factor)


def test_normalize_reports_empty_cells():
    ds = create_dataset(np.array([[1, 1], [0, 0], [0, 0]]), ["c1", "c2", "c3"], ["A", "B"])
    with pytest.raises(EmptyColumn) as excinfo:
        normalize(ds)
    assert excinfo.value.cell_ids == ["c2", "c3"]
    assert "c2" in str(excinfo.value)


@pytest.mark.parametrize("kwargs", [{"method": "nope"}, {"scale_factor": 0}, {"scale_factor": -1}])
def test_normalize_rejects_bad_arguments(normalized, kwargs):
    with pytest.raises(ValueError):
        normalize(normalized, **kwargs)


def test_normalization_registry(two_groups):
    dataset, _ = two_groups
    assert set(NORM) == {"log_normalize", "pf_log", "cpm_log"}
    cpm = normalize(dataset, method="cpm_log")
    sums = np.asarray(cpm.normalized.expm1().sum(axis=1)).ravel()
    np.testing.assert_allclose(sums, 1e6)


@pytest.mark.parametrize("method, expected", [("log_normalize", 1e4), ("cpm_log", 1e6), ("pf_log", None)])
def test_normalization_records_effective_scale_factor(two_groups, method, expected):
    dataset, _ = two_groups
    out = normalize(dataset, scale_factor=1e4, method=method)
    assert out.normalization == {"method": method, "scale_factor": expected}
    if expected is not None:
        sums = np.asarray(out.normalized.expm1().sum(axis=1)).ravel()
        np.testing.assert_allclose(sums, expected)
