import threading

import numpy as np
import pandas as pd
import pytest

from sc_cluster import ClusterAssignment, StageCancelled, find_all_markers, find_markers, top_markers


def _truth_assignment(truth):
    return ClusterAssignment(labels=truth.rename("cluster"))


def test_find_markers_one_vs_rest(normalized, two_groups):
    _, truth = two_groups
    table = find_markers(normalized, _truth_assignment(truth), 0, min_pct=0.1, logfc_threshold=0.25)
    assert list(table.columns) == ["p_val", "avg_logFC", "pct_1", "pct_2", "p_val_adj"]
    up = [f"G{j}" for j in range(5)]
    down = [f"G{j}" for j in range(5, 10)]
    assert set(up) <= set(table.index)
    assert (table.loc[up, "avg_logFC"] > 0).all()
    assert (table.loc[[g for g in down if g in table.index], "avg_logFC"] < 0).all()
    assert (table["p_val_adj"] >= table["p_val"]).all()
    assert (table["p_val_adj"] <= 1.0).all()
    assert table["p_val"].is_monotonic_increasing
    assert table.loc[up, "p_val"].max() < 0.01


def test_only_pos_and_thresholds(normalized, two_groups):
    _, truth = two_groups
    assignment = _truth_assignment(truth)
    pos = find_markers(normalized, assignment, 0, only_pos=True)
    assert (pos["avg_logFC"] >= 0.25).all()
    nothing = find_markers(normalized, assignment, 0, logfc_threshold=100.0)
    assert nothing.empty
    assert list(nothing.columns) == ["p_val", "avg_logFC", "pct_1", "pct_2", "p_val_adj"]


def test_explicit_second_group_matches_rest_for_two_clusters(normalized, two_groups):
    _, truth = two_groups
    assignment = _truth_assignment(truth)
    vs_rest = find_markers(normalized, assignment, 1)
    vs_zero = find_markers(normalized, assignment, 1, ident_2=0)
    pd.testing.assert_frame_equal(vs_rest, vs_zero)


def test_find_all_markers_and_top(normalized, two_groups):
    _, truth = two_groups
    table = find_all_markers(normalized, _truth_assignment(truth), only_pos=True, n_jobs=2)
    assert {"gene", "cluster"} <= set(table.columns)
    assert set(table["cluster"]) == {0, 1}
    top = top_markers(table, n=2)
    assert top.groupby("cluster").size().max() <= 2
    assert set(top.loc[top["cluster"] == 0, "gene"]) <= {f"G{j}" for j in range(5)}


def test_find_all_markers_cancellation(normalized, two_groups):
    _, truth = two_groups
    event = threading.Event()
    event.set()
    with pytest.raises(StageCancelled):
        find_all_markers(normalized, _truth_assignment(truth), cancel_event=event)


def test_single_cluster_has_no_markers(normalized):
    labels = pd.Series(np.zeros(normalized.n_cells, dtype=int), index=normalized.cell_ids)
    table = find_all_markers(normalized, ClusterAssignment(labels=labels))
    assert table.empty
