"""Marker genes: Wilcoxon rank-sum tests between clusters.

Follows Seurat's FindMarkers defaults: fold changes are computed on the
non-logged scale (log of mean(expm1) + 1), genes must be detected in at
least ``min_pct`` of one group and clear the fold-change threshold before
they are tested, and p-values are Bonferroni-adjusted over every gene in
the dataset.
"""

from __future__ import annotations

import logging
import threading
from typing import Hashable, Optional

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.stats import mannwhitneyu

from .base import ClusterAssignment
from .dataset import Dataset
from .errors import StageOrderError
from .utils import ordered_map

logger = logging.getLogger(__name__)

MARKER_COLUMNS = ["p_val", "avg_logFC", "pct_1", "pct_2", "p_val_adj"]


def _empty_table() -> pd.DataFrame:
    return pd.DataFrame(columns=MARKER_COLUMNS, index=pd.Index([], name="gene"), dtype=float)


def _group_stats(values: sp.csr_matrix):
    """Per-gene log(mean(expm1) + 1) and detection fraction."""
    mean = np.asarray(values.expm1().mean(axis=0)).ravel()
    pct = np.asarray((values > 0).astype(float).mean(axis=0)).ravel()
    return np.log1p(mean), np.round(pct, 3)


def find_markers(
    dataset: Dataset,
    assignment: ClusterAssignment,
    ident_1: Hashable,
    ident_2: Optional[Hashable] = None,
    min_pct: float = 0.1,
    logfc_threshold: float = 0.25,
    only_pos: bool = False,
) -> pd.DataFrame:
    """Genes differentially expressed between `ident_1` and `ident_2`.

    With no `ident_2` the comparison is against all remaining cells. The
    returned table is indexed by gene and sorted by p-value.
    """
    if dataset.normalized is None:
        raise StageOrderError("Dataset has not been normalized; call normalize() first.")
    cells_1 = assignment.cells_in(ident_1)
    if ident_2 is None:
        cells_2 = assignment.cells.difference(cells_1, sort=False)
    else:
        cells_2 = assignment.cells_in(ident_2)
    if len(cells_1) == 0 or len(cells_2) == 0:
        raise ValueError(f"Both groups need at least one cell (got {len(cells_1)} and {len(cells_2)}).")

    normalized = sp.csr_matrix(dataset.normalized, dtype=float)
    group_1 = normalized[dataset.cell_positions(cells_1)]
    group_2 = normalized[dataset.cell_positions(cells_2)]
    mean_1, pct_1 = _group_stats(group_1)
    mean_2, pct_2 = _group_stats(group_2)
    logfc = mean_1 - mean_2

    keep = np.maximum(pct_1, pct_2) >= min_pct
    if only_pos:
        keep &= logfc >= logfc_threshold
    else:
        keep &= np.abs(logfc) >= logfc_threshold
    tested = np.flatnonzero(keep)
    logger.debug(
        "find_markers %s vs %s: testing %d/%d genes",
        ident_1, "rest" if ident_2 is None else ident_2, tested.size, dataset.n_genes,
    )
    if tested.size == 0:
        return _empty_table()

    x = group_1[:, tested].toarray()
    y = group_2[:, tested].toarray()
    with np.errstate(divide="ignore", invalid="ignore"):
        _, pvals = mannwhitneyu(x, y, alternative="two-sided", axis=0)
    # genes tied across every cell carry no evidence
    pvals = np.where(np.isfinite(pvals), pvals, 1.0)
    table = pd.DataFrame(
        {
            "p_val": pvals,
            "avg_logFC": logfc[tested],
            "pct_1": pct_1[tested],
            "pct_2": pct_2[tested],
            "p_val_adj": np.minimum(1.0, pvals * dataset.n_genes),
        },
        index=pd.Index(dataset.gene_ids[tested], name="gene"),
    )
    order = np.lexsort((-np.abs(table["avg_logFC"].to_numpy()), table["p_val"].to_numpy()))
    return table.iloc[order]


def find_all_markers(
    dataset: Dataset,
    assignment: Optional[ClusterAssignment] = None,
    *,
    min_pct: float = 0.1,
    logfc_threshold: float = 0.25,
    only_pos: bool = False,
    n_jobs: Optional[int] = 1,
    cancel_event: Optional[threading.Event] = None,
) -> pd.DataFrame:
    """Markers of every cluster against the rest, as one long table.

    Uses the clusters attached to `dataset` when no assignment is given.
    Columns: gene, cluster and the :func:`find_markers` statistics.
    """
    if assignment is None:
        assignment = dataset.clusters
    if assignment is None:
        raise StageOrderError("No cluster assignment; call cluster() first.")
    cluster_ids = assignment.cluster_ids
    if len(cluster_ids) < 2:
        logger.warning("Only one cluster present; no markers computed")
        return pd.DataFrame(columns=["gene", "cluster"] + MARKER_COLUMNS)

    def compute(cid):
        table = find_markers(
            dataset,
            assignment,
            cid,
            min_pct=min_pct,
            logfc_threshold=logfc_threshold,
            only_pos=only_pos,
        )
        table = table.reset_index()
        table.insert(1, "cluster", cid)
        return table

    tables = ordered_map(compute, cluster_ids, n_jobs=n_jobs, cancel_event=cancel_event, stage="find_markers")
    combined = pd.concat(tables, ignore_index=True)
    logger.info("Found %d marker rows across %d clusters", len(combined), len(cluster_ids))
    return combined


def top_markers(table: pd.DataFrame, n: int = 5) -> pd.DataFrame:
    """The `n` markers with the largest avg_logFC in each cluster."""
    if table.empty:
        return table.copy()
    ranked = table.sort_values(["cluster", "avg_logFC"], ascending=[True, False], kind="mergesort")
    return ranked.groupby("cluster", sort=True).head(n).reset_index(drop=True)
