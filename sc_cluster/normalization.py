import logging
from dataclasses import replace

import numpy as np
import scipy as sp
import scipy.sparse

from .dataset import Dataset
from .errors import EmptyColumn

logger = logging.getLogger(__name__)


def do_pf(mtx, sf=None):
    """Rescale every row (cell) of `mtx` to sum to `sf`.

    With no `sf` the rows are scaled to the mean depth ("proportional
    fitting"). Rows summing to zero must be removed by the caller.
    """
    pf = np.asarray(mtx.sum(axis=1)).ravel().astype(float)
    if not sf:
        sf = pf.mean()
    pf = sp.sparse.diags(sf / pf) @ mtx
    return sp.sparse.csr_matrix(pf)


def scaled_counts(mtx, scale_factor=1e4):
    """Counts rescaled so each cell sums to `scale_factor` (before the log)."""
    return do_pf(sp.sparse.csr_matrix(mtx, dtype=float), sf=scale_factor)


def norm_log_normalize(mtx, scale_factor=1e4):
    """Per-cell rescale to `scale_factor` then log1p (Seurat's LogNormalize).

    Parameters:
      mtx: Sparse counts (cells x genes).
      scale_factor: Target total per cell, conventionally 10,000.

    Returns:
      Sparse matrix of the same shape.
    """
    return scaled_counts(mtx, scale_factor).log1p()


def norm_pf_log(mtx, scale_factor=None):
    # scale_factor is ignored: rows go to the mean depth
    return do_pf(sp.sparse.csr_matrix(mtx, dtype=float)).log1p()


def norm_cpm_log(mtx, scale_factor=None):
    return scaled_counts(mtx, 1e6).log1p()


NORM = {
    "log_normalize": norm_log_normalize,
    "pf_log": norm_pf_log,
    "cpm_log": norm_cpm_log,
}

# methods whose target total is fixed; None means each cell goes to the mean depth
FIXED_SCALE = {
    "pf_log": None,
    "cpm_log": 1e6,
}


def normalize(dataset: Dataset, scale_factor: float = 1e4, method: str = "log_normalize") -> Dataset:
    """Attach a normalized matrix to the dataset; raw counts are untouched.

    Raises EmptyColumn naming the cells whose total count is zero.
    """
    if method not in NORM:
        raise ValueError("method arg must be one of:" + ", ".join(sorted(NORM)))
    if scale_factor is None or scale_factor <= 0:
        raise ValueError(f"scale_factor must be positive, got {scale_factor}")
    counts = dataset.counts
    totals = np.asarray(counts.sum(axis=1)).ravel()
    empty = np.flatnonzero(totals == 0)
    if empty.size:
        raise EmptyColumn(dataset.cell_ids[empty].tolist())
    effective = FIXED_SCALE.get(method, float(scale_factor))
    logger.info("Normalizing %d cells x %d genes (%s, scale_factor=%s)", *counts.shape, method, effective)
    normalized = NORM[method](counts, scale_factor=scale_factor)
    return replace(
        dataset,
        normalized=normalized,
        normalization={"method": method, "scale_factor": effective},
        residuals=None,
        regression={},
        components=None,
        clusters=None,
        cell_meta=dataset.cell_meta.drop(columns="cluster", errors="ignore"),
    )
