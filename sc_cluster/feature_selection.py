"""Dispersion-based selection of highly variable genes.

For every gene the mean (x) and the dispersion log(variance / mean) (y) are
computed on the non-logged normalized values, as in Seurat's
FindVariableGenes: x = log1p(mean(expm1(v))), y = log(var(expm1(v)) /
mean(expm1(v))). Genes are binned on x, y is z-scored within each bin, and
genes inside the x window whose z-score clears the cutoff are selected.

Binning uses equal-width bins over the observed x range by default (the
Seurat / scanpy convention); equal-frequency bins are available through
``binning="equal_frequency"``. The choice changes which genes are selected
at the bin margins, so it is recorded alongside the results.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .dataset import Dataset
from .errors import StageOrderError

logger = logging.getLogger(__name__)

BINNING = ("equal_width", "equal_frequency")

# relative variance below which a gene is considered constant
_VAR_RTOL = 1e-10


def dispersion_statistics(normalized) -> Tuple[np.ndarray, np.ndarray]:
    """Per-gene (x, y) for a cells x genes log-normalized matrix.

    y is NaN for genes with zero mean or zero variance.
    """
    mat = sp.csr_matrix(normalized, dtype=float).expm1()
    n = mat.shape[0]
    mean = np.asarray(mat.mean(axis=0)).ravel()
    mean_sq = np.asarray(mat.multiply(mat).mean(axis=0)).ravel()
    if n > 1:
        var = (mean_sq - mean ** 2) * (n / (n - 1))
    else:
        var = np.zeros_like(mean)
    var[var <= _VAR_RTOL * mean ** 2] = 0.0
    x = np.log1p(mean)
    y = np.full_like(mean, np.nan)
    ok = (mean > 0) & (var > 0)
    y[ok] = np.log(var[ok] / mean[ok])
    return x, y


def assign_bins(x: np.ndarray, num_bins: int, binning: str = "equal_width") -> np.ndarray:
    """Integer bin per gene (0 .. num_bins-1)."""
    if binning not in BINNING:
        raise ValueError(f"binning must be one of {BINNING}, got {binning!r}")
    if num_bins < 1:
        raise ValueError("num_bins must be >= 1")
    if x.size == 0 or num_bins == 1 or np.ptp(x) == 0:
        return np.zeros(x.shape[0], dtype=int)
    if binning == "equal_width":
        codes = pd.cut(x, bins=num_bins, labels=False)
    else:
        codes = pd.qcut(x, q=num_bins, labels=False, duplicates="drop")
    return np.asarray(codes, dtype=int)


def binned_zscores(y: np.ndarray, bins: np.ndarray) -> np.ndarray:
    """Z-score y within each bin.

    Bins holding fewer than two finite values, or whose values do not vary,
    give a z-score of 0. Non-finite y stays NaN.
    """
    z = np.full(y.shape[0], np.nan)
    finite = np.isfinite(y)
    frame = pd.DataFrame({"y": y[finite], "bin": bins[finite]})
    stats = frame.groupby("bin")["y"].agg(["mean", "std", "count"])
    bin_mean = stats["mean"].reindex(bins[finite]).to_numpy()
    bin_sd = stats["std"].reindex(bins[finite]).to_numpy()
    bin_n = stats["count"].reindex(bins[finite]).to_numpy()
    # rounding can leave a tiny sd in a bin of equal values
    tiny = _VAR_RTOL * np.maximum(1.0, np.abs(bin_mean))
    degenerate = (bin_n < 2) | ~np.isfinite(bin_sd) | (bin_sd <= tiny)
    safe_sd = np.where(degenerate, 1.0, bin_sd)
    z[finite] = np.where(degenerate, 0.0, (y[finite] - bin_mean) / safe_sd)
    return z


def select_variable_genes(
    dataset: Dataset,
    x_low_cutoff: float = 0.0125,
    x_high_cutoff: float = 3.0,
    y_cutoff: float = 0.5,
    num_bins: int = 20,
    *,
    y_high_cutoff: float = np.inf,
    binning: str = "equal_width",
) -> Dataset:
    """Flag highly variable genes in the gene metadata.

    Writes ``mean``, ``dispersion``, ``dispersion_norm`` and ``selected``.
    A gene is selected iff x_low_cutoff <= x <= x_high_cutoff and
    y_cutoff <= z <= y_high_cutoff.
    """
    if dataset.normalized is None:
        raise StageOrderError("Dataset has not been normalized; call normalize() first.")
    x, y = dispersion_statistics(dataset.normalized)
    bins = assign_bins(x, num_bins, binning)
    z = binned_zscores(y, bins)
    with np.errstate(invalid="ignore"):
        selected = (
            (x >= x_low_cutoff)
            & (x <= x_high_cutoff)
            & (z >= y_cutoff)
            & (z <= y_high_cutoff)
        )
    selected &= np.isfinite(z)
    logger.info(
        "Selected %d/%d variable genes (x in [%g, %g], z >= %g, %d %s bins)",
        selected.sum(), dataset.n_genes, x_low_cutoff, x_high_cutoff, y_cutoff, num_bins, binning,
    )
    return dataset.with_gene_columns(
        pd.DataFrame(
            {"mean": x, "dispersion": y, "dispersion_norm": z, "selected": selected},
            index=dataset.gene_ids,
        )
    )
