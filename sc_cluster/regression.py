"""Regress unwanted per-cell covariates out of the normalized values.

Each gene's normalized expression is fitted by ordinary least squares
against an intercept plus the requested cell covariates; the residuals are
then centred, scaled to unit variance and clipped, which is what the
downstream PCA consumes. With no covariates this reduces to plain scaling.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .dataset import Dataset
from .errors import MissingCovariate, SingularDesign, StageOrderError
from .utils import ordered_map

logger = logging.getLogger(__name__)

# standard deviations at or below this are treated as zero
_SD_EPS = 1e-12


def design_matrix(dataset: Dataset, covariates: Sequence[str]) -> np.ndarray:
    """Intercept column followed by one column per covariate (cells x p)."""
    missing = [c for c in covariates if not dataset.has_column("cell", c)]
    if missing:
        raise MissingCovariate(
            f"Covariate(s) {missing} not found in cell metadata. "
            f"Available: {list(dataset.cell_meta.columns)}"
        )
    columns = [np.ones(dataset.n_cells)]
    for name in covariates:
        columns.append(dataset.cell_meta[name].to_numpy(dtype=float))
    design = np.column_stack(columns)
    if not np.isfinite(design).all():
        bad = [c for c in covariates if not np.isfinite(dataset.cell_meta[c].to_numpy(dtype=float)).all()]
        raise ValueError(f"Covariate(s) {bad} contain non-finite values.")
    n, p = design.shape
    if n < p:
        raise SingularDesign(
            f"{n} cell(s) cannot support an intercept plus {len(covariates)} covariate(s) {list(covariates)}."
        )
    rank = int(np.linalg.matrix_rank(design))
    if rank < p:
        raise SingularDesign(
            f"Design matrix for covariates {list(covariates)} is rank-deficient "
            f"(rank {rank} < {p} columns, {n} cells)."
        )
    return design


def scale_columns(values: np.ndarray, scale_max: Optional[float] = 10.0) -> np.ndarray:
    """Center and scale each column to unit sample variance, then clip.

    Columns with zero variance become all zeros. Only the upper tail is
    clipped, at ``scale_max``.
    """
    centered = values - values.mean(axis=0, keepdims=True)
    if values.shape[0] > 1:
        sd = centered.std(axis=0, ddof=1, keepdims=True)
    else:
        sd = np.zeros((1, values.shape[1]))
    scaled = np.divide(centered, sd, out=np.zeros_like(centered), where=sd > _SD_EPS)
    if scale_max is not None:
        np.minimum(scaled, scale_max, out=scaled)
    return scaled


def _fit_chunk(values: np.ndarray, design: np.ndarray, scale_max: Optional[float]) -> Tuple[np.ndarray, np.ndarray]:
    coef, _, _, _ = np.linalg.lstsq(design, values, rcond=None)
    residuals = values - design @ coef
    return coef, scale_columns(residuals, scale_max)


def regress_out(
    dataset: Dataset,
    covariates: Sequence[str] = ("n_counts", "mito_fraction"),
    *,
    genes: Optional[Sequence[str]] = None,
    scale_max: Optional[float] = 10.0,
    chunk_size: int = 1000,
    n_jobs: Optional[int] = 1,
    cancel_event: Optional[threading.Event] = None,
) -> Dataset:
    """Attach scaled regression residuals as the working matrix.

    Parameters:
      dataset: A normalized Dataset.
      covariates: Cell metadata columns to regress out. Empty means scale only.
      genes: Genes to process (default: all genes).
      scale_max: Clip scaled residuals above this value (None disables).
      chunk_size: Genes per unit of work. Output does not depend on n_jobs.
      n_jobs: Worker threads (0 = all CPUs).
      cancel_event: Checked before every chunk; raises StageCancelled when set.

    Returns:
      A new Dataset with `residuals` and `coef_*` gene columns. Coefficients of
      an earlier fit are dropped, as are attached components and clusters.
    """
    if dataset.normalized is None:
        raise StageOrderError("Dataset has not been normalized; call normalize() first.")
    covariates = list(covariates)
    design = design_matrix(dataset, covariates)
    genes = list(dataset.gene_ids) if genes is None else list(dict.fromkeys(genes))
    positions = dataset.gene_positions(genes)
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    chunks: List[np.ndarray] = [positions[i:i + chunk_size] for i in range(0, len(positions), chunk_size)]
    logger.info(
        "Regressing %s out of %d genes across %d cells (%d chunk(s))",
        covariates or "nothing", len(genes), dataset.n_cells, len(chunks),
    )

    def work(cols: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        values = dataset.normalized[:, cols].toarray().astype(float, copy=False)
        return _fit_chunk(values, design, scale_max)

    results = ordered_map(work, chunks, n_jobs=n_jobs, cancel_event=cancel_event, stage="regress_out")
    if results:
        coefs = np.hstack([r[0] for r in results])
        residuals = np.hstack([r[1] for r in results])
    else:
        coefs = np.zeros((design.shape[1], 0))
        residuals = np.zeros((dataset.n_cells, 0))

    coef_names = ["coef_intercept"] + [f"coef_{c}" for c in covariates]
    coef_frame = pd.DataFrame(np.nan, index=dataset.gene_ids, columns=coef_names)
    coef_frame.iloc[positions, :] = coefs.T
    # coefficients of an earlier fit describe a model that is being replaced
    stale = [c for c in dataset.gene_meta.columns if c.startswith("coef_")]
    cleared = replace(
        dataset,
        gene_meta=dataset.gene_meta.drop(columns=stale),
        cell_meta=dataset.cell_meta.drop(columns="cluster", errors="ignore"),
    )
    updated = cleared.declare_gene_fields(*coef_names).with_gene_columns(coef_frame)
    return replace(
        updated,
        residuals=pd.DataFrame(residuals, index=dataset.cell_ids, columns=pd.Index(genes, name="gene")),
        regression={"covariates": tuple(covariates), "scale_max": scale_max, "n_genes": len(genes)},
        components=None,
        clusters=None,
    )
