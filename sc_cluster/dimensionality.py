"""Principal components and their significance.

`run_pca` decomposes the working matrix (scaled residuals, or normalized
values when regression was skipped) restricted to a gene set.
`significance_test` is the JackStraw resampling procedure: in each
replicate a small fraction of genes is permuted across cells, PCA is
recomputed, and the loadings of the permuted genes form the null
distribution against which every observed loading is compared.
`elbow_components` is the cheap deterministic alternative.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import chi2_contingency
from sklearn.decomposition import PCA

from .base import PrincipalComponents, component_names
from .dataset import Dataset
from .errors import NoFeaturesSelected, StageOrderError
from .utils import ordered_map

logger = logging.getLogger(__name__)

MIN_PERMUTED_GENES = 3


def pca_decompose(
    matrix: np.ndarray,
    n_components: int,
    svd_solver: str = "full",
    random_state: Optional[int] = 0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return scores (cells x k), loadings (genes x k), variance and ratio.

    The full solver is deterministic; `random_state` only matters for the
    randomized / arpack solvers.
    """
    pca = PCA(n_components=n_components, svd_solver=svd_solver, random_state=random_state)
    scores = pca.fit_transform(matrix)
    return scores, pca.components_.T, pca.explained_variance_, pca.explained_variance_ratio_


def _max_components(n_cells: int, n_genes: int, svd_solver: str) -> int:
    limit = min(n_cells, n_genes)
    if svd_solver == "arpack":
        limit -= 1
    return limit


def run_pca(
    dataset: Dataset,
    genes: Optional[Sequence[str]] = None,
    n_components: int = 20,
    *,
    svd_solver: str = "full",
    random_state: Optional[int] = 0,
) -> PrincipalComponents:
    """PCA of the working matrix restricted to `genes` (default: selected genes).

    Components come back ordered by descending explained variance. A request
    for more components than the data supports is clamped with a warning.
    """
    if genes is None:
        genes = dataset.selected_genes()
        if not genes:
            raise NoFeaturesSelected(
                "No variable genes were selected; relax the dispersion cutoffs or pass genes explicitly."
            )
    genes = list(dict.fromkeys(genes))
    if n_components < 1:
        raise ValueError("n_components must be >= 1")
    matrix = dataset.working_matrix(genes)
    limit = _max_components(*matrix.shape, svd_solver)
    if limit < 1:
        raise ValueError(f"Cannot compute PCA on a {matrix.shape[0]} x {matrix.shape[1]} matrix.")
    if n_components > limit:
        logger.warning("Requested %d components but only %d are available; clamping", n_components, limit)
        n_components = limit

    logger.info("Running PCA on %d cells x %d genes (%d components)", matrix.shape[0], matrix.shape[1], n_components)
    scores, loadings, variance, ratio = pca_decompose(matrix, n_components, svd_solver, random_state)
    names = component_names(n_components)
    return PrincipalComponents(
        loadings=pd.DataFrame(loadings, index=pd.Index(genes, name="gene"), columns=names),
        scores=pd.DataFrame(scores, index=dataset.cell_ids, columns=names),
        explained_variance=np.asarray(variance),
        explained_variance_ratio=np.asarray(ratio),
        parameters={
            "svd_solver": svd_solver,
            "random_state": random_state,
            "source": "residuals" if dataset.residuals is not None else "normalized",
        },
    )


# ----------------------------------------------------------------------
# JackStraw
def _null_loadings(
    matrix: np.ndarray,
    n_components: int,
    n_permuted: int,
    seed: np.random.SeedSequence,
    svd_solver: str,
    random_state: Optional[int],
) -> np.ndarray:
    rng = np.random.default_rng(seed)
    chosen = rng.choice(matrix.shape[1], size=n_permuted, replace=False)
    permuted = matrix.copy()
    for col in chosen:
        permuted[:, col] = rng.permutation(permuted[:, col])
    _, loadings, _, _ = pca_decompose(permuted, n_components, svd_solver, random_state)
    return loadings[chosen, :]


def empirical_pvalues(observed: np.ndarray, null: np.ndarray) -> np.ndarray:
    """Fraction of null |loadings| strictly above each observed |loading|, per column."""
    out = np.empty(observed.shape, dtype=float)
    for j in range(observed.shape[1]):
        ordered = np.sort(np.abs(null[:, j]))
        above = ordered.size - np.searchsorted(ordered, np.abs(observed[:, j]), side="right")
        out[:, j] = above / ordered.size
    return out


def score_components(pvalues: pd.DataFrame, score_threshold: float = 1e-5) -> pd.Series:
    """Per-component p-value for enrichment of low gene p-values.

    Compares the number of genes with p <= `score_threshold` to the number
    expected under the uniform null with a two-sample proportion test
    (chi-square with continuity correction).
    """
    n = pvalues.shape[0]
    expected = int(np.floor(n * score_threshold))
    scores = {}
    for name in pvalues.columns:
        observed = int((pvalues[name] <= score_threshold).sum())
        if observed == expected:
            scores[name] = 1.0
            continue
        table = np.array([[observed, n - observed], [expected, n - expected]])
        _, p, _, _ = chi2_contingency(table, correction=True)
        scores[name] = float(p)
    return pd.Series(scores, name="jackstraw_score")


def significance_test(
    dataset: Dataset,
    components: PrincipalComponents,
    permutation_fraction: float = 0.01,
    n_replicates: int = 100,
    *,
    seed: int = 0,
    score_threshold: float = 1e-5,
    n_jobs: Optional[int] = 1,
    cancel_event: Optional[threading.Event] = None,
) -> PrincipalComponents:
    """JackStraw resampling test of the loadings in `components`.

    Each replicate draws its own generator from SeedSequence(seed), so the
    result does not depend on `n_jobs`. `cancel_event` is checked before
    every replicate.

    Returns:
      `components` with per-gene `pvalues` and per-component scores attached.
    """
    if not 0 < permutation_fraction <= 1:
        raise ValueError("permutation_fraction must be in (0, 1]")
    if n_replicates < 1:
        raise ValueError("n_replicates must be >= 1")
    if not components.cells.equals(dataset.cell_ids):
        raise StageOrderError("Components were computed on a different set of cells; re-run run_pca().")
    genes = list(components.genes)
    matrix = dataset.working_matrix(genes)
    n_genes = matrix.shape[1]
    n_permuted = min(n_genes, max(MIN_PERMUTED_GENES, int(round(n_genes * permutation_fraction))))
    svd_solver = components.parameters.get("svd_solver", "full")
    random_state = components.parameters.get("random_state", 0)
    n_components = components.n_components
    logger.info(
        "JackStraw: %d replicates permuting %d/%d genes, %d components",
        n_replicates, n_permuted, n_genes, n_components,
    )

    seeds = np.random.SeedSequence(seed).spawn(n_replicates)
    nulls = ordered_map(
        lambda s: _null_loadings(matrix, n_components, n_permuted, s, svd_solver, random_state),
        seeds,
        n_jobs=n_jobs,
        cancel_event=cancel_event,
        stage="significance_test",
    )
    null = np.vstack(nulls)
    pvalues = pd.DataFrame(
        empirical_pvalues(components.loadings.to_numpy(), null),
        index=components.genes,
        columns=components.names,
    )
    return components.with_significance(
        pvalues,
        score_components(pvalues, score_threshold),
        permutation_fraction=permutation_fraction,
        n_replicates=n_replicates,
        seed=seed,
        score_threshold=score_threshold,
    )


# ----------------------------------------------------------------------
# choosing how many components to keep
def elbow_components(components: PrincipalComponents) -> int:
    """Number of leading components up to the elbow of the variance curve.

    The elbow is the point furthest from the straight line joining the first
    and last explained-variance values.
    """
    y = np.asarray(components.explained_variance, dtype=float)
    n = y.shape[0]
    if n <= 2:
        return n
    x = np.arange(n, dtype=float)
    dx, dy = x[-1] - x[0], y[-1] - y[0]
    distance = np.abs(dy * x - dx * y + x[-1] * y[0] - y[-1] * x[0]) / np.hypot(dx, dy)
    if np.allclose(distance, 0):
        return n
    return int(np.argmax(distance)) + 1


def significant_components(components: PrincipalComponents, alpha: float = 0.05) -> int:
    """Count of leading components whose JackStraw score is <= alpha."""
    if components.component_scores is None:
        raise StageOrderError("No significance scores; call significance_test() first.")
    count = 0
    for name in components.names:
        if components.component_scores[name] > alpha:
            break
        count += 1
    return count
