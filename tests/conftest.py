import numpy as np
import pandas as pd
import pytest

from sc_cluster import create_dataset, normalize


def two_group_counts(n_per_group=20, n_genes=30, seed=0):
    """Poisson counts for two cell groups, each with five up-regulated genes."""
    rng = np.random.default_rng(seed)
    base = rng.uniform(0.5, 3.0, size=n_genes)
    lam = np.tile(base, (2 * n_per_group, 1))
    lam[:n_per_group, :5] *= 8.0
    lam[n_per_group:, 5:10] *= 8.0
    counts = rng.poisson(lam).astype(np.int64)
    cells = [f"cell{i}" for i in range(2 * n_per_group)]
    genes = [f"G{j}" for j in range(n_genes - 1)] + ["MT-ND1"]
    truth = pd.Series(np.repeat([0, 1], n_per_group), index=cells, name="truth")
    return counts, cells, genes, truth


@pytest.fixture
def two_groups():
    counts, cells, genes, truth = two_group_counts()
    return create_dataset(counts, cells, genes, project="two_groups"), truth


@pytest.fixture
def normalized(two_groups):
    dataset, _ = two_groups
    return normalize(dataset, scale_factor=1e4)
