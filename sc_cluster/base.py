"""Shared data structures: metadata schemas and stage artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import InvalidAttribute, UnknownIdentifier


@dataclass(frozen=True)
class MetadataSchema:
    """Declared columns for one kind of metadata (``"cell"`` or ``"gene"``).

    Required columns are filled when a Dataset is built. Optional columns
    may be written by later stages; anything else has to be declared first
    through :meth:`declare`.
    """

    kind: str
    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.required + self.optional

    def __contains__(self, name: object) -> bool:
        return name in self.columns

    def declare(self, *names: str) -> "MetadataSchema":
        """Return a schema with ``names`` added as optional fields."""
        extra = tuple(n for n in dict.fromkeys(names) if n not in self.columns)
        if not extra:
            return self
        return replace(self, optional=self.optional + extra)

    def validate(self, names: Iterable[str]) -> None:
        undeclared = [n for n in names if n not in self.columns]
        if undeclared:
            raise InvalidAttribute(
                f"Undeclared {self.kind} metadata column(s): {undeclared}. "
                f"Declared columns: {list(self.columns)}"
            )


CELL_SCHEMA = MetadataSchema(
    kind="cell",
    required=("n_genes", "n_counts", "mito_fraction"),
    optional=("cluster",),
)

GENE_SCHEMA = MetadataSchema(
    kind="gene",
    required=("n_cells", "mito"),
    optional=("mean", "dispersion", "dispersion_norm", "selected"),
)


def component_names(n: int) -> List[str]:
    return [f"PC{i + 1}" for i in range(n)]


@dataclass(frozen=True, eq=False)
class PrincipalComponents:
    """Result of a principal component decomposition.

    Parameters
    ----------
    loadings:
        Genes x components loading matrix (columns ``PC1..PCk``).
    scores:
        Cells x components score matrix.
    explained_variance, explained_variance_ratio:
        Per-component variance, non-increasing.
    pvalues:
        Optional genes x components empirical p-values from resampling.
    component_scores:
        Optional per-component significance derived from ``pvalues``.
    """

    loadings: pd.DataFrame
    scores: pd.DataFrame
    explained_variance: np.ndarray
    explained_variance_ratio: np.ndarray
    pvalues: Optional[pd.DataFrame] = None
    component_scores: Optional[pd.Series] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def n_components(self) -> int:
        return int(self.loadings.shape[1])

    @property
    def names(self) -> List[str]:
        return list(self.loadings.columns)

    @property
    def genes(self) -> pd.Index:
        return self.loadings.index

    @property
    def cells(self) -> pd.Index:
        return self.scores.index

    def with_significance(
        self,
        pvalues: pd.DataFrame,
        component_scores: Optional[pd.Series] = None,
        **parameters: Any,
    ) -> "PrincipalComponents":
        return replace(
            self,
            pvalues=pvalues,
            component_scores=component_scores,
            parameters={**self.parameters, **parameters},
        )

    def top_genes(self, component: str, n: int = 5) -> Tuple[List[str], List[str]]:
        """Genes with the most positive and most negative loadings."""
        if component not in self.loadings.columns:
            raise KeyError(f"Component '{component}' not found. Available: {self.names}")
        ordered = self.loadings[component].sort_values(kind="mergesort")
        negative = ordered.index[:n].tolist()
        positive = ordered.index[::-1][:n].tolist()
        return positive, negative


@dataclass(frozen=True, eq=False)
class ClusterAssignment:
    """One cluster label per cell, indexed by cell id."""

    labels: pd.Series
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.labels.index.is_unique:
            dupes = self.labels.index[self.labels.index.duplicated()].unique().tolist()
            raise ValueError(f"Cells assigned more than once: {dupes[:5]}")
        if self.labels.isna().any():
            missing = self.labels.index[self.labels.isna()].tolist()
            raise ValueError(f"Cells without a cluster label: {missing[:5]}")

    def __len__(self) -> int:
        return int(self.labels.shape[0])

    @property
    def cells(self) -> pd.Index:
        return self.labels.index

    @property
    def cluster_ids(self) -> List[Hashable]:
        return sorted(pd.unique(self.labels), key=lambda x: (str(type(x)), x))

    @property
    def n_clusters(self) -> int:
        return len(self.cluster_ids)

    def sizes(self) -> pd.Series:
        return self.labels.value_counts()

    def cells_in(self, cluster_id: Hashable) -> pd.Index:
        if cluster_id not in set(self.labels):
            raise UnknownIdentifier(f"Cluster '{cluster_id}' not present. Available: {self.cluster_ids}")
        return self.labels.index[self.labels == cluster_id]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"cell": self.labels.index, "cluster": self.labels.to_numpy()})

    def to_dict(self) -> Dict[Hashable, Hashable]:
        return self.labels.to_dict()
