"""The Dataset container shared by every pipeline stage.

A Dataset owns the raw count matrix exactly as it was loaded together with
the positions of the cells and genes that survived filtering. Stages never
edit a Dataset in place: they narrow the identifier sets or attach a new
derived artifact and hand back a new value, so the raw counts of any
retained cell/gene can always be traced back to the input.

Matrices are stored cells x genes (rows = cells), as in AnnData.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .base import (
    CELL_SCHEMA,
    GENE_SCHEMA,
    ClusterAssignment,
    MetadataSchema,
    PrincipalComponents,
)
from .errors import InputFormatError, InvalidAttribute, StageOrderError, UnknownIdentifier

logger = logging.getLogger(__name__)

ColumnValues = Union[pd.DataFrame, Mapping[str, Any]]


@dataclass(frozen=True, eq=False)
class Dataset:
    """Raw counts, metadata and derived matrices for one project.

    Attributes:
      project: Free-text label for the dataset.
      raw: Full raw count matrix (cells x genes) as loaded; never modified.
      raw_cell_ids, raw_gene_ids: Identifiers for the rows/columns of `raw`.
      cell_index, gene_index: Positions in `raw` of the surviving cells/genes.
      cell_meta, gene_meta: Per-cell / per-gene records, indexed by id and
        constrained by `cell_schema` / `gene_schema`.
      normalized: Log-normalized values aligned with the surviving ids.
      residuals: Scaled regression residuals (cells x regressed genes).
      components, clusters: Artifacts attached by the pipeline.
    """

    project: str
    raw: sp.csr_matrix
    raw_cell_ids: pd.Index
    raw_gene_ids: pd.Index
    cell_index: np.ndarray
    gene_index: np.ndarray
    cell_meta: pd.DataFrame
    gene_meta: pd.DataFrame
    cell_schema: MetadataSchema = CELL_SCHEMA
    gene_schema: MetadataSchema = GENE_SCHEMA
    normalized: Optional[sp.csr_matrix] = None
    normalization: Mapping[str, Any] = field(default_factory=dict)
    residuals: Optional[pd.DataFrame] = None
    regression: Mapping[str, Any] = field(default_factory=dict)
    components: Optional[PrincipalComponents] = None
    clusters: Optional[ClusterAssignment] = None

    # ------------------------------------------------------------------
    # identifiers
    @property
    def cell_ids(self) -> pd.Index:
        return self.cell_meta.index

    @property
    def gene_ids(self) -> pd.Index:
        return self.gene_meta.index

    @property
    def n_cells(self) -> int:
        return int(self.cell_index.shape[0])

    @property
    def n_genes(self) -> int:
        return int(self.gene_index.shape[0])

    @property
    def shape(self):
        return (self.n_cells, self.n_genes)

    @property
    def counts(self) -> sp.csr_matrix:
        """Raw counts restricted to the surviving cells and genes."""
        return self.raw[self.cell_index][:, self.gene_index].tocsr()

    def __repr__(self) -> str:
        stages = [
            name
            for name, present in (
                ("normalized", self.normalized is not None),
                ("residuals", self.residuals is not None),
                ("components", self.components is not None),
                ("clusters", self.clusters is not None),
            )
            if present
        ]
        return (
            f"Dataset(project={self.project!r}, n_cells={self.n_cells}, "
            f"n_genes={self.n_genes}, artifacts={stages})"
        )

    def gene_positions(self, genes: Sequence[str]) -> np.ndarray:
        positions = self.gene_ids.get_indexer(pd.Index(genes))
        if (positions < 0).any():
            missing = [g for g, p in zip(genes, positions) if p < 0]
            raise UnknownIdentifier(f"Gene(s) not in dataset: {missing[:10]}")
        return positions

    def cell_positions(self, cells: Sequence[str]) -> np.ndarray:
        positions = self.cell_ids.get_indexer(pd.Index(cells))
        if (positions < 0).any():
            missing = [c for c, p in zip(cells, positions) if p < 0]
            raise UnknownIdentifier(f"Cell(s) not in dataset: {missing[:10]}")
        return positions

    # ------------------------------------------------------------------
    # metadata
    def metadata_column(self, kind: str, name: str) -> pd.Series:
        """Return a computed metadata column, or raise InvalidAttribute."""
        meta, schema = self.metadata_for(kind)
        if name not in schema:
            raise InvalidAttribute(
                f"'{name}' is not a declared {kind} attribute. Declared: {list(schema.columns)}"
            )
        if name not in meta.columns:
            raise InvalidAttribute(f"{kind} attribute '{name}' is declared but has not been computed yet.")
        return meta[name]

    def has_column(self, kind: str, name: str) -> bool:
        meta, schema = self.metadata_for(kind)
        return name in schema and name in meta.columns

    def metadata_for(self, kind: str):
        if kind == "cell":
            return self.cell_meta, self.cell_schema
        if kind == "gene":
            return self.gene_meta, self.gene_schema
        raise ValueError(f"kind must be 'cell' or 'gene', got {kind!r}")

    def declare_cell_fields(self, *names: str) -> "Dataset":
        return replace(self, cell_schema=self.cell_schema.declare(*names))

    def declare_gene_fields(self, *names: str) -> "Dataset":
        return replace(self, gene_schema=self.gene_schema.declare(*names))

    def with_cell_columns(self, values: ColumnValues) -> "Dataset":
        return replace(self, cell_meta=_assign_columns(self.cell_meta, self.cell_schema, values))

    def with_gene_columns(self, values: ColumnValues) -> "Dataset":
        return replace(self, gene_meta=_assign_columns(self.gene_meta, self.gene_schema, values))

    # ------------------------------------------------------------------
    # derived matrices
    def working_matrix(self, genes: Optional[Sequence[str]] = None) -> np.ndarray:
        """Dense cells x genes values used for dimensionality reduction.

        Residuals are used when regression has run, otherwise the
        normalized values.
        """
        genes = list(self.gene_ids) if genes is None else list(genes)
        self.gene_positions(genes)
        if self.residuals is not None:
            missing = [g for g in genes if g not in self.residuals.columns]
            if missing:
                raise StageOrderError(
                    f"Residuals were not computed for {len(missing)} requested gene(s), "
                    f"e.g. {missing[:5]}. Re-run regress_out including them."
                )
            return self.residuals.loc[:, genes].to_numpy(dtype=float)
        if self.normalized is None:
            raise StageOrderError("Dataset has not been normalized; call normalize() first.")
        cols = self.gene_positions(genes)
        return self.normalized[:, cols].toarray().astype(float, copy=False)

    def selected_genes(self) -> list:
        if not self.has_column("gene", "selected"):
            raise StageOrderError("No variable genes recorded; call select_variable_genes() first.")
        selected = self.gene_meta["selected"].fillna(False).astype(bool)
        return self.gene_ids[selected.to_numpy()].tolist()

    def attach(
        self,
        *,
        components: Optional[PrincipalComponents] = None,
        clusters: Optional[ClusterAssignment] = None,
    ) -> "Dataset":
        """Return a Dataset carrying the given artifacts."""
        updated = self
        if components is not None:
            extra = components.cells.difference(self.cell_ids)
            if len(extra) or len(components.cells) != self.n_cells:
                raise ValueError("Components were computed on a different set of cells.")
            updated = replace(updated, components=components)
        if clusters is not None:
            if not clusters.cells.sort_values().equals(self.cell_ids.sort_values()):
                raise ValueError("Cluster assignment does not cover exactly the dataset's cells.")
            updated = replace(updated, clusters=clusters)
            updated = updated.with_cell_columns({"cluster": clusters.labels})
        return updated

    # ------------------------------------------------------------------
    def subset(self, cell_keep: np.ndarray, gene_keep: np.ndarray) -> "Dataset":
        """Keep the cells/genes flagged in the boolean masks (current positions)."""
        cell_keep = np.asarray(cell_keep, dtype=bool)
        gene_keep = np.asarray(gene_keep, dtype=bool)
        if cell_keep.shape != (self.n_cells,) or gene_keep.shape != (self.n_genes,):
            raise ValueError("Masks must match the current number of cells and genes.")
        cell_meta = self.cell_meta.loc[cell_keep].copy()
        gene_meta = self.gene_meta.loc[gene_keep].copy()
        normalized = None
        if self.normalized is not None:
            normalized = self.normalized[np.flatnonzero(cell_keep)][:, np.flatnonzero(gene_keep)].tocsr()
        residuals = None
        if self.residuals is not None:
            surviving = set(gene_meta.index)
            kept_genes = [g for g in self.residuals.columns if g in surviving]
            residuals = self.residuals.loc[cell_meta.index, kept_genes]
        components, clusters = self.components, self.clusters
        if cell_keep.all():
            if components is not None and not gene_keep.all():
                dropped = components.genes.difference(gene_meta.index)
                if len(dropped):
                    logger.info("Dropping principal components: %d loading genes were filtered", len(dropped))
                    components = None
        else:
            if components is not None or clusters is not None:
                logger.info("Dropping components/clusters computed on the previous cell set")
            components, clusters = None, None
            if "cluster" in cell_meta.columns:
                cell_meta = cell_meta.drop(columns="cluster")
        return replace(
            self,
            cell_index=self.cell_index[cell_keep],
            gene_index=self.gene_index[gene_keep],
            cell_meta=cell_meta,
            gene_meta=gene_meta,
            normalized=normalized,
            residuals=residuals,
            components=components,
            clusters=clusters,
        )


def _assign_columns(meta: pd.DataFrame, schema: MetadataSchema, values: ColumnValues) -> pd.DataFrame:
    if isinstance(values, pd.DataFrame):
        items = {col: values[col] for col in values.columns}
    else:
        items = dict(values)
    schema.validate(items.keys())
    out = meta.copy()
    for name, column in items.items():
        if isinstance(column, pd.Series):
            missing = meta.index.difference(column.index)
            if len(missing):
                raise ValueError(
                    f"Column '{name}' has no value for {len(missing)} {schema.kind}(s), e.g. {missing[:5].tolist()}"
                )
            out[name] = column.reindex(meta.index)
        else:
            arr = np.asarray(column)
            if arr.shape[0] != meta.shape[0]:
                raise ValueError(
                    f"Column '{name}' has {arr.shape[0]} values for {meta.shape[0]} {schema.kind}s."
                )
            out[name] = arr
    return out


# ----------------------------------------------------------------------
# construction
def _as_count_matrix(counts: Any) -> sp.csr_matrix:
    if isinstance(counts, pd.DataFrame):
        counts = counts.to_numpy()
    if sp.issparse(counts):
        mat = sp.csr_matrix(counts)
    else:
        arr = np.asarray(counts)
        if arr.ndim != 2:
            raise InputFormatError(f"Count matrix must be 2-dimensional, got shape {arr.shape}.")
        mat = sp.csr_matrix(arr)
    if not np.issubdtype(mat.dtype, np.number):
        raise InputFormatError(f"Count matrix must be numeric, got dtype {mat.dtype}.")
    mat.sum_duplicates()
    if mat.nnz and not np.isfinite(mat.data).all():
        raise InputFormatError("Count matrix contains non-finite values.")
    if mat.nnz and (mat.data < 0).any():
        raise InputFormatError("Count matrix contains negative values; raw counts must be >= 0.")
    return mat


def _check_ids(ids: Sequence[Any], kind: str) -> pd.Index:
    index = pd.Index([str(x) for x in ids], name=kind)
    if not index.is_unique:
        dupes = index[index.duplicated()].unique().tolist()
        raise InputFormatError(f"Duplicated {kind} identifiers: {dupes[:10]}")
    return index


def qc_metrics(counts: sp.csr_matrix, mito: np.ndarray):
    """Per-cell (n_genes, n_counts, mito_fraction) and per-gene n_cells."""
    detected = counts > 0
    n_genes = np.asarray(detected.sum(axis=1)).ravel().astype(np.int64)
    n_counts = np.asarray(counts.sum(axis=1)).ravel().astype(float)
    n_cells = np.asarray(detected.sum(axis=0)).ravel().astype(np.int64)
    if mito.any():
        mito_counts = np.asarray(counts[:, np.flatnonzero(mito)].sum(axis=1)).ravel().astype(float)
    else:
        mito_counts = np.zeros(counts.shape[0], dtype=float)
    mito_fraction = np.divide(mito_counts, n_counts, out=np.zeros_like(mito_counts), where=n_counts > 0)
    return n_genes, n_counts, mito_fraction, n_cells


def create_dataset(
    counts: Any,
    cell_ids: Sequence[Any],
    gene_ids: Sequence[Any],
    *,
    project: str = "sc_cluster",
    min_cells: int = 0,
    min_genes: int = 0,
    mito_prefix: str = "MT-",
) -> Dataset:
    """Build a Dataset from a cells x genes count matrix.

    Genes detected in fewer than ``min_cells`` cells are dropped first, QC
    metrics are then computed on the remaining genes, and cells with fewer
    than ``min_genes`` detected genes are dropped.
    """
    mat = _as_count_matrix(counts)
    cells = _check_ids(cell_ids, "cell")
    genes = _check_ids(gene_ids, "gene")
    expected = (len(cells), len(genes))
    if mat.shape != expected:
        if mat.shape == expected[::-1]:
            raise InputFormatError(
                f"Count matrix has shape {mat.shape} but {len(cells)} cells and {len(genes)} genes "
                "were given; expected cells x genes. Did you pass genes x cells? Transpose the matrix."
            )
        raise InputFormatError(
            f"Count matrix shape {mat.shape} does not match {len(cells)} cells x {len(genes)} genes."
        )
    mito = genes.str.upper().str.startswith(mito_prefix.upper()) if mito_prefix else np.zeros(len(genes), bool)
    mito = np.asarray(mito, dtype=bool)

    n_cells_per_gene = np.asarray((mat > 0).sum(axis=0)).ravel()
    gene_index = np.flatnonzero(n_cells_per_gene >= min_cells)
    sub = mat[:, gene_index].tocsr()
    n_genes, n_counts, mito_fraction, _ = qc_metrics(sub, mito[gene_index])
    cell_index = np.flatnonzero(n_genes >= min_genes)
    logger.info(
        "Created dataset %r: kept %d/%d cells and %d/%d genes (min_cells=%d, min_genes=%d)",
        project, len(cell_index), len(cells), len(gene_index), len(genes), min_cells, min_genes,
    )

    kept = sub[cell_index]
    n_genes, n_counts, mito_fraction, n_cells = qc_metrics(kept, mito[gene_index])
    cell_meta = pd.DataFrame(
        {"n_genes": n_genes, "n_counts": n_counts, "mito_fraction": mito_fraction},
        index=cells[cell_index],
    )
    gene_meta = pd.DataFrame(
        {"n_cells": n_cells, "mito": mito[gene_index]},
        index=genes[gene_index],
    )
    return Dataset(
        project=project,
        raw=mat,
        raw_cell_ids=cells,
        raw_gene_ids=genes,
        cell_index=cell_index.astype(np.intp),
        gene_index=gene_index.astype(np.intp),
        cell_meta=cell_meta,
        gene_meta=gene_meta,
    )


def calculate_qc_metrics(dataset: Dataset) -> Dataset:
    """Recompute QC columns over the current cells and genes."""
    n_genes, n_counts, mito_fraction, n_cells = qc_metrics(
        dataset.counts, dataset.gene_meta["mito"].to_numpy(dtype=bool)
    )
    return dataset.with_cell_columns(
        {"n_genes": n_genes, "n_counts": n_counts, "mito_fraction": mito_fraction}
    ).with_gene_columns({"n_cells": n_cells})
