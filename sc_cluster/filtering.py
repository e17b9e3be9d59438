"""Threshold filtering of cells and genes on metadata columns."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .dataset import Dataset
from .errors import InvalidAttribute

logger = logging.getLogger(__name__)

AXES = ("cell", "gene")


@dataclass(frozen=True)
class Predicate:
    """Inclusive ``low <= attribute <= high`` bound; ``None`` leaves a side open.

    ``axis`` pins the lookup to cell or gene metadata. When omitted the
    attribute is looked up in cell metadata first, then gene metadata.
    """

    attribute: str
    low: Optional[float] = None
    high: Optional[float] = None
    axis: Optional[str] = None

    def __post_init__(self) -> None:
        if self.axis is not None and self.axis not in AXES:
            raise ValueError(f"axis must be one of {AXES}, got {self.axis!r}")
        if self.low is not None and self.high is not None and self.low > self.high:
            raise ValueError(
                f"Lower bound {self.low} exceeds upper bound {self.high} for '{self.attribute}'."
            )

    def mask(self, values: pd.Series) -> np.ndarray:
        arr = values.to_numpy(dtype=float)
        keep = np.ones(arr.shape[0], dtype=bool)
        if self.low is not None:
            keep &= arr >= self.low
        if self.high is not None:
            keep &= arr <= self.high
        return keep


PredicateLike = Union[Predicate, Tuple, Mapping]


def _coerce(predicate: PredicateLike) -> Predicate:
    if isinstance(predicate, Predicate):
        return predicate
    if isinstance(predicate, Mapping):
        return Predicate(**predicate)
    if isinstance(predicate, tuple) and len(predicate) in (3, 4):
        return Predicate(*predicate)
    raise TypeError(
        "Predicates must be Predicate objects, (attribute, low, high[, axis]) tuples or mappings; "
        f"got {predicate!r}"
    )


def _resolve_axis(dataset: Dataset, predicate: Predicate) -> str:
    if predicate.axis is not None:
        return predicate.axis
    for axis in AXES:
        if dataset.has_column(axis, predicate.attribute):
            return axis
    # Let metadata_column produce the precise message (undeclared vs. not computed).
    for axis in AXES:
        _, schema = dataset.metadata_for(axis)
        if predicate.attribute in schema:
            return axis
    raise InvalidAttribute(
        f"Unknown attribute '{predicate.attribute}'. Cell attributes: {list(dataset.cell_meta.columns)}; "
        f"gene attributes: {list(dataset.gene_meta.columns)}"
    )


def filter_dataset(dataset: Dataset, predicates: Iterable[PredicateLike]) -> Dataset:
    """Keep the cells and genes that satisfy every predicate on their axis.

    Raw counts of the retained entries are untouched; only the identifier
    sets shrink. Raises :class:`InvalidAttribute` for an attribute missing
    from the metadata, before anything is filtered.
    """
    resolved = []
    for predicate in map(_coerce, predicates):
        axis = _resolve_axis(dataset, predicate)
        values = dataset.metadata_column(axis, predicate.attribute)
        if not (pd.api.types.is_numeric_dtype(values) or pd.api.types.is_bool_dtype(values)):
            raise InvalidAttribute(f"{axis} attribute '{predicate.attribute}' is not numeric.")
        resolved.append((axis, predicate, values))

    cell_keep = np.ones(dataset.n_cells, dtype=bool)
    gene_keep = np.ones(dataset.n_genes, dtype=bool)
    for axis, predicate, values in resolved:
        mask = predicate.mask(values)
        if axis == "cell":
            cell_keep &= mask
        else:
            gene_keep &= mask
        logger.debug(
            "%s %s in [%s, %s]: %d pass", axis, predicate.attribute, predicate.low, predicate.high, mask.sum()
        )

    logger.info(
        "Filtering kept %d/%d cells and %d/%d genes",
        cell_keep.sum(), dataset.n_cells, gene_keep.sum(), dataset.n_genes,
    )
    return dataset.subset(cell_keep, gene_keep)


def _bounds_to_predicates(axis: str, bounds: Mapping[str, Sequence[Optional[float]]]):
    return [Predicate(name, low, high, axis=axis) for name, (low, high) in bounds.items()]


def filter_cells(dataset: Dataset, **bounds: Tuple[Optional[float], Optional[float]]) -> Dataset:
    """``filter_cells(ds, n_genes=(200, 2500), mito_fraction=(None, 0.05))``"""
    return filter_dataset(dataset, _bounds_to_predicates("cell", bounds))


def filter_genes(dataset: Dataset, **bounds: Tuple[Optional[float], Optional[float]]) -> Dataset:
    return filter_dataset(dataset, _bounds_to_predicates("gene", bounds))
