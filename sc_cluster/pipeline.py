"""End-to-end clustering workflow.

``run_pipeline`` chains the stages in their fixed order:

  filter -> normalize -> variable genes -> regress/scale -> PCA
  -> (JackStraw) -> cluster -> (markers)

Every stage hands a new Dataset to the next, so the input is never
modified and a failure leaves nothing half-updated.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Hashable, List, Mapping, Optional, Union

import dill
import pandas as pd

from ._version import __version__
from .annotation import relabel
from .base import ClusterAssignment, PrincipalComponents
from .clustering import cluster
from .config import PipelineConfig
from .dataset import Dataset, calculate_qc_metrics
from .dimensionality import elbow_components, run_pca, significance_test, significant_components
from .feature_selection import select_variable_genes
from .filtering import Predicate, filter_dataset
from .io import read_10x_mtx
from .markers import find_all_markers
from .normalization import normalize
from .regression import regress_out
from .utils import check_cancelled, dependency_versions

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PipelineResult:
    """Everything a pipeline run produced.

    Attributes:
      dataset: Final Dataset, with components and clusters attached.
      components: Principal components used for clustering.
      clusters: Cluster assignment of every retained cell.
      markers: Long marker table (one row per cluster and gene), if computed.
      provenance: Configuration, per-stage shapes and library versions.
    """

    dataset: Dataset
    components: Optional[PrincipalComponents]
    clusters: Optional[ClusterAssignment]
    markers: Optional[pd.DataFrame] = None
    provenance: Mapping[str, Any] = field(default_factory=dict)

    def save(self, f: Union[str, Path]) -> None:
        """Save the result to a file using dill."""
        with open(f, 'wb') as file:
            dill.dump(self, file)

    def relabel(self, label_map: Mapping[Hashable, str]) -> "PipelineResult":
        """Result with cluster ids replaced by names, markers included."""
        if self.clusters is None:
            raise ValueError("Result carries no cluster assignment to relabel.")
        clusters = relabel(self.clusters, label_map)
        markers = self.markers
        if markers is not None and "cluster" in markers.columns:
            markers = markers.assign(cluster=markers["cluster"].map(lambda cid: label_map[cid]))
        return replace(
            self,
            dataset=self.dataset.attach(clusters=clusters),
            clusters=clusters,
            markers=markers,
        )


def _gene_predicates(config: PipelineConfig) -> List[Predicate]:
    if not config.min_cells_per_gene:
        return []
    return [Predicate("n_cells", config.min_cells_per_gene, None, axis="gene")]


def _cell_predicates(config: PipelineConfig) -> List[tuple]:
    predicates = []
    if config.min_genes_per_cell is not None or config.max_genes_per_cell is not None:
        predicates.append(("n_genes", config.min_genes_per_cell, config.max_genes_per_cell))
    if config.max_mito_fraction is not None:
        predicates.append(("mito_fraction", None, config.max_mito_fraction))
    return predicates


def _choose_n_components(components: PrincipalComponents, config: PipelineConfig) -> int:
    if config.n_components_used is not None:
        return config.n_components_used
    if components.component_scores is not None:
        n = significant_components(components)
        if n == 0:
            logger.warning("No component passed the JackStraw test; falling back to the elbow")
            n = elbow_components(components)
    else:
        n = elbow_components(components)
    logger.info("Using %d principal components for clustering", n)
    return n


def run_pipeline(
    dataset: Dataset,
    config: Optional[PipelineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineResult:
    """Run every stage on `dataset` with the parameters in `config`.

    `cancel_event` is checked between stages and inside the chunked stages;
    setting it makes the running stage raise StageCancelled.
    """
    config = config or PipelineConfig()
    stages: List[Dict[str, Any]] = []

    def record(stage: str, ds: Dataset) -> None:
        stages.append({"stage": stage, "n_cells": ds.n_cells, "n_genes": ds.n_genes})
        logger.info("[%s] %s: %d cells x %d genes", ds.project, stage, ds.n_cells, ds.n_genes)

    record("input", dataset)

    check_cancelled(cancel_event, "filter")
    # genes first, so cell totals and mito fractions cover only the kept genes
    ds = calculate_qc_metrics(filter_dataset(dataset, _gene_predicates(config)))
    ds = filter_dataset(ds, _cell_predicates(config))
    # detection counts over the retained cells
    ds = calculate_qc_metrics(ds)
    record("filter", ds)

    check_cancelled(cancel_event, "normalize")
    ds = normalize(ds, scale_factor=config.scale_factor, method=config.normalization_method)
    record("normalize", ds)

    check_cancelled(cancel_event, "select_variable_genes")
    ds = select_variable_genes(
        ds,
        x_low_cutoff=config.x_low_cutoff,
        x_high_cutoff=config.x_high_cutoff,
        y_cutoff=config.y_cutoff,
        num_bins=config.num_bins,
        y_high_cutoff=config.y_high_cutoff,
        binning=config.binning,
    )
    n_selected = len(ds.selected_genes())
    record("select_variable_genes", ds)

    if config.skip_regression:
        logger.info("Skipping regression; PCA runs on normalized values")
    else:
        ds = regress_out(
            ds,
            config.regress_covariates,
            scale_max=config.scale_max,
            chunk_size=config.regression_chunk_size,
            n_jobs=config.n_jobs,
            cancel_event=cancel_event,
        )
        record("regress_out", ds)

    check_cancelled(cancel_event, "run_pca")
    components = run_pca(
        ds,
        n_components=config.n_components,
        svd_solver=config.svd_solver,
        random_state=config.random_state,
    )
    if config.run_significance:
        components = significance_test(
            ds,
            components,
            permutation_fraction=config.permutation_fraction,
            n_replicates=config.n_replicates,
            seed=config.random_state,
            score_threshold=config.score_threshold,
            n_jobs=config.n_jobs,
            cancel_event=cancel_event,
        )
    ds = ds.attach(components=components)

    check_cancelled(cancel_event, "cluster")
    n_used = _choose_n_components(components, config)
    clusters = cluster(
        ds,
        components,
        n_components_used=n_used,
        resolution=config.resolution,
        k_param=config.k_param,
        prune_snn=config.prune_snn,
        metric=config.metric,
        random_state=config.random_state,
    )
    ds = ds.attach(clusters=clusters)
    record("cluster", ds)

    markers = None
    if config.find_markers:
        markers = find_all_markers(
            ds,
            clusters,
            min_pct=config.marker_min_pct,
            logfc_threshold=config.marker_logfc_threshold,
            only_pos=config.marker_only_pos,
            n_jobs=config.n_jobs,
            cancel_event=cancel_event,
        )

    provenance = {
        "version": __version__,
        "config": config.to_dict(),
        "stages": stages,
        "n_variable_genes": n_selected,
        "n_components_used": n_used,
        "n_clusters": clusters.n_clusters,
        "dependencies": dependency_versions(),
    }
    return PipelineResult(
        dataset=ds,
        components=components,
        clusters=clusters,
        markers=markers,
        provenance=provenance,
    )


def run_from_10x(
    path: Union[str, Path],
    config: Optional[PipelineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineResult:
    """Read a 10x directory with the object-creation thresholds of `config` and run the pipeline."""
    config = config or PipelineConfig()
    dataset = read_10x_mtx(
        path,
        project=config.project,
        min_cells=config.min_cells_per_gene,
        min_genes=config.min_genes_per_cell or 0,
        mito_prefix=config.mito_prefix,
    )
    return run_pipeline(dataset, config, cancel_event=cancel_event)
