"""Pipeline parameters and their defaults.

Defaults follow the classic 3k PBMC walkthrough: 10,000 counts per cell,
200-2500 detected genes, at most 5% mitochondrial counts, genes seen in at
least 3 cells, dispersion cutoffs 0.0125 / 3 / 0.5 and resolution 0.6.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class PipelineConfig:
    # Object creation / QC
    project: str = "sc_cluster"
    mito_prefix: str = "MT-"
    min_cells_per_gene: int = 3
    min_genes_per_cell: int = 200
    max_genes_per_cell: Optional[float] = 2500
    max_mito_fraction: Optional[float] = 0.05
    # Normalization
    normalization_method: str = "log_normalize"
    scale_factor: float = 1e4
    # Regression / scaling
    skip_regression: bool = False
    regress_covariates: Tuple[str, ...] = ("n_counts", "mito_fraction")
    scale_max: Optional[float] = 10.0
    regression_chunk_size: int = 1000
    # Variable genes
    x_low_cutoff: float = 0.0125
    x_high_cutoff: float = 3.0
    y_cutoff: float = 0.5
    y_high_cutoff: float = float("inf")
    num_bins: int = 20
    binning: str = "equal_width"
    # PCA
    n_components: int = 20
    svd_solver: str = "full"
    run_significance: bool = False
    permutation_fraction: float = 0.01
    n_replicates: int = 100
    score_threshold: float = 1e-5
    # Clustering
    n_components_used: Optional[int] = 10
    resolution: float = 0.6
    k_param: int = 30
    prune_snn: float = 1.0 / 15
    metric: str = "euclidean"
    # Markers
    find_markers: bool = True
    marker_min_pct: float = 0.25
    marker_logfc_threshold: float = 0.25
    marker_only_pos: bool = True
    # Execution
    random_state: int = 0
    n_jobs: Optional[int] = 1

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {unknown}")
        values = dict(values)
        if "regress_covariates" in values:
            values["regress_covariates"] = tuple(values["regress_covariates"])
        return cls(**values)

    def replace(self, **overrides: Any) -> "PipelineConfig":
        return self.from_mapping({**self.to_dict(), **overrides})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Read a JSON file of overrides on top of the defaults."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"{path} must contain a JSON object, got {type(payload).__name__}")
    return PipelineConfig.from_mapping(payload)
