from ._version import __version__
from .annotation import relabel
from .base import CELL_SCHEMA, GENE_SCHEMA, ClusterAssignment, MetadataSchema, PrincipalComponents
from .clustering import cluster
from .config import PipelineConfig, load_config
from .dataset import Dataset, calculate_qc_metrics, create_dataset
from .dimensionality import (
    elbow_components,
    run_pca,
    score_components,
    significance_test,
    significant_components,
)
from .errors import (
    EmptyColumn,
    InputFormatError,
    InsufficientComponents,
    InvalidAttribute,
    MissingCovariate,
    NoFeaturesSelected,
    PipelineError,
    SingularDesign,
    StageCancelled,
    StageOrderError,
    UnknownIdentifier,
    UnmappedCluster,
)
from .feature_selection import select_variable_genes
from .filtering import Predicate, filter_cells, filter_dataset, filter_genes
from .io import from_anndata, load_result, read_10x_mtx, to_anndata, write_tables
from .markers import find_all_markers, find_markers, top_markers
from .normalization import normalize
from .pipeline import PipelineResult, run_from_10x, run_pipeline
from .regression import regress_out
