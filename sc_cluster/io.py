"""Reading count data in and writing results out.

10x directories are read with scanpy (imported on first use, it is slow to
import), AnnData objects are converted both ways, and pipeline results are
exported as tab-separated tables or pickled whole with dill.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import anndata as ad
import dill
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .base import PrincipalComponents
from .dataset import Dataset, create_dataset
from .errors import InputFormatError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_10x_mtx(
    path: PathLike,
    project: str = "sc_cluster",
    var_names: str = "gene_symbols",
    *,
    min_cells: int = 0,
    min_genes: int = 0,
    mito_prefix: str = "MT-",
) -> Dataset:
    """Load a 10x Genomics ``matrix.mtx`` directory into a Dataset.

    Duplicated gene symbols are made unique the way scanpy does it
    (``-1``, ``-2`` suffixes). Any failure to parse the directory is raised
    as InputFormatError.
    """
    import scanpy as sc

    path = Path(path)
    if not path.is_dir():
        raise InputFormatError(f"{path} is not a directory containing matrix.mtx, genes/features and barcodes files.")
    try:
        adata = sc.read_10x_mtx(str(path), var_names=var_names, make_unique=True, cache=False)
    except (OSError, ValueError, KeyError, IndexError) as exc:
        raise InputFormatError(f"Could not read 10x data from {path}: {exc}") from exc
    logger.info("Read %d cells x %d genes from %s", adata.n_obs, adata.n_vars, path)
    return from_anndata(adata, project, min_cells=min_cells, min_genes=min_genes, mito_prefix=mito_prefix)


def read_h5ad(path: PathLike, project: str = "sc_cluster", **kwargs: Any) -> Dataset:
    adata = ad.read_h5ad(str(path))
    return from_anndata(adata, project, **kwargs)


def from_anndata(
    adata: ad.AnnData,
    project: str = "sc_cluster",
    *,
    layer: Optional[str] = None,
    min_cells: int = 0,
    min_genes: int = 0,
    mito_prefix: str = "MT-",
) -> Dataset:
    """Build a Dataset from the raw counts held in `adata` (X or a layer)."""
    if layer is None:
        counts = adata.X
    elif layer in adata.layers:
        counts = adata.layers[layer]
    else:
        raise InputFormatError(f"Layer '{layer}' not found. Available: {list(adata.layers.keys())}")
    return create_dataset(
        counts,
        adata.obs_names.tolist(),
        adata.var_names.tolist(),
        project=project,
        min_cells=min_cells,
        min_genes=min_genes,
        mito_prefix=mito_prefix,
    )


def to_anndata(dataset: Dataset) -> ad.AnnData:
    """AnnData view of the dataset for use with scanpy.

    X holds the raw counts of the surviving cells and genes; the normalized
    matrix, PCA and clusters go where scanpy expects them.
    """
    obs = dataset.cell_meta.copy()
    var = dataset.gene_meta.copy()
    if "cluster" in obs.columns:
        obs["cluster"] = pd.Categorical(obs["cluster"].astype(str))
    adata = ad.AnnData(X=sp.csr_matrix(dataset.counts, dtype=np.float32), obs=obs, var=var)
    if dataset.normalized is not None:
        adata.layers["normalized"] = sp.csr_matrix(dataset.normalized)
    components = dataset.components
    if components is not None:
        adata.obsm["X_pca"] = components.scores.loc[dataset.cell_ids].to_numpy()
        adata.varm["PCs"] = components.loadings.reindex(dataset.gene_ids).fillna(0.0).to_numpy()
        adata.uns["pca"] = {
            "variance": np.asarray(components.explained_variance),
            "variance_ratio": np.asarray(components.explained_variance_ratio),
        }
    adata.uns["sc_cluster"] = {
        "project": dataset.project,
        # h5ad cannot store None
        "normalization": {k: v for k, v in dataset.normalization.items() if v is not None},
        "regression": {
            k: list(v) if isinstance(v, tuple) else v for k, v in dataset.regression.items() if v is not None
        },
    }
    return adata


def component_table(components: PrincipalComponents) -> pd.DataFrame:
    """Per-component variance, plus the JackStraw score when present."""
    table = pd.DataFrame(
        {
            "explained_variance": components.explained_variance,
            "explained_variance_ratio": components.explained_variance_ratio,
        },
        index=pd.Index(components.names, name="component"),
    )
    if components.component_scores is not None:
        table["jackstraw_score"] = components.component_scores.reindex(table.index).to_numpy()
    return table


def write_tables(result, out_dir: PathLike) -> Dict[str, Path]:
    """Write the tables of a PipelineResult as TSV files under `out_dir`.

    Returns a mapping of table name to the written path.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    tables: Dict[str, pd.DataFrame] = {
        "cell_metadata": result.dataset.cell_meta.rename_axis("cell"),
        "gene_metadata": result.dataset.gene_meta.rename_axis("gene"),
    }
    if result.clusters is not None:
        tables["clusters"] = result.clusters.to_frame().set_index("cell")
    components = result.components
    if components is not None:
        tables["pca_scores"] = components.scores.rename_axis("cell")
        tables["pca_loadings"] = components.loadings.rename_axis("gene")
        tables["pca_variance"] = component_table(components)
        if components.pvalues is not None:
            tables["jackstraw_pvalues"] = components.pvalues.rename_axis("gene")
    if result.markers is not None:
        tables["markers"] = result.markers
    written = {}
    for name, table in tables.items():
        destination = out_dir / f"{name}.tsv"
        index = name != "markers"
        table.to_csv(destination, sep="\t", index=index)
        written[name] = destination
    logger.info("Wrote %d tables to %s", len(written), out_dir)
    return written


def load_result(path: PathLike):
    """
    Load a pipeline result saved with ``PipelineResult.save``.
    """
    with open(path, 'rb') as file:
        result = dill.load(file)
    return result
