import logging
from typing import Optional

import faiss
import igraph as ig
import leidenalg
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .base import ClusterAssignment, PrincipalComponents
from .dataset import Dataset
from .errors import InsufficientComponents, StageOrderError

logger = logging.getLogger(__name__)

METRICS = ("euclidean", "cosine")


def get_faiss_idx(vectors, cosine=False):
    """Build an exact faiss index over the rows of `vectors`.

    Returns the index and the float32 vectors it was built on (unit-normalized
    when `cosine` is set, so inner product equals cosine similarity).
    """
    vectors = np.ascontiguousarray(vectors, dtype=np.float32)
    if cosine:
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        vectors = np.ascontiguousarray(vectors / norms)
        index = faiss.IndexFlatIP(vectors.shape[1])
    else:
        index = faiss.IndexFlatL2(vectors.shape[1])
    index.add(vectors)
    return index, vectors


def find_k_nearest_neighbors(index, vectors, k):
    """ Find k-nearest neighbors for each vector, each row containing itself. """
    _, indices = index.search(vectors, k)
    indices = np.asarray(indices, dtype=np.int64)
    # exact ties (duplicated cells) can push a cell out of its own list
    rows = np.arange(indices.shape[0])
    missing_self = ~(indices == rows[:, None]).any(axis=1)
    indices[missing_self, -1] = rows[missing_self]
    return indices


def build_snn_graph(scores, k=30, prune_snn=1.0 / 15, metric="euclidean"):
    """Shared-nearest-neighbour graph over the rows of `scores`.

    Edge weight is the Jaccard overlap of the two cells' k-neighbourhoods
    (self included); weights below `prune_snn` are dropped. Returns the upper
    triangle as a COO matrix.
    """
    if metric not in METRICS:
        raise ValueError(f"metric must be one of {METRICS}, got {metric!r}")
    n = scores.shape[0]
    k = max(1, min(int(k), n))
    index, vectors = get_faiss_idx(scores, cosine=(metric == "cosine"))
    indices = find_k_nearest_neighbors(index, vectors, k)
    knn = sp.csr_matrix(
        (np.ones(indices.size), (np.repeat(np.arange(n), k), indices.ravel())),
        shape=(n, n),
    )
    knn.data[:] = 1.0
    shared = (knn @ knn.T).tocoo()
    jaccard = shared.data / (2 * k - shared.data)
    keep = (shared.row < shared.col) & (jaccard >= prune_snn)
    logger.info("SNN graph: %d cells, k=%d, %d edges kept after pruning", n, k, keep.sum())
    return sp.coo_matrix((jaccard[keep], (shared.row[keep], shared.col[keep])), shape=(n, n))


def coo_matrix_to_igraph(coo_mat):
    """
    Convert a weighted COO matrix to an igraph Graph.
    Assumes the COO matrix represents an undirected graph.
    """
    if not sp.isspmatrix_coo(coo_mat):
        coo_mat = coo_mat.tocoo()
    n_vertices = coo_mat.shape[0]
    g = ig.Graph(n_vertices, directed=False)
    g.add_edges(list(zip(coo_mat.row.tolist(), coo_mat.col.tolist())))
    g.es['weight'] = coo_mat.data.tolist()
    return g


def perform_leiden_clustering(coo_mat, resolution_parameter=1.0, seed=0):
    """
    Convert the COO matrix to an igraph graph and perform Leiden clustering.

    Parameters:
      coo_mat: A scipy.sparse COO matrix representing the weighted adjacency matrix.
      resolution_parameter: Higher values give more, smaller clusters.
      seed: Seed for leidenalg's random node ordering.

    Returns:
      partition: The partition object returned by the leidenalg library.
      labels: Integer community per node; community 0 is the largest.
    """
    g = coo_matrix_to_igraph(coo_mat)
    partition = leidenalg.find_partition(
        g,
        leidenalg.RBConfigurationVertexPartition,
        weights='weight',
        resolution_parameter=resolution_parameter,
        seed=seed,
    )
    labels = np.empty(g.vcount(), dtype=int)
    for cluster_idx, cluster in enumerate(partition):
        for node in cluster:
            labels[node] = cluster_idx
    return partition, labels


def cluster(
    dataset: Dataset,
    components: PrincipalComponents,
    n_components_used: int = 10,
    resolution: float = 0.6,
    *,
    k_param: int = 30,
    prune_snn: float = 1.0 / 15,
    metric: str = "euclidean",
    random_state: Optional[int] = 0,
) -> ClusterAssignment:
    """Graph-based clustering of cells on their leading PC scores.

    Raises InsufficientComponents when `n_components_used` exceeds the
    number of computed components. Every cell of `dataset` receives exactly
    one integer label; label values carry no ordering meaning.
    """
    if n_components_used > components.n_components:
        raise InsufficientComponents(
            f"Requested {n_components_used} components but only {components.n_components} were computed."
        )
    if n_components_used < 1:
        raise ValueError("n_components_used must be >= 1")
    if resolution <= 0:
        raise ValueError("resolution must be positive")
    if not components.cells.equals(dataset.cell_ids):
        raise StageOrderError("Components were computed on a different set of cells; re-run run_pca().")

    scores = components.scores.iloc[:, :n_components_used].to_numpy()
    graph = build_snn_graph(scores, k=k_param, prune_snn=prune_snn, metric=metric)
    _, labels = perform_leiden_clustering(graph, resolution_parameter=resolution, seed=random_state)
    logger.info("Leiden (resolution=%g) found %d clusters", resolution, len(np.unique(labels)))
    return ClusterAssignment(
        labels=pd.Series(labels, index=dataset.cell_ids, name="cluster"),
        parameters={
            "n_components_used": n_components_used,
            "resolution": resolution,
            "k_param": k_param,
            "prune_snn": prune_snn,
            "metric": metric,
            "random_state": random_state,
        },
    )
