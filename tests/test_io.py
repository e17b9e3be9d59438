from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp

from sc_cluster import (
    ClusterAssignment,
    InputFormatError,
    read_10x_mtx,
    run_pca,
    to_anndata,
    write_tables,
)


def _write_10x(directory, counts_cells_x_genes, cells, genes):
    directory.mkdir(parents=True, exist_ok=True)
    scipy.io.mmwrite(str(directory / "matrix.mtx"), sp.coo_matrix(counts_cells_x_genes.T))
    (directory / "genes.tsv").write_text(
        "".join(f"ENSG{i:05d}\t{g}\n" for i, g in enumerate(genes)), encoding="utf-8"
    )
    (directory / "barcodes.tsv").write_text("".join(f"{c}\n" for c in cells), encoding="utf-8")


def test_read_10x_mtx(tmp_path):
    pytest.importorskip("scanpy")
    counts = np.array([[1, 0, 2], [0, 3, 1], [4, 0, 0], [0, 0, 0]])
    cells = ["AAAC-1", "AAAG-1", "AACT-1", "AAGG-1"]
    _write_10x(tmp_path / "hg19", counts, cells, ["CD3E", "MS4A1", "MT-CO1"])

    ds = read_10x_mtx(tmp_path / "hg19", project="pbmc", min_genes=1)
    assert ds.project == "pbmc"
    assert ds.cell_ids.tolist() == cells[:3]
    assert ds.gene_ids.tolist() == ["CD3E", "MS4A1", "MT-CO1"]
    np.testing.assert_array_equal(ds.counts.toarray(), counts[:3])
    assert ds.gene_meta["mito"].tolist() == [False, False, True]


def test_read_10x_mtx_errors(tmp_path):
    with pytest.raises(InputFormatError):
        read_10x_mtx(tmp_path / "missing")
    pytest.importorskip("scanpy")
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "matrix.mtx").write_text("not a matrix\n", encoding="utf-8")
    with pytest.raises(InputFormatError):
        read_10x_mtx(broken)


def test_to_anndata_carries_artifacts(normalized):
    pcs = run_pca(normalized, genes=list(normalized.gene_ids[:10]), n_components=3)
    labels = pd.Series(np.arange(normalized.n_cells) % 2, index=normalized.cell_ids)
    ds = normalized.attach(components=pcs, clusters=ClusterAssignment(labels=labels))

    adata = to_anndata(ds)
    assert adata.shape == (ds.n_cells, ds.n_genes)
    np.testing.assert_array_equal(adata.X.toarray(), ds.counts.toarray())
    assert "normalized" in adata.layers
    assert adata.obsm["X_pca"].shape == (ds.n_cells, 3)
    assert adata.varm["PCs"].shape == (ds.n_genes, 3)
    # genes outside the PCA get zero loadings
    assert np.all(adata.varm["PCs"][10:] == 0)
    assert adata.obs["cluster"].dtype.name == "category"
    assert adata.uns["sc_cluster"]["normalization"]["method"] == "log_normalize"


def test_write_tables(tmp_path, normalized):
    pcs = run_pca(normalized, genes=list(normalized.gene_ids), n_components=2)
    labels = pd.Series(np.arange(normalized.n_cells) % 3, index=normalized.cell_ids, name="cluster")
    markers = pd.DataFrame({"gene": ["G0"], "cluster": [0], "p_val": [0.01]})
    result = SimpleNamespace(
        dataset=normalized,
        components=pcs,
        clusters=ClusterAssignment(labels=labels),
        markers=markers,
    )
    written = write_tables(result, tmp_path / "out")
    assert set(written) == {
        "cell_metadata",
        "gene_metadata",
        "clusters",
        "pca_scores",
        "pca_loadings",
        "pca_variance",
        "markers",
    }
    clusters = pd.read_csv(written["clusters"], sep="\t", index_col=0)
    assert clusters.index.tolist() == normalized.cell_ids.tolist()
    variance = pd.read_csv(written["pca_variance"], sep="\t", index_col=0)
    assert variance.index.tolist() == ["PC1", "PC2"]
    assert pd.read_csv(written["markers"], sep="\t").columns.tolist() == ["gene", "cluster", "p_val"]


def test_read_h5ad_roundtrip(tmp_path, two_groups):
    from sc_cluster.io import read_h5ad

    dataset, _ = two_groups
    path = tmp_path / "counts.h5ad"
    to_anndata(dataset).write_h5ad(str(path))
    loaded = read_h5ad(path, project="reloaded")
    assert loaded.project == "reloaded"
    assert loaded.cell_ids.equals(dataset.cell_ids)
    np.testing.assert_array_equal(loaded.counts.toarray(), dataset.counts.toarray())
