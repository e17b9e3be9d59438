import logging

import pytest

matplotlib = pytest.importorskip("matplotlib")
matplotlib.use("Agg")

from sc_cluster import StageOrderError, run_pca, select_variable_genes, significance_test  # noqa: E402
from sc_cluster.plots import plot_dispersion, plot_elbow, plot_jackstraw, save_figure  # noqa: E402


def test_dispersion_plot_saved(tmp_path, normalized):
    ds = select_variable_genes(normalized, y_cutoff=0.0)
    messages = []
    path = save_figure(plot_dispersion(ds), tmp_path / "plots" / "dispersion.png", dpi=50, logger=messages.append)
    assert path.exists()
    assert messages == [f"Saved plot to {path}"]
    with pytest.raises(StageOrderError):
        plot_dispersion(normalized)


def test_elbow_and_jackstraw_plots(tmp_path, normalized):
    pcs = run_pca(normalized, genes=list(normalized.gene_ids), n_components=3)
    assert save_figure(plot_elbow(pcs, mark=2), tmp_path / "elbow.png", dpi=50).exists()
    with pytest.raises(StageOrderError):
        plot_jackstraw(pcs)
    tested = significance_test(normalized, pcs, permutation_fraction=0.1, n_replicates=2)
    log = logging.getLogger("plots-test")
    assert save_figure(plot_jackstraw(tested), tmp_path / "jackstraw.png", dpi=50, logger=log.info).exists()
