"""Diagnostic figures for feature selection and component choice."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .base import PrincipalComponents
from .dataset import Dataset
from .errors import StageOrderError

__all__ = [
    "plot_dispersion",
    "plot_elbow",
    "plot_jackstraw",
    "save_figure",
]


def save_figure(
    fig: plt.Figure,
    destination: Union[str, Path],
    *,
    dpi: int = 300,
    logger: Optional[Callable[[str], None]] = None,
    message: Optional[str] = None,
) -> Path:
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(destination, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    if logger:
        logger(message or f"Saved plot to {destination}")
    return destination


def plot_dispersion(
    dataset: Dataset,
    *,
    label_top: int = 10,
    figsize: Tuple[float, float] = (6, 5),
) -> plt.Figure:
    """Mean expression vs normalized dispersion, selected genes highlighted."""
    required = ["mean", "dispersion_norm", "selected"]
    missing = [c for c in required if not dataset.has_column("gene", c)]
    if missing:
        raise StageOrderError("Variable genes have not been computed; call select_variable_genes() first.")
    df = dataset.gene_meta[required].copy()
    df = df[np.isfinite(df["dispersion_norm"].astype(float))]
    df["selected"] = df["selected"].astype(bool).map({True: "variable", False: "other"})

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(
        data=df,
        x="mean",
        y="dispersion_norm",
        hue="selected",
        hue_order=["other", "variable"],
        palette={"other": "lightgray", "variable": "firebrick"},
        s=10,
        edgecolor="none",
        ax=ax,
    )
    if label_top:
        top = df[df["selected"] == "variable"].nlargest(label_top, "dispersion_norm")
        for gene, row in top.iterrows():
            ax.annotate(str(gene), (row["mean"], row["dispersion_norm"]), fontsize=7)
    ax.set_xlabel("Average expression (log)")
    ax.set_ylabel("Dispersion (z-score within bin)")
    ax.set_title(f"{dataset.project}: variable genes")
    fig.tight_layout()
    return fig


def plot_elbow(
    components: PrincipalComponents,
    *,
    mark: Optional[int] = None,
    figsize: Tuple[float, float] = (5, 4),
) -> plt.Figure:
    """Standard deviation explained by each component; `mark` draws a cut line."""
    sd = np.sqrt(np.asarray(components.explained_variance, dtype=float))
    fig, ax = plt.subplots(figsize=figsize)
    ax.plot(np.arange(1, sd.size + 1), sd, marker="o", color="black")
    if mark is not None:
        ax.axvline(mark + 0.5, linestyle="--", color="firebrick")
    ax.set_xlabel("Component")
    ax.set_ylabel("Standard deviation")
    ax.set_title("Elbow plot")
    fig.tight_layout()
    return fig


def plot_jackstraw(
    components: PrincipalComponents,
    *,
    n_components: Optional[int] = None,
    figsize: Tuple[float, float] = (6, 5),
) -> plt.Figure:
    """QQ-style plot of gene p-values per component against the uniform null."""
    if components.pvalues is None:
        raise StageOrderError("No JackStraw p-values; call significance_test() first.")
    names = components.names[: n_components or components.n_components]
    palette = sns.color_palette("husl", len(names))
    fig, ax = plt.subplots(figsize=figsize)
    for color, name in zip(palette, names):
        pvals = np.sort(components.pvalues[name].to_numpy(dtype=float))
        expected = (np.arange(1, pvals.size + 1) - 0.5) / pvals.size
        label = name
        if components.component_scores is not None:
            label = f"{name} p={components.component_scores[name]:.2g}"
        ax.plot(expected, pvals, color=color, label=label, linewidth=1)
    ax.plot([0, 1], [0, 1], linestyle="--", color="gray")
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_xlabel("Theoretical [runif(0,1)]")
    ax.set_ylabel("Empirical p-value")
    ax.legend(fontsize=7, loc="lower right", frameon=False)
    ax.set_title("JackStraw")
    fig.tight_layout()
    return fig

