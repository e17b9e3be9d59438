#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import math
from pathlib import Path
from typing import List, Optional

from sc_cluster import PipelineConfig, load_config, run_from_10x
from sc_cluster.dimensionality import elbow_components
from sc_cluster.io import write_tables
from sc_cluster.plots import plot_dispersion, plot_elbow, plot_jackstraw, save_figure

logger = logging.getLogger("run_clustering")


def _parse_label_map(path: Path) -> dict:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise SystemExit(f"{path} must contain a JSON object mapping cluster id to label")
    # JSON keys are strings; integer cluster ids are matched by value
    return {int(k) if str(k).lstrip("-").isdigit() else k: v for k, v in payload.items()}


def _json_safe(value):
    """Replace non-finite floats with their string form; strict JSON has no Infinity or NaN."""
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    return value


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Cluster a 10x single-cell count matrix (QC, normalize, PCA, Leiden).")
    p.add_argument("input", type=Path, help="10x directory with matrix.mtx, genes/features and barcodes.")
    p.add_argument("out_dir", type=Path, help="Directory for result tables, plots and the pickled result.")
    p.add_argument("--config", type=Path, default=None, help="JSON file of PipelineConfig overrides.")
    p.add_argument("--project", default=None, help="Project name recorded on the dataset.")
    p.add_argument("--skip-regression", action="store_true", help="Run PCA on normalized values.")
    p.add_argument("--significance", action="store_true", help="Run the JackStraw test on the components.")
    p.add_argument("--labels", type=Path, default=None, help="JSON map of cluster id to cell-type label.")
    p.add_argument("--plots", action="store_true", help="Write dispersion, elbow and JackStraw figures.")
    p.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level.")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.input.is_dir():
        raise SystemExit(f"Not a directory: {args.input}")

    config = load_config(args.config) if args.config is not None else PipelineConfig()
    overrides = {}
    if args.project is not None:
        overrides["project"] = args.project
    if args.skip_regression:
        overrides["skip_regression"] = True
    if args.significance:
        overrides["run_significance"] = True
    if overrides:
        config = config.replace(**overrides)

    result = run_from_10x(args.input, config)
    if args.labels is not None:
        result = result.relabel(_parse_label_map(args.labels))

    args.out_dir.mkdir(parents=True, exist_ok=True)
    write_tables(result, args.out_dir)
    result.save(args.out_dir / "result.dill")
    provenance = _json_safe(result.provenance)
    (args.out_dir / "provenance.json").write_text(
        json.dumps(provenance, indent=2, sort_keys=True, default=str, allow_nan=False), encoding="utf-8"
    )

    if args.plots:
        plot_dir = args.out_dir / "figures"
        save_figure(plot_dispersion(result.dataset), plot_dir / "dispersion.png", logger=logger.info)
        save_figure(
            plot_elbow(result.components, mark=elbow_components(result.components)),
            plot_dir / "elbow.png",
            logger=logger.info,
        )
        if result.components.pvalues is not None:
            save_figure(plot_jackstraw(result.components), plot_dir / "jackstraw.png", logger=logger.info)

    logger.info("%d cells in %d clusters", len(result.clusters), result.clusters.n_clusters)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
