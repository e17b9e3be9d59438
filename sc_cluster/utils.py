from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from importlib import metadata
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import StageCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEPENDENCIES = (
    "numpy",
    "scipy",
    "pandas",
    "scikit-learn",
    "faiss-cpu",
    "igraph",
    "leidenalg",
    "anndata",
    "scanpy",
    "dill",
)


def effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("%s cancelled", stage)
        raise StageCancelled(f"{stage} was cancelled")


def ordered_map(
    func: Callable[[T], R],
    items: Sequence[T],
    *,
    n_jobs: Optional[int] = 1,
    cancel_event: Optional[threading.Event] = None,
    stage: str = "stage",
) -> List[R]:
    """Apply ``func`` to every item, optionally on a thread pool.

    Results always come back in input order, so callers that combine them
    get the same output whatever the worker count. The cancellation event is
    checked before each unit of work starts.
    """
    workers = effective_n_jobs(n_jobs)

    def run(item: T) -> R:
        check_cancelled(cancel_event, stage)
        return func(item)

    if workers == 1 or len(items) <= 1:
        return [run(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(run, item) for item in items]
        try:
            return [future.result() for future in futures]
        except StageCancelled:
            for future in futures:
                future.cancel()
            raise


def dependency_versions(packages: Sequence[str] = DEPENDENCIES) -> Dict[str, Optional[str]]:
    versions: Dict[str, Optional[str]] = {}
    for name in packages:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = None
    return versions
