"""Replace cluster ids by human-readable labels."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Hashable, Mapping

from .base import ClusterAssignment
from .errors import UnmappedCluster

logger = logging.getLogger(__name__)


def relabel(assignment: ClusterAssignment, label_map: Mapping[Hashable, str]) -> ClusterAssignment:
    """Map every cluster id through `label_map`.

    Several ids may share a label (their cells are merged under it). Entries
    for ids that do not occur are ignored. Raises UnmappedCluster, listing
    all of them, when any id present in `assignment` has no entry; the input
    assignment is left untouched either way.
    """
    missing = [cid for cid in assignment.cluster_ids if cid not in label_map]
    if missing:
        raise UnmappedCluster(missing)
    unused = [k for k in label_map if k not in set(assignment.cluster_ids)]
    if unused:
        logger.debug("Label map entries for absent cluster id(s) ignored: %s", unused)
    labels = assignment.labels.map(lambda cid: label_map[cid]).rename(assignment.labels.name)
    return replace(
        assignment,
        labels=labels,
        parameters={**assignment.parameters, "label_map": dict(label_map)},
    )
