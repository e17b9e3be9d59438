"""Exception taxonomy for the clustering pipeline.

Every error is structural: it is raised at stage entry, before any new
object is built, so the input Dataset is never left half-updated.
"""

from __future__ import annotations

from typing import Iterable, Sequence


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class _PlainKeyError(KeyError):
    # KeyError wraps its message in quotes; print it like any other error.
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InputFormatError(PipelineError, ValueError):
    """Malformed source matrix or identifier lists."""


class InvalidAttribute(PipelineError, _PlainKeyError):
    """A metadata column was referenced that is undeclared or not computed."""


class MissingCovariate(InvalidAttribute):
    """A regression covariate is absent from the cell metadata."""


class UnknownIdentifier(PipelineError, _PlainKeyError):
    """A cell or gene identifier is not part of the dataset."""


class EmptyColumn(PipelineError, ValueError):
    """One or more cells have a total count of zero."""

    def __init__(self, cell_ids: Sequence[str]):
        self.cell_ids = list(cell_ids)
        preview = ", ".join(map(str, self.cell_ids[:5]))
        more = "" if len(self.cell_ids) <= 5 else f" (+{len(self.cell_ids) - 5} more)"
        super().__init__(
            f"{len(self.cell_ids)} cell(s) have zero total counts and cannot be normalized: {preview}{more}"
        )


class SingularDesign(PipelineError, ValueError):
    """The covariate design matrix is rank-deficient."""


class InsufficientComponents(PipelineError, ValueError):
    """More components were requested than were computed."""


class UnmappedCluster(PipelineError, _PlainKeyError):
    """A cluster id has no entry in the label map."""

    def __init__(self, missing: Iterable):
        self.missing = sorted(missing, key=str)
        super().__init__(
            "No label provided for cluster id(s): " + ", ".join(map(str, self.missing))
        )


class StageOrderError(PipelineError, RuntimeError):
    """A stage was invoked before the stage producing its input."""


class NoFeaturesSelected(PipelineError, ValueError):
    """Feature selection kept no genes."""


class StageCancelled(PipelineError, RuntimeError):
    """A long-running stage observed its cancellation event."""
