"""Exceptions raised by the restaurant extraction pipeline.

Schema violations are not exceptions: the Validator reports them on a
ValidationOutcome and the Orchestrator decides what to do next.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class StageError(PipelineError):
    """A single pipeline stage failed for one work item."""

    stage: str = "unknown"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class FetchError(StageError):
    """Network failure, timeout or non-2xx response while fetching a page."""

    stage = "fetching"


class ExtractionError(StageError):
    """Page content could not be parsed at all."""

    stage = "extracting"


class SynthesisError(StageError):
    """The external reasoning call failed (timeout, quota, auth, bad JSON)."""

    stage = "synthesizing"


class RepositoryError(PipelineError):
    """Persistence failure."""


class RecordNotFoundError(RepositoryError):
    """The requested record does not exist."""


class PipelineBusyError(PipelineError):
    """A pipeline run is already active in this process."""


class InvalidTransitionError(PipelineError):
    """A work item was moved to a stage its current stage cannot reach."""
