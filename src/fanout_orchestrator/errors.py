"""Error taxonomy for launching and monitoring fan-out runs."""

from __future__ import annotations


class FanoutError(Exception):
    """Base class for every error raised by this package."""


class MalformedInputError(FanoutError):
    """Input batch or iterator payload failed validation."""


class SubmissionError(FanoutError):
    """The execution backend rejected a work unit.

    ``submitted_task_ids`` lists the units that did reach the backend before the
    batch was aborted, so the caller can decide whether to clean them up.
    """

    def __init__(
        self,
        message: str,
        *,
        task_name: str | None = None,
        workflow_name: str | None = None,
        run_id: int | None = None,
        submitted_task_ids: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.workflow_name = workflow_name
        self.run_id = run_id
        self.submitted_task_ids = list(submitted_task_ids or [])


class StoreWriteError(FanoutError):
    """A status store insert or update failed."""


class StoreReadError(FanoutError):
    """A status store query failed."""
