"""
Exception hierarchy shared by the orchestrator, processors and queue adapters.

Two families live here:

  Caller-facing errors   NotFoundError, JobPolicyError, QueueConfigurationError
                         Raised by ProcessingService for bad requests. Never retried.

  Worker signals         UnrecoverableJobError, DelayedRetryError, JobCancelledError
                         Raised by processors after classification so the Celery
                         task wrapper knows whether to fail, reschedule or back off.
"""

from __future__ import annotations


class DocflowError(Exception):
    """Base class for every error raised by the processing pipeline."""


class NotFoundError(DocflowError):
    """A job, document or queue name does not exist."""


class JobPolicyError(DocflowError):
    """The requested state transition is not allowed for the job's current state."""


class QueueConfigurationError(DocflowError):
    """A job type has no route. Indicates a programming error, not a runtime fault."""


class InvalidJobOptionsError(DocflowError):
    """Job options failed validation."""


class JobRemovalError(DocflowError):
    """The queue backend could not remove a job (already claimed or finished)."""


class UnrecoverableJobError(DocflowError):
    """
    Processor signal: the failure is PERMANENT.

    The job record and document are already marked FAILED when this is raised;
    the worker must not schedule another attempt.
    """


class DelayedRetryError(DocflowError):
    """
    Processor signal: the external service is rate limiting us.

    The job should be redelivered after ``retry_after_ms`` without counting
    the failure against the job's attempt budget.
    """

    def __init__(self, message: str, retry_after_ms: int) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class JobCancelledError(DocflowError):
    """
    Processor signal: the job record was CANCELLED before a worker picked it up.

    Nothing has been written; the worker drops the delivery without running
    completion or failure handling.
    """
