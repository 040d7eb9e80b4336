"""Custom exception classes for the Prism job pipeline."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models.job import JobError


class PrismError(Exception):
    """Base exception for all application errors."""

    pass


class StageError(PrismError):
    """A stage aborted. Subclasses decide whether the caller may retry."""

    kind = "InternalError"
    retryable = False

    def to_job_error(self) -> "JobError":
        """Build the error record stored on a failed job."""
        from src.models.job import JobError

        return JobError(kind=self.kind, message=str(self), retryable=self.retryable)


class InvalidInputError(StageError):
    """Payload rejected (unsupported type, oversize, malformed)."""

    kind = "InvalidInput"
    retryable = False


class TransientStageFailure(StageError):
    """External dependency hiccup; the same work may succeed if retried."""

    kind = "TransientStageFailure"
    retryable = True


class StageCancelled(PrismError):
    """Raised at a stage checkpoint once cancellation was requested."""

    pass


class JobNotFoundError(PrismError):
    """No job with the given id is known to the registry."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobStateError(PrismError):
    """Attempted to mutate a job that already reached a terminal state."""

    pass
