"""Utility modules for the Prism job pipeline."""

from src.utils.errors import (
    InvalidInputError,
    JobNotFoundError,
    JobStateError,
    PrismError,
    StageCancelled,
    StageError,
    TransientStageFailure,
)
from src.utils.logging import configure_logging
from src.utils.retry import with_retry

__all__ = [
    "PrismError",
    "StageError",
    "InvalidInputError",
    "TransientStageFailure",
    "StageCancelled",
    "JobNotFoundError",
    "JobStateError",
    "configure_logging",
    "with_retry",
]
