"""Pydantic data models for the Prism job pipeline."""

from src.models.job import (
    TERMINAL_STATUSES,
    GenerationPayload,
    GenerationResult,
    IngestionPayload,
    IngestionResult,
    JobError,
    JobKind,
    JobPayload,
    JobResult,
    JobSnapshot,
    JobStatus,
)

__all__ = [
    "TERMINAL_STATUSES",
    "IngestionPayload",
    "GenerationPayload",
    "JobPayload",
    "IngestionResult",
    "GenerationResult",
    "JobResult",
    "JobError",
    "JobKind",
    "JobStatus",
    "JobSnapshot",
]
