"""Job snapshot Pydantic models."""

from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.utils.errors import JobStateError

JobKind = Literal["ingestion", "generation"]

JobStatus = Literal["queued", "running", "completed", "failed", "cancelled"]

ErrorKind = Literal["InvalidInput", "TransientStageFailure", "InternalError"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Opaque job identifier, unique for the life of the process."""
    return f"job-{uuid4().hex[:12]}"


class IngestionPayload(BaseModel):
    """A file handed over for chunking and storage."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(min_length=1)
    # Free-form so unsupported types reach validation and fail as a job
    mime_type: str
    size_bytes: int = Field(ge=0)


class GenerationPayload(BaseModel):
    """A chat prompt to answer."""

    model_config = ConfigDict(frozen=True)

    prompt: str


JobPayload = Union[IngestionPayload, GenerationPayload]


class IngestionResult(BaseModel):
    """Chunk counters accumulated by the ingestion stages."""

    model_config = ConfigDict(frozen=True)

    chunks: int = 0
    stored_chunks: int = 0


class GenerationResult(BaseModel):
    """Assistant reply text accumulated by the token stream."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    tokens: int = 0


JobResult = Union[IngestionResult, GenerationResult]


class JobError(BaseModel):
    """Why a job failed, and whether resubmitting it makes sense."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    retryable: bool = False


def kind_of(payload: JobPayload) -> JobKind:
    return "ingestion" if isinstance(payload, IngestionPayload) else "generation"


def empty_result(kind: JobKind) -> JobResult:
    return IngestionResult() if kind == "ingestion" else GenerationResult()


class JobSnapshot(BaseModel):
    """Immutable point-in-time view of one job.

    Snapshots are never edited in place: the pipeline derives the next one
    with :meth:`evolve` and the registry swaps it in whole.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    kind: JobKind
    payload: JobPayload
    status: JobStatus = "queued"
    stage_name: str = ""
    stage_index: int = -1
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    result: JobResult
    error: Optional[JobError] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def create(cls, payload: JobPayload, job_id: Optional[str] = None) -> "JobSnapshot":
        """Fresh ``queued`` snapshot for a newly submitted payload."""
        kind = kind_of(payload)
        now = utcnow()
        return cls(
            id=job_id or new_job_id(),
            kind=kind,
            payload=payload,
            result=empty_result(kind),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def evolve(self, **changes: Any) -> "JobSnapshot":
        """
        Return the next snapshot with ``changes`` applied.

        Raises:
            JobStateError: If this snapshot is already terminal
        """
        if self.is_terminal:
            raise JobStateError(f"Job {self.id} is {self.status}; it can no longer change")

        now = utcnow()
        # updated_at must strictly increase even when the clock does not
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        changes["updated_at"] = now
        return self.model_copy(update=changes)
