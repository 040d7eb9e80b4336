"""Stage executors: one named phase of one job, reported as fractional progress."""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Literal, Optional, Type, TypeVar

from pydantic import BaseModel

from src.config import Settings, get_settings
from src.models.job import (
    GenerationPayload,
    GenerationResult,
    IngestionPayload,
    IngestionResult,
    JobError,
    JobPayload,
    JobResult,
    JobSnapshot,
)
from src.services.backends import (
    Chunker,
    Embedder,
    SimulatedChunker,
    SimulatedEmbedder,
    SimulatedResponder,
    SimulatedUpload,
    TokenSource,
    UploadTransport,
    estimate_chunks,
)
from src.utils.errors import InvalidInputError, StageCancelled, StageError

logger = logging.getLogger(__name__)
T = TypeVar("T")
R = TypeVar("R", IngestionResult, GenerationResult)

ProgressCallback = Callable[[float, Optional[JobResult]], None]


class StageOutcome(BaseModel):
    """How a stage ended."""

    kind: Literal["advance", "fail", "cancelled"]
    error: Optional[JobError] = None

    @classmethod
    def advanced(cls) -> "StageOutcome":
        return cls(kind="advance")

    @classmethod
    def failed(cls, error: JobError) -> "StageOutcome":
        return cls(kind="fail", error=error)

    @classmethod
    def cancelled(cls) -> "StageOutcome":
        return cls(kind="cancelled")


class StageContext:
    """
    The executor's view of the job it works on.

    Executors never touch job storage; they read the payload and the result
    accumulated so far, and push progress through :meth:`report`. Progress is
    clamped so it never moves backwards within the stage, and increments
    smaller than ``min_step`` are held back to avoid update storms.
    """

    def __init__(
        self,
        snapshot: JobSnapshot,
        cancel_event: asyncio.Event,
        on_progress: ProgressCallback,
        min_step: float = 0.01,
    ) -> None:
        self.job_id = snapshot.id
        self.payload: JobPayload = snapshot.payload
        self._result: JobResult = snapshot.result
        self._progress = 0.0
        self._cancel_event = cancel_event
        self._on_progress = on_progress
        self._min_step = min_step
        self.published_result = False

    @property
    def result(self) -> JobResult:
        return self._result

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def checkpoint(self) -> None:
        """Raise StageCancelled if cancellation was requested."""
        if self._cancel_event.is_set():
            raise StageCancelled(f"Job {self.job_id} cancelled")

    def report(self, progress: float, result: Optional[JobResult] = None) -> bool:
        """
        Publish stage progress and, optionally, a new accumulated result.

        Returns:
            True if an update was emitted, False if it was throttled away

        Raises:
            StageCancelled: If cancellation was requested; nothing is emitted
        """
        self.checkpoint()
        progress = min(1.0, max(self._progress, float(progress)))

        if result is None or result == self._result:
            result = None
            if progress == self._progress:
                return False
            if progress < 1.0 and progress - self._progress < self._min_step:
                return False
        else:
            self._result = result
            self.published_result = True

        self._progress = progress
        self._on_progress(progress, result)
        return True

    async def iterate(self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """
        Drive a backend iterator, abandoning it as soon as cancellation is
        requested even if the backend is stalled mid-step.
        """
        iterator = source.__aiter__()

        async def next_item() -> T:
            return await iterator.__anext__()

        try:
            while True:
                self.checkpoint()
                step = asyncio.ensure_future(next_item())
                waiter = asyncio.ensure_future(self._cancel_event.wait())
                try:
                    await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
                except BaseException:
                    step.cancel()
                    raise
                finally:
                    waiter.cancel()

                if not step.done():
                    step.cancel()
                    await asyncio.gather(step, return_exceptions=True)
                    raise StageCancelled(f"Job {self.job_id} cancelled")

                try:
                    value = step.result()
                except StopAsyncIteration:
                    return
                yield value
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


class StageExecutor(ABC):
    """Runs one named stage of a job and reports how it ended."""

    name: str = ""

    async def execute(
        self,
        ctx: StageContext,
        runner: Optional[Callable[[StageContext], Awaitable[None]]] = None,
    ) -> StageOutcome:
        """
        Run the stage to an outcome.

        Args:
            ctx: Context for the job being processed
            runner: Replacement for :meth:`run`, e.g. wrapped in a retry policy

        Returns:
            advance, fail (with a labelled error) or cancelled

        Unexpected exceptions are not caught here; the pipeline owns them.
        """
        run = runner or self.run
        try:
            ctx.checkpoint()
            await run(ctx)
            ctx.report(1.0)
        except StageCancelled:
            logger.debug(f"Stage {self.name} of {ctx.job_id} cancelled")
            return StageOutcome.cancelled()
        except StageError as e:
            logger.warning(f"Stage {self.name} of {ctx.job_id} failed: {e}")
            return StageOutcome.failed(e.to_job_error())
        return StageOutcome.advanced()

    @abstractmethod
    async def run(self, ctx: StageContext) -> None:
        """Do the work, calling ``ctx.report`` along the way."""
        ...


def _file_payload(ctx: StageContext, stage: str) -> IngestionPayload:
    if not isinstance(ctx.payload, IngestionPayload):
        raise InvalidInputError(f"{stage} stage needs a file payload")
    return ctx.payload


def _result_of(ctx: StageContext, expected: Type[R], stage: str) -> R:
    if not isinstance(ctx.result, expected):
        raise InvalidInputError(f"{stage} stage got a {type(ctx.result).__name__} to extend")
    return ctx.result


class UploadStage(StageExecutor):
    """Progress driven by bytes transferred."""

    name = "upload"

    def __init__(self, transport: Optional[UploadTransport] = None) -> None:
        self.transport = transport or SimulatedUpload()

    async def run(self, ctx: StageContext) -> None:
        payload = _file_payload(ctx, self.name)
        size = payload.size_bytes
        async with aclosing(ctx.iterate(self.transport.transfer(payload))) as sent_bytes:
            async for sent in sent_bytes:
                if sent > size:
                    raise InvalidInputError(
                        f"upload of {payload.filename} exceeded its declared size"
                    )
                ctx.report(sent / size if size else 1.0)


class ChunkStage(StageExecutor):
    """Progress driven by chunks produced against the estimated chunk count."""

    name = "chunk"

    def __init__(self, chunker: Optional[Chunker] = None, chunk_size: int = 1000) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunker = chunker or SimulatedChunker()
        self.chunk_size = chunk_size

    async def run(self, ctx: StageContext) -> None:
        payload = _file_payload(ctx, self.name)
        total = estimate_chunks(payload.size_bytes, self.chunk_size)
        result = _result_of(ctx, IngestionResult, self.name)

        async with aclosing(ctx.iterate(self.chunker.chunk(payload, self.chunk_size))) as produced_counts:
            async for produced in produced_counts:
                # The estimate is revised if the chunker produces more
                total = max(total, produced)
                ctx.report(
                    produced / total if total else 1.0,
                    result.model_copy(update={"chunks": max(result.chunks, produced)}),
                )


class EmbedStage(StageExecutor):
    """Embed and store every chunk; progress is chunks stored over total."""

    name = "embed"

    def __init__(self, embedder: Optional[Embedder] = None) -> None:
        self.embedder = embedder or SimulatedEmbedder()

    async def run(self, ctx: StageContext) -> None:
        payload = _file_payload(ctx, self.name)
        result = _result_of(ctx, IngestionResult, self.name)
        total = result.chunks
        if total == 0:
            return

        async with aclosing(ctx.iterate(self.embedder.embed(payload, total))) as stored_counts:
            async for stored in stored_counts:
                stored = min(stored, total)
                ctx.report(
                    stored / total,
                    result.model_copy(update={"stored_chunks": max(result.stored_chunks, stored)}),
                )


class TokenStreamStage(StageExecutor):
    """One update per reply fragment; progress is tokens emitted over the estimate."""

    name = "token-stream"

    def __init__(self, source: Optional[TokenSource] = None) -> None:
        self.source = source or SimulatedResponder()

    async def run(self, ctx: StageContext) -> None:
        if not isinstance(ctx.payload, GenerationPayload):
            raise InvalidInputError("token-stream stage needs a prompt payload")
        result = _result_of(ctx, GenerationResult, self.name)

        estimate = max(1, self.source.estimate_tokens(ctx.payload))
        text, tokens = result.text, result.tokens
        async with aclosing(ctx.iterate(self.source.stream(ctx.payload))) as fragments:
            async for fragment in fragments:
                text += fragment
                tokens += 1
                estimate = max(estimate, tokens)
                # 1.0 is reserved for the end of the stream
                ctx.report(min(tokens / estimate, 0.99), GenerationResult(text=text, tokens=tokens))


def build_stages(settings: Optional[Settings] = None) -> dict[str, StageExecutor]:
    """Default executors keyed by stage name, backed by the simulated backends."""
    settings = settings or get_settings()
    return {
        UploadStage.name: UploadStage(SimulatedUpload(settings)),
        ChunkStage.name: ChunkStage(SimulatedChunker(settings), settings.chunk_size_bytes),
        EmbedStage.name: EmbedStage(SimulatedEmbedder(settings)),
        TokenStreamStage.name: TokenStreamStage(SimulatedResponder(settings)),
    }
