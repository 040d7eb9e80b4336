"""Job pipeline: drives one job through its ordered stages."""

import asyncio
import logging
from typing import Callable, Dict, Mapping, Optional, Tuple

from src.config import Settings, get_settings
from src.models.job import (
    GenerationPayload,
    IngestionPayload,
    JobError,
    JobKind,
    JobPayload,
    JobResult,
    JobSnapshot,
)
from src.services.stages import StageContext, StageExecutor, StageOutcome, build_stages
from src.utils.errors import InvalidInputError, TransientStageFailure
from src.utils.retry import with_retry

logger = logging.getLogger(__name__)

STAGE_NAMES: Dict[JobKind, Tuple[str, ...]] = {
    "ingestion": ("upload", "chunk", "embed"),
    "generation": ("token-stream",),
}


class JobHandle:
    """
    Write side of one job.

    The pipeline run that owns the handle is the job's only writer; every
    change goes through :meth:`update`, which derives the next snapshot and
    hands it to the registry's commit callback in one step.
    """

    def __init__(self, snapshot: JobSnapshot, commit: Callable[[JobSnapshot], None]) -> None:
        self.snapshot = snapshot
        self.cancel_event = asyncio.Event()
        self._commit = commit

    @property
    def job_id(self) -> str:
        return self.snapshot.id

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        self.cancel_event.set()

    def update(self, **changes) -> JobSnapshot:
        self.snapshot = self.snapshot.evolve(**changes)
        self._commit(self.snapshot)
        return self.snapshot


class JobPipeline:
    """Validates payloads and runs admitted jobs stage by stage."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        stages: Optional[Mapping[str, StageExecutor]] = None,
    ) -> None:
        """
        Initialize the JobPipeline.

        Args:
            settings: Limits and retry policy (defaults to environment settings)
            stages: Executors keyed by stage name; missing names fall back to
                the simulated defaults
        """
        self.settings = settings or get_settings()
        self.stages: Dict[str, StageExecutor] = build_stages(self.settings)
        if stages:
            self.stages.update(stages)
        limit = self.settings.max_concurrent_jobs
        self._slots: Optional[asyncio.Semaphore] = asyncio.Semaphore(limit) if limit > 0 else None

    def stages_for(self, kind: JobKind) -> Tuple[StageExecutor, ...]:
        return tuple(self.stages[name] for name in STAGE_NAMES[kind])

    def validate(self, payload: JobPayload) -> None:
        """
        Synchronous admission checks.

        Raises:
            InvalidInputError: If the payload must not enter the pipeline
        """
        if isinstance(payload, IngestionPayload):
            if payload.mime_type not in self.settings.allowed_mime_types:
                raise InvalidInputError("unsupported file type")
            if payload.size_bytes > self.settings.max_file_size_bytes:
                raise InvalidInputError("file too large")
        elif isinstance(payload, GenerationPayload):
            if not payload.prompt.strip():
                raise InvalidInputError("prompt is empty")
            if len(payload.prompt) > self.settings.max_prompt_chars:
                raise InvalidInputError("prompt too long")
        else:
            raise InvalidInputError(f"unsupported payload: {type(payload).__name__}")

    async def run(self, handle: JobHandle) -> JobSnapshot:
        """
        Drive a queued job to a terminal state.

        Never raises for job-level problems: every fault ends up as the job's
        terminal snapshot, which is also returned.
        """
        if not await self._claim_slot(handle):
            return self._finish_cancelled(handle)
        try:
            return await self._drive(handle)
        finally:
            if self._slots is not None:
                self._slots.release()

    async def _claim_slot(self, handle: JobHandle) -> bool:
        """Wait for a free slot; give up if the job is cancelled while queued."""
        if self._slots is None:
            return not handle.cancel_requested

        acquire = asyncio.ensure_future(self._slots.acquire())
        cancelled = asyncio.ensure_future(handle.cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            acquire.cancel()
            raise
        finally:
            cancelled.cancel()

        if not acquire.done():
            acquire.cancel()
            try:
                await acquire
            except asyncio.CancelledError:
                return False
        if handle.cancel_requested:
            self._slots.release()
            return False
        return True

    async def _drive(self, handle: JobHandle) -> JobSnapshot:
        stages = self.stages_for(handle.snapshot.kind)
        logger.info(f"Job {handle.job_id} started ({handle.snapshot.kind}, {len(stages)} stages)")

        for index, stage in enumerate(stages):
            if handle.cancel_requested:
                return self._finish_cancelled(handle)

            handle.update(status="running", stage_name=stage.name, stage_index=index, progress=0.0)
            logger.debug(f"Job {handle.job_id} entering stage {stage.name}")

            try:
                outcome = await self._execute_stage(handle, stage)
            except Exception as e:
                logger.exception(f"Job {handle.job_id} crashed in stage {stage.name}")
                outcome = StageOutcome.failed(
                    JobError(
                        kind="InternalError",
                        message=f"{type(e).__name__}: {e}",
                        retryable=False,
                    )
                )

            if outcome.kind == "cancelled":
                return self._finish_cancelled(handle)
            if outcome.kind == "fail":
                return self._finish_failed(handle, outcome.error)

        snapshot = handle.update(status="completed", stage_name="", progress=1.0)
        logger.info(f"Job {handle.job_id} completed")
        return snapshot

    async def _execute_stage(self, handle: JobHandle, stage: StageExecutor) -> StageOutcome:
        def on_progress(progress: float, result: Optional[JobResult]) -> None:
            if result is None:
                handle.update(progress=progress)
            else:
                handle.update(progress=progress, result=result)

        ctx = StageContext(
            handle.snapshot,
            handle.cancel_event,
            on_progress,
            min_step=self.settings.progress_min_step,
        )
        # Only retry while nothing was published, so results stay append-only
        runner = with_retry(
            max_attempts=1 + self.settings.max_stage_retries,
            base_delay=self.settings.retry_base_delay_seconds,
            exceptions=(TransientStageFailure,),
            retry_if=lambda _: not ctx.published_result and not ctx.cancelled,
        )(stage.run)
        return await stage.execute(ctx, runner=runner)

    def _finish_cancelled(self, handle: JobHandle) -> JobSnapshot:
        snapshot = handle.update(status="cancelled", stage_name="")
        logger.info(f"Job {handle.job_id} cancelled")
        return snapshot

    def _finish_failed(self, handle: JobHandle, error: Optional[JobError]) -> JobSnapshot:
        snapshot = handle.update(status="failed", stage_name="", error=error)
        logger.info(f"Job {handle.job_id} failed: {error.message if error else 'unknown error'}")
        return snapshot


def create_job_pipeline(
    settings: Optional[Settings] = None,
    stages: Optional[Mapping[str, StageExecutor]] = None,
) -> JobPipeline:
    """Factory function to create a JobPipeline."""
    return JobPipeline(settings=settings, stages=stages)
