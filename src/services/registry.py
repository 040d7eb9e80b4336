"""Job registry: the store of all jobs plus push-based change subscriptions."""

import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from pydantic import TypeAdapter, ValidationError

from src.config import Settings, get_settings
from src.models.job import (
    JobKind,
    JobPayload,
    JobSnapshot,
    JobStatus,
)
from src.services.pipeline import JobHandle, JobPipeline
from src.utils.errors import InvalidInputError, JobNotFoundError, JobStateError

logger = logging.getLogger(__name__)

_payload_adapter = TypeAdapter(JobPayload)

_CLOSED = object()


class Subscription:
    """
    Ordered stream of snapshots from the registry.

    Use as an async iterator, optionally inside ``async with``. A job
    subscription ends after that job's terminal snapshot; a registry-wide one
    runs until :meth:`close`. Closing never affects the jobs themselves.
    """

    def __init__(self, registry: "JobRegistry", job_id: Optional[str]) -> None:
        self.job_id = job_id
        self._registry = registry
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, snapshot: JobSnapshot) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobSnapshot:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if self.job_id is not None and item.is_terminal:
            self.close()
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class _JobEntry:
    __slots__ = ("snapshot", "seq", "handle", "task")

    def __init__(self, snapshot: JobSnapshot, seq: int, handle: Optional[JobHandle] = None) -> None:
        self.snapshot = snapshot
        self.seq = seq
        self.handle = handle
        self.task: Optional[asyncio.Task] = None


class JobRegistry:
    """Owns every in-flight and retained job and fans out their updates."""

    def __init__(
        self,
        pipeline: Optional[JobPipeline] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the JobRegistry.

        Args:
            pipeline: Pipeline that runs admitted jobs
            settings: Retention policy (defaults to the pipeline's settings)
        """
        self.pipeline = pipeline or JobPipeline(settings=settings)
        self.settings = settings or self.pipeline.settings
        self._jobs: Dict[str, _JobEntry] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._job_subscribers: Dict[str, Set[Subscription]] = {}
        self._all_subscribers: Set[Subscription] = set()

    # ==================== Submission ====================

    async def submit(self, payload: Union[JobPayload, Mapping[str, Any]]) -> str:
        """
        Create a job for ``payload`` and start its pipeline in the background.

        Args:
            payload: IngestionPayload, GenerationPayload or an equivalent dict

        Returns:
            The new job's id. Payloads rejected by validation still get an id;
            their job is created directly in ``failed``.

        Raises:
            InvalidInputError: If a dict payload matches neither payload shape
        """
        if isinstance(payload, Mapping):
            try:
                payload = _payload_adapter.validate_python(dict(payload))
            except ValidationError as e:
                raise InvalidInputError(f"malformed payload: {e.error_count()} validation error(s)") from e

        snapshot = JobSnapshot.create(payload)
        try:
            self.pipeline.validate(payload)
        except InvalidInputError as e:
            logger.warning(f"Rejected {snapshot.kind} job {snapshot.id}: {e}")
            failed = snapshot.evolve(status="failed", error=e.to_job_error())
            self._insert(_JobEntry(failed, next(self._seq)))
            self._evict_terminal()
            return failed.id

        handle = JobHandle(snapshot, self._commit)
        entry = _JobEntry(snapshot, next(self._seq), handle)
        self._insert(entry)
        entry.task = asyncio.get_running_loop().create_task(
            self.pipeline.run(handle), name=f"pipeline-{snapshot.id}"
        )
        logger.info(f"Admitted {snapshot.kind} job {snapshot.id}")
        return snapshot.id

    # ==================== Queries ====================

    def get(self, job_id: str) -> JobSnapshot:
        """
        Current snapshot of a job.

        Raises:
            JobNotFoundError: If the id is unknown (or already evicted)
        """
        with self._lock:
            entry = self._jobs.get(job_id)
        if entry is None:
            raise JobNotFoundError(job_id)
        return entry.snapshot

    def list(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[JobKind] = None,
    ) -> List[JobSnapshot]:
        """Snapshots matching the filter, most recently created first."""
        with self._lock:
            entries = list(self._jobs.values())
        entries.sort(key=lambda e: (e.snapshot.created_at, e.seq), reverse=True)
        return [
            e.snapshot
            for e in entries
            if (status is None or e.snapshot.status == status)
            and (kind is None or e.snapshot.kind == kind)
        ]

    # ==================== Subscriptions ====================

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """
        Stream snapshots for one job, or for every job when ``job_id`` is None.

        A job subscription starts with the job's current snapshot.

        Raises:
            JobNotFoundError: If ``job_id`` is unknown
        """
        subscription = Subscription(self, job_id)
        if job_id is None:
            with self._lock:
                self._all_subscribers.add(subscription)
            return subscription

        with self._lock:
            entry = self._jobs.get(job_id)
            if entry is None:
                raise JobNotFoundError(job_id)
            subscription._push(entry.snapshot)
            if not entry.snapshot.is_terminal:
                self._job_subscribers.setdefault(job_id, set()).add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription.job_id is None:
                self._all_subscribers.discard(subscription)
                return
            subscribers = self._job_subscribers.get(subscription.job_id)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    self._job_subscribers.pop(subscription.job_id, None)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """
        Wait for a job to reach a terminal state.

        Raises:
            JobNotFoundError: If the id is unknown
            asyncio.TimeoutError: If ``timeout`` elapses first
        """

        async def terminal() -> JobSnapshot:
            async with self.subscribe(job_id) as updates:
                async for snapshot in updates:
                    if snapshot.is_terminal:
                        return snapshot
            return self.get(job_id)

        return await asyncio.wait_for(terminal(), timeout)

    # ==================== Cancellation / cleanup ====================

    def cancel(self, job_id: str) -> JobSnapshot:
        """
        Request cancellation. Cancelling a terminal job is a no-op.

        Returns:
            The job's snapshot at the time of the request

        Raises:
            JobNotFoundError: If the id is unknown
        """
        with self._lock:
            entry = self._jobs.get(job_id)
        if entry is None:
            raise JobNotFoundError(job_id)
        if entry.snapshot.is_terminal or entry.handle is None:
            return entry.snapshot
        if not entry.handle.cancel_requested:
            logger.info(f"Cancellation requested for job {job_id}")
            entry.handle.request_cancel()
        return entry.snapshot

    def remove(self, job_id: str) -> JobSnapshot:
        """
        Forget one finished job.

        Returns:
            The removed job's final snapshot

        Raises:
            JobNotFoundError: If the id is unknown
            JobStateError: If the job is still queued or running
        """
        with self._lock:
            entry = self._jobs.get(job_id)
            if entry is None:
                raise JobNotFoundError(job_id)
            if not entry.snapshot.is_terminal:
                raise JobStateError(f"Job {job_id} is {entry.snapshot.status}; cancel it before removing")
            del self._jobs[job_id]
        logger.debug(f"Removed job {job_id}")
        return entry.snapshot

    def clear(self) -> int:
        """Drop every terminal job; in-flight jobs are kept. Returns the count removed."""
        with self._lock:
            terminal = [job_id for job_id, e in self._jobs.items() if e.snapshot.is_terminal]
            for job_id in terminal:
                del self._jobs[job_id]
        logger.debug(f"Cleared {len(terminal)} terminal job(s)")
        return len(terminal)

    async def shutdown(self) -> None:
        """Cancel every in-flight job and wait for the pipelines to finish."""
        with self._lock:
            entries = [e for e in self._jobs.values() if e.task is not None and not e.task.done()]
        for entry in entries:
            entry.handle.request_cancel()
        if entries:
            await asyncio.gather(*(e.task for e in entries), return_exceptions=True)
        for subscription in list(self._all_subscribers):
            subscription.close()

    # ==================== Internal ====================

    def _insert(self, entry: _JobEntry) -> None:
        with self._lock:
            self._jobs[entry.snapshot.id] = entry
            self._fan_out(entry.snapshot)

    def _commit(self, snapshot: JobSnapshot) -> None:
        """Swap in a job's next snapshot and notify subscribers."""
        with self._lock:
            entry = self._jobs.get(snapshot.id)
            if entry is not None:
                entry.snapshot = snapshot
            self._fan_out(snapshot)
        if snapshot.is_terminal:
            self._evict_terminal()

    def _fan_out(self, snapshot: JobSnapshot) -> None:
        # Caller holds the lock, so a concurrent subscribe sees each snapshot once
        for subscription in self._job_subscribers.get(snapshot.id, ()):
            subscription._push(snapshot)
        for subscription in self._all_subscribers:
            subscription._push(snapshot)
        if snapshot.is_terminal:
            self._job_subscribers.pop(snapshot.id, None)

    def _evict_terminal(self) -> None:
        limit = self.settings.retention_limit
        with self._lock:
            terminal = [e for e in self._jobs.values() if e.snapshot.is_terminal]
            excess = len(terminal) - limit
            if excess <= 0:
                return
            terminal.sort(key=lambda e: (e.snapshot.updated_at, e.seq))
            evicted = [e.snapshot.id for e in terminal[:excess]]
            for job_id in evicted:
                del self._jobs[job_id]
        logger.debug(f"Evicted {len(evicted)} terminal job(s): {', '.join(evicted)}")


def create_job_registry(
    settings: Optional[Settings] = None,
    pipeline: Optional[JobPipeline] = None,
) -> JobRegistry:
    """
    Factory function to create a JobRegistry.

    Args:
        settings: Optional settings (defaults to environment settings)
        pipeline: Optional pre-built pipeline (e.g. with real backends)

    Returns:
        Configured JobRegistry instance
    """
    settings = settings or (pipeline.settings if pipeline else get_settings())
    return JobRegistry(pipeline=pipeline or JobPipeline(settings=settings), settings=settings)
