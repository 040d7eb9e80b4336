"""Tests for stage executors and the stage context."""

import asyncio
from typing import AsyncIterator, List, Optional, Tuple

import pytest
from hypothesis import given, settings, strategies as st

from conftest import GatedChunker, ScriptedResponder, make_settings
from src.models.job import (
    GenerationPayload,
    GenerationResult,
    IngestionPayload,
    IngestionResult,
    JobResult,
    JobSnapshot,
)
from src.services.backends import (
    SimulatedChunker,
    SimulatedEmbedder,
    SimulatedResponder,
    SimulatedUpload,
    estimate_chunks,
)
from src.services.stages import (
    ChunkStage,
    EmbedStage,
    StageContext,
    TokenStreamStage,
    UploadStage,
)
from src.utils.errors import StageCancelled, TransientStageFailure

Update = Tuple[float, Optional[JobResult]]


def make_context(
    payload,
    result: Optional[JobResult] = None,
    min_step: float = 0.01,
) -> Tuple[StageContext, List[Update], asyncio.Event]:
    snapshot = JobSnapshot.create(payload)
    if result is not None:
        snapshot = snapshot.evolve(result=result)
    updates: List[Update] = []
    cancel = asyncio.Event()
    ctx = StageContext(snapshot, cancel, lambda p, r: updates.append((p, r)), min_step=min_step)
    return ctx, updates, cancel


FILE = IngestionPayload(filename="notes.txt", mime_type="text/plain", size_bytes=10_000)


class TestStageContextReport:
    """report never moves progress backwards and throttles tiny steps."""

    @settings(max_examples=100)
    @given(values=st.lists(st.floats(min_value=-1.0, max_value=2.0), max_size=50))
    def test_emitted_progress_is_monotonic_and_bounded(self, values: List[float]) -> None:
        ctx, updates, _ = make_context(FILE)
        for value in values:
            ctx.report(value)

        emitted = [p for p, _ in updates]
        assert all(0.0 <= p <= 1.0 for p in emitted)
        assert emitted == sorted(emitted)
        assert len(emitted) == len(set(emitted))

    @settings(max_examples=50)
    @given(min_step=st.floats(min_value=0.01, max_value=0.5))
    def test_increments_below_min_step_are_held_back(self, min_step: float) -> None:
        ctx, updates, _ = make_context(FILE, min_step=min_step)
        for i in range(1, 1001):
            ctx.report(i / 1000)

        emitted = [p for p, _ in updates]
        assert emitted[-1] == 1.0
        for previous, current in zip([0.0] + emitted, emitted[:-1]):
            assert current - previous >= min_step - 1e-9

    def test_result_change_is_always_emitted(self) -> None:
        ctx, updates, _ = make_context(FILE)
        ctx.report(0.001, IngestionResult(chunks=1))
        ctx.report(0.001, IngestionResult(chunks=2))

        assert [r.chunks for _, r in updates] == [1, 2]
        assert ctx.published_result

    def test_report_after_cancel_emits_nothing(self) -> None:
        ctx, updates, cancel = make_context(FILE)
        ctx.report(0.5)
        cancel.set()

        with pytest.raises(StageCancelled):
            ctx.report(0.9)
        assert updates == [(0.5, None)]


class TestIngestionStages:
    """Each ingestion stage ends at progress 1.0 with its counters filled in."""

    @pytest.mark.asyncio
    async def test_upload_progress_follows_bytes(self) -> None:
        ctx, updates, _ = make_context(FILE)
        stage = UploadStage(SimulatedUpload(make_settings(upload_steps=10)))

        outcome = await stage.execute(ctx)

        assert outcome.kind == "advance"
        assert [round(p, 2) for p, _ in updates] == [round(i / 10, 2) for i in range(1, 11)]

    @pytest.mark.asyncio
    async def test_empty_file_uploads_immediately(self) -> None:
        empty = IngestionPayload(filename="empty.txt", mime_type="text/plain", size_bytes=0)
        ctx, updates, _ = make_context(empty)

        outcome = await UploadStage(SimulatedUpload(make_settings())).execute(ctx)

        assert outcome.kind == "advance"
        assert updates == [(1.0, None)]

    @settings(max_examples=50, deadline=None)
    @given(
        size=st.integers(min_value=0, max_value=200_000),
        chunk_size=st.integers(min_value=1, max_value=5000),
    )
    def test_chunk_count_is_ceiling_of_size(self, size: int, chunk_size: int) -> None:
        payload = IngestionPayload(filename="f.json", mime_type="application/json", size_bytes=size)

        async def scenario() -> JobResult:
            ctx, _, _ = make_context(payload)
            stage = ChunkStage(SimulatedChunker(make_settings()), chunk_size=chunk_size)
            outcome = await stage.execute(ctx)
            assert outcome.kind == "advance"
            return ctx.result

        result = asyncio.run(scenario())
        assert result.chunks == estimate_chunks(size, chunk_size)

    @pytest.mark.asyncio
    async def test_ten_thousand_bytes_make_ten_chunks(self) -> None:
        ctx, updates, _ = make_context(FILE)

        outcome = await ChunkStage(SimulatedChunker(make_settings()), chunk_size=1000).execute(ctx)

        assert outcome.kind == "advance"
        assert ctx.result.chunks == 10
        assert updates[-1][0] == 1.0

    @pytest.mark.asyncio
    async def test_empty_file_with_zero_count_chunker(self) -> None:
        class ZeroChunker:
            async def chunk(self, payload: IngestionPayload, chunk_size: int) -> AsyncIterator[int]:
                yield 0

        empty = IngestionPayload(filename="empty.txt", mime_type="text/plain", size_bytes=0)
        ctx, updates, _ = make_context(empty)

        outcome = await ChunkStage(ZeroChunker(), chunk_size=1000).execute(ctx)

        assert outcome.kind == "advance"
        assert ctx.result.chunks == 0
        assert updates == [(1.0, None)]

    @pytest.mark.asyncio
    async def test_mismatched_result_is_invalid_input(self) -> None:
        ctx, updates, _ = make_context(FILE, result=GenerationResult(text="hi", tokens=1))

        outcome = await ChunkStage(SimulatedChunker(make_settings()), chunk_size=1000).execute(ctx)

        assert outcome.kind == "fail"
        assert outcome.error.kind == "InvalidInput"
        assert "GenerationResult" in outcome.error.message
        assert updates == []

    def test_chunk_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ChunkStage(chunk_size=0)

    @pytest.mark.asyncio
    async def test_embed_stores_every_chunk(self) -> None:
        ctx, updates, _ = make_context(FILE, result=IngestionResult(chunks=10))

        outcome = await EmbedStage(SimulatedEmbedder(make_settings())).execute(ctx)

        assert outcome.kind == "advance"
        assert ctx.result == IngestionResult(chunks=10, stored_chunks=10)
        assert [p for p, _ in updates] == sorted(p for p, _ in updates)

    @pytest.mark.asyncio
    async def test_oversized_transfer_is_invalid_input(self) -> None:
        class LyingTransport:
            async def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
                yield payload.size_bytes + 1

        ctx, _, _ = make_context(FILE)
        outcome = await UploadStage(LyingTransport()).execute(ctx)

        assert outcome.kind == "fail"
        assert outcome.error.kind == "InvalidInput"
        assert not outcome.error.retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self) -> None:
        ctx, _, _ = make_context(FILE)
        backend = SimulatedUpload(make_settings(simulated_failure_rate=1.0))

        outcome = await UploadStage(backend).execute(ctx)

        assert outcome.kind == "fail"
        assert outcome.error.kind == "TransientStageFailure"
        assert outcome.error.retryable

    @pytest.mark.asyncio
    async def test_prompt_payload_rejected_by_file_stage(self) -> None:
        ctx, _, _ = make_context(GenerationPayload(prompt="hello"))
        outcome = await ChunkStage(chunk_size=1000).execute(ctx)

        assert outcome.kind == "fail"
        assert outcome.error.kind == "InvalidInput"

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self) -> None:
        class BrokenTransport:
            async def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
                raise KeyError("boom")
                yield 0

        ctx, _, _ = make_context(FILE)
        with pytest.raises(KeyError):
            await UploadStage(BrokenTransport()).execute(ctx)


class TestTokenStream:
    """The reply arrives one fragment per update and completes at 1.0."""

    @pytest.mark.asyncio
    async def test_simulated_reply_is_streamed_in_full(self) -> None:
        payload = GenerationPayload(prompt="What is RAG?")
        responder = SimulatedResponder(make_settings())
        ctx, updates, _ = make_context(payload)

        outcome = await TokenStreamStage(responder).execute(ctx)

        assert outcome.kind == "advance"
        assert ctx.result.text == responder.reply_for(payload)
        assert '"What is RAG?"' in ctx.result.text
        assert ctx.result.tokens == responder.estimate_tokens(payload)
        texts = [r.text for _, r in updates if r is not None]
        assert all(later.startswith(earlier) for earlier, later in zip(texts, texts[1:]))
        assert updates[-1][0] == 1.0

    @settings(max_examples=50, deadline=None)
    @given(
        fragments=st.lists(st.text(min_size=1, max_size=5), min_size=1, max_size=30),
        estimate=st.integers(min_value=0, max_value=40),
    )
    def test_progress_monotonic_with_wrong_estimate(self, fragments: List[str], estimate: int) -> None:
        async def scenario() -> Tuple[List[Update], JobResult]:
            ctx, updates, _ = make_context(GenerationPayload(prompt="q"))
            await TokenStreamStage(ScriptedResponder(fragments, estimate)).execute(ctx)
            return updates, ctx.result

        updates, result = asyncio.run(scenario())
        progress = [p for p, _ in updates]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert all(p < 1.0 for p in progress[:-1])
        assert result == GenerationResult(text="".join(fragments), tokens=len(fragments))


class TestStageCancellation:
    """A stalled backend cannot delay cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_while_backend_stalls(self) -> None:
        chunker = GatedChunker(before_gate=3)
        ctx, updates, cancel = make_context(FILE)
        stage = ChunkStage(chunker, chunk_size=1000)

        running = asyncio.ensure_future(stage.execute(ctx))
        await asyncio.wait_for(chunker.started.wait(), timeout=1)
        emitted_before_cancel = list(updates)
        cancel.set()
        outcome = await asyncio.wait_for(running, timeout=1)

        assert outcome.kind == "cancelled"
        assert updates == emitted_before_cancel
        assert ctx.result.chunks == 3
        assert chunker.closed

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self) -> None:
        ctx, updates, cancel = make_context(FILE)
        cancel.set()

        outcome = await UploadStage(SimulatedUpload(make_settings())).execute(ctx)

        assert outcome.kind == "cancelled"
        assert updates == []

    @pytest.mark.asyncio
    async def test_transient_failure_from_backend_surfaces(self) -> None:
        class DroppedConnection:
            async def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
                yield 100
                raise TransientStageFailure("connection reset")

        ctx, updates, _ = make_context(FILE)
        outcome = await UploadStage(DroppedConnection()).execute(ctx)

        assert outcome.kind == "fail"
        assert outcome.error.retryable
        assert updates == [(0.01, None)]
