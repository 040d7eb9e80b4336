"""Pytest fixtures for the Prism job pipeline tests."""

import asyncio
from typing import AsyncIterator, List, Optional

import pytest

from src.config import Settings
from src.models.job import GenerationPayload, IngestionPayload
from src.utils.errors import TransientStageFailure


def make_settings(**overrides) -> Settings:
    """Settings with every simulated delay removed."""
    values = dict(
        upload_step_seconds=0.0,
        chunk_step_seconds=0.0,
        embed_step_seconds=0.0,
        response_delay_seconds=0.0,
        token_delay_seconds=0.0,
        retry_base_delay_seconds=0.0,
        simulated_failure_rate=0.0,
        max_concurrent_jobs=8,
        retention_limit=100,
        max_stage_retries=1,
    )
    values.update(overrides)
    return Settings(**values)


class GatedChunker:
    """Produces ``before_gate`` chunks, then stalls until ``gate`` is set."""

    def __init__(self, before_gate: int = 3) -> None:
        self.before_gate = before_gate
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.closed = False

    async def chunk(self, payload: IngestionPayload, chunk_size: int) -> AsyncIterator[int]:
        total = -(-payload.size_bytes // chunk_size)
        try:
            for produced in range(1, total + 1):
                if produced > self.before_gate:
                    self.started.set()
                    await self.gate.wait()
                yield produced
            self.started.set()
        finally:
            self.closed = True


class FlakyUpload:
    """Raises a transient failure on the first ``failures`` transfers."""

    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls = 0

    async def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStageFailure("connection reset")
        yield payload.size_bytes


class ScriptedResponder:
    """Streams a fixed list of fragments."""

    def __init__(self, fragments: List[str], estimate: Optional[int] = None) -> None:
        self.fragments = fragments
        self.estimate = estimate if estimate is not None else len(fragments)

    def estimate_tokens(self, payload: GenerationPayload) -> int:
        return self.estimate

    async def stream(self, payload: GenerationPayload) -> AsyncIterator[str]:
        for fragment in self.fragments:
            await asyncio.sleep(0)
            yield fragment


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with zero simulated latency."""
    return make_settings()


@pytest.fixture
def text_file() -> IngestionPayload:
    """A valid 10,000-byte text file."""
    return IngestionPayload(filename="notes.txt", mime_type="text/plain", size_bytes=10_000)


@pytest.fixture
def prompt() -> GenerationPayload:
    """A simple chat prompt."""
    return GenerationPayload(prompt="What is in my documents?")
