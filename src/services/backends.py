"""Backends the stages drive, plus simulated stand-ins for local use.

A real deployment plugs an upload transport, a chunker, an embedder and an
LLM client in here. Every backend is an async iterator factory so the stages
can observe progress and cancellation between steps.
"""

import asyncio
import logging
import math
import random
from typing import AsyncIterator, Optional, Protocol

from src.config import Settings, get_settings
from src.models.job import GenerationPayload, IngestionPayload
from src.utils.errors import TransientStageFailure

logger = logging.getLogger(__name__)


class UploadTransport(Protocol):
    def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
        """Yield the cumulative number of bytes transferred."""
        ...


class Chunker(Protocol):
    def chunk(self, payload: IngestionPayload, chunk_size: int) -> AsyncIterator[int]:
        """Yield the cumulative number of chunks produced."""
        ...


class Embedder(Protocol):
    def embed(self, payload: IngestionPayload, total_chunks: int) -> AsyncIterator[int]:
        """Yield the cumulative number of chunks embedded and stored."""
        ...


class TokenSource(Protocol):
    def estimate_tokens(self, payload: GenerationPayload) -> int:
        """Best guess at the number of fragments ``stream`` will yield."""
        ...

    def stream(self, payload: GenerationPayload) -> AsyncIterator[str]:
        """Yield reply text fragments in order."""
        ...


def estimate_chunks(size_bytes: int, chunk_size: int) -> int:
    """Number of chunks a file of ``size_bytes`` splits into."""
    return math.ceil(size_bytes / chunk_size)


def _batches(total: int, steps: int) -> list[int]:
    """Cumulative checkpoints splitting ``total`` into at most ``steps`` batches."""
    if total <= 0:
        return []
    steps = max(1, min(steps, total))
    return [math.ceil(total * (i + 1) / steps) for i in range(steps)]


class _SimulatedBackend:
    """Shared timing and fault injection for the simulated backends."""

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[random.Random] = None) -> None:
        self.settings = settings or get_settings()
        self.failure_rate = self.settings.simulated_failure_rate
        self._rng = rng or random.Random()

    async def _tick(self, delay: float, what: str) -> None:
        await asyncio.sleep(delay)
        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise TransientStageFailure(f"simulated {what} error")


class SimulatedUpload(_SimulatedBackend):
    """Pretends to send the file in ``upload_steps`` equal slices."""

    async def transfer(self, payload: IngestionPayload) -> AsyncIterator[int]:
        for sent in _batches(payload.size_bytes, self.settings.upload_steps):
            await self._tick(self.settings.upload_step_seconds, "transport")
            yield sent


class SimulatedChunker(_SimulatedBackend):
    """Produces ``ceil(size / chunk_size)`` chunks in ``chunk_steps`` batches."""

    async def chunk(self, payload: IngestionPayload, chunk_size: int) -> AsyncIterator[int]:
        total = estimate_chunks(payload.size_bytes, chunk_size)
        for produced in _batches(total, self.settings.chunk_steps):
            await self._tick(self.settings.chunk_step_seconds, "chunker")
            yield produced


class SimulatedEmbedder(_SimulatedBackend):
    """Stores chunks in ``embed_steps`` batches."""

    async def embed(self, payload: IngestionPayload, total_chunks: int) -> AsyncIterator[int]:
        for stored in _batches(total_chunks, self.settings.embed_steps):
            await self._tick(self.settings.embed_step_seconds, "vector store")
            yield stored


REPLY_TEMPLATE = (
    'I understand you\'re asking about "{prompt}". Based on the uploaded documents '
    "in the vector database, I can help you find relevant information. However, I "
    "notice you haven't uploaded any documents yet. Please use the \"Upload Files\" "
    "button in the sidebar to add documents that I can analyze and reference in my "
    "responses."
)


class SimulatedResponder(_SimulatedBackend):
    """Streams a canned assistant reply word by word."""

    def reply_for(self, payload: GenerationPayload) -> str:
        return REPLY_TEMPLATE.format(prompt=payload.prompt.strip())

    def estimate_tokens(self, payload: GenerationPayload) -> int:
        return len(self.reply_for(payload).split(" "))

    async def stream(self, payload: GenerationPayload) -> AsyncIterator[str]:
        words = self.reply_for(payload).split(" ")
        await asyncio.sleep(self.settings.response_delay_seconds)
        for index, word in enumerate(words):
            await self._tick(self.settings.token_delay_seconds, "model")
            yield word if index == 0 else f" {word}"
