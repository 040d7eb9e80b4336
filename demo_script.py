#!/usr/bin/env python3
"""
Prism RAG Assistant demo runner

Ingests local files and asks a question, printing live progress for every
job exactly as the chat UI would render it.

Usage:
    python demo_script.py notes.txt report.pdf
    python demo_script.py --ask "What does the report conclude?"
    python demo_script.py data.json --ask "Summarize" --fast
"""

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from src.config import get_settings
from src.models.job import GenerationPayload, IngestionPayload, JobSnapshot
from src.services.registry import create_job_registry
from src.utils.logging import configure_logging


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f}".rstrip("0").rstrip(".") + f" {unit}"
        value /= 1024
    return f"{size} Bytes"


def describe(snapshot: JobSnapshot) -> str:
    """One status line per snapshot."""
    if snapshot.kind == "generation":
        if snapshot.status == "failed":
            return f"[reply] failed: {snapshot.error.message}"
        return f"[reply] {snapshot.result.text}"

    payload = snapshot.payload
    size = format_file_size(payload.size_bytes)
    if snapshot.status == "running":
        return (
            f"[{payload.filename}] {snapshot.stage_name} {snapshot.progress:.0%} "
            f"({snapshot.result.chunks} chunks) - {size}"
        )
    if snapshot.status == "completed":
        return f"[{payload.filename}] completed ({snapshot.result.chunks} chunks stored) - {size}"
    if snapshot.status == "failed":
        retry = " (retryable)" if snapshot.error.retryable else ""
        return f"[{payload.filename}] {snapshot.error.message}{retry} - {size}"
    return f"[{payload.filename}] {snapshot.status} - {size}"


def payload_for(path: Path) -> IngestionPayload:
    mime_type, _ = mimetypes.guess_type(path.name)
    return IngestionPayload(
        filename=path.name,
        mime_type=mime_type or "application/octet-stream",
        size_bytes=path.stat().st_size,
    )


async def run_demo(files: List[Path], question: Optional[str], fast: bool) -> int:
    settings = get_settings()
    if fast:
        settings = settings.model_copy(
            update={
                "upload_step_seconds": 0.0,
                "chunk_step_seconds": 0.0,
                "embed_step_seconds": 0.0,
                "response_delay_seconds": 0.0,
                "token_delay_seconds": 0.0,
            }
        )
    registry = create_job_registry(settings)

    pending = set()
    async with registry.subscribe() as updates:
        for path in files:
            pending.add(await registry.submit(payload_for(path)))
        if question:
            pending.add(await registry.submit(GenerationPayload(prompt=question)))

        # Validation failures are already terminal by the time submit returns
        for job_id in list(pending):
            snapshot = registry.get(job_id)
            if snapshot.is_terminal:
                print(describe(snapshot))
                pending.discard(job_id)

        if not pending:
            updates.close()

        async for snapshot in updates:
            if snapshot.id not in pending:
                continue
            if snapshot.kind == "generation" and not snapshot.is_terminal:
                continue
            print(describe(snapshot))
            if snapshot.is_terminal:
                pending.discard(snapshot.id)
            if not pending:
                break

    failed = registry.list(status="failed")
    await registry.shutdown()
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Prism RAG Assistant demo")
    parser.add_argument("files", nargs="*", type=Path, help="Files to ingest")
    parser.add_argument("--ask", metavar="PROMPT", help="Question for the assistant")
    parser.add_argument("--fast", action="store_true", help="Skip simulated delays")
    args = parser.parse_args()

    if not args.files and not args.ask:
        parser.error("nothing to do: pass files and/or --ask")

    missing = [str(p) for p in args.files if not p.is_file()]
    if missing:
        parser.error(f"not a file: {', '.join(missing)}")

    configure_logging(get_settings().log_level)
    sys.exit(asyncio.run(run_demo(args.files, args.ask, args.fast)))


if __name__ == "__main__":
    main()
