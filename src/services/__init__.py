"""Service layer for the Prism job pipeline."""

from src.services.pipeline import STAGE_NAMES, JobHandle, JobPipeline, create_job_pipeline
from src.services.registry import JobRegistry, Subscription, create_job_registry
from src.services.stages import (
    ChunkStage,
    EmbedStage,
    StageContext,
    StageExecutor,
    StageOutcome,
    TokenStreamStage,
    UploadStage,
)

__all__ = [
    "STAGE_NAMES",
    "JobHandle",
    "JobPipeline",
    "create_job_pipeline",
    "JobRegistry",
    "Subscription",
    "create_job_registry",
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "UploadStage",
    "ChunkStage",
    "EmbedStage",
    "TokenStreamStage",
]
