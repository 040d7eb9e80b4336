"""Application settings from environment variables."""

from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # Configuration
    log_level: str = "INFO"

    # Ingestion limits
    chunk_size_bytes: int = 1000
    max_file_size_bytes: int = 50 * 1024 * 1024
    allowed_mime_types: List[str] = [
        "application/pdf",
        "text/plain",
        "application/json",
    ]

    # Generation limits
    max_prompt_chars: int = 4000

    # Registry / pipeline
    retention_limit: int = Field(default=100, ge=1)
    max_concurrent_jobs: int = Field(default=8, ge=0)  # 0 = unbounded
    max_stage_retries: int = 1
    retry_base_delay_seconds: float = 0.5
    progress_min_step: float = 0.01

    # Simulated backends
    upload_steps: int = 10
    upload_step_seconds: float = 0.1
    chunk_steps: int = 5
    chunk_step_seconds: float = 0.3
    embed_steps: int = 5
    embed_step_seconds: float = 0.2
    response_delay_seconds: float = 1.0
    token_delay_seconds: float = 0.05
    simulated_failure_rate: float = 0.0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = {"env_file": ".env"}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
