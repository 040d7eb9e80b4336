"""FastAPI application exposing the Prism job registry."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from src.api.deps import get_settings_dep
from src.api.routes import (
    prism_exception_handler,
    router as jobs_router,
    validation_exception_handler,
)
from src.config import Settings, get_settings
from src.services.registry import JobRegistry, create_job_registry
from src.utils.errors import PrismError
from src.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(registry: Optional[JobRegistry] = None) -> FastAPI:
    """
    Build the API app.

    Args:
        registry: Registry to serve; one is created at startup when omitted

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.registry = registry or create_job_registry()
        logger.info("Job registry ready")
        try:
            yield
        finally:
            await app.state.registry.shutdown()
            logger.info("Job registry shut down")

    app = FastAPI(title="Prism RAG Assistant API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(PrismError, prism_exception_handler)
    app.include_router(jobs_router)

    @app.get("/health")
    async def health(settings: Settings = Depends(get_settings_dep)) -> dict:
        """Liveness probe plus the limits clients should respect."""
        return {
            "status": "ok",
            "max_file_size_bytes": settings.max_file_size_bytes,
            "allowed_mime_types": settings.allowed_mime_types,
            "max_prompt_chars": settings.max_prompt_chars,
        }

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run("src.main:app", host=settings.api_host, port=settings.api_port)
