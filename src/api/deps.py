"""FastAPI dependencies for the Prism job API."""

from fastapi import Request

from src.config import Settings, get_settings
from src.services.registry import JobRegistry


def get_settings_dep() -> Settings:
    """Dependency for application settings."""
    return get_settings()


def get_registry_dep(request: Request) -> JobRegistry:
    """Dependency for the process-wide job registry created at startup."""
    return request.app.state.registry
