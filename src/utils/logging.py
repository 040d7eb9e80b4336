"""Logging setup shared by the API server and the CLI."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # Chatty per-request logs from the server stack
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
