from __future__ import annotations

import logging

from app.settings import settings


class AccessNoiseFilter(logging.Filter):
    """Drop the per-request lines of the health and metrics probes."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return "/healthz" not in message and "/metrics" not in message


def setup_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("uvicorn.access").addFilter(AccessNoiseFilter())
