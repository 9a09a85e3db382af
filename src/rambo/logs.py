"""Logging setup."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str) -> None:
    """Configure root logging for the CLI, daemon and dashboard."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # asyncio is chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
