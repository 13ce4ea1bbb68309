"""Logging setup for the agent: stdlib logging rendered through rich."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

# Libraries that are chatty at DEBUG and rarely useful.
QUIET_LOGGERS = ("urllib3", "kubernetes.client.rest")


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route all logging through a single RichHandler.

    Args:
        level: Root log level name (DEBUG, INFO, ...).
        console: Console to log to; stderr by default.
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    logging.basicConfig(
        level=level.upper(),
        format="[%(name)s] %(message)s",
        handlers=[handler],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))
