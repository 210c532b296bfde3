"""Logging configuration for the command line."""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Chatty client libraries that log every request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route stdlib logging through a rich handler on stderr.

    Safe to call more than once; the root handlers are replaced each time.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level '{level}'")

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
