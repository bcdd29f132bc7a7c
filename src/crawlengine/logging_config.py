"""
Logging setup for the crawl engine.

Engine modules log through ``logging.getLogger(__name__)`` and never touch
handlers. Handlers are installed once per process by ``setup_logging``; the
CLI does it from its ``--log-level``/``--log-file`` flags, which default to
CRAWLER_LOG_LEVEL and CRAWLER_LOG_FILE.
"""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty below WARNING: playwright's driver, aiohttp's proxy probes, the event loop
NOISY_LOGGERS = ("playwright", "aiohttp", "asyncio")


def resolve_level(level: Union[str, int]) -> int:
    """Turn a level name (any case) or number into a logging level.

    Raises:
        ValueError: If the name is not a standard level
    """
    if isinstance(level, int):
        return level

    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """Install console (and optionally file) handlers on the root logger.

    Any handlers from an earlier call are replaced, so calling this twice
    does not duplicate output.

    Args:
        level: Level name or number for the engine's own loggers
        log_file: Also append to this file, creating parent directories
        format_string: Record format. Defaults to DEFAULT_FORMAT.
        quiet: Third-party loggers held at WARNING regardless of ``level``

    Returns:
        The ``crawlengine`` package logger
    """
    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=resolve_level(level), handlers=handlers, force=True)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger("crawlengine")


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, usually called with ``__name__``."""
    return logging.getLogger(name)
