"""Logging utilities for pipeline monitoring."""

import functools
import logging
import sys
import time
from typing import Callable

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Configure the ``taleweaver`` logger tree once per process."""
    root = logging.getLogger("taleweaver")
    root.setLevel(level.upper())
    if not any(getattr(h, "_taleweaver", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._taleweaver = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # Quieter third-party loggers
    for name in ("httpx", "openai", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)


def log_step(step_name: str, **kwargs):
    """Log a pipeline step with context."""
    logger.debug(f"Step: {step_name} - {kwargs}")


def log_api_call(api_name: str, **kwargs):
    """Log an outbound API call with context."""
    logger.debug(f"API Call: {api_name} - {kwargs}")


def debug_async_function(func: Callable) -> Callable:
    """Decorator to log entry, exit and duration of async functions."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        started = time.perf_counter()
        logger.debug(f"Calling async function: {func.__name__}")
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - started
            logger.debug(f"Completed async function: {func.__name__} ({elapsed:.2f}s)")
    return wrapper
