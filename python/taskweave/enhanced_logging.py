"""taskweave logging helpers.

Modules log through the standard library (``logging.getLogger(__name__)``).
configure_logging installs one root handler whose formatter is a structlog
ProcessorFormatter, so stdlib records are rendered as JSON lines or as
console text, with ``extra=`` fields carried into the output.
"""

import functools
import inspect
import logging
import sys
import time
from typing import Any, Callable, List, Optional

import structlog

HANDLER_NAME = "taskweave"


def _pre_chain() -> List[Any]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
    ]


def build_formatter(log_format: str = "json") -> structlog.stdlib.ProcessorFormatter:
    """Formatter rendering stdlib records through structlog."""
    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer(default=str)
        final = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            renderer,
        ]
    else:
        final = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=_pre_chain(), processors=final)


def configure_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
) -> logging.Handler:
    """Install a single taskweave handler on the root logger.

    Args:
        level: Logging level name.
        log_format: ``json`` for JSON lines, ``text`` for console text.
        log_file: Optional path; logs go to stderr when omitted.

    Returns:
        The installed handler.
    """
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(log_format))
    handler.set_name(HANDLER_NAME)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())
    return handler


def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        if inspect.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
