"""Logging setup for runbookctl.

Log records go to stderr so they never mix with step output or
machine-readable results on stdout.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "runbookctl"

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Keyword arguments the logging module consumes itself
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def to_logging(self) -> int:
        return logging.getLevelName(self.value.upper())


def level_for(verbose: int, quiet: bool, default: LogLevel = LogLevel.WARNING) -> LogLevel:
    """Map -v/-q flags to a log level; flags win over the configured default."""
    if verbose >= 3:
        return LogLevel.DEBUG
    if verbose >= 1:
        return LogLevel.INFO
    if quiet:
        return LogLevel.ERROR
    return default


def _make_handler(rich_output: bool) -> logging.Handler:
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    level: LogLevel = LogLevel.WARNING,
    rich_output: bool = True,
) -> logging.Logger:
    """Install a single stderr handler on the root logger.

    Calling it again replaces the previous handler.

    Args:
        level: The logging level
        rich_output: Use Rich formatting; plain text otherwise

    Returns:
        The runbookctl package logger
    """
    log_level = level.to_logging()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_make_handler(rich_output))
    root_logger.setLevel(log_level)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the runbookctl namespace.

    Module names that already carry the prefix (``__name__``) are used as-is.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that appends ``key=value`` context to each message.

    Keyword arguments that logging does not consume become context, so
    ``log.info("Running step", index=2)`` logs ``Running step [index=2]``.
    """

    def __init__(self, name: str, context: dict[str, Any] | None = None):
        super().__init__(get_logger(name), dict(context or {}))

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        return StructuredLogger(self.logger.name, {**self.extra, **kwargs})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        context = dict(self.extra)
        passthrough: dict[str, Any] = {}
        for key, value in kwargs.items():
            if key in _LOGGING_KWARGS:
                passthrough[key] = value
            else:
                context[key] = value

        if context:
            msg = f"{msg} [{' '.join(f'{k}={v}' for k, v in context.items())}]"
        return msg, passthrough
