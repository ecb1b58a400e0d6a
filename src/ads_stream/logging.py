"""Custom logging configuration for ads-stream.

Adds a VERBOSE logging level below DEBUG for frame-level tracing and maps the
connector log levels onto the standard library levels.
"""

import itertools
import logging
from enum import Enum
from typing import Any

# Define VERBOSE level (between DEBUG=10 and NOTSET=0)
VERBOSE = 5
logging.addLevelName(VERBOSE, "VERBOSE")


class VerboseLogger(logging.Logger):
    """Logger subclass with verbose() method for VERBOSE level logging."""

    def verbose(self, message: str, *args: Any, **kwargs: Any) -> None:
        """Log a message at VERBOSE level.

        Args:
            message: The log message format string
            *args: Arguments for message formatting
            **kwargs: Keyword arguments passed to _log
        """
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, message, args, **kwargs)


# Set the custom logger class as the default
logging.setLoggerClass(VerboseLogger)

_connector_ids = itertools.count(1)


class LogLevel(str, Enum):
    """Log levels accepted in the connector configuration."""

    panic = "panic"
    fatal = "fatal"
    error = "error"
    warn = "warn"
    info = "info"
    debug = "debug"
    trace = "trace"
    disabled = "disabled"

    def to_logging_level(self) -> int:
        """Get the standard library level matching this connector log level."""
        return _LEVELS[self]


_LEVELS: dict[LogLevel, int] = {
    LogLevel.panic: logging.CRITICAL,
    LogLevel.fatal: logging.CRITICAL,
    LogLevel.error: logging.ERROR,
    LogLevel.warn: logging.WARNING,
    LogLevel.info: logging.INFO,
    LogLevel.debug: logging.DEBUG,
    LogLevel.trace: VERBOSE,
    LogLevel.disabled: logging.CRITICAL + 10,
}


def get_logger(name: str) -> VerboseLogger:
    """Get a logger with VERBOSE support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A VerboseLogger instance with verbose() method available
    """
    logger = logging.getLogger(name)
    # Cast is safe because we set the logger class above
    return logger  # type: ignore[return-value]


def connector_logger(label: str, level: LogLevel) -> VerboseLogger:
    """Get the logger dedicated to one connector instance.

    Each call gets a new logger, numbered after the label, so that two connectors
    with the same target don't share a level. Only this logger's level is set;
    the root logger and every other logger of the process are left untouched.

    Args:
        label: Name identifying the connector instance (e.g. the target address)
        level: The connector log level

    Returns:
        A VerboseLogger named ``ads_stream.input.<label>.<n>``
    """
    logger = get_logger(f"ads_stream.input.{label}.{next(_connector_ids)}")
    logger.setLevel(level.to_logging_level())
    logger.disabled = level is LogLevel.disabled
    return logger
