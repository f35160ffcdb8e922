"""Logging setup for deployctl.

Console output goes through Rich on stderr. A run can additionally mirror
everything, at debug level, into a plain-text file next to its JSON lines
run log so a failed deployment can be read back without re-running it.
"""

import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "deployctl"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def to_logging(self) -> int:
        return getattr(logging, self.value.upper())


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    rich_output: bool = True,
) -> logging.Logger:
    """Configure console logging for deployctl.

    Args:
        level: Console log level
        rich_output: Render with Rich instead of a plain stream handler

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if not isinstance(handler, RunFileHandler):
            root_logger.removeHandler(handler)

    if rich_output:
        console_handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    console_handler.setLevel(level.to_logging())

    root_logger.addHandler(console_handler)
    # Root stays at DEBUG so a run file can capture what the console hides.
    root_logger.setLevel(logging.DEBUG)
    logging.getLogger(ROOT_LOGGER).setLevel(logging.DEBUG)

    for noisy in ("paramiko", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(ROOT_LOGGER)


class RunFileHandler(logging.FileHandler):
    """Plain-text debug log for a single run."""

    def __init__(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, encoding="utf-8")
        self.setLevel(logging.DEBUG)
        self.setFormatter(logging.Formatter(FILE_FORMAT))


def attach_run_file(path: str | Path) -> RunFileHandler:
    """Mirror deployctl logs into ``path`` until :func:`detach_run_file`."""
    handler = RunFileHandler(path)
    logging.getLogger().addHandler(handler)
    return handler


def detach_run_file(handler: RunFileHandler) -> None:
    logging.getLogger().removeHandler(handler)
    handler.close()


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``deployctl`` namespace."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class StructuredLogger:
    """Logger that appends bound context as ``key=value`` pairs.

    A bound ``target`` is rendered as a ``[target]`` prefix instead, so
    interleaved lines from concurrent hosts stay attributable.
    """

    def __init__(self, name: str):
        self._logger = get_logger(name)
        self._context: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        new_logger = StructuredLogger(self._logger.name)
        new_logger._context = {**self._context, **kwargs}
        return new_logger

    def _format_message(self, message: str, **kwargs: Any) -> str:
        context = {**self._context, **kwargs}
        target = context.pop("target", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items() if v is not None)
            if pairs:
                message = f"{message} [{pairs}]"
        if target:
            message = f"[{target}] {message}"
        return message

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(self._format_message(message, **kwargs))

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self._logger.exception(self._format_message(message, **kwargs))
